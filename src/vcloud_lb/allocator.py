"""Deterministic virtual IP selection from a managed network.

The lowest free usable host address is chosen so that repeated
reconciliation passes over the same allocation state always agree on the
same candidate.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from ipaddress import IPv4Address, IPv4Network

from .config import ConfigurationError

logger = logging.getLogger(__name__)


class AddressExhaustedError(Exception):
    """Raised when every usable host address of a network is allocated."""

    pass


def parse_network(cidr: str) -> IPv4Network:
    """Parse an IPv4 CIDR, tolerating host bits (``10.0.0.5/24``).

    Raises:
        ConfigurationError: If ``cidr`` is not an IPv4 network.
    """
    try:
        return IPv4Network(cidr, strict=False)
    except ValueError as e:
        raise ConfigurationError(f"invalid network CIDR {cidr!r}: {e}") from e


def next_free_address(allocated: Iterable[IPv4Address | str], cidr: str) -> IPv4Address:
    """Return the lowest host address in ``cidr`` that is not allocated.

    Usable hosts run from network + 1 to broadcast - 1.

    Args:
        allocated: Addresses already in use on the network.
        cidr: The network to scan, e.g. ``10.0.0.0/24``.

    Returns:
        The first free usable address in ascending order.

    Raises:
        ConfigurationError: If ``cidr`` cannot be parsed.
        AddressExhaustedError: If no usable address is free.
    """
    network = parse_network(cidr)
    taken = {IPv4Address(str(address)) for address in allocated}

    first = int(network.network_address) + 1
    last = int(network.broadcast_address) - 1

    for candidate in range(first, last + 1):
        address = IPv4Address(candidate)
        if address not in taken:
            logger.debug(
                "Selected free address",
                extra={"network": str(network), "address": str(address)},
            )
            return address

    raise AddressExhaustedError(f"no IP addresses left in {network}")
