"""Contract between the reconciler and the remote load-balancer backend.

Lookups by name return a tagged result instead of raising, so that a missing
resource (which usually means "create it") can never be confused with a
transport failure:

    match api.get_pool(name):
        case Found(record=pool):
            ...
        case NotFound():
            ...

Anything that actually went wrong on the wire raises RemoteAPIError.
"""

from __future__ import annotations

from dataclasses import dataclass
from ipaddress import IPv4Address
from typing import Generic, Protocol, TypeVar

from .models import FirewallRule, Pool, VirtualServer

T = TypeVar("T")


class RemoteAPIError(Exception):
    """Raised when a call to the backend fails (network, HTTP or payload errors)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(RemoteAPIError):
    """Raised when the backend rejects the configured credentials."""

    pass


class NotFoundError(Exception):
    """Raised when a resource that must already exist is missing."""

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f"{kind} not found: {name}")
        self.kind = kind
        self.name = name


@dataclass(frozen=True)
class Found(Generic[T]):
    """A lookup that matched a remote record."""

    record: T


@dataclass(frozen=True)
class NotFound:
    """A lookup that matched nothing."""

    name: str


def find_by_name(records: list[T], name: str) -> Found[T] | NotFound:
    """Return the first record whose ``name`` attribute equals ``name``."""
    for record in records:
        if getattr(record, "name", None) == name:
            return Found(record)
    return NotFound(name)


class LoadBalancerAPI(Protocol):
    """Operations the reconciler needs from an edge gateway."""

    def list_virtual_servers(self) -> list[VirtualServer]: ...

    def get_virtual_server(self, name: str) -> Found[VirtualServer] | NotFound: ...

    def create_virtual_server(self, virtual_server: VirtualServer) -> VirtualServer: ...

    def delete_virtual_server(self, virtual_server_id: str) -> None: ...

    def list_pools(self) -> list[Pool]: ...

    def get_pool(self, name: str) -> Found[Pool] | NotFound: ...

    def create_pool(self, pool: Pool) -> Pool: ...

    def update_pool(self, pool: Pool) -> Pool: ...

    def delete_pool(self, pool_id: str) -> None: ...

    def get_application_profile_id(self, name: str) -> Found[str] | NotFound: ...

    def list_firewall_rules(self) -> list[FirewallRule]: ...

    def get_firewall_rule(self, name: str) -> Found[FirewallRule] | NotFound: ...

    def create_firewall_rule(self, rule: FirewallRule) -> FirewallRule: ...

    def delete_firewall_rule(self, rule_id: str) -> None: ...

    def list_allocated_addresses(self, network_name: str) -> set[IPv4Address]: ...
