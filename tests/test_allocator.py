"""Tests for virtual IP selection."""

from __future__ import annotations

from ipaddress import IPv4Address

import pytest

from vcloud_lb.allocator import AddressExhaustedError, next_free_address, parse_network
from vcloud_lb.config import ConfigurationError


class TestParseNetwork:
    """Tests for parse_network."""

    def test_host_bits_tolerated(self) -> None:
        """Test a CIDR with host bits set is normalized."""
        assert str(parse_network("10.0.0.5/24")) == "10.0.0.0/24"

    @pytest.mark.parametrize("cidr", ["", "not-a-network", "10.0.0.0/33", "fd00::/64"])
    def test_invalid_cidr(self, cidr: str) -> None:
        """Test unparseable or non-IPv4 networks are rejected."""
        with pytest.raises(ConfigurationError, match="invalid network CIDR"):
            parse_network(cidr)


class TestNextFreeAddress:
    """Tests for next_free_address."""

    def test_empty_network_returns_first_host(self) -> None:
        """Test the network address itself is never handed out."""
        assert next_free_address(set(), "10.0.0.0/29") == IPv4Address("10.0.0.1")

    def test_skips_allocated(self) -> None:
        """Test allocated addresses are skipped in ascending order."""
        allocated = {IPv4Address("10.0.0.1"), IPv4Address("10.0.0.2")}
        assert next_free_address(allocated, "10.0.0.0/29") == IPv4Address("10.0.0.3")

    def test_fills_gaps_first(self) -> None:
        """Test the lowest free address wins over higher ones."""
        allocated = {"10.0.0.1", "10.0.0.3", "10.0.0.4"}
        assert next_free_address(allocated, "10.0.0.0/29") == IPv4Address("10.0.0.2")

    def test_last_usable_host(self) -> None:
        """Test broadcast - 1 is usable."""
        allocated = [f"10.0.0.{i}" for i in range(1, 6)]
        assert next_free_address(allocated, "10.0.0.0/29") == IPv4Address("10.0.0.6")

    def test_exhausted_network(self) -> None:
        """Test broadcast is never used and a full network raises."""
        allocated = [f"10.0.0.{i}" for i in range(1, 7)]
        with pytest.raises(AddressExhaustedError, match="no IP addresses left in 10.0.0.0/29"):
            next_free_address(allocated, "10.0.0.0/29")

    def test_addresses_outside_network_ignored(self) -> None:
        """Test allocations on other networks do not matter."""
        allocated = {"192.168.1.1", "10.0.1.1"}
        assert next_free_address(allocated, "10.0.0.0/29") == IPv4Address("10.0.0.1")

    def test_deterministic(self) -> None:
        """Test the same inputs always give the same address."""
        allocated = {"10.0.0.2"}
        results = {next_free_address(allocated, "10.0.0.0/29") for _ in range(5)}
        assert results == {IPv4Address("10.0.0.1")}

    def test_slash_31_has_no_usable_hosts(self) -> None:
        """Test networks without a host range are exhausted immediately."""
        with pytest.raises(AddressExhaustedError):
            next_free_address(set(), "10.0.0.0/31")
