"""In-memory edge gateway implementing LoadBalancerAPI.

Keeps pools, virtual servers, firewall rules and network allocations in
dictionaries, assigns ids the way the backend does on create, and records
every mutating call so tests can assert on exactly what was sent.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from ipaddress import IPv4Address
from typing import Any

from vcloud_lb.models import FirewallRule, Pool, VirtualServer
from vcloud_lb.remote import Found, NotFound, RemoteAPIError, find_by_name

MUTATING_OPERATIONS = frozenset(
    (
        "create_virtual_server",
        "delete_virtual_server",
        "create_pool",
        "update_pool",
        "delete_pool",
        "create_firewall_rule",
        "delete_firewall_rule",
    )
)


@dataclass
class MockCall:
    """One recorded API call."""

    operation: str
    args: tuple[Any, ...] = field(default_factory=tuple)


class MockEdgeGateway:
    """Edge gateway state plus call recording and failure injection.

    Thread-safe: every operation runs under one lock, like a backend that
    serializes configuration changes.
    """

    def __init__(self, application_profiles: dict[str, str] | None = None) -> None:
        self._lock = threading.Lock()
        self._id_counter = 0
        self.pools: dict[str, Pool] = {}
        self.virtual_servers: dict[str, VirtualServer] = {}
        self.firewall_rules: dict[str, FirewallRule] = {}
        self.application_profiles = (
            {"ingress": "applicationProfile-1"}
            if application_profiles is None
            else dict(application_profiles)
        )
        self.allocated: dict[str, set[IPv4Address]] = {}
        self._calls: list[MockCall] = []
        self._failures: dict[str, RemoteAPIError] = {}

    # -------------------------------------------------------------------------
    # Test controls
    # -------------------------------------------------------------------------

    @property
    def calls(self) -> list[MockCall]:
        with self._lock:
            return self._calls.copy()

    def mutations(self) -> list[MockCall]:
        """Recorded calls that changed state."""
        return [c for c in self.calls if c.operation in MUTATING_OPERATIONS]

    def call_count(self, operation: str) -> int:
        return sum(1 for c in self.calls if c.operation == operation)

    def clear_calls(self) -> None:
        with self._lock:
            self._calls.clear()

    def fail_on(self, operation: str, error: RemoteAPIError | None = None) -> None:
        """Make ``operation`` raise until cleared with ``clear_failure``."""
        self._failures[operation] = error or RemoteAPIError(
            f"injected failure in {operation}", status_code=500
        )

    def clear_failure(self, operation: str) -> None:
        self._failures.pop(operation, None)

    def allocate(self, network_name: str, *addresses: str) -> None:
        """Mark addresses of a network as already in use."""
        with self._lock:
            self.allocated.setdefault(network_name, set()).update(
                IPv4Address(a) for a in addresses
            )

    def _enter(self, operation: str, *args: Any) -> None:
        self._calls.append(MockCall(operation, args))
        error = self._failures.get(operation)
        if error is not None:
            raise error

    def _next_id(self, prefix: str) -> str:
        self._id_counter += 1
        return f"{prefix}-{self._id_counter}"

    # -------------------------------------------------------------------------
    # Virtual servers
    # -------------------------------------------------------------------------

    def list_virtual_servers(self) -> list[VirtualServer]:
        with self._lock:
            self._enter("list_virtual_servers")
            return list(self.virtual_servers.values())

    def get_virtual_server(self, name: str) -> Found[VirtualServer] | NotFound:
        with self._lock:
            self._enter("get_virtual_server", name)
            return find_by_name(list(self.virtual_servers.values()), name)

    def create_virtual_server(self, virtual_server: VirtualServer) -> VirtualServer:
        with self._lock:
            self._enter("create_virtual_server", virtual_server)
            created = virtual_server.model_copy(
                update={"id": self._next_id("virtualServer")}
            )
            self.virtual_servers[created.id] = created
            return created

    def delete_virtual_server(self, virtual_server_id: str) -> None:
        with self._lock:
            self._enter("delete_virtual_server", virtual_server_id)
            if self.virtual_servers.pop(virtual_server_id, None) is None:
                raise RemoteAPIError(
                    f"virtual server {virtual_server_id} does not exist", status_code=404
                )

    # -------------------------------------------------------------------------
    # Pools
    # -------------------------------------------------------------------------

    def list_pools(self) -> list[Pool]:
        with self._lock:
            self._enter("list_pools")
            return list(self.pools.values())

    def get_pool(self, name: str) -> Found[Pool] | NotFound:
        with self._lock:
            self._enter("get_pool", name)
            return find_by_name(list(self.pools.values()), name)

    def create_pool(self, pool: Pool) -> Pool:
        with self._lock:
            self._enter("create_pool", pool)
            created = pool.model_copy(update={"id": self._next_id("pool")})
            self.pools[created.id] = created
            return created

    def update_pool(self, pool: Pool) -> Pool:
        with self._lock:
            self._enter("update_pool", pool)
            if pool.id not in self.pools:
                raise RemoteAPIError(f"pool {pool.id} does not exist", status_code=404)
            members = [
                m if m.id else m.model_copy(update={"id": self._next_id("member")})
                for m in pool.members
            ]
            stored = pool.model_copy(update={"members": members})
            self.pools[pool.id] = stored
            return stored

    def delete_pool(self, pool_id: str) -> None:
        with self._lock:
            self._enter("delete_pool", pool_id)
            if self.pools.pop(pool_id, None) is None:
                raise RemoteAPIError(f"pool {pool_id} does not exist", status_code=404)

    def get_application_profile_id(self, name: str) -> Found[str] | NotFound:
        with self._lock:
            self._enter("get_application_profile_id", name)
            profile_id = self.application_profiles.get(name)
            return Found(profile_id) if profile_id is not None else NotFound(name)

    # -------------------------------------------------------------------------
    # Firewall
    # -------------------------------------------------------------------------

    def list_firewall_rules(self) -> list[FirewallRule]:
        with self._lock:
            self._enter("list_firewall_rules")
            return list(self.firewall_rules.values())

    def get_firewall_rule(self, name: str) -> Found[FirewallRule] | NotFound:
        with self._lock:
            self._enter("get_firewall_rule", name)
            return find_by_name(list(self.firewall_rules.values()), name)

    def create_firewall_rule(self, rule: FirewallRule) -> FirewallRule:
        with self._lock:
            self._enter("create_firewall_rule", rule)
            created = rule.model_copy(update={"id": self._next_id("rule")})
            self.firewall_rules[created.id] = created
            return created

    def delete_firewall_rule(self, rule_id: str) -> None:
        with self._lock:
            self._enter("delete_firewall_rule", rule_id)
            if self.firewall_rules.pop(rule_id, None) is None:
                raise RemoteAPIError(f"firewall rule {rule_id} does not exist", status_code=404)

    # -------------------------------------------------------------------------
    # Networks
    # -------------------------------------------------------------------------

    def list_allocated_addresses(self, network_name: str) -> set[IPv4Address]:
        with self._lock:
            self._enter("list_allocated_addresses", network_name)
            if network_name not in self.allocated:
                raise RemoteAPIError(f"no such network found with name: {network_name}")
            return set(self.allocated[network_name])
