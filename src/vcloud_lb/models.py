"""Pydantic models for services, nodes and edge load-balancer resources.

These models provide:
1. Type-safe parsing of service manifests (camelCase aliases, like the
   Kubernetes objects they mirror)
2. Validation at the boundary (fail fast, fail loudly)
3. The transient desired/remote records the reconciler diffs
"""

from __future__ import annotations

from enum import Enum
from ipaddress import IPv4Address
from typing import Annotated, Literal

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# Enumerations
# =============================================================================


class LbProtocol(str, Enum):
    """Virtual server protocols supported by the edge load balancer."""

    HTTP = "HTTP"
    HTTPS = "HTTPS"
    TCP = "TCP"
    UDP = "UDP"


class PoolAlgorithm(str, Enum):
    """Pool balancing algorithms. Values are the edge API wire names."""

    ROUND_ROBIN = "round-robin"
    IP_HASH = "ip-hash"
    LEASTCONN = "leastconn"
    URI = "uri"
    HTTPHEADER = "httpheader"
    URL = "url"


class LoadBalancerType(str, Enum):
    """Exposure mode of a service's load balancer."""

    INTERNAL = "internal"
    EXTERNAL = "external"


# =============================================================================
# Cluster State
# =============================================================================

WORKER_ROLE_LABEL = "node-role.kubernetes.io/worker"


class ServicePort(BaseModel):
    """One declared port of a service."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str | None = None
    port: Annotated[int, Field(ge=1, le=65535)]
    node_port: Annotated[int, Field(ge=1, le=65535, alias="nodePort")]
    protocol: str = "TCP"


class Service(BaseModel):
    """The slice of a LoadBalancer-type service the reconciler reads."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    namespace: str = "default"
    name: Annotated[str, Field(min_length=1)]
    ports: list[ServicePort] = Field(default_factory=list)
    annotations: dict[str, str] = Field(default_factory=dict)

    @field_validator("annotations", mode="before")
    @classmethod
    def stringify_annotations(cls, v: object) -> object:
        # YAML turns `pool-max-con: 100` into an int
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items()}
        return v


class NodeAddress(BaseModel):
    """An address reported in a node's status."""

    model_config = {"extra": "ignore"}

    type: str
    address: str


class Node(BaseModel):
    """A cluster node that may back a load balancer."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    labels: dict[str, str] = Field(default_factory=dict)
    addresses: list[NodeAddress] = Field(default_factory=list)

    @property
    def is_worker(self) -> bool:
        return self.labels.get(WORKER_ROLE_LABEL) == "true"

    def host_ip(self) -> str | None:
        """Return the InternalIP, falling back to the ExternalIP."""
        for address_type in ("InternalIP", "ExternalIP"):
            for address in self.addresses:
                if address.type == address_type and address.address:
                    return address.address
        return None


class ServiceManifest(BaseModel):
    """A service together with the nodes that should serve it."""

    model_config = {"extra": "ignore"}

    service: Service
    nodes: list[Node] = Field(default_factory=list)
    state: Literal["present", "absent"] = "present"


# =============================================================================
# Edge Load Balancer Resources
# =============================================================================


class PoolMember(BaseModel):
    """One backend endpoint of a pool."""

    model_config = {"extra": "ignore"}

    id: str | None = None
    name: str
    ip_address: str
    port: int
    monitor_port: int
    weight: int = 1
    min_conn: int = 0
    max_conn: int = 0
    condition: str = "enabled"

    def same_as(self, other: PoolMember) -> bool:
        """Compare everything except the backend-assigned id."""
        return self.model_dump(exclude={"id"}) == other.model_dump(exclude={"id"})


def member_exists(members: list[PoolMember], member: PoolMember) -> bool:
    return any(existing.same_as(member) for existing in members)


class Pool(BaseModel):
    """A named group of backend members."""

    model_config = {"extra": "ignore"}

    id: str | None = None
    name: str
    description: str = ""
    algorithm: PoolAlgorithm = PoolAlgorithm.ROUND_ROBIN
    transparent: bool = False
    members: list[PoolMember] = Field(default_factory=list)


class VirtualServer(BaseModel):
    """A load-balancer frontend binding an address and port to a pool."""

    model_config = {"extra": "ignore"}

    id: str | None = None
    name: str
    description: str = ""
    enabled: bool = True
    ip_address: str
    protocol: LbProtocol = LbProtocol.HTTP
    port: int
    connection_limit: int = 0
    connection_rate_limit: int = 0
    application_profile_id: str | None = None
    default_pool_id: str | None = None


class FirewallEndpoint(BaseModel):
    """Source or destination of a firewall rule."""

    ip_addresses: list[str] = Field(default_factory=list)


class FirewallService(BaseModel):
    """One protocol/port pair a firewall rule allows."""

    protocol: str = "TCP"
    port: str
    source_port: str = "any"


class FirewallRule(BaseModel):
    """An edge gateway firewall rule."""

    model_config = {"extra": "ignore"}

    id: str | None = None
    name: str
    rule_type: str = "user"
    action: str = "accept"
    enabled: bool = True
    logging_enabled: bool = False
    source: FirewallEndpoint = Field(default_factory=FirewallEndpoint)
    destination: FirewallEndpoint = Field(default_factory=FirewallEndpoint)
    services: list[FirewallService] = Field(default_factory=list)


# =============================================================================
# Status
# =============================================================================


class LoadBalancerIngress(BaseModel):
    """One address a load balancer is reachable on."""

    ip: str

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v: str) -> str:
        return str(IPv4Address(v))


class LoadBalancerStatus(BaseModel):
    """Status reported back for a service."""

    ingress: list[LoadBalancerIngress] = Field(default_factory=list)
