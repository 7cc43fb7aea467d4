"""Load-balancer reconciliation for LoadBalancer-type services.

For every declared service port the edge gateway gets one pool (backed by
the eligible worker nodes) and one virtual server bound to that pool.
Externally exposed services additionally get a firewall rule admitting the
declared TCP ports.

Each entry point is idempotent: remote resources are fetched and only
created or appended to when missing. Nothing is rolled back on failure;
the caller re-invokes and the next pass converges.

CONCURRENCY:
Mutating entry points hold the KeyLock for the service's canonical name for
their whole duration, so passes for the same service never interleave.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from ipaddress import IPv4Address
from typing import TypeVar

from .allocator import next_free_address
from .config import (
    DEFAULT_APPLICATION_PROFILE,
    MAX_REMOTE_NAME_LENGTH,
    ConfigurationError,
)
from .keylock import KeyLock
from .models import (
    FirewallEndpoint,
    FirewallRule,
    FirewallService,
    LbProtocol,
    LoadBalancerIngress,
    LoadBalancerStatus,
    LoadBalancerType,
    Node,
    Pool,
    PoolAlgorithm,
    PoolMember,
    Service,
    ServicePort,
    VirtualServer,
    member_exists,
)
from .remote import Found, LoadBalancerAPI, NotFound, NotFoundError, RemoteAPIError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Service annotations
ANNOTATION_PREFIX = "mk.plus.io/"
LOAD_BALANCER_TYPE = ANNOTATION_PREFIX + "load-balancer-type"
LOAD_BALANCER_EXTERNAL_IP = ANNOTATION_PREFIX + "load-balancer-external-ip"
LOAD_BALANCER_PROTOCOL = ANNOTATION_PREFIX + "load-balancer-protocol"
POOL_ALGORITHM = ANNOTATION_PREFIX + "pool-algorithm"
POOL_MEMBER_MIN_CONNECTIONS = ANNOTATION_PREFIX + "pool-min-con"
POOL_MEMBER_MAX_CONNECTIONS = ANNOTATION_PREFIX + "pool-max-con"

VIRTUAL_SERVER_DESCRIPTION = (
    "This Service was automatically created and managed by vcloud-lb"
)
POOL_DESCRIPTION = "This Pool was automatically created and managed by vcloud-lb"

# Accepted spellings for the pool-algorithm annotation
POOL_ALGORITHM_ALIASES: dict[str, PoolAlgorithm] = {
    "round-robin": PoolAlgorithm.ROUND_ROBIN,
    "ip-hash": PoolAlgorithm.IP_HASH,
    "least-connections": PoolAlgorithm.LEASTCONN,
    "leastconn": PoolAlgorithm.LEASTCONN,
    "uri": PoolAlgorithm.URI,
    "http-header": PoolAlgorithm.HTTPHEADER,
    "httpheader": PoolAlgorithm.HTTPHEADER,
    "url": PoolAlgorithm.URL,
}


class MemberResolutionError(ConfigurationError):
    """Raised when a pool member cannot be built for an eligible node."""

    pass


def cut_name(name: str) -> str:
    """Truncate to the longest name the backend accepts."""
    return name[:MAX_REMOTE_NAME_LENGTH]


def get_annotation(service: Service, key: str, default: str = "") -> str:
    value = service.annotations.get(key)
    if value is not None:
        logger.debug("Found service annotation", extra={"annotation": key, "value": value})
        return value
    return default


def get_int_annotation(service: Service, key: str) -> int:
    """Read an integer annotation; absent or malformed values count as 0."""
    value = service.annotations.get(key)
    if value is None:
        return 0
    try:
        return int(value)
    except ValueError:
        logger.warning(
            "Ignoring non-integer service annotation",
            extra={"service": service.name, "annotation": key, "value": value},
        )
        return 0


def load_balancer_type(service: Service) -> LoadBalancerType:
    value = get_annotation(service, LOAD_BALANCER_TYPE, LoadBalancerType.INTERNAL.value)
    try:
        return LoadBalancerType(value.lower())
    except ValueError as e:
        valid = [t.value for t in LoadBalancerType]
        raise ConfigurationError(f"{LOAD_BALANCER_TYPE} must be one of {valid}: {value}") from e


def pool_algorithm(service: Service) -> PoolAlgorithm:
    value = get_annotation(service, POOL_ALGORITHM, PoolAlgorithm.ROUND_ROBIN.value)
    normalized = value.strip().lower().replace("_", "-")
    algorithm = POOL_ALGORITHM_ALIASES.get(normalized)
    if algorithm is None:
        valid = sorted(POOL_ALGORITHM_ALIASES)
        raise ConfigurationError(f"{POOL_ALGORITHM} must be one of {valid}: {value}")
    return algorithm


def virtual_server_protocol(service: Service) -> LbProtocol:
    value = get_annotation(service, LOAD_BALANCER_PROTOCOL, LbProtocol.HTTP.value)
    try:
        return LbProtocol(value.upper())
    except ValueError as e:
        valid = [p.value for p in LbProtocol]
        raise ConfigurationError(f"{LOAD_BALANCER_PROTOCOL} must be one of {valid}: {value}") from e


def build_member(service: Service, port: ServicePort, node: Node) -> PoolMember:
    """Build the pool member a node contributes for one service port.

    Raises:
        MemberResolutionError: If the node reports no usable address.
    """
    node_ip = node.host_ip()
    if node_ip is None:
        raise MemberResolutionError(
            f"error retrieving internal ip or external ip from node: {node.name}"
        )

    return PoolMember(
        # Member names must start with a letter and may not contain dots
        name=f"member-{node_ip.replace('.', '')}-{port.node_port}",
        ip_address=node_ip,
        port=port.node_port,
        monitor_port=port.port,
        weight=1,
        min_conn=get_int_annotation(service, POOL_MEMBER_MIN_CONNECTIONS),
        max_conn=get_int_annotation(service, POOL_MEMBER_MAX_CONNECTIONS),
        condition="enabled",
    )


class LoadBalancerReconciler:
    """Reconciles a service's pools, virtual servers and firewall rule.

    Operations:
        ensure_load_balancer: create or complete everything the service needs
        update_load_balancer: refresh pool membership only
        ensure_load_balancer_deleted: remove virtual servers, pools and rule
        get_load_balancer: read-only status lookup
    """

    def __init__(
        self,
        api: LoadBalancerAPI,
        locks: KeyLock | None = None,
        *,
        network_name: str | None = None,
        network_cidr: str | None = None,
        application_profile: str = DEFAULT_APPLICATION_PROFILE,
    ) -> None:
        """Initialize the reconciler.

        Args:
            api: Edge gateway backend.
            locks: Shared per-name lock registry. A private one is created
                if omitted.
            network_name: Org VDC network internal VIPs are allocated from.
            network_cidr: CIDR of that network.
            application_profile: Edge application profile for new virtual servers.
        """
        self._api = api
        self._locks = locks if locks is not None else KeyLock()
        self._network_name = network_name
        self._network_cidr = network_cidr
        self._application_profile = application_profile

    @property
    def locks(self) -> KeyLock:
        return self._locks

    # -------------------------------------------------------------------------
    # Naming
    # -------------------------------------------------------------------------

    def get_load_balancer_name(self, cluster_name: str, service: Service) -> str:
        """Canonical name of a service's load balancer."""
        return cut_name(f"kube_service_{cluster_name}_{service.namespace}_{service.name}")

    def get_pool_name(self, cluster_name: str, service: Service, node_port: int) -> str:
        return cut_name(
            f"kube_pool_{cluster_name}_{service.namespace}_{service.name}_{node_port}"
        )

    def get_virtual_server_name(self, cluster_name: str, service: Service, node_port: int) -> str:
        return cut_name(f"{self.get_load_balancer_name(cluster_name, service)}-{node_port}")

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def get_load_balancer(
        self, cluster_name: str, service: Service
    ) -> tuple[LoadBalancerStatus | None, bool]:
        """Look up the virtual servers of every declared port.

        Returns:
            (status, True) with one ingress per port, or (None, False) if
            any port's virtual server is missing.
        """
        status = LoadBalancerStatus()
        for port in service.ports:
            name = self.get_virtual_server_name(cluster_name, service, port.node_port)
            match self._call("fetching virtual server", name, self._api.get_virtual_server, name):
                case Found(record=virtual_server):
                    status.ingress.append(LoadBalancerIngress(ip=virtual_server.ip_address))
                case NotFound():
                    logger.debug("Virtual server not found", extra={"virtual_server": name})
                    return None, False
        return status, True

    def ensure_load_balancer(
        self, cluster_name: str, service: Service, nodes: list[Node]
    ) -> LoadBalancerStatus:
        """Create or complete the load balancer of a service.

        Raises:
            ConfigurationError: On missing nodes, ports or required
                annotations, before any remote call.
            MemberResolutionError: If an eligible node has no address.
            RemoteAPIError: If the backend fails; earlier changes stay in place.
        """
        name = self.get_load_balancer_name(cluster_name, service)
        self._check_preconditions(name, service, nodes)

        lb_type = load_balancer_type(service)
        algorithm = pool_algorithm(service)
        protocol = virtual_server_protocol(service)
        external_ip = ""
        if lb_type == LoadBalancerType.EXTERNAL:
            external_ip = get_annotation(service, LOAD_BALANCER_EXTERNAL_IP)
            if not external_ip:
                raise ConfigurationError(
                    f"{LOAD_BALANCER_EXTERNAL_IP} annotation is required for external "
                    f"type load balancer {name}"
                )
            try:
                IPv4Address(external_ip)
            except ValueError as e:
                raise ConfigurationError(
                    f"{LOAD_BALANCER_EXTERNAL_IP} annotation of load balancer {name} "
                    f"is not an IPv4 address: {external_ip!r}"
                ) from e

        with self._locks.held(name):
            logger.info(
                "Ensuring load balancer",
                extra={"load_balancer": name, "type": lb_type.value, "ports": len(service.ports)},
            )
            vip = external_ip or self._allocate_internal_address()

            status = LoadBalancerStatus()
            virtual_server: VirtualServer | None = None
            for port in service.ports:
                pool = self._ensure_pool(cluster_name, service, port, algorithm)
                pool = self._sync_members(pool, service, port, nodes)
                virtual_server = self._ensure_virtual_server(
                    cluster_name, service, port, pool, vip, protocol
                )
                status.ingress.append(LoadBalancerIngress(ip=virtual_server.ip_address))

            if lb_type == LoadBalancerType.EXTERNAL and virtual_server is not None:
                self._ensure_firewall_rule(name, service, virtual_server)

            return status

    def update_load_balancer(self, cluster_name: str, service: Service, nodes: list[Node]) -> None:
        """Bring pool membership up to date with the current nodes.

        Virtual servers and firewall rules are left alone.

        Raises:
            ConfigurationError: On missing nodes or ports.
            NotFoundError: If a port's pool does not exist yet.
            RemoteAPIError: If the backend fails.
        """
        name = self.get_load_balancer_name(cluster_name, service)
        self._check_preconditions(name, service, nodes)

        with self._locks.held(name):
            logger.info("Updating load balancer members", extra={"load_balancer": name})
            for port in service.ports:
                pool_name = self.get_pool_name(cluster_name, service, port.node_port)
                match self._call("fetching pool", pool_name, self._api.get_pool, pool_name):
                    case Found(record=pool):
                        self._sync_members(pool, service, port, nodes)
                    case NotFound():
                        raise NotFoundError("pool", pool_name)

    def ensure_load_balancer_deleted(self, cluster_name: str, service: Service) -> None:
        """Remove a service's virtual servers, pools and firewall rule.

        A missing virtual server or pool is an error; a missing firewall
        rule is not.

        Raises:
            NotFoundError: If a virtual server or pool is already gone.
            RemoteAPIError: If the backend fails.
        """
        name = self.get_load_balancer_name(cluster_name, service)

        with self._locks.held(name):
            logger.info("Deleting load balancer", extra={"load_balancer": name})

            for port in service.ports:
                vs_name = self.get_virtual_server_name(cluster_name, service, port.node_port)
                lookup = self._call(
                    "fetching virtual server", vs_name, self._api.get_virtual_server, vs_name
                )
                virtual_server = self._require("virtual server", vs_name, lookup)
                self._call(
                    "deleting virtual server",
                    vs_name,
                    self._api.delete_virtual_server,
                    virtual_server.id,
                )

            for port in service.ports:
                pool_name = self.get_pool_name(cluster_name, service, port.node_port)
                pool = self._require(
                    "pool",
                    pool_name,
                    self._call("fetching pool", pool_name, self._api.get_pool, pool_name),
                )
                self._call("deleting pool", pool_name, self._api.delete_pool, pool.id)

            match self._call("fetching firewall rule", name, self._api.get_firewall_rule, name):
                case Found(record=rule):
                    self._call(
                        "deleting firewall rule", name, self._api.delete_firewall_rule, rule.id
                    )
                case NotFound():
                    logger.debug("No firewall rule to delete", extra={"load_balancer": name})

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _check_preconditions(self, name: str, service: Service, nodes: list[Node]) -> None:
        if not nodes:
            raise ConfigurationError(
                f"there are no available nodes for LoadBalancer service {name}"
            )
        if not service.ports:
            raise ConfigurationError(f"no ports provided to load balancer {name}")

    def _allocate_internal_address(self) -> str:
        if not self._network_name or not self._network_cidr:
            raise ConfigurationError(
                "internal load balancers need a network name and CIDR to allocate from"
            )
        allocated = self._call(
            "listing allocated addresses",
            self._network_name,
            self._api.list_allocated_addresses,
            self._network_name,
        )
        return str(next_free_address(allocated, self._network_cidr))

    def _ensure_pool(
        self,
        cluster_name: str,
        service: Service,
        port: ServicePort,
        algorithm: PoolAlgorithm,
    ) -> Pool:
        pool_name = self.get_pool_name(cluster_name, service, port.node_port)
        match self._call("fetching pool", pool_name, self._api.get_pool, pool_name):
            case Found(record=pool):
                return pool
            case NotFound():
                logger.info(
                    "Creating pool", extra={"pool": pool_name, "algorithm": algorithm.value}
                )
                return self._call(
                    "creating pool",
                    pool_name,
                    self._api.create_pool,
                    Pool(name=pool_name, description=POOL_DESCRIPTION, algorithm=algorithm),
                )

    def _sync_members(
        self,
        pool: Pool,
        service: Service,
        port: ServicePort,
        nodes: list[Node],
    ) -> Pool:
        """Append missing members for eligible nodes, pushing the pool if changed."""
        members = list(pool.members)
        added: list[str] = []
        for node in nodes:
            if not node.is_worker:
                continue
            member = build_member(service, port, node)
            if not member_exists(members, member):
                members.append(member)
                added.append(member.name)

        if not added:
            return pool

        logger.info("Adding pool members", extra={"pool": pool.name, "members": added})
        return self._call(
            "updating pool",
            pool.name,
            self._api.update_pool,
            pool.model_copy(update={"members": members}),
        )

    def _ensure_virtual_server(
        self,
        cluster_name: str,
        service: Service,
        port: ServicePort,
        pool: Pool,
        ip_address: str,
        protocol: LbProtocol,
    ) -> VirtualServer:
        vs_name = self.get_virtual_server_name(cluster_name, service, port.node_port)
        match self._call("fetching virtual server", vs_name, self._api.get_virtual_server, vs_name):
            case Found(record=virtual_server):
                return virtual_server
            case NotFound():
                pass

        profile_id = self._require(
            "application profile",
            self._application_profile,
            self._call(
                "fetching application profile",
                self._application_profile,
                self._api.get_application_profile_id,
                self._application_profile,
            ),
        )
        logger.info(
            "Creating virtual server",
            extra={"virtual_server": vs_name, "ip_address": ip_address, "port": port.port},
        )
        return self._call(
            "creating virtual server",
            vs_name,
            self._api.create_virtual_server,
            VirtualServer(
                name=vs_name,
                description=VIRTUAL_SERVER_DESCRIPTION,
                ip_address=ip_address,
                protocol=protocol,
                port=port.port,
                application_profile_id=profile_id,
                default_pool_id=pool.id,
            ),
        )

    def _ensure_firewall_rule(
        self, name: str, service: Service, virtual_server: VirtualServer
    ) -> None:
        match self._call("fetching firewall rule", name, self._api.get_firewall_rule, name):
            case Found():
                return
            case NotFound():
                pass

        rule = FirewallRule(
            name=name,
            source=FirewallEndpoint(ip_addresses=["any"]),
            destination=FirewallEndpoint(ip_addresses=[virtual_server.ip_address]),
            services=[
                FirewallService(protocol="TCP", port=str(port.port), source_port="any")
                for port in service.ports
            ],
        )
        logger.info(
            "Creating firewall rule",
            extra={"rule": name, "destination": virtual_server.ip_address},
        )
        self._call("creating firewall rule", name, self._api.create_firewall_rule, rule)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _require(kind: str, name: str, lookup: Found[T] | NotFound) -> T:
        match lookup:
            case Found(record=record):
                return record
            case _:
                raise NotFoundError(kind, name)

    @staticmethod
    def _call(operation: str, target: str, fn: Callable[..., T], *args: object) -> T:
        """Run one backend call, adding the operation to any RemoteAPIError."""
        try:
            return fn(*args)
        except RemoteAPIError as e:
            raise type(e)(f"error {operation} {target}: {e}", status_code=e.status_code) from e
