"""vCloud Director backend for the load-balancer reconciler.

Implements LoadBalancerAPI against the vCloud Director REST API and the
NSX-V edge endpoints it proxies:

- login:            POST {href}/sessions (basic auth ``user@org``)
- object lookups:   GET  {href}/query?type=...&format=records
- load balancer:    {host}/network/edges/{edge}/loadbalancer/config/...
- firewall:         {host}/network/edges/{edge}/firewall/config/rules
- VIP allocation:   GET  {network href}/allocatedAddresses

Every request carries the token of the cached session for this client's
credentials. A 401 means the token was revoked early: the session is
refreshed once and the request replayed.
"""

from __future__ import annotations

import logging
import threading
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from ipaddress import IPv4Address
from typing import Any

import requests

from .models import (
    FirewallEndpoint,
    FirewallRule,
    FirewallService,
    LbProtocol,
    Pool,
    PoolAlgorithm,
    PoolMember,
    VirtualServer,
)
from .remote import AuthenticationError, Found, NotFound, RemoteAPIError, find_by_name
from .session import Credentials, SessionCache

logger = logging.getLogger(__name__)

API_VERSION = "31.0"
AUTH_HEADER = "x-vcloud-authorization"
REQUEST_TIMEOUT_SECONDS = 30
XML_CONTENT_TYPE = "application/xml"
ANY_ADDRESS = "any"


@dataclass(frozen=True)
class VCloudToken:
    """Opaque session handle stored in the SessionCache."""

    token: str
    api_version: str = API_VERSION


def _accept_header(api_version: str) -> str:
    return f"application/*+xml;version={api_version}"


def authenticate(credentials: Credentials, timeout: int = REQUEST_TIMEOUT_SECONDS) -> VCloudToken:
    """Log into vCloud Director and return the session token.

    Raises:
        AuthenticationError: If the credentials are rejected.
        RemoteAPIError: On transport failures or unexpected responses.
    """
    url = f"{credentials.href.rstrip('/')}/sessions"
    try:
        response = requests.post(
            url,
            auth=(f"{credentials.user}@{credentials.org}", credentials.password),
            headers={"Accept": _accept_header(API_VERSION)},
            verify=not credentials.insecure,
            timeout=timeout,
        )
    except requests.RequestException as e:
        raise RemoteAPIError(f"unable to reach {url}: {e}") from e

    if response.status_code in (401, 403):
        raise AuthenticationError(
            f"unable to authenticate as {credentials.user}@{credentials.org}",
            status_code=response.status_code,
        )
    if response.status_code >= 400:
        raise RemoteAPIError(
            f"login failed with HTTP {response.status_code}", status_code=response.status_code
        )

    token = response.headers.get(AUTH_HEADER)
    if not token:
        raise AuthenticationError(f"login response carried no {AUTH_HEADER} header")
    return VCloudToken(token=token)


# =============================================================================
# XML helpers
# =============================================================================


def _text(element: ET.Element, tag: str, default: str = "") -> str:
    child = element.find(tag)
    if child is None or child.text is None:
        return default
    return child.text.strip()


def _int(element: ET.Element, tag: str, default: int = 0) -> int:
    value = _text(element, tag)
    return int(value) if value else default


def _bool(element: ET.Element, tag: str, default: bool = False) -> bool:
    value = _text(element, tag)
    return value.lower() == "true" if value else default


def _sub(parent: ET.Element, tag: str, value: Any) -> ET.Element:
    child = ET.SubElement(parent, tag)
    if isinstance(value, bool):
        child.text = "true" if value else "false"
    elif value is not None:
        child.text = str(value)
    return child


def _id_from_location(response: requests.Response) -> str:
    location = response.headers.get("Location", "")
    resource_id = location.rstrip("/").rsplit("/", 1)[-1]
    if not resource_id:
        raise RemoteAPIError("create response carried no Location header")
    return resource_id


def pool_from_xml(element: ET.Element) -> Pool:
    return Pool(
        id=_text(element, "poolId") or None,
        name=_text(element, "name"),
        description=_text(element, "description"),
        algorithm=PoolAlgorithm(_text(element, "algorithm", PoolAlgorithm.ROUND_ROBIN.value)),
        transparent=_bool(element, "transparent"),
        members=[
            PoolMember(
                id=_text(member, "memberId") or None,
                name=_text(member, "name"),
                ip_address=_text(member, "ipAddress"),
                port=_int(member, "port"),
                monitor_port=_int(member, "monitorPort"),
                weight=_int(member, "weight", 1),
                min_conn=_int(member, "minConn"),
                max_conn=_int(member, "maxConn"),
                condition=_text(member, "condition", "enabled"),
            )
            for member in element.findall("member")
        ],
    )


def pool_to_xml(pool: Pool) -> bytes:
    root = ET.Element("pool")
    _sub(root, "name", pool.name)
    _sub(root, "description", pool.description)
    _sub(root, "algorithm", pool.algorithm.value)
    _sub(root, "transparent", pool.transparent)
    for member in pool.members:
        node = ET.SubElement(root, "member")
        if member.id:
            _sub(node, "memberId", member.id)
        _sub(node, "name", member.name)
        _sub(node, "ipAddress", member.ip_address)
        _sub(node, "weight", member.weight)
        _sub(node, "monitorPort", member.monitor_port)
        _sub(node, "port", member.port)
        _sub(node, "maxConn", member.max_conn)
        _sub(node, "minConn", member.min_conn)
        _sub(node, "condition", member.condition)
    return ET.tostring(root)


def virtual_server_from_xml(element: ET.Element) -> VirtualServer:
    return VirtualServer(
        id=_text(element, "virtualServerId") or None,
        name=_text(element, "name"),
        description=_text(element, "description"),
        enabled=_bool(element, "enabled", True),
        ip_address=_text(element, "ipAddress"),
        protocol=LbProtocol(_text(element, "protocol", "http").upper()),
        port=_int(element, "port"),
        connection_limit=_int(element, "connectionLimit"),
        connection_rate_limit=_int(element, "connectionRateLimit"),
        application_profile_id=_text(element, "applicationProfileId") or None,
        default_pool_id=_text(element, "defaultPoolId") or None,
    )


def virtual_server_to_xml(virtual_server: VirtualServer) -> bytes:
    root = ET.Element("virtualServer")
    _sub(root, "name", virtual_server.name)
    _sub(root, "description", virtual_server.description)
    _sub(root, "enabled", virtual_server.enabled)
    _sub(root, "ipAddress", virtual_server.ip_address)
    _sub(root, "protocol", virtual_server.protocol.value.lower())
    _sub(root, "port", virtual_server.port)
    _sub(root, "connectionLimit", virtual_server.connection_limit)
    _sub(root, "connectionRateLimit", virtual_server.connection_rate_limit)
    _sub(root, "applicationProfileId", virtual_server.application_profile_id)
    _sub(root, "defaultPoolId", virtual_server.default_pool_id)
    return ET.tostring(root)


def _endpoint_from_xml(element: ET.Element | None) -> FirewallEndpoint:
    # An omitted endpoint matches any address
    if element is None:
        return FirewallEndpoint(ip_addresses=[ANY_ADDRESS])
    addresses = [e.text.strip() for e in element.findall("ipAddress") if e.text]
    return FirewallEndpoint(ip_addresses=addresses or [ANY_ADDRESS])


def firewall_rule_from_xml(element: ET.Element) -> FirewallRule:
    application = element.find("application")
    services = []
    if application is not None:
        services = [
            FirewallService(
                protocol=_text(service, "protocol", "tcp").upper(),
                port=_text(service, "port", ANY_ADDRESS),
                source_port=_text(service, "sourcePort", ANY_ADDRESS),
            )
            for service in application.findall("service")
        ]
    return FirewallRule(
        id=_text(element, "id") or None,
        name=_text(element, "name"),
        rule_type=_text(element, "ruleType", "user"),
        action=_text(element, "action", "accept"),
        enabled=_bool(element, "enabled", True),
        logging_enabled=_bool(element, "loggingEnabled"),
        source=_endpoint_from_xml(element.find("source")),
        destination=_endpoint_from_xml(element.find("destination")),
        services=services,
    )


def firewall_rule_to_xml(rule: FirewallRule) -> bytes:
    root = ET.Element("firewallRules")
    node = ET.SubElement(root, "firewallRule")
    _sub(node, "name", rule.name)
    _sub(node, "action", rule.action)
    _sub(node, "enabled", rule.enabled)
    _sub(node, "loggingEnabled", rule.logging_enabled)
    for tag, endpoint in (("source", rule.source), ("destination", rule.destination)):
        addresses = [a for a in endpoint.ip_addresses if a != ANY_ADDRESS]
        if addresses:
            endpoint_node = ET.SubElement(node, tag)
            for address in addresses:
                _sub(endpoint_node, "ipAddress", address)
    if rule.services:
        application = ET.SubElement(node, "application")
        for service in rule.services:
            service_node = ET.SubElement(application, "service")
            _sub(service_node, "protocol", service.protocol.lower())
            _sub(service_node, "port", service.port)
            _sub(service_node, "sourcePort", service.source_port)
    return ET.tostring(root)


def allocated_addresses_from_xml(root: ET.Element) -> set[IPv4Address]:
    addresses: set[IPv4Address] = set()
    for allocation in root.findall("{*}IpAddress"):
        inner = allocation.find("{*}IpAddress")
        value = inner.text if inner is not None else allocation.text
        if value and value.strip():
            addresses.add(IPv4Address(value.strip()))
    return addresses


# =============================================================================
# Client
# =============================================================================


class VCloudClient:
    """LoadBalancerAPI implementation for one VDC edge gateway."""

    def __init__(
        self,
        credentials: Credentials,
        edge_gateway: str,
        sessions: SessionCache,
        *,
        http: requests.Session | None = None,
        timeout: int = REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the client.

        Args:
            credentials: Login and VDC scope; also the session cache key.
            edge_gateway: Name of the edge gateway to manage.
            sessions: Shared session cache.
            http: HTTP session shared by every calling thread. By default each
                thread gets its own requests.Session, which is not thread-safe.
            timeout: Per-request timeout in seconds.
        """
        self._credentials = credentials
        self._edge_gateway = edge_gateway
        self._sessions = sessions
        self._http = http
        if http is not None:
            http.verify = not credentials.insecure
        self._local = threading.local()
        self._timeout = timeout
        self._api_root = credentials.href.rstrip("/")
        self._host_root = self._api_root.removesuffix("/api")
        self._vdc_href: str | None = None
        self._edge_id: str | None = None

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _http_session(self) -> requests.Session:
        if self._http is not None:
            return self._http
        http = getattr(self._local, "http", None)
        if http is None:
            http = requests.Session()
            http.verify = not self._credentials.insecure
            self._local.http = http
        return http

    def _request(
        self,
        method: str,
        url: str,
        *,
        body: bytes | None = None,
        params: dict[str, str] | None = None,
        replay_on_401: bool = True,
    ) -> requests.Response:
        session = self._sessions.get(self._credentials)
        token: VCloudToken = session.handle
        headers = {
            AUTH_HEADER: token.token,
            "Accept": _accept_header(token.api_version),
        }
        if body is not None:
            headers["Content-Type"] = XML_CONTENT_TYPE

        try:
            response = self._http_session().request(
                method,
                url,
                data=body,
                params=params,
                headers=headers,
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise RemoteAPIError(f"{method} {url} failed: {e}") from e

        if response.status_code == 401 and replay_on_401:
            logger.warning("Session rejected, refreshing", extra={"url": url})
            self._sessions.get(self._credentials, force_refresh=True)
            return self._request(method, url, body=body, params=params, replay_on_401=False)

        if response.status_code >= 400:
            raise RemoteAPIError(
                f"{method} {url} failed with HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    def _get_xml(self, url: str, params: dict[str, str] | None = None) -> ET.Element:
        response = self._request("GET", url, params=params)
        try:
            return ET.fromstring(response.content)
        except ET.ParseError as e:
            raise RemoteAPIError(f"invalid XML from {url}: {e}") from e

    def _query(self, record_type: str, name: str) -> list[dict[str, str]]:
        """Run a records query filtered by name, returning record attributes."""
        root = self._get_xml(
            f"{self._api_root}/query",
            params={"type": record_type, "format": "records", "filter": f"name=={name}"},
        )
        return [dict(child.attrib) for child in root if child.tag.endswith("Record")]

    # -------------------------------------------------------------------------
    # Object resolution
    # -------------------------------------------------------------------------

    def _vdc(self) -> str:
        if self._vdc_href is None:
            records = self._query("orgVdc", self._credentials.vdc)
            if not records:
                raise RemoteAPIError(f"VDC not found: {self._credentials.vdc}")
            self._vdc_href = records[0]["href"]
        return self._vdc_href

    def _edge(self) -> str:
        if self._edge_id is None:
            vdc_href = self._vdc()
            records = [
                r
                for r in self._query("edgeGateway", self._edge_gateway)
                if r.get("vdc") == vdc_href
            ]
            if not records:
                raise RemoteAPIError(f"edge gateway not found: {self._edge_gateway}")
            self._edge_id = records[0]["href"].rstrip("/").rsplit("/", 1)[-1]
            logger.info(
                "Resolved edge gateway",
                extra={"edge_gateway": self._edge_gateway, "edge_id": self._edge_id},
            )
        return self._edge_id

    def _lb_url(self, collection: str, resource_id: str | None = None) -> str:
        url = f"{self._host_root}/network/edges/{self._edge()}/loadbalancer/config/{collection}"
        return f"{url}/{resource_id}" if resource_id else url

    def _firewall_url(self, rule_id: str | None = None) -> str:
        url = f"{self._host_root}/network/edges/{self._edge()}/firewall/config"
        return f"{url}/rules/{rule_id}" if rule_id else url

    def verify_edge_gateway(self) -> str:
        """Resolve the edge gateway eagerly, returning its id."""
        return self._edge()

    # -------------------------------------------------------------------------
    # Virtual servers
    # -------------------------------------------------------------------------

    def list_virtual_servers(self) -> list[VirtualServer]:
        root = self._get_xml(self._lb_url("virtualservers"))
        return [virtual_server_from_xml(e) for e in root.findall("virtualServer")]

    def get_virtual_server(self, name: str) -> Found[VirtualServer] | NotFound:
        return find_by_name(self.list_virtual_servers(), name)

    def create_virtual_server(self, virtual_server: VirtualServer) -> VirtualServer:
        response = self._request(
            "POST", self._lb_url("virtualservers"), body=virtual_server_to_xml(virtual_server)
        )
        return virtual_server.model_copy(update={"id": _id_from_location(response)})

    def delete_virtual_server(self, virtual_server_id: str) -> None:
        self._request("DELETE", self._lb_url("virtualservers", virtual_server_id))

    # -------------------------------------------------------------------------
    # Pools
    # -------------------------------------------------------------------------

    def list_pools(self) -> list[Pool]:
        root = self._get_xml(self._lb_url("pools"))
        return [pool_from_xml(e) for e in root.findall("pool")]

    def get_pool(self, name: str) -> Found[Pool] | NotFound:
        return find_by_name(self.list_pools(), name)

    def create_pool(self, pool: Pool) -> Pool:
        response = self._request("POST", self._lb_url("pools"), body=pool_to_xml(pool))
        return pool.model_copy(update={"id": _id_from_location(response)})

    def update_pool(self, pool: Pool) -> Pool:
        if not pool.id:
            raise RemoteAPIError(f"cannot update pool {pool.name} without an id")
        url = self._lb_url("pools", pool.id)
        self._request("PUT", url, body=pool_to_xml(pool))
        return pool_from_xml(self._get_xml(url))

    def delete_pool(self, pool_id: str) -> None:
        self._request("DELETE", self._lb_url("pools", pool_id))

    def get_application_profile_id(self, name: str) -> Found[str] | NotFound:
        root = self._get_xml(self._lb_url("applicationprofiles"))
        for profile in root.findall("applicationProfile"):
            if _text(profile, "name") == name:
                return Found(_text(profile, "applicationProfileId"))
        return NotFound(name)

    # -------------------------------------------------------------------------
    # Firewall
    # -------------------------------------------------------------------------

    def list_firewall_rules(self) -> list[FirewallRule]:
        root = self._get_xml(self._firewall_url())
        return [firewall_rule_from_xml(e) for e in root.iter("firewallRule")]

    def get_firewall_rule(self, name: str) -> Found[FirewallRule] | NotFound:
        return find_by_name(self.list_firewall_rules(), name)

    def create_firewall_rule(self, rule: FirewallRule) -> FirewallRule:
        response = self._request(
            "POST", f"{self._firewall_url()}/rules", body=firewall_rule_to_xml(rule)
        )
        return rule.model_copy(update={"id": _id_from_location(response)})

    def delete_firewall_rule(self, rule_id: str) -> None:
        self._request("DELETE", self._firewall_url(rule_id))

    # -------------------------------------------------------------------------
    # Networks
    # -------------------------------------------------------------------------

    def list_allocated_addresses(self, network_name: str) -> set[IPv4Address]:
        vdc_href = self._vdc()
        records = [
            r for r in self._query("orgVdcNetwork", network_name) if r.get("vdc") == vdc_href
        ]
        if not records:
            raise RemoteAPIError(f"no such network found with name: {network_name}")
        network_href = records[0]["href"].replace("/admin/network/", "/network/")
        root = self._get_xml(f"{network_href.rstrip('/')}/allocatedAddresses")
        return allocated_addresses_from_xml(root)
