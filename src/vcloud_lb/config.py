"""Configuration management with validation.

Connection settings for the vCloud Director backend plus the knobs of the
reconciliation loop. Everything is validated at construction time so a bad
deployment fails at startup rather than on the first service event.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from .session import Credentials


class ConfigurationError(Exception):
    """Raised when configuration or service input validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_CLUSTER_NAME = "kubernetes"
DEFAULT_APPLICATION_PROFILE = "ingress"

DEFAULT_SESSION_VALIDITY_SECONDS = 20 * 60
MIN_SESSION_VALIDITY_SECONDS = 60

DEFAULT_RECONCILE_INTERVAL_SECONDS = 60
MIN_RECONCILE_INTERVAL_SECONDS = 10
MAX_RECONCILE_INTERVAL_SECONDS = 3600

# vCloud rejects object names longer than this
MAX_REMOTE_NAME_LENGTH = 255

MAX_CONFIG_FILE_SIZE_BYTES = 1024 * 1024
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024

# Process-level inputs selecting the network used for internal VIPs
NETWORK_NAME_ENV = "VCLOUD_VDC_NETWORK_NAME"
NETWORK_CIDR_ENV = "VCLOUD_VDC_NETWORK_IPNET"

BOOL_TRUE_VALUES = ("true", "1", "yes")
BOOL_FALSE_VALUES = ("false", "0", "no")

VALID_HREF_PATTERN = r"^https?://[^\s/]+(/\S*)?$"
VALID_CLUSTER_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,62}$"


@dataclass(frozen=True)
class Config:
    """Controller configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError listing every problem found.
    """

    # vCloud Director connection
    user: str
    password: str = field(repr=False)
    org: str
    href: str
    vdc: str
    edge_gateway: str
    insecure: bool = False

    # Naming
    cluster_name: str = DEFAULT_CLUSTER_NAME

    # Internal VIP allocation
    network_name: str | None = None
    network_cidr: str | None = None

    application_profile: str = DEFAULT_APPLICATION_PROFILE
    session_validity_seconds: int = DEFAULT_SESSION_VALIDITY_SECONDS

    # Manifest sync loop
    manifests_dir: Path = field(default_factory=lambda: Path("/manifests"))
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS

    def __post_init__(self) -> None:
        errors: list[str] = []

        for attr, env_name in (
            ("user", "VCLOUD_USER"),
            ("password", "VCLOUD_PASSWORD"),
            ("org", "VCLOUD_ORG"),
            ("vdc", "VCLOUD_VDC"),
            ("edge_gateway", "VCLOUD_EDGE_GATEWAY"),
        ):
            if not getattr(self, attr):
                errors.append(f"{env_name} is required")

        if not self.href:
            errors.append("VCLOUD_HREF is required")
        elif not re.match(VALID_HREF_PATTERN, self.href):
            errors.append(f"VCLOUD_HREF must be an http(s) URL: {self.href}")

        if not re.match(VALID_CLUSTER_NAME_PATTERN, self.cluster_name):
            errors.append(
                f"CLUSTER_NAME must match pattern {VALID_CLUSTER_NAME_PATTERN}: "
                f"{self.cluster_name}"
            )

        # Both or neither: a network name without a range cannot be scanned
        if bool(self.network_name) != bool(self.network_cidr):
            errors.append(f"{NETWORK_NAME_ENV} and {NETWORK_CIDR_ENV} must be set together")

        if self.session_validity_seconds < MIN_SESSION_VALIDITY_SECONDS:
            errors.append(
                f"SESSION_VALIDITY_SECONDS must be at least {MIN_SESSION_VALIDITY_SECONDS}"
            )

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def credentials(self) -> Credentials:
        """Credential set identifying this controller's backend session."""
        return Credentials(
            user=self.user,
            password=self.password,
            org=self.org,
            href=self.href,
            vdc=self.vdc,
            insecure=self.insecure,
        )

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            VCLOUD_USER, VCLOUD_PASSWORD, VCLOUD_ORG: Login credentials
            VCLOUD_HREF: API endpoint, e.g. https://vcd.example.com/api
            VCLOUD_VDC: Virtual datacenter name
            VCLOUD_EDGE_GATEWAY: Edge gateway owning the load balancer
            VCLOUD_INSECURE: If "true", skip TLS verification (default: false)
            CLUSTER_NAME: Cluster name used in resource names (default: kubernetes)
            VCLOUD_VDC_NETWORK_NAME: Org VDC network for internal VIPs
            VCLOUD_VDC_NETWORK_IPNET: CIDR of that network
            APPLICATION_PROFILE: Edge application profile name (default: ingress)
            SESSION_VALIDITY_SECONDS: Cached session lifetime (default: 1200)
            MANIFESTS_DIR: Directory of service manifests (default: /manifests)
            RECONCILE_INTERVAL: Seconds between sync cycles (default: 60)
        """
        return cls(
            user=os.environ.get("VCLOUD_USER", ""),
            password=os.environ.get("VCLOUD_PASSWORD", ""),
            org=os.environ.get("VCLOUD_ORG", ""),
            href=os.environ.get("VCLOUD_HREF", ""),
            vdc=os.environ.get("VCLOUD_VDC", ""),
            edge_gateway=os.environ.get("VCLOUD_EDGE_GATEWAY", ""),
            insecure=get_bool("VCLOUD_INSECURE", False),
            cluster_name=os.environ.get("CLUSTER_NAME", DEFAULT_CLUSTER_NAME),
            network_name=os.environ.get(NETWORK_NAME_ENV) or None,
            network_cidr=os.environ.get(NETWORK_CIDR_ENV) or None,
            application_profile=os.environ.get(
                "APPLICATION_PROFILE", DEFAULT_APPLICATION_PROFILE
            ),
            session_validity_seconds=get_int(
                "SESSION_VALIDITY_SECONDS", DEFAULT_SESSION_VALIDITY_SECONDS
            ),
            manifests_dir=Path(os.environ.get("MANIFESTS_DIR", "/manifests")),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
        )


def get_int(key: str, default: int) -> int:
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be an integer: {value}") from e


def get_bool(key: str, default: bool) -> bool:
    value = os.environ.get(key, "").lower()
    if not value:
        return default
    return value in BOOL_TRUE_VALUES
