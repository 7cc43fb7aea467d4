"""Cloud-config and service manifest loading with validation.

All file reads enforce size limits and every document is validated at the
boundary, so a malformed file is reported with its path instead of failing
deep inside a reconciliation pass.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import (
    BOOL_FALSE_VALUES,
    BOOL_TRUE_VALUES,
    DEFAULT_APPLICATION_PROFILE,
    DEFAULT_CLUSTER_NAME,
    DEFAULT_RECONCILE_INTERVAL_SECONDS,
    DEFAULT_SESSION_VALIDITY_SECONDS,
    MAX_CONFIG_FILE_SIZE_BYTES,
    MAX_MANIFEST_FILE_SIZE_BYTES,
    NETWORK_CIDR_ENV,
    NETWORK_NAME_ENV,
    Config,
)
from .models import ServiceManifest

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")


class SpecLoadError(Exception):
    """Raised when a cloud-config or manifest cannot be loaded or validated."""

    pass


def _read_yaml_mapping(path: Path, max_size: int) -> dict[str, Any]:
    if not path.exists():
        raise SpecLoadError(f"File not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat {path}: {e}") from e

    if file_size > max_size:
        raise SpecLoadError(f"File exceeds maximum size of {max_size} bytes: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"File must contain a YAML mapping: {path}")

    return raw_data


def load_cloud_config(path: Path) -> Config:
    """Load controller configuration from a YAML cloud-config file.

    Keys follow the cloud-config convention (``user``, ``password``, ``org``,
    ``href``, ``vdc``, ``insecure``, ``edgeGateway``). The VIP network is a
    process-level setting and is always read from the environment.

    Raises:
        SpecLoadError: If the file cannot be read or parsed.
        ConfigurationError: If the resulting configuration is invalid.
    """
    data = _read_yaml_mapping(path, MAX_CONFIG_FILE_SIZE_BYTES)

    def get_str(key: str, default: str = "") -> str:
        value = data.get(key, default)
        return "" if value is None else str(value)

    def get_int(key: str, default: int) -> int:
        value = data.get(key, default)
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise SpecLoadError(f"{key} must be an integer in {path}: {value}") from e

    def get_bool(key: str, default: bool) -> bool:
        value = data.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in BOOL_TRUE_VALUES + BOOL_FALSE_VALUES:
            return value.lower() in BOOL_TRUE_VALUES
        raise SpecLoadError(f"{key} must be a boolean in {path}: {value!r}")

    config = Config(
        user=get_str("user"),
        password=get_str("password"),
        org=get_str("org"),
        href=get_str("href"),
        vdc=get_str("vdc"),
        edge_gateway=get_str("edgeGateway"),
        insecure=get_bool("insecure", False),
        cluster_name=get_str("clusterName", DEFAULT_CLUSTER_NAME),
        network_name=os.environ.get(NETWORK_NAME_ENV) or None,
        network_cidr=os.environ.get(NETWORK_CIDR_ENV) or None,
        application_profile=get_str("applicationProfile", DEFAULT_APPLICATION_PROFILE),
        session_validity_seconds=get_int(
            "sessionValiditySeconds", DEFAULT_SESSION_VALIDITY_SECONDS
        ),
        manifests_dir=Path(get_str("manifestsDir", "/manifests")),
        reconcile_interval_seconds=get_int(
            "reconcileIntervalSeconds", DEFAULT_RECONCILE_INTERVAL_SECONDS
        ),
    )
    logger.info("Loaded cloud-config from %s", path)
    return config


def load_manifest(path: Path) -> ServiceManifest:
    """Load and validate one service manifest.

    Supports both a flat document and a Kubernetes-style wrapper with
    ``apiVersion``/``kind``/``spec``.

    Raises:
        SpecLoadError: If the manifest cannot be loaded or fails validation.
    """
    raw_data = _read_yaml_mapping(path, MAX_MANIFEST_FILE_SIZE_BYTES)

    if "apiVersion" in raw_data and "spec" in raw_data:
        data = raw_data.get("spec", {})
        if not isinstance(data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {path}")
    else:
        data = raw_data

    try:
        manifest = ServiceManifest.model_validate(data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {path}:\n{error_list}") from e

    logger.debug("Loaded manifest for service '%s' from %s", manifest.service.name, path)
    return manifest


def list_manifest_paths(manifests_dir: Path) -> list[Path]:
    """Return the manifest files of a directory, sorted by file name.

    Raises:
        SpecLoadError: If the directory does not exist.
    """
    if not manifests_dir.is_dir():
        raise SpecLoadError(f"Manifests directory does not exist: {manifests_dir}")

    return sorted(
        p for p in manifests_dir.iterdir() if p.is_file() and p.suffix in MANIFEST_SUFFIXES
    )
