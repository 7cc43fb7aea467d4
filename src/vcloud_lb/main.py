"""Main entry point for the vCloud load-balancer controller.

Wires the shared SessionCache and KeyLock into a VCloudClient and a
LoadBalancerReconciler, then runs the manifest sync loop until SIGTERM.
Configuration comes from the cloud-config file named by CLOUD_CONFIG when
set, otherwise from the environment.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TextIO

from .config import Config, ConfigurationError
from .keylock import KeyLock
from .loadbalancer import LoadBalancerReconciler
from .remote import RemoteAPIError
from .session import SessionCache
from .spec_loader import SpecLoadError, load_cloud_config
from .sync import ServiceSync
from .vcloud import VCloudClient, authenticate

# Attributes every LogRecord carries; anything else came in through extra=
_RESERVED_RECORD_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO, stream: TextIO | None = None) -> None:
    """Configure structured logging with JSON output (stdout by default)."""
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the HTTP stack
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)


def load_config() -> Config:
    """Load configuration from CLOUD_CONFIG if set, else from the environment."""
    cloud_config = os.environ.get("CLOUD_CONFIG")
    if cloud_config:
        return load_cloud_config(Path(cloud_config))
    return Config.from_env()


def build_reconciler(
    config: Config,
    sessions: SessionCache | None = None,
    locks: KeyLock | None = None,
) -> tuple[LoadBalancerReconciler, VCloudClient]:
    """Assemble the reconciler and its backend client for ``config``."""
    if sessions is None:
        sessions = SessionCache(
            authenticate, validity=timedelta(seconds=config.session_validity_seconds)
        )
    client = VCloudClient(config.credentials, config.edge_gateway, sessions)
    reconciler = LoadBalancerReconciler(
        client,
        locks,
        network_name=config.network_name,
        network_cidr=config.network_cidr,
        application_profile=config.application_profile,
    )
    return reconciler, client


async def main() -> int:
    """Run the controller.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = load_config()
    except (ConfigurationError, SpecLoadError) as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting vCloud load-balancer controller",
        extra={
            "href": config.href,
            "org": config.org,
            "vdc": config.vdc,
            "edge_gateway": config.edge_gateway,
            "cluster_name": config.cluster_name,
        },
    )

    reconciler, client = build_reconciler(config)

    # Log in and resolve the edge gateway up front: a wrong gateway name
    # should stop the process, not fail every service later
    try:
        await asyncio.to_thread(client.verify_edge_gateway)
    except RemoteAPIError as e:
        logger.error(
            "Cannot reach edge gateway",
            extra={"edge_gateway": config.edge_gateway, "error": str(e)},
        )
        return 1

    sync = ServiceSync(config, reconciler)
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        sync.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await sync.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Controller stopped")
    return 0


def run() -> None:
    """Entry point for the controller process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
