"""Manifest-driven reconciliation loop.

Drives the LoadBalancerReconciler from YAML service manifests on disk
instead of a cluster watch:
1. List manifests in the manifests directory
2. Reconcile every service concurrently, one worker thread each
   (``state: present`` -> ensure, ``state: absent`` -> delete)
3. Repeat on interval

A failing service is logged and retried on the next cycle; it never blocks
the others. After repeated fully-failing cycles a circuit breaker pauses the
loop so a broken backend is not hammered.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

from .config import Config
from .keylock import KeyLockUsageError
from .loadbalancer import LoadBalancerReconciler
from .models import LoadBalancerStatus, ServiceManifest
from .spec_loader import SpecLoadError, list_manifest_paths, load_manifest

logger = logging.getLogger(__name__)

# Circuit breaker constants
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300


@dataclass
class ServiceResult:
    """Outcome of reconciling one manifest."""

    manifest: Path
    service: str | None = None
    action: str = "ensure"
    status: LoadBalancerStatus | None = None
    error: Exception | None = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class SyncResult:
    """Result of a single sync cycle."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    services: list[ServiceResult] = field(default_factory=list)
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def failed(self) -> list[ServiceResult]:
        return [s for s in self.services if not s.success]

    @property
    def success(self) -> bool:
        """A cycle fails when it could not run or no service succeeded."""
        if self.error is not None:
            return False
        return not self.services or len(self.failed) < len(self.services)


class ServiceSync:
    """Periodically reconciles every manifest in a directory."""

    def __init__(self, config: Config, reconciler: LoadBalancerReconciler) -> None:
        self._config = config
        self._reconciler = reconciler
        self._shutdown_event = asyncio.Event()

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_open_until: datetime | None = None

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def circuit_open(self) -> bool:
        return self._circuit_open_until is not None

    async def run(self) -> None:
        """Run sync cycles at the configured interval until shutdown."""
        interval = self._config.reconcile_interval_seconds
        logger.info(
            "Starting service sync",
            extra={
                "manifests_dir": str(self._config.manifests_dir),
                "interval_seconds": interval,
                "cluster_name": self._config.cluster_name,
            },
        )

        while not self._shutdown_event.is_set():
            if self._circuit_open_until is not None:
                now = datetime.now(UTC)
                if now < self._circuit_open_until:
                    remaining = (self._circuit_open_until - now).total_seconds()
                    logger.warning(
                        "Circuit breaker open, skipping sync",
                        extra={
                            "remaining_seconds": remaining,
                            "consecutive_failures": self._consecutive_failures,
                        },
                    )
                    await self._wait(min(remaining, interval))
                    continue

                logger.info("Circuit breaker reset, resuming sync")
                self._circuit_open_until = None
                self._consecutive_failures = 0

            result = await self.sync_once()
            self._record(result)
            await self._wait(interval)

        logger.info("Service sync shutdown complete")

    def shutdown(self) -> None:
        """Signal the loop to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except TimeoutError:
            pass

    def _record(self, result: SyncResult) -> None:
        log_data = {
            "services": len(result.services),
            "failed": len(result.failed),
            "duration_seconds": result.duration_seconds,
        }
        if result.success:
            self._consecutive_failures = 0
            logger.info("Sync cycle complete", extra=log_data)
            return

        self._consecutive_failures += 1
        logger.error(
            "Sync cycle failed",
            extra={**log_data, "error": str(result.error) if result.error else None},
        )
        if self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
            self._circuit_open_until = datetime.now(UTC) + timedelta(
                seconds=CIRCUIT_BREAKER_RESET_SECONDS
            )
            logger.error(
                "Circuit breaker opened after consecutive failures",
                extra={
                    "consecutive_failures": self._consecutive_failures,
                    "reset_seconds": CIRCUIT_BREAKER_RESET_SECONDS,
                },
            )

    async def sync_once(self) -> SyncResult:
        """Reconcile every manifest once, all services concurrently."""
        result = SyncResult()
        try:
            paths = list_manifest_paths(self._config.manifests_dir)
        except SpecLoadError as e:
            result.error = e
            result.end_time = datetime.now(UTC)
            return result

        result.services = list(
            await asyncio.gather(*(asyncio.to_thread(self._sync_path, path) for path in paths))
        )
        result.end_time = datetime.now(UTC)
        return result

    def _sync_path(self, path: Path) -> ServiceResult:
        result = ServiceResult(manifest=path)
        try:
            manifest = load_manifest(path)
            result.service = manifest.service.name
            self._apply(manifest, result)
        except KeyLockUsageError:
            raise
        except Exception as e:
            # One broken service must not stop the rest of the cycle
            result.error = e
            logger.error(
                "Service reconciliation failed",
                extra={
                    "manifest": str(path),
                    "service": result.service,
                    "action": result.action,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
        return result

    def _apply(self, manifest: ServiceManifest, result: ServiceResult) -> None:
        cluster_name = self._config.cluster_name
        if manifest.state == "absent":
            result.action = "delete"
            _, exists = self._reconciler.get_load_balancer(cluster_name, manifest.service)
            if exists:
                self._reconciler.ensure_load_balancer_deleted(cluster_name, manifest.service)
            return

        result.status = self._reconciler.ensure_load_balancer(
            cluster_name, manifest.service, manifest.nodes
        )
