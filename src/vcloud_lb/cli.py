"""vCloud load-balancer CLI (vlb).

One-shot reconciliation of a single service manifest, for operators working
outside the sync loop.

Usage:
    vlb ensure service.yaml      # Create or complete the load balancer
    vlb update service.yaml      # Refresh pool membership only
    vlb delete service.yaml      # Remove virtual servers, pools and rule
    vlb get service.yaml         # Show the current status
    vlb info                     # Show the effective configuration
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click

from .allocator import AddressExhaustedError
from .config import Config, ConfigurationError
from .keylock import KeyLock
from .loadbalancer import LoadBalancerReconciler
from .main import build_reconciler, load_config, setup_logging
from .models import LoadBalancerStatus, ServiceManifest
from .remote import NotFoundError, RemoteAPIError
from .spec_loader import SpecLoadError, load_cloud_config, load_manifest

# Failures reported as a clean error message instead of a traceback
DOMAIN_ERRORS = (
    AddressExhaustedError,
    ConfigurationError,
    NotFoundError,
    RemoteAPIError,
    SpecLoadError,
)

MANIFEST_ARGUMENT = click.argument(
    "manifest", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)


class CliContext:
    """Lazily built configuration and reconciler shared by subcommands."""

    def __init__(self, config_path: Path | None, cluster_name: str | None) -> None:
        self.config_path = config_path
        self.cluster_name_override = cluster_name
        self._config: Config | None = None
        self._reconciler: LoadBalancerReconciler | None = None

    @property
    def config(self) -> Config:
        if self._config is None:
            if self.config_path is not None:
                self._config = load_cloud_config(self.config_path)
            else:
                self._config = load_config()
        return self._config

    @property
    def cluster_name(self) -> str:
        return self.cluster_name_override or self.config.cluster_name

    @property
    def reconciler(self) -> LoadBalancerReconciler:
        if self._reconciler is None:
            self._reconciler, _ = build_reconciler(self.config, locks=KeyLock())
        return self._reconciler


def echo_status(status: LoadBalancerStatus | None) -> None:
    payload = status.model_dump() if status is not None else None
    click.echo(json.dumps(payload, indent=2))


def _load(manifest: Path) -> ServiceManifest:
    try:
        return load_manifest(manifest)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(version="0.1.0", prog_name="vlb")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML cloud-config file (default: environment variables)",
)
@click.option("--cluster-name", help="Override the cluster name used in resource names")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(
    ctx: click.Context, config_path: Path | None, cluster_name: str | None, verbose: bool
) -> None:
    """vCloud Director edge load-balancer reconciler."""
    setup_logging(logging.DEBUG if verbose else logging.WARNING, stream=sys.stderr)
    ctx.obj = CliContext(config_path, cluster_name)


@cli.command()
@MANIFEST_ARGUMENT
@click.pass_obj
def ensure(obj: CliContext, manifest: Path) -> None:
    """Create or complete the load balancer of a service."""
    data = _load(manifest)
    try:
        status = obj.reconciler.ensure_load_balancer(obj.cluster_name, data.service, data.nodes)
    except DOMAIN_ERRORS as e:
        raise click.ClickException(str(e)) from e
    echo_status(status)


@cli.command()
@MANIFEST_ARGUMENT
@click.pass_obj
def update(obj: CliContext, manifest: Path) -> None:
    """Refresh the pool members of a service."""
    data = _load(manifest)
    try:
        obj.reconciler.update_load_balancer(obj.cluster_name, data.service, data.nodes)
    except DOMAIN_ERRORS as e:
        raise click.ClickException(str(e)) from e
    click.secho(f"✓ Updated {data.service.namespace}/{data.service.name}", fg="green")


@cli.command()
@MANIFEST_ARGUMENT
@click.pass_obj
def delete(obj: CliContext, manifest: Path) -> None:
    """Delete the load balancer of a service."""
    data = _load(manifest)
    try:
        obj.reconciler.ensure_load_balancer_deleted(obj.cluster_name, data.service)
    except DOMAIN_ERRORS as e:
        raise click.ClickException(str(e)) from e
    click.secho(f"✓ Deleted {data.service.namespace}/{data.service.name}", fg="green")


@cli.command()
@MANIFEST_ARGUMENT
@click.pass_obj
def get(obj: CliContext, manifest: Path) -> None:
    """Show the load-balancer status of a service."""
    data = _load(manifest)
    try:
        status, exists = obj.reconciler.get_load_balancer(obj.cluster_name, data.service)
    except DOMAIN_ERRORS as e:
        raise click.ClickException(str(e)) from e
    if not exists:
        raise click.ClickException(
            f"no load balancer for {data.service.namespace}/{data.service.name}"
        )
    echo_status(status)


@cli.command()
@click.pass_obj
def info(obj: CliContext) -> None:
    """Show the effective configuration (credentials omitted)."""
    try:
        config = obj.config
    except DOMAIN_ERRORS as e:
        raise click.ClickException(str(e)) from e

    click.echo("vCloud load balancer (vlb)")
    click.echo("=" * 40)
    click.echo(f"Endpoint:      {config.href}{' (insecure)' if config.insecure else ''}")
    click.echo(f"Org / VDC:     {config.org} / {config.vdc}")
    click.echo(f"Edge gateway:  {config.edge_gateway}")
    click.echo(f"Cluster name:  {obj.cluster_name}")
    network = f"{config.network_name} ({config.network_cidr})" if config.network_name else "-"
    click.echo(f"VIP network:   {network}")
    click.echo(f"App profile:   {config.application_profile}")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
