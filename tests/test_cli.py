"""Tests for the vlb command line."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from vcloud_lb.cli import cli
from vcloud_lb.config import Config
from vcloud_lb.keylock import KeyLock
from vcloud_lb.loadbalancer import LoadBalancerReconciler
from vcloud_mock import MockEdgeGateway

ENV = {
    "VCLOUD_USER": "admin",
    "VCLOUD_PASSWORD": "secret",
    "VCLOUD_ORG": "acme",
    "VCLOUD_HREF": "https://vcd.example.com/api",
    "VCLOUD_VDC": "vdc-01",
    "VCLOUD_EDGE_GATEWAY": "edge-01",
    "VCLOUD_VDC_NETWORK_NAME": "lb-net",
    "VCLOUD_VDC_NETWORK_IPNET": "10.0.0.0/29",
    "CLOUD_CONFIG": "",
}

MANIFEST = {
    "service": {"name": "web", "ports": [{"port": 80, "nodePort": 30080}]},
    "nodes": [
        {
            "name": "worker-1",
            "labels": {"node-role.kubernetes.io/worker": "true"},
            "addresses": [{"type": "InternalIP", "address": "10.1.0.1"}],
        }
    ],
}


@pytest.fixture(autouse=True)
def restore_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def gateway() -> MockEdgeGateway:
    gw = MockEdgeGateway()
    gw.allocate("lb-net")
    return gw


@pytest.fixture
def runner(gateway: MockEdgeGateway) -> Iterator[CliRunner]:
    """CliRunner whose reconciler talks to the in-memory gateway."""

    def build(config: Config, locks: KeyLock | None = None, **_: object) -> tuple:
        reconciler = LoadBalancerReconciler(
            gateway,
            locks,
            network_name=config.network_name,
            network_cidr=config.network_cidr,
            application_profile=config.application_profile,
        )
        return reconciler, None

    with patch("vcloud_lb.cli.build_reconciler", side_effect=build):
        yield CliRunner(env=ENV)


@pytest.fixture
def manifest(tmp_path: Path) -> Path:
    path = tmp_path / "web.yaml"
    path.write_text(yaml.safe_dump(MANIFEST))
    return path


class TestCli:
    """Tests for vlb subcommands."""

    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_ensure_prints_status(
        self, runner: CliRunner, gateway: MockEdgeGateway, manifest: Path
    ) -> None:
        result = runner.invoke(cli, ["ensure", str(manifest)])

        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == {"ingress": [{"ip": "10.0.0.1"}]}
        assert len(gateway.virtual_servers) == 1

    def test_cluster_name_override(
        self, runner: CliRunner, gateway: MockEdgeGateway, manifest: Path
    ) -> None:
        result = runner.invoke(cli, ["--cluster-name", "prod", "ensure", str(manifest)])

        assert result.exit_code == 0, result.output
        (pool,) = gateway.pools.values()
        assert pool.name == "kube_pool_prod_default_web_30080"

    def test_get_after_ensure(self, runner: CliRunner, manifest: Path) -> None:
        runner.invoke(cli, ["ensure", str(manifest)])

        result = runner.invoke(cli, ["get", str(manifest)])

        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["ingress"][0]["ip"] == "10.0.0.1"

    def test_get_missing(self, runner: CliRunner, manifest: Path) -> None:
        result = runner.invoke(cli, ["get", str(manifest)])

        assert result.exit_code == 1
        assert "no load balancer for default/web" in result.output

    def test_update_missing_pool(self, runner: CliRunner, manifest: Path) -> None:
        result = runner.invoke(cli, ["update", str(manifest)])

        assert result.exit_code == 1
        assert "pool not found: kube_pool_kubernetes_default_web_30080" in result.output

    def test_update_and_delete(
        self, runner: CliRunner, gateway: MockEdgeGateway, manifest: Path
    ) -> None:
        runner.invoke(cli, ["ensure", str(manifest)])

        update = runner.invoke(cli, ["update", str(manifest)])
        delete = runner.invoke(cli, ["delete", str(manifest)])

        assert update.exit_code == 0, update.output
        assert "Updated default/web" in update.output
        assert delete.exit_code == 0, delete.output
        assert "Deleted default/web" in delete.output
        assert gateway.pools == {}

    def test_invalid_manifest(self, runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("service: {}\n")

        result = runner.invoke(cli, ["ensure", str(path)])

        assert result.exit_code == 1
        assert "Validation failed" in result.output

    def test_configuration_error(self, runner: CliRunner, manifest: Path) -> None:
        result = runner.invoke(cli, ["ensure", str(manifest)], env={"VCLOUD_USER": ""})

        assert result.exit_code == 1
        assert "VCLOUD_USER is required" in result.output

    def test_config_file(self, runner: CliRunner, manifest: Path, tmp_path: Path) -> None:
        config_path = tmp_path / "cloud.yaml"
        config_path.write_text(
            yaml.safe_dump(
                {
                    "user": "operator",
                    "password": "secret",
                    "org": "acme",
                    "href": "https://vcd.example.com/api",
                    "vdc": "vdc-01",
                    "edgeGateway": "edge-02",
                    "clusterName": "staging",
                }
            )
        )

        result = runner.invoke(cli, ["--config", str(config_path), "info"])

        assert result.exit_code == 0, result.output
        assert "edge-02" in result.output
        assert "staging" in result.output
        assert "secret" not in result.output

    def test_info_from_environment(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["info"])

        assert result.exit_code == 0, result.output
        assert "https://vcd.example.com/api" in result.output
        assert "lb-net (10.0.0.0/29)" in result.output
        assert "secret" not in result.output
