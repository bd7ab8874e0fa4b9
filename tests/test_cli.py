"""Tests for the operator-cluster command line."""

import pytest
from typer.testing import CliRunner

from conftest import make_specs
from operator_cluster.cli.main import app
from operator_cluster.cli.output import status_table
from operator_cluster.manifest import (
    MANIFEST_FILE,
    NodeRecord,
    SessionManifest,
    save_manifest,
)
from operator_cluster.planner import plan
from operator_cluster.types import ClusterState, ClusterStatus, NodeRole

runner = CliRunner()


@pytest.fixture
def work_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("OPERATOR_CLUSTER_WORK_DIR", str(tmp_path))
    monkeypatch.setenv("OPERATOR_CLUSTER_LOG_LEVEL", "WARNING")
    return tmp_path


def write_manifest(work_dir, node_count=3):
    root = work_dir / "cluster-7001"
    specs = make_specs(node_count, root)
    for spec in specs:
        spec.data_dir.mkdir(parents=True)
    manifest = SessionManifest(
        session_id="abc12345",
        state="ready",
        replica_factor=0,
        root_dir=root,
        nodes=[
            NodeRecord(
                id=s.id, host=s.host, port=s.port, bus_port=s.bus_port, data_dir=s.data_dir
            )
            for s in specs
        ],
    )
    save_manifest(manifest, work_dir / MANIFEST_FILE)
    return root


class TestProvision:
    def test_node_count_is_required(self, work_dir):
        result = runner.invoke(app, ["provision", "--replicas", "1", "--base-port", "7001"])

        assert result.exit_code == 2

    def test_replica_factor_is_required(self, work_dir):
        result = runner.invoke(app, ["provision", "--nodes", "6", "--base-port", "7001"])

        assert result.exit_code == 2

    def test_invalid_port_range(self, work_dir):
        result = runner.invoke(
            app, ["provision", "--nodes", "6", "--replicas", "1", "--base-port", "60000"]
        )

        assert result.exit_code == 2
        assert "Invalid configuration" in result.output

    def test_uneven_topology_fails_before_launch(self, work_dir):
        result = runner.invoke(
            app, ["provision", "--nodes", "7", "--replicas", "1", "--base-port", "7001"]
        )

        assert result.exit_code == 1
        assert "InvalidTopology" in result.output
        assert not (work_dir / MANIFEST_FILE).exists()
        assert not (work_dir / "cluster-7001").exists()

    def test_refuses_when_session_recorded(self, work_dir):
        write_manifest(work_dir)

        result = runner.invoke(
            app, ["provision", "--nodes", "3", "--replicas", "0", "--base-port", "7001"]
        )

        assert result.exit_code == 1
        assert "teardown" in result.output


class TestTeardown:
    def test_nothing_to_tear_down(self, work_dir):
        result = runner.invoke(app, ["teardown"])

        assert result.exit_code == 0
        assert "Nothing to tear down" in result.output

    def test_removes_recorded_nodes(self, work_dir):
        root = write_manifest(work_dir)

        result = runner.invoke(app, ["teardown"])

        assert result.exit_code == 0
        assert not root.exists()
        assert not (work_dir / MANIFEST_FILE).exists()

    def test_teardown_twice(self, work_dir):
        write_manifest(work_dir)

        first = runner.invoke(app, ["teardown"])
        second = runner.invoke(app, ["teardown"])

        assert first.exit_code == 0
        assert second.exit_code == 0


class TestStatus:
    def test_no_session(self, work_dir):
        result = runner.invoke(app, ["status"])

        assert result.exit_code == 1
        assert "No session recorded" in result.output


class TestStatusTable:
    def test_planned_vs_observed(self):
        nodes = plan(make_specs(2), replica_factor=1).nodes
        status = ClusterStatus(
            state=ClusterState.DEGRADED,
            known_node_count=2,
            master_count=2,
            per_node_role={n.address: NodeRole.MASTER for n in nodes},
        )

        table = status_table(nodes, status, alive={"node-7001": True})

        assert table.row_count == 2
        assert len(table.columns) == 5
        assert "masters: 2" in table.caption
