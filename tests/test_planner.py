"""Tests for topology planning, slot allocation and node spec derivation."""

from dataclasses import replace
from pathlib import Path

import pytest

from conftest import make_specs
from operator_cluster.config import ClusterConfig
from operator_cluster.exceptions import InvalidTopology
from operator_cluster.planner import build_node_specs, plan, slot_ranges
from operator_cluster.types import HASH_SLOTS, NodeRole


class TestPlan:
    """Tests for plan() master/replica assignment."""

    def test_six_nodes_one_replica(self):
        """N=6, R=1 gives 3 masters each with 1 replica."""
        specs = make_specs(6)

        topology = plan(specs, replica_factor=1)

        assert [m.port for m in topology.masters] == [7001, 7002, 7003]
        assert [[r.port for r in a.replicas] for a in topology.assignments] == [
            [7004],
            [7005],
            [7006],
        ]
        assert topology.seed.port == 7001
        assert topology.replica_factor == 1

    def test_replicas_dealt_round_robin(self):
        """Remaining nodes go one per master per round."""
        specs = make_specs(9)

        topology = plan(specs, replica_factor=2)

        assert [[r.port for r in a.replicas] for a in topology.assignments] == [
            [7004, 7007],
            [7005, 7008],
            [7006, 7009],
        ]

    @pytest.mark.parametrize(
        "node_count,replica_factor",
        [(1, 0), (3, 0), (2, 1), (6, 1), (6, 2), (8, 3), (12, 2), (10, 4)],
    )
    def test_every_master_gets_exactly_r_replicas(self, node_count, replica_factor):
        """For N % (R+1) == 0: N/(R+1) masters, R replicas each, every node once."""
        specs = make_specs(node_count)

        topology = plan(specs, replica_factor)

        assert len(topology.masters) == node_count // (replica_factor + 1)
        assert all(len(a.replicas) == replica_factor for a in topology.assignments)
        ports = [n.port for n in topology.nodes]
        assert sorted(ports) == sorted(s.port for s in specs)
        assert len(set(ports)) == node_count

    def test_role_hints_assigned(self):
        topology = plan(make_specs(6), replica_factor=1)

        assert all(m.role_hint is NodeRole.MASTER for m in topology.masters)
        assert all(r.role_hint is NodeRole.REPLICA for r in topology.replicas)

    def test_deterministic(self):
        """Same ordered input, same plan."""
        specs = make_specs(6)

        assert plan(specs, 1) == plan(specs, 1)

    def test_uneven_division_fails(self):
        """7 nodes cannot be split into groups of 2."""
        with pytest.raises(InvalidTopology, match="7 nodes"):
            plan(make_specs(7), replica_factor=1)

    def test_six_nodes_two_replicas_succeeds(self):
        """6 % 3 == 0, so N=6, R=2 is valid: 2 masters."""
        topology = plan(make_specs(6), replica_factor=2)

        assert len(topology.masters) == 2

    def test_no_nodes_fails(self):
        with pytest.raises(InvalidTopology, match="at least one master"):
            plan([], replica_factor=0)

    def test_negative_replica_factor_fails(self):
        with pytest.raises(InvalidTopology, match="Replica factor"):
            plan(make_specs(3), replica_factor=-1)

    def test_duplicate_identity_fails(self):
        specs = make_specs(2)
        duplicate = replace(specs[0], id="other-id")

        with pytest.raises(InvalidTopology, match="duplicate"):
            plan([specs[0], duplicate], replica_factor=1)

    def test_input_specs_untouched(self):
        specs = make_specs(2)

        plan(specs, replica_factor=1)

        assert all(s.role_hint is NodeRole.UNASSIGNED for s in specs)


class TestSlotRanges:
    """Tests for hash slot allocation."""

    def test_three_masters_match_redis_cli(self):
        ranges = slot_ranges(3)

        assert [(r.start, r.end) for r in ranges] == [
            (0, 5460),
            (5461, 10922),
            (10923, 16383),
        ]

    @pytest.mark.parametrize("masters", [1, 2, 3, 5, 7, 10])
    def test_ranges_cover_all_slots_contiguously(self, masters):
        ranges = slot_ranges(masters)

        assert ranges[0].start == 0
        assert ranges[-1].end == HASH_SLOTS - 1
        for prev, cur in zip(ranges, ranges[1:]):
            assert cur.start == prev.end + 1
        assert sum(len(r) for r in ranges) == HASH_SLOTS

    def test_plan_assigns_slots_to_masters(self):
        topology = plan(make_specs(6), replica_factor=1)

        assert topology.assignments[0].slots.start == 0
        assert topology.assignments[-1].slots.end == HASH_SLOTS - 1


class TestBuildNodeSpecs:
    """Tests for deriving specs from config."""

    def test_ports_bus_ports_and_dirs(self):
        config = ClusterConfig(
            node_count=3,
            replica_factor=0,
            base_port=7001,
            bus_port_offset=10000,
            health_timeout=30,
            convergence_timeout=120,
            poll_interval=1,
        )

        specs = build_node_specs(config, "127.0.0.1", Path("/data"))

        assert [s.port for s in specs] == [7001, 7002, 7003]
        assert [s.bus_port for s in specs] == [17001, 17002, 17003]
        assert specs[0].id == "node-7001"
        assert specs[2].data_dir == Path("/data/node-7003")
        assert specs[0].address == "127.0.0.1:7001"

    def test_identity_is_host_and_port(self):
        """A planned copy still equals the unplanned NodeSpec."""
        spec = make_specs(1)[0]
        planned = replace(spec, role_hint=NodeRole.MASTER, data_dir=Path("/elsewhere"))

        assert planned == spec
        assert hash(planned) == hash(spec)
