"""
Topology planning: which nodes are masters, which replicate whom, and which
hash slots each master serves.

plan() is a pure function. Given the same ordered input it always returns
the same plan, which keeps provisioning reproducible in tests.
"""

from collections.abc import Sequence
from dataclasses import replace
from pathlib import Path

from operator_cluster.config import ClusterConfig
from operator_cluster.exceptions import InvalidTopology
from operator_cluster.types import (
    HASH_SLOTS,
    Assignment,
    NodeRole,
    NodeSpec,
    SlotRange,
    TopologyPlan,
)


def slot_ranges(master_count: int) -> list[SlotRange]:
    """
    Split the hash slot space evenly across masters.

    Follows redis-cli's allocation: a fractional cursor advances by
    HASH_SLOTS / master_count and each boundary is rounded, with the last
    master taking whatever remains up to slot 16383.
    """
    if master_count < 1:
        raise InvalidTopology(f"Cannot allocate slots to {master_count} masters")

    per_master = HASH_SLOTS / master_count
    ranges = []
    first = 0
    cursor = 0.0
    for i in range(master_count):
        last = round(cursor + per_master - 1)
        if last > HASH_SLOTS - 1 or i == master_count - 1:
            last = HASH_SLOTS - 1
        ranges.append(SlotRange(first, last))
        first = last + 1
        cursor += per_master
    return ranges


def plan(nodes: Sequence[NodeSpec], replica_factor: int) -> TopologyPlan:
    """
    Arrange nodes into masters and replicas.

    The first len(nodes) / (replica_factor + 1) nodes become masters. The
    remaining nodes are dealt round-robin, one replica per master per round.

    Args:
        nodes: Ordered node specs; order decides roles.
        replica_factor: Replicas per master.

    Returns:
        TopologyPlan whose specs carry the planned role_hint.

    Raises:
        InvalidTopology: On negative replica factor, uneven division, fewer
            than one master, or duplicate (host, port) identities.
    """
    if replica_factor < 0:
        raise InvalidTopology(f"Replica factor must be >= 0, got {replica_factor}")

    group = replica_factor + 1
    if len(nodes) % group != 0:
        raise InvalidTopology(
            f"{len(nodes)} nodes cannot be split into groups of "
            f"{group} (1 master + {replica_factor} replicas)"
        )

    master_count = len(nodes) // group
    if master_count < 1:
        raise InvalidTopology("Topology needs at least one master")

    if len(set(nodes)) != len(nodes):
        raise InvalidTopology("Node list contains duplicate host:port identities")

    masters = [replace(n, role_hint=NodeRole.MASTER) for n in nodes[:master_count]]
    replicas: list[list[NodeSpec]] = [[] for _ in masters]
    for i, node in enumerate(nodes[master_count:]):
        replicas[i % master_count].append(replace(node, role_hint=NodeRole.REPLICA))

    assignments = tuple(
        Assignment(master=m, replicas=tuple(r), slots=s)
        for m, r, s in zip(masters, replicas, slot_ranges(master_count))
    )
    return TopologyPlan(assignments=assignments, replica_factor=replica_factor)


def build_node_specs(config: ClusterConfig, host: str, root_dir: Path) -> list[NodeSpec]:
    """
    Derive one NodeSpec per configured port.

    Node i listens on base_port + i, gossips on that port plus
    bus_port_offset, and owns root_dir/node-<port>.
    """
    return [
        NodeSpec(
            id=f"node-{port}",
            host=host,
            port=port,
            bus_port=port + config.bus_port_offset,
            data_dir=root_dir / f"node-{port}",
        )
        for port in config.ports
    ]
