"""Shared fakes: an in-memory cluster that answers admin commands."""

from pathlib import Path

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ReadOnlyError, ResponseError

from operator_cluster.admin import ClusterNodeEntry
from operator_cluster.types import NodeSpec


def make_specs(count: int, root: Path | None = None, base_port: int = 7001) -> list[NodeSpec]:
    root = root or Path("/tmp/operator-cluster-tests")
    return [
        NodeSpec(
            id=f"node-{base_port + i}",
            host="127.0.0.1",
            port=base_port + i,
            bus_port=base_port + i + 10000,
            data_dir=root / f"node-{base_port + i}",
        )
        for i in range(count)
    ]


class FakeNode:
    """State of one simulated server."""

    def __init__(self, spec: NodeSpec):
        self.spec = spec
        self.node_id = f"{spec.port:040d}"
        self.known: set[int] = set()
        self.slots: list[tuple[int, int]] = []
        self.master_id: str | None = None
        self.epoch = 0
        self.flushes = 0
        self.resets = 0
        self.alive = True


class FakeCluster:
    """
    In-memory stand-in for a set of cluster nodes.

    Attributes:
        hidden: port -> number of seed CLUSTER NODES calls during which the
            node still shows as handshake (-1: never becomes visible)
        replicate_failures: port -> "Unknown node" replies before REPLICATE works
        unreachable: ports that refuse connections
        meet_order: ports in the order they issued CLUSTER MEET
    """

    def __init__(self, specs: list[NodeSpec]):
        self.nodes = {s.port: FakeNode(s) for s in specs}
        self.hidden: dict[int, int] = {}
        self.replicate_failures: dict[int, int] = {}
        self.unreachable: set[int] = set()
        self.meet_order: list[int] = []

    def admin(self, spec: NodeSpec) -> "FakeAdmin":
        return FakeAdmin(self, spec.port)


class FakeAdmin:
    """Implements the NodeAdminClient surface against a FakeCluster."""

    def __init__(self, cluster: FakeCluster, port: int):
        self.cluster = cluster
        self.port = port

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    @property
    def node(self) -> FakeNode:
        if self.port in self.cluster.unreachable:
            raise RedisConnectionError(f"Connection refused on port {self.port}")
        return self.cluster.nodes[self.port]

    async def close(self):
        return None

    async def ping(self) -> bool:
        try:
            return self.node.alive
        except RedisConnectionError:
            return False

    async def shutdown(self):
        self.node.alive = False

    async def meet(self, host, port):
        node = self.node
        self.cluster.meet_order.append(self.port)
        node.known.add(port)
        self.cluster.nodes[port].known.add(self.port)

    async def cluster_nodes(self):
        node = self.node
        entries = [self._entry(node, myself=True)]
        for port in sorted(node.known):
            remaining = self.cluster.hidden.get(port, 0)
            if remaining == -1:
                continue
            handshake = remaining > 0
            if handshake:
                self.cluster.hidden[port] = remaining - 1
            entries.append(self._entry(self.cluster.nodes[port], handshake=handshake))
        return entries

    async def cluster_info(self):
        node = self.node
        return {"cluster_state": "ok", "cluster_known_nodes": str(len(node.known) + 1)}

    async def myid(self):
        return self.node.node_id

    async def set_config_epoch(self, epoch):
        self.node.epoch = epoch

    async def add_slots_range(self, start, end):
        self.node.slots.append((start, end))

    async def replicate(self, master_id):
        node = self.node
        failures = self.cluster.replicate_failures.get(self.port, 0)
        if failures > 0:
            self.cluster.replicate_failures[self.port] = failures - 1
            raise ResponseError(f"ERR Unknown node {master_id}")
        node.master_id = master_id

    async def flush_data(self):
        node = self.node
        if node.master_id:
            raise ReadOnlyError("You can't write against a read only replica.")
        node.flushes += 1

    async def reset_membership(self):
        node = self.node
        node.known.clear()
        node.slots.clear()
        node.master_id = None
        node.resets += 1

    def _entry(self, node: FakeNode, myself: bool = False, handshake: bool = False):
        flags = {"slave" if node.master_id else "master"}
        if myself:
            flags.add("myself")
        if handshake:
            flags.add("handshake")
        return ClusterNodeEntry(
            node_id=node.node_id,
            address=node.spec.address,
            flags=frozenset(flags),
            master_id=node.master_id,
            link_state="connected",
            slots=tuple(f"{s}-{e}" for s, e in node.slots),
        )


@pytest.fixture
def six_specs(tmp_path) -> list[NodeSpec]:
    return make_specs(6, tmp_path / "cluster")


@pytest.fixture
def fake_cluster(six_specs) -> FakeCluster:
    return FakeCluster(six_specs)
