"""
Shared data types for the cluster bootstrap orchestrator.

This module defines the records that flow between the planner, process
manager, joiner, watcher and orchestrator. These are internal types - not
API models. The session manifest (pydantic) lives in operator_cluster.manifest.

All types use @dataclass. Specs, plans and status snapshots are frozen;
NodeHandle is the one mutable record and is owned by NodeProcessManager.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

NodeId = str
"""Orchestrator-side node identifier (e.g. "node-7001")."""

ClusterNodeId = str
"""40-character node ID assigned by the server itself (CLUSTER MYID)."""

HASH_SLOTS = 16384


class NodeRole(Enum):
    """Role a node is planned for, or observed in."""

    MASTER = "master"
    REPLICA = "replica"
    UNASSIGNED = "unassigned"


class NodeState(Enum):
    """Lifecycle state of a provisioned node process."""

    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"


class ClusterState(Enum):
    """Classification of one cluster status snapshot."""

    UNKNOWN = "unknown"
    PARTIAL_JOIN = "partial_join"
    OK = "ok"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class NodeSpec:
    """
    Immutable description of one node to provision.

    Identity is (host, port): two specs that differ only in role_hint or
    data_dir compare equal, so a planned copy still matches the unplanned one.

    Attributes:
        id: Orchestrator-side identifier, e.g. "node-7001".
        host: Address the node binds and announces.
        port: Client/admin port.
        bus_port: Cluster bus port (gossip).
        role_hint: Planned role, UNASSIGNED until planned.
        data_dir: Private directory for config, logs and cluster state.
    """

    id: NodeId = field(compare=False)
    host: str
    port: int
    bus_port: int = field(compare=False)
    role_hint: NodeRole = field(default=NodeRole.UNASSIGNED, compare=False)
    data_dir: Path = field(default=Path("."), compare=False)

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class HealthProbe:
    """One health-check attempt: was the process alive, did it answer PING."""

    attempt: int
    alive: bool
    responsive: bool


@dataclass
class NodeHandle:
    """
    Runtime record for a single provisioned node.

    Owned exclusively by NodeProcessManager. The lock gives per-handle
    exclusivity; no two operations touch the same handle concurrently.

    Attributes:
        spec: The spec this handle realizes.
        process: asyncio subprocess handle, None for adopted processes.
        pid: Operating system process ID, None before launch.
        started_at: Process creation time, used to recognize the PID later.
        state: Current lifecycle state.
        log_path: File receiving the server's stdout/stderr.
        probes: Health probes recorded by the last await_healthy call.
    """

    spec: NodeSpec
    process: asyncio.subprocess.Process | None = None
    pid: int | None = None
    started_at: float | None = None
    state: NodeState = NodeState.STARTING
    log_path: Path | None = None
    probes: list[HealthProbe] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    @property
    def node_id(self) -> NodeId:
        return self.spec.id


@dataclass(frozen=True)
class SlotRange:
    """Inclusive range of hash slots owned by one master."""

    start: int
    end: int

    def __len__(self) -> int:
        return self.end - self.start + 1


@dataclass(frozen=True)
class Assignment:
    """One master, the replicas bound to it, and the slots it serves."""

    master: NodeSpec
    replicas: tuple[NodeSpec, ...]
    slots: SlotRange


@dataclass(frozen=True)
class TopologyPlan:
    """
    Slot and replica assignment across the target node set.

    Every node appears in exactly one assignment, either as its master or as
    one of its replicas.
    """

    assignments: tuple[Assignment, ...]
    replica_factor: int

    @property
    def masters(self) -> list[NodeSpec]:
        return [a.master for a in self.assignments]

    @property
    def replicas(self) -> list[NodeSpec]:
        return [r for a in self.assignments for r in a.replicas]

    @property
    def nodes(self) -> list[NodeSpec]:
        """Masters first, then replicas in assignment order."""
        return self.masters + self.replicas

    @property
    def seed(self) -> NodeSpec:
        """Entry point for join and status operations."""
        return self.assignments[0].master


@dataclass(frozen=True)
class ClusterStatus:
    """
    Immutable snapshot of cluster-wide status as seen from the seed node.

    Produced repeatedly by the watcher; a newer snapshot supersedes an older
    one, nothing mutates it.

    Attributes:
        state: Classification of this snapshot.
        stable: The server's own stable-state flag (cluster_state:ok).
        known_node_count: cluster_known_nodes as reported by the seed.
        master_count: Nodes flagged master and not failed.
        per_node_role: Observed role per "host:port" address.
        observed_at: When the snapshot was taken.
        detail: Free-form reason, e.g. the connection error for UNKNOWN.
    """

    state: ClusterState
    stable: bool = False
    known_node_count: int = 0
    master_count: int = 0
    per_node_role: dict[str, NodeRole] = field(default_factory=dict)
    observed_at: datetime = field(default_factory=datetime.now)
    detail: str = ""

    def summary(self) -> str:
        return (
            f"state={self.state.value} stable={self.stable} "
            f"known_nodes={self.known_node_count} masters={self.master_count}"
        )


@dataclass(frozen=True)
class JoinResult:
    """
    Outcome of a successful join.

    Attributes:
        seed: Node every other node met.
        cluster_ids: Server-assigned node ID per orchestrator node ID.
        meet_attempts: Attempts used until each non-seed node became visible.
    """

    seed: NodeSpec
    cluster_ids: dict[NodeId, ClusterNodeId]
    meet_attempts: dict[NodeId, int]
