"""
ConvergenceWatcher: polls cluster status until it is provably converged.

A snapshot counts as converged only when, in that single snapshot, the seed
reports its stable-state flag, the expected known-node count and the expected
master count. Conditions seen on different polls are never combined; doing
so would race with membership changes still propagating.

Status comes from a StatusSource. AdminStatusSource builds snapshots from the
seed's CLUSTER INFO and CLUSTER NODES; tests inject scripted sources.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Protocol, runtime_checkable

from redis.exceptions import RedisError

from operator_cluster.admin import AdminFactory, ClusterNodeEntry, connect_admin
from operator_cluster.exceptions import ConvergenceTimeout
from operator_cluster.retry import attempts_for, check_cancelled, pause
from operator_cluster.types import ClusterState, ClusterStatus, NodeRole, NodeSpec

logger = logging.getLogger(__name__)


@runtime_checkable
class StatusSource(Protocol):
    """Anything that can produce a ClusterStatus snapshot for a seed node."""

    async def fetch(self, seed: NodeSpec) -> ClusterStatus:
        """
        Take one status snapshot.

        Must not raise for an unreachable seed; return an UNKNOWN snapshot
        instead so the watcher keeps polling.
        """
        ...


def build_status(info: dict[str, str], entries: list[ClusterNodeEntry]) -> ClusterStatus:
    """
    Turn parsed CLUSTER INFO / CLUSTER NODES output into a snapshot.

    master_count counts nodes flagged master that are not failed.
    """
    stable = info.get("cluster_state") == "ok"
    known = int(info.get("cluster_known_nodes", len(entries)))
    masters = sum(1 for e in entries if e.role is NodeRole.MASTER and not e.failed)

    if any(e.in_handshake for e in entries):
        state = ClusterState.PARTIAL_JOIN
    elif stable:
        state = ClusterState.OK
    else:
        state = ClusterState.DEGRADED

    return ClusterStatus(
        state=state,
        stable=stable,
        known_node_count=known,
        master_count=masters,
        per_node_role={e.address: e.role for e in entries},
    )


class AdminStatusSource:
    """StatusSource backed by the seed node's administrative commands."""

    def __init__(self, admin_factory: AdminFactory = connect_admin) -> None:
        self._admin = admin_factory

    async def fetch(self, seed: NodeSpec) -> ClusterStatus:
        try:
            async with self._admin(seed) as admin:
                info = await admin.cluster_info()
                entries = await admin.cluster_nodes()
        except (RedisError, OSError) as e:
            return ClusterStatus(state=ClusterState.UNKNOWN, detail=str(e))
        return build_status(info, entries)


def is_converged(status: ClusterStatus, expected_nodes: int, expected_masters: int) -> bool:
    """All three conditions, in one snapshot."""
    return (
        status.stable
        and status.known_node_count == expected_nodes
        and status.master_count == expected_masters
    )


def classify(status: ClusterStatus, expected_nodes: int, expected_masters: int) -> ClusterStatus:
    """
    Re-label a raw snapshot against the expected topology.

    Returns a new snapshot; the input is left untouched.
    """
    if status.state is ClusterState.UNKNOWN:
        return status
    if is_converged(status, expected_nodes, expected_masters):
        state = ClusterState.OK
    elif status.known_node_count < expected_nodes or status.state is ClusterState.PARTIAL_JOIN:
        state = ClusterState.PARTIAL_JOIN
    else:
        state = ClusterState.DEGRADED
    return status if state is status.state else replace(status, state=state)


class ConvergenceWatcher:
    """
    Polls a StatusSource at a fixed interval until convergence or timeout.

    Every snapshot is logged and kept in history so a timeout can be
    diagnosed from the full sequence, not just the last poll.

    Example:
        watcher = ConvergenceWatcher(AdminStatusSource(), poll_interval=2.0)
        status = await watcher.watch(seed, 6, 3, timeout=120)
    """

    def __init__(self, source: StatusSource, poll_interval: float) -> None:
        self.source = source
        self.poll_interval = poll_interval
        self.history: list[ClusterStatus] = []

    async def watch(
        self,
        seed: NodeSpec,
        expected_node_count: int,
        expected_master_count: int,
        timeout: float,
        cancel_event: asyncio.Event | None = None,
    ) -> ClusterStatus:
        """
        Wait for a converged snapshot.

        Args:
            seed: Node whose view of the cluster is polled
            expected_node_count: Required cluster_known_nodes
            expected_master_count: Required master count
            timeout: Total seconds to wait
            cancel_event: Observed between polls

        Returns:
            The first converged snapshot (state OK)

        Raises:
            ConvergenceTimeout: Carrying the last snapshot and the history
            OrchestrationCancelled: If cancel_event was set
        """
        attempts = attempts_for(timeout, self.poll_interval)
        self.history = []
        status = ClusterStatus(state=ClusterState.UNKNOWN, detail="not polled")

        for attempt in range(1, attempts + 1):
            check_cancelled(cancel_event)
            status = classify(
                await self.source.fetch(seed), expected_node_count, expected_master_count
            )
            self.history.append(status)
            logger.info("Cluster status %d/%d: %s", attempt, attempts, status.summary())

            if status.state is ClusterState.OK:
                return status

            if attempt < attempts:
                await pause(self.poll_interval, cancel_event)

        raise ConvergenceTimeout(status, attempts, list(self.history))
