"""
ClusterJoiner: applies a TopologyPlan through the nodes' own membership
commands.

Join runs in four steps:
1. Give every master a distinct config epoch
2. Assign each master its slot range
3. Sequentially MEET every non-seed node with the seed, waiting until the seed
   sees the node out of handshake
4. Bind every replica to its master with CLUSTER REPLICATE

Steps 3 and 4 tolerate "not yet visible" answers with a fixed-backoff retry.
Meets are sequential so that only one handshake at a time runs against the
seed.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from redis.exceptions import ReadOnlyError, RedisError

from operator_cluster.admin import AdminFactory, connect_admin
from operator_cluster.exceptions import JoinError
from operator_cluster.retry import RetryPolicy, check_cancelled, pause
from operator_cluster.types import (
    ClusterNodeId,
    JoinResult,
    NodeId,
    NodeSpec,
    TopologyPlan,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class NotYetVisible(Exception):
    """A join step's effect has not propagated yet; retry after backoff."""


class ClusterJoiner:
    """
    Drives the join handshake and applies role/replica bindings.

    Example:
        joiner = ClusterJoiner(RetryPolicy(max_attempts=10, backoff_seconds=1.0))
        result = await joiner.join(plan)
    """

    def __init__(
        self,
        retry: RetryPolicy,
        admin_factory: AdminFactory = connect_admin,
    ) -> None:
        self.retry = retry
        self._admin = admin_factory

    async def join(
        self, plan: TopologyPlan, cancel_event: asyncio.Event | None = None
    ) -> JoinResult:
        """
        Join every node in the plan into one cluster.

        Args:
            plan: Topology to realize; plan.seed is the meeting point
            cancel_event: Observed between steps and retries

        Returns:
            JoinResult with server-assigned node IDs and meet attempt counts

        Raises:
            JoinError: Naming the first node whose step exhausted its retries
            OrchestrationCancelled: If cancel_event was set
        """
        seed = plan.seed
        cluster_ids: dict[NodeId, ClusterNodeId] = {}

        for epoch, master in enumerate(plan.masters, start=1):
            await self._set_epoch(master, epoch)

        for assignment in plan.assignments:
            check_cancelled(cancel_event)
            slots = assignment.slots
            await self._once(
                assignment.master,
                "assign slots",
                lambda admin: admin.add_slots_range(slots.start, slots.end),
            )

        for node in plan.nodes:
            cluster_ids[node.id] = await self._once(node, "read node id", lambda a: a.myid())

        meet_attempts: dict[NodeId, int] = {}
        for node in plan.nodes:
            if node == seed:
                continue
            meet_attempts[node.id] = await self._meet(
                node, seed, cluster_ids[node.id], cancel_event
            )
            logger.info(
                "%s joined via %s (%d attempt(s))", node.id, seed.id, meet_attempts[node.id]
            )

        for assignment in plan.assignments:
            master_id = cluster_ids[assignment.master.id]
            for replica in assignment.replicas:
                await self._replicate(replica, assignment.master, master_id, cancel_event)
                logger.info("%s replicating %s", replica.id, assignment.master.id)

        return JoinResult(seed=seed, cluster_ids=cluster_ids, meet_attempts=meet_attempts)

    async def reset(self, nodes: Sequence[NodeSpec]) -> None:
        """
        Wipe data and cluster membership on every node.

        FLUSHALL then CLUSTER RESET HARD. Replicas refuse FLUSHALL as
        read-only; RESET HARD turns them into empty masters, which flushes
        them as well. Both are no-ops on a node that is already empty and
        alone, so reset is idempotent. Every node is tried; failures are
        reported together afterwards.

        Raises:
            JoinError: For the first node that could not be reset
        """
        failures: list[JoinError] = []
        for node in nodes:
            try:
                async with self._admin(node) as admin:
                    try:
                        await admin.flush_data()
                    except ReadOnlyError:
                        logger.debug("%s is a replica, flushed by reset instead", node.id)
                    await admin.reset_membership()
                logger.info("%s reset", node.id)
            except (RedisError, OSError) as e:
                logger.warning("Reset of %s failed: %s", node.id, e)
                failures.append(JoinError(node.id, "reset", 1, str(e)))

        if failures:
            first = failures[0]
            others = ", ".join(f.node_id for f in failures[1:])
            detail = first.last_error + (f" (also failed: {others})" if others else "")
            raise JoinError(first.node_id, "reset", 1, detail)

    async def _set_epoch(self, node: NodeSpec, epoch: int) -> None:
        # Fails harmlessly when the node already has a non-zero epoch
        try:
            async with self._admin(node) as admin:
                await admin.set_config_epoch(epoch)
        except RedisError as e:
            logger.warning("Could not set config epoch %d on %s: %s", epoch, node.id, e)

    async def _once(
        self,
        node: NodeSpec,
        step: str,
        call: Callable[..., Awaitable[T]],
    ) -> T:
        """Run a single admin call, converting failures to JoinError."""
        try:
            async with self._admin(node) as admin:
                return await call(admin)
        except (RedisError, OSError) as e:
            raise JoinError(node.id, step, 1, str(e)) from e

    async def _retrying(
        self,
        node: NodeSpec,
        step: str,
        call: Callable[[], Awaitable[None]],
        cancel_event: asyncio.Event | None,
    ) -> int:
        """
        Retry call until it succeeds, with fixed backoff.

        call raises NotYetVisible or RedisError for retryable outcomes.

        Returns:
            Attempts used
        """
        last_error = ""
        for attempt in self.retry.attempts():
            check_cancelled(cancel_event)
            try:
                await call()
                return attempt
            except (NotYetVisible, RedisError, OSError) as e:
                last_error = str(e)
                logger.debug("%s %s attempt %d: %s", node.id, step, attempt, e)

            if self.retry.should_retry(attempt):
                await pause(self.retry.backoff_seconds, cancel_event)

        raise JoinError(node.id, step, self.retry.max_attempts, last_error)

    async def _meet(
        self,
        node: NodeSpec,
        seed: NodeSpec,
        node_cluster_id: ClusterNodeId,
        cancel_event: asyncio.Event | None,
    ) -> int:
        met = False

        async def attempt() -> None:
            nonlocal met
            if not met:
                async with self._admin(node) as admin:
                    await admin.meet(seed.host, seed.port)
                met = True

            async with self._admin(seed) as admin:
                entries = await admin.cluster_nodes()
            for entry in entries:
                if entry.node_id == node_cluster_id and not entry.in_handshake:
                    return
            raise NotYetVisible(f"{node.address} not yet visible to seed {seed.address}")

        return await self._retrying(node, "meet", attempt, cancel_event)

    async def _replicate(
        self,
        replica: NodeSpec,
        master: NodeSpec,
        master_id: ClusterNodeId,
        cancel_event: asyncio.Event | None,
    ) -> int:
        async def attempt() -> None:
            # "Unknown node" until gossip has carried the master to the replica
            async with self._admin(replica) as admin:
                await admin.replicate(master_id)

        return await self._retrying(
            replica, f"replicate {master.id}", attempt, cancel_event
        )
