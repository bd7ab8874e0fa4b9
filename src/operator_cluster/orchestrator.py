"""
ClusterOrchestrator: the provision -> join -> verify -> (repair) -> ready
state machine.

    Idle -> Provisioning -> Joining -> Verifying -> Ready
                               ^           |
                               |           v
                               +------ Repairing (at most once)

Any state can move to Failed. Provisioning and planning failures are fatal
and tear down whatever was started. A convergence timeout whose last status
shows the wrong master count triggers exactly one repair cycle (reset all
nodes, re-plan, rejoin); a second timeout is fatal. Failed sessions carry a
DiagnosticBundle and can always be torn down.
"""

import asyncio
import logging
import shutil
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from operator_cluster.config import ClusterConfig
from operator_cluster.exceptions import (
    ClusterError,
    ConvergenceTimeout,
    HealthCheckTimeout,
    LaunchError,
    OrchestrationCancelled,
    ShutdownError,
)
from operator_cluster.joiner import ClusterJoiner
from operator_cluster.planner import plan as plan_topology
from operator_cluster.process import NodeProcessManager
from operator_cluster.retry import check_cancelled
from operator_cluster.types import (
    ClusterStatus,
    JoinResult,
    NodeHandle,
    NodeId,
    NodeSpec,
    TopologyPlan,
)
from operator_cluster.watcher import ConvergenceWatcher

logger = logging.getLogger(__name__)

MAX_REPAIR_ATTEMPTS = 1

Planner = Callable[[Sequence[NodeSpec], int], TopologyPlan]


class OrchestratorState(Enum):
    IDLE = "idle"
    PROVISIONING = "provisioning"
    JOINING = "joining"
    VERIFYING = "verifying"
    REPAIRING = "repairing"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class Transition:
    source: OrchestratorState
    target: OrchestratorState
    at: datetime
    reason: str = ""


@dataclass
class DiagnosticBundle:
    """
    Everything an operator needs to understand a failed session.

    Attributes:
        node_logs: Verbatim log tails per node
        last_status: Last ClusterStatus observed, if verification ran
        errors: Error messages, most important first
    """

    node_logs: dict[NodeId, str] = field(default_factory=dict)
    last_status: ClusterStatus | None = None
    errors: list[str] = field(default_factory=list)

    def render(self) -> str:
        lines = [f"error: {e}" for e in self.errors]
        if self.last_status is not None:
            lines.append(f"last status: {self.last_status.summary()}")
            for address, role in sorted(self.last_status.per_node_role.items()):
                lines.append(f"  {address} {role.value}")
        for node_id, text in self.node_logs.items():
            lines.append(text or f"=== {node_id}: no log output ===")
        return "\n".join(lines)


@dataclass
class OrchestrationSession:
    """
    Owner of one node set, its handles and its plan.

    Created by ClusterOrchestrator.new_session(); resources are reclaimed by
    ClusterOrchestrator.teardown(), which the caller must still invoke after a
    fatal error.
    """

    specs: list[NodeSpec]
    replica_factor: int
    root_dir: Path
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    state: OrchestratorState = OrchestratorState.IDLE
    handles: dict[NodeId, NodeHandle] = field(default_factory=dict)
    plan: TopologyPlan | None = None
    join_result: JoinResult | None = None
    last_status: ClusterStatus | None = None
    repair_attempts: int = 0
    error: BaseException | None = None
    diagnostics: DiagnosticBundle | None = None
    transitions: list[Transition] = field(default_factory=list)
    shutdown_errors: list[ShutdownError] = field(default_factory=list)
    torn_down: bool = False
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)


async def teardown_session(
    processes: NodeProcessManager, session: OrchestrationSession
) -> list[ShutdownError]:
    """
    Stop every handle in the session, then remove every node directory and
    the session root.

    Individual failures are logged, collected on the session and returned;
    they never stop teardown of the remaining nodes. Calling it again on a
    torn-down session is a no-op.
    """
    handles = list(session.handles.values())
    results = await asyncio.gather(
        *(processes.stop(h) for h in handles), return_exceptions=True
    )

    errors: list[ShutdownError] = []
    for handle, result in zip(handles, results):
        if isinstance(result, ShutdownError):
            errors.append(result)
        elif isinstance(result, Exception):
            errors.append(ShutdownError(handle.node_id, [repr(result)]))

    # Nodes that never got a handle (failed launch) still own a directory
    for spec in session.specs:
        try:
            if spec.data_dir.exists():
                shutil.rmtree(spec.data_dir)
        except OSError as e:
            errors.append(ShutdownError(spec.id, [f"remove {spec.data_dir}: {e}"]))

    try:
        if session.root_dir.exists():
            shutil.rmtree(session.root_dir)
    except OSError as e:
        errors.append(ShutdownError(session.id, [f"remove {session.root_dir}: {e}"]))

    for error in errors:
        logger.warning("Teardown: %s", error)
    session.shutdown_errors.extend(errors)
    session.torn_down = True
    return errors


class ClusterOrchestrator:
    """
    Composes planner, process manager, joiner and watcher into the session
    state machine.

    Example:
        orchestrator = ClusterOrchestrator(config, processes, joiner, watcher)
        session = orchestrator.new_session(specs, config.replica_factor, root)
        try:
            await orchestrator.start(session)
        finally:
            await orchestrator.teardown(session)
    """

    def __init__(
        self,
        config: ClusterConfig,
        processes: NodeProcessManager,
        joiner: ClusterJoiner,
        watcher: ConvergenceWatcher,
        planner: Planner = plan_topology,
    ) -> None:
        self.config = config
        self.processes = processes
        self.joiner = joiner
        self.watcher = watcher
        self._plan = planner

    def new_session(
        self, specs: Sequence[NodeSpec], replica_factor: int, root_dir: Path
    ) -> OrchestrationSession:
        return OrchestrationSession(
            specs=list(specs), replica_factor=replica_factor, root_dir=root_dir
        )

    def cancel(self, session: OrchestrationSession) -> None:
        """Signal cancellation; the running flow fails and tears down."""
        logger.warning("Cancellation requested for session %s", session.id)
        session.cancel_event.set()

    async def start(self, session: OrchestrationSession) -> OrchestrationSession:
        """
        Run the session from Idle to Ready.

        Returns:
            The session, in READY state

        Raises:
            ClusterError: The fatal error, after the session moved to FAILED.
                Provisioning failures and cancellation have already torn
                down; otherwise the caller must call teardown().
            Exception: Any other error, or CancelledError, after the session
                moved to FAILED and was torn down.
        """
        if session.state is not OrchestratorState.IDLE:
            raise RuntimeError(f"Session {session.id} already started ({session.state.value})")

        try:
            self._transition(session, OrchestratorState.PROVISIONING)
            session.plan = self._plan(session.specs, session.replica_factor)
            await self._provision(session)
            await self._join_and_verify(session)
        except ClusterError as e:
            provisioning = session.state is OrchestratorState.PROVISIONING
            self._fail(session, e)
            if provisioning or isinstance(e, OrchestrationCancelled):
                await self.teardown(session)
            raise
        except BaseException as e:
            # Bugs and task cancellation leave nothing running either
            self._fail(session, e)
            await self.teardown(session)
            raise

        return session

    async def teardown(self, session: OrchestrationSession) -> list[ShutdownError]:
        """Stop every node and reclaim every directory. Safe to repeat."""
        return await teardown_session(self.processes, session)

    def collect_diagnostics(self, session: OrchestrationSession) -> DiagnosticBundle:
        bundle = DiagnosticBundle(last_status=session.last_status)
        error = session.error
        if error is not None:
            bundle.errors.append(f"{type(error).__name__}: {error}")
            if isinstance(error, LaunchError) and error.log_tail:
                bundle.errors.append(f"startup log of {error.node_id}:\n{error.log_tail}")
            if isinstance(error, HealthCheckTimeout):
                alive = sum(1 for p in error.probes if p.alive)
                bundle.errors.append(
                    f"{error.node_id}: alive on {alive}/{len(error.probes)} probe(s)"
                )
        for node_id, handle in session.handles.items():
            bundle.node_logs[node_id] = self.processes.read_log(handle)
        return bundle

    async def _provision(self, session: OrchestrationSession) -> None:
        for spec in session.specs:
            await self.processes.reclaim_stale(spec)

        results = await asyncio.gather(
            *(self._provision_node(session, spec) for spec in session.specs),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if not failures:
            logger.info("All %d nodes healthy", len(session.specs))
            return

        for failure in failures:
            logger.error("Provisioning failed: %s", failure)
        # Cancellation wins over whichever node happened to fail first
        for failure in failures:
            if isinstance(failure, OrchestrationCancelled):
                raise failure
        raise failures[0]

    async def _provision_node(self, session: OrchestrationSession, spec: NodeSpec) -> None:
        check_cancelled(session.cancel_event)
        handle = await self.processes.start(spec)
        session.handles[spec.id] = handle
        await self.processes.await_healthy(
            handle, self.config.health_timeout, session.cancel_event
        )

    async def _join_and_verify(self, session: OrchestrationSession) -> None:
        expected_nodes = len(session.specs)

        while True:
            self._transition(session, OrchestratorState.JOINING)
            session.join_result = await self.joiner.join(session.plan, session.cancel_event)

            self._transition(session, OrchestratorState.VERIFYING)
            expected_masters = len(session.plan.masters)
            try:
                status = await self.watcher.watch(
                    session.plan.seed,
                    expected_nodes,
                    expected_masters,
                    self.config.convergence_timeout,
                    session.cancel_event,
                )
            except ConvergenceTimeout as e:
                session.last_status = e.last_status
                if (
                    session.repair_attempts >= MAX_REPAIR_ATTEMPTS
                    or e.last_status.master_count == expected_masters
                ):
                    raise
                await self._repair(session, e.last_status, expected_masters)
                continue

            session.last_status = status
            self._transition(session, OrchestratorState.READY)
            return

    async def _repair(
        self, session: OrchestrationSession, status: ClusterStatus, expected_masters: int
    ) -> None:
        self._transition(
            session,
            OrchestratorState.REPAIRING,
            f"expected {expected_masters} masters, observed {status.master_count}",
        )
        session.repair_attempts += 1
        await self.joiner.reset(session.plan.nodes)
        session.plan = self._plan(session.specs, session.replica_factor)

    def _fail(self, session: OrchestrationSession, error: BaseException) -> None:
        session.error = error
        if isinstance(error, ConvergenceTimeout):
            session.last_status = error.last_status
        session.diagnostics = self.collect_diagnostics(session)
        self._transition(session, OrchestratorState.FAILED, type(error).__name__)

    def _transition(
        self, session: OrchestrationSession, target: OrchestratorState, reason: str = ""
    ) -> None:
        transition = Transition(session.state, target, datetime.now(), reason)
        session.transitions.append(transition)
        session.state = target
        logger.info(
            "Session %s: %s -> %s%s",
            session.id,
            transition.source.value,
            target.value,
            f" ({reason})" if reason else "",
        )
