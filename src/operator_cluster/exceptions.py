"""
Error taxonomy for cluster bootstrap.

Every error derives from ClusterError and stores its context in attributes so
the orchestrator and CLI can surface it verbatim to an operator:
- LaunchError: process failed to start
- HealthCheckTimeout: started but never answered (crashed vs slow)
- InvalidTopology: planner preconditions violated
- JoinError: an administrative join step failed after retries
- ConvergenceTimeout: status never reached OK, carries the last snapshot
- ShutdownError: aggregated teardown failures, never blocks teardown
- OrchestrationCancelled: external cancellation during a flow
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from operator_cluster.types import ClusterStatus, HealthProbe


class ClusterError(Exception):
    """Base class for all orchestration failures."""

    @property
    def kind(self) -> str:
        """Failure kind name reported by the CLI."""
        return type(self).__name__


class LaunchError(ClusterError):
    """
    Raised when a node process could not be started.

    Attributes:
        node_id: Node that failed to launch
        reason: What went wrong
        log_tail: Last lines of the startup log, if any
    """

    def __init__(self, node_id: str, reason: str, log_tail: str = "") -> None:
        self.node_id = node_id
        self.reason = reason
        self.log_tail = log_tail
        super().__init__(f"Node {node_id} failed to launch: {reason}")


class HealthCheckTimeout(ClusterError):
    """
    Raised when a launched node never became responsive.

    Attributes:
        node_id: Node that never answered
        attempts: Health probes made
        crashed: True if the process died, False if it was alive but silent
        probes: Every probe recorded during the wait
    """

    def __init__(
        self,
        node_id: str,
        attempts: int,
        crashed: bool,
        probes: list[HealthProbe] | None = None,
    ) -> None:
        self.node_id = node_id
        self.attempts = attempts
        self.crashed = crashed
        self.probes = probes or []
        cause = "process exited" if crashed else "process alive but unresponsive"
        super().__init__(
            f"Node {node_id} not healthy after {attempts} attempt(s): {cause}"
        )


class InvalidTopology(ClusterError):
    """Raised when nodes cannot be arranged into the requested topology."""


class JoinError(ClusterError):
    """
    Raised when a join step for one node failed after retries.

    Attributes:
        node_id: Node whose join step failed
        step: Which step failed (meet, slots, replicate, reset)
        attempts: Attempts used
        last_error: Last error or response observed
    """

    def __init__(
        self, node_id: str, step: str, attempts: int, last_error: str = ""
    ) -> None:
        self.node_id = node_id
        self.step = step
        self.attempts = attempts
        self.last_error = last_error
        message = f"Node {node_id} failed to {step} after {attempts} attempt(s)"
        if last_error:
            message += f": {last_error}"
        super().__init__(message)


class ConvergenceTimeout(ClusterError):
    """
    Raised when the cluster never reported a converged status.

    Attributes:
        last_status: Final snapshot polled before giving up
        attempts: Number of polls made
        history: Every snapshot observed during the wait
    """

    def __init__(
        self,
        last_status: ClusterStatus,
        attempts: int,
        history: list[ClusterStatus] | None = None,
    ) -> None:
        self.last_status = last_status
        self.attempts = attempts
        self.history = history or []
        super().__init__(
            f"Cluster did not converge after {attempts} poll(s); "
            f"last status: {last_status.summary()}"
        )


class ShutdownError(ClusterError):
    """
    Raised when one or more teardown steps for a node failed.

    Non-fatal: every step was still attempted.

    Attributes:
        node_id: Node being stopped
        errors: One message per failed step
    """

    def __init__(self, node_id: str, errors: list[str]) -> None:
        self.node_id = node_id
        self.errors = errors
        super().__init__(f"Node {node_id} shutdown incomplete: " + "; ".join(errors))


class OrchestrationCancelled(ClusterError):
    """Raised when the session's cancellation signal is observed."""
