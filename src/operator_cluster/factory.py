"""
Factory functions wiring the orchestrator's components together.

The CLI builds everything through here; tests build components directly
with fakes injected.
"""

from operator_cluster.admin import AdminFactory, connect_admin
from operator_cluster.config import ClusterConfig, Settings
from operator_cluster.joiner import ClusterJoiner
from operator_cluster.orchestrator import ClusterOrchestrator
from operator_cluster.process import NodeProcessManager
from operator_cluster.retry import RetryPolicy
from operator_cluster.watcher import AdminStatusSource, ConvergenceWatcher


def create_orchestrator(
    config: ClusterConfig,
    settings: Settings,
    admin_factory: AdminFactory = connect_admin,
) -> ClusterOrchestrator:
    """
    Create a ClusterOrchestrator backed by real node processes.

    Args:
        config: Topology and timing for the run
        settings: Ambient settings (server binary, retry knobs)
        admin_factory: Builds admin clients for each node

    Returns:
        ClusterOrchestrator ready for new_session()/start()

    Example:
        orchestrator = create_orchestrator(config, Settings())
        session = orchestrator.new_session(specs, config.replica_factor, root)
        await orchestrator.start(session)
    """
    processes = NodeProcessManager(
        settings, poll_interval=config.poll_interval, admin_factory=admin_factory
    )
    joiner = ClusterJoiner(
        RetryPolicy(
            max_attempts=settings.join_attempts,
            backoff_seconds=settings.join_backoff,
        ),
        admin_factory=admin_factory,
    )
    watcher = ConvergenceWatcher(
        AdminStatusSource(admin_factory), poll_interval=config.poll_interval
    )
    return ClusterOrchestrator(config, processes, joiner, watcher)
