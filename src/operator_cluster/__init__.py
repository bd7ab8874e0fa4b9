"""
Cluster bootstrap orchestrator for local Redis Cluster topologies.

Provisions N server processes, joins them into masters and replicas,
verifies convergence (repairing once if needed) and tears them down.

Key components:
- NodeProcessManager: launch, health-check and stop node processes
- plan: pure master/replica/slot assignment
- ClusterJoiner: meet, slot assignment and replica binding
- ConvergenceWatcher: single-snapshot convergence polling
- ClusterOrchestrator: the session state machine
"""

from operator_cluster.config import ClusterConfig, Settings
from operator_cluster.exceptions import (
    ClusterError,
    ConvergenceTimeout,
    HealthCheckTimeout,
    InvalidTopology,
    JoinError,
    LaunchError,
    OrchestrationCancelled,
    ShutdownError,
)
from operator_cluster.factory import create_orchestrator
from operator_cluster.joiner import ClusterJoiner
from operator_cluster.orchestrator import (
    ClusterOrchestrator,
    OrchestrationSession,
    OrchestratorState,
)
from operator_cluster.planner import build_node_specs, plan
from operator_cluster.process import NodeProcessManager
from operator_cluster.types import (
    ClusterState,
    ClusterStatus,
    NodeHandle,
    NodeRole,
    NodeSpec,
    NodeState,
    TopologyPlan,
)
from operator_cluster.watcher import AdminStatusSource, ConvergenceWatcher

__all__ = [
    # Components
    "ClusterJoiner",
    "ClusterOrchestrator",
    "ConvergenceWatcher",
    "AdminStatusSource",
    "NodeProcessManager",
    "OrchestrationSession",
    "OrchestratorState",
    "build_node_specs",
    "create_orchestrator",
    "plan",
    # Config
    "ClusterConfig",
    "Settings",
    # Data types
    "ClusterState",
    "ClusterStatus",
    "NodeHandle",
    "NodeRole",
    "NodeSpec",
    "NodeState",
    "TopologyPlan",
    # Errors
    "ClusterError",
    "ConvergenceTimeout",
    "HealthCheckTimeout",
    "InvalidTopology",
    "JoinError",
    "LaunchError",
    "OrchestrationCancelled",
    "ShutdownError",
]
