"""
Session manifest: the on-disk record of a provisioned session.

`operator-cluster provision` exits once the cluster is ready, leaving the
nodes running. The manifest lets later `status` and `teardown` invocations
find those nodes (ports, PIDs, directories) without scanning ports or
process tables.
"""

from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field

from operator_cluster.orchestrator import OrchestrationSession
from operator_cluster.types import NodeRole, NodeSpec

MANIFEST_FILE = "session.json"


class NodeRecord(BaseModel):
    """One provisioned node."""

    id: str
    host: str
    port: int
    bus_port: int
    role: NodeRole = NodeRole.UNASSIGNED
    data_dir: Path
    pid: int | None = None
    started_at: float | None = None

    def to_spec(self) -> NodeSpec:
        return NodeSpec(
            id=self.id,
            host=self.host,
            port=self.port,
            bus_port=self.bus_port,
            role_hint=self.role,
            data_dir=self.data_dir,
        )


class SessionManifest(BaseModel):
    """
    Everything needed to reattach to a session from another process.

    Example file:
    {
        "session_id": "3f9a2c1b",
        "state": "ready",
        "replica_factor": 1,
        "root_dir": ".operator-cluster/3f9a2c1b",
        "nodes": [{"id": "node-7001", "host": "127.0.0.1", "port": 7001, ...}]
    }
    """

    session_id: str
    state: str
    replica_factor: int
    root_dir: Path
    created_at: datetime = Field(default_factory=datetime.now)
    nodes: list[NodeRecord] = Field(default_factory=list)

    @classmethod
    def from_session(cls, session: OrchestrationSession) -> "SessionManifest":
        planned = {n.id: n for n in session.plan.nodes} if session.plan else {}
        records = []
        for spec in session.specs:
            handle = session.handles.get(spec.id)
            role = planned[spec.id].role_hint if spec.id in planned else spec.role_hint
            records.append(
                NodeRecord(
                    id=spec.id,
                    host=spec.host,
                    port=spec.port,
                    bus_port=spec.bus_port,
                    role=role,
                    data_dir=spec.data_dir,
                    pid=handle.pid if handle else None,
                    started_at=handle.started_at if handle else None,
                )
            )
        return cls(
            session_id=session.id,
            state=session.state.value,
            replica_factor=session.replica_factor,
            root_dir=session.root_dir,
            nodes=records,
        )

    @property
    def seed(self) -> NodeSpec:
        return self.nodes[0].to_spec()


def manifest_path(work_dir: Path) -> Path:
    return work_dir / MANIFEST_FILE


def save_manifest(manifest: SessionManifest, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(manifest.model_dump_json(indent=2))


def load_manifest(path: Path) -> SessionManifest | None:
    """
    Load a manifest if one exists.

    Raises:
        pydantic.ValidationError: On a corrupt or foreign manifest file.
    """
    if not path.exists():
        return None
    return SessionManifest.model_validate_json(path.read_text())
