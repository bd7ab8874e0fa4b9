"""
Configuration for cluster bootstrap.

Two layers:
- ClusterConfig: the topology and timing of one provisioning run. Every
  field is explicit; nothing (least of all node_count or replica_factor)
  falls back to an environment default.
- Settings: ambient process settings (server binary, host, work dir, retry
  knobs), overridable via environment variables with the OPERATOR_CLUSTER_
  prefix. For example:
      OPERATOR_CLUSTER_SERVER_BINARY=/opt/redis/bin/redis-server
      OPERATOR_CLUSTER_WORK_DIR=/tmp/cluster
"""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MAX_PORT = 65535


class ClusterConfig(BaseModel):
    """
    Topology and timing for one provisioning run.

    Attributes:
        node_count: Total nodes to provision (masters + replicas).
        replica_factor: Replicas per master.
        base_port: Port of the first node; node i listens on base_port + i.
        bus_port_offset: Cluster bus port = node port + offset.
        health_timeout: Seconds to wait for each node to answer PING.
        convergence_timeout: Seconds to wait for the cluster to report OK.
        poll_interval: Seconds between health and status polls.

    Example:
        ClusterConfig(
            node_count=6, replica_factor=1, base_port=7001,
            bus_port_offset=10000, health_timeout=30,
            convergence_timeout=120, poll_interval=1,
        )
    """

    model_config = ConfigDict(frozen=True)

    node_count: int = Field(ge=1)
    replica_factor: int = Field(ge=0)
    base_port: int = Field(ge=1, le=MAX_PORT)
    bus_port_offset: int = Field(ge=1)
    health_timeout: float = Field(gt=0)
    convergence_timeout: float = Field(gt=0)
    poll_interval: float = Field(gt=0)

    @model_validator(mode="after")
    def _check_port_range(self) -> "ClusterConfig":
        last_port = self.base_port + self.node_count - 1
        if last_port + self.bus_port_offset > MAX_PORT:
            raise ValueError(
                f"Bus port {last_port + self.bus_port_offset} for node on port "
                f"{last_port} exceeds {MAX_PORT}"
            )
        return self

    @property
    def ports(self) -> list[int]:
        return [self.base_port + i for i in range(self.node_count)]


class Settings(BaseSettings):
    """Ambient settings shared by the process manager, joiner and CLI."""

    # Server process
    server_binary: str = "redis-server"
    host: str = "127.0.0.1"
    work_dir: Path = Path(".operator-cluster")
    node_timeout_ms: int = 5000
    launch_grace_seconds: float = 0.5
    shutdown_timeout: float = 5.0

    # Join retries (fixed backoff)
    join_attempts: int = 10
    join_backoff: float = 1.0

    # Diagnostics
    log_tail_lines: int = 20
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="OPERATOR_CLUSTER_")
