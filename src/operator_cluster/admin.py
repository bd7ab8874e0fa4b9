"""
Administrative client for a single cluster node.

This module provides NodeAdminClient, a thin wrapper around an injected
redis.asyncio.Redis client that issues the administrative commands the
orchestrator depends on (PING, SHUTDOWN, CLUSTER MEET/INFO/NODES/...), and
parsers that turn CLUSTER INFO and CLUSTER NODES text into structured records
instead of string matching.

Cluster subcommands are sent as execute_command("CLUSTER", ...) so replies
arrive raw and are parsed here, independent of client-side callbacks.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

import redis.asyncio as redis
from redis.exceptions import RedisError

from operator_cluster.types import ClusterNodeId, NodeRole, NodeSpec

ADMIN_SOCKET_TIMEOUT = 2.0


@dataclass(frozen=True)
class ClusterNodeEntry:
    """
    One line of CLUSTER NODES output.

    Attributes:
        node_id: Server-assigned 40-character node ID.
        address: "host:port" (bus port and hostname stripped).
        flags: Flag set, e.g. {"myself", "master"}.
        master_id: Master's node ID for replicas, None otherwise.
        link_state: "connected" or "disconnected".
        slots: Slot ranges as reported (e.g. ["0-5460"]).
    """

    node_id: ClusterNodeId
    address: str
    flags: frozenset[str]
    master_id: ClusterNodeId | None
    link_state: str
    slots: tuple[str, ...] = field(default_factory=tuple)

    @property
    def role(self) -> NodeRole:
        if "master" in self.flags:
            return NodeRole.MASTER
        if "slave" in self.flags or "replica" in self.flags:
            return NodeRole.REPLICA
        return NodeRole.UNASSIGNED

    @property
    def failed(self) -> bool:
        return "fail" in self.flags

    @property
    def in_handshake(self) -> bool:
        return "handshake" in self.flags or "noaddr" in self.flags


def _as_text(reply: str | bytes) -> str:
    if isinstance(reply, bytes):
        return reply.decode("utf-8", errors="replace")
    return reply


def parse_cluster_info(text: str | bytes) -> dict[str, str]:
    """
    Parse CLUSTER INFO output into a field -> value dict.

    Example:
        parse_cluster_info("cluster_state:ok\\r\\ncluster_known_nodes:6\\r\\n")
        # {"cluster_state": "ok", "cluster_known_nodes": "6"}
    """
    info: dict[str, str] = {}
    for line in _as_text(text).splitlines():
        line = line.strip()
        if not line or ":" not in line:
            continue
        key, value = line.split(":", 1)
        info[key] = value
    return info


def parse_cluster_nodes(text: str | bytes) -> list[ClusterNodeEntry]:
    """
    Parse CLUSTER NODES output into one entry per node.

    Line format:
        <id> <ip:port@cport[,hostname]> <flags> <master> <ping-sent>
        <pong-recv> <config-epoch> <link-state> <slot> <slot> ...

    Lines with fewer than eight fields are skipped.
    """
    entries = []
    for line in _as_text(text).splitlines():
        parts = line.split()
        if len(parts) < 8:
            continue
        address = parts[1].split("@", 1)[0].split(",", 1)[0]
        master_id = None if parts[3] == "-" else parts[3]
        entries.append(
            ClusterNodeEntry(
                node_id=parts[0],
                address=address,
                flags=frozenset(parts[2].split(",")),
                master_id=master_id,
                link_state=parts[7],
                slots=tuple(parts[8:]),
            )
        )
    return entries


@dataclass
class NodeAdminClient:
    """
    Administrative client for one node, with injected redis client.

    Attributes:
        redis: Pre-configured redis.asyncio.Redis pointing at the node.

    Example:
        async with NodeAdminClient(redis=redis.Redis(port=7001)) as admin:
            if await admin.ping():
                info = await admin.cluster_info()
    """

    redis: redis.Redis

    async def __aenter__(self) -> "NodeAdminClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self.redis.aclose()

    async def ping(self) -> bool:
        """
        Check whether the node answers PING.

        Returns:
            True if the node replied, False on connection or protocol errors.

        Note:
            Does not raise - safe for health checks.
        """
        try:
            return bool(await self.redis.ping())
        except (RedisError, OSError):
            return False

    async def shutdown(self) -> None:
        """
        Ask the node to exit without saving.

        Raises:
            redis.RedisError: If the node refused or was unreachable.
        """
        await self.redis.shutdown(nosave=True)

    async def meet(self, host: str, port: int) -> None:
        """Introduce the node at host:port to this node (CLUSTER MEET)."""
        await self.redis.execute_command("CLUSTER", "MEET", host, port)

    async def cluster_info(self) -> dict[str, str]:
        reply = await self.redis.execute_command("CLUSTER", "INFO")
        return parse_cluster_info(reply)

    async def cluster_nodes(self) -> list[ClusterNodeEntry]:
        reply = await self.redis.execute_command("CLUSTER", "NODES")
        return parse_cluster_nodes(reply)

    async def myid(self) -> ClusterNodeId:
        reply = await self.redis.execute_command("CLUSTER", "MYID")
        return _as_text(reply)

    async def set_config_epoch(self, epoch: int) -> None:
        await self.redis.execute_command("CLUSTER", "SET-CONFIG-EPOCH", epoch)

    async def add_slots_range(self, start: int, end: int) -> None:
        await self.redis.execute_command("CLUSTER", "ADDSLOTSRANGE", start, end)

    async def replicate(self, master_id: ClusterNodeId) -> None:
        await self.redis.execute_command("CLUSTER", "REPLICATE", master_id)

    async def flush_data(self) -> None:
        await self.redis.flushall()

    async def reset_membership(self) -> None:
        """Forget every other node and drop slot ownership (CLUSTER RESET HARD)."""
        await self.redis.execute_command("CLUSTER", "RESET", "HARD")


AdminFactory = Callable[[NodeSpec], NodeAdminClient]
"""Builds an admin client for a node; used as an async context manager."""


def connect_admin(spec: NodeSpec) -> NodeAdminClient:
    """Default AdminFactory: a fresh redis.asyncio client per call."""
    client = redis.Redis(
        host=spec.host,
        port=spec.port,
        decode_responses=True,
        socket_timeout=ADMIN_SOCKET_TIMEOUT,
        socket_connect_timeout=ADMIN_SOCKET_TIMEOUT,
    )
    return NodeAdminClient(redis=client)
