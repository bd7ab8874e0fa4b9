"""
NodeProcessManager for launching, health-checking and stopping node processes.

Each node runs as a real server process with its own private directory:

    <data_dir>/redis.conf     generated config
    <data_dir>/startup.log    process stdout/stderr
    <data_dir>/node.log       server log file
    <data_dir>/nodes-<port>.conf  cluster state written by the server

Process handling follows the same rules throughout:
- asyncio.create_subprocess_exec with array arguments (never shell=True)
- start_new_session=True so nodes do not share the caller's process group
- SIGTERM -> wait -> SIGKILL for termination, always reaping the child
"""

import asyncio
import logging
import os
import shutil
import signal
from collections import deque
from pathlib import Path

import psutil
from redis.exceptions import RedisError

from operator_cluster.admin import AdminFactory, connect_admin
from operator_cluster.config import Settings
from operator_cluster.exceptions import HealthCheckTimeout, LaunchError, ShutdownError
from operator_cluster.retry import attempts_for, check_cancelled, pause
from operator_cluster.types import HealthProbe, NodeHandle, NodeSpec, NodeState

logger = logging.getLogger(__name__)

CONFIG_FILE = "redis.conf"
STARTUP_LOG = "startup.log"
NODE_LOG = "node.log"

# Linux truncates process names to 15 characters
COMM_LENGTH = 15
# Slack between a start time recorded at launch and the process table's
START_TIME_TOLERANCE = 1.0


def cluster_state_file(spec: NodeSpec) -> str:
    return f"nodes-{spec.port}.conf"


def render_config(spec: NodeSpec, settings: Settings) -> str:
    """Render the server config for one cluster-enabled node."""
    data_dir = spec.data_dir.resolve()
    lines = [
        f"port {spec.port}",
        "cluster-enabled yes",
        f"cluster-config-file {cluster_state_file(spec)}",
        f"cluster-node-timeout {settings.node_timeout_ms}",
        "appendonly no",
        'save ""',
        f"dir {data_dir}",
        f"bind {spec.host}",
        "daemonize no",
        f'logfile "{data_dir / NODE_LOG}"',
        f"cluster-announce-ip {spec.host}",
        f"cluster-announce-port {spec.port}",
        f"cluster-announce-bus-port {spec.bus_port}",
    ]
    return "\n".join(lines) + "\n"


def tail(path: Path, lines: int | None) -> str:
    """Last lines of a file (all of it for None), or "" if it does not exist."""
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            return "".join(deque(f, maxlen=lines))
    except FileNotFoundError:
        return ""


def process_start_time(pid: int) -> float | None:
    """Creation time of pid as the process table reports it, or None."""
    try:
        return psutil.Process(pid).create_time()
    except psutil.Error:
        return None


class NodeProcessManager:
    """
    Owns every NodeHandle: launches processes, polls their health and stops
    them.

    Handles are only mutated here, and only while holding the handle's lock.

    Example:
        manager = NodeProcessManager(Settings(), poll_interval=1.0)
        handle = await manager.start(spec)
        await manager.await_healthy(handle, timeout=30)
        ...
        await manager.stop(handle)
    """

    def __init__(
        self,
        settings: Settings,
        poll_interval: float,
        admin_factory: AdminFactory = connect_admin,
    ) -> None:
        """
        Initialize process manager.

        Args:
            settings: Ambient settings (server binary, timeouts, log tail)
            poll_interval: Seconds between health probes
            admin_factory: Builds admin clients; replaced in tests
        """
        self.settings = settings
        self.poll_interval = poll_interval
        self._admin = admin_factory

    async def start(self, spec: NodeSpec) -> NodeHandle:
        """
        Write the node's config and launch its server process.

        Args:
            spec: Node to launch

        Returns:
            NodeHandle in STARTING state

        Raises:
            LaunchError: If the directory cannot be prepared, the binary cannot
                be executed, or the process exits within the launch grace period
        """
        config_path = spec.data_dir / CONFIG_FILE
        log_path = spec.data_dir / STARTUP_LOG
        try:
            spec.data_dir.mkdir(parents=True, exist_ok=True)
            # Stale cluster state from an earlier run would rejoin the old cluster
            (spec.data_dir / cluster_state_file(spec)).unlink(missing_ok=True)
            config_path.write_text(render_config(spec, self.settings))
        except OSError as e:
            raise LaunchError(spec.id, f"cannot prepare {spec.data_dir}: {e}") from e

        handle = NodeHandle(spec=spec, log_path=log_path)
        logger.info("Starting %s on %s", spec.id, spec.address)
        try:
            with open(log_path, "ab") as log_file:
                proc = await asyncio.create_subprocess_exec(
                    self.settings.server_binary,
                    str(config_path.resolve()),
                    stdout=log_file,
                    stderr=asyncio.subprocess.STDOUT,
                    cwd=spec.data_dir,
                    start_new_session=True,
                )
        except OSError as e:
            handle.state = NodeState.FAILED
            raise LaunchError(spec.id, str(e)) from e

        handle.process = proc
        handle.pid = proc.pid
        handle.started_at = process_start_time(proc.pid)

        # Catch processes that die immediately (bad config, port in use)
        if self.settings.launch_grace_seconds > 0:
            try:
                await asyncio.wait_for(
                    proc.wait(), timeout=self.settings.launch_grace_seconds
                )
            except asyncio.TimeoutError:
                pass  # Still running, as expected

        if proc.returncode is not None:
            handle.state = NodeState.FAILED
            raise LaunchError(
                spec.id,
                f"process exited with code {proc.returncode}",
                tail(log_path, self.settings.log_tail_lines),
            )
        return handle

    def adopt(
        self, spec: NodeSpec, pid: int | None, started_at: float | None = None
    ) -> NodeHandle:
        """
        Rebuild a handle for a node launched by another invocation.

        Used by the CLI to tear down or inspect a session recorded in the
        manifest. The handle has no asyncio process; signals go to the PID,
        and only while owns_pid() confirms it is still the node's server.
        """
        handle = NodeHandle(
            spec=spec, pid=pid, started_at=started_at, log_path=spec.data_dir / STARTUP_LOG
        )
        handle.state = NodeState.READY if self.is_alive(handle) else NodeState.STOPPED
        return handle

    def owns_pid(self, handle: NodeHandle) -> bool:
        """
        Check that an adopted handle's PID still belongs to the node's server.

        The server rewrites its process title, so it is identified by
        executable name and by the start time recorded at launch, not by its
        arguments. A PID reused by any other process does not match.
        """
        if handle.pid is None:
            return False
        try:
            proc = psutil.Process(handle.pid)
            name = proc.name()
            created = proc.create_time()
        except psutil.Error:
            return False

        expected = Path(self.settings.server_binary).name
        if name[:COMM_LENGTH] != expected[:COMM_LENGTH]:
            return False
        if handle.started_at is None:
            return True
        return abs(created - handle.started_at) <= START_TIME_TOLERANCE

    async def reclaim_stale(self, spec: NodeSpec) -> bool:
        """
        Shut down anything already answering on the node's port.

        Best-effort cleanup before launch. Returns True if a stale server was
        found.
        """
        async with self._admin(spec) as admin:
            if not await admin.ping():
                return False
            logger.warning("Stale server answering on %s, shutting it down", spec.address)
            try:
                await admin.shutdown()
            except RedisError as e:
                logger.warning("Could not shut down stale server on %s: %s", spec.address, e)
            return True

    def is_alive(self, handle: NodeHandle) -> bool:
        """Check whether the handle's process is still running."""
        if handle.process is not None:
            return handle.process.returncode is None
        return self.owns_pid(handle)

    async def await_healthy(
        self,
        handle: NodeHandle,
        timeout: float,
        cancel_event: asyncio.Event | None = None,
    ) -> NodeState:
        """
        Poll the node with PING until it answers.

        Each attempt records a HealthProbe noting whether the process was
        alive and whether it answered. A dead process ends the wait at once.

        Args:
            handle: Node to poll
            timeout: Total seconds to wait
            cancel_event: Observed between probes

        Returns:
            NodeState.READY

        Raises:
            HealthCheckTimeout: crashed=True if the process exited,
                crashed=False if it stayed alive but never answered
            OrchestrationCancelled: If cancel_event was set
        """
        attempts = attempts_for(timeout, self.poll_interval)
        async with handle.lock:
            handle.probes = []
            async with self._admin(handle.spec) as admin:
                for attempt in range(1, attempts + 1):
                    check_cancelled(cancel_event)
                    alive = self.is_alive(handle)
                    responsive = alive and await admin.ping()
                    handle.probes.append(HealthProbe(attempt, alive, responsive))
                    logger.debug(
                        "%s probe %d/%d: alive=%s responsive=%s",
                        handle.node_id, attempt, attempts, alive, responsive,
                    )

                    if responsive:
                        handle.state = NodeState.READY
                        logger.info("%s is ready", handle.node_id)
                        return handle.state

                    if not alive:
                        handle.state = NodeState.FAILED
                        raise HealthCheckTimeout(
                            handle.node_id, attempt, crashed=True, probes=list(handle.probes)
                        )

                    if attempt < attempts:
                        await pause(self.poll_interval, cancel_event)

            handle.state = NodeState.FAILED
            raise HealthCheckTimeout(
                handle.node_id, attempts, crashed=False, probes=list(handle.probes)
            )

    async def stop(self, handle: NodeHandle) -> NodeState:
        """
        Stop a node and reclaim its directory.

        Three steps, each attempted even if an earlier one failed:
        1. SHUTDOWN NOSAVE through the admin protocol
        2. SIGTERM, then SIGKILL after shutdown_timeout
        3. Remove the node's data directory

        An adopted PID that no longer belongs to the node is never signalled;
        it is reported as a failed step instead. Safe to call on an already
        stopped handle.

        Returns:
            NodeState.STOPPED

        Raises:
            ShutdownError: Aggregating every failed step
        """
        spec = handle.spec
        async with handle.lock:
            if handle.state is NodeState.STOPPED and not spec.data_dir.exists():
                return handle.state

            errors: list[str] = []

            if (
                handle.process is None
                and handle.pid is not None
                and psutil.pid_exists(handle.pid)
                and not self.owns_pid(handle)
            ):
                errors.append(
                    f"terminate: pid {handle.pid} is no longer {handle.node_id}, not signalled"
                )

            if self.is_alive(handle):
                try:
                    async with self._admin(spec) as admin:
                        await admin.shutdown()
                except (RedisError, OSError) as e:
                    errors.append(f"graceful shutdown: {e}")

            try:
                await self._terminate(handle)
            except OSError as e:
                errors.append(f"terminate: {e}")

            try:
                if spec.data_dir.exists():
                    shutil.rmtree(spec.data_dir)
            except OSError as e:
                errors.append(f"remove {spec.data_dir}: {e}")

            handle.state = NodeState.FAILED if self.is_alive(handle) else NodeState.STOPPED
            if errors:
                raise ShutdownError(handle.node_id, errors)
            logger.info("%s stopped", handle.node_id)
            return handle.state

    async def _terminate(self, handle: NodeHandle) -> None:
        """SIGTERM, wait, escalate to SIGKILL. Always reaps owned children."""
        timeout = self.settings.shutdown_timeout
        proc = handle.process

        if proc is not None:
            if proc.returncode is None:
                try:
                    proc.terminate()
                except ProcessLookupError:
                    pass  # Exited between the check and the signal
            try:
                await asyncio.wait_for(proc.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("%s ignored SIGTERM, sending SIGKILL", handle.node_id)
                proc.kill()
                await proc.wait()
            return

        if handle.pid is None or not self.is_alive(handle):
            return

        os.kill(handle.pid, signal.SIGTERM)
        for _ in range(int(timeout * 10)):
            await asyncio.sleep(0.1)
            if not self.is_alive(handle):
                return

        logger.warning("%s ignored SIGTERM, sending SIGKILL", handle.node_id)
        try:
            os.kill(handle.pid, signal.SIGKILL)
        except ProcessLookupError:
            return  # Exited just before escalation
        await asyncio.sleep(0.5)

    def read_log(self, handle: NodeHandle, lines: int | None = None) -> str:
        """The node's startup and server logs, verbatim (last lines only if given)."""
        spec = handle.spec
        sections = []
        for path in (spec.data_dir / STARTUP_LOG, spec.data_dir / NODE_LOG):
            text = tail(path, lines)
            if text:
                sections.append(f"=== {handle.node_id} {path.name} ===\n{text}")
        return "\n".join(sections)
