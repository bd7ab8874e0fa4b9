"""Cluster lifecycle commands: provision, status, teardown.

provision records the session in a manifest under the work directory so
that status and teardown, run as separate invocations, can find the nodes.
"""

import asyncio
import functools
import signal

import typer
from pydantic import ValidationError
from rich.markup import escape

from operator_cluster.cli.output import (
    configure_logging,
    console,
    print_diagnostics,
    status_table,
)
from operator_cluster.config import ClusterConfig, Settings
from operator_cluster.exceptions import ClusterError, ShutdownError
from operator_cluster.factory import create_orchestrator
from operator_cluster.manifest import (
    SessionManifest,
    load_manifest,
    manifest_path,
    save_manifest,
)
from operator_cluster.orchestrator import (
    ClusterOrchestrator,
    OrchestrationSession,
    teardown_session,
)
from operator_cluster.planner import build_node_specs
from operator_cluster.process import NodeProcessManager
from operator_cluster.types import ClusterState, NodeRole
from operator_cluster.watcher import AdminStatusSource, classify

# Poll interval used when reattaching to a session for status/teardown
REATTACH_POLL_INTERVAL = 1.0


def provision(
    nodes: int = typer.Option(..., "--nodes", "-n", help="Total nodes (masters + replicas)"),
    replicas: int = typer.Option(..., "--replicas", "-r", help="Replicas per master"),
    base_port: int = typer.Option(..., "--base-port", "-p", help="Port of the first node"),
    bus_port_offset: int = typer.Option(
        10000, "--bus-port-offset", help="Cluster bus port = node port + offset"
    ),
    health_timeout: float = typer.Option(
        30.0, "--health-timeout", help="Seconds to wait for each node to answer PING"
    ),
    convergence_timeout: float = typer.Option(
        120.0, "--convergence-timeout", help="Seconds to wait for cluster_state:ok"
    ),
    poll_interval: float = typer.Option(
        1.0, "--poll-interval", help="Seconds between health and status polls"
    ),
    keep_on_failure: bool = typer.Option(
        False, "--keep-on-failure", help="Leave nodes running after a failure for inspection"
    ),
) -> None:
    """
    Start nodes, join them into a cluster and wait until it converges.

    Exits 0 once the cluster is ready. On failure, prints the failure kind
    and diagnostics, tears the nodes down (unless --keep-on-failure) and
    exits 1.
    """
    settings = Settings()
    configure_logging(settings.log_level)

    try:
        config = ClusterConfig(
            node_count=nodes,
            replica_factor=replicas,
            base_port=base_port,
            bus_port_offset=bus_port_offset,
            health_timeout=health_timeout,
            convergence_timeout=convergence_timeout,
            poll_interval=poll_interval,
        )
    except ValidationError as e:
        console.print(f"[red]Invalid configuration:[/red]\n{escape(str(e))}")
        raise typer.Exit(2)

    path = manifest_path(settings.work_dir)
    if path.exists():
        console.print(
            f"[red]Error:[/red] a session is already recorded in {path}; "
            "run 'operator-cluster teardown' first"
        )
        raise typer.Exit(1)

    raise typer.Exit(asyncio.run(_provision(config, settings, keep_on_failure)))


async def _provision(config: ClusterConfig, settings: Settings, keep_on_failure: bool) -> int:
    orchestrator = create_orchestrator(config, settings)
    root_dir = settings.work_dir / f"cluster-{config.base_port}"
    specs = build_node_specs(config, settings.host, root_dir)
    session = orchestrator.new_session(specs, config.replica_factor, root_dir)
    path = manifest_path(settings.work_dir)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, functools.partial(_handle_signal, orchestrator, session, sig))

    console.print(
        f"[bold]Provisioning {config.node_count} nodes "
        f"({config.node_count // (config.replica_factor + 1)} masters, "
        f"{config.replica_factor} replica(s) each)...[/bold]"
    )
    try:
        await orchestrator.start(session)
    except ClusterError as e:
        console.print(f"\n[bold red]{e.kind}[/bold red]: {escape(str(e))}")
        if session.diagnostics is not None:
            print_diagnostics(session.diagnostics)
        if not session.torn_down:
            if keep_on_failure:
                save_manifest(SessionManifest.from_session(session), path)
                console.print(f"[yellow]Nodes left running; session recorded in {path}[/yellow]")
            else:
                await orchestrator.teardown(session)
        return 1
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    save_manifest(SessionManifest.from_session(session), path)
    console.print(status_table(session.plan.nodes, session.last_status))
    if session.repair_attempts:
        console.print(f"[yellow]Converged after {session.repair_attempts} repair cycle(s)[/yellow]")
    console.print(f"\n[green]Cluster ready[/green] (session {session.id}, manifest {path})")
    return 0


def _handle_signal(
    orchestrator: ClusterOrchestrator, session: OrchestrationSession, sig: signal.Signals
) -> None:
    console.print(f"[yellow]Received {sig.name}, cancelling...[/yellow]")
    orchestrator.cancel(session)


def status() -> None:
    """Show planned vs observed roles of the recorded session."""
    settings = Settings()
    configure_logging(settings.log_level)

    manifest = load_manifest(manifest_path(settings.work_dir))
    if manifest is None:
        console.print("[yellow]No session recorded[/yellow]")
        raise typer.Exit(1)

    nodes = [record.to_spec() for record in manifest.nodes]
    masters = sum(1 for n in nodes if n.role_hint is NodeRole.MASTER)
    processes = NodeProcessManager(settings, poll_interval=REATTACH_POLL_INTERVAL)
    alive = {
        record.id: processes.is_alive(
            processes.adopt(record.to_spec(), record.pid, record.started_at)
        )
        for record in manifest.nodes
    }

    snapshot = asyncio.run(AdminStatusSource().fetch(manifest.seed))
    snapshot = classify(snapshot, len(nodes), masters)

    console.print(status_table(nodes, snapshot, alive=alive))
    if snapshot.state is not ClusterState.OK:
        raise typer.Exit(1)


def teardown() -> None:
    """Stop every recorded node and remove its data. Safe to repeat."""
    settings = Settings()
    configure_logging(settings.log_level)

    path = manifest_path(settings.work_dir)
    manifest = load_manifest(path)
    if manifest is None:
        console.print("[dim]Nothing to tear down[/dim]")
        return

    errors = asyncio.run(_teardown(manifest, settings))
    if errors:
        for error in errors:
            console.print(f"[red]{error.kind}[/red]: {escape(str(error))}")
        console.print(f"[yellow]Session kept in {path}; re-run teardown to retry[/yellow]")
        raise typer.Exit(1)

    path.unlink(missing_ok=True)
    console.print(f"[green]Session {manifest.session_id} torn down[/green]")


async def _teardown(manifest: SessionManifest, settings: Settings) -> list[ShutdownError]:
    processes = NodeProcessManager(settings, poll_interval=REATTACH_POLL_INTERVAL)
    specs = [record.to_spec() for record in manifest.nodes]
    session = OrchestrationSession(
        specs=specs,
        replica_factor=manifest.replica_factor,
        root_dir=manifest.root_dir,
        id=manifest.session_id,
        handles={
            record.id: processes.adopt(spec, record.pid, record.started_at)
            for record, spec in zip(manifest.nodes, specs)
        },
    )
    return await teardown_session(processes, session)
