"""operator-cluster CLI - bootstrap local Redis Cluster topologies."""

import typer

from operator_cluster.cli.cluster import provision, status, teardown

app = typer.Typer(
    name="operator-cluster",
    help="Provision, verify and tear down local Redis Cluster topologies",
    no_args_is_help=True,
)

app.command()(provision)
app.command()(status)
app.command()(teardown)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
