"""Command-line interface for route-cli.

This module provides the ``route-cli`` command, handling:
- Saving the subscription URL
- Refreshing and listing subscription nodes
- Pinning a node by name
- Running a command through the selected node
- Diagnosing the local setup

The CLI is built using Typer. Pipeline errors are reported with the stage
they came from and exit with status 1; ``run`` exits with the target
command's own status.

Example:
    # Run from command line:
    $ route-cli login-sub --url https://example.com/sub.yaml
    $ route-cli update
    $ route-cli run -- curl https://api.openai.com/v1/models
"""

import contextlib
from collections.abc import Iterator

import typer
from loguru import logger
from rich.console import Console
from rich.markup import escape

from route_cli import __version__
from route_cli.cmd import doctor, nodes
from route_cli.cmd.run import run_command
from route_cli.core.exceptions import RouteError, TerminationRequested
from route_cli.core.launcher import exit_code
from route_cli.core.settings import AppPaths
from route_cli.core.utils.log_config import setup_logging

console = Console(stderr=True)
app = typer.Typer(
    help="Run a command with a proxy scoped to its own process tree",
    no_args_is_help=True,
)

INTERRUPTED_EXIT_CODE = 130


@contextlib.contextmanager
def reported_errors() -> Iterator[None]:
    """Report pipeline errors and exit with status 1."""
    try:
        yield
    except RouteError as e:
        logger.debug(f"{type(e).__name__}: {e}")
        console.print(f"[red]\\[{e.stage}] {escape(str(e))}")
        raise typer.Exit(1) from None


def _paths(ctx: typer.Context) -> AppPaths:
    return ctx.obj if isinstance(ctx.obj, AppPaths) else AppPaths.discover()


def version_callback(value: bool) -> None:
    if value:
        console.print(f"[cyan]route-cli v{__version__}[/cyan]")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(default=False, help="Enable debug logging"),
    version: bool = typer.Option(
        False, "--version", callback=version_callback, is_eager=True, help="Show version information"
    ),
) -> None:
    """Run a command with a proxy scoped to its own process tree."""
    paths = AppPaths.discover()
    setup_logging(paths.log_dir, debug=debug)
    ctx.obj = paths


@app.command(name="login-sub")
def login_sub(
    ctx: typer.Context,
    url: str = typer.Option(..., "--url", help="Clash subscription URL"),
) -> None:
    """Save the subscription URL."""
    with reported_errors():
        nodes.save_subscription_url(_paths(ctx), url)


@app.command()
def update(ctx: typer.Context) -> None:
    """Download the subscription and replace the cache."""
    with reported_errors():
        nodes.refresh_subscription(_paths(ctx))


@app.command(name="list-nodes")
def list_nodes(ctx: typer.Context) -> None:
    """List cached nodes with their kind, region and support status."""
    with reported_errors():
        nodes.show_nodes(_paths(ctx))


@app.command(name="use-node")
def use_node(
    ctx: typer.Context,
    node_name: str = typer.Argument(..., help="Name of the node to pin"),
) -> None:
    """Pin a node by name, skipping reachability probing."""
    with reported_errors():
        nodes.use_node(_paths(ctx), node_name)


@app.command(context_settings={"ignore_unknown_options": True})
def run(
    ctx: typer.Context,
    command: list[str] = typer.Argument(..., help="Command to run, e.g. `route-cli run -- claude`"),
) -> None:
    """Run a command with the proxy applied to its environment only."""
    with reported_errors():
        try:
            code = run_command(command, _paths(ctx))
        except TerminationRequested as e:
            logger.info(f"Stopped by signal {e.signum}")
            raise typer.Exit(e.exit_code) from None
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted")
            raise typer.Exit(INTERRUPTED_EXIT_CODE) from None
    raise typer.Exit(exit_code(code))


@app.command(name="doctor")
def doctor_cmd(ctx: typer.Context) -> None:
    """Check configuration, subscription and proxy core availability."""
    healthy = doctor.show_report(doctor.run_checks(_paths(ctx)))
    if not healthy:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
