"""Subscription and node management commands.

Backs ``login-sub``, ``update``, ``list-nodes`` and ``use-node``.
"""

from datetime import UTC, datetime

from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from route_cli.core.exceptions import NodeNotFoundError, SubscriptionNotConfiguredError, UnsupportedNodeError
from route_cli.core.nodes import Node
from route_cli.core.settings import AppPaths, load_config, save_config
from route_cli.core.subscription import ParseResult, load_cached_nodes, update_subscription

console = Console()


def save_subscription_url(paths: AppPaths, url: str) -> None:
    cfg = load_config(paths)
    cfg.subscription.url = url.strip()
    save_config(paths, cfg)
    console.print(f"[green]Subscription URL saved to {paths.config_file}")


def refresh_subscription(paths: AppPaths) -> ParseResult:
    """Download the configured subscription and replace the cache."""
    cfg = load_config(paths)
    if not cfg.subscription.url:
        raise SubscriptionNotConfiguredError(
            "No subscription URL configured. Run `route-cli login-sub --url <URL>`"
        )
    result = update_subscription(cfg.subscription.url, paths.subscription_cache)
    for warning in result.warnings:
        console.print(f"[yellow]Warning: {escape(warning)}")
    console.print(
        f"[green]Subscription updated: {len(result.nodes)} nodes "
        f"({len(result.supported)} supported) cached at {paths.subscription_cache}"
    )
    return result


def node_table(nodes: tuple[Node, ...], selected: str | None = None) -> Table:
    table = Table(title="Subscription Nodes")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Kind")
    table.add_column("Region")
    table.add_column("Status")

    for index, node in enumerate(nodes, start=1):
        name = escape(f"* {node.name}" if node.name == selected else node.name)
        status = f"[green]{node.support}" if node.is_supported else f"[red]{node.support}"
        table.add_row(f"{index:03}", name, node.kind, node.region.label, status)
    return table


def show_nodes(paths: AppPaths) -> ParseResult:
    cfg = load_config(paths)
    result = load_cached_nodes(paths.subscription_cache)
    for warning in result.warnings:
        console.print(f"[yellow]Warning: {escape(warning)}")
    console.print(node_table(result.nodes, cfg.runtime.selected_node))
    return result


def use_node(paths: AppPaths, name: str) -> Node:
    """Persist ``name`` as the selected node without probing it.

    Raises:
        NodeNotFoundError: If the node is not in the cached subscription
        UnsupportedNodeError: If the node cannot be run by the proxy core
    """
    cfg = load_config(paths)
    result = load_cached_nodes(paths.subscription_cache)
    node = result.find(name)
    if node is None:
        raise NodeNotFoundError(f"Node '{name}' not found in cached subscription")
    if not node.is_supported:
        raise UnsupportedNodeError(f"Node '{name}' of kind '{node.kind}' is {node.support}")

    save_config(paths, cfg.with_runtime(cfg.runtime.select(node.name, datetime.now(tz=UTC))))
    logger.info(f"Selected node set to {node.name}")
    console.print(f"[green]Selected node: {escape(node.name)}")
    return node
