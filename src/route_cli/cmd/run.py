"""The ``run`` pipeline.

Wires the core components together for one invocation:

1. Load the config document and the cached subscription (downloading it
   first if there is no cache yet)
2. Select a reachable node and commit the runtime state once
3. Generate and write the sing-box config
4. Start the proxy core and wait for its mixed port
5. Launch the target command with the scoped environment
6. Stop the core after the target exits, on interrupt, or on any failure

Example:
    code = run_command(["curl", "https://api.openai.com"], AppPaths.discover())
"""

import contextlib
import signal
from collections.abc import Iterator, Sequence
from types import FrameType
from typing import Final

from loguru import logger
from rich.console import Console
from rich.markup import escape

from route_cli.core.exceptions import LaunchError, SubscriptionNotConfiguredError, TerminationRequested
from route_cli.core.launcher import ScopedLauncher
from route_cli.core.probe import Probe, make_probe
from route_cli.core.process import CoreProcessManager
from route_cli.core.selector import NodeSelector
from route_cli.core.settings import AppConfig, AppPaths, load_config, save_config
from route_cli.core.singbox import generate_config
from route_cli.core.subscription import ParseResult, load_cached_nodes, update_subscription

console = Console(stderr=True)

# Signals that end a run the same way Ctrl+C does
TERMINATION_SIGNALS: Final = tuple(
    getattr(signal, name) for name in ("SIGTERM", "SIGHUP") if hasattr(signal, name)
)


@contextlib.contextmanager
def terminating_signals() -> Iterator[None]:
    """Raise :class:`TerminationRequested` on SIGTERM or SIGHUP while active.

    The first signal raises; later ones are ignored so cleanup can finish.
    Previous handlers are restored on exit.
    """
    previous = {}

    def handler(signum: int, frame: FrameType | None) -> None:
        for sig in previous:
            signal.signal(sig, signal.SIG_IGN)
        raise TerminationRequested(signum)

    for sig in TERMINATION_SIGNALS:
        previous[sig] = signal.signal(sig, handler)
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, signal.SIG_DFL if old is None else old)


def ensure_subscription(cfg: AppConfig, paths: AppPaths) -> ParseResult:
    """Return the cached nodes, downloading the subscription if there is no cache."""
    if not paths.subscription_cache.exists():
        if not cfg.subscription.url:
            raise SubscriptionNotConfiguredError(
                "No subscription URL configured. Run `route-cli login-sub --url <URL>`"
            )
        console.print("[yellow]No cached subscription, downloading...")
        result = update_subscription(cfg.subscription.url, paths.subscription_cache)
    else:
        result = load_cached_nodes(paths.subscription_cache)

    for warning in result.warnings:
        logger.warning(f"Subscription {warning}")
    return result


def make_core_manager(cfg: AppConfig, paths: AppPaths) -> CoreProcessManager:
    return CoreProcessManager(
        cfg.proxy_core.path,
        cfg.proxy.mixed_port,
        bundle_dirs=[paths.bin_dir],
        startup_timeout=cfg.proxy_core.startup_timeout,
        stop_grace=cfg.proxy_core.stop_grace,
        log_path=paths.core_log,
    )


def run_command(command: Sequence[str], paths: AppPaths, *, probe: Probe | None = None) -> int:
    """Run ``command`` through the selected node.

    Args:
        command: Program followed by its arguments
        paths: Application paths
        probe: Reachability probe (defaults to the configured probe)

    Returns:
        int: The target command's return code

    Raises:
        RouteError: From whichever stage failed; the core is stopped first
    """
    if not command:
        raise LaunchError("No command passed. Example: route-cli run -- claude")

    cfg = load_config(paths)
    result = ensure_subscription(cfg, paths)

    selector = NodeSelector(
        probe or make_probe(cfg.probe.method, cfg.probe.timeout),
        workers=cfg.probe.workers,
    )
    selection = selector.select(result.nodes, cfg.runtime)
    save_config(paths, cfg.with_runtime(selection.state))

    node = selection.node
    console.print(f"[green]Using node {escape(node.name)} ({node.kind}, {node.region.label})")

    policy = cfg.routing_policy()
    generate_config(node, policy).write(paths.core_config)
    logger.debug(f"Wrote proxy core config to {paths.core_config}")

    launcher = ScopedLauncher(policy.no_proxy)
    with terminating_signals(), make_core_manager(cfg, paths) as core:
        listen_address = core.start(paths.core_config)
        return launcher.launch(command[0], list(command[1:]), listen_address)
