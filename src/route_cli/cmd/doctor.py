"""Environment diagnostics for ``route-cli doctor``.

Runs every check even when an earlier one fails and reports them together:
- Config document readable
- Subscription URL configured
- Subscription cache present and parseable, with node counts
- Persisted node still present and supported
- Proxy core path resolution, with every candidate checked
- Mixed port free
- Generated config location

The proxy core itself is never started.
"""

from dataclasses import dataclass
from typing import Final

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from route_cli.core.exceptions import RouteError
from route_cli.core.process import port_accepting, resolve_core_path
from route_cli.core.settings import AppConfig, AppPaths, load_config
from route_cli.core.subscription import load_cached_nodes

console = Console()

OK: Final = "OK"
WARN: Final = "WARN"
ERR: Final = "ERR"

STATUS_STYLES: Final = {OK: "green", WARN: "yellow", ERR: "red"}


@dataclass(frozen=True)
class Finding:
    status: str
    check: str
    detail: str


def _check_config(paths: AppPaths) -> tuple[AppConfig, Finding]:
    try:
        cfg = load_config(paths)
    except RouteError as e:
        return AppConfig(), Finding(ERR, "config", f"{paths.config_file}: {e}")
    return cfg, Finding(OK, "config", str(paths.config_file))


def _check_subscription(cfg: AppConfig, paths: AppPaths) -> list[Finding]:
    findings = []
    if cfg.subscription.url:
        findings.append(Finding(OK, "subscription url", cfg.subscription.url))
    else:
        findings.append(Finding(ERR, "subscription url", "not configured (run `route-cli login-sub --url <URL>`)"))

    cache = paths.subscription_cache
    if not cache.exists():
        findings.append(Finding(WARN, "subscription cache", f"missing: {cache}"))
        return findings

    try:
        result = load_cached_nodes(cache)
    except RouteError as e:
        findings.append(Finding(ERR, "subscription cache", str(e)))
        return findings

    supported = len(result.supported)
    findings.append(
        Finding(OK if supported else WARN, "cached nodes", f"{len(result.nodes)} total, {supported} supported")
    )
    if result.warnings:
        findings.append(Finding(WARN, "subscription entries", f"{len(result.warnings)} skipped"))

    selected = cfg.runtime.selected_node
    if selected:
        node = result.find(selected)
        if node is None:
            findings.append(Finding(WARN, "selected node", f"'{selected}' is no longer in the subscription"))
        elif not node.is_supported:
            findings.append(Finding(WARN, "selected node", f"'{selected}' is {node.support}"))
        else:
            findings.append(Finding(OK, "selected node", f"{selected} ({node.region.label})"))
    return findings


def _check_core(cfg: AppConfig, paths: AppPaths) -> list[Finding]:
    resolution = resolve_core_path(cfg.proxy_core.path, [paths.bin_dir])
    findings = [
        Finding(WARN if not c.usable else OK, f"core candidate ({c.source})", c.location)
        for c in resolution.candidates
    ]
    if resolution.path is None:
        findings.append(Finding(ERR, "proxy core", f"unavailable (configured: {cfg.proxy_core.path})"))
    else:
        findings.append(Finding(OK, "proxy core", str(resolution.path)))
    return findings


def run_checks(paths: AppPaths) -> list[Finding]:
    cfg, config_finding = _check_config(paths)
    findings = [config_finding]
    findings.extend(_check_subscription(cfg, paths))
    findings.extend(_check_core(cfg, paths))

    port = cfg.proxy.mixed_port
    if port_accepting(port):
        findings.append(Finding(WARN, "mixed port", f"127.0.0.1:{port} is already in use"))
    else:
        findings.append(Finding(OK, "mixed port", f"127.0.0.1:{port}"))
    findings.append(Finding(OK, "generated config", str(paths.core_config)))
    return findings


def show_report(findings: list[Finding]) -> bool:
    """Print the findings; return True when nothing is in error."""
    table = Table(title="route-cli doctor")
    table.add_column("Status")
    table.add_column("Check", style="cyan")
    table.add_column("Detail")

    for finding in findings:
        style = STATUS_STYLES[finding.status]
        table.add_row(f"[{style}]{finding.status}", finding.check, escape(finding.detail))

    console.print(table)
    return all(f.status != ERR for f in findings)
