"""Configuration document and application paths.

All state route-cli keeps between invocations lives under one application
root (``$ROUTE_CLI_HOME`` or ``~/.route-cli``):

- ``config.yaml``: subscription URL, proxy core, routing and runtime state
- ``cache/subscription.yaml``: the last downloaded subscription
- ``generated/``: the proxy core config written by ``run`` and the core log
- ``logs/``: application log files
- ``bin/``: bundled proxy core location

The config document is loaded once at the start of a command and written
back at a single commit point.
"""

import os
from dataclasses import dataclass, field, fields, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

import yaml

from route_cli.core.exceptions import ConfigFileError
from route_cli.core.probe import PROBE_METHODS

APP_HOME_ENV: Final = "ROUTE_CLI_HOME"
DEFAULT_APP_DIR: Final = ".route-cli"
DEFAULT_CORE_NAME: Final = "sing-box.exe" if os.name == "nt" else "sing-box"
DEFAULT_MIXED_PORT: Final = 27890
DEFAULT_PROXY_DOMAINS: Final = [
    "openai.com",
    "api.openai.com",
    "chatgpt.com",
    "oaistatic.com",
    "oaiusercontent.com",
    "openaiapi-site.azureedge.net",
]
DEFAULT_NO_PROXY: Final = ["localhost", "127.0.0.1"]


@dataclass(frozen=True)
class AppPaths:
    """Filesystem locations used by route-cli."""

    root: Path

    @classmethod
    def discover(cls) -> "AppPaths":
        override = os.environ.get(APP_HOME_ENV, "").strip()
        root = Path(override).expanduser() if override else Path.home() / DEFAULT_APP_DIR
        return cls(root=root)

    @property
    def config_file(self) -> Path:
        return self.root / "config.yaml"

    @property
    def subscription_cache(self) -> Path:
        return self.root / "cache" / "subscription.yaml"

    @property
    def generated_dir(self) -> Path:
        return self.root / "generated"

    @property
    def core_config(self) -> Path:
        return self.generated_dir / "sing-box.json"

    @property
    def core_log(self) -> Path:
        return self.generated_dir / "sing-box.log"

    @property
    def bin_dir(self) -> Path:
        return self.root / "bin"

    @property
    def log_dir(self) -> Path:
        return self.root / "logs"


@dataclass(frozen=True)
class RuntimeState:
    """Node selection persisted across invocations."""

    selected_node: str | None = None
    last_selected_at: datetime | None = None

    def select(self, name: str, at: datetime | None = None) -> "RuntimeState":
        return RuntimeState(selected_node=name, last_selected_at=at or datetime.now(tz=UTC))


@dataclass(frozen=True)
class RoutingPolicy:
    """Routing inputs for the proxy core config.

    Attributes:
        proxy_domains: Domain suffixes sent through the selected node
        no_proxy: Hosts, domains and IP ranges that bypass the proxy
        mixed_port: Local port of the core's mixed inbound
    """

    proxy_domains: frozenset[str]
    no_proxy: frozenset[str]
    mixed_port: int


@dataclass
class SubscriptionSettings:
    url: str | None = None


@dataclass
class ProxyCoreSettings:
    path: str = DEFAULT_CORE_NAME
    startup_timeout: float = 8.0
    stop_grace: float = 3.0


@dataclass
class ProxySettings:
    mixed_port: int = DEFAULT_MIXED_PORT


@dataclass
class RoutingSettings:
    proxy_domains: list[str] = field(default_factory=lambda: list(DEFAULT_PROXY_DOMAINS))
    no_proxy: list[str] = field(default_factory=lambda: list(DEFAULT_NO_PROXY))


@dataclass
class ProbeSettings:
    method: str = "tcp"
    timeout: float = 2.0
    workers: int = 4


@dataclass
class AppConfig:
    """The config document (``config.yaml``)."""

    subscription: SubscriptionSettings = field(default_factory=SubscriptionSettings)
    proxy_core: ProxyCoreSettings = field(default_factory=ProxyCoreSettings)
    proxy: ProxySettings = field(default_factory=ProxySettings)
    routing: RoutingSettings = field(default_factory=RoutingSettings)
    probe: ProbeSettings = field(default_factory=ProbeSettings)
    runtime: RuntimeState = field(default_factory=RuntimeState)

    def routing_policy(self) -> RoutingPolicy:
        return RoutingPolicy(
            proxy_domains=frozenset(self.routing.proxy_domains),
            no_proxy=frozenset(self.routing.no_proxy),
            mixed_port=self.proxy.mixed_port,
        )

    def with_runtime(self, state: RuntimeState) -> "AppConfig":
        return replace(self, runtime=state)

    def to_dict(self) -> dict[str, Any]:
        last = self.runtime.last_selected_at
        return {
            "subscription": {"url": self.subscription.url},
            "proxy_core": {
                "path": self.proxy_core.path,
                "startup_timeout": self.proxy_core.startup_timeout,
                "stop_grace": self.proxy_core.stop_grace,
            },
            "proxy": {"mixed_port": self.proxy.mixed_port},
            "routing": {
                "proxy_domains": list(self.routing.proxy_domains),
                "no_proxy": list(self.routing.no_proxy),
            },
            "probe": {
                "method": self.probe.method,
                "timeout": self.probe.timeout,
                "workers": self.probe.workers,
            },
            "runtime": {
                "selected_node": self.runtime.selected_node,
                "last_selected_at": last.isoformat() if last else None,
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AppConfig":
        """Build a config from a parsed document, filling in defaults.

        Raises:
            ConfigFileError: If a section or value has the wrong type
        """
        if not isinstance(data, dict):
            raise ConfigFileError("Config document must be a mapping")

        subscription = _section(data, "subscription", SubscriptionSettings)
        proxy_core = _section(data, "proxy_core", ProxyCoreSettings)
        proxy = _section(data, "proxy", ProxySettings)
        routing = _section(data, "routing", RoutingSettings)
        probe = _section(data, "probe", ProbeSettings)

        if subscription.url is not None:
            subscription.url = _str_value("subscription.url", subscription.url) or None
        proxy_core.path = _str_value("proxy_core.path", proxy_core.path) or DEFAULT_CORE_NAME
        proxy_core.startup_timeout = _positive("proxy_core.startup_timeout", proxy_core.startup_timeout)
        proxy_core.stop_grace = _positive("proxy_core.stop_grace", proxy_core.stop_grace)
        proxy.mixed_port = _port_value("proxy.mixed_port", proxy.mixed_port)
        routing.proxy_domains = _str_list("routing.proxy_domains", routing.proxy_domains)
        routing.no_proxy = _str_list("routing.no_proxy", routing.no_proxy)
        probe.method = _str_value("probe.method", probe.method)
        if probe.method not in PROBE_METHODS:
            raise ConfigFileError(f"probe.method must be one of: {', '.join(PROBE_METHODS)}")
        probe.timeout = _positive("probe.timeout", probe.timeout)
        probe.workers = int(_positive("probe.workers", probe.workers))

        return cls(
            subscription=subscription,
            proxy_core=proxy_core,
            proxy=proxy,
            routing=routing,
            probe=probe,
            runtime=_runtime(data.get("runtime")),
        )


def _section(data: dict[str, Any], name: str, kind: type) -> Any:
    raw = data.get(name)
    if raw is None:
        return kind()
    if not isinstance(raw, dict):
        raise ConfigFileError(f"Config section '{name}' must be a mapping")
    known = {f.name for f in fields(kind)}
    return kind(**{key: value for key, value in raw.items() if key in known and value is not None})


def _str_value(key: str, value: Any) -> str:
    if not isinstance(value, str):
        raise ConfigFileError(f"{key} must be a string")
    return value.strip()


def _str_list(key: str, value: Any) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigFileError(f"{key} must be a list of strings")
    return [item.strip() for item in value if item.strip()]


def _positive(key: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        raise ConfigFileError(f"{key} must be a positive number")
    return value


def _port_value(key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 65535:
        raise ConfigFileError(f"{key} must be an integer between 1 and 65535")
    return value


def _runtime(raw: Any) -> RuntimeState:
    if raw is None:
        return RuntimeState()
    if not isinstance(raw, dict):
        raise ConfigFileError("Config section 'runtime' must be a mapping")

    selected = raw.get("selected_node")
    if selected is not None and not isinstance(selected, str):
        raise ConfigFileError("runtime.selected_node must be a string")

    last = raw.get("last_selected_at")
    if isinstance(last, str):
        try:
            last = datetime.fromisoformat(last)
        except ValueError:
            raise ConfigFileError(f"runtime.last_selected_at is not a timestamp: {last!r}") from None
    elif last is not None and not isinstance(last, datetime):
        raise ConfigFileError("runtime.last_selected_at must be a timestamp")
    if last is not None and last.tzinfo is None:
        last = last.replace(tzinfo=UTC)

    return RuntimeState(selected_node=selected or None, last_selected_at=last)


def save_config(paths: AppPaths, cfg: AppConfig) -> None:
    paths.config_file.parent.mkdir(parents=True, exist_ok=True)
    with paths.config_file.open("w", encoding="utf-8") as fh:
        yaml.safe_dump(cfg.to_dict(), fh, allow_unicode=True, sort_keys=False)


def load_config(paths: AppPaths) -> AppConfig:
    """Load the config document, creating it with defaults if missing.

    Raises:
        ConfigFileError: If the file cannot be read or is malformed
    """
    if not paths.config_file.exists():
        cfg = AppConfig()
        save_config(paths, cfg)
        return cfg

    try:
        with paths.config_file.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigFileError(f"Failed to read {paths.config_file}: {e}") from e
    return AppConfig.from_dict(data or {})
