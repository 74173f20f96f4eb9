"""Subscription download, caching and parsing.

This module turns a Clash-format subscription into :class:`Node` records:
- Downloading the subscription document
- Replacing the on-disk cache atomically
- Validating each proxy entry on its own
- Deriving the region of each node from its name
- Tagging node variants the proxy core cannot run

A malformed entry only produces a warning; the rest of the document is still
used. Only a document that is not valid YAML, or is not shaped like a
subscription, raises :class:`SubscriptionParseError`.

Example:
    result = parse_subscription(raw_bytes)
    for warning in result.warnings:
        logger.warning(warning)
    usable = result.supported
"""

import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import requests
import yaml
from loguru import logger

from route_cli import __version__
from route_cli.core.exceptions import (
    SubscriptionCacheMissingError,
    SubscriptionFetchError,
    SubscriptionParseError,
)
from route_cli.core.nodes import (
    SUPPORTED,
    SUPPORTED_KINDS,
    VMESS_NETWORKS,
    GrpcTransport,
    HttpProtocol,
    Node,
    ProtocolFields,
    Region,
    ShadowsocksProtocol,
    SocksProtocol,
    SupportStatus,
    TlsOptions,
    VmessProtocol,
    WebSocketTransport,
    unsupported,
)

DOWNLOAD_TIMEOUT: Final = 30  # seconds

# Checked in priority order; the first region with a hit wins
REGION_KEYWORDS: Final = [
    (
        Region.SINGAPORE,
        ("新加坡", "狮城", "獅城", "singapore", "🇸🇬"),
        frozenset({"sg", "sgp"}),
    ),
    (
        Region.KOREA,
        ("韩国", "韓國", "首尔", "首爾", "korea", "seoul", "🇰🇷"),
        frozenset({"kr", "kor"}),
    ),
    (
        Region.UNITED_STATES,
        ("美国", "美國", "united states", "america", "🇺🇸"),
        frozenset({"us", "usa"}),
    ),
]


@dataclass(frozen=True)
class ParseResult:
    """Nodes parsed from a subscription plus per-entry warnings."""

    nodes: tuple[Node, ...]
    warnings: tuple[str, ...] = ()

    @property
    def supported(self) -> list[Node]:
        return [node for node in self.nodes if node.is_supported]

    def find(self, name: str) -> Node | None:
        return next((node for node in self.nodes if node.name == name), None)


class _EntryError(ValueError):
    """A single subscription entry is malformed."""


def derive_region(name: str, hint: str | None = None) -> Region:
    """Map a node name (and optional region hint) to a region."""
    text = f"{name} {hint or ''}".lower()
    tokens = set(re.findall(r"[a-z]+", text))
    for region, keywords, codes in REGION_KEYWORDS:
        if any(keyword in text for keyword in keywords) or tokens & codes:
            return region
    return Region.OTHER


def _text(entry: dict[str, Any], key: str) -> str | None:
    value = entry.get(key)
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        value = str(value)
    if not isinstance(value, str):
        raise _EntryError(f"field '{key}' must be a string")
    value = value.strip()
    return value or None


def _flag(entry: dict[str, Any], key: str) -> bool | None:
    value = entry.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
        return value.strip().lower() == "true"
    raise _EntryError(f"field '{key}' must be a boolean")


def _port(entry: dict[str, Any]) -> int:
    value = entry.get("port")
    if isinstance(value, bool) or value is None:
        raise _EntryError("missing port")
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise _EntryError(f"port is not an integer: {value!r}") from None
    if not 1 <= port <= 65535:
        raise _EntryError(f"port out of range: {port}")
    return port


def _options(entry: dict[str, Any], key: str) -> dict[str, Any]:
    value = entry.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise _EntryError(f"field '{key}' must be a mapping")
    return value


def _tls(entry: dict[str, Any]) -> TlsOptions | None:
    if not _flag(entry, "tls"):
        return None
    return TlsOptions(
        server_name=_text(entry, "sni") or _text(entry, "servername"),
        insecure=_flag(entry, "skip-cert-verify"),
    )


def _vmess_transport(
    entry: dict[str, Any], network: str
) -> WebSocketTransport | GrpcTransport | None:
    if network == "ws":
        opts = _options(entry, "ws-opts")
        headers = opts.get("headers") or {}
        if not isinstance(headers, dict):
            raise _EntryError("ws-opts.headers must be a mapping")
        return WebSocketTransport(
            path=_text(opts, "path"),
            headers=tuple(sorted((str(k), str(v)) for k, v in headers.items())),
        )
    if network == "grpc":
        opts = _options(entry, "grpc-opts")
        return GrpcTransport(service_name=_text(opts, "grpc-service-name"))
    return None


def _build_protocol(
    kind: str, entry: dict[str, Any]
) -> tuple[ProtocolFields | None, SupportStatus]:
    """Build the kind-specific payload and decide whether it is supported."""
    if kind in ("socks5", "socks"):
        protocol = SocksProtocol(
            version="5",
            username=_text(entry, "username"),
            password=_text(entry, "password"),
            udp=_flag(entry, "udp"),
        )
        return protocol, SUPPORTED

    if kind == "http":
        protocol = HttpProtocol(
            username=_text(entry, "username"),
            password=_text(entry, "password"),
            tls=_tls(entry),
        )
        return protocol, SUPPORTED

    if kind == "ss":
        if "plugin" in entry or "plugin-opts" in entry:
            return None, unsupported("shadowsocks plugin is not supported")
        cipher = _text(entry, "cipher")
        password = _text(entry, "password")
        if not cipher or not password:
            return None, unsupported("shadowsocks node needs cipher and password")
        return ShadowsocksProtocol(cipher=cipher, password=password, udp=_flag(entry, "udp")), SUPPORTED

    if kind == "vmess":
        uuid = _text(entry, "uuid")
        if not uuid:
            return None, unsupported("vmess node needs uuid")
        network = (_text(entry, "network") or "tcp").lower()
        if network not in VMESS_NETWORKS:
            return None, unsupported(f"vmess transport '{network}' is not supported")
        alter_id = entry.get("alterId")
        if alter_id is not None:
            try:
                alter_id = int(alter_id)
            except (TypeError, ValueError):
                raise _EntryError(f"alterId is not an integer: {alter_id!r}") from None
        protocol = VmessProtocol(
            uuid=uuid,
            alter_id=alter_id,
            cipher=_text(entry, "cipher"),
            tls=_tls(entry),
            transport=_vmess_transport(entry, network),
        )
        return protocol, SUPPORTED

    return None, unsupported(f"unknown kind: {kind}")


def _parse_entry(entry: Any) -> Node:
    if not isinstance(entry, dict):
        raise _EntryError("entry is not a mapping")
    name = _text(entry, "name")
    if not name:
        raise _EntryError("missing name")
    kind = _text(entry, "type")
    if not kind:
        raise _EntryError(f"node '{name}' has no type")
    host = _text(entry, "server")
    if not host:
        raise _EntryError(f"node '{name}' has no server")
    try:
        port = _port(entry)
        kind = kind.lower()
        region = derive_region(name, _text(entry, "region") or _text(entry, "country"))
        protocol, support = _build_protocol(kind, entry)
    except _EntryError as e:
        raise _EntryError(f"node '{name}': {e}") from None
    return Node(
        name=name,
        kind=kind,
        host=host,
        port=port,
        region=region,
        protocol=protocol,
        support=support,
    )


def _load_entries(raw: bytes | str) -> list[Any]:
    try:
        document = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise SubscriptionParseError(f"Invalid subscription YAML: {e}") from e

    if document is None:
        return []
    if isinstance(document, list):
        return document
    if isinstance(document, dict):
        proxies = document.get("proxies")
        if proxies is None:
            return []
        if isinstance(proxies, list):
            return proxies
        raise SubscriptionParseError("Subscription 'proxies' is not a list")
    raise SubscriptionParseError("Subscription is neither a mapping nor a list of proxies")


def parse_subscription(raw: bytes | str) -> ParseResult:
    """Parse a subscription document into nodes.

    Args:
        raw: Subscription document (Clash YAML)

    Returns:
        ParseResult: Nodes in subscription order and warnings for skipped entries

    Raises:
        SubscriptionParseError: If the document itself cannot be parsed
    """
    nodes: list[Node] = []
    warnings: list[str] = []
    seen: set[str] = set()

    for index, entry in enumerate(_load_entries(raw), start=1):
        try:
            node = _parse_entry(entry)
        except _EntryError as e:
            warnings.append(f"entry #{index} skipped: {e}")
            continue
        if node.name in seen:
            warnings.append(f"entry #{index} skipped: duplicate node name '{node.name}'")
            continue
        seen.add(node.name)
        nodes.append(node)

    logger.debug(f"Parsed {len(nodes)} nodes with {len(warnings)} warnings")
    return ParseResult(nodes=tuple(nodes), warnings=tuple(warnings))


def download_subscription(url: str, timeout: float = DOWNLOAD_TIMEOUT) -> bytes:
    """Download the raw subscription document.

    Raises:
        SubscriptionFetchError: On network errors or a non-200 response
    """
    logger.info(f"Downloading subscription from {url}")
    try:
        resp = requests.get(
            url,
            headers={"User-Agent": f"route-cli/{__version__}"},
            timeout=timeout,
        )
    except requests.RequestException as e:
        raise SubscriptionFetchError(f"Failed to download subscription from {url}: {e}") from e
    if resp.status_code != 200:
        raise SubscriptionFetchError(f"Subscription request failed with status {resp.status_code}")
    return resp.content


def read_cached_subscription(cache_path: Path) -> bytes:
    if not cache_path.exists():
        raise SubscriptionCacheMissingError(
            f"Subscription cache not found at {cache_path}. Run `route-cli update` first."
        )
    return cache_path.read_bytes()


def write_subscription_cache(cache_path: Path, raw: bytes) -> None:
    """Replace the subscription cache atomically."""
    cache_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=cache_path.parent, prefix=".subscription-")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(raw)
        os.replace(tmp_name, cache_path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def update_subscription(url: str, cache_path: Path) -> ParseResult:
    """Download, validate and cache the subscription.

    The cache is only replaced when the new document parses and holds at
    least one usable entry.
    """
    raw = download_subscription(url)
    result = parse_subscription(raw)
    if not result.nodes:
        raise SubscriptionParseError("No proxies were found in subscription")
    write_subscription_cache(cache_path, raw)
    logger.info(f"Subscription cached at {cache_path} ({len(result.nodes)} nodes)")
    return result


def load_cached_nodes(cache_path: Path) -> ParseResult:
    return parse_subscription(read_cached_subscription(cache_path))
