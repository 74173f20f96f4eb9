"""sing-box runtime configuration generation.

Translates the selected :class:`Node` and the :class:`RoutingPolicy` into the
JSON document the proxy core is started with:

- one ``mixed`` inbound on ``127.0.0.1:<mixed_port>``
- the node as the ``proxy`` outbound, plus a ``direct`` outbound
- bypass entries routed to ``direct``, proxy domains routed to ``proxy``
- everything else falls through to ``direct``

Generation is pure: the same node and policy always produce byte-identical
JSON. Writing the document to disk is left to the caller.
"""

import ipaddress
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from route_cli.core.exceptions import UnsupportedNodeError
from route_cli.core.nodes import (
    GrpcTransport,
    HttpProtocol,
    Node,
    ShadowsocksProtocol,
    SocksProtocol,
    TlsOptions,
    VmessProtocol,
    WebSocketTransport,
)
from route_cli.core.settings import RoutingPolicy

PROXY_TAG: Final = "proxy"
DIRECT_TAG: Final = "direct"
INBOUND_TAG: Final = "mixed-in"
LISTEN_HOST: Final = "127.0.0.1"
LOG_LEVEL: Final = "warn"


@dataclass(frozen=True)
class ProxyCoreConfig:
    """Generated proxy core document."""

    document: dict[str, Any]

    def to_json(self) -> str:
        return json.dumps(self.document, indent=2, ensure_ascii=False) + "\n"

    def write(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_json(), encoding="utf-8")


def _compact(values: dict[str, Any]) -> dict[str, Any]:
    """Drop unset optional fields."""
    return {key: value for key, value in values.items() if value is not None}


def _tls(tls: TlsOptions | None) -> dict[str, Any] | None:
    if tls is None:
        return None
    return _compact({"enabled": True, "server_name": tls.server_name, "insecure": tls.insecure})


def _network(udp: bool | None) -> str | None:
    # sing-box enables both tcp and udp when the field is absent
    return "tcp" if udp is False else None


def _transport(transport: WebSocketTransport | GrpcTransport | None) -> dict[str, Any] | None:
    if transport is None:
        return None
    if isinstance(transport, WebSocketTransport):
        return _compact({
            "type": "ws",
            "path": transport.path,
            "headers": dict(transport.headers) or None,
        })
    if isinstance(transport, GrpcTransport):
        return _compact({"type": "grpc", "service_name": transport.service_name})
    raise TypeError(f"Unhandled transport: {type(transport).__name__}")


def _outbound(node: Node) -> dict[str, Any]:
    """Map the node payload to a sing-box outbound."""
    protocol = node.protocol
    common = {"tag": PROXY_TAG, "server": node.host, "server_port": node.port}

    if isinstance(protocol, SocksProtocol):
        fields = {
            "type": "socks",
            "version": protocol.version,
            "username": protocol.username,
            "password": protocol.password,
            "network": _network(protocol.udp),
        }
    elif isinstance(protocol, HttpProtocol):
        fields = {
            "type": "http",
            "username": protocol.username,
            "password": protocol.password,
            "tls": _tls(protocol.tls),
        }
    elif isinstance(protocol, ShadowsocksProtocol):
        fields = {
            "type": "shadowsocks",
            "method": protocol.cipher,
            "password": protocol.password,
            "network": _network(protocol.udp),
        }
    elif isinstance(protocol, VmessProtocol):
        fields = {
            "type": "vmess",
            "uuid": protocol.uuid,
            "alter_id": protocol.alter_id,
            "security": protocol.cipher,
            "tls": _tls(protocol.tls),
            "transport": _transport(protocol.transport),
        }
    else:
        raise TypeError(f"Unhandled protocol payload: {type(protocol).__name__}")

    return {"type": fields.pop("type"), **common, **_compact(fields)}


def _bypass_rule(entries: frozenset[str]) -> dict[str, Any] | None:
    cidrs: list[str] = []
    domains: list[str] = []
    for entry in entries:
        try:
            cidrs.append(str(ipaddress.ip_network(entry, strict=False)))
        except ValueError:
            domains.append(entry.lstrip("*").lstrip("."))
    rule = _compact({
        "ip_cidr": sorted(cidrs) or None,
        "domain_suffix": sorted(d for d in set(domains) if d) or None,
    })
    if not rule:
        return None
    return {**rule, "outbound": DIRECT_TAG}


def _route(policy: RoutingPolicy) -> dict[str, Any]:
    rules = []
    if bypass := _bypass_rule(policy.no_proxy):
        rules.append(bypass)
    if policy.proxy_domains:
        rules.append({"domain_suffix": sorted(policy.proxy_domains), "outbound": PROXY_TAG})
    return {"rules": rules, "final": DIRECT_TAG}


def generate_config(node: Node, policy: RoutingPolicy) -> ProxyCoreConfig:
    """Generate the proxy core config for a node.

    Args:
        node: Selected node; must be supported
        policy: Routing policy from the config document

    Returns:
        ProxyCoreConfig: The generated document

    Raises:
        UnsupportedNodeError: If the node cannot be run by the proxy core
    """
    if not node.is_supported:
        raise UnsupportedNodeError(
            f"Node '{node.name}' of kind '{node.kind}' is not supported: {node.support.reason}"
        )

    document = {
        "log": {"level": LOG_LEVEL},
        "inbounds": [
            {
                "type": "mixed",
                "tag": INBOUND_TAG,
                "listen": LISTEN_HOST,
                "listen_port": policy.mixed_port,
            }
        ],
        "outbounds": [_outbound(node), {"type": "direct", "tag": DIRECT_TAG}],
        "route": _route(policy),
    }
    return ProxyCoreConfig(document=document)
