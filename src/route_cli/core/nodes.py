"""Proxy node model.

A subscription describes each proxy endpoint as a loosely typed mapping. This
module defines the typed form the rest of the tool works with:

- :class:`Node` holds what every endpoint has (name, host, port, region)
- one protocol payload per supported kind, a closed set of dataclasses
- :class:`SupportStatus` records whether the proxy core can use the node

Adding a kind means adding a payload class here, a branch in
``subscription._build_protocol`` and a branch in ``singbox._outbound``.

Example:
    node = Node(
        name="sg-1",
        kind="socks5",
        host="203.0.113.7",
        port=1080,
        region=Region.SINGAPORE,
        protocol=SocksProtocol(version="5"),
    )
"""

from dataclasses import dataclass, field
from enum import IntEnum


class Region(IntEnum):
    """Node region, ordered by selection priority (lower is preferred)."""

    SINGAPORE = 0
    KOREA = 1
    UNITED_STATES = 2
    OTHER = 3

    @property
    def label(self) -> str:
        return _REGION_LABELS[self]


_REGION_LABELS = {
    Region.SINGAPORE: "Singapore",
    Region.KOREA: "Korea",
    Region.UNITED_STATES: "UnitedStates",
    Region.OTHER: "Other",
}

SUPPORTED_KINDS = frozenset({"socks5", "socks", "http", "ss", "vmess"})
VMESS_NETWORKS = frozenset({"tcp", "ws", "grpc"})


@dataclass(frozen=True)
class TlsOptions:
    """TLS settings shared by http and vmess nodes."""

    server_name: str | None = None
    insecure: bool | None = None


@dataclass(frozen=True)
class WebSocketTransport:
    path: str | None = None
    headers: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class GrpcTransport:
    service_name: str | None = None


@dataclass(frozen=True)
class SocksProtocol:
    """Payload for ``socks5`` and ``socks`` nodes."""

    version: str = "5"
    username: str | None = None
    password: str | None = None
    udp: bool | None = None


@dataclass(frozen=True)
class HttpProtocol:
    username: str | None = None
    password: str | None = None
    tls: TlsOptions | None = None


@dataclass(frozen=True)
class ShadowsocksProtocol:
    cipher: str
    password: str
    udp: bool | None = None


@dataclass(frozen=True)
class VmessProtocol:
    """Payload for ``vmess`` nodes; ``transport`` is None for plain tcp."""

    uuid: str
    alter_id: int | None = None
    cipher: str | None = None
    tls: TlsOptions | None = None
    transport: WebSocketTransport | GrpcTransport | None = None


ProtocolFields = SocksProtocol | HttpProtocol | ShadowsocksProtocol | VmessProtocol


@dataclass(frozen=True)
class SupportStatus:
    supported: bool
    reason: str | None = None

    def __str__(self) -> str:
        if self.supported:
            return "supported"
        return f"unsupported ({self.reason})" if self.reason else "unsupported"


SUPPORTED = SupportStatus(supported=True)


def unsupported(reason: str) -> SupportStatus:
    return SupportStatus(supported=False, reason=reason)


@dataclass(frozen=True)
class Node:
    """One candidate proxy endpoint from a subscription.

    Attributes:
        name: Name of the node, unique within a subscription
        kind: Subscription ``type`` value (e.g. 'vmess'); unknown kinds are kept verbatim
        host: Server host name or IP address
        port: Server port (1-65535)
        region: Region derived from the node name
        protocol: Kind-specific payload, None when the kind is unknown
        support: Whether the node can be handed to the proxy core
    """

    name: str
    kind: str
    host: str
    port: int
    region: Region = Region.OTHER
    protocol: ProtocolFields | None = None
    support: SupportStatus = field(default=SUPPORTED)

    @property
    def is_supported(self) -> bool:
        return self.support.supported and self.protocol is not None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"
