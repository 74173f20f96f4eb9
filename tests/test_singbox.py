import json

import pytest
from conftest import make_node

from route_cli.core.exceptions import UnsupportedNodeError
from route_cli.core.nodes import (
    GrpcTransport,
    HttpProtocol,
    Node,
    Region,
    ShadowsocksProtocol,
    SocksProtocol,
    TlsOptions,
    VmessProtocol,
    WebSocketTransport,
)
from route_cli.core.settings import RoutingPolicy
from route_cli.core.singbox import generate_config


@pytest.fixture
def policy():
    return RoutingPolicy(
        proxy_domains=frozenset({"openai.com", "chatgpt.com"}),
        no_proxy=frozenset({"localhost", "127.0.0.1", "10.0.0.0/8", "*.internal.example"}),
        mixed_port=27890,
    )


def _proxy_outbound(node, policy):
    return generate_config(node, policy).document["outbounds"][0]


def test_output_is_deterministic(policy):
    node = make_node("sg-1", Region.SINGAPORE)

    first = generate_config(node, policy).to_json()
    second = generate_config(node, policy).to_json()

    assert first == second
    assert first.endswith("\n")


def test_document_layout(policy):
    document = json.loads(generate_config(make_node("sg-1"), policy).to_json())

    assert document["inbounds"] == [
        {"type": "mixed", "tag": "mixed-in", "listen": "127.0.0.1", "listen_port": 27890}
    ]
    assert [o["tag"] for o in document["outbounds"]] == ["proxy", "direct"]
    assert document["outbounds"][1] == {"type": "direct", "tag": "direct"}
    assert document["route"]["final"] == "direct"


def test_routing_rules(policy):
    rules = generate_config(make_node("sg-1"), policy).document["route"]["rules"]

    assert rules[0] == {
        "ip_cidr": ["10.0.0.0/8", "127.0.0.1/32"],
        "domain_suffix": ["internal.example", "localhost"],
        "outbound": "direct",
    }
    assert rules[1] == {"domain_suffix": ["chatgpt.com", "openai.com"], "outbound": "proxy"}


def test_no_bypass_rule_when_list_is_empty():
    policy = RoutingPolicy(proxy_domains=frozenset({"openai.com"}), no_proxy=frozenset(), mixed_port=1234)

    document = generate_config(make_node("sg-1"), policy).document

    assert document["route"]["rules"] == [{"domain_suffix": ["openai.com"], "outbound": "proxy"}]
    assert document["inbounds"][0]["listen_port"] == 1234


def test_unsupported_node_is_rejected(policy):
    node = make_node("jp-obfs", kind="ss", supported=False)

    with pytest.raises(UnsupportedNodeError, match="jp-obfs"):
        generate_config(node, policy)


def test_socks_outbound(policy):
    node = Node(
        name="s",
        kind="socks5",
        host="s.example.com",
        port=1080,
        protocol=SocksProtocol(username="u", password="p", udp=False),
    )

    assert _proxy_outbound(node, policy) == {
        "type": "socks",
        "tag": "proxy",
        "server": "s.example.com",
        "server_port": 1080,
        "version": "5",
        "username": "u",
        "password": "p",
        "network": "tcp",
    }


def test_http_outbound_with_tls(policy):
    node = Node(
        name="h",
        kind="http",
        host="h.example.com",
        port=443,
        protocol=HttpProtocol(tls=TlsOptions(server_name="h.example.com", insecure=True)),
    )

    outbound = _proxy_outbound(node, policy)

    assert outbound["type"] == "http"
    assert outbound["tls"] == {"enabled": True, "server_name": "h.example.com", "insecure": True}
    assert "username" not in outbound


def test_shadowsocks_outbound(policy):
    node = Node(
        name="ss",
        kind="ss",
        host="ss.example.com",
        port=8388,
        protocol=ShadowsocksProtocol(cipher="aes-256-gcm", password="secret"),
    )

    assert _proxy_outbound(node, policy) == {
        "type": "shadowsocks",
        "tag": "proxy",
        "server": "ss.example.com",
        "server_port": 8388,
        "method": "aes-256-gcm",
        "password": "secret",
    }


def test_vmess_websocket_outbound(policy):
    node = Node(
        name="v",
        kind="vmess",
        host="v.example.com",
        port=443,
        protocol=VmessProtocol(
            uuid="uuid-1",
            alter_id=0,
            cipher="auto",
            tls=TlsOptions(server_name="v.example.com"),
            transport=WebSocketTransport(path="/ray", headers=(("Host", "v.example.com"),)),
        ),
    )

    outbound = _proxy_outbound(node, policy)

    assert outbound["uuid"] == "uuid-1"
    assert outbound["alter_id"] == 0
    assert outbound["security"] == "auto"
    assert outbound["tls"] == {"enabled": True, "server_name": "v.example.com"}
    assert outbound["transport"] == {"type": "ws", "path": "/ray", "headers": {"Host": "v.example.com"}}


def test_vmess_grpc_outbound(policy):
    node = Node(
        name="g",
        kind="vmess",
        host="g.example.com",
        port=443,
        protocol=VmessProtocol(uuid="uuid-2", transport=GrpcTransport(service_name="svc")),
    )

    outbound = _proxy_outbound(node, policy)

    assert outbound["transport"] == {"type": "grpc", "service_name": "svc"}
    assert "tls" not in outbound


def test_write_creates_parent(tmp_path, policy):
    path = tmp_path / "generated" / "sing-box.json"

    config = generate_config(make_node("sg-1"), policy)
    config.write(path)

    assert path.read_text(encoding="utf-8") == config.to_json()
