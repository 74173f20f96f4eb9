"""Shared fixtures for route-cli tests."""

import os
import socket
import stat
import sys
import textwrap
from pathlib import Path

import pytest
from loguru import logger

from route_cli.core.nodes import Node, Region, ShadowsocksProtocol, SocksProtocol, unsupported
from route_cli.core.settings import AppPaths

posix_only = pytest.mark.skipif(os.name == "nt", reason="needs POSIX executables")

SAMPLE_SUBSCRIPTION = """\
proxies:
  - name: "🇸🇬 Singapore 01"
    type: socks5
    server: sg.example.com
    port: 1080
    username: user
    password: pass
  - name: "韩国 02"
    type: vmess
    server: kr.example.com
    port: 443
    uuid: 0b7e2a2c-1111-2222-3333-444455556666
    alterId: 0
    cipher: auto
    tls: true
    servername: kr.example.com
    network: ws
    ws-opts:
      path: /ray
      headers:
        Host: kr.example.com
  - name: US-West
    type: ss
    server: us.example.com
    port: 8388
    cipher: aes-256-gcm
    password: secret
  - name: JP obfs
    type: ss
    server: jp.example.com
    port: 8388
    cipher: aes-256-gcm
    password: secret
    plugin: obfs
  - name: HK trojan
    type: trojan
    server: hk.example.com
    port: 443
    password: secret
"""


class FakeProbe:
    """Probe answering from a fixed set of reachable node names."""

    def __init__(self, reachable=()):
        self.reachable = set(reachable)
        self.calls: list[str] = []

    def __call__(self, node: Node) -> bool:
        self.calls.append(node.name)
        return node.name in self.reachable


def make_node(name, region=Region.OTHER, *, kind="socks5", supported=True, port=1080) -> Node:
    if kind == "ss":
        protocol = ShadowsocksProtocol(cipher="aes-128-gcm", password="pw")
    else:
        protocol = SocksProtocol()
    if not supported:
        return Node(
            name=name,
            kind=kind,
            host=f"{name}.example.com",
            port=port,
            region=region,
            protocol=None,
            support=unsupported("shadowsocks plugin is not supported"),
        )
    return Node(name=name, kind=kind, host=f"{name}.example.com", port=port, region=region, protocol=protocol)


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def write_executable(path: Path, body: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body), encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


# Stands in for sing-box: listens on the mixed port from the generated config
FAKE_CORE = """\
import json
import socket
import sys

with open(sys.argv[3], encoding="utf-8") as fh:
    config = json.load(fh)
port = config["inbounds"][0]["listen_port"]

server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
server.bind(("127.0.0.1", port))
server.listen(16)
while True:
    conn, _ = server.accept()
    conn.close()
"""

# Never opens its port
SILENT_CORE = """\
import time

time.sleep(60)
"""


@pytest.fixture(autouse=True)
def _reset_logger():
    yield
    logger.remove()


@pytest.fixture
def app_paths(tmp_path, monkeypatch) -> AppPaths:
    root = tmp_path / "home"
    monkeypatch.setenv("ROUTE_CLI_HOME", str(root))
    return AppPaths(root=root)


@pytest.fixture
def fake_core(tmp_path) -> Path:
    return write_executable(tmp_path / "fake-core" / "sing-box-fake", FAKE_CORE)


@pytest.fixture
def silent_core(tmp_path) -> Path:
    return write_executable(tmp_path / "silent-core" / "sing-box-silent", SILENT_CORE)


@pytest.fixture
def sample_subscription() -> str:
    return SAMPLE_SUBSCRIPTION
