"""Reachability probes for proxy nodes.

A probe answers one question: can this node be reached right now? The answer
is a plain bool; errors and timeouts count as unreachable and are never
raised to the caller.

Two mechanisms are provided because ICMP is often filtered where TCP is not:
- :class:`TcpProbe` resolves the host and opens a TCP connection to host:port
- :class:`PingProbe` sends one ICMP echo through the system ``ping`` command

Example:
    probe = make_probe("tcp", timeout=2.0)
    if probe(node):
        print(f"{node.name} is reachable")
"""

import os
import shutil
import socket
import subprocess
import time
from typing import Final, Protocol

from loguru import logger

from route_cli.core.exceptions import DNSResolutionError
from route_cli.core.lib.dns_handler import DNSResolver
from route_cli.core.nodes import Node

DEFAULT_PROBE_TIMEOUT: Final = 2.0  # seconds
PROBE_METHODS: Final = ("tcp", "ping")


class Probe(Protocol):
    def __call__(self, node: Node) -> bool: ...


class TcpProbe:
    """Probe a node by connecting to its server port.

    Resolution and connection share one deadline of ``timeout`` seconds.
    """

    def __init__(self, timeout: float = DEFAULT_PROBE_TIMEOUT, resolver: DNSResolver | None = None) -> None:
        self.timeout = timeout
        self.resolver = resolver or DNSResolver(lifetime=timeout)

    def __call__(self, node: Node) -> bool:
        deadline = time.monotonic() + self.timeout
        try:
            ip = self.resolver.resolve(node.host, timeout=self.timeout)
        except DNSResolutionError as e:
            logger.debug(f"Probe {node.name}: {e}")
            return False

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.debug(f"Probe {node.name}: no time left to connect after resolving {node.host}")
            return False
        try:
            with socket.create_connection((ip, node.port), timeout=remaining):
                return True
        except OSError as e:
            logger.debug(f"Probe {node.name} ({ip}:{node.port}) failed: {e}")
            return False


class PingProbe:
    """Probe a node host with a single ICMP echo request."""

    def __init__(self, timeout: float = DEFAULT_PROBE_TIMEOUT) -> None:
        self.timeout = timeout

    def _command(self, host: str) -> list[str]:
        if os.name == "nt":
            return ["ping", "-n", "1", "-w", str(int(self.timeout * 1000)), host]
        return ["ping", "-c", "1", "-W", str(max(1, round(self.timeout))), host]

    def __call__(self, node: Node) -> bool:
        if not shutil.which("ping"):
            logger.warning("ping is not available on PATH")
            return False
        try:
            result = subprocess.run(
                self._command(node.host),
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=self.timeout + 1,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"Ping {node.name} ({node.host}) failed: {e}")
            return False
        return result.returncode == 0


def make_probe(method: str, timeout: float = DEFAULT_PROBE_TIMEOUT) -> Probe:
    """Create the probe configured by ``probe.method``."""
    if method == "tcp":
        return TcpProbe(timeout=timeout)
    if method == "ping":
        return PingProbe(timeout=timeout)
    msg = f"Unknown probe method '{method}' (expected one of: {', '.join(PROBE_METHODS)})"
    raise ValueError(msg)
