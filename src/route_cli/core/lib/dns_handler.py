"""Host name resolution for reachability probes using dnspython."""

import ipaddress
import socket
import threading
import time
from typing import TYPE_CHECKING, Any, Final, NoReturn, cast

import dns.exception
import dns.resolver
from loguru import logger

from route_cli.core.exceptions import DNSResolutionError

if TYPE_CHECKING:
    from dns.resolver import Resolver

# DNS resolver constants
DEFAULT_TIMEOUT: Final = 1.0  # seconds
DEFAULT_LIFETIME: Final = 3.0  # seconds
DEFAULT_NAMESERVERS: Final = [
    "1.1.1.1",  # Cloudflare
    "8.8.8.8",  # Google
    "9.9.9.9",  # Quad9
]


class DNSResolver:
    """Resolve node hosts with the system resolver, falling back to public nameservers.

    Subscription hosts often resolve fine through public resolvers while the
    local resolver is filtered, so a system failure alone does not mark a
    node as unreachable.
    """

    def __init__(self, lifetime: float = DEFAULT_LIFETIME) -> None:
        self.resolver = cast("Resolver", dns.resolver.Resolver(configure=False))
        self.resolver.timeout = min(DEFAULT_TIMEOUT, lifetime)
        self.resolver.lifetime = lifetime
        self.resolver.nameservers = list(DEFAULT_NAMESERVERS)
        self._cache: dict[str, str] = {}
        self._lock = threading.Lock()

    def _try_system_dns(self, host: str, timeout: float) -> str | None:
        """Try resolving using system DNS, giving up after ``timeout`` seconds."""
        outcome: dict[str, Any] = {}

        def lookup() -> None:
            try:
                outcome["infos"] = socket.getaddrinfo(host, None, type=socket.SOCK_STREAM)
            except (OSError, UnicodeError) as e:
                outcome["error"] = e

        # getaddrinfo cannot be cancelled; a stalled lookup finishes in the background
        worker = threading.Thread(target=lookup, name=f"dns-{host}", daemon=True)
        worker.start()
        worker.join(timeout)
        if worker.is_alive():
            logger.debug(f"System DNS resolution timed out for {host} after {timeout:g}s")
            return None
        if "error" in outcome:
            logger.debug(f"System DNS resolution failed for {host}: {outcome['error']}")
            return None
        infos = outcome.get("infos")
        return str(infos[0][4][0]) if infos else None

    def _try_public_resolver(self, host: str, timeout: float) -> str | None:
        try:
            answer = self.resolver.resolve(host, "A", lifetime=timeout)
            return str(answer[0])
        except dns.exception.DNSException as e:
            logger.debug(f"Public nameservers failed for {host}: {e}")
            return None

    def _raise_dns_error(self, msg: str) -> NoReturn:
        raise DNSResolutionError(msg)

    def resolve(self, host: str, timeout: float | None = None) -> str:
        """Resolve a host name to an IP address.

        Both lookup steps share one deadline, so a call never takes much
        longer than ``timeout``.

        Args:
            host: Host name or IP literal
            timeout: Overall time budget in seconds (defaults to the resolver lifetime)

        Returns:
            str: Resolved IP address (IP literals are returned unchanged)

        Raises:
            DNSResolutionError: If resolution fails or the budget runs out
        """
        try:
            ipaddress.ip_address(host)
        except ValueError:
            pass
        else:
            return host

        with self._lock:
            cached = self._cache.get(host)
        if cached:
            return cached

        budget = self.resolver.lifetime if timeout is None else timeout
        deadline = time.monotonic() + budget
        ip = self._try_system_dns(host, budget)
        if not ip and (remaining := deadline - time.monotonic()) > 0:
            ip = self._try_public_resolver(host, remaining)
        if not ip:
            self._raise_dns_error(f"Could not resolve {host}")

        with self._lock:
            self._cache[host] = ip
        return ip
