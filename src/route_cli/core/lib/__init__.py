"""Supporting library components."""

from .dns_handler import DNSResolver

__all__ = ["DNSResolver"]
