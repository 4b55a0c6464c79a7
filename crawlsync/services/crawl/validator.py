"""URL safety checks applied before any outbound fetch.

Blocks non-http(s) schemes, well-known internal hostnames (localhost, cloud
metadata endpoints) and any address in loopback / link-local / private
ranges, both for literal IPs and for every address the hostname resolves to.
"""
from __future__ import annotations

import asyncio
import ipaddress
import socket
from typing import Awaitable, Callable, Iterable, List, Optional, Set
from urllib.parse import urlsplit

from crawlsync.errors import FetchError, FetchFailure

Resolver = Callable[[str, int], Awaitable[List[str]]]

_DEFAULT_BLOCKED_HOSTS = {
    "localhost",
    "0.0.0.0",
    "metadata.google.internal",
    "metadata.gke.internal",
    "instance-data",
}

_DEFAULT_BLOCKED_NETS = [
    "10.0.0.0/8",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "169.254.0.0/16",
    "127.0.0.0/8",
    "0.0.0.0/8",
    "100.64.0.0/10",
    "::1/128",
    "fc00::/7",
    "fe80::/10",
]


async def _system_resolver(host: str, port: int) -> List[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


class UrlValidator:
    def __init__(
        self,
        *,
        allowed_hosts: Optional[Iterable[str]] = None,
        blocked_hosts: Optional[Iterable[str]] = None,
        resolver: Optional[Resolver] = None,
    ) -> None:
        self.allowed_schemes: Set[str] = {"http", "https"}
        self.allowed_hosts: Set[str] = {h.lower() for h in (allowed_hosts or [])}
        self.blocked_hosts: Set[str] = set(_DEFAULT_BLOCKED_HOSTS) | {h.lower() for h in (blocked_hosts or [])}
        self.blocked_nets = [ipaddress.ip_network(n) for n in _DEFAULT_BLOCKED_NETS]
        self._resolver = resolver or _system_resolver

    def _blocked_ip(self, text: str) -> bool:
        try:
            ip = ipaddress.ip_address(text.split("%", 1)[0])
        except ValueError:
            return False
        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
            ip = ip.ipv4_mapped
        return any(ip in net for net in self.blocked_nets if net.version == ip.version)

    def validate(self, url: str) -> str:
        """Static checks only. Returns the lowercased host or raises FetchError."""
        try:
            parts = urlsplit(url)
        except ValueError as exc:
            raise FetchError(url, FetchFailure.INVALID_URL, str(exc)) from exc
        scheme = (parts.scheme or "").lower()
        if scheme not in self.allowed_schemes:
            raise FetchError(url, FetchFailure.INVALID_URL, f"scheme '{scheme or '-'}' not allowed")
        host = (parts.hostname or "").lower()
        if not host:
            raise FetchError(url, FetchFailure.INVALID_URL, "missing host")
        if host in self.allowed_hosts:
            return host
        if host in self.blocked_hosts:
            raise FetchError(url, FetchFailure.BLOCKED, f"host '{host}' is blocked")
        if self._blocked_ip(host):
            raise FetchError(url, FetchFailure.BLOCKED, f"address '{host}' is in a private range")
        return host

    async def validate_with_dns(self, url: str) -> None:
        """Static checks plus resolution of the hostname.

        Every resolved address must be public; one private address is enough
        to block the URL.
        """
        host = self.validate(url)
        if host in self.allowed_hosts:
            return
        try:
            ipaddress.ip_address(host)
            return
        except ValueError:
            pass
        parts = urlsplit(url)
        port = parts.port or (443 if parts.scheme.lower() == "https" else 80)
        try:
            addrs = await self._resolver(host, port)
        except OSError as exc:
            raise FetchError(url, FetchFailure.NETWORK, f"dns resolution failed: {exc}") from exc
        for addr in addrs:
            if self._blocked_ip(addr):
                raise FetchError(url, FetchFailure.BLOCKED, f"'{host}' resolves to private address {addr}")
