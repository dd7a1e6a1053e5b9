from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import time
from typing import Any, Awaitable, Callable
from urllib.parse import urlsplit

import httpx

from pulse.app.services.api_client import ApiClient


logger = logging.getLogger(__name__)

Lookup = Callable[[str], Awaitable[list[str]]]

# Errors after which an address is skipped until its retry window passes
_CONNECTION_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)


class DnsResolutionError(OSError):
    """Raised when neither a fresh lookup nor the last good answer is usable."""


async def system_lookup(hostname: str) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    addresses: list[str] = []
    for info in infos:
        address = info[4][0]
        if address not in addresses:
            addresses.append(address)
    return addresses


def is_ip_address(host: str) -> bool:
    try:
        ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    return True


def extract_hostname(value: str) -> str:
    """Pull the hostname out of a URL or a ``host:port`` string."""
    candidate = value.strip()
    if "://" not in candidate:
        candidate = f"//{candidate}"
    try:
        hostname = urlsplit(candidate).hostname
    except ValueError:
        return value
    return hostname or value


class DnsResolver:
    """Resolves hostnames on every call, remembering the last good answer per host."""

    def __init__(
        self,
        *,
        lookup: Lookup = system_lookup,
        failed_host_retry_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lookup = lookup
        self._failed_host_retry = failed_host_retry_seconds
        self._clock = clock
        self._last_good: dict[str, list[str]] = {}
        self._failed_hosts: dict[str, float] = {}

    def clear_cache(self) -> None:
        self._last_good.clear()
        self._failed_hosts.clear()

    def mark_host_failed(self, address: str) -> None:
        logger.info("Marking address as failed: %s", address)
        self._failed_hosts[address] = self._clock()

    def is_host_failed(self, address: str) -> bool:
        failed_at = self._failed_hosts.get(address)
        if failed_at is None:
            return False
        if self._clock() - failed_at > self._failed_host_retry:
            self._failed_hosts.pop(address, None)
            return False
        return True

    async def resolve(self, hostname: str) -> list[str]:
        try:
            addresses = await self._lookup(hostname)
        except (OSError, UnicodeError) as exc:
            return self._fallback(hostname, exc)
        if not addresses:
            return self._fallback(hostname, None)

        self._last_good[hostname] = list(addresses)
        logger.debug("Resolved %s to %s", hostname, ", ".join(addresses))
        working = [address for address in addresses if not self.is_host_failed(address)]
        if not working:
            logger.warning(
                "All %d addresses for %s are marked as failed, using all anyway", len(addresses), hostname
            )
            return list(addresses)
        return working

    async def can_resolve(self, hostname: str) -> bool:
        try:
            addresses = await self.resolve(hostname)
        except DnsResolutionError:
            return False
        return bool(addresses)

    def _fallback(self, hostname: str, exc: Exception | None) -> list[str]:
        reason = str(exc) if exc else "no addresses returned"
        stale = self._last_good.get(hostname)
        if stale:
            logger.warning("Resolution failed for %s (%s), using last known addresses", hostname, reason)
            return list(stale)
        logger.error("Failed to resolve %s: %s", hostname, reason)
        raise DnsResolutionError(f"DNS resolution failed for {hostname}: {reason}")


class ResilientApiClient(ApiClient):
    """Drop-in ApiClient that re-resolves its hostname and fails over across addresses."""

    def __init__(self, *, resolver: DnsResolver, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.hostname = self.base_url.host
        self._host_header = self.base_url.netloc.decode("ascii")
        self._resolver = resolver
        self._last_working: str | None = None

    @property
    def last_working_address(self) -> str | None:
        return self._last_working

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None,
        json: Any,
    ) -> httpx.Response:
        try:
            addresses = await self._resolver.resolve(self.hostname)
        except DnsResolutionError as exc:
            raise httpx.ConnectError(str(exc)) from exc

        if self._last_working in addresses:
            addresses = [self._last_working, *(a for a in addresses if a != self._last_working)]

        candidates = [a for a in addresses if not self._resolver.is_host_failed(a)] or addresses
        last_error: httpx.RequestError | None = None
        for address in candidates:
            url = self._url(path, base=self.base_url.copy_with(host=address))
            try:
                response = await self._client.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers={"Host": self._host_header},
                    extensions={"sni_hostname": self.hostname},
                )
            except httpx.RequestError as exc:
                last_error = exc
                logger.warning("Request to %s via %s failed: %s", self.hostname, address, exc)
                if isinstance(exc, _CONNECTION_ERRORS):
                    self._resolver.mark_host_failed(address)
                continue
            self._last_working = address
            return response

        logger.error("All %d addresses failed for %s", len(candidates), self.hostname)
        if last_error is not None:
            raise last_error
        raise httpx.ConnectError(f"All addresses failed for {self.hostname}")
