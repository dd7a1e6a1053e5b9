from __future__ import annotations

import httpx
import pytest

from pulse.app.services.api_client import ApiClientError
from pulse.app.services.dns_resolver import (
    DnsResolutionError,
    DnsResolver,
    ResilientApiClient,
    extract_hostname,
    is_ip_address,
)
from pulse.app.services.retry import RetryPolicy, is_pve_retryable, no_retry


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class ScriptedLookup:
    """Returns queued answers in order; an exception entry is raised instead."""

    def __init__(self, *answers) -> None:
        self.answers = list(answers)
        self.calls = 0

    async def __call__(self, hostname: str) -> list[str]:
        self.calls += 1
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        if isinstance(answer, Exception):
            raise answer
        return list(answer)


def test_extract_hostname_accepts_urls_and_host_port():
    assert extract_hostname("https://pve.lan:8006/api2/json") == "pve.lan"
    assert extract_hostname("pve.lan:8006") == "pve.lan"
    assert extract_hostname("pve.lan") == "pve.lan"
    assert is_ip_address("10.0.0.1")
    assert is_ip_address("[fd00::1]")
    assert not is_ip_address("pve.lan")


@pytest.mark.asyncio
async def test_resolve_queries_every_time():
    lookup = ScriptedLookup(["10.0.0.1"], ["10.0.0.2"])
    resolver = DnsResolver(lookup=lookup)

    assert await resolver.resolve("pve.lan") == ["10.0.0.1"]
    assert await resolver.resolve("pve.lan") == ["10.0.0.2"]
    assert lookup.calls == 2


@pytest.mark.asyncio
async def test_failed_lookup_falls_back_to_last_good_answer():
    lookup = ScriptedLookup(["10.0.0.1"], OSError("temporary failure in name resolution"))
    resolver = DnsResolver(lookup=lookup)

    await resolver.resolve("pve.lan")

    assert await resolver.resolve("pve.lan") == ["10.0.0.1"]


@pytest.mark.asyncio
async def test_failed_lookup_without_fallback_raises():
    resolver = DnsResolver(lookup=ScriptedLookup(OSError("no such host")))

    with pytest.raises(DnsResolutionError):
        await resolver.resolve("pve.lan")
    assert not await resolver.can_resolve("pve.lan")


@pytest.mark.asyncio
async def test_clear_cache_drops_fallback():
    lookup = ScriptedLookup(["10.0.0.1"], OSError("gone"))
    resolver = DnsResolver(lookup=lookup)
    await resolver.resolve("pve.lan")

    resolver.clear_cache()

    with pytest.raises(DnsResolutionError):
        await resolver.resolve("pve.lan")


@pytest.mark.asyncio
async def test_failed_addresses_are_skipped_until_retry_window_passes():
    clock = FakeClock()
    resolver = DnsResolver(lookup=ScriptedLookup(["10.0.0.1", "10.0.0.2"]), failed_host_retry_seconds=30, clock=clock)

    resolver.mark_host_failed("10.0.0.1")
    assert await resolver.resolve("pve.lan") == ["10.0.0.2"]

    clock.now += 31
    assert await resolver.resolve("pve.lan") == ["10.0.0.1", "10.0.0.2"]


@pytest.mark.asyncio
async def test_all_addresses_failed_returns_all_of_them():
    resolver = DnsResolver(lookup=ScriptedLookup(["10.0.0.1", "10.0.0.2"]))
    resolver.mark_host_failed("10.0.0.1")
    resolver.mark_host_failed("10.0.0.2")

    assert await resolver.resolve("pve.lan") == ["10.0.0.1", "10.0.0.2"]


def _resilient(handler, resolver: DnsResolver, policy: RetryPolicy | None = None) -> ResilientApiClient:
    return ResilientApiClient(
        resolver=resolver,
        base_url="https://pve.lan:8006/api2/json",
        endpoint_name="Home lab",
        retry_policy=policy or no_retry(),
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_resilient_client_fails_over_and_keeps_original_host():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.host == "10.0.0.1":
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"data": [{"node": "pve"}]})

    resolver = DnsResolver(lookup=ScriptedLookup(["10.0.0.1", "10.0.0.2"]))
    client = _resilient(handler, resolver)
    try:
        assert await client.get("/nodes") == [{"node": "pve"}]
    finally:
        await client.aclose()

    assert [request.url.host for request in seen] == ["10.0.0.1", "10.0.0.2"]
    assert seen[-1].headers["Host"] == "pve.lan:8006"
    assert seen[-1].url.path == "/api2/json/nodes"
    assert client.last_working_address == "10.0.0.2"
    assert resolver.is_host_failed("10.0.0.1")


@pytest.mark.asyncio
async def test_resilient_client_prefers_last_working_address():
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.host)
        if request.url.host == "10.0.0.1" and len(seen) == 1:
            raise httpx.ConnectTimeout("timed out", request=request)
        return httpx.Response(200, json={"data": []})

    clock = FakeClock()
    resolver = DnsResolver(lookup=ScriptedLookup(["10.0.0.1", "10.0.0.2"]), clock=clock)
    client = _resilient(handler, resolver)
    try:
        await client.get("/nodes")
        clock.now += 60
        await client.get("/nodes")
    finally:
        await client.aclose()

    assert seen == ["10.0.0.1", "10.0.0.2", "10.0.0.2"]


@pytest.mark.asyncio
async def test_resolution_failure_goes_through_retry_policy():
    lookup = ScriptedLookup(OSError("no such host"), ["10.0.0.3"])
    policy = RetryPolicy(max_attempts=2, is_retryable=is_pve_retryable, delay=lambda _: 0.0)
    client = _resilient(lambda request: httpx.Response(200, json={"data": {"ok": 1}}), DnsResolver(lookup=lookup), policy)
    try:
        assert await client.get("/version") == {"ok": 1}
    finally:
        await client.aclose()

    assert lookup.calls == 2


@pytest.mark.asyncio
async def test_resolution_failure_without_fallback_surfaces_as_client_error():
    client = _resilient(lambda request: httpx.Response(200, json={"data": None}), DnsResolver(lookup=ScriptedLookup(OSError("nx"))))
    try:
        with pytest.raises(ApiClientError) as excinfo:
            await client.get("/version")
    finally:
        await client.aclose()

    assert excinfo.value.status_code is None
