from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

import httpx

from pulse.app.core.config import settings
from pulse.app.schemas.endpoints import BackupServerEndpoint, EndpointConfig, VirtClusterEndpoint
from pulse.app.services.api_client import (
    ApiClient,
    ClientHandle,
    RequestHook,
    pbs_auth_hook,
    pve_auth_hook,
)
from pulse.app.services.dns_resolver import DnsResolver, ResilientApiClient, extract_hostname, is_ip_address
from pulse.app.services.retry import RetryPolicy, exponential_delay, is_pbs_retryable, is_pve_retryable


logger = logging.getLogger(__name__)

API_ROOT = "/api2/json"


@dataclass(slots=True)
class ClientFactory:
    """Builds one ClientHandle per enabled endpoint. No network calls are made here."""

    resolver: DnsResolver = field(default_factory=lambda: DnsResolver(
        failed_host_retry_seconds=settings.dns_failed_host_retry_seconds,
    ))
    timeout: float = field(default_factory=lambda: settings.request_timeout_seconds)
    max_attempts: int = field(default_factory=lambda: settings.retry_max_attempts)
    base_delay: float = field(default_factory=lambda: settings.retry_base_delay_seconds)
    resilient_suffixes: list[str] = field(default_factory=lambda: list(settings.resilient_dns_suffixes))
    transport: httpx.AsyncBaseTransport | None = None

    def build_pve_clients(self, endpoints: Iterable[VirtClusterEndpoint]) -> dict[str, ClientHandle]:
        endpoints = list(endpoints)
        logger.info("Initializing API clients for %d virtualization endpoints", len(endpoints))
        handles: dict[str, ClientHandle] = {}
        for endpoint in endpoints:
            if not endpoint.enabled:
                logger.info("Skipping disabled virtualization endpoint: %s (%s)", endpoint.display_name, endpoint.host)
                continue
            policy = RetryPolicy(
                max_attempts=self.max_attempts,
                is_retryable=is_pve_retryable,
                delay=exponential_delay(self.base_delay),
            )
            client = self.create_client(endpoint, pve_auth_hook(endpoint), policy, api_label="PVE API")
            handles[endpoint.id] = ClientHandle(client=client, config=endpoint)
            logger.info(
                "Initialized virtualization client for %s (%s)%s",
                endpoint.display_name,
                endpoint.host,
                " with resilient DNS" if isinstance(client, ResilientApiClient) else "",
            )
        return handles

    def build_pbs_clients(self, endpoints: Iterable[BackupServerEndpoint]) -> dict[str, ClientHandle]:
        endpoints = list(endpoints)
        if not endpoints:
            logger.info("No backup servers configured, skipping client initialization")
            return {}
        logger.info("Initializing API clients for %d backup servers", len(endpoints))
        handles: dict[str, ClientHandle] = {}
        for endpoint in endpoints:
            if not endpoint.enabled:
                logger.info("Skipping disabled backup server: %s (%s)", endpoint.display_name, endpoint.host)
                continue
            if endpoint.auth_method != "token":
                logger.error(
                    "Unexpected auth method %r for backup server %s", endpoint.auth_method, endpoint.display_name
                )
                continue
            policy = RetryPolicy(
                max_attempts=self.max_attempts,
                is_retryable=is_pbs_retryable,
                delay=exponential_delay(self.base_delay),
            )
            client = self.create_client(endpoint, pbs_auth_hook(endpoint), policy, api_label="PBS API")
            handles[endpoint.id] = ClientHandle(client=client, config=endpoint)
            logger.info(
                "Initialized backup server client for %s%s",
                endpoint.display_name,
                " with resilient DNS" if isinstance(client, ResilientApiClient) else "",
            )
        logger.info("Initialized %d / %d backup server clients", len(handles), len(endpoints))
        return handles

    def create_client(
        self,
        endpoint: EndpointConfig,
        auth_hook: RequestHook,
        policy: RetryPolicy,
        *,
        api_label: str,
    ) -> ApiClient:
        base_url = build_base_url(endpoint)
        options = dict(
            base_url=base_url,
            endpoint_name=endpoint.display_name,
            retry_policy=policy,
            auth_hook=auth_hook,
            timeout=self.timeout,
            verify=not endpoint.allow_self_signed_certs,
            api_label=api_label,
            transport=self.transport,
        )
        hostname = extract_hostname(base_url)
        if self.wants_resilient_dns(endpoint) and not is_ip_address(hostname):
            logger.info("Creating resilient client for hostname: %s", hostname)
            return ResilientApiClient(resolver=self.resolver, **options)
        return ApiClient(**options)

    def wants_resilient_dns(self, endpoint: EndpointConfig) -> bool:
        if endpoint.use_resilient_dns:
            return True
        hostname = extract_hostname(endpoint.host).lower()
        return any(hostname.endswith(suffix) for suffix in self.resilient_suffixes)


def build_base_url(endpoint: EndpointConfig) -> str:
    host = endpoint.host.rstrip("/")
    if "://" in host:
        return f"{host}{API_ROOT}"
    if endpoint.port:
        return f"https://{host}:{endpoint.port}{API_ROOT}"
    return f"https://{host}{API_ROOT}"


async def close_handles(handles: dict[str, ClientHandle]) -> None:
    for handle in handles.values():
        await handle.client.aclose()
