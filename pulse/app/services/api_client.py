from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from pulse.app.schemas.endpoints import EndpointConfig
from pulse.app.services.retry import RetryPolicy


logger = logging.getLogger(__name__)

RequestHook = Callable[[httpx.Request], Awaitable[None]]


class ApiClientError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None, endpoint_name: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.endpoint_name = endpoint_name


def pve_auth_hook(config: EndpointConfig) -> RequestHook:
    """Sign requests with the two-part virtualization API token."""

    async def _sign(request: httpx.Request) -> None:
        if config.has_credentials:
            request.headers["Authorization"] = f"PVEAPIToken={config.token_id}={config.token_secret}"
        else:
            logger.error("Endpoint %s is missing required API token credentials", config.display_name)

    return _sign


def pbs_auth_hook(config: EndpointConfig) -> RequestHook:
    """Sign requests with the colon-joined backup server API token."""

    async def _sign(request: httpx.Request) -> None:
        if config.has_credentials:
            request.headers["Authorization"] = f"PBSAPIToken={config.token_id}:{config.token_secret}"
        else:
            logger.error("Backup server %s is missing required API token credentials", config.display_name)

    return _sign


class ApiClient:
    """JSON API client bound to one endpoint, with signing and a retry policy."""

    api_label = "API"

    def __init__(
        self,
        *,
        base_url: str,
        endpoint_name: str,
        retry_policy: RetryPolicy,
        auth_hook: RequestHook | None = None,
        timeout: float = 30.0,
        verify: bool = True,
        api_label: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = httpx.URL(base_url.rstrip("/"))
        self.endpoint_name = endpoint_name
        self.retry_policy = retry_policy
        if api_label:
            self.api_label = api_label
        hooks = {"request": [auth_hook]} if auth_hook else {}
        self._client = httpx.AsyncClient(
            timeout=timeout,
            verify=verify,
            headers={"Content-Type": "application/json"},
            event_hooks=hooks,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get(self, path: str, *, params: dict[str, Any] | None = None) -> Any:
        """GET ``path`` and return the ``data`` member of the JSON envelope."""
        response = await self.request("GET", path, params=params)
        return self._unwrap(response, path)

    async def post(
        self,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        retry: bool = False,
    ) -> Any:
        response = await self.request("POST", path, params=params, json=json, retry=retry)
        return self._unwrap(response, path)

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        retry: bool = True,
    ) -> httpx.Response:
        policy = self.retry_policy
        attempt = 0
        while True:
            try:
                response = await self._send(method, path, params=params, json=json)
                response.raise_for_status()
                return response
            except (httpx.HTTPStatusError, httpx.RequestError) as exc:
                if retry and attempt < policy.max_attempts and policy.is_retryable(exc):
                    attempt += 1
                    logger.warning(
                        "Retrying %s request for %s (attempt %d) due to error: %s",
                        self.api_label,
                        self.endpoint_name,
                        attempt,
                        exc,
                    )
                    await asyncio.sleep(policy.delay(attempt))
                    continue
                raise self._wrap_error(exc) from exc

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None,
        json: Any,
    ) -> httpx.Response:
        return await self._client.request(method, self._url(path), params=params, json=json)

    def _url(self, path: str, base: httpx.URL | None = None) -> str:
        root = str(base or self.base_url).rstrip("/")
        return f"{root}/{path.lstrip('/')}"

    def _wrap_error(self, exc: Exception) -> ApiClientError:
        if isinstance(exc, httpx.HTTPStatusError):
            body = exc.response.text[:200]
            return ApiClientError(
                f"{self.endpoint_name} responded with {exc.response.status_code}: {body}",
                status_code=exc.response.status_code,
                endpoint_name=self.endpoint_name,
            )
        return ApiClientError(f"Could not reach {self.endpoint_name}: {exc}", endpoint_name=self.endpoint_name)

    def _unwrap(self, response: httpx.Response, path: str) -> Any:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ApiClientError(
                f"{self.endpoint_name} returned a non-JSON body for {path}",
                status_code=response.status_code,
                endpoint_name=self.endpoint_name,
            ) from exc
        if isinstance(payload, dict):
            return payload.get("data")
        return None


@dataclass(frozen=True, slots=True)
class ClientHandle:
    client: ApiClient
    config: EndpointConfig

    @property
    def name(self) -> str:
        return self.config.display_name
