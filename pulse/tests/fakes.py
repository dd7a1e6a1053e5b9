from __future__ import annotations

from typing import Any

import httpx

from pulse.app.schemas.endpoints import BackupServerEndpoint, EndpointConfig, VirtClusterEndpoint
from pulse.app.services.api_client import ApiClient, ClientHandle
from pulse.app.services.retry import no_retry


API_ROOT = "/api2/json"


class FakeUpstream:
    """MockTransport handler answering by path.

    A route value is the ``data`` payload, a ``(status, data)`` tuple, an
    exception to raise, or a callable taking the request.
    """

    def __init__(self, routes: dict[str, Any] | None = None) -> None:
        self.routes = dict(routes or {})
        self.calls: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        path = request.url.path.removeprefix(API_ROOT)
        route = self.routes.get(f"{request.method} {path}", self.routes.get(path))
        if route is None:
            return httpx.Response(404, json={"errors": f"no route for {path}"})
        if isinstance(route, Exception):
            raise route
        if callable(route):
            return route(request)
        if isinstance(route, tuple):
            status_code, data = route
            return httpx.Response(status_code, json={"data": data})
        return httpx.Response(200, json={"data": route})

    def paths(self) -> list[str]:
        return [request.url.path.removeprefix(API_ROOT) for request in self.calls]


def pve_endpoint(endpoint_id: str = "pve1", **overrides: Any) -> VirtClusterEndpoint:
    values = {
        "id": endpoint_id,
        "name": f"Cluster {endpoint_id}",
        "host": f"{endpoint_id}.example.com",
        "token_id": "monitor@pam!pulse",
        "token_secret": "secret",
    }
    values.update(overrides)
    return VirtClusterEndpoint(**values)


def pbs_endpoint(endpoint_id: str = "pbs1", **overrides: Any) -> BackupServerEndpoint:
    values = {
        "id": endpoint_id,
        "name": f"Backup {endpoint_id}",
        "host": f"{endpoint_id}.example.com",
        "token_id": "monitor@pbs!pulse",
        "token_secret": "secret",
    }
    values.update(overrides)
    return BackupServerEndpoint(**values)


def make_handle(upstream: FakeUpstream, endpoint: EndpointConfig | None = None) -> ClientHandle:
    endpoint = endpoint or pve_endpoint()
    client = ApiClient(
        base_url=f"https://{endpoint.host}:{endpoint.port}{API_ROOT}",
        endpoint_name=endpoint.display_name,
        retry_policy=no_retry(),
        transport=httpx.MockTransport(upstream),
    )
    return ClientHandle(client=client, config=endpoint)
