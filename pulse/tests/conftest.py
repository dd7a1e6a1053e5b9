from __future__ import annotations

import pytest_asyncio

from pulse.app.schemas.endpoints import EndpointConfig
from pulse.app.services.api_client import ClientHandle
from pulse.tests.fakes import FakeUpstream, make_handle


@pytest_asyncio.fixture
async def handles():
    """Collects handles built in a test and closes them afterwards."""
    created: list[ClientHandle] = []

    def _build(upstream: FakeUpstream, endpoint: EndpointConfig | None = None) -> ClientHandle:
        handle = make_handle(upstream, endpoint)
        created.append(handle)
        return handle

    try:
        yield _build
    finally:
        for handle in created:
            await handle.client.aclose()
