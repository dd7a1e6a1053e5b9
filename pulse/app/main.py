from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from pydantic import ValidationError

from pulse.app.core.config import settings
from pulse.app.routers import charts, state, thresholds
from pulse.app.schemas.endpoints import BackupServerEndpoint, VirtClusterEndpoint
from pulse.app.services.client_factory import ClientFactory
from pulse.app.services.poller import AggregationPoller
from pulse.app.services.state import StateStore
from pulse.app.services.thresholds import ThresholdStore


logger = logging.getLogger(__name__)


def load_endpoints() -> tuple[list[VirtClusterEndpoint], list[BackupServerEndpoint]]:
    """Validate the endpoint lists handed over through settings, skipping malformed entries."""
    pve: list[VirtClusterEndpoint] = []
    pbs: list[BackupServerEndpoint] = []
    for raw in settings.pve_endpoints:
        try:
            pve.append(VirtClusterEndpoint.model_validate(raw))
        except ValidationError as exc:
            logger.error("Ignoring invalid virtualization endpoint %r: %s", raw.get("id"), exc)
    for raw in settings.pbs_endpoints:
        try:
            pbs.append(BackupServerEndpoint.model_validate(raw))
        except ValidationError as exc:
            logger.error("Ignoring invalid backup server endpoint %r: %s", raw.get("id"), exc)
    return pve, pbs


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load threshold overrides, build endpoint clients and start polling."""
    await app.state.threshold_store.initialize()
    poller: AggregationPoller = app.state.poller
    pve, pbs = load_endpoints()
    await poller.reload(pve, pbs)
    await poller.start()
    try:
        yield
    finally:
        await poller.stop()


def create_app(
    *,
    threshold_store: ThresholdStore | None = None,
    state_store: StateStore | None = None,
    poller: AggregationPoller | None = None,
) -> FastAPI:
    application = FastAPI(title=settings.app_name, debug=settings.debug, lifespan=lifespan)

    application.state.threshold_store = threshold_store or ThresholdStore(settings.thresholds_path)
    application.state.state_store = state_store or StateStore()
    application.state.poller = poller or AggregationPoller(ClientFactory(), application.state.state_store)

    application.include_router(thresholds.router)
    application.include_router(state.router)
    application.include_router(charts.router)

    @application.get("/healthz", tags=["meta"])
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    return application


app = create_app()
