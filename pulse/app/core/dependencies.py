from fastapi import HTTPException, Request, status

from pulse.app.services.state import StateStore
from pulse.app.services.thresholds import ThresholdStore


async def get_threshold_store(request: Request) -> ThresholdStore:
    """Return the process-wide threshold store, loading it on first use."""
    store: ThresholdStore | None = getattr(request.app.state, "threshold_store", None)
    if store is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Threshold store unavailable")
    if not store.initialized:
        await store.initialize()
    return store


def get_state_store(request: Request) -> StateStore:
    state: StateStore | None = getattr(request.app.state, "state_store", None)
    if state is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="State not available yet")
    return state
