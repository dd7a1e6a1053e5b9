from fastapi import APIRouter, Depends

from pulse.app.core.dependencies import get_state_store
from pulse.app.schemas.state import ClusterState
from pulse.app.services.state import StateStore


router = APIRouter(prefix="/api/state", tags=["state"])


@router.get("", response_model=ClusterState)
async def read_state(state: StateStore = Depends(get_state_store)) -> ClusterState:
    return state.snapshot()
