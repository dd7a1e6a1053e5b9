from fastapi import APIRouter, Depends

from pulse.app.core.dependencies import get_state_store
from pulse.app.schemas.history import ChartData
from pulse.app.services.state import StateStore


router = APIRouter(prefix="/api/charts", tags=["charts"])


@router.get("", response_model=ChartData)
async def read_charts(state: StateStore = Depends(get_state_store)) -> ChartData:
    """Per-guest series from the last hour of metrics cycles."""
    return state.chart_data()
