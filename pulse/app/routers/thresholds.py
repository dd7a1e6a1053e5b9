from fastapi import APIRouter, Depends, HTTPException, status

from pulse.app.core.dependencies import get_threshold_store
from pulse.app.schemas.thresholds import (
    ThresholdExport,
    ThresholdOverride,
    ThresholdStatistics,
    ThresholdToggle,
    ThresholdUpdate,
)
from pulse.app.services.thresholds import ThresholdNotFoundError, ThresholdStore, ThresholdValidationError


router = APIRouter(prefix="/api/thresholds", tags=["thresholds"])

NOT_FOUND_DETAIL = "No custom thresholds found for this VM/LXC"


@router.get("", response_model=list[ThresholdOverride])
async def list_thresholds(store: ThresholdStore = Depends(get_threshold_store)) -> list[ThresholdOverride]:
    return store.list_all()


@router.get("/export", response_model=ThresholdExport)
async def export_thresholds(store: ThresholdStore = Depends(get_threshold_store)) -> ThresholdExport:
    return store.export_all()


@router.get("/statistics", response_model=ThresholdStatistics)
async def threshold_statistics(store: ThresholdStore = Depends(get_threshold_store)) -> ThresholdStatistics:
    return store.statistics()


@router.get("/{endpoint_id}/{node}/{vmid}", response_model=ThresholdOverride)
async def get_thresholds(
    endpoint_id: str,
    node: str,
    vmid: int,
    store: ThresholdStore = Depends(get_threshold_store),
) -> ThresholdOverride:
    record = store.get(endpoint_id, vmid, node=node)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=NOT_FOUND_DETAIL)
    return record


async def _save(store: ThresholdStore, endpoint_id: str, node: str, vmid: int, payload: ThresholdUpdate) -> ThresholdOverride:
    try:
        await store.set(endpoint_id, vmid, payload.thresholds, node=node)
    except ThresholdValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return store.get(endpoint_id, vmid)


@router.post("/{endpoint_id}/{node}/{vmid}", response_model=ThresholdOverride)
async def set_thresholds(
    endpoint_id: str,
    node: str,
    vmid: int,
    payload: ThresholdUpdate,
    store: ThresholdStore = Depends(get_threshold_store),
) -> ThresholdOverride:
    return await _save(store, endpoint_id, node, vmid, payload)


@router.put("/{endpoint_id}/{node}/{vmid}", response_model=ThresholdOverride)
async def update_thresholds(
    endpoint_id: str,
    node: str,
    vmid: int,
    payload: ThresholdUpdate,
    store: ThresholdStore = Depends(get_threshold_store),
) -> ThresholdOverride:
    if store.get(endpoint_id, vmid, node=node) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=NOT_FOUND_DETAIL)
    return await _save(store, endpoint_id, node, vmid, payload)


@router.patch("/{endpoint_id}/{node}/{vmid}/toggle", response_model=ThresholdOverride)
async def toggle_thresholds(
    endpoint_id: str,
    node: str,
    vmid: int,
    payload: ThresholdToggle,
    store: ThresholdStore = Depends(get_threshold_store),
) -> ThresholdOverride:
    try:
        await store.toggle(endpoint_id, vmid, payload.enabled, node=node)
    except ThresholdNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return store.get(endpoint_id, vmid)


@router.delete("/{endpoint_id}/{node}/{vmid}")
async def delete_thresholds(
    endpoint_id: str,
    node: str,
    vmid: int,
    store: ThresholdStore = Depends(get_threshold_store),
) -> dict[str, str]:
    removed = await store.remove(endpoint_id, vmid, node=node)
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=NOT_FOUND_DETAIL)
    return {"status": "removed"}
