from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

from pydantic import ValidationError

from pulse.app.schemas.inventory import Guest
from pulse.app.schemas.metrics import GuestAgentMemory, GuestCurrentStatus, HistoryPoint, MetricSample
from pulse.app.services.api_client import ApiClientError, ClientHandle


logger = logging.getLogger(__name__)

HISTORY_PARAMS = {"timeframe": "hour", "cf": "AVERAGE"}

# Tried in order; the first whose fields are all present wins.
MemoryFormula = tuple[tuple[str, ...], Callable[[Mapping[str, int]], int]]
ACTUAL_USED_FORMULAS: tuple[MemoryFormula, ...] = (
    (("total", "available"), lambda m: m["total"] - m["available"]),
    (
        ("total", "free", "cached", "buffers"),
        lambda m: m["total"] - m["free"] - m["cached"] - m["buffers"],
    ),
    (("total", "free"), lambda m: m["total"] - m["free"]),
)


@dataclass(slots=True)
class CallOutcome:
    value: Any = None
    error: ApiClientError | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


def _numeric_fields(memory: Mapping[str, Any]) -> dict[str, int]:
    return {
        key: int(value)
        for key, value in memory.items()
        if isinstance(value, (int, float)) and not isinstance(value, bool)
    }


def compute_actual_used(memory: Mapping[str, Any]) -> int | None:
    numeric = _numeric_fields(memory)
    for fields, formula in ACTUAL_USED_FORMULAS:
        if all(name in numeric for name in fields):
            return formula(numeric)
    return None


def parse_agent_memory(payload: Any) -> GuestAgentMemory | None:
    """Normalize an agent memory answer; ``None`` when it carries nothing usable."""
    if not isinstance(payload, dict):
        return None
    if "error" in payload:
        return None
    memory = payload.get("result", payload)
    if not isinstance(memory, dict):
        return None
    numeric = _numeric_fields(memory)
    actual_used = compute_actual_used(numeric)
    if actual_used is None:
        return None
    return GuestAgentMemory(
        guest_mem_total=numeric["total"],
        guest_mem_free=numeric.get("free"),
        guest_mem_available=numeric.get("available"),
        guest_mem_cached=numeric.get("cached"),
        guest_mem_buffers=numeric.get("buffers"),
        guest_mem_actual_used=actual_used,
    )


def parse_history(payload: Any) -> list[HistoryPoint]:
    if not isinstance(payload, list):
        return []
    points: list[HistoryPoint] = []
    for row in payload:
        if not isinstance(row, dict) or "time" not in row:
            continue
        try:
            points.append(HistoryPoint.model_validate(row))
        except ValidationError:
            continue
    points.sort(key=lambda point: point.time)
    return points


def parse_current(payload: Any) -> GuestCurrentStatus | None:
    if not isinstance(payload, dict):
        return None
    try:
        return GuestCurrentStatus.model_validate(payload)
    except ValidationError:
        return None


def should_query_agent(guest: Guest, current: GuestCurrentStatus) -> bool:
    if guest.type != "vm":
        return False
    # a guest without an agent entry in its config is never queried
    if guest.agent_enabled_hint is not True:
        return False
    return bool(current.agent) and (current.qmpstatus or current.status) == "running"


async def _call(coro) -> CallOutcome:
    try:
        return CallOutcome(value=await coro)
    except ApiClientError as exc:
        return CallOutcome(error=exc)


async def fetch_agent_memory(handle: ClientHandle, guest: Guest) -> GuestAgentMemory | None:
    """Best-effort, single-shot agent query; every failure yields ``None``."""
    path = f"/nodes/{guest.node}/qemu/{guest.vmid}/agent/get-memory-block-info"
    try:
        payload = await handle.client.post(path, retry=False)
    except ApiClientError as exc:
        logger.debug("[%s] Guest agent memory query failed for VM %s: %s", handle.name, guest.vmid, exc)
        return None
    return parse_agent_memory(payload)


async def fetch_guest_metrics(handle: ClientHandle, guest: Guest) -> MetricSample | None:
    base = f"/nodes/{guest.node}/{guest.api_path_segment}/{guest.vmid}"
    label = f"{guest.api_path_segment} {guest.vmid} ({guest.name or 'unknown'}) on node {guest.node}"

    async with asyncio.TaskGroup() as group:
        history_task = group.create_task(_call(handle.client.get(f"{base}/rrddata", params=HISTORY_PARAMS)))
        current_task = group.create_task(_call(handle.client.get(f"{base}/status/current")))
    history, current = history_task.result(), current_task.result()

    if current.failed:
        if current.error.status_code == 400:
            logger.debug("[%s] Guest %s is not running, skipping metrics", handle.name, label)
            return None
        status = f" (Status: {current.error.status_code})" if current.error.status_code else ""
        logger.error("[%s] Failed to get current status for %s%s: %s", handle.name, label, status, current.error)
    if history.failed:
        logger.warning("[%s] Failed to get history for %s: %s", handle.name, label, history.error)
    if history.failed and current.failed:
        return None

    current_status = None if current.failed else parse_current(current.value)
    if history.failed and current_status is None:
        return None

    if current_status is not None and should_query_agent(guest, current_status):
        agent_memory = await fetch_agent_memory(handle, guest)
        if agent_memory is not None:
            for key, value in agent_memory.model_dump().items():
                setattr(current_status, key, value)

    return MetricSample(
        guest_id=guest.id,
        vmid=guest.vmid,
        guest_name=guest.name,
        node=guest.node,
        type=guest.type,
        endpoint_id=guest.endpoint_id,
        endpoint_name=handle.name,
        history_points=[] if history.failed else parse_history(history.value),
        current=current_status,
    )


async def _safe_guest_metrics(handle: ClientHandle, guest: Guest) -> MetricSample | None:
    try:
        return await fetch_guest_metrics(handle, guest)
    except Exception:  # pragma: no cover - defensive logging
        logger.exception("[%s] Unexpected error collecting metrics for guest %s", handle.name, guest.vmid)
        return None


async def fetch_metrics_data(
    running_vms: Sequence[Guest],
    running_containers: Sequence[Guest],
    clients: Mapping[str, ClientHandle],
) -> list[MetricSample]:
    """Collect history and current status for every running guest that has a client."""
    logger.info(
        "Starting metrics fetch for %d VMs, %d containers", len(running_vms), len(running_containers)
    )
    missing: set[str] = set()
    async with asyncio.TaskGroup() as group:
        tasks = []
        for guest in (*running_vms, *running_containers):
            handle = clients.get(guest.endpoint_id)
            if handle is None:
                missing.add(guest.endpoint_id)
                continue
            tasks.append(group.create_task(_safe_guest_metrics(handle, guest)))
    for endpoint_id in sorted(missing):
        logger.warning("No API client found for endpoint: %s", endpoint_id)

    samples = [sample for sample in (task.result() for task in tasks) if sample is not None]
    logger.info("Completed metrics fetch, got data for %d guests", len(samples))
    return samples
