from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class HistoryPoint(BaseModel):
    model_config = ConfigDict(extra="ignore")

    time: int
    cpu: float | None = None
    mem: float | None = None
    maxmem: float | None = None
    disk: float | None = None
    maxdisk: float | None = None
    netin: float | None = None
    netout: float | None = None
    diskread: float | None = None
    diskwrite: float | None = None


class GuestAgentMemory(BaseModel):
    guest_mem_total: int
    guest_mem_free: int | None = None
    guest_mem_available: int | None = None
    guest_mem_cached: int | None = None
    guest_mem_buffers: int | None = None
    guest_mem_actual_used: int


class GuestCurrentStatus(BaseModel):
    """Point-in-time status; upstream fields not modelled here are kept as extras."""

    model_config = ConfigDict(extra="allow")

    status: str | None = None
    cpu: float | None = None
    cpus: float | None = None
    mem: float | None = None
    maxmem: float | None = None
    disk: float | None = None
    maxdisk: float | None = None
    netin: float | None = None
    netout: float | None = None
    diskread: float | None = None
    diskwrite: float | None = None
    uptime: float | None = None
    agent: float | None = None
    qmpstatus: str | None = None

    guest_mem_total: int | None = None
    guest_mem_free: int | None = None
    guest_mem_available: int | None = None
    guest_mem_cached: int | None = None
    guest_mem_buffers: int | None = None
    guest_mem_actual_used: int | None = None

    @field_validator(
        "cpu", "cpus", "mem", "maxmem", "disk", "maxdisk",
        "netin", "netout", "diskread", "diskwrite", "uptime", "agent",
        mode="before",
    )
    @classmethod
    def _drop_non_numeric(cls, value: Any) -> float | None:
        # one odd counter must not discard the rest of the status
        if isinstance(value, bool):
            return float(value)
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            try:
                return float(value)
            except ValueError:
                return None
        return None


class MetricSample(BaseModel):
    guest_id: str
    vmid: int
    guest_name: str | None = None
    node: str
    type: str
    endpoint_id: str
    endpoint_name: str
    history_points: list[HistoryPoint] = Field(default_factory=list)
    current: GuestCurrentStatus | None = None
