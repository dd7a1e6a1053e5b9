from datetime import datetime

from pydantic import BaseModel, Field

from pulse.app.schemas.backups import BackupInstanceReport
from pulse.app.schemas.history import GuestRates
from pulse.app.schemas.inventory import Guest, Node, StorageEntry
from pulse.app.schemas.metrics import MetricSample


class CycleError(BaseModel):
    type: str
    message: str
    endpoint_id: str = "general"


class CycleStats(BaseModel):
    last_discovery_at: datetime | None = None
    last_metrics_at: datetime | None = None
    discovery_duration_ms: int = 0
    metrics_duration_ms: int = 0
    errors: list[CycleError] = Field(default_factory=list)


class ClusterState(BaseModel):
    """Merged model handed to the presentation layer after every cycle."""

    nodes: list[Node] = Field(default_factory=list)
    vms: list[Guest] = Field(default_factory=list)
    containers: list[Guest] = Field(default_factory=list)
    pbs: list[BackupInstanceReport] = Field(default_factory=list)
    storage: list[StorageEntry] = Field(default_factory=list)
    metrics: list[MetricSample] = Field(default_factory=list)
    rates: dict[str, GuestRates] = Field(default_factory=dict)
    stats: CycleStats = Field(default_factory=CycleStats)
