from __future__ import annotations

import logging
from datetime import datetime, timezone

from pulse.app.schemas.backups import BackupInstanceReport
from pulse.app.schemas.history import ChartData
from pulse.app.schemas.inventory import DiscoveryResult, Guest
from pulse.app.schemas.metrics import MetricSample
from pulse.app.schemas.state import ClusterState, CycleError, CycleStats
from pulse.app.services.metrics_history import MetricsHistory


logger = logging.getLogger(__name__)


class StateStore:
    """Latest merged cluster model; every update replaces whole sections, never patches them."""

    def __init__(self, history: MetricsHistory | None = None) -> None:
        self.history = history or MetricsHistory()
        self._discovery = DiscoveryResult()
        self._pbs: list[BackupInstanceReport] = []
        self._metrics: list[MetricSample] = []
        self._stats = CycleStats()

    def update_discovery(
        self,
        discovery: DiscoveryResult,
        pbs: list[BackupInstanceReport],
        *,
        duration_ms: int,
        errors: list[CycleError] | None = None,
    ) -> None:
        self._discovery = discovery
        self._pbs = pbs
        self._stats = self._stats.model_copy(
            update={
                "last_discovery_at": datetime.now(tz=timezone.utc),
                "discovery_duration_ms": duration_ms,
                "errors": list(errors or []),
            }
        )
        logger.debug(
            "Discovery state updated: %d nodes, %d VMs, %d containers, %d backup servers",
            len(discovery.nodes),
            len(discovery.vms),
            len(discovery.containers),
            len(pbs),
        )

    def update_metrics(self, metrics: list[MetricSample], *, duration_ms: int) -> None:
        self._metrics = metrics
        self.history.record(metrics)
        self.history.cleanup()
        self._stats = self._stats.model_copy(
            update={"last_metrics_at": datetime.now(tz=timezone.utc), "metrics_duration_ms": duration_ms}
        )

    def clear_metrics(self) -> None:
        self._metrics = []

    def record_error(self, error: CycleError) -> None:
        self._stats = self._stats.model_copy(update={"errors": [*self._stats.errors, error]})

    def running_guests(self) -> tuple[list[Guest], list[Guest]]:
        vms = [guest for guest in self._discovery.vms if guest.status == "running"]
        containers = [guest for guest in self._discovery.containers if guest.status == "running"]
        return vms, containers

    def snapshot(self) -> ClusterState:
        return ClusterState(
            nodes=self._discovery.nodes,
            vms=self._discovery.vms,
            containers=self._discovery.containers,
            pbs=self._pbs,
            storage=self._discovery.storage,
            metrics=self._metrics,
            rates=self.history.latest_rates(),
            stats=self._stats,
        )

    def chart_data(self) -> ChartData:
        return self.history.chart_data([*self._discovery.vms, *self._discovery.containers])
