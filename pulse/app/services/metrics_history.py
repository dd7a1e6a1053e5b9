from __future__ import annotations

import logging
import time
from collections import deque
from typing import Callable, Iterable

from pulse.app.core.config import settings
from pulse.app.schemas.history import (
    ChartData,
    ChartPoint,
    GuestChartSeries,
    GuestRates,
    HistorySample,
    HistoryStats,
)
from pulse.app.schemas.inventory import Guest
from pulse.app.schemas.metrics import GuestCurrentStatus, MetricSample


logger = logging.getLogger(__name__)


def calculate_rate(current: float | None, previous: float | None, elapsed: float) -> float | None:
    if current is None or previous is None or elapsed <= 0:
        return None
    delta = current - previous
    if delta < 0:
        # counter reset after a guest restart
        return None
    return delta / elapsed


def _percent(used: float | None, total: float | None) -> float | None:
    if not used or not total:
        return None
    return used / total * 100


class MetricsHistory:
    """Rolling per-guest samples of each metrics cycle, bounded by count and age."""

    def __init__(
        self,
        *,
        retention_seconds: float | None = None,
        max_points: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.retention_seconds = retention_seconds or settings.metrics_history_retention_seconds
        self.max_points = max_points or settings.metrics_history_max_points
        self._clock = clock
        self._samples: dict[str, deque[HistorySample]] = {}

    def add(self, guest_id: str, current: GuestCurrentStatus) -> HistorySample:
        now = self._clock()
        points = self._samples.setdefault(guest_id, deque(maxlen=self.max_points))
        sample = HistorySample(
            timestamp=now,
            cpu=current.cpu or 0.0,
            mem=current.mem or 0.0,
            maxmem=current.maxmem,
            disk=current.disk or 0.0,
            maxdisk=current.maxdisk,
            diskread=current.diskread or 0.0,
            diskwrite=current.diskwrite or 0.0,
            netin=current.netin or 0.0,
            netout=current.netout or 0.0,
            guest_mem_actual_used=current.guest_mem_actual_used,
            guest_mem_total=current.guest_mem_total,
        )
        if points:
            previous = points[-1]
            elapsed = now - previous.timestamp
            sample.rates = GuestRates(
                disk_read_rate=calculate_rate(sample.diskread, previous.diskread, elapsed),
                disk_write_rate=calculate_rate(sample.diskwrite, previous.diskwrite, elapsed),
                net_in_rate=calculate_rate(sample.netin, previous.netin, elapsed),
                net_out_rate=calculate_rate(sample.netout, previous.netout, elapsed),
            )
        points.append(sample)
        return sample

    def record(self, samples: Iterable[MetricSample]) -> int:
        recorded = 0
        for sample in samples:
            if sample.current is None:
                continue
            self.add(sample.guest_id, sample.current)
            recorded += 1
        return recorded

    def cleanup(self) -> int:
        """Drop samples older than the retention window and guests left without any."""
        cutoff = self._clock() - self.retention_seconds
        removed = 0
        for guest_id in list(self._samples):
            points = self._samples[guest_id]
            while points and points[0].timestamp < cutoff:
                points.popleft()
                removed += 1
            if not points:
                del self._samples[guest_id]
        if removed:
            logger.debug("Dropped %d expired history samples", removed)
        return removed

    def clear_guest(self, guest_id: str) -> None:
        self._samples.pop(guest_id, None)

    def latest_rates(self) -> dict[str, GuestRates]:
        return {
            guest_id: points[-1].rates
            for guest_id, points in self._samples.items()
            if points and points[-1].rates is not None
        }

    def series(self, guest_id: str, guest: Guest | None = None) -> GuestChartSeries | None:
        cutoff = self._clock() - self.retention_seconds
        points = [point for point in self._samples.get(guest_id, ()) if point.timestamp >= cutoff]
        if not points:
            return None
        maxmem = guest.maxmem if guest else None
        maxdisk = guest.maxdisk if guest else None

        series = GuestChartSeries()
        for point in points:
            rates = point.rates or GuestRates()
            memory = _percent(point.guest_mem_actual_used, point.guest_mem_total)
            if memory is None:
                memory = _percent(point.mem, maxmem or point.maxmem)
            values = {
                "cpu": point.cpu * 100,
                "memory": memory,
                "disk": _percent(point.disk, maxdisk or point.maxdisk),
                "diskread": rates.disk_read_rate,
                "diskwrite": rates.disk_write_rate,
                "netin": rates.net_in_rate,
                "netout": rates.net_out_rate,
            }
            for metric, value in values.items():
                if value is not None:
                    getattr(series, metric).append(ChartPoint(timestamp=point.timestamp, value=value))
        return series

    def chart_data(self, guests: Iterable[Guest] = ()) -> ChartData:
        by_id = {guest.id: guest for guest in guests}
        data = {}
        for guest_id in self._samples:
            series = self.series(guest_id, by_id.get(guest_id))
            if series is not None:
                data[guest_id] = series
        return ChartData(data=data, stats=self.stats(), timestamp=self._clock())

    def stats(self) -> HistoryStats:
        return HistoryStats(
            total_guests=len(self._samples),
            total_data_points=sum(len(points) for points in self._samples.values()),
        )
