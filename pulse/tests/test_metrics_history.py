from __future__ import annotations

import pytest

from pulse.app.schemas.inventory import Guest
from pulse.app.schemas.metrics import GuestCurrentStatus, MetricSample
from pulse.app.services.metrics_history import MetricsHistory, calculate_rate


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def history(clock) -> MetricsHistory:
    return MetricsHistory(retention_seconds=3600, max_points=1800, clock=clock)


def _current(**values) -> GuestCurrentStatus:
    base = {"cpu": 0.25, "mem": 512, "maxmem": 1024, "disk": 10, "maxdisk": 100,
            "diskread": 1000, "diskwrite": 2000, "netin": 300, "netout": 400}
    return GuestCurrentStatus(**{**base, **values})


def _guest(guest_id: str = "pve1-node1-100", maxmem: int | None = 2048) -> Guest:
    return Guest(id=guest_id, vmid=100, node="node1", endpoint_id="pve1", type="vm", maxmem=maxmem, maxdisk=200)


def test_first_sample_has_no_rates(history):
    sample = history.add("pve1-node1-100", _current())

    assert sample.rates is None
    assert history.latest_rates() == {}


def test_rates_are_computed_between_cycles(history, clock):
    history.add("pve1-node1-100", _current())
    clock.now += 2
    sample = history.add("pve1-node1-100", _current(diskread=3000, diskwrite=2000, netin=700, netout=400))

    assert sample.rates.disk_read_rate == 1000
    assert sample.rates.disk_write_rate == 0
    assert sample.rates.net_in_rate == 200
    assert history.latest_rates()["pve1-node1-100"] == sample.rates


def test_counter_reset_yields_no_rate(history, clock):
    history.add("pve1-node1-100", _current(netin=5000))
    clock.now += 2
    sample = history.add("pve1-node1-100", _current(netin=10))

    assert sample.rates.net_in_rate is None
    assert calculate_rate(10, None, 2) is None
    assert calculate_rate(10, 5, 0) is None


def test_samples_are_bounded_per_guest(clock):
    history = MetricsHistory(retention_seconds=3600, max_points=3, clock=clock)
    for _ in range(5):
        clock.now += 2
        history.add("pve1-node1-100", _current())

    assert history.stats().total_data_points == 3


def test_cleanup_drops_expired_samples_and_idle_guests(history, clock):
    history.add("pve1-node1-100", _current())
    clock.now += 3000
    history.add("pve1-node1-101", _current())
    clock.now += 1000

    assert history.cleanup() == 1
    assert history.stats().total_guests == 1
    assert history.series("pve1-node1-100") is None
    assert history.series("pve1-node1-101") is not None


def test_series_prefers_guest_memory_and_uses_guest_limits(history, clock):
    history.add("pve1-node1-100", _current(guest_mem_actual_used=300, guest_mem_total=1000))
    clock.now += 2
    history.add("pve1-node1-100", _current(diskread=1400))

    series = history.series("pve1-node1-100", _guest())

    assert [point.value for point in series.cpu] == [25.0, 25.0]
    assert [point.value for point in series.memory] == [30.0, 25.0]
    assert series.disk[0].value == 5.0
    assert [point.value for point in series.diskread] == [200.0]


def test_record_skips_samples_without_current(history):
    samples = [
        MetricSample(guest_id="pve1-node1-100", vmid=100, node="node1", type="vm",
                     endpoint_id="pve1", endpoint_name="pve1", current=_current()),
        MetricSample(guest_id="pve1-node1-101", vmid=101, node="node1", type="vm",
                     endpoint_id="pve1", endpoint_name="pve1"),
    ]

    assert history.record(samples) == 1


def test_chart_data_lists_every_guest_with_stats(history, clock):
    history.add("pve1-node1-100", _current())
    history.add("pve1-node1-101", _current())

    charts = history.chart_data([_guest()])

    assert set(charts.data) == {"pve1-node1-100", "pve1-node1-101"}
    assert charts.stats.total_guests == 2
    assert charts.stats.total_data_points == 2
    assert charts.timestamp == clock.now
