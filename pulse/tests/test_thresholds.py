from __future__ import annotations

import json

import pytest
import pytest_asyncio

from pulse.app.services.thresholds import (
    ThresholdNotFoundError,
    ThresholdStore,
    ThresholdValidationError,
    validate_thresholds,
)


CPU = {"cpu": {"warning": 70, "critical": 90}}


@pytest_asyncio.fixture
async def store(tmp_path) -> ThresholdStore:
    threshold_store = ThresholdStore(tmp_path / "data" / "custom-thresholds.json")
    await threshold_store.initialize()
    return threshold_store


@pytest.mark.asyncio
async def test_initialize_creates_missing_file(tmp_path):
    path = tmp_path / "nested" / "thresholds.json"
    store = ThresholdStore(path)

    await store.initialize()

    assert json.loads(path.read_text()) == {}
    assert store.initialized


@pytest.mark.asyncio
async def test_partial_set_leaves_other_metrics_unset(store):
    assert await store.set("pve1", 100, CPU)

    record = store.get("pve1", 100)
    assert record is not None
    assert record.thresholds.cpu.critical == 90
    assert record.thresholds.memory is None
    assert record.thresholds.disk is None
    assert record.enabled is True
    assert record.created_at == record.updated_at


@pytest.mark.parametrize(
    "thresholds, metric",
    [
        ({"cpu": {"warning": 90, "critical": 90}}, "cpu"),
        ({"memory": {"warning": 95, "critical": 80}}, "memory"),
        ({"disk": {"warning": 50, "critical": 101}}, "disk"),
        ({"cpu": {"warning": -1, "critical": 50}}, "cpu"),
        ({"cpu": {"warning": "70", "critical": 90}}, "cpu"),
        ({"cpu": {"warning": 10, "critical": 20}, "disk": {"warning": 80, "critical": 70}}, "disk"),
    ],
)
@pytest.mark.asyncio
async def test_invalid_thresholds_are_rejected_without_mutation(store, thresholds, metric):
    await store.set("pve1", 100, CPU)
    before = store.get("pve1", 100)

    with pytest.raises(ThresholdValidationError) as excinfo:
        await store.set("pve1", 100, thresholds)

    assert excinfo.value.metric == metric
    assert store.get("pve1", 100) == before
    assert json.loads(store.path.read_text())["pve1:100"]["thresholds"]["cpu"]["warning"] == 70


@pytest.mark.asyncio
async def test_update_merges_into_existing_record(store):
    await store.set("pve1", 100, CPU)
    created = store.get("pve1", 100)

    await store.set("pve1", 100, {"memory": {"warning": 80, "critical": 95}})

    record = store.get("pve1", 100)
    assert record.thresholds.cpu.warning == 70
    assert record.thresholds.memory.critical == 95
    assert record.created_at == created.created_at
    assert record.updated_at >= created.updated_at


@pytest.mark.asyncio
async def test_key_ignores_node(store):
    await store.set("pve1", 100, CPU, node="nodeA")

    assert store.get("pve1", 100, node="nodeA") == store.get("pve1", 100, node="nodeB")
    assert store.get("pve1", "100") is not None
    assert store.get("pve2", 100) is None


@pytest.mark.asyncio
async def test_remove_reports_whether_anything_was_removed(store):
    await store.set("pve1", 100, CPU)

    assert await store.remove("pve1", 100) is True
    assert await store.remove("pve1", 100) is False
    assert store.get("pve1", 100) is None
    assert json.loads(store.path.read_text()) == {}


@pytest.mark.asyncio
async def test_toggle_missing_record_raises(store):
    with pytest.raises(ThresholdNotFoundError):
        await store.toggle("pve1", 404, False)


@pytest.mark.asyncio
async def test_toggle_flips_enabled_and_persists(store):
    await store.set("pve1", 100, CPU)

    await store.toggle("pve1", 100, False)

    assert store.get("pve1", 100).enabled is False
    assert json.loads(store.path.read_text())["pve1:100"]["enabled"] is False


@pytest.mark.asyncio
async def test_records_survive_reload(store):
    await store.set("pve1", 100, CPU, node="node1")
    await store.set("pve2", 200, {"disk": {"warning": 85, "critical": 95}})

    reloaded = ThresholdStore(store.path)
    await reloaded.initialize()

    record = reloaded.get("pve1", 100)
    assert record.node_id == "node1"
    assert record.thresholds.cpu.warning == 70
    raw = json.loads(store.path.read_text())
    assert set(raw) == {"pve1:100", "pve2:200"}
    assert raw["pve1:100"]["endpointId"] == "pve1"
    assert "createdAt" in raw["pve1:100"]


@pytest.mark.asyncio
async def test_mutation_before_initialize_loads_existing_file(tmp_path):
    path = tmp_path / "thresholds.json"
    first = ThresholdStore(path)
    await first.set("pve1", 100, CPU)

    second = ThresholdStore(path)
    await second.set("pve1", 101, CPU)

    assert {record.vmid for record in second.list_all()} == {100, 101}


@pytest.mark.asyncio
async def test_persistence_errors_propagate(tmp_path):
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("")
    store = ThresholdStore(blocker / "thresholds.json")

    with pytest.raises(OSError):
        await store.set("pve1", 100, CPU)


@pytest.mark.asyncio
async def test_listing_export_and_statistics(store):
    await store.set("pve1", 100, CPU)
    await store.set("pve1", 101, CPU)
    await store.set("pve2", 200, CPU)
    await store.toggle("pve1", 101, False)

    assert {record.vmid for record in store.list_by_endpoint("pve1")} == {100, 101}

    export = store.export_all()
    assert export.version == "1.0"
    assert len(export.thresholds) == 3

    stats = store.statistics()
    assert (stats.total, stats.enabled, stats.disabled) == (3, 2, 1)
    assert stats.by_endpoint["pve1"].total == 2
    assert stats.by_endpoint["pve1"].enabled == 1
    assert stats.last_updated == max(record.updated_at for record in store.list_all())


@pytest.mark.asyncio
async def test_import_sets_each_record(store):
    exported = [
        {"endpointId": "pve1", "vmid": 100, "nodeId": "node1", "thresholds": CPU},
        {"endpointId": "pve2", "vmid": 200, "thresholds": {"memory": {"warning": 60, "critical": 70}}},
    ]

    assert await store.import_thresholds(exported) == 2
    assert store.get("pve2", 200).thresholds.memory.warning == 60


def test_validate_ignores_unknown_metrics():
    assert set(validate_thresholds({"cpu": {"warning": 1, "critical": 2}, "network": {}})) == {"cpu"}
