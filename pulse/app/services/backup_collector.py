from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Mapping
from urllib.parse import quote

from pulse.app.core.config import settings
from pulse.app.schemas.backups import BackupInstanceReport, Datastore, Snapshot, TaskBucket
from pulse.app.services.api_client import ApiClientError, ClientHandle
from pulse.app.services.pbs_tasks import process_pbs_tasks


logger = logging.getLogger(__name__)

SNAPSHOT_TYPES = {"vm", "ct", "host"}


def _as_int(value: Any) -> int | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    return None


def parse_snapshots(payload: Any) -> list[Snapshot]:
    if not isinstance(payload, list):
        return []
    snapshots: list[Snapshot] = []
    for row in payload:
        if not isinstance(row, dict):
            continue
        backup_time = _as_int(row.get("backup-time"))
        backup_type = row.get("backup-type")
        backup_id = row.get("backup-id")
        if backup_time is None or backup_type not in SNAPSHOT_TYPES or backup_id is None:
            continue
        snapshots.append(
            Snapshot(
                backup_time=backup_time,
                backup_type=backup_type,
                backup_id=str(backup_id),
                backup_group=f"{backup_type}/{backup_id}",
                size=_as_int(row.get("size")),
                namespace=row.get("ns") if isinstance(row.get("ns"), str) and row.get("ns") else "root",
                protected=bool(row.get("protected")),
            )
        )
    return snapshots


class BackupCollector:
    """Collects datastores, snapshots and task history from backup servers."""

    def __init__(
        self,
        *,
        task_window_days: int | None = None,
        task_limit: int | None = None,
        recent_task_count: int | None = None,
    ) -> None:
        self.task_window_days = task_window_days or settings.pbs_task_window_days
        self.task_limit = task_limit or settings.pbs_task_limit
        self.recent_task_count = recent_task_count or settings.pbs_recent_task_count
        # Detected node names survive across cycles; handles themselves stay immutable.
        self._node_names: dict[str, str] = {}

    async def fetch_node_name(self, instance_id: str, handle: ClientHandle) -> str | None:
        configured = getattr(handle.config, "node_name", None)
        if configured:
            return configured
        if instance_id in self._node_names:
            return self._node_names[instance_id]
        try:
            payload = await handle.client.get("/nodes")
        except ApiClientError as exc:
            logger.error("Failed to fetch node list for backup server %s: %s", handle.name, exc)
            return None
        if isinstance(payload, list) and payload and isinstance(payload[0], dict):
            node_name = payload[0].get("node")
            if isinstance(node_name, str) and node_name.strip():
                node_name = node_name.strip()
                logger.info("Detected node name %s for backup server %s", node_name, handle.name)
                self._node_names[instance_id] = node_name
                return node_name
        logger.warning("Could not detect node name for backup server %s, unexpected response", handle.name)
        return None

    async def fetch_datastores(self, handle: ClientHandle) -> list[Datastore]:
        try:
            usage = await handle.client.get("/status/datastore-usage")
        except ApiClientError as exc:
            logger.warning("Failed to get datastore usage for %s, falling back to config: %s", handle.name, exc)
            usage = None
        rows = [row for row in usage if isinstance(row, dict) and row.get("store")] if isinstance(usage, list) else []
        if rows:
            return [
                Datastore(
                    name=str(row["store"]),
                    path=row.get("path") if isinstance(row.get("path"), str) else None,
                    total=_as_int(row.get("total")),
                    used=_as_int(row.get("used")),
                    available=_as_int(row.get("avail")),
                    gc_status=str(row.get("garbage-collection-status") or "unknown"),
                )
                for row in rows
            ]
        if usage is not None:
            logger.warning("Datastore usage for %s was empty, falling back to config", handle.name)

        try:
            configured = await handle.client.get("/config/datastore")
        except ApiClientError as exc:
            logger.error("Fallback fetch of datastore config failed for %s: %s", handle.name, exc)
            return []
        if not isinstance(configured, list):
            return []
        return [
            Datastore(
                name=str(row["name"]),
                path=row.get("path") if isinstance(row.get("path"), str) else None,
                gc_status="unknown (config only)",
            )
            for row in configured
            if isinstance(row, dict) and row.get("name")
        ]

    async def fetch_snapshots(self, handle: ClientHandle, store: str) -> list[Snapshot]:
        try:
            payload = await handle.client.get(f"/admin/datastore/{quote(store, safe='')}/snapshots")
        except ApiClientError as exc:
            status = f" (Status: {exc.status_code})" if exc.status_code else ""
            logger.error("Failed to fetch snapshots for datastore %s on %s%s: %s", store, handle.name, status, exc)
            return []
        return parse_snapshots(payload)

    async def fetch_tasks(self, handle: ClientHandle, node_name: str) -> list[Any] | None:
        since = int(time.time()) - self.task_window_days * 24 * 60 * 60
        try:
            payload = await handle.client.get(
                f"/nodes/{quote(node_name.strip(), safe='')}/tasks",
                params={"since": since, "limit": self.task_limit, "errors": 1},
            )
        except ApiClientError as exc:
            logger.error("Failed to fetch task list for node %s (%s): %s", node_name, handle.name, exc)
            return None
        if not isinstance(payload, list):
            logger.warning("Task list for %s has an unexpected format", handle.name)
            return None
        return payload

    async def collect_instance(self, instance_id: str, handle: ClientHandle) -> BackupInstanceReport:
        report = BackupInstanceReport(endpoint_id=instance_id, instance_name=handle.name)
        node_name = await self.fetch_node_name(instance_id, handle)
        if not node_name:
            logger.error("Could not determine node name for backup server %s", handle.name)
            report.status = "error"
            return report
        report.node_name = node_name

        datastores = await self.fetch_datastores(handle)
        async with asyncio.TaskGroup() as group:
            snapshot_tasks = [group.create_task(self.fetch_snapshots(handle, ds.name)) for ds in datastores]
        for datastore, task in zip(datastores, snapshot_tasks):
            datastore.snapshots = task.result()
        report.datastores = datastores

        tasks = await self.fetch_tasks(handle, node_name)
        buckets = self._bucket_tasks(tasks, handle) if tasks is not None else None
        if buckets is not None:
            report.backup_tasks = buckets["backup"]
            report.verify_tasks = buckets["verify"]
            report.sync_tasks = buckets["sync"]
            report.prune_gc_tasks = buckets["prune_gc"]
        report.status = "ok"
        logger.info("Collected %d datastores from backup server %s", len(datastores), handle.name)
        return report

    def _bucket_tasks(self, tasks: list[Any], handle: ClientHandle) -> dict[str, TaskBucket] | None:
        try:
            return process_pbs_tasks(tasks, recent_limit=self.recent_task_count)
        except Exception:
            logger.exception("Could not process task list for backup server %s", handle.name)
            return None

    async def _safe_collect(self, instance_id: str, handle: ClientHandle) -> BackupInstanceReport:
        try:
            return await self.collect_instance(instance_id, handle)
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("Backup server fetch failed for %s", handle.name)
            return BackupInstanceReport(endpoint_id=instance_id, instance_name=handle.name, status="error")

    async def fetch_pbs_data(self, clients: Mapping[str, ClientHandle]) -> list[BackupInstanceReport]:
        if not clients:
            logger.info("No backup servers configured or initialized")
            return []
        logger.info("Fetching data for %d backup servers", len(clients))
        async with asyncio.TaskGroup() as group:
            tasks = [
                group.create_task(self._safe_collect(instance_id, handle))
                for instance_id, handle in clients.items()
            ]
        return [task.result() for task in tasks]
