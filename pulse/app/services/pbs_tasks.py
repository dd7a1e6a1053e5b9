from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

from pulse.app.schemas.backups import TaskBucket, TaskDetail, TaskSummary


DAY_SECONDS = 24 * 60 * 60
RECENT_WINDOW_SECONDS = 30 * DAY_SECONDS
STALE_VERIFY_AGE_SECONDS = 14 * DAY_SECONDS
STALE_GC_AGE_SECONDS = 30 * DAY_SECONDS

TASK_TYPE_BUCKETS = {
    "backup": "backup",
    "verify": "verify",
    "verificationjob": "verify",
    "verify_group": "verify",
    "verify-group": "verify",
    "verification": "verify",
    "sync": "sync",
    "syncjob": "sync",
    "sync-job": "sync",
    "garbage_collection": "prune_gc",
    "garbage-collection": "prune_gc",
    "prune": "prune_gc",
    "prunejob": "prune_gc",
    "prune-job": "prune_gc",
    "gc": "prune_gc",
}

STALE_VERIFY_SIGNATURES = ("verification failed", "backup not found", "group not found", "missing chunks")

_NAMESPACE_PATTERN = re.compile(r"ns=([^:]+)")


@dataclass(slots=True)
class _Category:
    tasks: list[dict[str, Any]] = field(default_factory=list)
    ok: int = 0
    failed: int = 0
    last_ok: int = 0
    last_failed: int = 0


def _task_type(task: dict[str, Any]) -> str:
    return str(task.get("worker_type") or task.get("type") or "")


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    return None


def is_stale_task_failure(task: dict[str, Any], now: float | None = None) -> bool:
    """True for old failures that no longer describe the current state of a datastore."""
    now = time.time() if now is None else now
    task_type = _task_type(task)
    status = str(task.get("status") or "")
    end_time = _int_or_none(task.get("endtime")) or 0

    if task_type == "verificationjob" and status != "OK" and ("ERROR" in status or "verification failed" in status):
        is_old = bool(end_time) and end_time < now - STALE_VERIFY_AGE_SECONDS
        return is_old and any(signature in status for signature in STALE_VERIFY_SIGNATURES)

    worker_id = str(task.get("worker_id") or task.get("id") or "")
    guest = str(task.get("guest") or "")
    is_gc = task_type == "garbage_collection" or "GC main" in worker_id or "GC main" in guest
    if is_gc and "WARNINGS" in status:
        return bool(end_time) and end_time < now - STALE_GC_AGE_SECONDS
    return False


def extract_namespace(task: dict[str, Any]) -> str:
    namespace = task.get("namespace")
    if isinstance(namespace, str):
        return namespace
    match = _NAMESPACE_PATTERN.search(str(task.get("worker_id") or task.get("id") or ""))
    if match:
        return match.group(1)
    return "root"


def _text(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def build_task_detail(task: dict[str, Any]) -> TaskDetail:
    start = _int_or_none(task.get("starttime"))
    end = _int_or_none(task.get("endtime"))
    return TaskDetail(
        upid=_text(task.get("upid")),
        node=_text(task.get("node")),
        type=_task_type(task) or None,
        id=_text(task.get("worker_id") or task.get("id") or task.get("guest")),
        status=_text(task.get("status")),
        start_time=start,
        end_time=end,
        duration=end - start if start is not None and end is not None else None,
        user=_text(task.get("user")),
        guest=_text(task.get("guest") or task.get("worker_id")),
        namespace=extract_namespace(task),
    )


def categorize_tasks(tasks: Iterable[Any], now: float | None = None) -> dict[str, _Category]:
    categories = {name: _Category() for name in ("backup", "verify", "sync", "prune_gc")}
    for task in tasks:
        if not isinstance(task, dict):
            continue
        key = TASK_TYPE_BUCKETS.get(_task_type(task))
        if key is None:
            continue
        category = categories[key]
        category.tasks.append(task)
        if is_stale_task_failure(task, now):
            continue

        status = str(task.get("status") or "NO_STATUS")
        if "running" in status or "queued" in status:
            continue
        end_time = _int_or_none(task.get("endtime")) or 0
        if status == "OK":
            category.ok += 1
            category.last_ok = max(category.last_ok, end_time)
        else:
            category.failed += 1
            category.last_failed = max(category.last_failed, end_time)
    return categories


def _recent_tasks(tasks: list[dict[str, Any]], limit: int, now: float) -> list[TaskDetail]:
    recent = []
    for task in tasks:
        if is_stale_task_failure(task, now):
            continue
        start = _int_or_none(task.get("starttime"))
        if start is None or now - start <= RECENT_WINDOW_SECONDS:
            recent.append(build_task_detail(task))
    recent.sort(key=lambda detail: detail.start_time or 0, reverse=True)
    return recent[:limit]


def process_pbs_tasks(tasks: Any, *, recent_limit: int = 50, now: float | None = None) -> dict[str, TaskBucket]:
    """Split a raw task list into backup/verify/sync/prune-gc buckets with summaries."""
    now = time.time() if now is None else now
    categories = categorize_tasks(tasks if isinstance(tasks, list) else [], now)
    buckets: dict[str, TaskBucket] = {}
    for name, category in categories.items():
        buckets[name] = TaskBucket(
            recent_tasks=_recent_tasks(category.tasks, recent_limit, now),
            summary=TaskSummary(
                ok=category.ok,
                failed=category.failed,
                total=category.ok + category.failed,
                last_ok=category.last_ok or None,
                last_failed=category.last_failed or None,
            ),
        )
    return buckets
