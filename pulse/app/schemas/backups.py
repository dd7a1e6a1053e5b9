from typing import Literal

from pydantic import BaseModel, Field


class Snapshot(BaseModel):
    backup_time: int
    backup_type: Literal["vm", "ct", "host"]
    backup_id: str
    backup_group: str
    size: int | None = None
    namespace: str = "root"
    protected: bool = False


class Datastore(BaseModel):
    name: str
    path: str | None = None
    total: int | None = None
    used: int | None = None
    available: int | None = None
    gc_status: str = "unknown"
    snapshots: list[Snapshot] = Field(default_factory=list)


class TaskDetail(BaseModel):
    upid: str | None = None
    node: str | None = None
    type: str | None = None
    id: str | None = None
    status: str | None = None
    start_time: int | None = None
    end_time: int | None = None
    duration: int | None = None
    user: str | None = None
    guest: str | None = None
    namespace: str = "root"


class TaskSummary(BaseModel):
    ok: int = 0
    failed: int = 0
    total: int = 0
    last_ok: int | None = None
    last_failed: int | None = None


class TaskBucket(BaseModel):
    recent_tasks: list[TaskDetail] = Field(default_factory=list)
    summary: TaskSummary = Field(default_factory=TaskSummary)


class BackupInstanceReport(BaseModel):
    endpoint_id: str
    instance_name: str
    status: Literal["configured", "ok", "error"] = "configured"
    node_name: str | None = None
    datastores: list[Datastore] = Field(default_factory=list)
    backup_tasks: TaskBucket | None = None
    verify_tasks: TaskBucket | None = None
    sync_tasks: TaskBucket | None = None
    prune_gc_tasks: TaskBucket | None = None
