from typing import Any, Literal

from pydantic import BaseModel, Field


GuestType = Literal["vm", "container"]


class StorageEntry(BaseModel):
    storage: str
    node: str
    endpoint_id: str
    type: str | None = None
    content: str | None = None
    active: bool | None = None
    enabled: bool | None = None
    shared: bool | None = None
    total: int | None = None
    used: int | None = None
    avail: int | None = None


class Node(BaseModel):
    id: str
    node: str
    endpoint_id: str
    status: str = "unknown"
    cpu_fraction: float | None = None
    maxcpu: int | None = None
    uptime_seconds: int = 0
    mem_used: int | None = None
    mem_total: int | None = None
    disk_used: int | None = None
    disk_total: int | None = None
    loadavg: list[float] | None = None
    level: str | None = None
    storage: list[StorageEntry] = Field(default_factory=list)


class Guest(BaseModel):
    """A VM or container as listed by its node; identity is (endpoint_id, node, vmid)."""

    id: str
    vmid: int
    name: str | None = None
    node: str
    endpoint_id: str
    type: GuestType
    status: str = "unknown"
    cpus: float | None = None
    maxmem: int | None = None
    maxdisk: int | None = None
    uptime: int = 0
    agent_enabled_hint: bool | None = None
    tags: str | None = None
    template: bool = False

    @property
    def api_path_segment(self) -> str:
        return "qemu" if self.type == "vm" else "lxc"


class DiscoveryResult(BaseModel):
    nodes: list[Node] = Field(default_factory=list)
    vms: list[Guest] = Field(default_factory=list)
    containers: list[Guest] = Field(default_factory=list)
    pve_backups: dict[str, list[Any]] = Field(
        default_factory=lambda: {"backup_tasks": [], "storage_backups": [], "guest_snapshots": []}
    )

    @property
    def storage(self) -> list[StorageEntry]:
        return [entry for node in self.nodes for entry in node.storage]
