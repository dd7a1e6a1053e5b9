from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from pulse.app.schemas.inventory import DiscoveryResult, Guest, GuestType, Node, StorageEntry
from pulse.app.services.api_client import ApiClientError, ClientHandle


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class NodeData:
    """Raw per-node payloads; each part stays empty when its own call failed."""

    status: dict[str, Any] = field(default_factory=dict)
    storage: list[dict[str, Any]] = field(default_factory=list)
    vms: list[dict[str, Any]] = field(default_factory=list)
    containers: list[dict[str, Any]] = field(default_factory=list)


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value))
        except ValueError:
            return None
    return None


def _as_float(value: Any) -> float | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


_TRUE_FLAGS = {"1", "on", "yes", "true"}


def parse_agent_setting(value: Any) -> bool | None:
    """Read the guest ``agent`` config value.

    Upstream writes it as a bare flag (``1``) or a property string such as
    ``enabled=1`` or ``1,fstrim_cloned_disks=1``. ``None`` means the guest
    has no agent configured at all.
    """
    if value is None:
        return None
    if isinstance(value, (bool, int, float)):
        return int(value) == 1
    if not isinstance(value, str):
        return False
    enabled = None
    for position, part in enumerate(value.split(",")):
        key, sep, flag = part.strip().partition("=")
        if not sep and position == 0:
            enabled = key
        elif sep and key.strip() == "enabled":
            enabled = flag
    return enabled is not None and enabled.strip().lower() in _TRUE_FLAGS


def _dict_rows(payload: Any) -> list[dict[str, Any]]:
    if not isinstance(payload, list):
        return []
    return [row for row in payload if isinstance(row, dict)]


async def _fetch_rows(handle: ClientHandle, path: str, label: str, scope: str) -> list[dict[str, Any]]:
    try:
        payload = await handle.client.get(path)
    except ApiClientError as exc:
        logger.error("[%s] Error fetching %s: %s", scope, label, exc)
        return []
    if not isinstance(payload, list):
        logger.warning("[%s] %s data missing or invalid format", scope, label)
        return []
    return _dict_rows(payload)


async def _fetch_status(handle: ClientHandle, node_name: str, scope: str) -> dict[str, Any]:
    try:
        payload = await handle.client.get(f"/nodes/{node_name}/status")
    except ApiClientError as exc:
        logger.error("[%s] Error fetching node status: %s", scope, exc)
        return {}
    if not isinstance(payload, dict):
        logger.warning("[%s] Node status data missing or invalid format", scope)
        return {}
    return payload


async def fetch_node_data(handle: ClientHandle, node_name: str) -> NodeData:
    """Fetch status, storage, VMs and containers for one node; each call fails on its own."""
    scope = f"{handle.name}-{node_name}"
    async with asyncio.TaskGroup() as group:
        status = group.create_task(_fetch_status(handle, node_name, scope))
        storage = group.create_task(_fetch_rows(handle, f"/nodes/{node_name}/storage", "node storage", scope))
        vms = group.create_task(_fetch_rows(handle, f"/nodes/{node_name}/qemu", "VMs (qemu)", scope))
        containers = group.create_task(_fetch_rows(handle, f"/nodes/{node_name}/lxc", "containers (lxc)", scope))
    return NodeData(
        status=status.result(),
        storage=storage.result(),
        vms=vms.result(),
        containers=containers.result(),
    )


def build_guest(raw: Mapping[str, Any], endpoint_id: str, node_name: str, guest_type: GuestType) -> Guest | None:
    vmid = _as_int(raw.get("vmid"))
    if vmid is None:
        return None
    return Guest(
        id=f"{endpoint_id}-{node_name}-{vmid}",
        vmid=vmid,
        name=raw.get("name") if isinstance(raw.get("name"), str) else None,
        node=node_name,
        endpoint_id=endpoint_id,
        type=guest_type,
        status=str(raw.get("status") or "unknown"),
        cpus=_as_float(raw.get("cpus")),
        maxmem=_as_int(raw.get("maxmem")),
        maxdisk=_as_int(raw.get("maxdisk")),
        uptime=_as_int(raw.get("uptime")) or 0,
        agent_enabled_hint=parse_agent_setting(raw.get("agent")),
        tags=raw.get("tags") if isinstance(raw.get("tags"), str) else None,
        template=bool(_as_int(raw.get("template"))),
    )


def build_node(base: Mapping[str, Any], endpoint_id: str, data: NodeData | None) -> Node:
    """Start from the node-list entry and overlay the node's own status when available."""
    node_name = str(base["node"])
    node = Node(
        id=f"{endpoint_id}-{node_name}",
        node=node_name,
        endpoint_id=endpoint_id,
        status=str(base.get("status") or "unknown"),
        cpu_fraction=_as_float(base.get("cpu")),
        maxcpu=_as_int(base.get("maxcpu")),
        uptime_seconds=_as_int(base.get("uptime")) or 0,
        mem_used=_as_int(base.get("mem")),
        mem_total=_as_int(base.get("maxmem")),
        disk_used=_as_int(base.get("disk")),
        disk_total=_as_int(base.get("maxdisk")),
        level=base.get("level") if isinstance(base.get("level"), str) else None,
    )
    if data is None:
        return node

    status = data.status
    if status:
        memory = status.get("memory") if isinstance(status.get("memory"), dict) else {}
        rootfs = status.get("rootfs") if isinstance(status.get("rootfs"), dict) else {}
        uptime = _as_int(status.get("uptime")) or 0
        node.cpu_fraction = _as_float(status.get("cpu"))
        node.mem_used = _as_int(memory.get("used", status.get("mem")))
        node.mem_total = _as_int(memory.get("total", status.get("maxmem"))) or node.mem_total
        node.disk_used = _as_int(rootfs.get("used", status.get("disk")))
        node.disk_total = _as_int(rootfs.get("total", status.get("maxdisk")))
        node.uptime_seconds = uptime
        loadavg = status.get("loadavg")
        if isinstance(loadavg, list):
            node.loadavg = [value for value in (_as_float(item) for item in loadavg) if value is not None]
        if uptime > 0:
            node.status = "online"

    for row in data.storage:
        name = row.get("storage")
        if not isinstance(name, str):
            continue
        node.storage.append(
            StorageEntry(
                storage=name,
                node=node_name,
                endpoint_id=endpoint_id,
                type=row.get("type") if isinstance(row.get("type"), str) else None,
                content=row.get("content") if isinstance(row.get("content"), str) else None,
                active=bool(_as_int(row["active"])) if "active" in row else None,
                enabled=bool(_as_int(row["enabled"])) if "enabled" in row else None,
                shared=bool(_as_int(row["shared"])) if "shared" in row else None,
                total=_as_int(row.get("total")),
                used=_as_int(row.get("used")),
                avail=_as_int(row.get("avail")),
            )
        )
    return node


async def discover_endpoint(endpoint_id: str, handle: ClientHandle) -> DiscoveryResult:
    result = DiscoveryResult()
    try:
        payload = await handle.client.get("/nodes")
    except ApiClientError as exc:
        status = f" (Status: {exc.status_code})" if exc.status_code else ""
        logger.error("[%s] Error fetching node list%s: %s", handle.name, status, exc)
        return result

    node_rows = [row for row in _dict_rows(payload) if isinstance(row.get("node"), str) and row["node"]]
    if not node_rows:
        logger.warning("[%s] No nodes found or unexpected format", handle.name)
        return result

    async with asyncio.TaskGroup() as group:
        tasks = [group.create_task(_safe_node_data(handle, row["node"])) for row in node_rows]

    for row, task in zip(node_rows, tasks):
        data = task.result()
        result.nodes.append(build_node(row, endpoint_id, data))
        if data is None:
            continue
        for raw in data.vms:
            guest = build_guest(raw, endpoint_id, row["node"], "vm")
            if guest is not None:
                result.vms.append(guest)
        for raw in data.containers:
            guest = build_guest(raw, endpoint_id, row["node"], "container")
            if guest is not None:
                result.containers.append(guest)
    return result


async def _safe_node_data(handle: ClientHandle, node_name: str) -> NodeData | None:
    try:
        return await fetch_node_data(handle, node_name)
    except Exception:  # pragma: no cover - defensive logging
        logger.exception("[%s] Error processing node %s", handle.name, node_name)
        return None


async def _safe_discover_endpoint(endpoint_id: str, handle: ClientHandle) -> DiscoveryResult:
    try:
        return await discover_endpoint(endpoint_id, handle)
    except Exception:  # pragma: no cover - defensive logging
        logger.exception("[%s] Unexpected error during discovery", handle.name)
        return DiscoveryResult()


async def fetch_pve_discovery(clients: Mapping[str, ClientHandle]) -> DiscoveryResult:
    """Enumerate nodes and guests across all virtualization endpoints concurrently."""
    combined = DiscoveryResult()
    if not clients:
        logger.info("No virtualization endpoints configured or initialized")
        return combined

    logger.info("Fetching discovery data for %d virtualization endpoints", len(clients))
    async with asyncio.TaskGroup() as group:
        tasks = [
            group.create_task(_safe_discover_endpoint(endpoint_id, handle))
            for endpoint_id, handle in clients.items()
        ]

    for task in tasks:
        partial = task.result()
        combined.nodes.extend(partial.nodes)
        combined.vms.extend(partial.vms)
        combined.containers.extend(partial.containers)
    return combined
