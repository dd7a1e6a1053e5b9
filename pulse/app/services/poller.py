from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Coroutine, Iterable, TypeVar

from pulse.app.core.config import settings
from pulse.app.schemas.backups import BackupInstanceReport
from pulse.app.schemas.endpoints import BackupServerEndpoint, VirtClusterEndpoint
from pulse.app.schemas.inventory import DiscoveryResult
from pulse.app.schemas.state import ClusterState, CycleError
from pulse.app.services.api_client import ClientHandle
from pulse.app.services.backup_collector import BackupCollector
from pulse.app.services.client_factory import ClientFactory, close_handles
from pulse.app.services.discovery import fetch_pve_discovery
from pulse.app.services.metrics_collector import fetch_metrics_data
from pulse.app.services.state import StateStore


logger = logging.getLogger(__name__)

T = TypeVar("T")
Publisher = Callable[[ClusterState], Awaitable[None]]


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class AggregationPoller:
    """Background task running discovery and metrics cycles on their own intervals."""

    def __init__(
        self,
        factory: ClientFactory,
        state: StateStore,
        *,
        backups: BackupCollector | None = None,
        publish: Publisher | None = None,
        discovery_interval: float | None = None,
        metric_interval: float | None = None,
    ) -> None:
        self._factory = factory
        self._state = state
        self._backups = backups or BackupCollector()
        self._publish = publish
        self._discovery_interval = discovery_interval or settings.discovery_interval_seconds
        self._metric_interval = metric_interval or settings.metric_interval_seconds
        self._pve_clients: dict[str, ClientHandle] = {}
        self._pbs_clients: dict[str, ClientHandle] = {}
        self._retired: list[dict[str, ClientHandle]] = []
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._cycles: set[asyncio.Task[Any]] = set()
        self._next_discovery = 0.0
        self._next_metrics = 0.0
        self._discovery_running = False
        self._metrics_running = False
        self._discovery_pending = False

    @property
    def pve_clients(self) -> dict[str, ClientHandle]:
        return self._pve_clients

    @property
    def pbs_clients(self) -> dict[str, ClientHandle]:
        return self._pbs_clients

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        logger.info("Starting aggregation poller")
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="aggregation-poller")

    async def stop(self) -> None:
        if self._task:
            logger.info("Stopping aggregation poller")
            self._stop_event.set()
            await self._task
            self._task = None
        await self.wait_for_cycles()
        for handles in (*self._retired, self._pve_clients, self._pbs_clients):
            await close_handles(handles)
        self._retired.clear()
        self._pve_clients = {}
        self._pbs_clients = {}
        self._next_discovery = 0.0
        self._next_metrics = 0.0

    async def wait_for_cycles(self) -> None:
        """Wait for every discovery or metrics run started so far."""
        while self._cycles:
            await asyncio.gather(*list(self._cycles), return_exceptions=True)

    async def reload(
        self,
        pve_endpoints: Iterable[VirtClusterEndpoint],
        pbs_endpoints: Iterable[BackupServerEndpoint],
    ) -> None:
        """Replace every client handle at once and run discovery right away.

        Cycles already in flight keep the maps they captured; the old clients
        are closed once no cycle is running.
        """
        pve_clients = self._factory.build_pve_clients(pve_endpoints)
        pbs_clients = self._factory.build_pbs_clients(pbs_endpoints)
        self._retired.extend(handles for handles in (self._pve_clients, self._pbs_clients) if handles)
        self._pve_clients, self._pbs_clients = pve_clients, pbs_clients
        logger.info(
            "Reloaded endpoints: %d virtualization, %d backup server clients", len(pve_clients), len(pbs_clients)
        )
        await self._close_retired_if_idle()
        self._next_discovery = time.monotonic() + self._discovery_interval
        self._spawn(self.run_discovery(), "discovery")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._tick()
            except Exception:  # pragma: no cover - defensive logging
                logger.exception("Unexpected error during aggregation tick")
            await self._sleep()

    async def _sleep(self) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=min(self._metric_interval, 1.0))
        except asyncio.TimeoutError:
            pass

    def _tick(self) -> None:
        now = time.monotonic()
        if now >= self._next_discovery:
            self._next_discovery = now + self._discovery_interval
            self._spawn(self.run_discovery(), "discovery")
        if now >= self._next_metrics:
            self._next_metrics = now + self._metric_interval
            self._spawn(self.run_metrics(), "metrics")

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        task = asyncio.create_task(coro, name=f"aggregation-{name}")
        self._cycles.add(task)
        task.add_done_callback(self._cycles.discard)

    async def _guarded(self, coro: Awaitable[T], fallback: T, label: str, errors: list[CycleError]) -> T:
        try:
            return await coro
        except Exception as exc:
            logger.exception("%s collection failed", label)
            errors.append(CycleError(type=label, message=str(exc)))
            return fallback

    async def run_discovery(self) -> bool:
        """Run one discovery plus backup cycle; returns False when one was already running."""
        if self._discovery_running:
            self._discovery_pending = True
            logger.debug("Discovery cycle already running, queued another run")
            return False
        self._discovery_running = True
        try:
            while True:
                self._discovery_pending = False
                await self._discovery_cycle()
                if not self._discovery_pending or self._stop_event.is_set():
                    break
        finally:
            self._discovery_running = False
            await self._close_retired_if_idle()
        return True

    async def _discovery_cycle(self) -> None:
        pve_clients, pbs_clients = self._pve_clients, self._pbs_clients
        started = time.perf_counter()
        errors: list[CycleError] = []
        async with asyncio.TaskGroup() as group:
            discovery_task = group.create_task(
                self._guarded(fetch_pve_discovery(pve_clients), DiscoveryResult(), "discovery", errors)
            )
            pbs_task = group.create_task(
                self._guarded(self._backups.fetch_pbs_data(pbs_clients), [], "pbs", errors)
            )
        discovery: DiscoveryResult = discovery_task.result()
        pbs: list[BackupInstanceReport] = pbs_task.result()
        duration = _elapsed_ms(started)
        self._state.update_discovery(discovery, pbs, duration_ms=duration, errors=errors)
        logger.info(
            "Discovery cycle finished in %d ms: %d nodes, %d VMs, %d containers, %d backup servers",
            duration,
            len(discovery.nodes),
            len(discovery.vms),
            len(discovery.containers),
            len(pbs),
        )
        await self._push()

    async def run_metrics(self) -> bool:
        if self._metrics_running:
            logger.debug("Metrics cycle already running, skipping")
            return False
        self._metrics_running = True
        try:
            await self._metrics_cycle()
        finally:
            self._metrics_running = False
            await self._close_retired_if_idle()
        return True

    async def _metrics_cycle(self) -> None:
        pve_clients = self._pve_clients
        vms, containers = self._state.running_guests()
        if not vms and not containers:
            self._state.clear_metrics()
            await self._push()
            return
        started = time.perf_counter()
        errors: list[CycleError] = []
        samples = await self._guarded(fetch_metrics_data(vms, containers, pve_clients), [], "metrics", errors)
        for error in errors:
            self._state.record_error(error)
        self._state.update_metrics(samples, duration_ms=_elapsed_ms(started))
        await self._push()

    async def _push(self) -> None:
        if self._publish is None:
            return
        try:
            await self._publish(self._state.snapshot())
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("Failed to publish cluster state")

    async def _close_retired_if_idle(self) -> None:
        if self._discovery_running or self._metrics_running or not self._retired:
            return
        retired, self._retired = self._retired, []
        for handles in retired:
            await close_handles(handles)
        logger.debug("Closed %d retired client maps", len(retired))
