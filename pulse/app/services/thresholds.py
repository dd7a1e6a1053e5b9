from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping

from pulse.app.schemas.thresholds import (
    EndpointThresholdCounts,
    ThresholdExport,
    ThresholdOverride,
    ThresholdPair,
    ThresholdSet,
    ThresholdStatistics,
)


logger = logging.getLogger(__name__)

METRICS = ("cpu", "memory", "disk")


class ThresholdValidationError(ValueError):
    def __init__(self, message: str, metric: str | None = None):
        super().__init__(message)
        self.metric = metric


class ThresholdNotFoundError(LookupError):
    """Raised when toggling an override that does not exist."""


def make_key(endpoint_id: str, vmid: int | str) -> str:
    return f"{endpoint_id}:{vmid}"


def _validate_value(value: Any, field: str, metric: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ThresholdValidationError(f"{field} must be a number", metric=metric)
    if value < 0 or value > 100:
        raise ThresholdValidationError(f"{field} must be between 0 and 100", metric=metric)
    return float(value)


def validate_thresholds(thresholds: Mapping[str, Any] | ThresholdSet) -> dict[str, ThresholdPair]:
    """Check every provided metric pair; nothing is returned unless all of them pass."""
    if isinstance(thresholds, ThresholdSet):
        thresholds = thresholds.model_dump(exclude_none=True)
    if not isinstance(thresholds, Mapping):
        raise ThresholdValidationError("thresholds must be an object")

    validated: dict[str, ThresholdPair] = {}
    for metric in METRICS:
        pair = thresholds.get(metric)
        if pair is None:
            continue
        if isinstance(pair, ThresholdPair):
            pair = pair.model_dump()
        if not isinstance(pair, Mapping):
            raise ThresholdValidationError(f"{metric} thresholds must be an object", metric=metric)
        warning = _validate_value(pair.get("warning"), f"{metric}.warning", metric)
        critical = _validate_value(pair.get("critical"), f"{metric}.critical", metric)
        if critical <= warning:
            raise ThresholdValidationError(
                f"{metric} critical threshold must be greater than warning threshold", metric=metric
            )
        validated[metric] = ThresholdPair(warning=warning, critical=critical)
    return validated


class ThresholdStore:
    """Per-guest threshold overrides cached in memory and persisted as one JSON document.

    Keys are ``endpoint_id:vmid``. The node is accepted for callers' convenience
    but never part of the key, so overrides follow a guest across migrations.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._cache: dict[str, ThresholdOverride] = {}
        self._lock = asyncio.Lock()
        self._loaded = False

    @property
    def initialized(self) -> bool:
        return self._loaded

    async def initialize(self) -> None:
        async with self._lock:
            await self._load_locked()

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await self._load_locked()

    async def _load_locked(self) -> None:
        raw = await asyncio.to_thread(self._read_file)
        if raw is None:
            self._cache.clear()
            await asyncio.to_thread(self._write_file, {})
            logger.info("Created new threshold configuration file at %s", self.path)
        else:
            self._cache = {key: ThresholdOverride.model_validate(value) for key, value in raw.items()}
            logger.info("Loaded %d threshold configurations", len(self._cache))
        self._loaded = True

    def _read_file(self) -> dict[str, Any] | None:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        data = json.loads(text) if text.strip() else {}
        if not isinstance(data, dict):
            raise ValueError(f"Threshold file {self.path} does not contain a JSON object")
        return data

    def _write_file(self, document: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def _persist_locked(self) -> None:
        document = {key: record.model_dump(mode="json", by_alias=True) for key, record in self._cache.items()}
        await asyncio.to_thread(self._write_file, document)
        logger.debug("Saved %d threshold configurations", len(document))

    def get(self, endpoint_id: str, vmid: int | str, node: str | None = None) -> ThresholdOverride | None:
        return self._cache.get(make_key(endpoint_id, vmid))

    async def set(
        self,
        endpoint_id: str,
        vmid: int | str,
        thresholds: Mapping[str, Any] | ThresholdSet,
        node: str | None = None,
    ) -> bool:
        validated = validate_thresholds(thresholds)
        key = make_key(endpoint_id, vmid)
        async with self._lock:
            await self._ensure_loaded()
            now = datetime.now(tz=timezone.utc)
            existing = self._cache.get(key)
            if existing is None:
                record = ThresholdOverride(
                    endpoint_id=endpoint_id,
                    vmid=int(vmid),
                    node_id=node,
                    thresholds=ThresholdSet(**validated),
                    enabled=True,
                    created_at=now,
                    updated_at=now,
                )
            else:
                record = existing.model_copy(
                    update={
                        "thresholds": existing.thresholds.model_copy(update=validated),
                        "node_id": node or existing.node_id,
                        "updated_at": now,
                    }
                )
            self._cache[key] = record
            await self._persist_locked()
        return True

    async def remove(self, endpoint_id: str, vmid: int | str, node: str | None = None) -> bool:
        key = make_key(endpoint_id, vmid)
        async with self._lock:
            await self._ensure_loaded()
            if key not in self._cache:
                return False
            del self._cache[key]
            await self._persist_locked()
        return True

    async def toggle(self, endpoint_id: str, vmid: int | str, enabled: bool, node: str | None = None) -> bool:
        key = make_key(endpoint_id, vmid)
        async with self._lock:
            await self._ensure_loaded()
            existing = self._cache.get(key)
            if existing is None:
                raise ThresholdNotFoundError(f"Threshold configuration not found for {key}")
            self._cache[key] = existing.model_copy(
                update={"enabled": enabled, "updated_at": datetime.now(tz=timezone.utc)}
            )
            await self._persist_locked()
        return True

    async def import_thresholds(self, records: Iterable[Mapping[str, Any]]) -> int:
        imported = 0
        for record in records:
            await self.set(
                str(record["endpointId"]),
                record["vmid"],
                record.get("thresholds") or {},
                node=record.get("nodeId"),
            )
            imported += 1
        logger.info("Imported %d threshold configurations", imported)
        return imported

    def list_all(self) -> list[ThresholdOverride]:
        return list(self._cache.values())

    def list_by_endpoint(self, endpoint_id: str) -> list[ThresholdOverride]:
        return [record for record in self._cache.values() if record.endpoint_id == endpoint_id]

    def export_all(self) -> ThresholdExport:
        return ThresholdExport(exported_at=datetime.now(tz=timezone.utc), thresholds=self.list_all())

    def statistics(self) -> ThresholdStatistics:
        records = self.list_all()
        by_endpoint: dict[str, EndpointThresholdCounts] = {}
        for record in records:
            counts = by_endpoint.setdefault(record.endpoint_id, EndpointThresholdCounts())
            counts.total += 1
            if record.enabled:
                counts.enabled += 1
        enabled = sum(1 for record in records if record.enabled)
        return ThresholdStatistics(
            total=len(records),
            enabled=enabled,
            disabled=len(records) - enabled,
            by_endpoint=by_endpoint,
            last_updated=max((record.updated_at for record in records), default=None),
        )
