from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


ThresholdMetric = Literal["cpu", "memory", "disk"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ThresholdPair(_CamelModel):
    warning: float
    critical: float


class ThresholdSet(_CamelModel):
    cpu: ThresholdPair | None = None
    memory: ThresholdPair | None = None
    disk: ThresholdPair | None = None


class ThresholdOverride(_CamelModel):
    """Per-guest alert thresholds, keyed by endpoint and vmid only."""

    endpoint_id: str
    vmid: int
    node_id: str | None = None
    thresholds: ThresholdSet = Field(default_factory=ThresholdSet)
    enabled: bool = True
    created_at: datetime
    updated_at: datetime


class ThresholdUpdate(_CamelModel):
    thresholds: dict[str, Any]


class ThresholdToggle(_CamelModel):
    enabled: bool


class ThresholdExport(_CamelModel):
    version: str = "1.0"
    exported_at: datetime
    thresholds: list[ThresholdOverride] = Field(default_factory=list)


class EndpointThresholdCounts(_CamelModel):
    total: int = 0
    enabled: int = 0


class ThresholdStatistics(_CamelModel):
    total: int = 0
    enabled: int = 0
    disabled: int = 0
    by_endpoint: dict[str, EndpointThresholdCounts] = Field(default_factory=dict)
    last_updated: datetime | None = None
