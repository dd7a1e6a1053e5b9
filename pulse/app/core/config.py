from functools import lru_cache
import json
from pathlib import Path
from typing import Any, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables or .env files."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PULSE_",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "Pulse Collector"
    debug: bool = False

    # Upstream HTTP behaviour
    request_timeout_seconds: float = 30.0
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 0.1

    # Polling cadence
    discovery_interval_seconds: float = 30.0
    metric_interval_seconds: float = 2.0

    # Hostname resolution for flaky private networks
    dns_failed_host_retry_seconds: float = 30.0
    resilient_dns_suffixes: List[str] = Field(default_factory=lambda: [".lan"])

    # Backup server task history
    pbs_task_window_days: int = 7
    pbs_task_limit: int = 1000
    pbs_recent_task_count: int = 50

    # Rolling per-guest chart history (one hour at the default metric cadence)
    metrics_history_retention_seconds: float = 3600.0
    metrics_history_max_points: int = 1800

    thresholds_path: Path = Path("data/custom-thresholds.json")

    # Already-validated endpoint definitions handed over by the external config loader
    pve_endpoints: List[dict[str, Any]] = Field(default_factory=list)
    pbs_endpoints: List[dict[str, Any]] = Field(default_factory=list)

    @field_validator("resilient_dns_suffixes", mode="before")
    @classmethod
    def _parse_suffixes(cls, value: List[str] | str | None) -> List[str]:
        if value is None:
            return []
        items: List[str] = []
        if isinstance(value, list):
            items = [str(item) for item in value if isinstance(item, (str, int, float))]
        elif isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                return []
            if stripped.startswith("["):
                try:
                    parsed = json.loads(stripped)
                except json.JSONDecodeError:
                    parsed = None
                if isinstance(parsed, list):
                    items = [str(item) for item in parsed if isinstance(item, (str, int, float))]
            if not items:
                items = [part.strip().strip('"').strip("'") for part in stripped.split(",")]
        cleaned: List[str] = []
        for item in items:
            token = item.strip().lower()
            if not token:
                continue
            if not token.startswith("."):
                token = f".{token}"
            cleaned.append(token)
        return cleaned

    @field_validator("discovery_interval_seconds", mode="before")
    @classmethod
    def _validate_discovery_interval(cls, value: float | str | None) -> float:
        if value in (None, ""):
            return 30.0
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            return 30.0
        return max(5.0, numeric)

    @field_validator("metric_interval_seconds", mode="before")
    @classmethod
    def _validate_metric_interval(cls, value: float | str | None) -> float:
        if value in (None, ""):
            return 2.0
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            return 2.0
        return max(1.0, numeric)

    @field_validator("retry_max_attempts", mode="before")
    @classmethod
    def _validate_attempts(cls, value: int | str | None) -> int:
        if value in (None, ""):
            return 3
        try:
            numeric = int(value)
        except (TypeError, ValueError):
            return 3
        return max(0, min(10, numeric))


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""
    return Settings()


settings = get_settings()
