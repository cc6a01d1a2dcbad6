"""
Configuration for the attendance sync engine.

Settings are type-safe pydantic models loaded, in increasing precedence, from
an optional YAML file, ``ATTENDANCE_SYNC_*`` environment variables and explicit
keyword overrides. Per-operation :class:`SyncOptions` are merged on top by the
``resolve_*`` helpers.
"""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError
from .models import SyncOptions

logger = logging.getLogger(__name__)


class RetrySettings(BaseModel):
    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=30.0, ge=0.0)
    multiplier: float = Field(default=2.0, ge=1.0)
    # Extra backoff per error already accumulated in the surrounding batch.
    throttle_factor: float = Field(default=0.5, ge=0.0)


class CircuitBreakerSettings(BaseModel):
    failure_threshold: int = Field(default=5, ge=1)
    reset_timeout: float = Field(default=60.0, ge=0.0)
    half_open_trial_count: int = Field(default=2, ge=1)


class ChunkingSettings(BaseModel):
    chunk_days: int = Field(default=30, ge=1, le=90)
    batch_size: int = Field(default=500, ge=1, le=1000)


class CorrectionWindowSettings(BaseModel):
    enabled: bool = True
    days: int = Field(default=7, ge=1, le=30)


class DeadLetterSettings(BaseModel):
    max_size: int = Field(default=1000, ge=1)
    retention_seconds: float = Field(default=86400.0, gt=0)


class ResourceLimits(BaseModel):
    """Resource budget; also used as the per-batch request shape."""

    memory_mb: float = Field(default=2048.0, ge=0)
    cpu_percent: float = Field(default=80.0, ge=0)
    connections: int = Field(default=50, ge=0)


class OrchestratorSettings(BaseModel):
    max_concurrent_workflows: int = Field(default=5, ge=1)
    max_concurrent_operations: int = Field(default=3, ge=1)
    queue_poll_interval: float = Field(default=5.0, gt=0)
    resource_poll_interval: float = Field(default=1.0, gt=0)
    max_retained_workflows: int = Field(default=100, ge=1)
    resource_limits: ResourceLimits = Field(default_factory=ResourceLimits)


class AlertThresholds(BaseModel):
    error_rate: float = Field(default=0.25, ge=0.0, le=1.0)
    failure_count: int = Field(default=10, ge=1)
    # Failures are counted over this many most recent operations.
    failure_window: int = Field(default=50, ge=1)


class MonitoringSettings(BaseModel):
    enable_progress_tracking: bool = True
    progress_queue_size: int = Field(default=100, ge=1)
    enable_alerting: bool = True
    alert_thresholds: AlertThresholds = Field(default_factory=AlertThresholds)


class LoggingSettings(BaseModel):
    service_name: str = "attendance-sync"
    level: str = "INFO"
    json_format: bool = True


class SyncSettings(BaseSettings):
    """Top-level settings for a sync service instance."""

    model_config = SettingsConfigDict(
        env_prefix="ATTENDANCE_SYNC_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    retry: RetrySettings = Field(default_factory=RetrySettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    chunking: ChunkingSettings = Field(default_factory=ChunkingSettings)
    correction_window: CorrectionWindowSettings = Field(default_factory=CorrectionWindowSettings)
    dead_letter: DeadLetterSettings = Field(default_factory=DeadLetterSettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(path: str | Path | None = None, **overrides: Any) -> SyncSettings:
    """Load settings from an optional YAML file plus env vars and overrides."""
    data: dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")
        with open(config_path) as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {config_path}")
        data.update(loaded)
        logger.debug("Loaded sync configuration from %s", config_path)

    data.update(overrides)
    try:
        # Init kwargs outrank env vars in pydantic-settings, so only pass what was given.
        return SyncSettings(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid sync configuration: {e}") from e


def _merge(model: BaseModel, options: SyncOptions, names: tuple[str, ...]) -> Any:
    updates = {name: getattr(options, name) for name in names if getattr(options, name) is not None}
    if not updates:
        return model
    try:
        return type(model).model_validate({**model.model_dump(), **updates})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid operation options: {e}") from e


def resolve_retry(settings: SyncSettings, options: SyncOptions) -> RetrySettings:
    """Merge per-operation retry overrides onto the service defaults."""
    return _merge(settings.retry, options, ("max_attempts", "base_delay", "max_delay", "multiplier"))


def resolve_circuit_breaker(
    settings: SyncSettings, options: SyncOptions
) -> CircuitBreakerSettings:
    return _merge(
        settings.circuit_breaker,
        options,
        ("failure_threshold", "reset_timeout", "half_open_trial_count"),
    )


def resolve_chunking(settings: SyncSettings, options: SyncOptions) -> ChunkingSettings:
    return _merge(settings.chunking, options, ("chunk_days", "batch_size"))


def resolve_correction_window(settings: SyncSettings, options: SyncOptions) -> bool:
    if options.correction_window is not None:
        return options.correction_window
    return settings.correction_window.enabled
