"""
Pydantic-based configuration system for cohort-ttl.

Loads configuration from YAML files with a default file merged underneath.
Rule-level validation (strategy names, TTL values, strategy parameters) runs
in the models; any failure surfaces as ConfigurationError, which is fatal at
startup.

Usage:
    from cohort_ttl.config import load_config
    config = load_config("config/production.yaml")
"""

from pathlib import Path
from typing import Any, Dict, List, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from cohort_ttl.cohort.calculator import Granularity, derive_granularity


class ConfigurationError(Exception):
    """Invalid engine configuration. Fatal: startup aborts."""


# ── TTL Rules ───────────────────────────────────────────────────────────────


class TTLRuleConfig(BaseModel):
    """Expiration rule for one governed resource.

    ``expires_at = record[field] + ttl_seconds``. Without ``ttl_seconds`` the
    field itself holds an absolute expiry timestamp.
    """

    resource: str = Field(description="Governed resource name")
    field: str = Field(default="created_at", description="Timestamp field expiry is based on")
    ttl_seconds: float | None = Field(default=None, description="TTL added to the field value")
    on_expire: Literal["soft-delete", "hard-delete", "archive", "callback"] = Field(
        description="Disposal strategy"
    )
    granularity: Granularity | None = Field(
        default=None, description="Cohort bucket size override (derived from ttl if unset)"
    )

    # Strategy parameters
    delete_field: str = Field(default="deleted_at", description="soft-delete timestamp field")
    deleted_flag_field: str = Field(default="is_deleted", description="soft-delete flag field")
    archive_resource: str | None = Field(default=None, description="archive target resource")
    keep_original_id: bool = Field(default=False, description="archive: record original_id")
    callback: str | None = Field(default=None, description="callback: registered handler name")

    @model_validator(mode="after")
    def _check_strategy_params(self) -> "TTLRuleConfig":
        if self.ttl_seconds is not None and self.ttl_seconds <= 0:
            raise ValueError(f"{self.resource}: ttl_seconds must be positive")
        if self.ttl_seconds is None and "field" not in self.model_fields_set:
            raise ValueError(
                f"{self.resource}: provide ttl_seconds or an absolute expiry field"
            )
        if self.on_expire == "archive" and not self.archive_resource:
            raise ValueError(f"{self.resource}: archive strategy requires archive_resource")
        if self.on_expire == "callback" and not self.callback:
            raise ValueError(f"{self.resource}: callback strategy requires a callback name")
        return self

    @property
    def effective_granularity(self) -> Granularity:
        return self.granularity or derive_granularity(self.ttl_seconds)


# ── Sub-configs ─────────────────────────────────────────────────────────────


class SchedulesConfig(BaseModel):
    """Firing rule per granularity: interval seconds or cron expression.

    Six-field cron expressions carry a leading seconds field.
    """

    minute: str | float = "*/10 * * * * *"
    hour: str | float = "*/10 * * * *"
    day: str | float = "0 * * * *"
    week: str | float = "0 0 * * *"

    def for_granularity(self, granularity: str) -> str | float:
        return getattr(self, granularity)


class CleanupConfig(BaseModel):
    """Scan and disposal tuning."""

    batch_size: int = Field(default=100, ge=1, description="Index entries read per page")
    concurrency: int = Field(default=1, ge=1, description="Records disposed in parallel")
    record_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Upper bound for one strategy execution"
    )
    callback_retry_cohorts: int = Field(
        default=1, ge=1, description="Buckets a deferred callback record is pushed ahead"
    )
    archive_dedupe: bool = Field(
        default=True, description="Key archive copies by (archived_from, original_id)"
    )
    first_scan_lookback: Dict[str, int] = Field(
        default_factory=lambda: {"minute": 3, "hour": 2, "day": 2, "week": 2},
        description="Cohorts scanned when no progress has been recorded yet",
    )
    schedules: SchedulesConfig = SchedulesConfig()
    resource_allowlist: List[str] = []
    resource_blocklist: List[str] = []

    def is_managed(self, resource: str) -> bool:
        """Apply allow/block lists to a configured resource name."""
        if self.resource_allowlist and resource not in self.resource_allowlist:
            return False
        return resource not in self.resource_blocklist


class CoordinatorConfig(BaseModel):
    """Leader-election tuning."""

    enabled: bool = True
    lease_key: str = "ttl-cleanup"
    heartbeat_interval_seconds: float = Field(default=5.0, gt=0)
    cold_start_observation_seconds: float = Field(default=15.0, ge=0)
    missed_heartbeat_threshold: int = Field(default=3, ge=1)
    lease_ttl_seconds: float | None = Field(
        default=None, description="Defaults to heartbeat_interval * missed_heartbeat_threshold"
    )
    election_jitter_min_seconds: float = Field(default=0.1, ge=0)
    election_jitter_max_seconds: float = Field(default=0.5, ge=0)
    election_rounds: int = Field(default=3, ge=1)

    @property
    def effective_lease_ttl(self) -> float:
        if self.lease_ttl_seconds is not None:
            return self.lease_ttl_seconds
        return self.heartbeat_interval_seconds * self.missed_heartbeat_threshold


class StoreConfig(BaseModel):
    """Shared document store location and engine resource names."""

    db_path: str = "data/ttl_store.db"
    index_resource: str = "plg_ttl_expiration_index"
    lease_resource: str = "plg_ttl_coordinator_lease"
    progress_resource: str = "plg_ttl_scan_progress"
    declare_resources: List[str] = Field(
        default_factory=list, description="Application resources declared at startup (CLI)"
    )


class AlertsConfig(BaseModel):
    """Telegram notification switches."""

    enabled: bool = True
    notify_scan_expired: bool = False


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    file: str = "logs/cohort_ttl.log"
    rotation: str = "10 MB"
    retention: str = "30 days"


# ── Root Config ─────────────────────────────────────────────────────────────


class AppConfig(BaseModel):
    """Root configuration for cohort-ttl."""

    worker_id: str | None = None
    rules: List[TTLRuleConfig] = []
    cleanup: CleanupConfig = CleanupConfig()
    coordinator: CoordinatorConfig = CoordinatorConfig()
    store: StoreConfig = StoreConfig()
    alerts: AlertsConfig = AlertsConfig()
    logging: LoggingConfig = LoggingConfig()

    @model_validator(mode="after")
    def _check_unique_resources(self) -> "AppConfig":
        seen: set[str] = set()
        for rule in self.rules:
            if rule.resource in seen:
                raise ValueError(f"Duplicate TTL rule for resource {rule.resource}")
            seen.add(rule.resource)
        return self


# ── Config Loading ──────────────────────────────────────────────────────────


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into base dict."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def build_config(data: Dict[str, Any]) -> AppConfig:
    """Validate a raw mapping into an AppConfig.

    Raises:
        ConfigurationError: If any rule or option is invalid.
    """
    try:
        return AppConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def load_config(
    config_path: str | Path,
    default_path: str | Path | None = None,
) -> AppConfig:
    """Load configuration from YAML, merging with defaults.

    Args:
        config_path: Path to the instance config.
        default_path: Path to default config. Auto-detected if None.

    Returns:
        Fully resolved AppConfig instance.
    """
    config_path = Path(config_path)

    # Auto-detect default config location
    if default_path is None:
        default_path = config_path.parent / "default.yaml"

    base_data: Dict[str, Any] = {}
    if Path(default_path).exists():
        with open(default_path, "r", encoding="utf-8") as f:
            base_data = yaml.safe_load(f) or {}

    override_data: Dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            override_data = yaml.safe_load(f) or {}
    elif Path(default_path) != config_path:
        raise ConfigurationError(f"Config file not found: {config_path}")

    # Rule lists are replaced, not merged
    merged = _deep_merge(base_data, override_data)

    return build_config(merged)
