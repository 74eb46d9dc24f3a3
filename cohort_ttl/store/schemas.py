"""
Schemas for the documents and run summaries of the expiration engine.

ExpirationIndexEntry and CoordinatorLease are stored as ordinary documents in
the shared document store, distinguished only by resource name and partition
key. Disposition, CleanupRun, ScanSchedule and EngineStats live in memory.

Usage:
    entry = ExpirationIndexEntry(
        resource_name="orders", record_id="o-1", cohort="2026-02-16",
        expires_at=expires_at, granularity="day", strategy_hint="archive",
    )
    store.put(index_resource, entry.to_document())
"""

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

from cohort_ttl.cohort.calculator import Granularity

StrategyName = Literal["soft-delete", "hard-delete", "archive", "callback"]

STRATEGIES: tuple[str, ...] = ("soft-delete", "hard-delete", "archive", "callback")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def index_entry_id(resource_name: str, record_id: str) -> str:
    """Document id of the index entry for one governed record."""
    return f"{resource_name}:{record_id}"


# ── Persisted Documents ─────────────────────────────────────────────────────


class ExpirationIndexEntry(BaseModel):
    """One live, TTL-governed record and the cohort it expires in.

    Partitioned by ``cohort`` in the index resource.
    """

    resource_name: str
    record_id: str
    cohort: str
    expires_at: datetime
    granularity: Granularity
    strategy_hint: StrategyName
    indexed_at: datetime = Field(default_factory=_utcnow)

    @property
    def id(self) -> str:
        return index_entry_id(self.resource_name, self.record_id)

    def to_document(self) -> dict[str, Any]:
        """Serialize to a JSON-safe document with a stable id."""
        return {"id": self.id, **self.model_dump(mode="json")}

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "ExpirationIndexEntry":
        return cls.model_validate(doc)


class CoordinatorLease(BaseModel):
    """Time-bounded claim of coordinator status, renewed by heartbeat.

    A lease is valid while ``now - last_heartbeat_at < lease_ttl_seconds``.
    At most one valid lease should be observed at a time, but transient
    violations are tolerated: disposal is idempotent.
    """

    lease_key: str
    worker_id: str
    claimed_at: datetime = Field(default_factory=_utcnow)
    last_heartbeat_at: datetime = Field(default_factory=_utcnow)
    lease_ttl_seconds: float

    def age_seconds(self, now: datetime) -> float:
        return (now - self.last_heartbeat_at).total_seconds()

    def is_valid(self, now: datetime) -> bool:
        """Check whether the holder heartbeated within the lease TTL."""
        return self.age_seconds(now) < self.lease_ttl_seconds

    def to_document(self) -> dict[str, Any]:
        return {"id": self.lease_key, **self.model_dump(mode="json")}

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "CoordinatorLease":
        return cls.model_validate(doc)


class ScanProgress(BaseModel):
    """Persisted scan position for one (resource, granularity) pair."""

    resource_name: str
    granularity: Granularity
    last_processed_cohort: str
    updated_at: datetime = Field(default_factory=_utcnow)
    worker_id: str = ""

    @property
    def id(self) -> str:
        return f"{self.resource_name}:{self.granularity}"

    def to_document(self) -> dict[str, Any]:
        return {"id": self.id, **self.model_dump(mode="json")}


# ── Runtime Models ──────────────────────────────────────────────────────────

DispositionOutcome = Literal["disposed", "relocated", "error"]


class Disposition(BaseModel):
    """Result of applying one strategy to one record.

    The scanner removes the index entry on ``disposed``, moves it to the
    delayed retry cohort on ``relocated`` and keeps it on ``error``.
    """

    outcome: DispositionOutcome
    strategy: StrategyName
    error: str | None = None

    @property
    def disposed(self) -> bool:
        return self.outcome == "disposed"


class CleanupRun(BaseModel):
    """Summary of one scan pass over a granularity."""

    granularity: Granularity
    worker_id: str = ""
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime | None = None
    cohorts: list[str] = Field(default_factory=list)
    records_processed: int = 0
    records_expired: int = 0
    records_relocated: int = 0
    stale_entries_removed: int = 0
    per_strategy: dict[str, int] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
    blocked_cohorts: int = 0
    aborted: bool = False

    @property
    def duration_ms(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds() * 1000

    def count_strategy(self, strategy: str) -> None:
        self.per_strategy[strategy] = self.per_strategy.get(strategy, 0) + 1


class ScanSchedule(BaseModel):
    """In-memory firing state of one granularity loop."""

    granularity: Granularity
    expression: str
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None


class EngineStats(BaseModel):
    """Aggregate counters owned by one CleanupEngine instance."""

    total_scans: int = 0
    total_expired: int = 0
    total_deleted: int = 0
    total_archived: int = 0
    total_soft_deleted: int = 0
    total_callbacks: int = 0
    total_relocated: int = 0
    total_errors: int = 0
    last_scan_at: datetime | None = None
    last_scan_duration_ms: float = 0.0
