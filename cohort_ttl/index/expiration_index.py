"""
Expiration index — which governed records expire in which cohort.

Entries are ordinary documents in the shared store, partitioned by cohort
label, so a scan reads "records expiring in bucket X" with one partition query
instead of scanning every governed record. The index also persists the scan
progress marker (last fully drained cohort) per resource and granularity, so a
newly elected coordinator resumes where the previous one stopped.

Entry ids are ``"{resource}:{record_id}"``; ids of one resource therefore sort
contiguously inside a cohort partition, which keeps the per-resource page walk
a plain keyset scan.

Usage:
    index = ExpirationIndex(store, "plg_ttl_expiration_index", "plg_ttl_scan_progress")
    index.ensure_resources()
    index.upsert(rule, record)
    for entry in index.due("orders", "day", "2026-02-16"):
        ...
"""

from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from loguru import logger

from cohort_ttl.cohort.calculator import (
    cohort_for,
    compare_cohorts,
    iter_cohorts,
    lookback_cohorts,
    to_utc,
)
from cohort_ttl.config import TTLRuleConfig
from cohort_ttl.store.document_store import DocumentStore
from cohort_ttl.store.schemas import ExpirationIndexEntry, ScanProgress, index_entry_id

DEFAULT_FIRST_SCAN_LOOKBACK = {"minute": 3, "hour": 2, "day": 2, "week": 2}


def parse_timestamp(value: Any) -> datetime | None:
    """Coerce a record timestamp to aware UTC.

    Accepts datetimes, ISO 8601 strings and epoch seconds. Returns None for
    missing or unparseable values.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return to_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


class ExpirationIndex:
    """Cohort-partitioned secondary index over TTL-governed records.

    All methods are synchronous store calls; async callers wrap them with
    asyncio.to_thread().
    """

    def __init__(
        self,
        store: DocumentStore,
        index_resource: str = "plg_ttl_expiration_index",
        progress_resource: str = "plg_ttl_scan_progress",
        batch_size: int = 100,
        first_scan_lookback: dict[str, int] | None = None,
        clock: Callable[[], datetime] | None = None,
        worker_id: str = "",
    ) -> None:
        self._store = store
        self._index_resource = index_resource
        self._progress_resource = progress_resource
        self._batch_size = batch_size
        self._lookback = {**DEFAULT_FIRST_SCAN_LOOKBACK, **(first_scan_lookback or {})}
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._worker_id = worker_id

    @property
    def resource(self) -> str:
        return self._index_resource

    def ensure_resources(self) -> None:
        """Declare the index and progress resources in the store."""
        self._store.define_resource(self._index_resource, partition_field="cohort")
        self._store.define_resource(self._progress_resource)

    # ── Expiry ──────────────────────────────────────────────────────

    def compute_expiry(self, rule: TTLRuleConfig, record: dict[str, Any]) -> datetime | None:
        """Return the record's expiry instant under ``rule``, or None if unknown."""
        timestamp = parse_timestamp(record.get(rule.field))
        if timestamp is None:
            return None
        if rule.ttl_seconds is None:
            return timestamp
        return timestamp + timedelta(seconds=rule.ttl_seconds)

    def placement_cohort(self, rule: TTLRuleConfig, expires_at: datetime) -> str:
        """Cohort an entry expiring at ``expires_at`` is written to.

        Past expiries are placed in the current cohort so they can never land
        behind the scan progress marker.
        """
        return cohort_for(max(expires_at, to_utc(self._clock())), rule.effective_granularity)

    # ── Writes ──────────────────────────────────────────────────────

    def upsert(self, rule: TTLRuleConfig, record: dict[str, Any]) -> ExpirationIndexEntry | None:
        """Create or relocate the index entry for one governed record.

        Idempotent: an unchanged expiry leaves the store untouched, so an entry
        already pushed to a later retry cohort stays there.

        Returns:
            The current entry, or None when the record is not indexable
            (missing timestamp or already soft-deleted).
        """
        record_id = record.get("id")
        if record_id is None:
            logger.warning("ExpirationIndex: {} record without id, not indexed", rule.resource)
            return None
        record_id = str(record_id)

        if rule.on_expire == "soft-delete" and record.get(rule.deleted_flag_field):
            self.remove_record(rule.resource, record_id)
            return None

        expires_at = self.compute_expiry(rule, record)
        if expires_at is None:
            logger.warning(
                "ExpirationIndex: {}/{} has no usable '{}' timestamp, not indexed",
                rule.resource,
                record_id,
                rule.field,
            )
            self.remove_record(rule.resource, record_id)
            return None

        cohort = self.placement_cohort(rule, expires_at)
        existing = self.get(rule.resource, record_id)
        granularity = rule.effective_granularity
        if (
            existing is not None
            and existing.expires_at == expires_at
            and existing.granularity == granularity
            # Same expiry: keep the entry, including a deferred retry cohort
            and compare_cohorts(existing.cohort, cohort, granularity) >= 0
        ):
            return existing

        entry = ExpirationIndexEntry(
            resource_name=rule.resource,
            record_id=record_id,
            cohort=cohort,
            expires_at=expires_at,
            granularity=granularity,
            strategy_hint=rule.on_expire,
            indexed_at=self._clock(),
        )
        self._store.put(self._index_resource, entry.to_document())
        if existing is not None and existing.cohort != cohort:
            logger.debug(
                "ExpirationIndex: relocated {} {} -> {}", entry.id, existing.cohort, cohort
            )
        return entry

    def relocate(
        self,
        entry: ExpirationIndexEntry,
        cohort: str,
        expires_at: datetime | None = None,
    ) -> ExpirationIndexEntry:
        """Move an entry to another cohort partition."""
        moved = entry.model_copy(
            update={
                "cohort": cohort,
                "expires_at": expires_at or entry.expires_at,
                "indexed_at": self._clock(),
            }
        )
        self._store.put(self._index_resource, moved.to_document())
        return moved

    def remove(self, entry: ExpirationIndexEntry) -> bool:
        """Delete one entry. Already absent is not an error."""
        return self._store.delete(self._index_resource, entry.id)

    def remove_record(self, resource_name: str, record_id: str) -> bool:
        return self._store.delete(self._index_resource, index_entry_id(resource_name, record_id))

    # ── Reads ───────────────────────────────────────────────────────

    def get(self, resource_name: str, record_id: str) -> ExpirationIndexEntry | None:
        doc = self._store.get(self._index_resource, index_entry_id(resource_name, record_id))
        if doc is None:
            return None
        return ExpirationIndexEntry.from_document(doc)

    def iter_cohort(
        self, resource_name: str, cohort: str
    ) -> Iterator[list[ExpirationIndexEntry]]:
        """Yield pages of one resource's entries in one cohort partition.

        Keyset pagination by entry id: removing or relocating entries of a
        page already yielded never causes later entries to be skipped.
        """
        prefix = f"{resource_name}:"
        after_id = prefix
        while True:
            docs = self._store.list_partition(
                self._index_resource, cohort, limit=self._batch_size, after_id=after_id
            )
            page = [
                ExpirationIndexEntry.from_document(doc)
                for doc in docs
                if str(doc["id"]).startswith(prefix)
            ]
            if page:
                yield page
            # A short page means the partition or this resource's id range ended
            if len(page) < self._batch_size:
                return
            after_id = page[-1].id

    def cohorts_due(
        self, resource_name: str, granularity: str, upto_cohort: str
    ) -> Iterator[str]:
        """Cohorts after the progress marker through ``upto_cohort``, oldest first.

        The progress marker is read on call; labels are produced lazily, so a
        catch-up after a long outage walks every missed cohort without
        materializing the range. Without progress, the configured number of
        look-back cohorts is returned.
        """
        last = self.last_processed_cohort(resource_name, granularity)
        if last is None:
            return iter(lookback_cohorts(upto_cohort, granularity, self._lookback[granularity]))
        return iter_cohorts(last, upto_cohort, granularity)

    def due(
        self, resource_name: str, granularity: str, upto_cohort: str
    ) -> Iterator[ExpirationIndexEntry]:
        """Lazily yield every entry in the due cohorts, oldest cohort first."""
        for cohort in self.cohorts_due(resource_name, granularity, upto_cohort):
            for page in self.iter_cohort(resource_name, cohort):
                yield from page

    # ── Scan Progress ───────────────────────────────────────────────

    def last_processed_cohort(self, resource_name: str, granularity: str) -> str | None:
        doc = self._store.get(self._progress_resource, f"{resource_name}:{granularity}")
        if doc is None:
            return None
        return doc.get("last_processed_cohort")

    def mark_processed(self, resource_name: str, granularity: str, cohort: str) -> None:
        """Advance the progress marker to ``cohort``. Never moves it backwards."""
        last = self.last_processed_cohort(resource_name, granularity)
        if last is not None and compare_cohorts(cohort, last, granularity) <= 0:
            return
        progress = ScanProgress(
            resource_name=resource_name,
            granularity=granularity,
            last_processed_cohort=cohort,
            updated_at=self._clock(),
            worker_id=self._worker_id,
        )
        self._store.put(self._progress_resource, progress.to_document())
        logger.debug("ExpirationIndex: {} {} progress -> {}", resource_name, granularity, cohort)
