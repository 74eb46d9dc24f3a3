"""
Scan scheduler — one timer loop per granularity, driving disposal via the index.

On each tick (coordinator only), every rule of the granularity walks its due
cohorts oldest first. For each index entry the live record is re-read:

- record gone                  → drop the stale entry
- live expiry not reached yet  → relocate the entry (timestamp was bumped)
- due                          → execute the rule's strategy
    disposed  → remove entry, emit record-expired
    relocated → move entry to the delayed retry cohort
    error     → keep entry for the next tick, emit cleanup-error

The progress marker advances to a cohort only once that cohort and every older
cohort of the walk drained with nothing left behind, and the cohort's time
range has fully passed. An interrupted scan therefore never skips a cohort.

Ticks of one granularity never overlap; different granularities run
independently.

Usage:
    scheduler = ScanScheduler(index, executor, store, rules, config.cleanup,
                              events, stats, is_coordinator=elector_gate)
    await scheduler.start()            # runs until stop()
    run = await scheduler.run_scan("minute", wait=True)
"""

import asyncio
import itertools
from collections.abc import Coroutine
from datetime import datetime, timezone
from typing import Any, Callable

from loguru import logger

from cohort_ttl.cohort.calculator import GRANULARITIES, cohort_end, cohort_for, next_cohort
from cohort_ttl.config import CleanupConfig, TTLRuleConfig
from cohort_ttl.events import CleanupError, EventBus, RecordExpired, ScanCompleted
from cohort_ttl.index.expiration_index import ExpirationIndex
from cohort_ttl.scheduler.schedule import Schedule
from cohort_ttl.store.document_store import DocumentStore, StorageUnavailableError
from cohort_ttl.store.schemas import (
    CleanupRun,
    Disposition,
    EngineStats,
    ExpirationIndexEntry,
    ScanSchedule,
)
from cohort_ttl.strategies.executor import StrategyExecutor


class ScanScheduler:
    """Per-granularity scan loops gated by coordinator status.

    Usage:
        scheduler = ScanScheduler(index, executor, store, rules, cleanup_config,
                                  events, stats, is_coordinator=lambda: True)
        run = await scheduler.run_scan("day", wait=True)
    """

    def __init__(
        self,
        index: ExpirationIndex,
        executor: StrategyExecutor,
        store: DocumentStore,
        rules: list[TTLRuleConfig],
        config: CleanupConfig,
        events: EventBus,
        stats: EngineStats,
        is_coordinator: Callable[[], bool] = lambda: True,
        clock: Callable[[], datetime] | None = None,
        worker_id: str = "",
    ) -> None:
        self._index = index
        self._executor = executor
        self._store = store
        self._config = config
        self._events = events
        self._stats = stats
        self._is_coordinator = is_coordinator
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._worker_id = worker_id

        self._rules: dict[str, list[TTLRuleConfig]] = {g: [] for g in GRANULARITIES}
        for rule in rules:
            self._rules[rule.effective_granularity].append(rule)

        # Parsed up front so a bad expression fails at construction
        self._schedules: dict[str, Schedule] = {
            g: Schedule.parse(config.schedules.for_granularity(g)) for g in GRANULARITIES
        }
        self._states: dict[str, ScanSchedule] = {
            g: ScanSchedule(granularity=g, expression=self._schedules[g].expression)
            for g in GRANULARITIES
        }
        self._locks: dict[str, asyncio.Lock] = {g: asyncio.Lock() for g in GRANULARITIES}
        self._running = False
        self._stopping = False
        self._stop_event = asyncio.Event()

    # ── Public API ──────────────────────────────────────────────────────

    @property
    def active_granularities(self) -> list[str]:
        return [g for g in GRANULARITIES if self._rules[g]]

    @property
    def is_running(self) -> bool:
        return self._running

    def rules_for(self, granularity: str) -> list[TTLRuleConfig]:
        return list(self._rules.get(granularity, []))

    def schedule_states(self) -> dict[str, ScanSchedule]:
        return {g: self._states[g].model_copy() for g in self.active_granularities}

    async def start(self) -> None:
        """Run one loop per granularity that has rules, until stop()."""
        self._running = True
        self._stopping = False
        self._stop_event.clear()
        logger.info(
            "ScanScheduler: starting loops for {}",
            ", ".join(self.active_granularities) or "no granularities",
        )
        tasks: list[Coroutine[Any, Any, None]] = [
            self._granularity_loop(g) for g in self.active_granularities
        ]
        await asyncio.gather(*tasks)
        self._running = False

    async def stop(self) -> None:
        """Stop the loops. In-flight scans finish their current page first."""
        logger.info("ScanScheduler: stopping")
        self._running = False
        self._stopping = True
        self._stop_event.set()
        # Wait for in-flight scans to reach a page boundary
        for lock in self._locks.values():
            async with lock:
                pass

    async def run_scan(
        self,
        granularity: str,
        rules: list[TTLRuleConfig] | None = None,
        wait: bool = False,
    ) -> CleanupRun | None:
        """Run one scan pass for ``granularity``.

        Args:
            granularity: Granularity to scan.
            rules: Subset of rules to scan. All rules of the granularity if None.
            wait: Wait for an in-flight scan of the same granularity instead of
                skipping.

        Returns:
            The finished CleanupRun, or None if skipped.
        """
        lock = self._locks[granularity]
        if lock.locked() and not wait:
            logger.debug("ScanScheduler: {} scan already in flight, skipping tick", granularity)
            return None
        async with lock:
            if self._stopping:
                return None
            selected = self.rules_for(granularity) if rules is None else rules
            return await self._scan(granularity, selected)

    # ── Loops ───────────────────────────────────────────────────────────

    async def _granularity_loop(self, granularity: str) -> None:
        schedule = self._schedules[granularity]
        state = self._states[granularity]
        logger.info("ScanScheduler: {} loop started ({})", granularity, schedule.expression)
        while self._running:
            now = self._clock()
            state.next_run_at = schedule.next_fire_time(now)
            delay = max(0.0, (state.next_run_at - now).total_seconds())
            if await self._wait(delay):
                break
            if not self._is_coordinator():
                logger.debug("ScanScheduler: {} tick skipped, not coordinator", granularity)
                continue
            try:
                await self.run_scan(granularity)
            except Exception as e:
                logger.error("ScanScheduler: {} scan error: {}", granularity, e)
        logger.info("ScanScheduler: {} loop stopped", granularity)

    async def _wait(self, seconds: float) -> bool:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    # ── Scan ────────────────────────────────────────────────────────────

    async def _scan(self, granularity: str, rules: list[TTLRuleConfig]) -> CleanupRun:
        run = CleanupRun(
            granularity=granularity, worker_id=self._worker_id, started_at=self._clock()
        )
        self._states[granularity].last_run_at = run.started_at
        logger.debug("ScanScheduler: {} scan started ({} rules)", granularity, len(rules))

        for rule in rules:
            if self._stopping:
                break
            try:
                await self._scan_rule(rule, run)
            except StorageUnavailableError as e:
                run.aborted = True
                run.errors.append(f"{rule.resource}: {e}")
                self._stats.total_errors += 1
                logger.error("ScanScheduler: {} scan aborted on {}: {}", granularity, rule.resource, e)
                await self._events.emit(
                    "cleanup-error",
                    CleanupError(resource=rule.resource, granularity=granularity, error=str(e)),
                )
                break
            except Exception as e:
                run.errors.append(f"{rule.resource}: {e}")
                self._stats.total_errors += 1
                logger.error("ScanScheduler: {} scan of {} failed: {}", granularity, rule.resource, e)
                await self._events.emit(
                    "cleanup-error",
                    CleanupError(resource=rule.resource, granularity=granularity, error=str(e)),
                )

        run.finished_at = self._clock()
        self._stats.total_scans += 1
        self._stats.last_scan_at = run.finished_at
        self._stats.last_scan_duration_ms = run.duration_ms

        if run.records_expired > 0 or run.errors:
            logger.info(
                "ScanScheduler: {} scan expired {}/{} records across {} cohorts ({} errors)",
                granularity,
                run.records_expired,
                run.records_processed,
                len(run.cohorts),
                len(run.errors),
            )
        await self._events.emit(
            "scan-completed",
            ScanCompleted(
                granularity=granularity,
                total_expired=run.records_expired,
                total_processed=run.records_processed,
                duration_ms=run.duration_ms,
                cohorts=run.cohorts,
                resources=[rule.resource for rule in rules],
            ),
        )
        return run

    async def _scan_rule(self, rule: TTLRuleConfig, run: CleanupRun) -> None:
        granularity = rule.effective_granularity
        now = self._clock()
        current = cohort_for(now, granularity)
        cohorts = await asyncio.to_thread(
            self._index.cohorts_due, rule.resource, granularity, current
        )
        first = next(cohorts, None)
        if first is None:
            return
        if await asyncio.to_thread(
            self._index.last_processed_cohort, rule.resource, granularity
        ) is None:
            # First scan: pin the walk start so retained entries stay in range
            await asyncio.to_thread(
                self._index.mark_processed,
                rule.resource,
                granularity,
                next_cohort(first, granularity, -1),
            )

        blocked_at: str | None = None
        blocked_cohorts = 0
        for cohort in itertools.chain([first], cohorts):
            if self._stopping:
                return
            if cohort not in run.cohorts:
                run.cohorts.append(cohort)
            retained, complete = await self._drain_cohort(rule, cohort, run, now)
            if not complete:
                return
            if retained and blocked_at is None:
                blocked_at = cohort
            if blocked_at is not None:
                blocked_cohorts += 1
            elif cohort_end(cohort, granularity) <= now:
                await asyncio.to_thread(
                    self._index.mark_processed, rule.resource, granularity, cohort
                )

        if blocked_at is not None:
            run.blocked_cohorts += blocked_cohorts
            logger.warning(
                "ScanScheduler: {} progress held before {} by retained entries, "
                "{} cohorts will be walked again",
                rule.resource,
                blocked_at,
                blocked_cohorts,
            )

    async def _drain_cohort(
        self, rule: TTLRuleConfig, cohort: str, run: CleanupRun, now: datetime
    ) -> tuple[int, bool]:
        """Process every page of one cohort.

        Returns:
            (entries left in the cohort, whether every page was processed)
        """
        pages = self._index.iter_cohort(rule.resource, cohort)
        retained = 0
        while True:
            if self._stopping:
                return retained, False
            page = await asyncio.to_thread(next, pages, None)
            if page is None:
                return retained, True
            results = await self._process_page(rule, page, run, now)
            retained += sum(1 for kept in results if kept)

    async def _process_page(
        self,
        rule: TTLRuleConfig,
        page: list[ExpirationIndexEntry],
        run: CleanupRun,
        now: datetime,
    ) -> list[bool]:
        if self._config.concurrency <= 1:
            return [await self._process_entry(rule, entry, run, now) for entry in page]

        semaphore = asyncio.Semaphore(self._config.concurrency)

        async def bounded(entry: ExpirationIndexEntry) -> bool:
            async with semaphore:
                return await self._process_entry(rule, entry, run, now)

        results = await asyncio.gather(*(bounded(e) for e in page), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)

    async def _process_entry(
        self,
        rule: TTLRuleConfig,
        entry: ExpirationIndexEntry,
        run: CleanupRun,
        now: datetime,
    ) -> bool:
        """Handle one index entry. Returns True if it stays in its cohort."""
        run.records_processed += 1
        record = await asyncio.to_thread(self._store.get, rule.resource, entry.record_id)

        if record is None or (
            rule.on_expire == "soft-delete" and record.get(rule.deleted_flag_field)
        ):
            await asyncio.to_thread(self._index.remove, entry)
            run.stale_entries_removed += 1
            return False

        expires_at = self._index.compute_expiry(rule, record)
        if expires_at is None:
            logger.warning(
                "ScanScheduler: {}/{} lost its '{}' timestamp, dropping entry",
                rule.resource,
                entry.record_id,
                rule.field,
            )
            await asyncio.to_thread(self._index.remove, entry)
            run.stale_entries_removed += 1
            return False

        if expires_at > now:
            target = self._index.placement_cohort(rule, expires_at)
            if target == entry.cohort and expires_at == entry.expires_at:
                return True
            await asyncio.to_thread(self._index.relocate, entry, target, expires_at)
            logger.debug(
                "ScanScheduler: {} not due until {}, moved {} -> {}",
                entry.id,
                expires_at.isoformat(),
                entry.cohort,
                target,
            )
            return target == entry.cohort

        disposition = await self._executor.execute(rule, record)
        await self._apply_disposition(rule, entry, disposition, run, now)
        return disposition.outcome == "error"

    async def _apply_disposition(
        self,
        rule: TTLRuleConfig,
        entry: ExpirationIndexEntry,
        disposition: Disposition,
        run: CleanupRun,
        now: datetime,
    ) -> None:
        if disposition.disposed:
            await asyncio.to_thread(self._index.remove, entry)
            run.records_expired += 1
            run.count_strategy(disposition.strategy)
            self._count_disposal(disposition.strategy)
            await self._events.emit(
                "record-expired",
                RecordExpired(
                    resource=rule.resource,
                    record_id=entry.record_id,
                    strategy=disposition.strategy,
                ),
            )
            return

        if disposition.outcome == "relocated":
            granularity = rule.effective_granularity
            retry_cohort = next_cohort(
                cohort_for(now, granularity), granularity, self._config.callback_retry_cohorts
            )
            await asyncio.to_thread(self._index.relocate, entry, retry_cohort)
            run.records_relocated += 1
            self._stats.total_relocated += 1
            self._stats.total_callbacks += 1
            return

        run.errors.append(f"{entry.id}: {disposition.error}")
        self._stats.total_errors += 1
        await self._events.emit(
            "cleanup-error",
            CleanupError(
                resource=rule.resource,
                granularity=rule.effective_granularity,
                record_id=entry.record_id,
                error=disposition.error or "unknown error",
            ),
        )

    def _count_disposal(self, strategy: str) -> None:
        stats = self._stats
        stats.total_expired += 1
        if strategy == "soft-delete":
            stats.total_soft_deleted += 1
        elif strategy == "hard-delete":
            stats.total_deleted += 1
        elif strategy == "archive":
            stats.total_archived += 1
            stats.total_deleted += 1
        elif strategy == "callback":
            stats.total_callbacks += 1
            stats.total_deleted += 1
