"""
CleanupEngine — wires the cohort index, strategies, scan loops and election.

One engine runs per process. Every engine keeps the expiration index in sync
with writes to governed resources (store hooks); only the elected coordinator
runs scans. Statistics and the event bus belong to the engine instance, so
several engines can share one process in tests.

Usage:
    engine = CleanupEngine(config, store, callbacks={"notify": notify_owner})
    engine.on("record-expired", handle_expired)
    asyncio.create_task(engine.start())
    ...
    await engine.stop()
"""

import asyncio
import os
import socket
from collections.abc import Coroutine
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from loguru import logger

from cohort_ttl.cohort.calculator import GRANULARITIES
from cohort_ttl.config import AppConfig, ConfigurationError, TTLRuleConfig, build_config
from cohort_ttl.coordinator.elector import CoordinatorElector, Elector, NoopElector
from cohort_ttl.coordinator.lease import LeaseManager
from cohort_ttl.events import CoordinatorElected, CoordinatorLost, EventBus, EventHandler
from cohort_ttl.index.expiration_index import ExpirationIndex
from cohort_ttl.scheduler.scan_scheduler import ScanScheduler
from cohort_ttl.store.document_store import DocumentStore
from cohort_ttl.store.schemas import CleanupRun, EngineStats
from cohort_ttl.strategies.executor import CallbackHandler, CallbackRegistry, StrategyExecutor


def default_worker_id() -> str:
    """Process-unique worker id: ``hostname-pid-random``."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


class CleanupEngine:
    """Orchestrates TTL expiration for one process.

    Raises ConfigurationError at construction for invalid rules, archive
    targets missing from the store, unregistered callback handlers and invalid
    schedule expressions.

    Usage:
        engine = CleanupEngine({"rules": [{"resource": "sessions", "ttl_seconds": 300,
                                           "on_expire": "hard-delete"}]}, store)
        runs = await engine.run_cleanup()
    """

    def __init__(
        self,
        config: AppConfig | dict[str, Any],
        store: DocumentStore,
        callbacks: CallbackRegistry | dict[str, CallbackHandler] | None = None,
        worker_id: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config if isinstance(config, AppConfig) else build_config(config)
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._worker_id = worker_id or self._config.worker_id or default_worker_id()
        if isinstance(callbacks, CallbackRegistry):
            self._callbacks = callbacks
        else:
            self._callbacks = CallbackRegistry(callbacks)

        self._rules = self._managed_rules()
        self._validate_rules()

        self._events = EventBus()
        self._stats = EngineStats()
        self._running = False
        self._hooks_installed = False

        cleanup = self._config.cleanup
        store_config = self._config.store
        self._index = ExpirationIndex(
            store,
            index_resource=store_config.index_resource,
            progress_resource=store_config.progress_resource,
            batch_size=cleanup.batch_size,
            first_scan_lookback=cleanup.first_scan_lookback,
            clock=self._clock,
            worker_id=self._worker_id,
        )
        self._index.ensure_resources()

        self._executor = StrategyExecutor(
            store,
            self._callbacks,
            record_timeout_seconds=cleanup.record_timeout_seconds,
            archive_dedupe=cleanup.archive_dedupe,
            clock=self._clock,
        )
        self._elector = self._build_elector()
        self._scheduler = ScanScheduler(
            self._index,
            self._executor,
            store,
            list(self._rules.values()),
            cleanup,
            self._events,
            self._stats,
            is_coordinator=lambda: self._elector.is_coordinator,
            clock=self._clock,
            worker_id=self._worker_id,
        )
        self._install_hooks()

        logger.info(
            "CleanupEngine {}: {} rules ({}), coordinator election {}",
            self._worker_id,
            len(self._rules),
            ", ".join(self._rules) or "none",
            "enabled" if self._config.coordinator.enabled else "disabled",
        )

    # ── Setup ───────────────────────────────────────────────────────────

    def _managed_rules(self) -> dict[str, TTLRuleConfig]:
        managed: dict[str, TTLRuleConfig] = {}
        for rule in self._config.rules:
            if not self._config.cleanup.is_managed(rule.resource):
                logger.info("CleanupEngine: skipping {} (allow/block list)", rule.resource)
                continue
            managed[rule.resource] = rule
        return managed

    def _validate_rules(self) -> None:
        for rule in self._rules.values():
            if rule.on_expire == "archive" and not self._store.has_resource(
                rule.archive_resource or ""
            ):
                raise ConfigurationError(
                    f"{rule.resource}: archive resource '{rule.archive_resource}' "
                    "is not declared in the store"
                )
            if rule.on_expire == "callback" and rule.callback not in self._callbacks:
                raise ConfigurationError(
                    f"{rule.resource}: callback '{rule.callback}' is not registered"
                )

    def _build_elector(self) -> Elector:
        coordinator = self._config.coordinator
        if not coordinator.enabled:
            return NoopElector(self._worker_id)
        leases = LeaseManager(
            self._store,
            resource=self._config.store.lease_resource,
            lease_key=coordinator.lease_key,
            lease_ttl_seconds=coordinator.effective_lease_ttl,
            clock=self._clock,
        )
        leases.ensure_resource()
        return CoordinatorElector(
            leases,
            self._worker_id,
            coordinator,
            on_elected=self._on_elected,
            on_lost=self._on_lost,
            clock=self._clock,
        )

    def _install_hooks(self) -> None:
        if self._hooks_installed:
            return
        for resource in self._rules:
            self._store.add_hook(resource, "insert", self._on_record_written)
            self._store.add_hook(resource, "update", self._on_record_written)
            self._store.add_hook(resource, "delete", self._on_record_deleted)
        self._hooks_installed = True

    def _remove_hooks(self) -> None:
        for resource in self._rules:
            self._store.remove_hook(resource, "insert", self._on_record_written)
            self._store.remove_hook(resource, "update", self._on_record_written)
            self._store.remove_hook(resource, "delete", self._on_record_deleted)
        self._hooks_installed = False

    # ── Properties ──────────────────────────────────────────────────────

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def is_coordinator(self) -> bool:
        return self._elector.is_coordinator

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def rules(self) -> dict[str, TTLRuleConfig]:
        return dict(self._rules)

    @property
    def index(self) -> ExpirationIndex:
        return self._index

    @property
    def elector(self) -> Elector:
        return self._elector

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def start(self) -> None:
        """Run election and scan loops until stop()."""
        self._install_hooks()
        self._running = True
        logger.info("CleanupEngine {}: starting", self._worker_id)
        tasks: list[Coroutine[Any, Any, None]] = [
            self._elector.run(),
            self._scheduler.start(),
        ]
        await asyncio.gather(*tasks)

    async def stop(self) -> None:
        """Let scans finish their current batch, then release the lease."""
        logger.info("CleanupEngine {}: stopping", self._worker_id)
        self._running = False
        await self._scheduler.stop()
        await self._elector.stop()
        self._remove_hooks()
        logger.info("CleanupEngine {}: stopped cleanly", self._worker_id)

    # ── Events & Callbacks ──────────────────────────────────────────────

    def on(self, event: str, handler: EventHandler) -> None:
        self._events.on(event, handler)

    def off(self, event: str, handler: EventHandler | None = None) -> None:
        self._events.off(event, handler)

    def register_callback(self, name: str, handler: CallbackHandler) -> None:
        self._callbacks.register(name, handler)

    async def _on_elected(self, worker_id: str) -> None:
        logger.info("CleanupEngine {}: became coordinator", worker_id)
        await self._events.emit("coordinator-elected", CoordinatorElected(worker_id=worker_id))

    async def _on_lost(self, worker_id: str) -> None:
        logger.warning("CleanupEngine {}: no longer coordinator", worker_id)
        await self._events.emit("coordinator-lost", CoordinatorLost(worker_id=worker_id))

    # ── Store Hooks ─────────────────────────────────────────────────────

    def _on_record_written(self, resource: str, doc: dict[str, Any]) -> None:
        rule = self._rules.get(resource)
        if rule is None:
            return
        try:
            self._index.upsert(rule, doc)
        except Exception as e:
            self._stats.total_errors += 1
            logger.error(
                "CleanupEngine: indexing {}/{} failed: {}", resource, doc.get("id"), e
            )

    def _on_record_deleted(self, resource: str, doc: dict[str, Any]) -> None:
        try:
            self._index.remove_record(resource, str(doc["id"]))
        except Exception as e:
            self._stats.total_errors += 1
            logger.error(
                "CleanupEngine: unindexing {}/{} failed: {}", resource, doc.get("id"), e
            )

    # ── Manual Runs ─────────────────────────────────────────────────────

    async def run_cleanup(self) -> list[CleanupRun]:
        """Scan every granularity now, bypassing schedules.

        Still coordinator-gated: returns an empty list on followers.
        """
        if not self.is_coordinator:
            logger.info("CleanupEngine {}: not coordinator, manual cleanup skipped", self._worker_id)
            return []
        runs: list[CleanupRun] = []
        for granularity in GRANULARITIES:
            if not self._scheduler.rules_for(granularity):
                continue
            run = await self._scheduler.run_scan(granularity, wait=True)
            if run is not None:
                runs.append(run)
        return runs

    async def cleanup_resource(self, resource: str) -> CleanupRun | None:
        """Scan one governed resource now.

        Raises:
            ConfigurationError: If no managed rule covers ``resource``.
        """
        rule = self._rules.get(resource)
        if rule is None:
            raise ConfigurationError(f"No TTL rule for resource '{resource}'")
        if not self.is_coordinator:
            logger.info(
                "CleanupEngine {}: not coordinator, cleanup of {} skipped",
                self._worker_id,
                resource,
            )
            return None
        return await self._scheduler.run_scan(
            rule.effective_granularity, rules=[rule], wait=True
        )

    # ── Stats ───────────────────────────────────────────────────────────

    def get_stats(self) -> dict[str, Any]:
        stats = self._stats.model_dump()
        stats.update(
            {
                "resources": list(self._rules),
                "is_running": self._running,
                "is_coordinator": self.is_coordinator,
                "coordinator_state": self._elector.state,
                "worker_id": self._worker_id,
                "schedules": {
                    g: state.model_dump()
                    for g, state in self._scheduler.schedule_states().items()
                },
            }
        )
        return stats
