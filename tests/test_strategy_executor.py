"""
Tests for cohort_ttl/strategies/executor.py — the four disposal strategies.

Each strategy is applied twice in places to check idempotence: a second
coordinator handling the same record must not change the end state.
"""

import asyncio
from typing import Any
from unittest.mock import patch

import pytest

from conftest import FakeClock
from cohort_ttl.config import TTLRuleConfig
from cohort_ttl.store.document_store import DocumentStore, StorageUnavailableError
from cohort_ttl.strategies.executor import (
    CallbackRegistry,
    StrategyExecutor,
    archive_document_id,
)

# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def callbacks() -> CallbackRegistry:
    return CallbackRegistry()


@pytest.fixture
def executor(
    store: DocumentStore, callbacks: CallbackRegistry, clock: FakeClock
) -> StrategyExecutor:
    return StrategyExecutor(store, callbacks, record_timeout_seconds=1.0, clock=clock)


@pytest.fixture
def archive_rule() -> TTLRuleConfig:
    return TTLRuleConfig(
        resource="orders",
        ttl_seconds=86400,
        on_expire="archive",
        archive_resource="archive_orders",
        keep_original_id=True,
    )


def _callback_rule(name: str = "review") -> TTLRuleConfig:
    return TTLRuleConfig(resource="invoices", ttl_seconds=60, on_expire="callback", callback=name)


# ── Soft Delete ─────────────────────────────────────────────────────────────


class TestSoftDelete:
    """Tests for the soft-delete strategy."""

    @pytest.fixture
    def rule(self) -> TTLRuleConfig:
        return TTLRuleConfig(resource="users", ttl_seconds=1800, on_expire="soft-delete")

    async def test_marks_deleted_and_keeps_fields(
        self,
        executor: StrategyExecutor,
        store: DocumentStore,
        rule: TTLRuleConfig,
        clock: FakeClock,
    ) -> None:
        record = store.insert("users", {"id": "u-1", "name": "Ada"})
        disposition = await executor.execute(rule, record)

        assert disposition.disposed
        assert disposition.strategy == "soft-delete"
        stored = store.get("users", "u-1")
        assert stored["is_deleted"] is True
        assert stored["deleted_at"] == clock().isoformat()
        assert stored["name"] == "Ada"

    async def test_custom_fields(self, executor: StrategyExecutor, store: DocumentStore) -> None:
        rule = TTLRuleConfig(
            resource="users",
            ttl_seconds=1800,
            on_expire="soft-delete",
            delete_field="removed_on",
            deleted_flag_field="removed",
        )
        record = store.insert("users", {"id": "u-1"})
        await executor.execute(rule, record)
        stored = store.get("users", "u-1")
        assert stored["removed"] is True
        assert "removed_on" in stored
        assert "is_deleted" not in stored

    async def test_already_flagged_is_noop(
        self, executor: StrategyExecutor, store: DocumentStore, rule: TTLRuleConfig
    ) -> None:
        record = store.insert("users", {"id": "u-1", "is_deleted": True})
        with patch.object(store, "update", wraps=store.update) as update:
            disposition = await executor.execute(rule, record)
        assert disposition.disposed
        update.assert_not_called()

    async def test_missing_record_counts_as_disposed(
        self, executor: StrategyExecutor, rule: TTLRuleConfig
    ) -> None:
        disposition = await executor.execute(rule, {"id": "ghost"})
        assert disposition.disposed


# ── Hard Delete ─────────────────────────────────────────────────────────────


class TestHardDelete:
    """Tests for the hard-delete strategy."""

    @pytest.fixture
    def rule(self) -> TTLRuleConfig:
        return TTLRuleConfig(resource="sessions", ttl_seconds=300, on_expire="hard-delete")

    async def test_deletes_record(
        self, executor: StrategyExecutor, store: DocumentStore, rule: TTLRuleConfig
    ) -> None:
        record = store.insert("sessions", {"id": "s-1"})
        disposition = await executor.execute(rule, record)
        assert disposition.disposed
        assert store.get("sessions", "s-1") is None

    async def test_repeat_is_success(
        self, executor: StrategyExecutor, store: DocumentStore, rule: TTLRuleConfig
    ) -> None:
        record = store.insert("sessions", {"id": "s-1"})
        await executor.execute(rule, record)
        disposition = await executor.execute(rule, record)
        assert disposition.disposed

    async def test_storage_failure_propagates(
        self, executor: StrategyExecutor, store: DocumentStore, rule: TTLRuleConfig
    ) -> None:
        record = store.insert("sessions", {"id": "s-1"})
        store.close()
        with pytest.raises(StorageUnavailableError):
            await executor.execute(rule, record)


# ── Archive ─────────────────────────────────────────────────────────────────


class TestArchive:
    """Tests for the archive strategy."""

    async def test_copies_then_deletes_source(
        self,
        executor: StrategyExecutor,
        store: DocumentStore,
        archive_rule: TTLRuleConfig,
        clock: FakeClock,
    ) -> None:
        record = store.insert("orders", {"id": "o-1", "total": 12.5, "_etag": "abc"})
        disposition = await executor.execute(archive_rule, record)

        assert disposition.disposed
        assert store.get("orders", "o-1") is None
        archived = store.list_all("archive_orders")
        assert len(archived) == 1
        copy = archived[0]
        assert copy["original_id"] == "o-1"
        assert copy["archived_from"] == "orders"
        assert copy["archived_at"] == clock().isoformat()
        assert copy["total"] == 12.5
        assert "_etag" not in copy
        assert copy["id"] == archive_document_id("orders", "o-1")

    async def test_original_id_only_when_requested(
        self, executor: StrategyExecutor, store: DocumentStore
    ) -> None:
        rule = TTLRuleConfig(
            resource="orders", ttl_seconds=86400, on_expire="archive", archive_resource="archive_orders"
        )
        record = store.insert("orders", {"id": "o-1"})
        await executor.execute(rule, record)
        assert "original_id" not in store.list_all("archive_orders")[0]

    async def test_retried_archive_does_not_duplicate(
        self, executor: StrategyExecutor, store: DocumentStore, archive_rule: TTLRuleConfig
    ) -> None:
        record = store.insert("orders", {"id": "o-1", "total": 12.5})
        first = await executor.execute(archive_rule, record)
        second = await executor.execute(archive_rule, record)
        assert first.disposed and second.disposed
        assert store.count("archive_orders") == 1

    async def test_reused_id_archives_each_record(
        self,
        executor: StrategyExecutor,
        store: DocumentStore,
        archive_rule: TTLRuleConfig,
        clock: FakeClock,
    ) -> None:
        first = store.insert("orders", {"id": "o-1", "total": 1})
        await executor.execute(archive_rule, first)
        clock.advance(60)
        second = store.insert("orders", {"id": "o-1", "total": 999})
        disposition = await executor.execute(archive_rule, second)

        assert disposition.disposed
        assert store.get("orders", "o-1") is None
        archived = store.list_all("archive_orders")
        assert sorted(copy["total"] for copy in archived) == [1, 999]
        assert {copy["original_id"] for copy in archived} == {"o-1"}

        # Retrying the second record finds its copy and writes nothing new
        await executor.execute(archive_rule, second)
        assert store.count("archive_orders") == 2

    async def test_dedupe_off_writes_fresh_copies(
        self,
        store: DocumentStore,
        callbacks: CallbackRegistry,
        archive_rule: TTLRuleConfig,
        clock: FakeClock,
    ) -> None:
        executor = StrategyExecutor(store, callbacks, archive_dedupe=False, clock=clock)
        record = store.insert("orders", {"id": "o-1"})
        await executor.execute(archive_rule, record)
        await executor.execute(archive_rule, record)
        assert store.count("archive_orders") == 2

    async def test_archive_insert_failure_keeps_source(
        self, executor: StrategyExecutor, store: DocumentStore, archive_rule: TTLRuleConfig
    ) -> None:
        record = store.insert("orders", {"id": "o-1"})
        with patch.object(store, "insert", side_effect=RuntimeError("disk full")):
            disposition = await executor.execute(archive_rule, record)
        assert disposition.outcome == "error"
        assert "disk full" in disposition.error
        assert store.get("orders", "o-1") is not None

    async def test_missing_archive_target_is_an_error(
        self, executor: StrategyExecutor, store: DocumentStore, archive_rule: TTLRuleConfig
    ) -> None:
        rule = archive_rule.model_copy(update={"archive_resource": None})
        record = store.insert("orders", {"id": "o-1"})
        disposition = await executor.execute(rule, record)
        assert disposition.outcome == "error"
        assert "no archive_resource" in disposition.error
        assert store.get("orders", "o-1") is not None


# ── Callback ────────────────────────────────────────────────────────────────


class TestCallback:
    """Tests for the callback strategy and CallbackRegistry."""

    async def test_true_deletes(
        self, executor: StrategyExecutor, store: DocumentStore, callbacks: CallbackRegistry
    ) -> None:
        seen: list[dict[str, Any]] = []

        def review(record: dict[str, Any]) -> bool:
            seen.append(record)
            return True

        callbacks.register("review", review)
        record = store.insert("invoices", {"id": "i-1"})
        disposition = await executor.execute(_callback_rule(), record)

        assert disposition.disposed
        assert disposition.strategy == "callback"
        assert seen[0]["id"] == "i-1"
        assert store.get("invoices", "i-1") is None

    async def test_false_defers(
        self, executor: StrategyExecutor, store: DocumentStore, callbacks: CallbackRegistry
    ) -> None:
        callbacks.register("review", lambda record: False)
        record = store.insert("invoices", {"id": "i-1"})
        disposition = await executor.execute(_callback_rule(), record)
        assert disposition.outcome == "relocated"
        assert store.get("invoices", "i-1") is not None

    async def test_async_handler(
        self, executor: StrategyExecutor, store: DocumentStore, callbacks: CallbackRegistry
    ) -> None:
        async def review(record: dict[str, Any]) -> bool:
            await asyncio.sleep(0)
            return True

        callbacks.register("review", review)
        record = store.insert("invoices", {"id": "i-1"})
        disposition = await executor.execute(_callback_rule(), record)
        assert disposition.disposed

    async def test_handler_exception_is_error(
        self, executor: StrategyExecutor, store: DocumentStore, callbacks: CallbackRegistry
    ) -> None:
        def review(record: dict[str, Any]) -> bool:
            raise ValueError("upstream refused")

        callbacks.register("review", review)
        record = store.insert("invoices", {"id": "i-1"})
        disposition = await executor.execute(_callback_rule(), record)
        assert disposition.outcome == "error"
        assert "upstream refused" in disposition.error
        assert store.get("invoices", "i-1") is not None

    async def test_unregistered_handler_is_error(
        self, executor: StrategyExecutor, store: DocumentStore
    ) -> None:
        record = store.insert("invoices", {"id": "i-1"})
        disposition = await executor.execute(_callback_rule("missing"), record)
        assert disposition.outcome == "error"
        assert "not registered" in disposition.error

    async def test_rule_without_handler_name_is_error(
        self, executor: StrategyExecutor, store: DocumentStore
    ) -> None:
        rule = _callback_rule().model_copy(update={"callback": None})
        record = store.insert("invoices", {"id": "i-1"})
        disposition = await executor.execute(rule, record)
        assert disposition.outcome == "error"
        assert "has no callback" in disposition.error
        assert store.get("invoices", "i-1") is not None

    async def test_timeout_is_error(
        self, store: DocumentStore, callbacks: CallbackRegistry, clock: FakeClock
    ) -> None:
        async def stall(record: dict[str, Any]) -> bool:
            await asyncio.sleep(5)
            return True

        callbacks.register("review", stall)
        executor = StrategyExecutor(store, callbacks, record_timeout_seconds=0.05, clock=clock)
        record = store.insert("invoices", {"id": "i-1"})
        disposition = await executor.execute(_callback_rule(), record)
        assert disposition.outcome == "error"
        assert "timed out" in disposition.error

    def test_registry(self) -> None:
        registry = CallbackRegistry({"a": lambda r: True})
        registry.register("b", lambda r: False)
        assert "a" in registry
        assert registry.names() == ["a", "b"]
        registry.unregister("a")
        assert "a" not in registry
        with pytest.raises(TypeError):
            registry.register("c", "not callable")  # type: ignore[arg-type]
