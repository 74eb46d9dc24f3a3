"""
Strategy executor — applies one disposal strategy to one expired record.

Four strategies:
- soft-delete: stamp ``delete_field`` and set the deleted flag
- hard-delete: delete the record
- archive: copy into the archive resource, then delete the source
- callback: ask a registered handler; True deletes, False defers

Every strategy is idempotent, so a record handled twice (two coordinators
during a failover window, or a retried batch) ends in the same state as one
handled once. Per-record failures become an ``error`` Disposition; only
StorageUnavailableError propagates, so the scan can abort.

Usage:
    executor = StrategyExecutor(store, callbacks, record_timeout_seconds=30)
    disposition = await executor.execute(rule, record)
"""

import asyncio
import hashlib
import inspect
import json
from collections.abc import Container
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Union
from uuid import NAMESPACE_URL, uuid4, uuid5

from loguru import logger

from cohort_ttl.config import TTLRuleConfig
from cohort_ttl.store.document_store import (
    DocumentNotFoundError,
    DocumentStore,
    DocumentStoreError,
    DuplicateDocumentError,
    StorageUnavailableError,
)
from cohort_ttl.store.schemas import Disposition

CallbackHandler = Callable[[dict[str, Any]], Union[bool, Awaitable[bool]]]

_ARCHIVE_VOLATILE_FIELDS = frozenset({"id", "archived_at", "updated_at"})


class StrategyExecutionError(Exception):
    """Disposal of one record failed. Retried on the next scan."""


# ── Callback Registry ───────────────────────────────────────────────────────


class CallbackRegistry:
    """Named handlers for the callback strategy.

    Rules reference handlers by name so configuration stays serializable.

    Usage:
        registry = CallbackRegistry()
        registry.register("notify_owner", notify_owner)
    """

    def __init__(self, handlers: dict[str, CallbackHandler] | None = None) -> None:
        self._handlers: dict[str, CallbackHandler] = dict(handlers or {})

    def register(self, name: str, handler: CallbackHandler) -> None:
        if not callable(handler):
            raise TypeError(f"Callback '{name}' is not callable")
        self._handlers[name] = handler

    def unregister(self, name: str) -> None:
        self._handlers.pop(name, None)

    def get(self, name: str) -> CallbackHandler | None:
        return self._handlers.get(name)

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers


def archive_document_id(
    archived_from: str, original_id: str, generation: str | None = None
) -> str:
    """Deterministic archive id for one (source resource, record id) pair.

    ``generation`` separates copies of distinct records that reused one id.
    """
    name = f"{archived_from}:{original_id}"
    if generation:
        name = f"{name}:{generation}"
    return uuid5(NAMESPACE_URL, name).hex


def archive_digest(doc: dict[str, Any], fields: Container[str] | None = None) -> str:
    """Content digest of an archive copy, ignoring id and write timestamps.

    With ``fields``, only those keys of ``doc`` are hashed.
    """
    body = {
        k: v
        for k, v in doc.items()
        if k not in _ARCHIVE_VOLATILE_FIELDS and (fields is None or k in fields)
    }
    encoded = json.dumps(body, sort_keys=True, default=str).encode()
    return hashlib.sha256(encoded).hexdigest()[:16]


# ── Executor ────────────────────────────────────────────────────────────────


class StrategyExecutor:
    """Applies the rule's disposal strategy to expired records.

    Usage:
        executor = StrategyExecutor(store, CallbackRegistry({"keep": keep}))
        disposition = await executor.execute(rule, record)
        if disposition.disposed:
            ...
    """

    def __init__(
        self,
        store: DocumentStore,
        callbacks: CallbackRegistry | None = None,
        record_timeout_seconds: float = 30.0,
        archive_dedupe: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._callbacks = callbacks or CallbackRegistry()
        self._timeout = record_timeout_seconds
        self._archive_dedupe = archive_dedupe
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def callbacks(self) -> CallbackRegistry:
        return self._callbacks

    async def execute(self, rule: TTLRuleConfig, record: dict[str, Any]) -> Disposition:
        """Apply ``rule.on_expire`` to ``record`` within the per-record timeout.

        Raises:
            StorageUnavailableError: If the shared store is down.
        """
        try:
            return await asyncio.wait_for(self._apply(rule, record), timeout=self._timeout)
        except StorageUnavailableError:
            raise
        except asyncio.TimeoutError:
            message = f"{rule.on_expire} timed out after {self._timeout}s"
        except Exception as e:
            message = f"{type(e).__name__}: {e}"

        logger.error(
            "StrategyExecutor: {} on {}/{} failed — {}",
            rule.on_expire,
            rule.resource,
            record.get("id"),
            message,
        )
        return Disposition(outcome="error", strategy=rule.on_expire, error=message)

    async def _apply(self, rule: TTLRuleConfig, record: dict[str, Any]) -> Disposition:
        if rule.on_expire == "soft-delete":
            await asyncio.to_thread(self._soft_delete, rule, record)
        elif rule.on_expire == "hard-delete":
            await asyncio.to_thread(self._hard_delete, rule, record)
        elif rule.on_expire == "archive":
            await asyncio.to_thread(self._archive, rule, record)
        else:
            return await self._callback(rule, record)
        return Disposition(outcome="disposed", strategy=rule.on_expire)

    # ── Strategies ──────────────────────────────────────────────────

    def _soft_delete(self, rule: TTLRuleConfig, record: dict[str, Any]) -> None:
        if record.get(rule.deleted_flag_field):
            return
        try:
            self._store.update(
                rule.resource,
                str(record["id"]),
                {
                    rule.delete_field: self._clock().isoformat(),
                    rule.deleted_flag_field: True,
                },
            )
        except DocumentNotFoundError:
            logger.debug("StrategyExecutor: {}/{} already gone", rule.resource, record["id"])

    def _hard_delete(self, rule: TTLRuleConfig, record: dict[str, Any]) -> None:
        self._store.delete(rule.resource, str(record["id"]))

    def _archive(self, rule: TTLRuleConfig, record: dict[str, Any]) -> None:
        if rule.archive_resource is None:
            raise StrategyExecutionError(f"Rule {rule.resource} has no archive_resource")
        original_id = str(record["id"])

        copy = {k: v for k, v in record.items() if k != "id" and not k.startswith("_")}
        copy["archived_at"] = self._clock().isoformat()
        copy["archived_from"] = rule.resource
        if rule.keep_original_id:
            copy["original_id"] = original_id

        if not self._archive_dedupe:
            copy["id"] = uuid4().hex
            self._write_archive_copy(rule.archive_resource, copy)
        else:
            copy["id"] = archive_document_id(rule.resource, original_id)
            if not self._write_archive_copy(rule.archive_resource, copy):
                stored = self._store.get(rule.archive_resource, copy["id"])
                digest = archive_digest(copy)
                if stored is not None and archive_digest(stored, copy) != digest:
                    # A different record reused this id: keep both copies
                    copy["id"] = archive_document_id(rule.resource, original_id, digest)
                    self._write_archive_copy(rule.archive_resource, copy)

        self._store.delete(rule.resource, original_id)

    def _write_archive_copy(self, archive_resource: str, copy: dict[str, Any]) -> bool:
        """Insert one archive copy.

        Returns:
            False if a copy with the same id already exists.
        """
        try:
            self._store.insert(archive_resource, copy)
        except DuplicateDocumentError:
            logger.debug(
                "StrategyExecutor: archive copy {} already in {}", copy["id"], archive_resource
            )
            return False
        except StorageUnavailableError:
            raise
        except DocumentStoreError as e:
            raise StrategyExecutionError(
                f"Archive insert into {archive_resource} failed: {e}"
            ) from e
        return True

    async def _callback(self, rule: TTLRuleConfig, record: dict[str, Any]) -> Disposition:
        if rule.callback is None:
            raise StrategyExecutionError(f"Rule {rule.resource} has no callback")
        handler = self._callbacks.get(rule.callback)
        if handler is None:
            raise StrategyExecutionError(f"Callback '{rule.callback}' is not registered")

        if inspect.iscoroutinefunction(handler):
            result = await handler(record)
        else:
            result = await asyncio.to_thread(handler, record)
            if inspect.isawaitable(result):
                result = await result

        if not result:
            logger.debug(
                "StrategyExecutor: callback '{}' deferred {}/{}",
                rule.callback,
                rule.resource,
                record.get("id"),
            )
            return Disposition(outcome="relocated", strategy="callback")

        await asyncio.to_thread(self._hard_delete, rule, record)
        return Disposition(outcome="disposed", strategy="callback")
