"""
Engine events and the per-engine event bus.

Each CleanupEngine owns one EventBus; there is no module-level emitter, so
several engines can run side by side in one process (and in one test).

Events:
- record-expired       RecordExpired
- scan-completed       ScanCompleted
- cleanup-error        CleanupError
- coordinator-elected  CoordinatorElected
- coordinator-lost     CoordinatorLost

Usage:
    bus = EventBus()
    bus.on("record-expired", lambda event: print(event.record_id))
    await bus.emit("record-expired", RecordExpired(resource="orders", record_id="o-1",
                                                   strategy="archive"))
"""

import inspect
from collections import defaultdict
from typing import Any, Awaitable, Callable, Literal, Union

from loguru import logger
from pydantic import BaseModel, Field

EventName = Literal[
    "record-expired",
    "scan-completed",
    "cleanup-error",
    "coordinator-elected",
    "coordinator-lost",
]

EVENT_NAMES: tuple[str, ...] = (
    "record-expired",
    "scan-completed",
    "cleanup-error",
    "coordinator-elected",
    "coordinator-lost",
)

EventHandler = Callable[[Any], Union[None, Awaitable[None]]]


# ── Payloads ────────────────────────────────────────────────────────────────


class RecordExpired(BaseModel):
    resource: str
    record_id: str
    strategy: str


class ScanCompleted(BaseModel):
    granularity: str
    total_expired: int
    total_processed: int
    duration_ms: float
    cohorts: list[str] = Field(default_factory=list)
    resources: list[str] = Field(default_factory=list)


class CleanupError(BaseModel):
    resource: str | None = None
    granularity: str | None = None
    record_id: str | None = None
    error: str


class CoordinatorElected(BaseModel):
    worker_id: str


class CoordinatorLost(BaseModel):
    worker_id: str


# ── Event Bus ───────────────────────────────────────────────────────────────


class EventBus:
    """Observer registry bound to one engine instance.

    Handlers may be plain functions or coroutine functions. A failing handler
    is logged and never affects other handlers or the emitter.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def on(self, event: str, handler: EventHandler) -> None:
        if event not in EVENT_NAMES:
            raise ValueError(f"Unknown event '{event}' (expected one of {', '.join(EVENT_NAMES)})")
        self._handlers[event].append(handler)

    def off(self, event: str, handler: EventHandler | None = None) -> None:
        """Remove one handler, or every handler of ``event`` when None."""
        if handler is None:
            self._handlers.pop(event, None)
            return
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def handler_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    async def emit(self, event: str, payload: BaseModel) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("EventBus: {} handler {} failed: {}", event, handler, e)
