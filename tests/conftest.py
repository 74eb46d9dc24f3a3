"""
Shared fixtures: a controllable clock and a fresh SQLite document store.
"""

from datetime import datetime, timedelta, timezone

import pytest

from cohort_ttl.store.document_store import DocumentStore

T0 = datetime(2026, 2, 16, 12, 0, 0, tzinfo=timezone.utc)  # a Monday


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: object, clock: FakeClock) -> DocumentStore:
    """Create a fresh DocumentStore with a temporary database."""
    db_path = f"{tmp_path}/test_ttl_store.db"
    s = DocumentStore(db_path=db_path, clock=clock)
    yield s  # type: ignore[misc]
    s.close()
