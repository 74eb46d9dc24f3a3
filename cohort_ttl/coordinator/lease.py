"""
Coordinator lease — read / acquire / renew / release over the shared store.

The lease is a single document (id = lease key) in the lease resource. The
store offers no compare-and-swap, so acquire and renew are blind overwrites;
collisions are resolved by the elector's re-read and worker-id tie-break, and
disposal idempotence covers any brief window with two coordinators.

Usage:
    leases = LeaseManager(store, "plg_ttl_coordinator_lease", "ttl-cleanup", 15.0)
    leases.acquire("worker-a")
    lease = leases.read()
    if lease is not None and leases.is_valid(lease):
        ...
"""

from datetime import datetime, timezone
from typing import Callable

from loguru import logger

from cohort_ttl.store.document_store import DocumentStore
from cohort_ttl.store.schemas import CoordinatorLease


class LeaseManager:
    """Blind-write lease over one shared-store document."""

    def __init__(
        self,
        store: DocumentStore,
        resource: str = "plg_ttl_coordinator_lease",
        lease_key: str = "ttl-cleanup",
        lease_ttl_seconds: float = 15.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._resource = resource
        self._lease_key = lease_key
        self._lease_ttl = lease_ttl_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def lease_ttl_seconds(self) -> float:
        return self._lease_ttl

    def ensure_resource(self) -> None:
        self._store.define_resource(self._resource, partition_field="lease_key")

    def read(self) -> CoordinatorLease | None:
        doc = self._store.get(self._resource, self._lease_key)
        if doc is None:
            return None
        return CoordinatorLease.from_document(doc)

    def is_valid(self, lease: CoordinatorLease | None) -> bool:
        return lease is not None and lease.is_valid(self._clock())

    def acquire(self, worker_id: str) -> CoordinatorLease:
        """Write a fresh claim for ``worker_id``, overwriting any current lease."""
        now = self._clock()
        lease = CoordinatorLease(
            lease_key=self._lease_key,
            worker_id=worker_id,
            claimed_at=now,
            last_heartbeat_at=now,
            lease_ttl_seconds=self._lease_ttl,
        )
        self._store.put(self._resource, lease.to_document())
        logger.debug("Lease: {} claimed {}", worker_id, self._lease_key)
        return lease

    def renew(self, worker_id: str) -> CoordinatorLease:
        """Refresh ``last_heartbeat_at``, keeping ``claimed_at`` of our own claim."""
        now = self._clock()
        current = self.read()
        claimed_at = now
        if current is not None and current.worker_id == worker_id:
            claimed_at = current.claimed_at
        lease = CoordinatorLease(
            lease_key=self._lease_key,
            worker_id=worker_id,
            claimed_at=claimed_at,
            last_heartbeat_at=now,
            lease_ttl_seconds=self._lease_ttl,
        )
        self._store.put(self._resource, lease.to_document())
        return lease

    def release(self, worker_id: str) -> bool:
        """Delete the lease if ``worker_id`` holds it.

        Returns:
            True if the lease was deleted.
        """
        current = self.read()
        if current is None or current.worker_id != worker_id:
            return False
        deleted = self._store.delete(self._resource, self._lease_key)
        if deleted:
            logger.info("Lease: {} released {}", worker_id, self._lease_key)
        return deleted
