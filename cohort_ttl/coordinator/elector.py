"""
Coordinator election over the eventually-consistent shared store.

State machine: observing → follower | coordinator → stopped.

- observing: read-only cold start window, so instances started together (a
  rolling deploy) do not all rush to claim the lease.
- election: write a claim, wait a random jitter, re-read. Our own id wins; a
  lexicographically larger foreign id wins over us; a smaller foreign id is
  overwritten by re-asserting, for a bounded number of rounds.
- coordinator: renew every heartbeat interval. Demote on seeing a valid lease
  with a larger id, or when renewals have failed for longer than the lease TTL.
- follower: poll every heartbeat interval. A lease that is expired or whose
  heartbeat did not advance counts as a miss; after the miss threshold, run
  an election. An absent lease (released on shutdown) triggers an election
  right away.

Correctness rests on idempotent disposal, not on mutual exclusion: two
coordinators may briefly coexist after a partition or a stale read.

Usage:
    elector = CoordinatorElector(leases, "worker-a", config.coordinator,
                                 on_elected=..., on_lost=...)
    task = asyncio.create_task(elector.run())
    ...
    await elector.stop()
"""

import asyncio
import inspect
import random
from datetime import datetime, timezone
from typing import Awaitable, Callable, Literal, Union

from loguru import logger

from cohort_ttl.config import CoordinatorConfig
from cohort_ttl.coordinator.lease import LeaseManager
from cohort_ttl.store.schemas import CoordinatorLease

# ── States ──────────────────────────────────────────────────────────────────

ElectorState = Literal["observing", "follower", "coordinator", "stopped"]

VALID_TRANSITIONS: dict[str, list[str]] = {
    "observing": ["follower", "coordinator", "stopped"],
    "follower": ["coordinator", "follower", "stopped"],
    "coordinator": ["follower", "coordinator", "stopped"],
    "stopped": ["observing"],
}

StateCallback = Callable[[str], Union[None, Awaitable[None]]]


async def _notify(callback: StateCallback | None, worker_id: str) -> None:
    if callback is None:
        return
    try:
        result = callback(worker_id)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error("Elector: state callback failed: {}", e)


class CoordinatorElector:
    """Lease/heartbeat leader election for one worker.

    ``evaluate()`` runs one protocol step for the current state; ``run()``
    drives it on the heartbeat interval until ``stop()``.
    """

    def __init__(
        self,
        leases: LeaseManager,
        worker_id: str,
        config: CoordinatorConfig,
        on_elected: StateCallback | None = None,
        on_lost: StateCallback | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._leases = leases
        self._worker_id = worker_id
        self._config = config
        self._on_elected = on_elected
        self._on_lost = on_lost
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._state: ElectorState = "observing"
        self._stop_event = asyncio.Event()
        self._missed_heartbeats = 0
        self._last_seen: CoordinatorLease | None = None
        self._last_renewed_at: datetime | None = None

    # ── Properties ──────────────────────────────────────────────────

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def state(self) -> ElectorState:
        return self._state

    @property
    def is_coordinator(self) -> bool:
        return self._state == "coordinator"

    @property
    def missed_heartbeats(self) -> int:
        return self._missed_heartbeats

    # ── Lifecycle ───────────────────────────────────────────────────

    async def run(self) -> None:
        """Observe, then run one protocol step per heartbeat interval."""
        self._stop_event.clear()
        if self._state == "stopped":
            await self._transition("observing")
        logger.info(
            "Elector {}: observing lease for {}s",
            self._worker_id,
            self._config.cold_start_observation_seconds,
        )
        if await self._wait(self._config.cold_start_observation_seconds):
            return

        while not self._stop_event.is_set():
            try:
                await self.evaluate()
            except Exception as e:
                logger.error("Elector {}: protocol step failed: {}", self._worker_id, e)
            if await self._wait(self._config.heartbeat_interval_seconds):
                break

    async def stop(self) -> None:
        """Stop the protocol and release the lease if this worker holds it."""
        self._stop_event.set()
        if self._state == "stopped":
            return
        was_coordinator = self.is_coordinator
        await self._transition("stopped")
        if was_coordinator:
            try:
                await asyncio.to_thread(self._leases.release, self._worker_id)
            except Exception as e:
                logger.warning("Elector {}: lease release failed: {}", self._worker_id, e)
        logger.info("Elector {}: stopped", self._worker_id)

    async def evaluate(self) -> None:
        """Run one protocol step for the current state."""
        if self._state == "observing":
            await self.finish_observation()
        elif self._state == "coordinator":
            await self.heartbeat()
        elif self._state == "follower":
            await self.poll()

    # ── Protocol Steps ──────────────────────────────────────────────

    async def finish_observation(self) -> None:
        """Leave the cold start window: follow a valid foreign lease, else elect."""
        lease = await asyncio.to_thread(self._leases.read)
        if self._leases.is_valid(lease) and lease.worker_id != self._worker_id:
            logger.info(
                "Elector {}: lease held by {}, following", self._worker_id, lease.worker_id
            )
            self._follow(lease)
            await self._transition("follower")
            return
        await self.elect()

    async def elect(self) -> bool:
        """Claim the lease and resolve collisions by re-read and tie-break.

        Returns:
            True if this worker ended up coordinator.
        """
        for attempt in range(1, self._config.election_rounds + 1):
            await asyncio.to_thread(self._leases.acquire, self._worker_id)
            await asyncio.sleep(self._jitter())
            current = await asyncio.to_thread(self._leases.read)

            if self._stop_event.is_set():
                # Stopped mid-election: do not leave our claim behind
                if current is not None and current.worker_id == self._worker_id:
                    await asyncio.to_thread(self._leases.release, self._worker_id)
                return False
            if current is None:
                logger.debug("Elector {}: claim vanished (round {})", self._worker_id, attempt)
                continue
            if current.worker_id == self._worker_id:
                self._last_renewed_at = self._clock()
                self._missed_heartbeats = 0
                logger.info("Elector {}: elected coordinator", self._worker_id)
                await self._transition("coordinator")
                return True
            if current.worker_id > self._worker_id:
                logger.info(
                    "Elector {}: deferring to {}", self._worker_id, current.worker_id
                )
                self._follow(current)
                await self._transition("follower")
                return False
            logger.debug(
                "Elector {}: re-asserting over {} (round {})",
                self._worker_id,
                current.worker_id,
                attempt,
            )

        logger.info(
            "Elector {}: no decision after {} rounds, following",
            self._worker_id,
            self._config.election_rounds,
        )
        self._follow(await asyncio.to_thread(self._leases.read))
        await self._transition("follower")
        return False

    async def heartbeat(self) -> None:
        """Coordinator step: check for a larger-id holder, then renew."""
        now = self._clock()
        try:
            current = await asyncio.to_thread(self._leases.read)
            if (
                current is not None
                and current.worker_id > self._worker_id
                and current.is_valid(now)
            ):
                logger.warning(
                    "Elector {}: lease taken by {}, stepping down",
                    self._worker_id,
                    current.worker_id,
                )
                self._follow(current)
                await self._transition("follower")
                return
            await asyncio.to_thread(self._leases.renew, self._worker_id)
            self._last_renewed_at = now
        except Exception as e:
            logger.error("Elector {}: heartbeat failed: {}", self._worker_id, e)
            last = self._last_renewed_at or now
            if (now - last).total_seconds() >= self._leases.lease_ttl_seconds:
                logger.warning(
                    "Elector {}: no renewal for {}s, stepping down",
                    self._worker_id,
                    self._leases.lease_ttl_seconds,
                )
                self._follow(None)
                await self._transition("follower")

    async def poll(self) -> None:
        """Follower step: count missed heartbeats and re-elect at the threshold."""
        try:
            current = await asyncio.to_thread(self._leases.read)
        except Exception as e:
            logger.warning("Elector {}: lease read failed: {}", self._worker_id, e)
            self._count_miss("lease unreadable")
        else:
            if current is None:
                logger.info("Elector {}: lease released, electing", self._worker_id)
                await self.elect()
                return
            if not current.is_valid(self._clock()):
                self._count_miss(f"lease of {current.worker_id} expired")
            elif self._heartbeat_stalled(current):
                self._count_miss(f"heartbeat of {current.worker_id} not advancing")
            else:
                self._missed_heartbeats = 0
            self._last_seen = current

        if self._missed_heartbeats >= self._config.missed_heartbeat_threshold:
            logger.warning(
                "Elector {}: {} missed heartbeats, electing",
                self._worker_id,
                self._missed_heartbeats,
            )
            await self.elect()

    # ── Internal Helpers ────────────────────────────────────────────

    def _heartbeat_stalled(self, current: CoordinatorLease) -> bool:
        previous = self._last_seen
        return (
            previous is not None
            and previous.worker_id == current.worker_id
            and current.last_heartbeat_at <= previous.last_heartbeat_at
        )

    def _count_miss(self, reason: str) -> None:
        self._missed_heartbeats += 1
        logger.debug(
            "Elector {}: missed heartbeat {}/{} ({})",
            self._worker_id,
            self._missed_heartbeats,
            self._config.missed_heartbeat_threshold,
            reason,
        )

    def _follow(self, lease: CoordinatorLease | None) -> None:
        self._last_seen = lease
        self._missed_heartbeats = 0

    def _jitter(self) -> float:
        low = self._config.election_jitter_min_seconds
        high = max(low, self._config.election_jitter_max_seconds)
        return random.uniform(low, high)

    async def _transition(self, new_state: ElectorState) -> None:
        old_state = self._state
        if old_state == "stopped" and new_state != "observing":
            return
        if new_state not in VALID_TRANSITIONS[old_state]:
            raise ValueError(f"Invalid elector transition {old_state} → {new_state}")
        self._state = new_state
        if new_state == "coordinator" and old_state != "coordinator":
            await _notify(self._on_elected, self._worker_id)
        elif old_state == "coordinator" and new_state != "coordinator":
            await _notify(self._on_lost, self._worker_id)

    async def _wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if stop() was called."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True


class NoopElector:
    """Always-coordinator elector for single-instance deployments."""

    def __init__(self, worker_id: str) -> None:
        self._worker_id = worker_id
        self._state: ElectorState = "coordinator"
        self._stop_event = asyncio.Event()

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def state(self) -> ElectorState:
        return self._state

    @property
    def is_coordinator(self) -> bool:
        return self._state == "coordinator"

    async def run(self) -> None:
        self._stop_event.clear()
        self._state = "coordinator"
        await self._stop_event.wait()

    async def stop(self) -> None:
        self._stop_event.set()
        self._state = "stopped"

    async def evaluate(self) -> None:
        return None


Elector = Union[CoordinatorElector, NoopElector]
