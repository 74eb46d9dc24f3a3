"""
Tests for cohort_ttl/coordinator/ — LeaseManager and CoordinatorElector.

Protocol steps are driven explicitly through evaluate()/elect()/heartbeat()/
poll() with a fake clock, so timing-dependent behaviour is deterministic.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from conftest import T0, FakeClock
from cohort_ttl.config import CoordinatorConfig
from cohort_ttl.coordinator.elector import CoordinatorElector, NoopElector
from cohort_ttl.coordinator.lease import LeaseManager
from cohort_ttl.store.document_store import DocumentStore, StorageUnavailableError

# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def coordinator_config() -> CoordinatorConfig:
    return CoordinatorConfig(
        heartbeat_interval_seconds=5,
        cold_start_observation_seconds=0,
        missed_heartbeat_threshold=3,
        election_jitter_min_seconds=0,
        election_jitter_max_seconds=0,
    )


@pytest.fixture
def leases(store: DocumentStore, clock: FakeClock) -> LeaseManager:
    manager = LeaseManager(store, lease_ttl_seconds=15.0, clock=clock)
    manager.ensure_resource()
    return manager


def _elector(
    leases: LeaseManager,
    worker_id: str,
    config: CoordinatorConfig,
    clock: FakeClock,
) -> CoordinatorElector:
    return CoordinatorElector(
        leases,
        worker_id,
        config,
        on_elected=AsyncMock(),
        on_lost=AsyncMock(),
        clock=clock,
    )


# ── LeaseManager ────────────────────────────────────────────────────────────


class TestLeaseManager:
    """Tests for LeaseManager read/acquire/renew/release."""

    def test_no_lease_initially(self, leases: LeaseManager) -> None:
        assert leases.read() is None
        assert not leases.is_valid(leases.read())

    def test_acquire_and_read(self, leases: LeaseManager) -> None:
        leases.acquire("worker-a")
        lease = leases.read()
        assert lease.worker_id == "worker-a"
        assert lease.claimed_at == T0
        assert lease.last_heartbeat_at == T0
        assert lease.lease_ttl_seconds == 15.0

    def test_validity_window(self, leases: LeaseManager, clock: FakeClock) -> None:
        leases.acquire("worker-a")
        clock.advance(14)
        assert leases.is_valid(leases.read())
        clock.advance(1)
        assert not leases.is_valid(leases.read())

    def test_renew_keeps_claimed_at(self, leases: LeaseManager, clock: FakeClock) -> None:
        leases.acquire("worker-a")
        clock.advance(5)
        leases.renew("worker-a")
        lease = leases.read()
        assert lease.claimed_at == T0
        assert lease.last_heartbeat_at == clock()

    def test_acquire_overwrites_blindly(self, leases: LeaseManager) -> None:
        leases.acquire("worker-a")
        leases.acquire("worker-b")
        assert leases.read().worker_id == "worker-b"

    def test_release_only_by_holder(self, leases: LeaseManager) -> None:
        leases.acquire("worker-a")
        assert leases.release("worker-b") is False
        assert leases.read() is not None
        assert leases.release("worker-a") is True
        assert leases.read() is None


# ── Election ────────────────────────────────────────────────────────────────


class TestElection:
    """Tests for cold start and the claim / re-read / tie-break election."""

    async def test_single_instance_becomes_coordinator(
        self, leases: LeaseManager, coordinator_config: CoordinatorConfig, clock: FakeClock
    ) -> None:
        elector = _elector(leases, "worker-a", coordinator_config, clock)
        assert elector.state == "observing"
        await elector.evaluate()
        assert elector.is_coordinator
        assert leases.read().worker_id == "worker-a"
        elector._on_elected.assert_awaited_once_with("worker-a")

    async def test_valid_foreign_lease_makes_follower(
        self, leases: LeaseManager, coordinator_config: CoordinatorConfig, clock: FakeClock
    ) -> None:
        leases.acquire("worker-0")
        elector = _elector(leases, "worker-z", coordinator_config, clock)
        await elector.evaluate()
        assert elector.state == "follower"
        assert leases.read().worker_id == "worker-0"

    async def test_expired_lease_is_taken_over(
        self, leases: LeaseManager, coordinator_config: CoordinatorConfig, clock: FakeClock
    ) -> None:
        leases.acquire("worker-z")
        clock.advance(20)
        elector = _elector(leases, "worker-a", coordinator_config, clock)
        await elector.evaluate()
        assert elector.is_coordinator

    async def test_defers_to_larger_worker_id(
        self, leases: LeaseManager, coordinator_config: CoordinatorConfig, clock: FakeClock
    ) -> None:
        elector = _elector(leases, "worker-a", coordinator_config, clock)
        original_acquire = leases.acquire

        def racing_acquire(worker_id: str):
            lease = original_acquire(worker_id)
            original_acquire("worker-b")  # concurrent claim lands after ours
            return lease

        with patch.object(leases, "acquire", side_effect=racing_acquire):
            won = await elector.elect()
        assert won is False
        assert elector.state == "follower"

    async def test_reasserts_over_smaller_worker_id(
        self, leases: LeaseManager, coordinator_config: CoordinatorConfig, clock: FakeClock
    ) -> None:
        elector = _elector(leases, "worker-b", coordinator_config, clock)
        original_acquire = leases.acquire
        calls = 0

        def racing_acquire(worker_id: str):
            nonlocal calls
            calls += 1
            lease = original_acquire(worker_id)
            if calls == 1:
                original_acquire("worker-a")
            return lease

        with patch.object(leases, "acquire", side_effect=racing_acquire):
            won = await elector.elect()
        assert won is True
        assert calls == 2
        assert leases.read().worker_id == "worker-b"

    async def test_two_instances_converge_on_one_coordinator(
        self, leases: LeaseManager, coordinator_config: CoordinatorConfig, clock: FakeClock
    ) -> None:
        """Two workers leaving cold start together end with exactly one lease holder."""
        a = _elector(leases, "worker-a", coordinator_config, clock)
        b = _elector(leases, "worker-b", coordinator_config, clock)

        await asyncio.gather(a.evaluate(), b.evaluate())
        clock.advance(5)
        await asyncio.gather(a.evaluate(), b.evaluate())

        coordinators = [e.worker_id for e in (a, b) if e.is_coordinator]
        assert coordinators == ["worker-b"]
        assert a.state == "follower"
        assert leases.read().worker_id == "worker-b"


# ── Heartbeat & Failover ────────────────────────────────────────────────────


class TestHeartbeat:
    """Tests for coordinator renewal, follower polling and failover."""

    async def test_coordinator_renews(
        self, leases: LeaseManager, coordinator_config: CoordinatorConfig, clock: FakeClock
    ) -> None:
        elector = _elector(leases, "worker-a", coordinator_config, clock)
        await elector.evaluate()
        clock.advance(5)
        await elector.evaluate()
        assert leases.read().last_heartbeat_at == clock()
        assert leases.read().claimed_at == T0

    async def test_coordinator_steps_down_for_larger_id(
        self, leases: LeaseManager, coordinator_config: CoordinatorConfig, clock: FakeClock
    ) -> None:
        elector = _elector(leases, "worker-a", coordinator_config, clock)
        await elector.evaluate()
        leases.acquire("worker-b")
        await elector.evaluate()
        assert elector.state == "follower"
        elector._on_lost.assert_awaited_once_with("worker-a")

    async def test_coordinator_overrides_smaller_id(
        self, leases: LeaseManager, coordinator_config: CoordinatorConfig, clock: FakeClock
    ) -> None:
        elector = _elector(leases, "worker-b", coordinator_config, clock)
        await elector.evaluate()
        leases.acquire("worker-a")
        await elector.evaluate()
        assert elector.is_coordinator
        assert leases.read().worker_id == "worker-b"

    async def test_coordinator_steps_down_when_renewals_fail(
        self, leases: LeaseManager, coordinator_config: CoordinatorConfig, clock: FakeClock
    ) -> None:
        elector = _elector(leases, "worker-a", coordinator_config, clock)
        await elector.evaluate()
        with patch.object(leases, "read", side_effect=StorageUnavailableError("down")):
            clock.advance(5)
            await elector.evaluate()
            assert elector.is_coordinator
            clock.advance(10)
            await elector.evaluate()
        assert elector.state == "follower"

    async def test_follower_takes_over_after_missed_heartbeats(
        self, leases: LeaseManager, coordinator_config: CoordinatorConfig, clock: FakeClock
    ) -> None:
        leader = _elector(leases, "worker-z", coordinator_config, clock)
        follower = _elector(leases, "worker-a", coordinator_config, clock)
        await leader.evaluate()
        await follower.evaluate()
        assert follower.state == "follower"

        # Leader stops heartbeating
        for expected_misses in (1, 2):
            clock.advance(5)
            await follower.evaluate()
            assert follower.missed_heartbeats == expected_misses
            assert follower.state == "follower"

        clock.advance(5)
        await follower.evaluate()
        assert follower.is_coordinator
        assert leases.read().worker_id == "worker-a"
        follower._on_elected.assert_awaited_once_with("worker-a")

    async def test_advancing_heartbeat_resets_misses(
        self, leases: LeaseManager, coordinator_config: CoordinatorConfig, clock: FakeClock
    ) -> None:
        leader = _elector(leases, "worker-z", coordinator_config, clock)
        follower = _elector(leases, "worker-a", coordinator_config, clock)
        await leader.evaluate()
        await follower.evaluate()

        for _ in range(5):
            clock.advance(5)
            await follower.evaluate()
            await leader.evaluate()
            clock.advance(1)
            await follower.evaluate()
            assert follower.missed_heartbeats == 0

        assert follower.state == "follower"
        assert leader.is_coordinator

    async def test_released_lease_triggers_election(
        self, leases: LeaseManager, coordinator_config: CoordinatorConfig, clock: FakeClock
    ) -> None:
        leader = _elector(leases, "worker-z", coordinator_config, clock)
        follower = _elector(leases, "worker-a", coordinator_config, clock)
        await leader.evaluate()
        await follower.evaluate()

        await leader.stop()
        assert leases.read() is None
        leader._on_lost.assert_awaited_once_with("worker-z")

        clock.advance(5)
        await follower.evaluate()
        assert follower.is_coordinator


# ── Lifecycle ───────────────────────────────────────────────────────────────


class TestLifecycle:
    """Tests for run() / stop()."""

    async def test_run_and_stop(
        self, leases: LeaseManager, coordinator_config: CoordinatorConfig, clock: FakeClock
    ) -> None:
        config = coordinator_config.model_copy(update={"heartbeat_interval_seconds": 0.01})
        elector = _elector(leases, "worker-a", config, clock)
        task = asyncio.create_task(elector.run())
        await asyncio.sleep(0.1)
        assert elector.is_coordinator

        await elector.stop()
        await asyncio.wait_for(task, timeout=1.0)
        assert elector.state == "stopped"
        assert leases.read() is None

    async def test_follower_stop_keeps_foreign_lease(
        self, leases: LeaseManager, coordinator_config: CoordinatorConfig, clock: FakeClock
    ) -> None:
        leases.acquire("worker-z")
        elector = _elector(leases, "worker-a", coordinator_config, clock)
        await elector.evaluate()
        await elector.stop()
        assert leases.read().worker_id == "worker-z"
        elector._on_lost.assert_not_awaited()

    async def test_noop_elector_is_always_coordinator(self) -> None:
        elector = NoopElector("solo")
        assert elector.is_coordinator
        task = asyncio.create_task(elector.run())
        await asyncio.sleep(0)
        await elector.stop()
        await asyncio.wait_for(task, timeout=1.0)
        assert not elector.is_coordinator
