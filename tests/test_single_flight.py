"""
Tests for the single-flight coordinator.
"""

import asyncio

import pytest

from verified_programs.core.errors import DuplicateInProgress
from verified_programs.models.schemas import JobState
from verified_programs.services.single_flight import SingleFlightCoordinator, lock_key

from tests.conftest import PROGRAM_ID


class TestLock:
    @pytest.mark.asyncio
    async def test_second_acquire_is_refused_until_release(self, coordinator):
        first = await coordinator.acquire(PROGRAM_ID)
        second = await coordinator.acquire(PROGRAM_ID)

        assert first.acquired and first.owns_build
        assert not second.acquired and not second.owns_build
        assert await coordinator.is_held(PROGRAM_ID)

        assert await coordinator.release(first)
        third = await coordinator.acquire(PROGRAM_ID)
        assert third.acquired

    @pytest.mark.asyncio
    async def test_only_owner_releases(self, coordinator, cache):
        owner = await coordinator.acquire(PROGRAM_ID)
        intruder = await coordinator.acquire(PROGRAM_ID)

        assert not await coordinator.release(intruder)
        assert await coordinator.is_held(PROGRAM_ID)
        assert cache.store[lock_key(PROGRAM_ID)] == owner.token

    @pytest.mark.asyncio
    async def test_expired_lock_is_not_deleted_by_old_owner(self, coordinator, cache):
        old = await coordinator.acquire(PROGRAM_ID)
        # Simulate expiry followed by a new owner
        await cache.delete(lock_key(PROGRAM_ID))
        new = await coordinator.acquire(PROGRAM_ID)

        assert not await coordinator.release(old)
        assert cache.store[lock_key(PROGRAM_ID)] == new.token

    @pytest.mark.asyncio
    async def test_extend_only_while_owned(self, coordinator, cache):
        old = await coordinator.acquire(PROGRAM_ID)
        assert await coordinator.extend(old)

        await cache.delete(lock_key(PROGRAM_ID))
        new = await coordinator.acquire(PROGRAM_ID)
        assert not await coordinator.extend(old)
        assert await coordinator.extend(new)

        await coordinator.release(new)
        assert not await coordinator.extend(new)

    @pytest.mark.asyncio
    async def test_keep_alive_outlives_ttl(self, cache):
        coordinator = SingleFlightCoordinator(cache, lock_ttl=1, state_ttl=60)
        lease = await coordinator.acquire(PROGRAM_ID)
        renewal = asyncio.create_task(coordinator.keep_alive(lease))

        await asyncio.sleep(1.5)
        assert await coordinator.is_held(PROGRAM_ID)

        await coordinator.release(lease)
        await asyncio.wait_for(renewal, timeout=2)
        assert not await coordinator.is_held(PROGRAM_ID)

    @pytest.mark.asyncio
    async def test_keep_alive_stops_when_lock_is_lost(self, cache):
        coordinator = SingleFlightCoordinator(cache, lock_ttl=1, state_ttl=60)
        lease = await coordinator.acquire(PROGRAM_ID)
        await cache.delete(lock_key(PROGRAM_ID))

        await asyncio.wait_for(coordinator.keep_alive(lease), timeout=2)
        assert not await coordinator.is_held(PROGRAM_ID)

    @pytest.mark.asyncio
    async def test_release_twice_is_harmless(self, coordinator):
        lease = await coordinator.acquire(PROGRAM_ID)
        assert await coordinator.release(lease)
        assert not await coordinator.release(lease)

    @pytest.mark.asyncio
    async def test_claim_reports_running_build(self, coordinator):
        await coordinator.claim(PROGRAM_ID)
        await coordinator.set_state(PROGRAM_ID, JobState.BUILDING)

        with pytest.raises(DuplicateInProgress) as exc_info:
            await coordinator.claim(PROGRAM_ID)
        assert exc_info.value.state == "building"
        assert exc_info.value.program_id == PROGRAM_ID

    @pytest.mark.asyncio
    async def test_cache_outage_degrades_to_no_dedup(self, coordinator, cache, metrics):
        cache.down = True
        lease = await coordinator.acquire(PROGRAM_ID)

        assert lease.degraded
        assert lease.owns_build
        assert not await coordinator.release(lease)
        assert metrics.registry.get_sample_value('verified_programs_lock_degraded_total') == 1


class TestJobState:
    @pytest.mark.asyncio
    async def test_state_round_trip(self, coordinator):
        await coordinator.set_state(PROGRAM_ID, JobState.FAILED, reason="timeout")
        state = await coordinator.get_state(PROGRAM_ID)

        assert state["state"] == "failed"
        assert state["reason"] == "timeout"
        assert "updated_at" in state

    @pytest.mark.asyncio
    async def test_missing_state_is_unknown(self, coordinator, cache):
        assert await coordinator.get_state(PROGRAM_ID) is None
        cache.down = True
        assert await coordinator.get_state(PROGRAM_ID) is None
