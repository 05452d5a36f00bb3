"""
Single-Flight Coordinator

Mutual exclusion per program id backed by the shared Redis cache, so at most
one build per program is in flight across every API instance.

- acquire:  SET lock:{program_id} <token> NX EX ttl
- release:  compare-and-delete (only the owner token removes the key)
- renew:    compare-and-pexpire, repeated every third of the ttl while the build runs
- job state: job:{program_id} -> {"state", "updated_at", "reason"} with a TTL

When Redis cannot be reached the coordinator degrades to "no dedup": the
lease is handed out as ``degraded`` and the build proceeds. The Hash Store's
attempt check keeps the durable record correct in that case.
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from loguru import logger

from verified_programs.core.config import settings
from verified_programs.core.errors import DuplicateInProgress
from verified_programs.models.schemas import JobState

LOCK_PREFIX = "lock:"
JOB_PREFIX = "job:"


def lock_key(program_id: str) -> str:
    return f"{LOCK_PREFIX}{program_id}"


def job_key(program_id: str) -> str:
    return f"{JOB_PREFIX}{program_id}"


@dataclass
class Lease:
    """Result of a lock acquisition attempt."""
    program_id: str
    token: str
    acquired: bool
    degraded: bool = False
    released: bool = False

    @property
    def owns_build(self) -> bool:
        """True when the caller may start the build."""
        return self.acquired or self.degraded


class SingleFlightCoordinator:
    """Redis-backed single-flight lock and ephemeral job state."""

    def __init__(
        self,
        cache,
        lock_ttl: Optional[int] = None,
        state_ttl: Optional[int] = None,
        metrics=None,
    ):
        self.cache = cache
        self.lock_ttl = lock_ttl or settings.LOCK_TTL_SECONDS
        self.state_ttl = state_ttl or settings.JOB_STATE_TTL_SECONDS
        self.metrics = metrics

    async def acquire(self, program_id: str) -> Lease:
        token = str(uuid.uuid4())
        written = await self.cache.set_if_absent(lock_key(program_id), token, ex=self.lock_ttl)

        if written is None:
            logger.warning(f"Cache unavailable, building {program_id} without deduplication")
            if self.metrics:
                self.metrics.lock_degraded.inc()
            return Lease(program_id=program_id, token=token, acquired=False, degraded=True)

        if not written:
            logger.debug(f"Lock for {program_id} is held by another build")
            if self.metrics:
                self.metrics.lock_contention.inc()
            return Lease(program_id=program_id, token=token, acquired=False)

        logger.debug(f"Acquired lock for {program_id}")
        return Lease(program_id=program_id, token=token, acquired=True)

    async def claim(self, program_id: str) -> Lease:
        """
        Acquire a lease that may start the build.

        Raises:
            DuplicateInProgress: another build holds the lock
        """
        lease = await self.acquire(program_id)
        if not lease.owns_build:
            state = await self.get_state(program_id)
            raise DuplicateInProgress(program_id, state["state"] if state else None)
        return lease

    async def release(self, lease: Lease) -> bool:
        """Release the lock if this lease still owns it. Safe to call twice."""
        if not lease.acquired or lease.released:
            return False
        lease.released = True
        deleted = await self.cache.delete_if_equals(lock_key(lease.program_id), lease.token)
        if not deleted:
            logger.warning(f"Lock for {lease.program_id} expired or changed owner before release")
        return deleted

    async def extend(self, lease: Lease) -> bool:
        """Push the lock expiry back to a full ttl while this lease still owns it."""
        if not lease.acquired or lease.released:
            return False
        return await self.cache.expire_if_equals(lock_key(lease.program_id), lease.token, ex=self.lock_ttl)

    async def keep_alive(self, lease: Lease):
        """
        Renew the lock until cancelled.

        Stops on its own once the lock is lost to expiry or another owner;
        returns immediately for degraded leases.
        """
        if not lease.acquired:
            return
        interval = self.lock_ttl / 3
        while not lease.released:
            await asyncio.sleep(interval)
            if lease.released:
                return
            if not await self.extend(lease):
                logger.warning(f"Lost lock for {lease.program_id} while its build was running")
                return

    async def is_held(self, program_id: str) -> bool:
        return await self.cache.exists(lock_key(program_id))

    # =========================================================================
    # Job state
    # =========================================================================

    async def set_state(self, program_id: str, state: JobState, reason: Optional[str] = None) -> bool:
        payload = {
            "state": state.value,
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "reason": reason,
        }
        return await self.cache.set_json(job_key(program_id), payload, ex=self.state_ttl)

    async def get_state(self, program_id: str) -> Optional[Dict[str, Any]]:
        """Current job state, or None when unknown (expired, never set, cache down)."""
        value = await self.cache.get_json(job_key(program_id))
        if not isinstance(value, dict) or "state" not in value:
            return None
        return value
