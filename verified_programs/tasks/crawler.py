"""
Re-verification Crawler
=======================

Independent process that periodically re-submits known programs through the
public intake API, exactly like any other client.

Flow (one run):
1. Read programs with no result, or a result older than the recheck window
2. Skip programs still inside their backoff period
3. POST each one to /verify
4. Busy answers (in_progress, retryable errors) extend the program's backoff,
   as does resubmitting a program whose last build failed. Other terminal
   answers reset it
5. Sleep until the next run

One program failing never aborts the run.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

import httpx
from loguru import logger

from verified_programs.core.config import settings
from verified_programs.core.errors import PersistenceError
from verified_programs.models.program_build import BuildStatus

BACKOFF_PREFIX = "crawler:backoff:"
MAX_RATE_LIMIT_WAIT_SECONDS = 60

OUTCOME_ACCEPTED = "accepted"
OUTCOME_CACHED = "cached"
OUTCOME_IN_PROGRESS = "in_progress"
OUTCOME_REJECTED = "rejected"
OUTCOME_RATE_LIMITED = "rate_limited"
OUTCOME_RETRYABLE = "retryable_error"
OUTCOME_FAILED = "failed"

# Outcomes that mean "come back later"
BUSY_OUTCOMES = {OUTCOME_IN_PROGRESS, OUTCOME_RETRYABLE}


class IntakeClient:
    """HTTP client for the public intake API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._owns_client = http_client is None
        self.http = http_client or httpx.AsyncClient(
            base_url=base_url or settings.API_BASE_URL,
            timeout=timeout or settings.CRAWLER_REQUEST_TIMEOUT_SECONDS,
            headers={"User-Agent": "verified-programs-crawler"},
        )

    async def submit(self, params: Dict[str, Any]) -> httpx.Response:
        return await self.http.post("/verify", json=params)

    async def close(self):
        if self._owns_client:
            await self.http.aclose()


@dataclass
class CrawlStats:
    candidates: int = 0
    skipped: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)

    def count(self, outcome: str):
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1


def classify_response(response: httpx.Response) -> str:
    code = response.status_code
    if code == 200:
        return OUTCOME_ACCEPTED
    if code == 409:
        return OUTCOME_CACHED
    if code == 202:
        return OUTCOME_IN_PROGRESS
    if code == 429:
        return OUTCOME_RATE_LIMITED
    if code in (502, 503, 504):
        return OUTCOME_RETRYABLE
    if 400 <= code < 500:
        return OUTCOME_REJECTED
    return OUTCOME_FAILED


class Crawler:
    def __init__(
        self,
        hash_store,
        intake: IntakeClient,
        cache,
        recheck_hours: Optional[int] = None,
        batch_size: Optional[int] = None,
        backoff_base: Optional[int] = None,
        backoff_max: Optional[int] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sleep: Callable[[float], Any] = asyncio.sleep,
        metrics=None,
    ):
        self.hash_store = hash_store
        self.intake = intake
        self.cache = cache
        self.recheck = timedelta(hours=recheck_hours or settings.CRAWLER_RECHECK_HOURS)
        self.batch_size = batch_size or settings.CRAWLER_BATCH_SIZE
        self.backoff_base = backoff_base or settings.CRAWLER_BACKOFF_BASE_SECONDS
        self.backoff_max = backoff_max or settings.CRAWLER_BACKOFF_MAX_SECONDS
        self.clock = clock
        self.sleep = sleep
        self.metrics = metrics

    async def run_once(self) -> CrawlStats:
        """Submit every due candidate once. Returns per-outcome counts."""
        now = self.clock()
        stats = CrawlStats()
        candidates = await self.hash_store.list_recheck_candidates(now - self.recheck, self.batch_size)
        stats.candidates = len(candidates)
        logger.info(f"🔎 Crawler run: {len(candidates)} candidate(s)")

        for build in candidates:
            program_id = build.program_id
            if await self._backing_off(program_id, now):
                stats.skipped += 1
                continue

            try:
                outcome, detail = await self._submit(build.params_dict())
            except httpx.HTTPError as e:
                logger.error(f"Submitting {program_id} failed: {e}")
                outcome, detail = OUTCOME_FAILED, str(e)
            except Exception as e:
                logger.exception(f"Unexpected error submitting {program_id}: {e}")
                outcome, detail = OUTCOME_FAILED, str(e)

            stats.count(outcome)
            if self.metrics:
                self.metrics.crawler_submissions.labels(outcome=outcome).inc()

            if outcome in BUSY_OUTCOMES:
                delay = await self._extend_backoff(program_id, now)
                logger.info(f"{program_id} busy ({outcome}), next check in {delay}s")
            elif outcome == OUTCOME_ACCEPTED and build.last_status == BuildStatus.FAILED.value:
                # Accepted again after a failed build; space out the retries
                delay = await self._extend_backoff(program_id, now)
                logger.info(f"{program_id} last build failed ({build.last_error}), next check in {delay}s")
            elif outcome in (OUTCOME_ACCEPTED, OUTCOME_CACHED, OUTCOME_REJECTED):
                await self.cache.delete(self._backoff_key(program_id))
                if outcome == OUTCOME_REJECTED:
                    logger.warning(f"{program_id} rejected by intake: {detail}")
            else:
                logger.warning(f"{program_id} not submitted ({outcome}): {detail}")

        logger.info(f"Crawler run finished: {stats.outcomes}, skipped={stats.skipped}")
        return stats

    async def run_forever(self, interval: Optional[float] = None, stop: Optional[asyncio.Event] = None):
        interval = interval or settings.CRAWLER_INTERVAL_SECONDS
        stop = stop or asyncio.Event()
        logger.info(f"🚀 Starting crawler (interval {interval}s)")

        while not stop.is_set():
            try:
                await self.run_once()
            except PersistenceError as e:
                logger.error(f"Crawler could not read candidates: {e}")
            except Exception as e:
                logger.exception(f"Crawler run failed: {e}")

            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Crawler stopped")

    async def _submit(self, params: Dict[str, Any]) -> Tuple[str, str]:
        response = await self.intake.submit(params)
        outcome = classify_response(response)
        if outcome == OUTCOME_RATE_LIMITED:
            wait = self._retry_after(response)
            logger.debug(f"Intake rate limit hit, waiting {wait}s")
            await self.sleep(wait)
            response = await self.intake.submit(params)
            outcome = classify_response(response)
        return outcome, response.text[:500]

    @staticmethod
    def _retry_after(response: httpx.Response) -> float:
        try:
            value = float(response.headers.get("Retry-After", "1"))
        except ValueError:
            value = 1.0
        return min(max(value, 0.0), MAX_RATE_LIMIT_WAIT_SECONDS)

    # =========================================================================
    # Backoff
    # =========================================================================

    @staticmethod
    def _backoff_key(program_id: str) -> str:
        return f"{BACKOFF_PREFIX}{program_id}"

    def backoff_delay(self, streak: int) -> int:
        """base * 2^(streak-1), capped."""
        if streak <= 0:
            return 0
        return int(min(self.backoff_base * (2 ** (streak - 1)), self.backoff_max))

    async def _backing_off(self, program_id: str, now: datetime) -> bool:
        state = await self.cache.get_json(self._backoff_key(program_id))
        if not state:
            return False
        return state.get("next_check", 0) > now.timestamp()

    async def _extend_backoff(self, program_id: str, now: datetime) -> int:
        key = self._backoff_key(program_id)
        state = await self.cache.get_json(key) or {}
        streak = int(state.get("streak", 0)) + 1
        delay = self.backoff_delay(streak)
        await self.cache.set_json(
            key,
            {"streak": streak, "next_check": now.timestamp() + delay},
            ex=int(self.backoff_max * 2),
        )
        return delay
