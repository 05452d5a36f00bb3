"""
Tests for the re-verification crawler and its CLI.
"""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from click.testing import CliRunner

from verified_programs import __version__
from verified_programs.cli import main
from verified_programs.models.schemas import BuildParams
from verified_programs.tasks.crawler import (
    OUTCOME_ACCEPTED,
    OUTCOME_CACHED,
    OUTCOME_FAILED,
    OUTCOME_IN_PROGRESS,
    OUTCOME_REJECTED,
    OUTCOME_RETRYABLE,
    Crawler,
    IntakeClient,
    classify_response,
)

from tests.conftest import OTHER_PROGRAM_ID, PROGRAM_ID

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class Intake:
    """Scripted intake API: maps program id to a list of responses."""

    def __init__(self, responses=None, default=200):
        self.responses = responses or {}
        self.default = default
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        queue = self.responses.get(body["program_id"])
        answer = queue.pop(0) if queue else self.default
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, httpx.Response):
            return answer
        return httpx.Response(answer, json={"status": "ok"})

    def client(self) -> IntakeClient:
        http = httpx.AsyncClient(base_url="http://intake.test", transport=httpx.MockTransport(self))
        return IntakeClient(http_client=http)


async def store_programs(hash_store, *program_ids):
    for program_id in program_ids:
        await hash_store.upsert_build(BuildParams(
            program_id=program_id,
            repository="github.com/example/prog",
            commit_hash="abc123",
            cargo_args=["--features", "mainnet"],
        ))


@pytest.fixture
def make_crawler(hash_store, cache, metrics):
    def factory(intake: Intake, clock=None, sleeps=None) -> Crawler:
        async def sleep(seconds):
            if sleeps is not None:
                sleeps.append(seconds)

        return Crawler(
            hash_store,
            intake.client(),
            cache,
            recheck_hours=24,
            batch_size=10,
            backoff_base=60,
            backoff_max=3600,
            clock=clock or Clock(),
            sleep=sleep,
            metrics=metrics,
        )
    return factory


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_submits_every_candidate(self, make_crawler, hash_store, metrics):
        await store_programs(hash_store, PROGRAM_ID, OTHER_PROGRAM_ID)
        intake = Intake()

        stats = await make_crawler(intake).run_once()

        assert stats.candidates == 2
        assert stats.outcomes == {OUTCOME_ACCEPTED: 2}
        assert {r["program_id"] for r in intake.requests} == {PROGRAM_ID, OTHER_PROGRAM_ID}
        assert intake.requests[0]["cargo_args"] == ["--features", "mainnet"]
        assert metrics.registry.get_sample_value(
            'verified_programs_crawler_submissions_total', {'outcome': OUTCOME_ACCEPTED}
        ) == 2

    @pytest.mark.asyncio
    async def test_recent_results_are_not_resubmitted(self, make_crawler, hash_store):
        await store_programs(hash_store, PROGRAM_ID)
        build = await hash_store.get_build(PROGRAM_ID)
        await hash_store.record_result(PROGRAM_ID, build.attempt_id, True, "H1", "H1")

        stats = await make_crawler(Intake(), clock=Clock(datetime.now(timezone.utc))).run_once()
        assert stats.candidates == 0

    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_the_run(self, make_crawler, hash_store):
        await store_programs(hash_store, PROGRAM_ID, OTHER_PROGRAM_ID)
        intake = Intake({PROGRAM_ID: [httpx.ConnectError("connection refused")]})

        stats = await make_crawler(intake).run_once()

        assert stats.outcomes == {OUTCOME_FAILED: 1, OUTCOME_ACCEPTED: 1}

    @pytest.mark.asyncio
    async def test_rate_limited_submission_is_retried_once(self, make_crawler, hash_store):
        await store_programs(hash_store, PROGRAM_ID)
        limited = httpx.Response(429, headers={"Retry-After": "7"}, json={"status": "error"})
        intake = Intake({PROGRAM_ID: [limited, 409]})
        sleeps = []

        stats = await make_crawler(intake, sleeps=sleeps).run_once()

        assert sleeps == [7.0]
        assert len(intake.requests) == 2
        assert stats.outcomes == {OUTCOME_CACHED: 1}


class TestBackoff:
    @pytest.mark.asyncio
    async def test_busy_program_backs_off_exponentially(self, make_crawler, hash_store, cache):
        await store_programs(hash_store, PROGRAM_ID)
        intake = Intake(default=202)
        clock = Clock()
        crawler = make_crawler(intake, clock=clock)

        await crawler.run_once()
        state = await cache.get_json(f"crawler:backoff:{PROGRAM_ID}")
        assert state["streak"] == 1
        assert state["next_check"] == NOW.timestamp() + 60

        # Still inside the backoff window
        clock.now = NOW + timedelta(seconds=30)
        stats = await crawler.run_once()
        assert stats.skipped == 1
        assert len(intake.requests) == 1

        clock.now = NOW + timedelta(seconds=61)
        await crawler.run_once()
        state = await cache.get_json(f"crawler:backoff:{PROGRAM_ID}")
        assert state["streak"] == 2
        assert state["next_check"] == clock.now.timestamp() + 120

    @pytest.mark.asyncio
    async def test_terminal_answer_resets_backoff(self, make_crawler, hash_store, cache):
        await store_programs(hash_store, PROGRAM_ID)
        intake = Intake({PROGRAM_ID: [503, 200]})
        clock = Clock()
        crawler = make_crawler(intake, clock=clock)

        stats = await crawler.run_once()
        assert stats.outcomes == {OUTCOME_RETRYABLE: 1}
        assert await cache.get_json(f"crawler:backoff:{PROGRAM_ID}") is not None

        clock.now = NOW + timedelta(minutes=5)
        await crawler.run_once()
        assert await cache.get_json(f"crawler:backoff:{PROGRAM_ID}") is None

    @pytest.mark.asyncio
    async def test_failed_build_backs_off_when_accepted_again(self, make_crawler, hash_store, cache):
        await store_programs(hash_store, PROGRAM_ID)
        build = await hash_store.get_build(PROGRAM_ID)
        await hash_store.record_failure(PROGRAM_ID, build.attempt_id, "timeout: Build exceeded the 1800s limit")
        intake = Intake()
        clock = Clock()
        crawler = make_crawler(intake, clock=clock)

        stats = await crawler.run_once()
        assert stats.outcomes == {OUTCOME_ACCEPTED: 1}
        state = await cache.get_json(f"crawler:backoff:{PROGRAM_ID}")
        assert state["streak"] == 1

        clock.now = NOW + timedelta(seconds=30)
        assert (await crawler.run_once()).skipped == 1

        clock.now = NOW + timedelta(seconds=61)
        await crawler.run_once()
        state = await cache.get_json(f"crawler:backoff:{PROGRAM_ID}")
        assert len(intake.requests) == 2
        assert state["streak"] == 2
        assert state["next_check"] == clock.now.timestamp() + 120

    @pytest.mark.asyncio
    async def test_delay_is_capped(self, make_crawler):
        crawler = make_crawler(Intake())
        assert [crawler.backoff_delay(s) for s in range(0, 4)] == [0, 60, 120, 240]
        assert crawler.backoff_delay(20) == 3600


def test_classify_response():
    expected = {
        200: OUTCOME_ACCEPTED,
        409: OUTCOME_CACHED,
        202: OUTCOME_IN_PROGRESS,
        422: OUTCOME_REJECTED,
        404: OUTCOME_REJECTED,
        503: OUTCOME_RETRYABLE,
        502: OUTCOME_RETRYABLE,
        500: OUTCOME_FAILED,
    }
    for code, outcome in expected.items():
        assert classify_response(httpx.Response(code)) == outcome


class TestCli:
    def test_version(self):
        result = CliRunner().invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_run_help(self):
        result = CliRunner().invoke(main, ["run", "--help"])
        assert result.exit_code == 0
        assert "--once" in result.output
