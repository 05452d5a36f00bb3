"""
Orchestrator: public entry point for verification requests.

submit() flow:

1. Validate the request (no side effects on failure).
2. Return the stored result when the parameters are unchanged and the
   deployed hash still matches (re-checked live).
3. Take the single-flight lock. If another build holds it, answer
   in_progress or wait (bounded) for it to finish. Once the lock is held,
   repeat the cached-result check in case a build just finished.
4. Store the build request, then run build -> verify -> persist as a
   background task that owns the lock, renews it while the build runs and
   releases it on every exit path.

Waiting callers wait on the task through asyncio.shield, so a caller that
times out or disconnects never cancels the build.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Set, Union

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from verified_programs.core.config import settings
from verified_programs.core.errors import (
    DuplicateInProgress,
    NonDeterministicBuildError,
    PersistenceError,
    StaleAttemptError,
    ValidationError,
    VerificationPipelineError,
)
from verified_programs.models.schemas import (
    BuildParams,
    JobState,
    StatusResponse,
    SubmitStatus,
    VerificationRecord,
)
from verified_programs.services.hash_store import as_utc
from verified_programs.services.single_flight import Lease
from verified_programs.services.verifier import REASON_NON_DETERMINISTIC

MESSAGE_VERIFIED = "On chain program verified"
MESSAGE_NOT_VERIFIED = "On chain program not verified"
MESSAGE_PENDING = "Verification has not completed yet"


def repo_url_for(repository: str, commit_hash: Optional[str]) -> str:
    if commit_hash:
        return f"{repository.rstrip('/')}/commit/{commit_hash}"
    return repository


@dataclass
class SubmitResult:
    """Answer to a submission."""
    status: SubmitStatus
    program_id: str
    repo_url: str
    result: Optional[VerificationRecord] = None
    job_state: Optional[str] = None
    reason: Optional[str] = None

    @property
    def message(self) -> str:
        if self.status == SubmitStatus.CACHED:
            return "We have already processed this request"
        if self.job_state == JobState.FAILED.value:
            return f"Build verification failed: {self.reason}"
        if self.result is not None:
            return MESSAGE_VERIFIED if self.result.is_verified else MESSAGE_NOT_VERIFIED
        if self.status == SubmitStatus.IN_PROGRESS:
            return "Build verification already in progress"
        return "Build verification started"


@dataclass
class JobOutcome:
    """What a background job produced: a record, or the error that stopped it."""
    record: Optional[VerificationRecord] = None
    error: Optional[VerificationPipelineError] = None


class Orchestrator:
    def __init__(
        self,
        hash_store,
        coordinator,
        executor,
        verifier,
        chain_client,
        wait_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        shutdown_grace: Optional[float] = None,
        freshness_hours: Optional[int] = None,
        metrics=None,
    ):
        self.hash_store = hash_store
        self.coordinator = coordinator
        self.executor = executor
        self.verifier = verifier
        self.chain_client = chain_client
        self.wait_timeout = wait_timeout if wait_timeout is not None else settings.WAIT_TIMEOUT_SECONDS
        self.poll_interval = poll_interval if poll_interval is not None else settings.WAIT_POLL_INTERVAL_SECONDS
        self.shutdown_grace = shutdown_grace if shutdown_grace is not None else settings.SHUTDOWN_GRACE_SECONDS
        self.freshness = timedelta(hours=freshness_hours or settings.STATUS_FRESHNESS_HOURS)
        self.metrics = metrics
        self._jobs: Set[asyncio.Task] = set()

    # =========================================================================
    # Intake
    # =========================================================================

    @staticmethod
    def validate(payload: Union[BuildParams, Dict[str, Any]]) -> BuildParams:
        if isinstance(payload, BuildParams):
            return payload
        try:
            return BuildParams.model_validate(payload)
        except PydanticValidationError as e:
            errors = [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ]
            raise ValidationError("Invalid verification request", errors=errors) from e

    async def submit(self, payload: Union[BuildParams, Dict[str, Any]], wait: bool = False) -> SubmitResult:
        """
        Submit a verification request.

        Args:
            payload: request body or already validated BuildParams
            wait: block (up to the wait timeout) until the build finishes

        Returns:
            SubmitResult with status cached, in_progress or accepted

        Raises:
            ValidationError: malformed request
            ChainLookupError: the live deployed hash could not be read
            BuildError / PersistenceError: the caller's own build failed (wait=True)
        """
        params = self.validate(payload)
        program_id = params.program_id
        repo_url = repo_url_for(params.repository, params.commit_hash)

        cached = await self._cached_result(params)
        if cached is not None:
            logger.info(f"Returning cached result for {program_id}")
            return self._answer(SubmitResult(SubmitStatus.CACHED, program_id, repo_url, result=cached))

        try:
            lease = await self.coordinator.claim(program_id)
        except DuplicateInProgress as busy:
            if not wait:
                return self._answer(SubmitResult(
                    SubmitStatus.IN_PROGRESS, program_id, repo_url, job_state=busy.state,
                ))
            return self._answer(await self._wait_for_running_build(program_id, repo_url))

        try:
            # A build may have finished between the first check and the claim
            cached = await self._cached_result(params)
            if cached is None:
                attempt_id = await self.hash_store.upsert_build(params)
                await self.coordinator.set_state(program_id, JobState.QUEUED)
        except BaseException:
            await self.coordinator.release(lease)
            raise
        if cached is not None:
            await self.coordinator.release(lease)
            logger.info(f"Build of {program_id} finished before the claim, returning its result")
            return self._answer(SubmitResult(SubmitStatus.CACHED, program_id, repo_url, result=cached))

        task = asyncio.create_task(self._run_job(params, attempt_id, lease), name=f"verify-{program_id}")
        self._jobs.add(task)
        task.add_done_callback(self._jobs.discard)
        logger.info(f"Accepted verification of {program_id} (attempt {attempt_id})")

        if not wait:
            return self._answer(SubmitResult(
                SubmitStatus.ACCEPTED, program_id, repo_url, job_state=JobState.QUEUED.value,
            ))

        try:
            outcome = await asyncio.wait_for(asyncio.shield(task), timeout=self.wait_timeout)
        except asyncio.TimeoutError:
            state = await self.coordinator.get_state(program_id)
            logger.info(f"Wait for {program_id} timed out, build continues in background")
            return self._answer(SubmitResult(
                SubmitStatus.IN_PROGRESS, program_id, repo_url,
                job_state=state["state"] if state else JobState.BUILDING.value,
            ))

        if outcome.error is not None:
            raise outcome.error
        return self._answer(SubmitResult(
            SubmitStatus.ACCEPTED, program_id, repo_url,
            result=outcome.record, job_state=JobState.COMPLETED.value,
        ))

    async def _cached_result(self, params: BuildParams) -> Optional[VerificationRecord]:
        stored = await self.hash_store.get_status(params.program_id)
        if stored is None or stored.result is None:
            return None
        if not params.same_build_as(stored.build.params_dict()):
            return None

        live_hash = await self.chain_client.get_deployed_executable_hash(params.program_id)
        if live_hash != stored.result.on_chain_hash:
            logger.info(f"Deployed executable of {params.program_id} changed, rebuilding")
            return None
        return self.hash_store.to_record(stored.result)

    async def _wait_for_running_build(self, program_id: str, repo_url: str) -> SubmitResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_timeout
        while await self.coordinator.is_held(program_id):
            remaining = deadline - loop.time()
            if remaining <= 0:
                state = await self.coordinator.get_state(program_id)
                return SubmitResult(
                    SubmitStatus.IN_PROGRESS, program_id, repo_url,
                    job_state=state["state"] if state else None,
                )
            await asyncio.sleep(min(self.poll_interval, remaining))

        state = await self.coordinator.get_state(program_id)
        if state and state["state"] == JobState.FAILED.value:
            return SubmitResult(
                SubmitStatus.ACCEPTED, program_id, repo_url,
                job_state=JobState.FAILED.value, reason=state.get("reason"),
            )

        record = await self.hash_store.get_result(program_id)
        if record is not None:
            return SubmitResult(
                SubmitStatus.ACCEPTED, program_id, repo_url,
                result=record, job_state=JobState.COMPLETED.value,
            )
        # Lock gone without an outcome (expired or crashed owner): retry allowed
        return SubmitResult(
            SubmitStatus.IN_PROGRESS, program_id, repo_url,
            job_state=state["state"] if state else None,
        )

    def _answer(self, result: SubmitResult) -> SubmitResult:
        if self.metrics:
            self.metrics.record_submission(result.status.value)
        return result

    # =========================================================================
    # Background job
    # =========================================================================

    async def _run_job(self, params: BuildParams, attempt_id: str, lease: Lease) -> JobOutcome:
        program_id = params.program_id
        renewal = asyncio.create_task(self.coordinator.keep_alive(lease), name=f"lock-renewal-{program_id}")
        try:
            await self.coordinator.set_state(program_id, JobState.BUILDING)
            await self.hash_store.mark_building(program_id, attempt_id)

            reason = None
            try:
                outcome = await self.executor.run(params)
                executable_hash = outcome.executable_hash
            except NonDeterministicBuildError as e:
                executable_hash = e.hashes[0]
                reason = REASON_NON_DETERMINISTIC

            await self.coordinator.set_state(program_id, JobState.VERIFYING)
            record = await self.verifier.verify(program_id, attempt_id, executable_hash, reason=reason)
            await self.coordinator.set_state(program_id, JobState.COMPLETED)
            return JobOutcome(record=record)

        except StaleAttemptError as e:
            # A newer attempt owns the record now; leave its state alone
            logger.warning(f"Discarding outcome of superseded attempt {attempt_id} for {program_id}")
            return JobOutcome(error=e)
        except VerificationPipelineError as e:
            logger.error(f"Verification of {program_id} failed ({e.kind}): {e.message}")
            await self._record_failure(program_id, attempt_id, self._failure_reason(e), e.message)
            return JobOutcome(error=e)
        except asyncio.CancelledError:
            logger.warning(f"Verification of {program_id} cancelled")
            await self._record_failure(program_id, attempt_id, "cancelled", "Build cancelled during shutdown")
            raise
        except Exception as e:
            logger.exception(f"Unexpected error verifying {program_id}: {e}")
            await self._record_failure(program_id, attempt_id, "internal_error", str(e))
            return JobOutcome(error=VerificationPipelineError(f"Unexpected error: {e}"))
        finally:
            renewal.cancel()
            await self.coordinator.release(lease)

    @staticmethod
    def _failure_reason(error: VerificationPipelineError) -> str:
        return getattr(error, "reason", None) or error.kind

    async def _record_failure(self, program_id: str, attempt_id: str, reason: str, message: str):
        await self.coordinator.set_state(program_id, JobState.FAILED, reason=reason)
        try:
            await self.hash_store.record_failure(program_id, attempt_id, f"{reason}: {message}")
        except PersistenceError as e:
            logger.error(f"Could not record failure for {program_id}: {e}")

    # =========================================================================
    # Status
    # =========================================================================

    async def status(self, program_id: str) -> Optional[StatusResponse]:
        """Stored build, latest result and live job state; None when unknown."""
        stored = await self.hash_store.get_status(program_id)
        if stored is None:
            return None

        state = await self.coordinator.get_state(program_id)
        build, result = stored.build, stored.result
        response = StatusResponse(
            program_id=program_id,
            is_verified=False,
            message=MESSAGE_PENDING,
            on_chain_hash="",
            executable_hash="",
            repo_url=repo_url_for(build.repository, build.commit_hash),
            job_state=state["state"] if state else None,
            last_status=build.last_status,
            last_error=build.last_error,
        )
        if result is not None:
            verified_at = as_utc(result.verified_at)
            response.is_verified = result.is_verified
            response.message = MESSAGE_VERIFIED if result.is_verified else MESSAGE_NOT_VERIFIED
            response.on_chain_hash = result.on_chain_hash
            response.executable_hash = result.executable_hash
            response.reason = result.reason
            response.last_verified_at = verified_at
            response.is_stale = verified_at < datetime.now(timezone.utc) - self.freshness
        return response

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def running_jobs(self) -> int:
        return len(self._jobs)

    async def shutdown(self):
        """Give running builds a grace period, then cancel the rest."""
        jobs = list(self._jobs)
        if not jobs:
            return
        logger.info(f"Waiting up to {self.shutdown_grace}s for {len(jobs)} running build(s)")
        _, pending = await asyncio.wait(jobs, timeout=self.shutdown_grace)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"Cancelled {len(pending)} build(s) at shutdown")
