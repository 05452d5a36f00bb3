"""
Hash Store: durable ledger of build requests and verification results.

The store is the sole arbiter of durable state. Every write for a program is
checked against the build row's ``attempt_id`` inside the same transaction,
so a writer whose single-flight lock expired cannot overwrite the outcome of
a newer attempt.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from loguru import logger
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from verified_programs.core.errors import PersistenceError, StaleAttemptError
from verified_programs.models.program_build import BuildStatus, ProgramBuild
from verified_programs.models.schemas import BuildParams, VerificationRecord
from verified_programs.models.verified_program import VerifiedProgram


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize database timestamps (some drivers return naive UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class ProgramStatus:
    """Build row and current result of one program, read together."""
    build: ProgramBuild
    result: Optional[VerifiedProgram]


class HashStore:
    """Async access layer over solana_program_builds and verified_programs."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        if session_factory is None:
            from verified_programs.core.database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_build(self, program_id: str) -> Optional[ProgramBuild]:
        try:
            async with self.session_factory() as session:
                return await session.get(ProgramBuild, program_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to read build for {program_id}: {e}")
            raise PersistenceError(f"Could not read build for {program_id}") from e

    async def get_result(self, program_id: str) -> Optional[VerificationRecord]:
        try:
            async with self.session_factory() as session:
                row = await self._result_row(session, program_id)
                return self.to_record(row) if row else None
        except SQLAlchemyError as e:
            logger.error(f"Failed to read result for {program_id}: {e}")
            raise PersistenceError(f"Could not read result for {program_id}") from e

    async def get_status(self, program_id: str) -> Optional[ProgramStatus]:
        try:
            async with self.session_factory() as session:
                build = await session.get(ProgramBuild, program_id)
                if build is None:
                    return None
                result = await self._result_row(session, program_id)
                return ProgramStatus(build=build, result=result)
        except SQLAlchemyError as e:
            logger.error(f"Failed to read status for {program_id}: {e}")
            raise PersistenceError(f"Could not read status for {program_id}") from e

    async def list_recheck_candidates(self, older_than: datetime, limit: int = 100) -> List[ProgramBuild]:
        """Programs without a result, or whose result predates ``older_than``. Oldest first."""
        stmt = (
            select(ProgramBuild)
            .outerjoin(VerifiedProgram, VerifiedProgram.program_id == ProgramBuild.program_id)
            .where(or_(VerifiedProgram.id.is_(None), VerifiedProgram.verified_at < older_than))
            .order_by(VerifiedProgram.verified_at.asc().nulls_first(), ProgramBuild.created_at.asc())
            .limit(limit)
        )
        try:
            async with self.session_factory() as session:
                return list((await session.execute(stmt)).scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Failed to list recheck candidates: {e}")
            raise PersistenceError("Could not list recheck candidates") from e

    # =========================================================================
    # Writes
    # =========================================================================

    async def upsert_build(self, params: BuildParams) -> str:
        """
        Create or update the build row for ``params.program_id``.

        Returns the new attempt id. ``created_at`` is never rewritten. A
        concurrent insert of the same program loses on the primary key and is
        retried once as an update.
        """
        attempt_id = str(uuid.uuid4())
        for attempt in range(2):
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        build = await session.get(ProgramBuild, params.program_id, with_for_update=True)
                        if build is None:
                            build = ProgramBuild(program_id=params.program_id)
                            session.add(build)
                        build.repository = params.repository
                        build.commit_hash = params.commit_hash
                        build.lib_name = params.lib_name
                        build.base_docker_image = params.base_image
                        build.mount_path = params.mount_path
                        build.build_args = list(params.build_args)
                        build.bpf_flag = params.bpf_flag
                        build.attempt_id = attempt_id
                        build.last_status = BuildStatus.PENDING.value
                        build.last_error = None
                logger.info(f"Stored build request for {params.program_id} (attempt {attempt_id})")
                return attempt_id
            except IntegrityError as e:
                if attempt == 0:
                    logger.warning(f"Concurrent insert for {params.program_id}, retrying as update")
                    continue
                raise PersistenceError(f"Conflicting writes for {params.program_id}") from e
            except SQLAlchemyError as e:
                logger.error(f"Failed to store build for {params.program_id}: {e}")
                raise PersistenceError(f"Could not store build for {params.program_id}") from e
        raise PersistenceError(f"Could not store build for {params.program_id}")

    async def mark_building(self, program_id: str, attempt_id: str) -> None:
        await self._update_build_status(program_id, attempt_id, BuildStatus.BUILDING, error=None)

    async def record_failure(self, program_id: str, attempt_id: str, reason: str) -> None:
        """Mark the attempt failed. An earlier verification result is kept."""
        await self._update_build_status(program_id, attempt_id, BuildStatus.FAILED, error=reason)

    async def record_result(
        self,
        program_id: str,
        attempt_id: str,
        is_verified: bool,
        on_chain_hash: str,
        executable_hash: str,
        reason: Optional[str] = None,
    ) -> VerificationRecord:
        """Replace the program's result and status in one transaction."""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    build = await self._current_build(session, program_id, attempt_id)
                    result = await self._result_row(session, program_id, for_update=True)
                    if result is None:
                        result = VerifiedProgram(program_id=program_id)
                        session.add(result)
                    result.is_verified = is_verified
                    result.on_chain_hash = on_chain_hash
                    result.executable_hash = executable_hash
                    result.reason = reason
                    result.verified_at = datetime.now(timezone.utc)
                    build.last_status = (
                        BuildStatus.VERIFIED.value if is_verified else BuildStatus.NOT_VERIFIED.value
                    )
                    build.last_error = None
                record = self.to_record(result)
        except (StaleAttemptError, PersistenceError):
            raise
        except SQLAlchemyError as e:
            logger.error(f"Failed to store result for {program_id}: {e}")
            raise PersistenceError(f"Could not store result for {program_id}") from e

        logger.info(
            f"Stored verification for {program_id}: verified={is_verified}, "
            f"on_chain={on_chain_hash[:12]}, executable={executable_hash[:12]}"
        )
        return record

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _update_build_status(
        self, program_id: str, attempt_id: str, status: BuildStatus, error: Optional[str]
    ) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    build = await self._current_build(session, program_id, attempt_id)
                    build.last_status = status.value
                    build.last_error = error
        except (StaleAttemptError, PersistenceError):
            raise
        except SQLAlchemyError as e:
            logger.error(f"Failed to update status for {program_id}: {e}")
            raise PersistenceError(f"Could not update status for {program_id}") from e

    @staticmethod
    async def _current_build(session: AsyncSession, program_id: str, attempt_id: str) -> ProgramBuild:
        build = await session.get(ProgramBuild, program_id, with_for_update=True)
        if build is None:
            raise PersistenceError(f"No build request stored for {program_id}", program_id=program_id)
        if build.attempt_id != attempt_id:
            raise StaleAttemptError(
                f"Attempt {attempt_id} for {program_id} was superseded by {build.attempt_id}",
                program_id=program_id,
            )
        return build

    @staticmethod
    async def _result_row(
        session: AsyncSession, program_id: str, for_update: bool = False
    ) -> Optional[VerifiedProgram]:
        stmt = select(VerifiedProgram).where(VerifiedProgram.program_id == program_id)
        if for_update:
            stmt = stmt.with_for_update()
        return (await session.execute(stmt)).scalar_one_or_none()

    @staticmethod
    def to_record(row: VerifiedProgram) -> VerificationRecord:
        return VerificationRecord(
            program_id=row.program_id,
            is_verified=row.is_verified,
            on_chain_hash=row.on_chain_hash,
            executable_hash=row.executable_hash,
            reason=row.reason,
            verified_at=as_utc(row.verified_at),
        )
