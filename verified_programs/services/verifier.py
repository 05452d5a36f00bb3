"""
Verifier: compares a build's executable hash with the deployed one and
persists the outcome.
"""

from typing import Optional

from loguru import logger

from verified_programs.models.schemas import VerificationRecord

REASON_HASH_MISMATCH = "hash_mismatch"
REASON_NON_DETERMINISTIC = "non_deterministic_build"


class Verifier:
    def __init__(self, chain_client, hash_store, metrics=None):
        self.chain_client = chain_client
        self.hash_store = hash_store
        self.metrics = metrics

    async def verify(
        self,
        program_id: str,
        attempt_id: str,
        executable_hash: str,
        reason: Optional[str] = None,
    ) -> VerificationRecord:
        """
        Fetch the deployed hash and record whether it equals ``executable_hash``.

        A ``reason`` (e.g. a non-deterministic build) forces is_verified=False.
        Chain lookup errors propagate unchanged: ProgramNotFoundError is
        terminal, ChainUnreachableError is retryable.
        """
        on_chain_hash = await self.chain_client.get_deployed_executable_hash(program_id)

        is_verified = reason is None and executable_hash == on_chain_hash
        if not is_verified and reason is None:
            reason = REASON_HASH_MISMATCH

        record = await self.hash_store.record_result(
            program_id,
            attempt_id,
            is_verified=is_verified,
            on_chain_hash=on_chain_hash,
            executable_hash=executable_hash,
            reason=reason,
        )

        if self.metrics:
            self.metrics.record_verification(is_verified)
        if is_verified:
            logger.info(f"✅ {program_id} verified: {executable_hash}")
        else:
            logger.warning(
                f"❌ {program_id} not verified ({reason}): on-chain {on_chain_hash}, built {executable_hash}"
            )
        return record
