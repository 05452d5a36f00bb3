"""
Error taxonomy for the verification pipeline.

Every error carries a short machine-readable ``kind`` that the API returns
verbatim in the ``error`` field of an error response.
"""

from typing import Any, Dict, List, Optional


class VerificationPipelineError(Exception):
    """Base class for all pipeline errors."""

    kind = "pipeline_error"
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload = {"status": "error", "error": self.kind, "detail": self.message}
        if self.details:
            payload["context"] = self.details
        return payload


class ValidationError(VerificationPipelineError):
    """Malformed request. Raised before any side effect."""

    kind = "validation_error"

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        if self.errors:
            payload["errors"] = self.errors
        return payload


class DuplicateInProgress(VerificationPipelineError):
    """Another build for the same program is running. Informational."""

    kind = "in_progress"

    def __init__(self, program_id: str, state: Optional[str] = None):
        super().__init__(f"A build for {program_id} is already in progress", program_id=program_id, state=state)
        self.program_id = program_id
        self.state = state


class BuildError(VerificationPipelineError):
    """The program could not be rebuilt."""

    kind = "build_error"

    CHECKOUT_FAILED = "checkout_failed"
    TOOLCHAIN_FAILED = "toolchain_failed"
    ARTIFACT_MISSING = "artifact_missing"
    TIMEOUT = "timeout"
    OUTPUT_LIMIT = "output_limit"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    NON_DETERMINISTIC = "non_deterministic"

    def __init__(
        self,
        reason: str,
        message: str,
        exit_code: Optional[int] = None,
        log_excerpt: str = "",
    ):
        super().__init__(message, reason=reason, exit_code=exit_code)
        self.reason = reason
        self.exit_code = exit_code
        self.log_excerpt = log_excerpt
        self.retryable = reason == self.RESOURCE_EXHAUSTED


class NonDeterministicBuildError(BuildError):
    """Repeated builds of identical inputs produced different executables."""

    def __init__(self, hashes: List[str]):
        super().__init__(
            BuildError.NON_DETERMINISTIC,
            f"Repeated builds produced {len(set(hashes))} distinct executables",
        )
        self.hashes = hashes
        self.details["hashes"] = hashes


class ChainLookupError(VerificationPipelineError):
    """The deployed executable hash could not be obtained."""

    kind = "chain_lookup_error"


class ProgramNotFoundError(ChainLookupError):
    """The program was never deployed or has been closed. Terminal."""

    kind = "program_not_found"

    def __init__(self, program_id: str):
        super().__init__(f"Program {program_id} was not found on chain", program_id=program_id)
        self.program_id = program_id


class ChainUnreachableError(ChainLookupError):
    """The RPC endpoint failed or timed out. Retryable."""

    kind = "chain_unreachable"
    retryable = True


class PersistenceError(VerificationPipelineError):
    """The relational store rejected or could not perform a write."""

    kind = "persistence_error"
    retryable = True


class StaleAttemptError(PersistenceError):
    """A writer tried to persist a build attempt that is no longer current."""

    kind = "stale_attempt"
    retryable = False
