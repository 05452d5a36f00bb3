"""
Services for the Verified Programs API
"""

from .build_executor import BuildOutcome, DockerBuildExecutor
from .chain_client import SolanaRpcClient
from .hash_store import HashStore, ProgramStatus
from .orchestrator import Orchestrator, SubmitResult
from .rate_limiter import RateLimiter
from .single_flight import Lease, SingleFlightCoordinator
from .verifier import Verifier

__all__ = [
    "BuildOutcome",
    "DockerBuildExecutor",
    "HashStore",
    "Lease",
    "Orchestrator",
    "ProgramStatus",
    "RateLimiter",
    "SingleFlightCoordinator",
    "SolanaRpcClient",
    "SubmitResult",
    "Verifier",
]
