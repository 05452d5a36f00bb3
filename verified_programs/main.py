"""
Verified Programs API - FastAPI Application
Reproducible-build verification for deployed Solana programs.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from verified_programs import __version__
from verified_programs.core.config import settings
from verified_programs.core.errors import (
    BuildError,
    ChainUnreachableError,
    PersistenceError,
    ProgramNotFoundError,
    ValidationError,
    VerificationPipelineError,
)
from verified_programs.core.metrics import MetricsCollector
from verified_programs.models.schemas import (
    ErrorResponse,
    HealthResponse,
    StatusResponse,
    SubmitStatus,
    VerifyRequest,
    VerifyResponse,
)
from verified_programs.services.build_executor import DockerBuildExecutor
from verified_programs.services.chain_client import SolanaRpcClient
from verified_programs.services.hash_store import HashStore
from verified_programs.services.orchestrator import (
    MESSAGE_NOT_VERIFIED,
    MESSAGE_VERIFIED,
    Orchestrator,
    SubmitResult,
)
from verified_programs.services.rate_limiter import SCOPE_STATUS, SCOPE_VERIFY, RateLimiter, rate_limit
from verified_programs.services.single_flight import SingleFlightCoordinator

# Configure logging
logging.basicConfig(level=settings.LOG_LEVEL.upper())
logger = logging.getLogger(__name__)

SUBMIT_STATUS_CODES = {
    SubmitStatus.ACCEPTED: 200,
    SubmitStatus.IN_PROGRESS: 202,
    SubmitStatus.CACHED: 409,
}


class ServiceRegistry:
    """Registry for all application services."""

    def __init__(
        self,
        cache=None,
        hash_store=None,
        chain_client=None,
        executor=None,
        metrics_collector: Optional[MetricsCollector] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.metrics_collector = metrics_collector or MetricsCollector()
        self.cache = cache
        self.hash_store = hash_store
        self.chain_client = chain_client
        self.executor = executor
        self.rate_limiter = rate_limiter
        self.coordinator: Optional[SingleFlightCoordinator] = None
        self.orchestrator: Optional[Orchestrator] = None
        if cache is not None and hash_store is not None and chain_client is not None and executor is not None:
            self._wire()

    def _wire(self):
        from verified_programs.services.verifier import Verifier

        self.coordinator = SingleFlightCoordinator(self.cache, metrics=self.metrics_collector)
        self.orchestrator = Orchestrator(
            hash_store=self.hash_store,
            coordinator=self.coordinator,
            executor=self.executor,
            verifier=Verifier(self.chain_client, self.hash_store, metrics=self.metrics_collector),
            chain_client=self.chain_client,
            metrics=self.metrics_collector,
        )
        if self.rate_limiter is None:
            self.rate_limiter = RateLimiter(self.cache, metrics=self.metrics_collector)

    async def initialize_services(self):
        logger.info("Initializing services...")
        from verified_programs.core.database import test_db_connection
        from verified_programs.core.redis_client import redis_client, test_redis_connection

        if not await test_db_connection():
            raise RuntimeError("Database is not reachable")
        if not await test_redis_connection():
            logger.warning("Redis is not reachable, deduplication and rate limiting are degraded")

        self.cache = redis_client
        self.hash_store = HashStore()
        self.chain_client = SolanaRpcClient(metrics=self.metrics_collector)
        self.executor = DockerBuildExecutor(metrics=self.metrics_collector)
        self._wire()
        logger.info("Services initialized successfully.")

    async def cleanup(self):
        """Stop running builds and close connections."""
        logger.info("Cleaning up services...")
        from verified_programs.core.database import close_db
        from verified_programs.core.redis_client import close_redis

        try:
            if self.orchestrator:
                await self.orchestrator.shutdown()
            if self.chain_client:
                await self.chain_client.close()
            await close_redis()
            await close_db()
            logger.info("✅ Services cleaned up successfully")
        except Exception as e:
            logger.error(f"❌ Error during service cleanup: {e}")

    def is_ready(self) -> bool:
        return self.orchestrator is not None and self.rate_limiter is not None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown."""
    logger.info("Starting Verified Programs API service...")

    services = ServiceRegistry()
    await services.initialize_services()
    app.state.services = services

    logger.info("✅ Application startup completed")

    yield

    logger.info("Shutting down Verified Programs API service...")
    await services.cleanup()
    logger.info("✅ Application shutdown completed")


app = FastAPI(
    title="Verified Programs API",
    description="Verifies that deployed Solana programs were built from a given repository and commit",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ALLOWED_ORIGINS,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1000)


async def get_services(request: Request) -> ServiceRegistry:
    """Get service registry from app state."""
    return request.app.state.services


# =============================================================================
# Error handling
# =============================================================================

def status_code_for(error: VerificationPipelineError) -> int:
    if isinstance(error, ValidationError):
        return 422
    if isinstance(error, ProgramNotFoundError):
        return 404
    if isinstance(error, ChainUnreachableError):
        return 503
    if isinstance(error, BuildError):
        return 503 if error.retryable else 502
    if isinstance(error, PersistenceError):
        return 503
    return 500


@app.exception_handler(VerificationPipelineError)
async def pipeline_error_handler(request: Request, exc: VerificationPipelineError):
    code = status_code_for(exc)
    if code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.kind}: {exc.message}")
    return JSONResponse(status_code=code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err["loc"] if p != "body"), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content=ValidationError("Invalid verification request", errors=errors).to_dict(),
    )


# =============================================================================
# Routes
# =============================================================================

@app.get("/")
async def root():
    """Endpoint index."""
    return {
        "service": "Verified Programs API",
        "version": __version__,
        "endpoints": [
            {
                "path": "/verify",
                "method": "POST",
                "description": "Start a build verification in the background",
                "params": {
                    "program_id": "Program ID of the program in mainnet",
                    "repository": "Git repository URL",
                    "commit_hash": "(Optional) Commit hash of the repository. Latest commit when omitted",
                    "lib_name": "(Optional) Library to build when the repository holds several",
                    "base_image": "(Optional) Base docker image",
                    "mount_path": "(Optional) Path of the program inside the repository",
                    "cargo_args": "(Optional) Extra cargo build arguments",
                    "bpf_flag": "(Optional) Build with cargo build-bpf",
                },
            },
            {
                "path": "/verify_sync",
                "method": "POST",
                "description": "Verify and wait (bounded) for the result; same params as /verify",
            },
            {
                "path": "/status/{program_id}",
                "method": "GET",
                "description": "Latest verification result of a program",
            },
        ],
        "health": "/healthz",
        "metrics": "/metrics",
    }


def submit_response(result: SubmitResult) -> JSONResponse:
    body = VerifyResponse(
        status=result.status,
        message=result.message,
        program_id=result.program_id,
        job_state=result.job_state,
        reason=result.reason,
    )
    if result.result is not None:
        record = result.result
        body.result = StatusResponse(
            program_id=record.program_id,
            is_verified=record.is_verified,
            message=MESSAGE_VERIFIED if record.is_verified else MESSAGE_NOT_VERIFIED,
            on_chain_hash=record.on_chain_hash,
            executable_hash=record.executable_hash,
            repo_url=result.repo_url,
            reason=record.reason,
            last_verified_at=record.verified_at,
            job_state=result.job_state,
        )
    return JSONResponse(
        status_code=SUBMIT_STATUS_CODES[result.status],
        content=body.model_dump(mode="json"),
    )


@app.post(
    "/verify",
    response_model=VerifyResponse,
    responses={202: {"model": VerifyResponse}, 409: {"model": VerifyResponse}, 422: {"model": ErrorResponse}},
    dependencies=[Depends(rate_limit(SCOPE_VERIFY))],
    tags=["Verification"],
)
async def verify(payload: VerifyRequest, services: ServiceRegistry = Depends(get_services)):
    """Start a verification; answers immediately."""
    result = await services.orchestrator.submit(payload.to_params(), wait=False)
    return submit_response(result)


@app.post(
    "/verify_sync",
    response_model=VerifyResponse,
    responses={202: {"model": VerifyResponse}, 409: {"model": VerifyResponse}, 422: {"model": ErrorResponse}},
    dependencies=[Depends(rate_limit(SCOPE_VERIFY))],
    tags=["Verification"],
)
async def verify_sync(payload: VerifyRequest, services: ServiceRegistry = Depends(get_services)):
    """Start a verification and wait for its outcome (bounded)."""
    result = await services.orchestrator.submit(payload.to_params(), wait=True)
    return submit_response(result)


@app.get(
    "/status/{program_id}",
    response_model=StatusResponse,
    responses={404: {"model": ErrorResponse}},
    dependencies=[Depends(rate_limit(SCOPE_STATUS))],
    tags=["Verification"],
)
async def verification_status(program_id: str, services: ServiceRegistry = Depends(get_services)):
    """Latest verification result of a program."""
    status = await services.orchestrator.status(program_id)
    if status is None:
        return JSONResponse(
            status_code=404,
            content=ErrorResponse(error="not_found", detail=f"No verification request for {program_id}").model_dump(),
        )
    return status


@app.get("/healthz", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint for load balancers and monitoring."""
    services: Optional[ServiceRegistry] = getattr(request.app.state, "services", None)
    cache_ok = bool(services and services.cache is not None and await services.cache.ping())

    database_ok = False
    if services and services.hash_store is not None:
        try:
            await services.hash_store.get_build("health-check")
            database_ok = True
        except PersistenceError:
            database_ok = False

    ready = bool(services and services.is_ready()) and database_ok
    return HealthResponse(
        service="verified-programs-api",
        status="healthy" if ready else "unhealthy",
        version=__version__,
        database=database_ok,
        cache=cache_ok,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@app.get("/metrics")
async def metrics(services: ServiceRegistry = Depends(get_services)) -> PlainTextResponse:
    """Prometheus metrics endpoint."""
    return PlainTextResponse(
        services.metrics_collector.get_metrics(),
        media_type=services.metrics_collector.content_type,
    )


def main():
    uvicorn.run(
        "verified_programs.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.APP_ENV == "development" and settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
