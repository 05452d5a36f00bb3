"""
Configuration settings for the Verified Programs API.
Loads settings from environment variables with sensible defaults.
"""

import logging
from typing import List, Optional
from urllib.parse import quote_plus

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Application
    APP_ENV: str = Field(default="development", description="Application environment")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    DEBUG: bool = Field(default=False, description="Debug mode")
    HOST: str = Field(default="0.0.0.0", description="Bind address for the API server")
    PORT: int = Field(default=3000, description="Port for the API server")

    # Database Configuration
    DATABASE_URL: Optional[str] = Field(default=None, description="Full database URL (overrides DB_* components)")
    DB_HOST: str = Field(default="localhost", description="Database host")
    DB_PORT: int = Field(default=5432, description="Database port")
    DB_NAME: str = Field(default="verified_programs", description="Database name")
    DB_USER: str = Field(default="postgres", description="Database user")
    DB_PASSWORD: str = Field(default="", description="Database password")
    DB_POOL_SIZE: int = Field(default=10, description="Database connection pool size")

    # Redis Configuration
    REDIS_HOST: str = Field(default="localhost", description="Redis host")
    REDIS_PORT: int = Field(default=6379, description="Redis port")
    REDIS_DB: int = Field(default=0, description="Redis database number")
    REDIS_PASSWORD: Optional[str] = Field(default=None, description="Redis password")

    # Chain RPC
    RPC_URL: str = Field(default="https://api.mainnet-beta.solana.com", description="Solana JSON-RPC endpoint")
    RPC_TIMEOUT_SECONDS: float = Field(default=15.0, description="Timeout per RPC request")
    RPC_MAX_ATTEMPTS: int = Field(default=3, description="Attempts for transient RPC failures")

    # Build Executor
    DOCKER_BINARY: str = Field(default="docker", description="Container runtime CLI")
    GIT_BINARY: str = Field(default="git", description="Git CLI used for source checkout")
    DEFAULT_BASE_IMAGE: str = Field(
        default="solanafoundation/solana-verifiable-build:1.18.26",
        description="Build image used when a request does not name one",
    )
    BUILD_WORKDIR: str = Field(default="/tmp/verified-builds", description="Parent directory for source checkouts")
    BUILD_TIMEOUT_SECONDS: int = Field(default=1800, description="Hard wall-clock limit for one container build")
    CHECKOUT_TIMEOUT_SECONDS: int = Field(default=300, description="Limit for cloning the repository")
    BUILD_MAX_LOG_BYTES: int = Field(default=8 * 1024 * 1024, description="Ceiling for combined build output")
    BUILD_MAX_ARTIFACT_BYTES: int = Field(default=64 * 1024 * 1024, description="Ceiling for the produced executable")
    BUILD_CPUS: str = Field(default="2", description="CPU quota per build container")
    BUILD_MEMORY: str = Field(default="8g", description="Memory limit per build container")
    BUILD_PIDS_LIMIT: int = Field(default=4096, description="Process limit per build container")
    MAX_CONCURRENT_BUILDS: int = Field(default=2, description="Global ceiling on simultaneous builds")
    BUILD_QUEUE_TIMEOUT_SECONDS: int = Field(default=60, description="Wait for a free build slot before giving up")
    BUILD_REPRODUCIBILITY_RUNS: int = Field(default=1, description="Independent builds compared for determinism")
    LOG_EXCERPT_BYTES: int = Field(default=4096, description="Tail of build output kept for diagnostics")

    # Orchestrator / Single-Flight
    LOCK_TTL_SECONDS: int = Field(default=2400, description="Single-flight lock expiry (must exceed the build timeout)")
    JOB_STATE_TTL_SECONDS: int = Field(default=3600, description="Expiry of the ephemeral job state")
    WAIT_TIMEOUT_SECONDS: float = Field(default=120.0, description="How long a blocking caller waits for a build")
    WAIT_POLL_INTERVAL_SECONDS: float = Field(default=2.0, description="Poll interval while waiting on another build")
    SHUTDOWN_GRACE_SECONDS: float = Field(default=30.0, description="Time given to running jobs on shutdown")
    STATUS_FRESHNESS_HOURS: int = Field(default=24, description="Age after which a stored result is reported as stale")

    # Rate Limiting (per client and global, per scope)
    VERIFY_RATE_LIMIT: int = Field(default=1, description="Verification requests per client per window")
    VERIFY_RATE_WINDOW_SECONDS: int = Field(default=30, description="Verification rate window")
    VERIFY_GLOBAL_RATE_LIMIT: int = Field(default=1, description="Verification requests overall per global window")
    VERIFY_GLOBAL_RATE_WINDOW_SECONDS: int = Field(default=1, description="Global verification rate window")
    STATUS_RATE_LIMIT: int = Field(default=100, description="Status requests per client per window")
    STATUS_RATE_WINDOW_SECONDS: int = Field(default=1, description="Status rate window")
    STATUS_GLOBAL_RATE_LIMIT: int = Field(default=10000, description="Status requests overall per global window")
    STATUS_GLOBAL_RATE_WINDOW_SECONDS: int = Field(default=1, description="Global status rate window")

    # Crawler
    API_BASE_URL: str = Field(default="http://localhost:3000", description="Public intake used by the crawler")
    CRAWLER_INTERVAL_SECONDS: int = Field(default=3600, description="Time between crawler runs")
    CRAWLER_RECHECK_HOURS: int = Field(default=24, description="Age after which a program is re-submitted")
    CRAWLER_BATCH_SIZE: int = Field(default=100, description="Candidates submitted per run")
    CRAWLER_BACKOFF_BASE_SECONDS: int = Field(default=3600, description="First backoff step for busy programs")
    CRAWLER_BACKOFF_MAX_SECONDS: int = Field(default=7 * 24 * 3600, description="Backoff ceiling")
    CRAWLER_REQUEST_TIMEOUT_SECONDS: float = Field(default=30.0, description="Timeout for one intake call")

    # Security Configuration
    CORS_ALLOWED_ORIGINS: List[str] = Field(default=["*"], description="Allowed CORS origins")

    @property
    def database_url(self) -> str:
        """Async database URL, built from components unless DATABASE_URL is set."""
        if self.DATABASE_URL:
            url = self.DATABASE_URL
        elif self.DB_PASSWORD:
            url = f"postgresql://{self.DB_USER}:{quote_plus(self.DB_PASSWORD)}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        else:
            url = f"postgresql://{self.DB_USER}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return url

    @property
    def redis_url(self) -> str:
        """Construct Redis URL from components."""
        if self.REDIS_PASSWORD:
            return f"redis://:{quote_plus(self.REDIS_PASSWORD)}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    def validate_settings(self) -> None:
        """Validate critical settings."""
        if self.LOCK_TTL_SECONDS <= self.BUILD_TIMEOUT_SECONDS:
            raise ValueError("LOCK_TTL_SECONDS must exceed BUILD_TIMEOUT_SECONDS")
        if self.WAIT_TIMEOUT_SECONDS >= self.BUILD_TIMEOUT_SECONDS:
            raise ValueError("WAIT_TIMEOUT_SECONDS must be shorter than BUILD_TIMEOUT_SECONDS")
        if self.MAX_CONCURRENT_BUILDS < 1:
            raise ValueError("MAX_CONCURRENT_BUILDS must be at least 1")
        if self.BUILD_REPRODUCIBILITY_RUNS < 1:
            raise ValueError("BUILD_REPRODUCIBILITY_RUNS must be at least 1")

        if self.APP_ENV == "production":
            if not self.DB_PASSWORD and not self.DATABASE_URL:
                raise ValueError("DB_PASSWORD is required in production")
            if "*" in self.CORS_ALLOWED_ORIGINS:
                logger.warning("CORS_ALLOWED_ORIGINS contains a wildcard in production")


# Global settings instance
settings = Settings()

# Validate settings on import
try:
    settings.validate_settings()
except ValueError as e:
    logger.warning(f"Configuration validation warning: {e}")
