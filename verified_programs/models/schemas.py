"""
Pydantic models for intake requests and API responses.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Formats
# =============================================================================

# Base58 alphabet (no 0, O, I, l); Solana addresses are at most 44 characters
PROGRAM_ID_PATTERN = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{1,44}$")
COMMIT_HASH_PATTERN = re.compile(r"^[0-9a-fA-F]{4,64}$")
LIB_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_\-]{0,127}$")
IMAGE_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._\-/:@]{0,255}$")
MAX_BUILD_ARGS = 32
MAX_BUILD_ARG_LENGTH = 256


# =============================================================================
# Enums
# =============================================================================

class SubmitStatus(str, Enum):
    """Outcome of an intake call."""
    CACHED = "cached"
    IN_PROGRESS = "in_progress"
    ACCEPTED = "accepted"


class JobState(str, Enum):
    """Ephemeral state of an in-flight job, kept in the shared cache."""
    QUEUED = "queued"
    BUILDING = "building"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"


# =============================================================================
# Requests
# =============================================================================

class BuildParams(BaseModel):
    """Validated parameters of a verification request."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    program_id: str = Field(..., description="Program ID of the program in mainnet")
    repository: str = Field(..., description="Git repository URL")
    commit_hash: Optional[str] = Field(None, description="Commit hash; latest commit when omitted")
    lib_name: Optional[str] = Field(None, description="Library to build when the repository holds several")
    base_image: Optional[str] = Field(None, description="Base docker image for the build")
    mount_path: Optional[str] = Field(None, description="Path of the program inside the repository")
    build_args: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("cargo_args", "build_args"),
        description="Extra arguments passed to the cargo build command",
    )
    bpf_flag: bool = Field(False, description="Use cargo build-bpf instead of cargo build-sbf")

    @field_validator('program_id')
    @classmethod
    def validate_program_id(cls, v: str) -> str:
        v = v.strip()
        if not PROGRAM_ID_PATTERN.match(v):
            raise ValueError("program_id must be a base58 address of at most 44 characters")
        return v

    @field_validator('repository')
    @classmethod
    def validate_repository(cls, v: str) -> str:
        v = v.strip()
        if not v or any(c.isspace() for c in v):
            raise ValueError("repository must be a non-empty URL without whitespace")
        candidate = v if "://" in v else f"https://{v}"
        parsed = urlparse(candidate)
        if parsed.scheme not in ("http", "https"):
            raise ValueError("repository must use http:// or https://")
        if not parsed.hostname or "." not in parsed.hostname:
            raise ValueError("repository must name a host")
        if parsed.path.strip("/") == "":
            raise ValueError("repository must include a repository path")
        return v.rstrip("/")

    @field_validator('commit_hash')
    @classmethod
    def validate_commit_hash(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v.strip() == "":
            return None
        v = v.strip()
        if not COMMIT_HASH_PATTERN.match(v):
            raise ValueError("commit_hash must be a hexadecimal git revision")
        return v.lower()

    @field_validator('lib_name')
    @classmethod
    def validate_lib_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v.strip() == "":
            return None
        if not LIB_NAME_PATTERN.match(v.strip()):
            raise ValueError("lib_name may only contain letters, digits, '_' and '-'")
        return v.strip()

    @field_validator('base_image')
    @classmethod
    def validate_base_image(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v.strip() == "":
            return None
        if not IMAGE_PATTERN.match(v.strip()):
            raise ValueError("base_image is not a valid image reference")
        return v.strip()

    @field_validator('mount_path')
    @classmethod
    def validate_mount_path(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v.strip() in ("", ".", "/"):
            return None
        v = v.strip().strip("/")
        if any(part in ("..", "") for part in v.split("/")) or "\\" in v or "\x00" in v:
            raise ValueError("mount_path must be a relative path inside the repository")
        return v

    @field_validator('build_args')
    @classmethod
    def validate_build_args(cls, v: List[str]) -> List[str]:
        if len(v) > MAX_BUILD_ARGS:
            raise ValueError(f"at most {MAX_BUILD_ARGS} cargo_args are allowed")
        for arg in v:
            if not arg or len(arg) > MAX_BUILD_ARG_LENGTH:
                raise ValueError("cargo_args entries must be non-empty and short")
            if any(c in arg for c in ("\x00", "\n", "\r")):
                raise ValueError("cargo_args entries may not contain control characters")
        return list(v)

    def same_build_as(self, stored: Dict[str, Any]) -> bool:
        """True when ``stored`` (ProgramBuild.params_dict) describes this build."""
        return (
            stored.get('repository') == self.repository
            and stored.get('commit_hash') == self.commit_hash
            and stored.get('lib_name') == self.lib_name
            and stored.get('base_image') == self.base_image
            and stored.get('mount_path') == self.mount_path
            and list(stored.get('cargo_args') or []) == list(self.build_args)
            and bool(stored.get('bpf_flag')) == self.bpf_flag
        )


class VerifyRequest(BaseModel):
    """Raw intake body; validated into BuildParams by the orchestrator."""

    program_id: str
    repository: str
    commit_hash: Optional[str] = None
    lib_name: Optional[str] = None
    base_image: Optional[str] = None
    mount_path: Optional[str] = None
    cargo_args: Optional[List[str]] = None
    bpf_flag: Optional[bool] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "program_id": "PhoeNiXZ8ByJGLkxNfZRnkUfjvmuYqLR89jjFHGqdXY",
                "repository": "https://github.com/Ellipsis-Labs/phoenix-v1",
                "commit_hash": "b67d5d9d2b4a3b8c9a31c5bb8ab44a7f8b9c2f10",
                "lib_name": "phoenix",
            }
        }
    )

    def to_params(self) -> Dict[str, Any]:
        data = self.model_dump(exclude_none=True)
        data.setdefault('cargo_args', [])
        data.setdefault('bpf_flag', False)
        return data


# =============================================================================
# Responses
# =============================================================================

class VerificationRecord(BaseModel):
    """A stored verification outcome."""
    program_id: str
    is_verified: bool
    on_chain_hash: str
    executable_hash: str
    reason: Optional[str] = None
    verified_at: Optional[datetime] = None


class StatusResponse(BaseModel):
    """Response from /status/{program_id} and the result part of a submission"""

    program_id: str
    is_verified: bool
    message: str
    on_chain_hash: str
    executable_hash: str
    repo_url: str
    reason: Optional[str] = None
    last_verified_at: Optional[datetime] = None
    is_stale: bool = False
    job_state: Optional[str] = None
    last_status: Optional[str] = None
    last_error: Optional[str] = None


class VerifyResponse(BaseModel):
    """Response from /verify and /verify_sync"""

    status: SubmitStatus
    message: str
    program_id: str
    job_state: Optional[str] = None
    reason: Optional[str] = None
    result: Optional[StatusResponse] = None


class ErrorResponse(BaseModel):
    """Error response"""

    status: str = "error"
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response"""

    service: str
    status: str
    version: str
    database: bool
    cache: bool
    timestamp: str
