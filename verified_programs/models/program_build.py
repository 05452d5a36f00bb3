"""
Program build model for the solana_program_builds table.
One row per program: the parameters of the most recent build request.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import JSON, Boolean, Column, DateTime, String, Text
from sqlalchemy.orm import relationship

from verified_programs.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BuildStatus(str, Enum):
    """Last known status of a program's build."""
    PENDING = "pending"
    BUILDING = "building"
    VERIFIED = "verified"
    NOT_VERIFIED = "not_verified"
    FAILED = "failed"


class ProgramBuild(Base):
    """Build request for a deployed program."""

    __tablename__ = "solana_program_builds"

    program_id = Column(String(64), primary_key=True)
    id = Column(String(36), nullable=False, default=lambda: str(uuid.uuid4()))

    # Source
    repository = Column(String(512), nullable=False)
    commit_hash = Column(String(64), nullable=True)
    lib_name = Column(String(128), nullable=True)

    # Build environment
    base_docker_image = Column(String(256), nullable=True)
    mount_path = Column(String(256), nullable=True)
    build_args = Column("cargo_args", JSON, nullable=False, default=list)
    bpf_flag = Column(Boolean, nullable=False, default=False)

    # Attempt bookkeeping
    attempt_id = Column(String(36), nullable=False, default=lambda: str(uuid.uuid4()))
    last_status = Column(String(32), nullable=False, default=BuildStatus.PENDING.value)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    result = relationship("VerifiedProgram", back_populates="build", uselist=False, lazy="selectin")

    def __repr__(self):
        return f"<ProgramBuild(program_id='{self.program_id}', repository='{self.repository}', status='{self.last_status}')>"

    def params_dict(self) -> dict:
        """Build parameters in the same shape as an intake request."""
        return {
            'program_id': self.program_id,
            'repository': self.repository,
            'commit_hash': self.commit_hash,
            'lib_name': self.lib_name,
            'base_image': self.base_docker_image,
            'mount_path': self.mount_path,
            'cargo_args': list(self.build_args or []),
            'bpf_flag': bool(self.bpf_flag),
        }
