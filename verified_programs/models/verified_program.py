"""
Verification result model for the verified_programs table.
Holds the latest completed comparison per program.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship

from verified_programs.core.database import Base


class VerifiedProgram(Base):
    """Latest verification outcome for a program."""

    __tablename__ = "verified_programs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    program_id = Column(
        String(64),
        ForeignKey("solana_program_builds.program_id"),
        nullable=False,
        unique=True,
        index=True,
    )

    is_verified = Column(Boolean, nullable=False)
    on_chain_hash = Column(String(64), nullable=False)
    executable_hash = Column(String(64), nullable=False)
    reason = Column(String(64), nullable=True)  # hash_mismatch, non_deterministic_build

    verified_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    build = relationship("ProgramBuild", back_populates="result")

    def __repr__(self):
        return f"<VerifiedProgram(program_id='{self.program_id}', is_verified={self.is_verified})>"
