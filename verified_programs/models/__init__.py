"""
Models for the Verified Programs API
"""

from .program_build import BuildStatus, ProgramBuild
from .verified_program import VerifiedProgram

__all__ = [
    "BuildStatus",
    "ProgramBuild",
    "VerifiedProgram",
]
