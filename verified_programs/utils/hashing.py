"""
Executable hashing shared by the build executor and the chain client.

Program data accounts are allocated larger than the executable and padded
with zero bytes, so both sides strip trailing zeros before hashing. This keeps
a locally built ``.so`` and the deployed bytes comparable bit-for-bit.
"""

import hashlib


def strip_trailing_zeros(data: bytes) -> bytes:
    return data.rstrip(b"\x00")


def compute_executable_hash(data: bytes) -> str:
    """SHA-256 hex digest of an executable with its zero padding removed."""
    return hashlib.sha256(strip_trailing_zeros(data)).hexdigest()
