"""
Verified Programs API
=====================

Reproducible-build verification for deployed Solana programs.

Features:
- Rebuilds a program from a public repository inside a disposable container
- Compares the executable hash against the deployed program data
- Single build in flight per program (Redis single-flight lock)
- Durable verification ledger (PostgreSQL)
- Background crawler for periodic re-verification
"""

__version__ = "0.1.0"
__author__ = "Verified Programs Team"
