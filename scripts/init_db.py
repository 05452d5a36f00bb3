#!/usr/bin/env python3
"""
Database initialization script for the Verified Programs API.
Checks connectivity and runs Alembic migrations.
"""

import asyncio
import os
import subprocess
import sys
from pathlib import Path

# Add the project root to the Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from verified_programs.core.database import close_db, test_db_connection
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def main():
    """Initialize the database."""
    try:
        logger.info("Initializing Verified Programs database...")

        connected = await test_db_connection()
        await close_db()
        if not connected:
            logger.error("❌ Database connection test failed")
            sys.exit(1)
        logger.info("✅ Database connection test successful")

        logger.info("Running database migrations...")
        try:
            result = subprocess.run(
                ["alembic", "upgrade", "head"],
                capture_output=True,
                text=True,
                cwd=project_root,
                timeout=300,
                env=os.environ.copy(),
            )
        except FileNotFoundError:
            logger.error("❌ Alembic not found. Please install it: pip install alembic")
            sys.exit(1)
        except subprocess.TimeoutExpired:
            logger.error("❌ Database migrations timed out")
            sys.exit(1)

        if result.returncode != 0:
            logger.error(f"❌ Database migrations failed: {result.stderr}")
            sys.exit(1)
        logger.info("✅ Database migrations completed successfully")
        if result.stdout.strip():
            logger.info(f"Migration output: {result.stdout}")

        logger.info("🎉 Database initialization completed successfully!")

    except Exception as e:
        logger.error(f"❌ Database initialization failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
