"""Database initialization script.

Run this to create the rank-up ledger schema before the first start.
"""

import asyncio
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from rankup.config import config
from rankup.database import db
from rankup.logging_utils import get_logger, setup_logging

setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


async def main():
    """Initialize the database."""
    logger.info("Initializing rank-up database...")
    logger.info(f"Database path: {db.db_path}")

    await db.initialize()

    uncommitted = await db.list_uncommitted_publications()
    if uncommitted:
        logger.warning(f"{len(uncommitted)} publications are waiting for reconciliation")

    logger.info("Database initialization complete!")


if __name__ == "__main__":
    asyncio.run(main())
