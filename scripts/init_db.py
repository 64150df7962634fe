"""Database initialization script.

Run this to create the Bannerlease schema (listings, rentals, payouts, X accounts).
"""

import asyncio
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config import config
from src.database import db
from src.logging_utils import get_logger, setup_logging

setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


async def main():
    """Initialize the database."""
    logger.info("Initializing Bannerlease database...")
    logger.info(f"Database path: {db.db_path}")

    await db.initialize()

    listings = await db.list_active_listings()
    eligible = await db.list_eligible_rentals()
    logger.info(f"{len(listings)} active listings, {len(eligible)} rentals under verification")
    logger.info("Database initialization complete!")


if __name__ == "__main__":
    asyncio.run(main())
