"""Run one verification pass without going through the HTTP trigger.

Intended for a system scheduler (cron, systemd timer) on the same host as the
database. Exits non-zero if any rental hit an unexpected error.
"""

import asyncio
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config import config, validate_config_for_service
from src.database import db
from src.logging_utils import CorrelationIdContext, get_logger, setup_logging
from src.bannerlease.assets import AssetLoader
from src.bannerlease.payments import PaymentGateway
from src.bannerlease.payout import PayoutEngine
from src.bannerlease.render import PlaywrightRenderGateway
from src.bannerlease.rentals import RentalService
from src.bannerlease.scheduler import VerificationRunner

validate_config_for_service("cron")
setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


async def main() -> int:
    await db.initialize()

    payouts = PayoutEngine(db)
    rentals = RentalService(db, PaymentGateway(), AssetLoader(), payouts)
    runner = VerificationRunner(db, rentals, PlaywrightRenderGateway())

    with CorrelationIdContext(None) as run_id:
        logger.info(f"Starting verification run {run_id}")
        summary = await runner.run()
        retried = await payouts.retry_unsent()

    logger.info(f"Run summary: {summary.as_response()}, payouts retried: {retried}")
    return 1 if summary.errors else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
