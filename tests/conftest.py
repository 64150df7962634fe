import os

import pytest

# Set dummy environment variables for testing
# This must run before src.config is imported by any test
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("PAY_TO_ADDRESS", "0x1111111111111111111111111111111111111111")
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "test-token-encryption-key")
os.environ.setdefault("FACILITATOR_URL", "")
os.environ.setdefault("SETTLEMENT_URL", "")
os.environ.setdefault("LOG_FORMAT", "text")

from src.database import Database  # noqa: E402
from src.models import Listing  # noqa: E402
from helpers import OWNER_WALLET, split_image  # noqa: E402


@pytest.fixture
async def test_db(tmp_path):
    """Create a temporary test database."""
    db = Database(str(tmp_path / "test.db"))
    await db.initialize()
    return db


@pytest.fixture
async def listing(test_db):
    """An active listing at 0.01 USDC per day, minimum 3 days."""
    listing = Listing(
        listing_id="lst-1",
        screen_name="creator",
        x_user_id="42",
        wallet_address=OWNER_WALLET,
        price_per_day=0.01,
        min_days=3,
    )
    await test_db.create_listing(listing)
    return listing


@pytest.fixture
def ad_image():
    return split_image(500, 100)
