"""Recurring verification job.

Each run selects the eligible rentals, skips those verified within the
cooldown window, and for the rest renders the owner's profile, compares the
banner region against the ad and records the outcome. Rentals are processed
concurrently and isolated from each other: one rental's failure never stops
the run.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable

from src.config import config
from src.database import Database
from src.logging_utils import CorrelationIdContext, get_logger
from src.models import Rental, VerificationOutcome, VerificationRunSummary, utcnow
from src.bannerlease.errors import AssetError, FingerprintError, RenderError, RentalStateConflict
from src.bannerlease.fingerprint import fingerprint, is_match
from src.bannerlease.render import RenderGateway, crop_banner_region, profile_url
from src.bannerlease.rentals import RentalService

logger = get_logger(__name__)


def in_cooldown(rental: Rental, now: datetime, cooldown: timedelta) -> bool:
    """Whether the rental was verified less than cooldown ago."""
    if rental.last_verification_time is None:
        return False
    return now - rental.last_verification_time < cooldown


class VerificationRunner:
    """Runs one verification pass over all eligible rentals."""

    def __init__(
        self,
        db: Database,
        rentals: RentalService,
        renderer: RenderGateway,
        clock: Callable[[], datetime] = utcnow,
        cooldown_hours: float = None,
        concurrency: int = None,
        tolerance: float = None,
        crop_fraction: float = None,
        fingerprint_size: int = None,
    ):
        self.db = db
        self.rentals = rentals
        self.renderer = renderer
        self.clock = clock
        self.cooldown = timedelta(
            hours=cooldown_hours if cooldown_hours is not None else config.verification_cooldown_hours
        )
        self.concurrency = concurrency or config.verification_concurrency
        self.tolerance = tolerance if tolerance is not None else config.match_tolerance
        self.crop_fraction = crop_fraction or config.banner_crop_fraction
        self.fingerprint_size = fingerprint_size or config.fingerprint_size

    async def run(self) -> VerificationRunSummary:
        """Verify every eligible rental once.

        Returns:
            Counts of what happened. Never raises for a single rental's failure.
        """
        rentals = await self.db.list_eligible_rentals()
        summary = VerificationRunSummary(eligible=len(rentals))
        logger.info(f"Verification run started: {len(rentals)} eligible rentals")

        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(rental: Rental) -> VerificationOutcome:
            async with semaphore:
                with CorrelationIdContext(f"verify-{rental.rental_id}"):
                    return await self._process(rental)

        outcomes = await asyncio.gather(*(bounded(r) for r in rentals))
        for outcome in outcomes:
            summary.record(outcome)

        logger.info(
            f"Verification run finished: verified={summary.verified} paid={summary.paid} "
            f"completed={summary.completed} failed={summary.failed} "
            f"skipped={summary.skipped} errors={summary.errors}"
        )
        return summary

    async def _process(self, rental: Rental) -> VerificationOutcome:
        now = self.clock()
        if in_cooldown(rental, now, self.cooldown):
            logger.debug(f"Rental {rental.rental_id} verified at {rental.last_verification_time}, skipping")
            return "skipped"

        try:
            return await self._verify(rental, now)
        except RenderError as e:
            # Nothing is stamped, so the next run retries this rental
            logger.warning(f"Render failed for rental {rental.rental_id}: {e}")
            return "render_failed"
        except RentalStateConflict as e:
            logger.info(f"Rental {rental.rental_id} left eligibility during the run: {e}")
            return "noop"
        except Exception:
            logger.error(f"Verification of rental {rental.rental_id} failed", exc_info=True)
            return "error"

    async def _verify(self, rental: Rental, now: datetime) -> VerificationOutcome:
        listing = await self.db.get_listing(rental.listing_id)
        if listing is None:
            logger.error(f"Listing {rental.listing_id} of rental {rental.rental_id} not found")
            return "error"

        url = profile_url(listing.screen_name)
        snapshot = await self.renderer.render(url)

        try:
            banner = crop_banner_region(snapshot, self.crop_fraction)
            observed = fingerprint(banner, self.fingerprint_size)
            reference = await self.rentals.ensure_reference_fingerprint(rental)
            matched = is_match(reference, observed, self.tolerance)
        except (FingerprintError, AssetError) as e:
            # Fail open
            logger.warning(f"Could not compare banner for rental {rental.rental_id}, assuming present: {e}")
            matched = True

        logger.info(f"Rental {rental.rental_id} on @{listing.screen_name}: ad present={matched}")
        return await self.rentals.record_verification(
            rental.rental_id, matched, now, expected_days_paid=rental.days_paid
        )
