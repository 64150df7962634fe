"""Rental state machine.

Every legal rental transition goes through RentalService:

    pending --approve--> active --last day verified--> completed
       |                   |
       +--reject--> rejected +--ad missing--> failed (refund)

Transitions are single guarded UPDATEs in the database layer. A guard that
does not match means another caller already moved the rental on.
"""

import uuid
from datetime import datetime
from typing import Optional, Union

from src.config import config
from src.database import Database
from src.logging_utils import get_logger
from src.models import (
    CreateRentalRequest,
    Decision,
    PaymentRequired,
    Payout,
    Rental,
    RentalCreated,
    VerificationOutcome,
    utcnow,
)
from src.bannerlease.activation import ActivationDispatcher
from src.bannerlease.assets import AssetLoader, is_supported_asset
from src.bannerlease.errors import (
    AssetError,
    FingerprintError,
    RentalNotFoundError,
    RentalStateConflict,
    RentalValidationError,
)
from src.bannerlease.fingerprint import fingerprint_bytes
from src.bannerlease.payments import PaymentGateway
from src.bannerlease.payout import PayoutEngine

logger = get_logger(__name__)


def refund_for(duration_days: int, days_paid: int, price_per_day: float) -> float:
    """Amount owed back for the periods that were paid for but not served."""
    return round((duration_days - days_paid) * price_per_day, 6)


class RentalService:
    """Owns rental creation, the owner decision and verification outcomes."""

    def __init__(
        self,
        db: Database,
        payments: PaymentGateway,
        assets: AssetLoader,
        payouts: PayoutEngine,
        activation: Optional[ActivationDispatcher] = None,
        fingerprint_size: int = None,
        price_tolerance: float = None,
    ):
        self.db = db
        self.payments = payments
        self.assets = assets
        self.payouts = payouts
        self.activation = activation
        self.fingerprint_size = fingerprint_size or config.fingerprint_size
        self.price_tolerance = price_tolerance if price_tolerance is not None else config.price_tolerance

    async def create(
        self,
        request: CreateRentalRequest,
        payment_header: Optional[str],
        resource_url: str,
    ) -> Union[RentalCreated, PaymentRequired]:
        """Validate a rental request and, once paid, record it.

        Args:
            request: Advertiser request.
            payment_header: X-PAYMENT header value, if the client sent one.
            resource_url: URL of the creation endpoint, echoed in payment terms.

        Returns:
            RentalCreated once a valid payment was presented, otherwise the
            PaymentRequired terms the client must satisfy.

        Raises:
            RentalValidationError: On invalid asset, duration or price.
            RentalNotFoundError: If the listing is missing or inactive.
        """
        if not is_supported_asset(request.ad_image):
            raise RentalValidationError(
                "Ad image must be a data:image URL or an http(s) URL",
                code="invalid_asset",
            )

        listing = await self.db.get_listing(request.listing_id)
        if listing is None or not listing.active:
            raise RentalNotFoundError("Listing not found", code="listing_not_found")

        if request.duration < listing.min_days:
            raise RentalValidationError(
                f"Duration must be at least {listing.min_days} days",
                code="invalid_duration",
            )

        expected = listing.price_per_day * request.duration
        if abs(request.total_price - expected) > self.price_tolerance:
            logger.warning(
                f"Price mismatch on listing {listing.listing_id}: "
                f"got {request.total_price}, expected {expected}"
            )
            raise RentalValidationError("Price mismatch", code="price_mismatch")

        required = self.payments.requirements(request.total_price, request.duration, resource_url)
        if not payment_header:
            return required

        verification = await self.payments.verify(payment_header, required)
        if not verification.valid:
            required.error = verification.error or "Payment invalid"
            return required

        rental = Rental(
            rental_id=str(uuid.uuid4()),
            listing_id=listing.listing_id,
            advertiser_wallet_address=request.wallet_address,
            ad_image=request.ad_image,
            duration_days=request.duration,
            total_price=request.total_price,
            payment_reference=verification.reference,
            payment_status="paid",
            approval_status="pending",
            status="pending",
        )
        await self.db.create_rental(rental)
        logger.info(
            f"Rental {rental.rental_id} paid ({verification.reference}), awaiting approval "
            f"by @{listing.screen_name}"
        )
        return RentalCreated(rental_id=rental.rental_id)

    async def decide(self, rental_id: str, decision: Decision, now: Optional[datetime] = None) -> Rental:
        """Apply the owner's one-shot approve/reject decision.

        Args:
            rental_id: Rental to decide.
            decision: approved or rejected.
            now: Decision time, defaults to the current time.

        Returns:
            The rental after the transition.

        Raises:
            RentalNotFoundError: If the rental does not exist.
            RentalStateConflict: If the rental was already decided.
            RentalValidationError: If the rental is not paid.
        """
        now = now or utcnow()
        rental = await self.db.get_rental(rental_id)
        if rental is None:
            raise RentalNotFoundError("Rental not found", code="rental_not_found")
        if rental.approval_status != "pending":
            raise RentalStateConflict("Rental already processed", code="already_processed")
        if rental.payment_status != "paid":
            raise RentalValidationError("Payment not confirmed", code="payment_not_confirmed")

        ad_fingerprint = None
        if decision == "approved" and rental.ad_fingerprint is None:
            ad_fingerprint = await self._reference_fingerprint(rental)

        applied = await self.db.apply_decision(rental_id, decision, now, ad_fingerprint=ad_fingerprint)
        if not applied:
            raise RentalStateConflict("Rental already processed", code="already_processed")

        if decision == "approved" and self.activation is not None:
            self.activation.dispatch(rental_id)

        return await self.db.get_rental(rental_id)

    async def _reference_fingerprint(self, rental: Rental) -> Optional[str]:
        try:
            data = await self.assets.load(rental.ad_image)
            return fingerprint_bytes(data, self.fingerprint_size)
        except (AssetError, FingerprintError) as e:
            logger.warning(f"Could not fingerprint ad for rental {rental.rental_id}, deferring: {e}")
            return None

    async def ensure_reference_fingerprint(self, rental: Rental) -> str:
        """Return the stored ad fingerprint, deriving and storing it if absent.

        Raises:
            AssetError: If the ad cannot be loaded.
            FingerprintError: If the ad cannot be decoded.
        """
        if rental.ad_fingerprint:
            return rental.ad_fingerprint

        data = await self.assets.load(rental.ad_image)
        ad_fingerprint = fingerprint_bytes(data, self.fingerprint_size)
        if not await self.db.set_ad_fingerprint(rental.rental_id, ad_fingerprint):
            # Another run stored one first; keep using the stored value
            stored = await self.db.get_rental(rental.rental_id)
            if stored is not None and stored.ad_fingerprint:
                return stored.ad_fingerprint
        return ad_fingerprint

    async def record_verification(
        self,
        rental_id: str,
        ad_still_present: bool,
        now: Optional[datetime] = None,
        expected_days_paid: Optional[int] = None,
    ) -> VerificationOutcome:
        """Apply the outcome of one verification cycle.

        Args:
            rental_id: Rental that was verified.
            ad_still_present: Whether the banner still shows the ad.
            now: Verification time, stamped atomically with the transition.
            expected_days_paid: days_paid as observed when the rental was
                selected for verification. The transition only applies if the
                row still holds this value. Defaults to the current value.

        Returns:
            paid, completed, failed, or noop when another run got there first.

        Raises:
            RentalNotFoundError: If the rental does not exist.
            RentalStateConflict: If the rental is not eligible for verification.
        """
        now = now or utcnow()
        rental = await self.db.get_rental(rental_id)
        if rental is None:
            raise RentalNotFoundError("Rental not found", code="rental_not_found")
        if not rental.is_eligible:
            raise RentalStateConflict("Rental is not eligible for verification", code="not_eligible")
        if expected_days_paid is None:
            expected_days_paid = rental.days_paid
        if rental.days_paid != expected_days_paid:
            logger.info(f"Rental {rental_id} was verified since it was selected, skipping")
            return "noop"

        listing = await self.db.get_listing(rental.listing_id)
        if listing is None:
            raise RentalNotFoundError("Listing not found", code="listing_not_found")

        if ad_still_present:
            payout = Payout(
                payout_id=str(uuid.uuid4()),
                rental_id=rental_id,
                kind="daily_payment",
                amount=listing.price_per_day,
                to_address=listing.wallet_address,
                network=config.payment_network,
                created_at=now,
            )
            status = await self.db.record_day_paid(rental_id, expected_days_paid, now, payout)
            if status is None:
                return "noop"
            outcome: VerificationOutcome = "completed" if status == "completed" else "paid"
        else:
            refund = refund_for(rental.duration_days, expected_days_paid, listing.price_per_day)
            payout = Payout(
                payout_id=str(uuid.uuid4()),
                rental_id=rental_id,
                kind="refund",
                amount=refund,
                to_address=rental.advertiser_wallet_address,
                network=config.payment_network,
                created_at=now,
            )
            if not await self.db.record_verification_failure(rental_id, expected_days_paid, refund, now, payout):
                return "noop"
            outcome = "failed"

        await self.payouts.dispatch(payout)
        return outcome
