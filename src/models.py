"""Shared data models for the Bannerlease service.

All Pydantic models used across the state machine, repository, verification
job and HTTP surface.
"""

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, PositiveFloat, PositiveInt

PaymentStatus = Literal["unpaid", "paid"]
ApprovalStatus = Literal["pending", "approved", "rejected"]
RentalStatus = Literal["pending", "active", "completed", "rejected", "failed"]
Decision = Literal["approved", "rejected"]
PayoutKind = Literal["daily_payment", "refund"]
PayoutStatus = Literal["pending", "sent", "failed"]

# Result of one verification cycle for one rental
VerificationOutcome = Literal[
    "paid",  # ad present, one more day accrued
    "completed",  # ad present, final day accrued
    "failed",  # ad absent, rental terminated with refund
    "noop",  # another run already handled this period
    "skipped",  # inside the cooldown window
    "render_failed",  # transient render failure, retried next run
    "error",  # unexpected error, isolated to this rental
]


def utcnow() -> datetime:
    """Timezone-aware current UTC time used for every persisted timestamp."""
    return datetime.now(timezone.utc)


class Listing(BaseModel):
    """A banner slot offered by a profile owner."""

    listing_id: str = Field(description="Unique listing identifier")
    screen_name: str = Field(description="Profile handle whose banner is rented out")
    x_user_id: Optional[str] = Field(default=None, description="External account id of the profile")
    wallet_address: str = Field(description="Owner wallet that receives daily payments")

    price_per_day: float = Field(gt=0, description="Price per period in USDC")
    min_days: int = Field(ge=1, description="Minimum rental length in periods")
    message: str = Field(default="", description="Free-text pitch shown to advertisers")

    active: bool = Field(default=True, description="Whether the listing accepts new rentals")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Rental(BaseModel):
    """A rented banner slot and its verification state."""

    rental_id: str = Field(description="Unique rental identifier")
    listing_id: str
    advertiser_wallet_address: str = Field(description="Advertiser address used for refunds")

    ad_image: str = Field(description="data:image URL or fetchable http(s) URL")
    ad_fingerprint: Optional[str] = Field(default=None, description="Bitstring of the original ad")

    duration_days: int = Field(ge=1)
    total_price: float = Field(gt=0)
    payment_reference: Optional[str] = Field(default=None, description="Payment tx hash or proof prefix")

    payment_status: PaymentStatus = Field(default="unpaid")
    approval_status: ApprovalStatus = Field(default="pending")
    status: RentalStatus = Field(default="pending")

    days_paid: int = Field(default=0, ge=0)
    verification_failed: bool = Field(default=False)
    last_verification_time: Optional[datetime] = Field(default=None)
    refund_amount: Optional[float] = Field(default=None)

    started_at: Optional[datetime] = Field(default=None)
    current_banner_url: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_eligible(self) -> bool:
        """Whether the verification job may process this rental."""
        return (
            self.status == "active"
            and self.approval_status == "approved"
            and self.payment_status == "paid"
            and not self.verification_failed
        )


class Payout(BaseModel):
    """Recorded intent to move value for a rental."""

    payout_id: str = Field(description="Unique payout identifier")
    rental_id: str
    kind: PayoutKind
    amount: float = Field(description="Amount in USDC")
    to_address: str = Field(description="Receiving wallet")
    asset: str = Field(default="USDC")
    network: str
    status: PayoutStatus = Field(default="pending")
    tx_hash: Optional[str] = Field(default=None)
    error_message: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    sent_at: Optional[datetime] = Field(default=None)


class XAccount(BaseModel):
    """Connected X account with tokens encrypted at rest."""

    x_user_id: str
    screen_name: str
    encrypted_access_token: str
    encrypted_token_secret: Optional[str] = Field(default=None, description="OAuth 1.0a only")
    encrypted_refresh_token: Optional[str] = Field(default=None, description="OAuth 2.0 only")
    expires_at: Optional[datetime] = Field(default=None)
    updated_at: datetime = Field(default_factory=utcnow)


# Request / response bodies


class CreateListingRequest(BaseModel):
    """Owner request to offer a banner slot."""

    model_config = ConfigDict(populate_by_name=True)

    screen_name: str = Field(alias="screenName", min_length=1)
    x_user_id: Optional[str] = Field(default=None, alias="xUserId")
    wallet_address: str = Field(alias="walletAddress", min_length=1)
    price_per_day: PositiveFloat = Field(alias="pricePerDay")
    min_days: PositiveInt = Field(alias="minDays")
    message: str = Field(default="")


class CreateRentalRequest(BaseModel):
    """Advertiser request to rent a listing's banner."""

    model_config = ConfigDict(populate_by_name=True)

    listing_id: str = Field(alias="listingId", min_length=1)
    duration: PositiveInt
    total_price: PositiveFloat = Field(alias="totalPrice")
    ad_image: str = Field(alias="adImage", min_length=1)
    wallet_address: str = Field(alias="walletAddress", min_length=1)


class DecisionRequest(BaseModel):
    """Owner approval or rejection of a pending rental."""

    model_config = ConfigDict(populate_by_name=True)

    rental_id: str = Field(alias="rentalId", min_length=1)
    decision: Decision = Field(validation_alias=AliasChoices("decision", "action"))


class RentalCreated(BaseModel):
    """Result of a paid rental creation."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    rental_id: str = Field(alias="rentalId")
    approval_status: ApprovalStatus = Field(default="pending", alias="approvalStatus")
    message: str = "Rental request created. Waiting for creator approval."


class PaymentRequirement(BaseModel):
    """One accepted way to pay, in x402 v1 wire format."""

    model_config = ConfigDict(populate_by_name=True)

    scheme: str = "exact"
    asset: str
    pay_to: str = Field(alias="payTo")
    max_amount_required: str = Field(alias="maxAmountRequired", description="Integer atomic units")
    network: str
    resource: str
    description: str
    mime_type: str = Field(default="application/json", alias="mimeType")
    max_timeout_seconds: int = Field(alias="maxTimeoutSeconds")


class PaymentRequired(BaseModel):
    """Machine-readable payment terms returned instead of creating a rental."""

    model_config = ConfigDict(populate_by_name=True)

    x402_version: int = Field(default=1, alias="x402Version")
    accepts: list[PaymentRequirement]
    error: Optional[str] = None


class PaymentVerification(BaseModel):
    """Outcome of checking a payment proof."""

    valid: bool
    payer: Optional[str] = None
    reference: Optional[str] = None
    error: Optional[str] = None


class VerificationRunSummary(BaseModel):
    """Counts produced by one verification run. Not persisted."""

    eligible: int = 0
    verified: int = 0
    paid: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0

    @property
    def total(self) -> int:
        return self.eligible

    def record(self, outcome: VerificationOutcome) -> None:
        if outcome in ("paid", "completed"):
            self.verified += 1
            self.paid += 1
            if outcome == "completed":
                self.completed += 1
        elif outcome == "failed":
            self.verified += 1
            self.failed += 1
        elif outcome in ("skipped", "noop"):
            self.skipped += 1
        else:
            self.errors += 1

    def as_response(self) -> dict:
        return {**self.model_dump(), "total": self.total}
