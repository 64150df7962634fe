"""Unit tests for the rental state machine."""

import base64
from datetime import datetime, timezone

import pytest

from helpers import ADVERTISER_WALLET, OWNER_WALLET, FakeSender, data_url, payment_header
from src.models import CreateRentalRequest, PaymentRequired, RentalCreated
from src.bannerlease.assets import AssetLoader
from src.bannerlease.errors import (
    RentalNotFoundError,
    RentalStateConflict,
    RentalValidationError,
)
from src.bannerlease.fingerprint import fingerprint
from src.bannerlease.payments import PaymentGateway
from src.bannerlease.payout import PayoutEngine
from src.bannerlease.rentals import RentalService, refund_for

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
RESOURCE = "http://testserver/rentals/create"


class RecordingDispatcher:
    def __init__(self):
        self.dispatched = []

    def dispatch(self, rental_id: str) -> None:
        self.dispatched.append(rental_id)


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def service(test_db, sender, dispatcher):
    return RentalService(
        test_db,
        PaymentGateway(facilitator_url=""),
        AssetLoader(),
        PayoutEngine(test_db, sender),
        activation=dispatcher,
        fingerprint_size=32,
    )


def rental_request(ad_image: str, duration: int = 7, total_price: float = 0.07, listing_id: str = "lst-1"):
    return CreateRentalRequest(
        listing_id=listing_id,
        duration=duration,
        total_price=total_price,
        ad_image=ad_image,
        wallet_address=ADVERTISER_WALLET,
    )


async def create_paid_rental(service, ad_image, **kwargs) -> str:
    result = await service.create(rental_request(ad_image, **kwargs), payment_header(), RESOURCE)
    assert isinstance(result, RentalCreated)
    return result.rental_id


@pytest.mark.unit
class TestCreate:
    """Test rental creation and the payment challenge."""

    @pytest.mark.asyncio
    async def test_without_payment_returns_challenge(self, service, test_db, listing, ad_image):
        result = await service.create(rental_request(data_url(ad_image)), None, RESOURCE)

        assert isinstance(result, PaymentRequired)
        body = result.model_dump(by_alias=True, exclude_none=True)
        assert body["x402Version"] == 1
        requirement = body["accepts"][0]
        assert requirement["maxAmountRequired"] == "70000"
        assert requirement["payTo"] == "0x1111111111111111111111111111111111111111"
        assert requirement["network"] == "base-sepolia"
        assert requirement["resource"] == RESOURCE
        assert requirement["maxTimeoutSeconds"] == 300
        assert await test_db.list_rentals_for_listing("lst-1") == []

    @pytest.mark.asyncio
    async def test_paid_rental_awaits_approval(self, service, test_db, listing, ad_image):
        rental_id = await create_paid_rental(service, data_url(ad_image))

        rental = await test_db.get_rental(rental_id)
        assert rental.payment_status == "paid"
        assert rental.approval_status == "pending"
        assert rental.status == "pending"
        assert rental.days_paid == 0
        assert rental.verification_failed is False
        assert rental.payment_reference == "0x" + "ab" * 32

    @pytest.mark.asyncio
    async def test_price_mismatch_persists_nothing(self, service, test_db, listing, ad_image):
        with pytest.raises(RentalValidationError) as exc:
            await service.create(rental_request(data_url(ad_image), total_price=0.09), payment_header(), RESOURCE)

        assert exc.value.code == "price_mismatch"
        assert exc.value.message == "Price mismatch"
        assert await test_db.list_rentals_for_listing("lst-1") == []

    @pytest.mark.asyncio
    async def test_rounding_within_tolerance_is_accepted(self, service, listing, ad_image):
        await create_paid_rental(service, data_url(ad_image), total_price=0.075)

    @pytest.mark.asyncio
    async def test_duration_below_minimum(self, service, listing, ad_image):
        with pytest.raises(RentalValidationError) as exc:
            await service.create(rental_request(data_url(ad_image), duration=2, total_price=0.02), None, RESOURCE)
        assert exc.value.code == "invalid_duration"

    @pytest.mark.asyncio
    async def test_unsupported_asset(self, service, listing):
        with pytest.raises(RentalValidationError) as exc:
            await service.create(rental_request("ftp://example.com/ad.png"), None, RESOURCE)
        assert exc.value.code == "invalid_asset"

    @pytest.mark.asyncio
    async def test_inactive_listing(self, service, test_db, listing, ad_image):
        await test_db.deactivate_listing("lst-1", NOW)

        with pytest.raises(RentalNotFoundError) as exc:
            await service.create(rental_request(data_url(ad_image)), None, RESOURCE)
        assert exc.value.code == "listing_not_found"

    @pytest.mark.asyncio
    async def test_malformed_payment_is_challenged_again(self, service, test_db, listing, ad_image):
        result = await service.create(rental_request(data_url(ad_image)), "%%%not-base64%%%", RESOURCE)

        assert isinstance(result, PaymentRequired)
        assert result.error
        assert await test_db.list_rentals_for_listing("lst-1") == []


@pytest.mark.unit
class TestDecide:
    """Test the owner's one-shot decision."""

    @pytest.mark.asyncio
    async def test_approve_activates_and_fingerprints(self, service, dispatcher, listing, ad_image):
        rental_id = await create_paid_rental(service, data_url(ad_image))

        rental = await service.decide(rental_id, "approved", NOW)

        assert rental.approval_status == "approved"
        assert rental.status == "active"
        assert rental.started_at == NOW
        assert rental.ad_fingerprint == fingerprint(ad_image, 32)
        assert dispatcher.dispatched == [rental_id]

    @pytest.mark.asyncio
    async def test_second_decision_conflicts(self, service, dispatcher, listing, ad_image):
        rental_id = await create_paid_rental(service, data_url(ad_image))
        await service.decide(rental_id, "rejected", NOW)

        with pytest.raises(RentalStateConflict) as exc:
            await service.decide(rental_id, "approved", NOW)

        assert exc.value.code == "already_processed"
        assert dispatcher.dispatched == []

    @pytest.mark.asyncio
    async def test_unknown_rental(self, service):
        with pytest.raises(RentalNotFoundError):
            await service.decide("missing", "approved", NOW)

    @pytest.mark.asyncio
    async def test_unreadable_ad_defers_fingerprint(self, service, listing):
        broken = "data:image/png;base64," + base64.b64encode(b"not an image").decode()
        rental_id = await create_paid_rental(service, broken)

        rental = await service.decide(rental_id, "approved", NOW)

        assert rental.status == "active"
        assert rental.ad_fingerprint is None


@pytest.mark.unit
class TestRecordVerification:
    """Test verification outcomes and the payouts they produce."""

    @pytest.mark.asyncio
    async def test_present_pays_owner(self, service, sender, test_db, listing, ad_image):
        rental_id = await create_paid_rental(service, data_url(ad_image))
        await service.decide(rental_id, "approved", NOW)

        assert await service.record_verification(rental_id, True, NOW) == "paid"

        rental = await test_db.get_rental(rental_id)
        assert rental.days_paid == 1
        assert rental.last_verification_time == NOW
        assert len(sender.sent) == 1
        assert sender.sent[0].kind == "daily_payment"
        assert sender.sent[0].to_address == OWNER_WALLET
        assert sender.sent[0].amount == pytest.approx(0.01)

        payouts = await test_db.list_payouts_for_rental(rental_id)
        assert payouts[0].status == "sent"
        assert payouts[0].tx_hash == "0xtx0001"

    @pytest.mark.asyncio
    async def test_absent_refunds_unserved_days(self, service, sender, test_db, listing, ad_image):
        rental_id = await create_paid_rental(service, data_url(ad_image))
        await service.decide(rental_id, "approved", NOW)
        await service.record_verification(rental_id, True, NOW)

        assert await service.record_verification(rental_id, False, NOW) == "failed"

        rental = await test_db.get_rental(rental_id)
        assert rental.status == "failed"
        assert rental.verification_failed is True
        assert rental.days_paid == 1
        assert rental.refund_amount == pytest.approx(0.06)
        refund = sender.sent[-1]
        assert refund.kind == "refund"
        assert refund.to_address == ADVERTISER_WALLET
        assert refund.amount == pytest.approx(0.06)

    @pytest.mark.asyncio
    async def test_failed_rental_is_not_eligible(self, service, sender, test_db, listing, ad_image):
        rental_id = await create_paid_rental(service, data_url(ad_image))
        await service.decide(rental_id, "approved", NOW)
        await service.record_verification(rental_id, False, NOW)

        with pytest.raises(RentalStateConflict) as exc:
            await service.record_verification(rental_id, False, NOW)

        assert exc.value.code == "not_eligible"
        assert (await test_db.get_rental(rental_id)).refund_amount == pytest.approx(0.07)
        assert len(sender.sent) == 1

    @pytest.mark.asyncio
    async def test_pending_rental_is_not_eligible(self, service, listing, ad_image):
        rental_id = await create_paid_rental(service, data_url(ad_image))

        with pytest.raises(RentalStateConflict):
            await service.record_verification(rental_id, True, NOW)

    @pytest.mark.asyncio
    async def test_stale_days_paid_is_noop(self, service, sender, test_db, listing, ad_image):
        rental_id = await create_paid_rental(service, data_url(ad_image))
        await service.decide(rental_id, "approved", NOW)
        await service.record_verification(rental_id, True, NOW, expected_days_paid=0)

        assert await service.record_verification(rental_id, True, NOW, expected_days_paid=0) == "noop"
        assert await service.record_verification(rental_id, False, NOW, expected_days_paid=0) == "noop"

        rental = await test_db.get_rental(rental_id)
        assert rental.days_paid == 1
        assert rental.status == "active"
        assert len(sender.sent) == 1

    @pytest.mark.asyncio
    async def test_failed_send_keeps_transition(self, test_db, listing, ad_image):
        sender = FakeSender(fail=True)
        service = RentalService(
            test_db,
            PaymentGateway(facilitator_url=""),
            AssetLoader(),
            PayoutEngine(test_db, sender),
            fingerprint_size=32,
        )
        rental_id = await create_paid_rental(service, data_url(ad_image))
        await service.decide(rental_id, "approved", NOW)

        assert await service.record_verification(rental_id, True, NOW) == "paid"

        assert (await test_db.get_rental(rental_id)).days_paid == 1
        payouts = await test_db.list_payouts_for_rental(rental_id)
        assert payouts[0].status == "failed"
        assert "unreachable" in payouts[0].error_message


@pytest.mark.unit
def test_refund_for_unserved_days():
    assert refund_for(7, 2, 0.01) == pytest.approx(0.05)
    assert refund_for(3, 3, 1.5) == 0
