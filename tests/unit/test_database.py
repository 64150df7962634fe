"""Unit tests for the guarded rental transitions in the database layer."""

from datetime import datetime, timezone

import pytest

from helpers import ADVERTISER_WALLET, OWNER_WALLET
from src.models import Payout, Rental, XAccount

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_rental(rental_id: str = "rent-1", **overrides) -> Rental:
    fields = dict(
        rental_id=rental_id,
        listing_id="lst-1",
        advertiser_wallet_address=ADVERTISER_WALLET,
        ad_image="https://cdn.example.com/ad.png",
        duration_days=3,
        total_price=0.03,
        payment_status="paid",
        approval_status="pending",
        status="pending",
    )
    fields.update(overrides)
    return Rental(**fields)


def make_payout(payout_id: str, rental_id: str = "rent-1", kind: str = "daily_payment") -> Payout:
    return Payout(
        payout_id=payout_id,
        rental_id=rental_id,
        kind=kind,
        amount=0.01,
        to_address=OWNER_WALLET,
        network="base-sepolia",
    )


@pytest.mark.unit
class TestRentalTransitions:
    """Test that every transition is guarded by the state it was read in."""

    @pytest.mark.asyncio
    async def test_decision_applies_once(self, test_db, listing):
        await test_db.create_rental(make_rental())

        assert await test_db.apply_decision("rent-1", "approved", NOW, ad_fingerprint="0101")
        assert not await test_db.apply_decision("rent-1", "rejected", NOW)

        rental = await test_db.get_rental("rent-1")
        assert rental.approval_status == "approved"
        assert rental.status == "active"
        assert rental.started_at == NOW
        assert rental.ad_fingerprint == "0101"

    @pytest.mark.asyncio
    async def test_unpaid_rental_cannot_be_decided(self, test_db, listing):
        await test_db.create_rental(make_rental(payment_status="unpaid"))

        assert not await test_db.apply_decision("rent-1", "approved", NOW)
        assert (await test_db.get_rental("rent-1")).status == "pending"

    @pytest.mark.asyncio
    async def test_day_paid_requires_expected_days_paid(self, test_db, listing):
        await test_db.create_rental(make_rental())
        await test_db.apply_decision("rent-1", "approved", NOW)

        assert await test_db.record_day_paid("rent-1", 0, NOW, make_payout("p-1")) == "active"
        # A second writer that read days_paid=0 loses
        assert await test_db.record_day_paid("rent-1", 0, NOW, make_payout("p-2")) is None

        rental = await test_db.get_rental("rent-1")
        assert rental.days_paid == 1
        assert rental.last_verification_time == NOW
        payouts = await test_db.list_payouts_for_rental("rent-1")
        assert [p.payout_id for p in payouts] == ["p-1"]

    @pytest.mark.asyncio
    async def test_final_day_completes(self, test_db, listing):
        await test_db.create_rental(make_rental())
        await test_db.apply_decision("rent-1", "approved", NOW)

        statuses = [
            await test_db.record_day_paid("rent-1", day, NOW, make_payout(f"p-{day}"))
            for day in range(3)
        ]
        assert statuses == ["active", "active", "completed"]

        # Completed rentals are no longer eligible
        assert await test_db.record_day_paid("rent-1", 3, NOW, make_payout("p-x")) is None
        assert await test_db.list_eligible_rentals() == []

    @pytest.mark.asyncio
    async def test_failure_is_sticky(self, test_db, listing):
        await test_db.create_rental(make_rental())
        await test_db.apply_decision("rent-1", "approved", NOW)

        refund = make_payout("r-1", kind="refund")
        assert await test_db.record_verification_failure("rent-1", 0, 0.03, NOW, refund)
        assert not await test_db.record_verification_failure("rent-1", 0, 0.02, NOW, make_payout("r-2", kind="refund"))
        assert await test_db.record_day_paid("rent-1", 0, NOW, make_payout("p-1")) is None

        rental = await test_db.get_rental("rent-1")
        assert rental.status == "failed"
        assert rental.verification_failed is True
        assert rental.refund_amount == pytest.approx(0.03)
        assert len(await test_db.list_payouts_for_rental("rent-1")) == 1

    @pytest.mark.asyncio
    async def test_lazy_fingerprint_stored_once(self, test_db, listing):
        await test_db.create_rental(make_rental())

        assert await test_db.set_ad_fingerprint("rent-1", "0011")
        assert not await test_db.set_ad_fingerprint("rent-1", "1100")
        assert (await test_db.get_rental("rent-1")).ad_fingerprint == "0011"


@pytest.mark.unit
class TestPayoutStatus:
    """Test payout status bookkeeping."""

    @pytest.mark.asyncio
    async def test_sent_payout_is_final(self, test_db, listing):
        await test_db.create_rental(make_rental())
        await test_db.apply_decision("rent-1", "approved", NOW)
        await test_db.record_day_paid("rent-1", 0, NOW, make_payout("p-1"))

        await test_db.update_payout_status("p-1", "sent", NOW, tx_hash="0xabc")
        await test_db.update_payout_status("p-1", "failed", NOW, error_message="late failure")

        payout = await test_db.get_payout("p-1")
        assert payout.status == "sent"
        assert payout.tx_hash == "0xabc"
        assert payout.sent_at == NOW
        assert await test_db.list_unsent_payouts() == []


@pytest.mark.unit
class TestXAccounts:
    """Test connected account storage."""

    @pytest.mark.asyncio
    async def test_lookup_by_screen_name_is_case_insensitive(self, test_db):
        await test_db.upsert_x_account(
            XAccount(x_user_id="42", screen_name="Creator", encrypted_access_token="tok")
        )

        account = await test_db.get_x_account(screen_name="creator")
        assert account is not None
        assert account.x_user_id == "42"

    @pytest.mark.asyncio
    async def test_oauth2_reconnect_keeps_oauth1_pair(self, test_db):
        await test_db.upsert_x_account(
            XAccount(
                x_user_id="42",
                screen_name="creator",
                encrypted_access_token="oauth1-token",
                encrypted_token_secret="oauth1-secret",
            )
        )
        await test_db.upsert_x_account(
            XAccount(
                x_user_id="42",
                screen_name="creator",
                encrypted_access_token="oauth2-token",
                encrypted_refresh_token="refresh",
            )
        )

        account = await test_db.get_x_account(x_user_id="42")
        assert account.encrypted_access_token == "oauth1-token"
        assert account.encrypted_token_secret == "oauth1-secret"
        assert account.encrypted_refresh_token == "refresh"

    @pytest.mark.asyncio
    async def test_disconnect(self, test_db):
        await test_db.upsert_x_account(
            XAccount(x_user_id="42", screen_name="creator", encrypted_access_token="tok")
        )

        assert await test_db.delete_x_account(screen_name="CREATOR")
        assert await test_db.get_x_account(x_user_id="42") is None
        assert not await test_db.delete_x_account(x_user_id="42")

        with pytest.raises(ValueError):
            await test_db.delete_x_account()
