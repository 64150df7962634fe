"""SQLite database interface for listings, rentals and payouts.

Every rental transition is a single conditional UPDATE guarded by the state it
was read in, so overlapping verification runs or double-clicked approvals turn
into no-ops instead of corrupting a rental.
"""

from datetime import datetime
from typing import Optional

import aiosqlite

from .config import config
from .logging_utils import get_logger
from .models import (
    Decision,
    Listing,
    Payout,
    PayoutStatus,
    Rental,
    RentalStatus,
    XAccount,
)

logger = get_logger(__name__)

# SQL Schema
SCHEMA_SQL = """
-- Banner slots offered by profile owners
CREATE TABLE IF NOT EXISTS listings (
    listing_id TEXT PRIMARY KEY,
    screen_name TEXT NOT NULL,
    x_user_id TEXT,
    wallet_address TEXT NOT NULL,
    price_per_day REAL NOT NULL CHECK(price_per_day > 0),
    min_days INTEGER NOT NULL CHECK(min_days >= 1),
    message TEXT NOT NULL DEFAULT '',
    active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Rentals and their verification state
CREATE TABLE IF NOT EXISTS rentals (
    rental_id TEXT PRIMARY KEY,
    listing_id TEXT NOT NULL,
    advertiser_wallet_address TEXT NOT NULL,
    ad_image TEXT NOT NULL,
    ad_fingerprint TEXT,
    duration_days INTEGER NOT NULL CHECK(duration_days >= 1),
    total_price REAL NOT NULL,
    payment_reference TEXT,
    payment_status TEXT NOT NULL CHECK(payment_status IN ('unpaid', 'paid')),
    approval_status TEXT NOT NULL CHECK(approval_status IN ('pending', 'approved', 'rejected')),
    status TEXT NOT NULL CHECK(status IN ('pending', 'active', 'completed', 'rejected', 'failed')),
    days_paid INTEGER NOT NULL DEFAULT 0 CHECK(days_paid >= 0 AND days_paid <= duration_days),
    verification_failed INTEGER NOT NULL DEFAULT 0,
    last_verification_time TEXT,
    refund_amount REAL,
    started_at TEXT,
    current_banner_url TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (listing_id) REFERENCES listings(listing_id)
);

-- Payment and refund intents produced by verification outcomes
CREATE TABLE IF NOT EXISTS payouts (
    payout_id TEXT PRIMARY KEY,
    rental_id TEXT NOT NULL,
    kind TEXT NOT NULL CHECK(kind IN ('daily_payment', 'refund')),
    amount REAL NOT NULL,
    to_address TEXT NOT NULL,
    asset TEXT NOT NULL,
    network TEXT NOT NULL,
    status TEXT NOT NULL CHECK(status IN ('pending', 'sent', 'failed')),
    tx_hash TEXT,
    error_message TEXT,
    created_at TEXT NOT NULL,
    sent_at TEXT,
    FOREIGN KEY (rental_id) REFERENCES rentals(rental_id)
);

-- Connected X accounts (tokens encrypted at rest)
CREATE TABLE IF NOT EXISTS x_accounts (
    x_user_id TEXT PRIMARY KEY,
    screen_name TEXT NOT NULL,
    encrypted_access_token TEXT NOT NULL,
    encrypted_token_secret TEXT,
    encrypted_refresh_token TEXT,
    expires_at TEXT,
    updated_at TEXT NOT NULL
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_listings_active ON listings(active);
CREATE INDEX IF NOT EXISTS idx_rentals_listing_id ON rentals(listing_id);
CREATE INDEX IF NOT EXISTS idx_rentals_eligibility
    ON rentals(status, approval_status, payment_status, verification_failed);
CREATE INDEX IF NOT EXISTS idx_payouts_rental_id ON payouts(rental_id);
CREATE INDEX IF NOT EXISTS idx_payouts_status ON payouts(status);
CREATE INDEX IF NOT EXISTS idx_x_accounts_screen_name ON x_accounts(screen_name);
"""

# Eligibility invariant, shared by selection and by every verification write
ELIGIBLE_SQL = (
    "status = 'active' AND approval_status = 'approved' "
    "AND payment_status = 'paid' AND verification_failed = 0"
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_listing(row: aiosqlite.Row) -> Listing:
    return Listing(
        listing_id=row["listing_id"],
        screen_name=row["screen_name"],
        x_user_id=row["x_user_id"],
        wallet_address=row["wallet_address"],
        price_per_day=row["price_per_day"],
        min_days=row["min_days"],
        message=row["message"],
        active=bool(row["active"]),
        created_at=_dt(row["created_at"]),
        updated_at=_dt(row["updated_at"]),
    )


def _row_to_rental(row: aiosqlite.Row) -> Rental:
    return Rental(
        rental_id=row["rental_id"],
        listing_id=row["listing_id"],
        advertiser_wallet_address=row["advertiser_wallet_address"],
        ad_image=row["ad_image"],
        ad_fingerprint=row["ad_fingerprint"],
        duration_days=row["duration_days"],
        total_price=row["total_price"],
        payment_reference=row["payment_reference"],
        payment_status=row["payment_status"],
        approval_status=row["approval_status"],
        status=row["status"],
        days_paid=row["days_paid"],
        verification_failed=bool(row["verification_failed"]),
        last_verification_time=_dt(row["last_verification_time"]),
        refund_amount=row["refund_amount"],
        started_at=_dt(row["started_at"]),
        current_banner_url=row["current_banner_url"],
        created_at=_dt(row["created_at"]),
        updated_at=_dt(row["updated_at"]),
    )


def _row_to_payout(row: aiosqlite.Row) -> Payout:
    return Payout(
        payout_id=row["payout_id"],
        rental_id=row["rental_id"],
        kind=row["kind"],
        amount=row["amount"],
        to_address=row["to_address"],
        asset=row["asset"],
        network=row["network"],
        status=row["status"],
        tx_hash=row["tx_hash"],
        error_message=row["error_message"],
        created_at=_dt(row["created_at"]),
        sent_at=_dt(row["sent_at"]),
    )


def _row_to_x_account(row: aiosqlite.Row) -> XAccount:
    return XAccount(
        x_user_id=row["x_user_id"],
        screen_name=row["screen_name"],
        encrypted_access_token=row["encrypted_access_token"],
        encrypted_token_secret=row["encrypted_token_secret"],
        encrypted_refresh_token=row["encrypted_refresh_token"],
        expires_at=_dt(row["expires_at"]),
        updated_at=_dt(row["updated_at"]),
    )


async def _insert_payout(conn: aiosqlite.Connection, payout: Payout) -> None:
    await conn.execute(
        """
        INSERT INTO payouts
        (payout_id, rental_id, kind, amount, to_address, asset, network,
         status, tx_hash, error_message, created_at, sent_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            payout.payout_id,
            payout.rental_id,
            payout.kind,
            payout.amount,
            payout.to_address,
            payout.asset,
            payout.network,
            payout.status,
            payout.tx_hash,
            payout.error_message,
            _iso(payout.created_at),
            _iso(payout.sent_at),
        ),
    )


class Database:
    """Async repository for listings, rentals, payouts and X accounts."""

    def __init__(self, db_path: str = None):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file. Defaults to config.database_path.
        """
        self.db_path = db_path or config.database_path

    async def initialize(self) -> None:
        """Initialize database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.executescript(SCHEMA_SQL)
            await db.commit()
        logger.info(f"Database initialized at {self.db_path}")

    # Listing operations
    async def create_listing(self, listing: Listing) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO listings
                (listing_id, screen_name, x_user_id, wallet_address, price_per_day,
                 min_days, message, active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    listing.listing_id,
                    listing.screen_name,
                    listing.x_user_id,
                    listing.wallet_address,
                    listing.price_per_day,
                    listing.min_days,
                    listing.message,
                    1 if listing.active else 0,
                    _iso(listing.created_at),
                    _iso(listing.updated_at),
                ),
            )
            await db.commit()
        logger.info(f"Created listing {listing.listing_id} for @{listing.screen_name}")

    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        """Get a listing by ID.

        Args:
            listing_id: Listing identifier.

        Returns:
            Listing if found, None otherwise.
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM listings WHERE listing_id = ?",
                (listing_id,),
            )
            row = await cursor.fetchone()
            return _row_to_listing(row) if row else None

    async def list_active_listings(self) -> list[Listing]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM listings WHERE active = 1 ORDER BY created_at DESC"
            )
            rows = await cursor.fetchall()
            return [_row_to_listing(row) for row in rows]

    async def deactivate_listing(self, listing_id: str, now: datetime) -> bool:
        """Withdraw a listing. Listings are never deleted.

        Returns:
            True if the listing existed.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE listings SET active = 0, updated_at = ? WHERE listing_id = ?",
                (_iso(now), listing_id),
            )
            await db.commit()
            updated = cursor.rowcount == 1
        if updated:
            logger.info(f"Deactivated listing {listing_id}")
        return updated

    # Rental operations
    async def create_rental(self, rental: Rental) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO rentals
                (rental_id, listing_id, advertiser_wallet_address, ad_image, ad_fingerprint,
                 duration_days, total_price, payment_reference, payment_status,
                 approval_status, status, days_paid, verification_failed,
                 last_verification_time, refund_amount, started_at, current_banner_url,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rental.rental_id,
                    rental.listing_id,
                    rental.advertiser_wallet_address,
                    rental.ad_image,
                    rental.ad_fingerprint,
                    rental.duration_days,
                    rental.total_price,
                    rental.payment_reference,
                    rental.payment_status,
                    rental.approval_status,
                    rental.status,
                    rental.days_paid,
                    1 if rental.verification_failed else 0,
                    _iso(rental.last_verification_time),
                    rental.refund_amount,
                    _iso(rental.started_at),
                    rental.current_banner_url,
                    _iso(rental.created_at),
                    _iso(rental.updated_at),
                ),
            )
            await db.commit()
        logger.info(f"Created rental {rental.rental_id} on listing {rental.listing_id}")

    async def get_rental(self, rental_id: str) -> Optional[Rental]:
        """Get a rental by ID.

        Args:
            rental_id: Rental identifier.

        Returns:
            Rental if found, None otherwise.
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM rentals WHERE rental_id = ?",
                (rental_id,),
            )
            row = await cursor.fetchone()
            return _row_to_rental(row) if row else None

    async def list_rentals_for_listing(self, listing_id: str) -> list[Rental]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM rentals WHERE listing_id = ? ORDER BY created_at DESC",
                (listing_id,),
            )
            rows = await cursor.fetchall()
            return [_row_to_rental(row) for row in rows]

    async def list_eligible_rentals(self) -> list[Rental]:
        """Rentals the verification job may process, re-derived from each row."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                f"SELECT * FROM rentals WHERE {ELIGIBLE_SQL} ORDER BY created_at"
            )
            rows = await cursor.fetchall()
            return [_row_to_rental(row) for row in rows]

    async def apply_decision(
        self,
        rental_id: str,
        decision: Decision,
        now: datetime,
        ad_fingerprint: Optional[str] = None,
    ) -> bool:
        """Apply the owner's one-shot decision to a pending, paid rental.

        Args:
            rental_id: Rental to decide.
            decision: approved or rejected.
            now: Decision time, used as activation time on approval.
            ad_fingerprint: Fingerprint of the original ad, stored on approval.

        Returns:
            True if the rental was still pending and paid, False otherwise.
        """
        guard = "rental_id = ? AND approval_status = 'pending' AND payment_status = 'paid'"
        async with aiosqlite.connect(self.db_path) as db:
            if decision == "approved":
                cursor = await db.execute(
                    f"""
                    UPDATE rentals
                    SET approval_status = 'approved', status = 'active',
                        ad_fingerprint = COALESCE(?, ad_fingerprint),
                        started_at = ?, updated_at = ?
                    WHERE {guard}
                    """,
                    (ad_fingerprint, _iso(now), _iso(now), rental_id),
                )
            else:
                cursor = await db.execute(
                    f"""
                    UPDATE rentals
                    SET approval_status = 'rejected', status = 'rejected', updated_at = ?
                    WHERE {guard}
                    """,
                    (_iso(now), rental_id),
                )
            await db.commit()
            applied = cursor.rowcount == 1
        if applied:
            logger.info(f"Rental {rental_id} {decision}")
        return applied

    async def set_ad_fingerprint(self, rental_id: str, ad_fingerprint: str) -> bool:
        """Store a lazily derived reference fingerprint, only if none is stored yet."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE rentals SET ad_fingerprint = ? WHERE rental_id = ? AND ad_fingerprint IS NULL",
                (ad_fingerprint, rental_id),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def record_day_paid(
        self,
        rental_id: str,
        expected_days_paid: int,
        now: datetime,
        payout: Payout,
    ) -> Optional[RentalStatus]:
        """Accrue one verified day and record its payment intent atomically.

        The verification time stamp, the days_paid increment, the completion
        transition and the payout row are written in one transaction. The
        write is conditioned on eligibility and on days_paid still being the
        value the caller read.

        Args:
            rental_id: Rental that passed verification.
            expected_days_paid: days_paid as read before verification.
            now: Verification time.
            payout: Daily payment intent to insert.

        Returns:
            The rental's new status, or None if the guard did not match.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"""
                UPDATE rentals
                SET days_paid = days_paid + 1,
                    status = CASE WHEN days_paid + 1 >= duration_days THEN 'completed' ELSE status END,
                    last_verification_time = ?,
                    updated_at = ?
                WHERE rental_id = ? AND {ELIGIBLE_SQL}
                  AND days_paid = ? AND days_paid < duration_days
                """,
                (_iso(now), _iso(now), rental_id, expected_days_paid),
            )
            if cursor.rowcount != 1:
                await db.rollback()
                logger.info(f"Rental {rental_id} changed concurrently, day not accrued")
                return None

            await _insert_payout(db, payout)
            cursor = await db.execute(
                "SELECT status FROM rentals WHERE rental_id = ?",
                (rental_id,),
            )
            (status,) = await cursor.fetchone()
            await db.commit()

        logger.info(f"Rental {rental_id} accrued day {expected_days_paid + 1}, status={status}")
        return status

    async def record_verification_failure(
        self,
        rental_id: str,
        expected_days_paid: int,
        refund_amount: float,
        now: datetime,
        payout: Payout,
    ) -> bool:
        """Terminate a rental whose ad is gone and record its refund intent.

        Args:
            rental_id: Rental that failed verification.
            expected_days_paid: days_paid the refund was computed from.
            refund_amount: Amount owed back to the advertiser.
            now: Verification time.
            payout: Refund intent to insert.

        Returns:
            True if the rental was failed, False if the guard did not match.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"""
                UPDATE rentals
                SET verification_failed = 1, status = 'failed', refund_amount = ?,
                    last_verification_time = ?, updated_at = ?
                WHERE rental_id = ? AND {ELIGIBLE_SQL} AND days_paid = ?
                """,
                (refund_amount, _iso(now), _iso(now), rental_id, expected_days_paid),
            )
            if cursor.rowcount != 1:
                await db.rollback()
                logger.info(f"Rental {rental_id} changed concurrently, failure not recorded")
                return False

            await _insert_payout(db, payout)
            await db.commit()

        logger.info(f"Rental {rental_id} failed verification, refund {refund_amount:.6f}")
        return True

    async def update_banner_url(self, rental_id: str, banner_url: str, now: datetime) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "UPDATE rentals SET current_banner_url = ?, updated_at = ? WHERE rental_id = ?",
                (banner_url, _iso(now), rental_id),
            )
            await db.commit()

    # Payout operations
    async def get_payout(self, payout_id: str) -> Optional[Payout]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM payouts WHERE payout_id = ?",
                (payout_id,),
            )
            row = await cursor.fetchone()
            return _row_to_payout(row) if row else None

    async def list_payouts_for_rental(self, rental_id: str) -> list[Payout]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM payouts WHERE rental_id = ? ORDER BY created_at",
                (rental_id,),
            )
            rows = await cursor.fetchall()
            return [_row_to_payout(row) for row in rows]

    async def list_unsent_payouts(self) -> list[Payout]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM payouts WHERE status IN ('pending', 'failed') ORDER BY created_at"
            )
            rows = await cursor.fetchall()
            return [_row_to_payout(row) for row in rows]

    async def update_payout_status(
        self,
        payout_id: str,
        status: PayoutStatus,
        now: datetime,
        tx_hash: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Update payout status.

        Args:
            payout_id: Payout to update.
            status: New status (pending, sent, failed).
            now: Time of the status change.
            tx_hash: Transaction hash if sent.
            error_message: Error message if failed.
        """
        async with aiosqlite.connect(self.db_path) as db:
            sent_at = _iso(now) if status == "sent" else None
            await db.execute(
                """
                UPDATE payouts
                SET status = ?, tx_hash = ?, error_message = ?, sent_at = ?
                WHERE payout_id = ? AND status != 'sent'
                """,
                (status, tx_hash, error_message, sent_at, payout_id),
            )
            await db.commit()
        logger.info(f"Updated payout {payout_id} status to {status}")

    # X account operations
    async def upsert_x_account(self, account: XAccount) -> None:
        """Insert or refresh a connected account.

        A connection without a token secret (OAuth 2.0) never replaces an
        existing OAuth 1.0a token pair, which banner uploads depend on.
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO x_accounts
                (x_user_id, screen_name, encrypted_access_token, encrypted_token_secret,
                 encrypted_refresh_token, expires_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(x_user_id) DO UPDATE SET
                    screen_name = excluded.screen_name,
                    encrypted_access_token = CASE
                        WHEN excluded.encrypted_token_secret IS NULL AND x_accounts.encrypted_token_secret IS NOT NULL
                        THEN x_accounts.encrypted_access_token
                        ELSE excluded.encrypted_access_token
                    END,
                    encrypted_token_secret = COALESCE(excluded.encrypted_token_secret, x_accounts.encrypted_token_secret),
                    encrypted_refresh_token = excluded.encrypted_refresh_token,
                    expires_at = excluded.expires_at,
                    updated_at = excluded.updated_at
                """,
                (
                    account.x_user_id,
                    account.screen_name,
                    account.encrypted_access_token,
                    account.encrypted_token_secret,
                    account.encrypted_refresh_token,
                    _iso(account.expires_at),
                    _iso(account.updated_at),
                ),
            )
            await db.commit()
        logger.info(f"Stored X account @{account.screen_name}")

    async def get_x_account(
        self,
        x_user_id: Optional[str] = None,
        screen_name: Optional[str] = None,
    ) -> Optional[XAccount]:
        """Look up a connected account by user id, falling back to screen name."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            row = None
            if x_user_id:
                cursor = await db.execute(
                    "SELECT * FROM x_accounts WHERE x_user_id = ?",
                    (x_user_id,),
                )
                row = await cursor.fetchone()
            if row is None and screen_name:
                cursor = await db.execute(
                    "SELECT * FROM x_accounts WHERE screen_name = ? COLLATE NOCASE "
                    "ORDER BY updated_at DESC LIMIT 1",
                    (screen_name,),
                )
                row = await cursor.fetchone()
            return _row_to_x_account(row) if row else None

    async def delete_x_account(
        self,
        x_user_id: Optional[str] = None,
        screen_name: Optional[str] = None,
    ) -> bool:
        if not x_user_id and not screen_name:
            raise ValueError("x_user_id or screen_name is required")

        async with aiosqlite.connect(self.db_path) as db:
            if x_user_id:
                cursor = await db.execute("DELETE FROM x_accounts WHERE x_user_id = ?", (x_user_id,))
            else:
                cursor = await db.execute(
                    "DELETE FROM x_accounts WHERE screen_name = ? COLLATE NOCASE",
                    (screen_name,),
                )
            await db.commit()
            deleted = cursor.rowcount > 0
        logger.info(f"Disconnected X account {x_user_id or screen_name}: deleted={deleted}")
        return deleted


# Global database instance
db = Database()
