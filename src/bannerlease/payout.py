"""Payout engine for daily payments to owners and refunds to advertisers.

The rental state machine records each payout intent in the same transaction
as the transition that produced it. This engine only hands recorded intents to
a value sender and tracks whether they went out.
"""

import hashlib
from typing import Optional, Protocol

import httpx

from src.config import config
from src.database import Database
from src.logging_utils import get_logger
from src.models import Payout, utcnow

logger = get_logger(__name__)


class ValueSender(Protocol):
    """Moves value on-chain. Returns the transaction hash or raises."""

    async def send(self, payout: Payout) -> str: ...


class SimulatedValueSender:
    """Stand-in used when no settlement service is configured."""

    async def send(self, payout: Payout) -> str:
        tx_hash = "0x" + hashlib.sha256(payout.payout_id.encode()).hexdigest()
        logger.info(
            f"[SIMULATED] {payout.kind} of {payout.amount:.6f} {payout.asset} "
            f"to {payout.to_address}: {tx_hash}"
        )
        return tx_hash


class SettlementServiceSender:
    """Sends payouts through an external settlement service."""

    def __init__(self, base_url: str, api_key: str = "", timeout_seconds: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds

    async def send(self, payout: Payout) -> str:
        headers = {"Idempotency-Key": payout.payout_id}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout_seconds) as http:
            response = await http.post(
                "/transfers",
                json={
                    "payout_id": payout.payout_id,
                    "to": payout.to_address,
                    "amount": payout.amount,
                    "asset": payout.asset,
                    "network": payout.network,
                },
                headers=headers,
            )
            response.raise_for_status()
            tx_hash = response.json().get("tx_hash")

        if not tx_hash:
            raise ValueError("Settlement service returned no tx_hash")
        return tx_hash


def default_sender() -> ValueSender:
    if config.settlement_url:
        return SettlementServiceSender(
            config.settlement_url,
            api_key=config.settlement_api_key,
            timeout_seconds=config.settlement_timeout_seconds,
        )
    logger.warning("SETTLEMENT_URL not configured - using simulation mode")
    return SimulatedValueSender()


class PayoutEngine:
    """Dispatches recorded payout intents."""

    def __init__(self, db: Database, sender: Optional[ValueSender] = None):
        self.db = db
        self.sender = sender or default_sender()

    async def dispatch(self, payout: Payout) -> bool:
        """Send a recorded payout and persist the result.

        Never raises: a failed send is logged and left as 'failed' for
        retry_unsent to pick up.

        Args:
            payout: Payout intent already stored in the database.

        Returns:
            True if the payout was sent.
        """
        logger.info(
            f"Dispatching {payout.kind} {payout.payout_id}: "
            f"{payout.amount:.6f} {payout.asset} to {payout.to_address} on {payout.network}"
        )
        try:
            tx_hash = await self.sender.send(payout)
        except Exception as e:
            logger.error(f"Payout {payout.payout_id} failed: {e}", exc_info=True)
            try:
                await self.db.update_payout_status(payout.payout_id, "failed", utcnow(), error_message=str(e))
            except Exception:
                logger.error(f"Could not mark payout {payout.payout_id} failed", exc_info=True)
            return False

        try:
            await self.db.update_payout_status(payout.payout_id, "sent", utcnow(), tx_hash=tx_hash)
        except Exception:
            # Value already moved; a resend reuses payout_id as the idempotency key
            logger.error(f"Payout {payout.payout_id} sent as {tx_hash} but status not stored", exc_info=True)
        return True

    async def retry_unsent(self) -> int:
        """Re-dispatch payouts that are still pending or failed.

        Returns:
            Number of payouts sent.
        """
        payouts = await self.db.list_unsent_payouts()
        if not payouts:
            return 0

        logger.info(f"Retrying {len(payouts)} unsent payouts")
        sent = 0
        for payout in payouts:
            if await self.dispatch(payout):
                sent += 1
        return sent
