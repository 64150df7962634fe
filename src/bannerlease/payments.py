"""x402 payment challenge and proof verification for rental creation.

Rental creation without an X-PAYMENT header answers with x402 v1 payment
terms. With a header, the proof is decoded and, when a facilitator is
configured, checked remotely before the rental is recorded as paid.
"""

import base64
import binascii
import json
import math
from typing import Any, Optional

import httpx

from src.config import config
from src.logging_utils import get_logger
from src.models import PaymentRequired, PaymentRequirement, PaymentVerification

logger = get_logger(__name__)

# Length of an EVM tx hash with 0x prefix
REFERENCE_LENGTH = 66


def to_atomic_units(amount: float, decimals: int) -> int:
    """Convert a token amount to integer atomic units, rounding down."""
    # round first so 0.07 * 10**6 == 69999.99999 does not lose a unit
    return math.floor(round(amount * 10**decimals, 6))


def decode_payment_header(header: str) -> dict[str, Any]:
    """Decode an X-PAYMENT header (base64 JSON, or raw JSON).

    Raises:
        ValueError: If the header is neither.
    """
    header = header.strip()
    if header.startswith("{"):
        return json.loads(header)
    try:
        decoded = base64.b64decode(header, validate=True)
        return json.loads(decoded)
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Malformed payment header: {e}") from e


def extract_reference(payload: dict[str, Any], header: str) -> str:
    """Find the transaction hash or signature that identifies a payment."""
    for key in ("txHash", "transactionHash", "hash"):
        if payload.get(key):
            return str(payload[key])
    inner = payload.get("payload")
    if isinstance(inner, dict) and inner.get("signature"):
        return str(inner["signature"])
    return header[:REFERENCE_LENGTH]


def extract_payer(payload: dict[str, Any]) -> Optional[str]:
    inner = payload.get("payload")
    if isinstance(inner, dict):
        authorization = inner.get("authorization")
        if isinstance(authorization, dict):
            return authorization.get("from")
    return None


class PaymentGateway:
    """Builds payment terms and checks payment proofs."""

    def __init__(self, http: Optional[httpx.AsyncClient] = None, facilitator_url: str = None):
        self._http = http
        self.facilitator_url = (facilitator_url if facilitator_url is not None else config.facilitator_url).rstrip("/")

    def requirements(self, total_price: float, duration: int, resource: str) -> PaymentRequired:
        """Build the x402 v1 payment terms for a rental.

        Args:
            total_price: Agreed total in USDC.
            duration: Rental length in days.
            resource: URL of the creation endpoint being paid for.

        Returns:
            PaymentRequired body listing the single accepted payment option.
        """
        requirement = PaymentRequirement(
            scheme="exact",
            asset=config.usdc_address,
            pay_to=config.pay_to_address,
            max_amount_required=str(to_atomic_units(total_price, config.usdc_decimals)),
            network=config.payment_network,
            resource=resource,
            description=f"Payment for banner rental: {duration} days, {total_price} USDC total",
            mime_type="application/json",
            max_timeout_seconds=config.payment_timeout_seconds,
        )
        return PaymentRequired(accepts=[requirement])

    async def verify(self, header: str, required: PaymentRequired) -> PaymentVerification:
        """Check a payment proof against the terms it should satisfy.

        Without a configured facilitator the decoded proof is trusted.

        Args:
            header: Raw X-PAYMENT header value.
            required: Terms the payment must satisfy.

        Returns:
            PaymentVerification with the payment reference when valid.
        """
        try:
            payload = decode_payment_header(header)
        except ValueError as e:
            logger.warning(f"Rejected payment header: {e}")
            return PaymentVerification(valid=False, error=str(e))

        reference = extract_reference(payload, header)
        payer = extract_payer(payload)

        if not self.facilitator_url:
            logger.info(f"No facilitator configured, trusting payment proof {reference[:20]}...")
            return PaymentVerification(valid=True, payer=payer, reference=reference)

        body = {
            "x402Version": required.x402_version,
            "paymentPayload": payload,
            "paymentRequirements": required.accepts[0].model_dump(by_alias=True),
        }
        try:
            if self._http is not None:
                response = await self._http.post(f"{self.facilitator_url}/verify", json=body)
            else:
                async with httpx.AsyncClient(timeout=30.0) as http:
                    response = await http.post(f"{self.facilitator_url}/verify", json=body)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Facilitator verification failed: {e}")
            return PaymentVerification(valid=False, error="Payment verification unavailable")

        if not data.get("isValid"):
            reason = data.get("invalidReason") or "Payment invalid"
            logger.warning(f"Facilitator rejected payment {reference[:20]}...: {reason}")
            return PaymentVerification(valid=False, error=reason)

        logger.info(f"Payment {reference[:20]}... verified, payer: {data.get('payer') or payer}")
        return PaymentVerification(valid=True, payer=data.get("payer") or payer, reference=reference)
