"""Loading of advertisement assets (inline data URLs or fetchable URLs)."""

import base64
import binascii
from typing import Optional

import httpx

from src.config import config
from src.logging_utils import get_logger
from src.bannerlease.errors import AssetError

logger = get_logger(__name__)

DATA_URL_PREFIX = "data:image/"


def is_supported_asset(ref: str) -> bool:
    """Whether ref is an inline image data URL or an http(s) URL."""
    if ref.startswith(DATA_URL_PREFIX):
        return ";base64," in ref
    return ref.startswith("https://") or ref.startswith("http://")


def decode_data_url(ref: str) -> bytes:
    try:
        _, payload = ref.split(",", 1)
        return base64.b64decode(payload, validate=True)
    except (ValueError, binascii.Error) as e:
        raise AssetError(f"Invalid image data URL: {e}") from e


class AssetLoader:
    """Resolves an ad asset reference to its encoded image bytes."""

    def __init__(self, http: Optional[httpx.AsyncClient] = None, timeout_seconds: float = None):
        self._http = http
        self.timeout_seconds = timeout_seconds or config.asset_fetch_timeout_seconds

    async def load(self, ref: str) -> bytes:
        """Load an asset.

        Args:
            ref: data:image URL or http(s) URL.

        Returns:
            Encoded image bytes.

        Raises:
            AssetError: If the reference is unsupported or cannot be fetched.
        """
        if ref.startswith(DATA_URL_PREFIX):
            return decode_data_url(ref)

        if not is_supported_asset(ref):
            raise AssetError("Unsupported asset reference")

        try:
            if self._http is not None:
                response = await self._http.get(ref, timeout=self.timeout_seconds)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=True) as http:
                    response = await http.get(ref)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise AssetError(f"Failed to fetch asset {ref}: {e}") from e

        logger.debug(f"Fetched asset {ref}: {len(response.content)} bytes")
        return response.content
