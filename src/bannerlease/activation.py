"""Banner activation: publishing an approved ad to the owner's profile banner.

Approval only enqueues a job on the ActivationDispatcher. The dispatcher runs
jobs on its own worker task with its own retry policy, so a slow or failing
upload never blocks or rolls back an approval.
"""

import asyncio
from typing import Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.config import config
from src.database import Database
from src.logging_utils import CorrelationIdContext, get_logger
from src.models import utcnow
from src.bannerlease.assets import AssetLoader
from src.bannerlease.credentials import OAuth1Credentials, TokenCipher, resolve_credentials
from src.bannerlease.errors import ActivationError, AssetError, CredentialError
from src.bannerlease.x_api import XApiClient, XApiError

logger = get_logger(__name__)

# Errors worth another attempt; anything else is final for the job
RETRYABLE_ERRORS = (XApiError, AssetError)


class BannerActivator:
    """Uploads a rental's ad as the listing owner's profile banner."""

    def __init__(
        self,
        db: Database,
        x_api: XApiClient,
        assets: AssetLoader,
        cipher: Optional[TokenCipher] = None,
    ):
        self.db = db
        self.x_api = x_api
        self.assets = assets
        self._cipher = cipher

    @property
    def cipher(self) -> TokenCipher:
        if self._cipher is None:
            self._cipher = TokenCipher()
        return self._cipher

    async def activate(self, rental_id: str) -> Optional[str]:
        """Publish the ad of an approved, paid rental.

        Args:
            rental_id: Rental to activate.

        Returns:
            Banner URL reported by X, or the ad reference if none was reported.

        Raises:
            ActivationError: If a precondition fails.
            CredentialError: If the owner's tokens are missing or unusable.
            XApiError: If the upload is rejected.
            AssetError: If the ad cannot be loaded.
        """
        rental = await self.db.get_rental(rental_id)
        if rental is None:
            raise ActivationError(f"Rental {rental_id} not found")
        if rental.payment_status != "paid":
            raise ActivationError("Rental payment not confirmed")
        if rental.approval_status != "approved":
            raise ActivationError("Rental not approved by creator")

        listing = await self.db.get_listing(rental.listing_id)
        if listing is None:
            raise ActivationError(f"Listing {rental.listing_id} not found")

        account = await self.db.get_x_account(x_user_id=listing.x_user_id, screen_name=listing.screen_name)
        credentials = resolve_credentials(account, self.cipher)
        if not isinstance(credentials, OAuth1Credentials):
            raise CredentialError(
                f"OAuth 1.0a tokens required for banner update of @{listing.screen_name} ({credentials.kind})"
            )

        image = await self.assets.load(rental.ad_image)
        logger.info(f"Uploading banner for rental {rental_id} to @{listing.screen_name}")
        banner_url = await self.x_api.update_profile_banner(
            image,
            credentials.access_token,
            credentials.token_secret,
        )
        banner_url = banner_url or rental.ad_image

        try:
            await self.db.update_banner_url(rental_id, banner_url, utcnow())
        except Exception:
            # The banner is already live; only the bookkeeping is missing
            logger.error(f"Banner for rental {rental_id} published but URL not stored", exc_info=True)

        logger.info(f"Banner activated for rental {rental_id}")
        return banner_url


class ActivationDispatcher:
    """Queue plus a single worker that runs activations with retries."""

    def __init__(
        self,
        activator: BannerActivator,
        max_attempts: int = None,
        retry_base_seconds: float = None,
    ):
        self.activator = activator
        self.max_attempts = max_attempts or config.activation_max_attempts
        self.retry_base_seconds = (
            retry_base_seconds if retry_base_seconds is not None else config.activation_retry_base_seconds
        )
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())
            logger.info("Activation dispatcher started")

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("Activation dispatcher stopped")

    def dispatch(self, rental_id: str) -> None:
        """Enqueue an activation. Never blocks and never raises."""
        self._queue.put_nowait(rental_id)
        logger.info(f"Queued banner activation for rental {rental_id}")

    async def join(self) -> None:
        """Wait until every queued activation has finished."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            rental_id = await self._queue.get()
            try:
                with CorrelationIdContext(f"activate-{rental_id}"):
                    await self.run_with_retries(rental_id)
            finally:
                self._queue.task_done()

    async def run_with_retries(self, rental_id: str) -> bool:
        """Run one activation, retrying transient failures with exponential backoff.

        Returns:
            True if the banner was published.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_base_seconds),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self.activator.activate(rental_id)
            return True
        except RETRYABLE_ERRORS as e:
            logger.error(f"Activation of rental {rental_id} failed after {self.max_attempts} attempts: {e}")
        except (ActivationError, CredentialError) as e:
            logger.error(f"Activation of rental {rental_id} aborted: {e}")
        except Exception:
            logger.error(f"Unexpected error activating rental {rental_id}", exc_info=True)
        return False

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"Activation attempt {retry_state.attempt_number} failed, retrying in {delay}s: "
            f"{retry_state.outcome.exception()}"
        )
