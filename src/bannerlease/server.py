"""Bannerlease marketplace service.

Main FastAPI application integrating:
- Listings offered by profile owners
- Paid rental creation (x402 v1 challenge) and owner approval
- Banner activation through the X API
- The recurring verification trigger with daily payments and refunds
- X account connection (OAuth 1.0a and OAuth 2.0 PKCE)
"""

import asyncio
import hmac
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse

from src.config import config, validate_config_for_service
from src.database import Database, db
from src.logging_utils import CorrelationIdContext, get_logger, setup_logging
from src.models import (
    CreateListingRequest,
    CreateRentalRequest,
    DecisionRequest,
    Listing,
    PaymentRequired,
    utcnow,
)
from src.bannerlease.activation import ActivationDispatcher, BannerActivator
from src.bannerlease.assets import AssetLoader
from src.bannerlease.credentials import OAuth1Credentials, TokenCipher, resolve_credentials
from src.bannerlease.errors import (
    CredentialError,
    OAuthStateError,
    RentalError,
    RentalNotFoundError,
    RentalStateConflict,
)
from src.bannerlease.oauth import OAuthFlows
from src.bannerlease.payments import PaymentGateway
from src.bannerlease.payout import PayoutEngine, ValueSender
from src.bannerlease.render import PlaywrightRenderGateway, RenderGateway
from src.bannerlease.rentals import RentalService
from src.bannerlease.scheduler import VerificationRunner
from src.bannerlease.state_store import ExpiringStateStore
from src.bannerlease.x_api import XApiClient, XApiError

# Validate configuration
validate_config_for_service("server")

# Setup logging
setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


@dataclass
class Services:
    """Everything the request handlers need, owned by one app instance."""

    db: Database
    rentals: RentalService
    runner: VerificationRunner
    payouts: PayoutEngine
    activator: BannerActivator
    dispatcher: ActivationDispatcher
    oauth: OAuthFlows
    states: ExpiringStateStore
    cipher: TokenCipher


def build_services(
    database: Optional[Database] = None,
    renderer: Optional[RenderGateway] = None,
    sender: Optional[ValueSender] = None,
    x_api: Optional[XApiClient] = None,
    payments: Optional[PaymentGateway] = None,
    assets: Optional[AssetLoader] = None,
) -> Services:
    database = database or db
    x_api = x_api or XApiClient()
    assets = assets or AssetLoader()
    cipher = TokenCipher()
    states = ExpiringStateStore(config.oauth_state_ttl_seconds)

    payouts = PayoutEngine(database, sender)
    activator = BannerActivator(database, x_api, assets, cipher)
    dispatcher = ActivationDispatcher(activator)
    rentals = RentalService(database, payments or PaymentGateway(), assets, payouts, dispatcher)
    runner = VerificationRunner(database, rentals, renderer or PlaywrightRenderGateway())

    return Services(
        db=database,
        rentals=rentals,
        runner=runner,
        payouts=payouts,
        activator=activator,
        dispatcher=dispatcher,
        oauth=OAuthFlows(database, x_api, cipher, states),
        states=states,
        cipher=cipher,
    )


def error_response(message: str, code: str, status_code: int) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, "code": code})


async def json_body(request: Request) -> dict:
    """Parse a JSON object body, treating anything else as empty."""
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        services: Pre-built services, mainly for tests. Built from config if None.
    """
    services = services or build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Initializing Bannerlease service...")
        await services.db.initialize()
        services.dispatcher.start()
        sweeper = asyncio.create_task(services.states.run_sweeper(config.oauth_state_sweep_seconds))
        logger.info("Bannerlease service initialized")
        try:
            yield
        finally:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
            await services.dispatcher.stop()

    app = FastAPI(
        title="Bannerlease",
        description="Profile banner rental marketplace",
        lifespan=lifespan,
    )
    app.state.services = services

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        with CorrelationIdContext(request.headers.get("X-Correlation-Id")) as correlation_id:
            response = await call_next(request)
            response.headers["X-Correlation-Id"] = correlation_id
            return response

    @app.exception_handler(RentalError)
    async def rental_error_handler(request: Request, exc: RentalError):
        logger.warning(f"{request.method} {request.url.path} rejected: {exc.code} ({exc.message})")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            field = ".".join(str(part) for part in first.get("loc", ())[1:]) or "body"
            message = f"Invalid {field}: {first.get('msg')}"
        else:
            message = "Invalid request"
        return error_response(message, "invalid_request", 400)

    @app.exception_handler(OAuthStateError)
    async def oauth_state_error_handler(request: Request, exc: OAuthStateError):
        logger.warning(f"OAuth callback rejected: {exc}")
        return error_response(str(exc), "invalid_state", 400)

    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint."""
        return {"status": "ok", "service": "bannerlease"}

    # Listings

    @app.post("/listings", status_code=201)
    async def create_listing(body: CreateListingRequest):
        listing = Listing(
            listing_id=str(uuid.uuid4()),
            screen_name=body.screen_name.lstrip("@"),
            x_user_id=body.x_user_id,
            wallet_address=body.wallet_address,
            price_per_day=body.price_per_day,
            min_days=body.min_days,
            message=body.message,
        )
        await services.db.create_listing(listing)
        return listing.model_dump(mode="json")

    @app.get("/listings")
    async def list_listings():
        listings = await services.db.list_active_listings()
        return {"listings": [listing.model_dump(mode="json") for listing in listings]}

    @app.get("/listings/{listing_id}")
    async def get_listing(listing_id: str):
        listing = await services.db.get_listing(listing_id)
        if listing is None:
            raise RentalNotFoundError("Listing not found", code="listing_not_found")
        return listing.model_dump(mode="json")

    @app.post("/listings/{listing_id}/deactivate")
    async def deactivate_listing(listing_id: str):
        if not await services.db.deactivate_listing(listing_id, utcnow()):
            raise RentalNotFoundError("Listing not found", code="listing_not_found")
        return {"success": True, "listingId": listing_id, "active": False}

    @app.get("/listings/{listing_id}/rentals")
    async def list_listing_rentals(listing_id: str):
        """Owner dashboard: every rental on a listing, newest first."""
        if await services.db.get_listing(listing_id) is None:
            raise RentalNotFoundError("Listing not found", code="listing_not_found")
        rentals = await services.db.list_rentals_for_listing(listing_id)
        return {"rentals": [rental.model_dump(mode="json") for rental in rentals]}

    # Rentals

    @app.post("/rentals/create")
    async def create_rental(
        request: Request,
        body: CreateRentalRequest,
        x_payment: Optional[str] = Header(None, alias="X-PAYMENT"),
    ):
        """Create a rental once the advertiser has paid.

        Without X-PAYMENT the response is a 402 with x402 v1 payment terms.
        """
        result = await services.rentals.create(body, x_payment, str(request.url))
        if isinstance(result, PaymentRequired):
            return JSONResponse(
                status_code=402,
                content=result.model_dump(by_alias=True, exclude_none=True),
            )
        return result.model_dump(by_alias=True)

    @app.post("/rentals/approve")
    async def decide_rental(body: DecisionRequest):
        rental = await services.rentals.decide(body.rental_id, body.decision)
        return {"success": True, "rental": rental.model_dump(mode="json")}

    @app.get("/rentals/{rental_id}")
    async def get_rental(rental_id: str):
        rental = await services.db.get_rental(rental_id)
        if rental is None:
            raise RentalNotFoundError("Rental not found", code="rental_not_found")
        payouts = await services.db.list_payouts_for_rental(rental_id)
        return {
            "rental": rental.model_dump(mode="json"),
            "payouts": [payout.model_dump(mode="json") for payout in payouts],
        }

    # Verification trigger

    @app.api_route("/cron/verify-rentals", methods=["GET", "POST"])
    async def verify_rentals(authorization: Optional[str] = Header(None)):
        """Run one verification pass. Requires the cron bearer secret."""
        expected = f"Bearer {config.cron_secret}"
        if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
            logger.warning("Rejected verification trigger with bad credentials")
            return error_response("Unauthorized", "unauthorized", 401)

        with CorrelationIdContext(f"run-{uuid.uuid4().hex[:12]}"):
            summary = await services.runner.run()
            retried = await services.payouts.retry_unsent()

        return {
            "success": True,
            "message": "Daily verification completed",
            **summary.as_response(),
            "payouts_retried": retried,
        }

    # Banner activation

    @app.post("/banner/flip")
    async def flip_banner(request: Request):
        """Manually (re)publish the ad of an approved rental."""
        body = await json_body(request)
        rental_id = body.get("rentalId")
        if not rental_id:
            return error_response("Missing rentalId", "invalid_request", 400)

        rental = await services.db.get_rental(rental_id)
        if rental is None:
            raise RentalNotFoundError("Rental not found", code="rental_not_found")
        if rental.payment_status != "paid":
            return error_response("Rental payment not confirmed", "payment_not_confirmed", 400)
        if rental.approval_status != "approved":
            raise RentalStateConflict("Rental not approved by creator", code="not_approved")

        try:
            banner_url = await services.activator.activate(rental_id)
        except CredentialError as e:
            return error_response(str(e), "credentials_required", 400)
        except XApiError as e:
            logger.error(f"Banner upload for rental {rental_id} failed: {e}")
            return error_response("Failed to update X banner", "upload_failed", 502)

        return {"success": True, "message": "Banner flipped successfully", "bannerUrl": banner_url}

    # Account connection

    @app.get("/x-oauth/initiate")
    async def oauth1_initiate():
        try:
            url = await services.oauth.initiate()
        except XApiError as e:
            logger.error(f"OAuth 1.0a initiate failed: {e}")
            return error_response("Failed to initiate OAuth", "oauth_failed", 502)
        return {"authUrl": url}

    @app.get("/x-oauth/callback")
    async def oauth1_callback(
        oauth_token: Optional[str] = Query(None),
        oauth_verifier: Optional[str] = Query(None),
        denied: Optional[str] = Query(None),
    ):
        if denied:
            return error_response("Access denied", "access_denied", 400)
        if not oauth_token or not oauth_verifier:
            return error_response("Missing oauth_token or oauth_verifier", "invalid_request", 400)
        try:
            account = await services.oauth.complete(oauth_token, oauth_verifier)
        except XApiError as e:
            logger.error(f"OAuth 1.0a token exchange failed: {e}")
            return error_response("Token exchange failed", "oauth_failed", 502)
        return {"connected": True, "screenName": account.screen_name, "xUserId": account.x_user_id}

    @app.get("/x-oauth2/authorize")
    async def oauth2_authorize():
        if not config.x_client_id:
            return error_response("X OAuth 2.0 client not configured", "not_configured", 500)
        return RedirectResponse(services.oauth.authorize_url(), status_code=307)

    @app.get("/x-oauth2/callback")
    async def oauth2_callback(
        code: Optional[str] = Query(None),
        state: Optional[str] = Query(None),
        error: Optional[str] = Query(None),
    ):
        if error:
            return error_response(error, "access_denied", 400)
        if not code or not state:
            return error_response("Missing code or state", "invalid_request", 400)
        try:
            account = await services.oauth.complete_oauth2(code, state)
        except XApiError as e:
            logger.error(f"OAuth 2.0 token exchange failed: {e}")
            return error_response("Token exchange failed", "oauth_failed", 502)
        return {"connected": True, "screenName": account.screen_name, "xUserId": account.x_user_id}

    @app.get("/x-account/check")
    async def check_account(
        x_user_id: Optional[str] = Query(None),
        screen_name: Optional[str] = Query(None),
    ):
        if not x_user_id and not screen_name:
            return error_response("x_user_id or screen_name is required", "invalid_request", 400)

        account = await services.db.get_x_account(x_user_id=x_user_id, screen_name=screen_name)
        if account is None:
            return {"connected": False}

        try:
            credentials = resolve_credentials(account, services.cipher)
        except CredentialError:
            logger.warning(f"Stored tokens for @{account.screen_name} cannot be decrypted")
            return {"connected": False, "screenName": account.screen_name, "xUserId": account.x_user_id}

        return {
            "connected": True,
            "screenName": account.screen_name,
            "xUserId": account.x_user_id,
            "canUpdateBanner": isinstance(credentials, OAuth1Credentials),
        }

    @app.post("/x-account/disconnect")
    async def disconnect_account(request: Request):
        body = await json_body(request)
        x_user_id = body.get("x_user_id") or body.get("xUserId")
        screen_name = body.get("screen_name") or body.get("screenName")
        if not x_user_id and not screen_name:
            return error_response("x_user_id or screen_name is required", "invalid_request", 400)

        deleted = await services.db.delete_x_account(x_user_id=x_user_id, screen_name=screen_name)
        return {"success": True, "disconnected": deleted}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting Bannerlease service on {config.host}:{config.port}")
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )
