"""Centralized configuration management for the Bannerlease service.

Loads all configuration from environment variables with sensible defaults.
"""

from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file
load_dotenv()


class Config(BaseSettings):
    """Main configuration class for the service and its scripts."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Service
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=4030)
    base_url: str = Field(default="http://127.0.0.1:4030", description="Public base URL")

    # Database
    database_path: str = Field(default="./bannerlease.db")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    # Recurring verification trigger
    cron_secret: str = Field(default="", description="Bearer secret for /cron/verify-rentals")

    # Payment challenge (x402 v1)
    pay_to_address: str = Field(default="", description="Wallet that receives rental payments")
    payment_network: str = Field(default="base-sepolia")
    usdc_address: str = Field(
        default="0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        description="Base Sepolia USDC address",
    )
    usdc_decimals: int = Field(default=6)
    payment_timeout_seconds: int = Field(default=300)
    facilitator_url: str = Field(default="", description="x402 facilitator used to verify payment proofs")
    price_tolerance: float = Field(default=0.01, description="Allowed agreed-price rounding error")

    # Settlement (payments to owners, refunds to advertisers)
    settlement_url: str = Field(default="", description="Value transfer service; empty means simulation mode")
    settlement_api_key: str = Field(default="")
    settlement_timeout_seconds: float = Field(default=30.0)

    # Verification job
    verification_cooldown_hours: float = Field(default=20.0)
    verification_concurrency: int = Field(default=4)
    render_timeout_seconds: float = Field(default=30.0)
    render_selector_timeout_seconds: float = Field(default=10.0)
    banner_crop_fraction: float = Field(default=0.2)
    match_tolerance: float = Field(default=0.10)
    fingerprint_size: int = Field(default=300)
    profile_url_template: str = Field(default="https://x.com/{screen_name}")
    asset_fetch_timeout_seconds: float = Field(default=15.0)

    # Banner activation
    activation_max_attempts: int = Field(default=3)
    activation_retry_base_seconds: float = Field(default=2.0)

    # X API (OAuth 1.0a for banner upload, OAuth 2.0 for account verification)
    x_api_key: str = Field(default="", description="OAuth 1.0a consumer key")
    x_api_secret: str = Field(default="", description="OAuth 1.0a consumer secret")
    x_callback_url: str = Field(default="")
    x_client_id: str = Field(default="", description="OAuth 2.0 client id")
    x_client_secret: str = Field(default="")
    x_redirect_uri: str = Field(default="")
    oauth_state_ttl_seconds: int = Field(default=600)
    oauth_state_sweep_seconds: int = Field(default=300)

    # Token encryption at rest (Fernet key, urlsafe base64)
    token_encryption_key: str = Field(default="")

    @property
    def oauth1_callback_url(self) -> str:
        return self.x_callback_url or f"{self.base_url}/x-oauth/callback"

    @property
    def oauth2_redirect_uri(self) -> str:
        # X rejects "localhost" redirect URIs
        return self.x_redirect_uri or f"{self.base_url.replace('localhost', '127.0.0.1')}/x-oauth2/callback"


# Global config instance
config = Config()


def validate_config_for_service(service: Literal["server", "cron"]) -> None:
    """Validate that required configuration is present for a specific entrypoint.

    Args:
        service: The entrypoint to validate configuration for.

    Raises:
        ValueError: If required configuration is missing.
    """
    errors = []

    if service == "server":
        if not config.pay_to_address:
            errors.append("PAY_TO_ADDRESS must be set to accept rental payments")
        if not config.token_encryption_key:
            errors.append("TOKEN_ENCRYPTION_KEY must be set to store X account tokens")

    if service in ["server", "cron"]:
        if not config.cron_secret:
            errors.append("CRON_SECRET must be set to protect the verification trigger")
        if not 0 < config.banner_crop_fraction <= 1:
            errors.append("BANNER_CROP_FRACTION must be in (0, 1]")
        if not 0 <= config.match_tolerance < 1:
            errors.append("MATCH_TOLERANCE must be in [0, 1)")

    if errors:
        error_msg = f"Configuration errors for {service}:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ValueError(error_msg)
