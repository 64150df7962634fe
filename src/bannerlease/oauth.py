"""Account connection flows: OAuth 1.0a for banner uploads, OAuth 2.0 PKCE for identity."""

import base64
import hashlib
import secrets
from datetime import timedelta
from typing import Optional

from src.config import config
from src.database import Database
from src.logging_utils import get_logger
from src.models import XAccount, utcnow
from src.bannerlease.credentials import TokenCipher
from src.bannerlease.errors import OAuthStateError
from src.bannerlease.state_store import ExpiringStateStore
from src.bannerlease.x_api import XApiClient

logger = get_logger(__name__)


def pkce_pair() -> tuple[str, str]:
    """Generate a PKCE (code_verifier, S256 code_challenge) pair."""
    verifier = secrets.token_urlsafe(48)
    challenge = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).rstrip(b"=").decode()
    return verifier, challenge


class OAuthFlows:
    """Runs both handshakes against a shared, injected state store."""

    def __init__(
        self,
        db: Database,
        x_api: XApiClient,
        cipher: TokenCipher,
        states: ExpiringStateStore,
    ):
        self.db = db
        self.x_api = x_api
        self.cipher = cipher
        self.states = states

    # OAuth 1.0a

    async def initiate(self) -> str:
        """Start an OAuth 1.0a handshake.

        Returns:
            URL the owner must visit to authorize the application.
        """
        tokens = await self.x_api.request_token(config.oauth1_callback_url)
        self.states.put(f"oauth1:{tokens['oauth_token']}", tokens["oauth_token_secret"])
        logger.info("Started OAuth 1.0a handshake")
        return self.x_api.authorize_url(tokens["oauth_token"])

    async def complete(self, oauth_token: str, oauth_verifier: str) -> XAccount:
        """Finish an OAuth 1.0a handshake and store the encrypted token pair.

        Raises:
            OAuthStateError: If the request token is unknown or expired.
        """
        token_secret = self.states.pop(f"oauth1:{oauth_token}")
        if token_secret is None:
            raise OAuthStateError("OAuth session expired or unknown")

        tokens = await self.x_api.access_token(oauth_token, token_secret, oauth_verifier)
        account = XAccount(
            x_user_id=tokens["user_id"],
            screen_name=tokens.get("screen_name", ""),
            encrypted_access_token=self.cipher.encrypt(tokens["oauth_token"]),
            encrypted_token_secret=self.cipher.encrypt(tokens["oauth_token_secret"]),
        )
        await self.db.upsert_x_account(account)
        logger.info(f"Connected @{account.screen_name} with OAuth 1.0a")
        return account

    # OAuth 2.0 PKCE

    def authorize_url(self) -> str:
        state = secrets.token_urlsafe(24)
        verifier, challenge = pkce_pair()
        self.states.put(f"oauth2:{state}", verifier)
        return self.x_api.oauth2_authorize_url(state, challenge, config.oauth2_redirect_uri)

    async def complete_oauth2(self, code: str, state: str) -> XAccount:
        """Finish an OAuth 2.0 PKCE handshake and store the encrypted tokens.

        Raises:
            OAuthStateError: If the state is unknown or expired.
        """
        verifier = self.states.pop(f"oauth2:{state}")
        if verifier is None:
            raise OAuthStateError("Invalid or expired state")

        tokens = await self.x_api.oauth2_token(code, verifier, config.oauth2_redirect_uri)
        user = await self.x_api.users_me(tokens["access_token"])

        expires_at = None
        if tokens.get("expires_in"):
            expires_at = utcnow() + timedelta(seconds=int(tokens["expires_in"]))
        refresh_token: Optional[str] = tokens.get("refresh_token")

        account = XAccount(
            x_user_id=user["id"],
            screen_name=user.get("username", ""),
            encrypted_access_token=self.cipher.encrypt(tokens["access_token"]),
            encrypted_refresh_token=self.cipher.encrypt(refresh_token) if refresh_token else None,
            expires_at=expires_at,
        )
        await self.db.upsert_x_account(account)
        logger.info(f"Connected @{account.screen_name} with OAuth 2.0")
        return account
