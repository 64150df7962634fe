"""Connected-account credentials, encrypted at rest.

An XAccount row is resolved once into exactly one credential variant. Callers
branch on the variant instead of re-inspecting which token columns are set.
"""

import base64
import hashlib
from dataclasses import dataclass
from typing import Literal, Optional, Union

from cryptography.fernet import Fernet, InvalidToken

from src.config import config
from src.models import XAccount
from src.bannerlease.errors import CredentialError


@dataclass(frozen=True)
class OAuth1Credentials:
    """User-context OAuth 1.0a token pair, required for banner uploads."""

    access_token: str
    token_secret: str
    kind: Literal["oauth1"] = "oauth1"


@dataclass(frozen=True)
class OAuth2Credentials:
    """OAuth 2.0 bearer token. Sufficient to identify the account only."""

    access_token: str
    refresh_token: Optional[str] = None
    kind: Literal["oauth2"] = "oauth2"


@dataclass(frozen=True)
class NoCredentials:
    reason: str
    kind: Literal["none"] = "none"


Credentials = Union[OAuth1Credentials, OAuth2Credentials, NoCredentials]


class TokenCipher:
    """Fernet encryption for stored tokens.

    The configured secret is stretched with SHA-256 into a Fernet key, so any
    sufficiently random string works as TOKEN_ENCRYPTION_KEY.
    """

    def __init__(self, secret: str = None):
        secret = secret if secret is not None else config.token_encryption_key
        if not secret:
            raise CredentialError("TOKEN_ENCRYPTION_KEY is not configured")
        key = base64.urlsafe_b64encode(hashlib.sha256(secret.encode()).digest())
        self._fernet = Fernet(key)

    def encrypt(self, token: str) -> str:
        return self._fernet.encrypt(token.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except (InvalidToken, ValueError) as e:
            raise CredentialError("Stored token cannot be decrypted") from e


def resolve_credentials(account: Optional[XAccount], cipher: TokenCipher) -> Credentials:
    """Decrypt an account's tokens into the matching credential variant.

    Args:
        account: Stored account row, or None if the profile is not connected.
        cipher: Cipher the tokens were encrypted with.

    Returns:
        OAuth1Credentials when a token secret is stored, OAuth2Credentials for
        a bare access token, NoCredentials when nothing usable is stored.

    Raises:
        CredentialError: If a stored token fails to decrypt.
    """
    if account is None:
        return NoCredentials(reason="X account not connected")
    if not account.encrypted_access_token:
        return NoCredentials(reason="No access token stored")

    access_token = cipher.decrypt(account.encrypted_access_token)
    if account.encrypted_token_secret:
        return OAuth1Credentials(
            access_token=access_token,
            token_secret=cipher.decrypt(account.encrypted_token_secret),
        )

    refresh_token = None
    if account.encrypted_refresh_token:
        refresh_token = cipher.decrypt(account.encrypted_refresh_token)
    return OAuth2Credentials(access_token=access_token, refresh_token=refresh_token)
