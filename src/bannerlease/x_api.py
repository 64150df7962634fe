"""Minimal X API client: OAuth 1.0a signing, token exchanges, banner upload."""

import base64
import hashlib
import hmac
import secrets
import time
from typing import Any, Optional
from urllib.parse import parse_qsl, quote

import httpx

from src.config import config
from src.logging_utils import get_logger

logger = get_logger(__name__)

REQUEST_TOKEN_URL = "https://api.twitter.com/oauth/request_token"
AUTHORIZE_URL = "https://api.twitter.com/oauth/authorize"
ACCESS_TOKEN_URL = "https://api.twitter.com/oauth/access_token"
OAUTH2_AUTHORIZE_URL = "https://twitter.com/i/oauth2/authorize"
OAUTH2_TOKEN_URL = "https://api.twitter.com/2/oauth2/token"
USERS_ME_URL = "https://api.twitter.com/2/users/me"
UPDATE_BANNER_URL = "https://upload.twitter.com/1.1/account/update_profile_banner.json"


class XApiError(Exception):
    """Non-success response from the X API."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def percent_encode(value: str) -> str:
    """RFC 3986 encoding as required by OAuth 1.0a."""
    return quote(str(value), safe="~-._")


def oauth1_signature(
    method: str,
    url: str,
    params: dict[str, str],
    consumer_secret: str,
    token_secret: str = "",
) -> str:
    """Compute an HMAC-SHA1 OAuth 1.0a signature.

    Args:
        method: HTTP method.
        url: Request URL without query string.
        params: oauth_* parameters plus any query or form parameters.
        consumer_secret: Application consumer secret.
        token_secret: User token secret, empty during the request-token step.

    Returns:
        Base64-encoded signature.
    """
    # Sort by encoded key, then encoded value
    normalized = "&".join(
        f"{k}={v}" for k, v in sorted((percent_encode(k), percent_encode(v)) for k, v in params.items())
    )
    base_string = "&".join([method.upper(), percent_encode(url), percent_encode(normalized)])
    key = f"{percent_encode(consumer_secret)}&{percent_encode(token_secret)}"
    digest = hmac.new(key.encode(), base_string.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


def oauth1_header(
    method: str,
    url: str,
    consumer_key: str,
    consumer_secret: str,
    token: str = "",
    token_secret: str = "",
    extra_params: Optional[dict[str, str]] = None,
    nonce: Optional[str] = None,
    timestamp: Optional[str] = None,
) -> str:
    """Build the Authorization header for an OAuth 1.0a request.

    Multipart bodies are not part of the signature base string, so only
    oauth_* and query parameters go into extra_params.
    """
    oauth_params = {
        "oauth_consumer_key": consumer_key,
        "oauth_nonce": nonce or secrets.token_hex(16),
        "oauth_signature_method": "HMAC-SHA1",
        "oauth_timestamp": timestamp or str(int(time.time())),
        "oauth_version": "1.0",
    }
    if token:
        oauth_params["oauth_token"] = token
    signed = {**oauth_params, **(extra_params or {})}
    oauth_params["oauth_signature"] = oauth1_signature(method, url, signed, consumer_secret, token_secret)
    for key, value in (extra_params or {}).items():
        if key.startswith("oauth_"):
            oauth_params[key] = value

    return "OAuth " + ", ".join(
        f'{percent_encode(k)}="{percent_encode(v)}"' for k, v in sorted(oauth_params.items())
    )


class XApiClient:
    """Calls to X needed for account connection and banner activation."""

    def __init__(
        self,
        http: Optional[httpx.AsyncClient] = None,
        consumer_key: str = None,
        consumer_secret: str = None,
        client_id: str = None,
        client_secret: str = None,
        timeout_seconds: float = 30.0,
    ):
        self._http = http
        self.consumer_key = consumer_key if consumer_key is not None else config.x_api_key
        self.consumer_secret = consumer_secret if consumer_secret is not None else config.x_api_secret
        self.client_id = client_id if client_id is not None else config.x_client_id
        self.client_secret = client_secret if client_secret is not None else config.x_client_secret
        self.timeout_seconds = timeout_seconds

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            if self._http is not None:
                response = await self._http.request(method, url, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as http:
                    response = await http.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise XApiError(f"{method} {url} failed: {e}") from e

        if response.status_code >= 400:
            logger.error(f"X API error {response.status_code} on {url}: {response.text[:500]}")
            raise XApiError(f"X API returned {response.status_code}", status_code=response.status_code)
        return response

    def _require_consumer(self) -> None:
        if not self.consumer_key or not self.consumer_secret:
            raise XApiError("X API consumer key/secret not configured")

    # OAuth 1.0a

    async def request_token(self, callback_url: str) -> dict[str, str]:
        """Obtain a temporary request token. Returns oauth_token and oauth_token_secret."""
        self._require_consumer()
        header = oauth1_header(
            "POST",
            REQUEST_TOKEN_URL,
            self.consumer_key,
            self.consumer_secret,
            extra_params={"oauth_callback": callback_url},
        )
        response = await self._request("POST", REQUEST_TOKEN_URL, headers={"Authorization": header})
        data = dict(parse_qsl(response.text))
        if not data.get("oauth_token") or not data.get("oauth_token_secret"):
            raise XApiError("Request token response missing oauth_token")
        return data

    def authorize_url(self, oauth_token: str) -> str:
        return f"{AUTHORIZE_URL}?oauth_token={percent_encode(oauth_token)}"

    async def access_token(self, oauth_token: str, token_secret: str, oauth_verifier: str) -> dict[str, str]:
        """Exchange an authorized request token.

        Returns:
            oauth_token, oauth_token_secret, user_id and screen_name.
        """
        self._require_consumer()
        header = oauth1_header(
            "POST",
            ACCESS_TOKEN_URL,
            self.consumer_key,
            self.consumer_secret,
            token=oauth_token,
            token_secret=token_secret,
            extra_params={"oauth_verifier": oauth_verifier},
        )
        response = await self._request(
            "POST",
            ACCESS_TOKEN_URL,
            params={"oauth_verifier": oauth_verifier},
            headers={"Authorization": header},
        )
        data = dict(parse_qsl(response.text))
        if not data.get("oauth_token") or not data.get("user_id"):
            raise XApiError("Access token response missing oauth_token or user_id")
        return data

    async def update_profile_banner(
        self,
        image: bytes,
        access_token: str,
        token_secret: str,
    ) -> Optional[str]:
        """Upload a new profile banner for the token's owner.

        Returns:
            banner_url if X reports one.
        """
        self._require_consumer()
        header = oauth1_header(
            "POST",
            UPDATE_BANNER_URL,
            self.consumer_key,
            self.consumer_secret,
            token=access_token,
            token_secret=token_secret,
        )
        response = await self._request(
            "POST",
            UPDATE_BANNER_URL,
            headers={"Authorization": header},
            files={"banner": ("banner.jpg", image, "image/jpeg")},
        )
        if not response.content:
            return None
        try:
            return response.json().get("banner_url")
        except ValueError:
            return None

    # OAuth 2.0 (PKCE)

    def oauth2_authorize_url(self, state: str, code_challenge: str, redirect_uri: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "scope": "tweet.read users.read offline.access",
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return str(httpx.URL(OAUTH2_AUTHORIZE_URL, params=params))

    async def oauth2_token(self, code: str, code_verifier: str, redirect_uri: str) -> dict[str, Any]:
        """Exchange an authorization code. Returns the token response body."""
        if not self.client_id or not self.client_secret:
            raise XApiError("X OAuth 2.0 client id/secret not configured")
        response = await self._request(
            "POST",
            OAUTH2_TOKEN_URL,
            auth=(self.client_id, self.client_secret),
            data={
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier,
            },
        )
        data = response.json()
        if not data.get("access_token"):
            raise XApiError("Token response missing access_token")
        return data

    async def users_me(self, access_token: str) -> dict[str, str]:
        """Return {id, username} for the bearer token's owner."""
        response = await self._request(
            "GET",
            USERS_ME_URL,
            params={"user.fields": "username"},
            headers={"Authorization": f"Bearer {access_token}"},
        )
        user = response.json().get("data") or {}
        if not user.get("id"):
            raise XApiError("users/me response missing data.id")
        return user
