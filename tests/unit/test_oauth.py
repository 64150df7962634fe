"""Unit tests for the account connection handshakes."""

import base64
import hashlib
from urllib.parse import parse_qs, urlparse

import pytest

from src.bannerlease.credentials import OAuth1Credentials, OAuth2Credentials, TokenCipher, resolve_credentials
from src.bannerlease.errors import OAuthStateError
from src.bannerlease.oauth import OAuthFlows, pkce_pair
from src.bannerlease.state_store import ExpiringStateStore
from src.bannerlease.x_api import XApiClient


class FakeXApi(XApiClient):
    """X API client with canned token responses."""

    def __init__(self):
        super().__init__(consumer_key="ck", consumer_secret="cs", client_id="cid", client_secret="csec")
        self.exchanges = []

    async def request_token(self, callback_url: str) -> dict:
        return {"oauth_token": "req-token", "oauth_token_secret": "req-secret"}

    async def access_token(self, oauth_token: str, token_secret: str, oauth_verifier: str) -> dict:
        self.exchanges.append((oauth_token, token_secret, oauth_verifier))
        return {
            "oauth_token": "user-token",
            "oauth_token_secret": "user-secret",
            "user_id": "42",
            "screen_name": "creator",
        }

    async def oauth2_token(self, code: str, code_verifier: str, redirect_uri: str) -> dict:
        self.exchanges.append((code, code_verifier, redirect_uri))
        return {"access_token": "bearer", "refresh_token": "refresh", "expires_in": 7200}

    async def users_me(self, access_token: str) -> dict:
        return {"id": "42", "username": "creator"}


def s256(verifier: str) -> str:
    return base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).rstrip(b"=").decode()


@pytest.fixture
def cipher():
    return TokenCipher("oauth-test-secret")


@pytest.fixture
def flows(test_db, cipher):
    return OAuthFlows(test_db, FakeXApi(), cipher, ExpiringStateStore(ttl_seconds=600))


@pytest.mark.unit
class TestOAuth1Flow:
    """Test the OAuth 1.0a handshake."""

    @pytest.mark.asyncio
    async def test_initiate_and_complete(self, flows, test_db, cipher):
        url = await flows.initiate()
        assert url == "https://api.twitter.com/oauth/authorize?oauth_token=req-token"

        account = await flows.complete("req-token", "verifier")

        assert flows.x_api.exchanges == [("req-token", "req-secret", "verifier")]
        assert account.screen_name == "creator"
        stored = await test_db.get_x_account(x_user_id="42")
        assert resolve_credentials(stored, cipher) == OAuth1Credentials("user-token", "user-secret")

    @pytest.mark.asyncio
    async def test_request_token_redeemed_once(self, flows):
        await flows.initiate()
        await flows.complete("req-token", "verifier")

        with pytest.raises(OAuthStateError):
            await flows.complete("req-token", "verifier")

    @pytest.mark.asyncio
    async def test_unknown_token(self, flows):
        with pytest.raises(OAuthStateError):
            await flows.complete("never-issued", "verifier")


@pytest.mark.unit
class TestOAuth2Flow:
    """Test the OAuth 2.0 PKCE handshake."""

    def test_pkce_challenge_is_s256_of_verifier(self):
        verifier, challenge = pkce_pair()
        assert challenge == s256(verifier)
        assert 43 <= len(verifier) <= 128

    @pytest.mark.asyncio
    async def test_authorize_and_complete(self, flows, test_db, cipher):
        url = urlparse(flows.authorize_url())
        query = parse_qs(url.query)

        assert url.netloc == "twitter.com"
        assert query["scope"] == ["tweet.read users.read offline.access"]
        assert query["code_challenge_method"] == ["S256"]
        assert query["redirect_uri"] == ["http://127.0.0.1:4030/x-oauth2/callback"]

        account = await flows.complete_oauth2("auth-code", query["state"][0])

        code, verifier, _ = flows.x_api.exchanges[0]
        assert code == "auth-code"
        assert query["code_challenge"][0] == s256(verifier)
        assert account.expires_at is not None
        stored = await test_db.get_x_account(screen_name="creator")
        credentials = resolve_credentials(stored, cipher)
        assert isinstance(credentials, OAuth2Credentials)
        assert credentials.refresh_token == "refresh"

    @pytest.mark.asyncio
    async def test_expired_state(self, test_db, cipher):
        now = [0.0]
        states = ExpiringStateStore(ttl_seconds=600, clock=lambda: now[0])
        flows = OAuthFlows(test_db, FakeXApi(), cipher, states)
        query = parse_qs(urlparse(flows.authorize_url()).query)

        now[0] += 601
        with pytest.raises(OAuthStateError):
            await flows.complete_oauth2("auth-code", query["state"][0])
