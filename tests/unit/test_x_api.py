"""Unit tests for the X API client against a mocked transport."""

import httpx
import pytest

from src.bannerlease.x_api import UPDATE_BANNER_URL, XApiClient, XApiError


def client_for(handler) -> XApiClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return XApiClient(http=http, consumer_key="ck", consumer_secret="cs", client_id="cid", client_secret="csec")


@pytest.mark.unit
class TestXApiClient:
    """Test request shapes and response parsing."""

    @pytest.mark.asyncio
    async def test_request_token_parses_form_response(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Authorization"].startswith("OAuth ")
            assert "oauth_callback=" in request.headers["Authorization"]
            return httpx.Response(200, text="oauth_token=t&oauth_token_secret=s&oauth_callback_confirmed=true")

        tokens = await client_for(handler).request_token("http://127.0.0.1:4030/x-oauth/callback")
        assert tokens["oauth_token"] == "t"
        assert tokens["oauth_token_secret"] == "s"

    @pytest.mark.asyncio
    async def test_banner_upload_is_signed_multipart(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["content_type"] = request.headers["Content-Type"]
            seen["body"] = request.read()
            return httpx.Response(200, json={"banner_url": "https://pbs.twimg.com/b"})

        url = await client_for(handler).update_profile_banner(b"\x89PNGdata", "user-token", "user-secret")

        assert url == "https://pbs.twimg.com/b"
        assert seen["url"] == UPDATE_BANNER_URL
        assert 'oauth_token="user-token"' in seen["auth"]
        assert seen["content_type"].startswith("multipart/form-data")
        assert b'name="banner"' in seen["body"]

    @pytest.mark.asyncio
    async def test_banner_upload_without_body(self):
        client = client_for(lambda request: httpx.Response(201))
        assert await client.update_profile_banner(b"img", "t", "s") is None

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        client = client_for(lambda request: httpx.Response(401, text="Unauthorized"))

        with pytest.raises(XApiError) as exc:
            await client.update_profile_banner(b"img", "t", "s")
        assert exc.value.status_code == 401

    @pytest.mark.asyncio
    async def test_oauth2_token_uses_basic_auth(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            seen["form"] = dict(httpx.QueryParams(request.read().decode()))
            return httpx.Response(200, json={"access_token": "bearer", "expires_in": 7200})

        tokens = await client_for(handler).oauth2_token("code", "verifier", "http://127.0.0.1:4030/x-oauth2/callback")

        assert tokens["access_token"] == "bearer"
        assert seen["auth"].startswith("Basic ")
        assert seen["form"]["grant_type"] == "authorization_code"
        assert seen["form"]["code_verifier"] == "verifier"

    @pytest.mark.asyncio
    async def test_users_me(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Authorization"] == "Bearer bearer"
            assert request.url.params["user.fields"] == "username"
            return httpx.Response(200, json={"data": {"id": "42", "username": "creator"}})

        assert await client_for(handler).users_me("bearer") == {"id": "42", "username": "creator"}
