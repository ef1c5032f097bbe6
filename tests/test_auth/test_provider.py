"""Tests for the httpx-based OAuth provider client."""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import respx

from loopauth.auth.provider import (
    GOOGLE_REVOKE_ENDPOINT,
    GOOGLE_TOKEN_ENDPOINT,
    OAuthProvider,
    normalize_token_response,
)
from loopauth.errors import ProviderHTTPError
from loopauth.models import now_ms


def _form(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


class TestNormalizeTokenResponse:
    def test_expires_in_becomes_expiry_date(self) -> None:
        before = now_ms()
        tokens = normalize_token_response({"access_token": "a", "expires_in": 3599})
        assert "expires_in" not in tokens
        assert before + 3599_000 <= tokens["expiry_date"] <= now_ms() + 3599_000

    def test_drops_none_and_keeps_extra(self) -> None:
        tokens = normalize_token_response({"access_token": "a", "id_token": "i", "scope": None})
        assert tokens == {"access_token": "a", "id_token": "i"}


class TestGenerateAuthUrl:
    def test_parameters(self, provider: OAuthProvider) -> None:
        url = provider.generate_auth_url(
            redirect_uri="http://127.0.0.1:5555/oauth2callback",
            scope=["https://www.googleapis.com/auth/drive", "openid"],
            code_challenge="challenge",
            state="state123",
        )
        parsed = urlparse(url)
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == provider.auth_endpoint
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        assert params == {
            "client_id": provider.client.client_id,
            "redirect_uri": "http://127.0.0.1:5555/oauth2callback",
            "response_type": "code",
            "access_type": "offline",
            "prompt": "consent",
            "scope": "https://www.googleapis.com/auth/drive openid",
            "code_challenge": "challenge",
            "code_challenge_method": "S256",
            "state": "state123",
        }


class TestExchangeCode:
    @pytest.mark.asyncio
    async def test_success(self, provider: OAuthProvider) -> None:
        with respx.mock:
            route = respx.post(GOOGLE_TOKEN_ENDPOINT).mock(
                return_value=httpx.Response(
                    200,
                    json={
                        "access_token": "ya29.a",
                        "refresh_token": "1//r",
                        "expires_in": 3600,
                        "scope": "drive",
                        "token_type": "Bearer",
                    },
                )
            )
            tokens = await provider.exchange_code("4/code", "verifier", "http://127.0.0.1:1/oauth2callback")

        form = _form(route.calls.last.request)
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "4/code"
        assert form["code_verifier"] == "verifier"
        assert form["redirect_uri"] == "http://127.0.0.1:1/oauth2callback"
        assert form["client_id"] == provider.client.client_id
        assert form["client_secret"] == provider.client.client_secret
        assert tokens["access_token"] == "ya29.a"
        assert "expiry_date" in tokens
        assert provider.credentials["refresh_token"] == "1//r"

    @pytest.mark.asyncio
    async def test_oauth_error(self, provider: OAuthProvider) -> None:
        with respx.mock:
            respx.post(GOOGLE_TOKEN_ENDPOINT).mock(
                return_value=httpx.Response(
                    400, json={"error": "invalid_grant", "error_description": "Bad Request"}
                )
            )
            with pytest.raises(ProviderHTTPError) as exc_info:
                await provider.exchange_code("c", "v", "http://127.0.0.1:1/oauth2callback")
        assert exc_info.value.status == 400
        assert exc_info.value.error == "invalid_grant"
        assert exc_info.value.description == "Bad Request"

    @pytest.mark.asyncio
    async def test_missing_access_token(self, provider: OAuthProvider) -> None:
        with respx.mock:
            respx.post(GOOGLE_TOKEN_ENDPOINT).mock(return_value=httpx.Response(200, json={}))
            with pytest.raises(ProviderHTTPError, match="access_token"):
                await provider.exchange_code("c", "v", "http://127.0.0.1:1/oauth2callback")

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self, provider: OAuthProvider) -> None:
        with respx.mock:
            respx.post(GOOGLE_TOKEN_ENDPOINT).mock(side_effect=httpx.ConnectError("down"))
            with pytest.raises(httpx.ConnectError):
                await provider.exchange_code("c", "v", "http://127.0.0.1:1/oauth2callback")


class TestRefresh:
    @pytest.mark.asyncio
    async def test_keeps_refresh_token_and_notifies(self, provider: OAuthProvider) -> None:
        provider.set_credentials({"access_token": "old", "refresh_token": "1//r"})
        received: list[dict] = []

        async def listener(tokens: dict) -> None:
            received.append(tokens)

        provider.on_tokens(listener)
        with respx.mock:
            route = respx.post(GOOGLE_TOKEN_ENDPOINT).mock(
                return_value=httpx.Response(200, json={"access_token": "new", "expires_in": 3600})
            )
            await provider.refresh_access_token()

        form = _form(route.calls.last.request)
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "1//r"
        assert provider.credentials["access_token"] == "new"
        assert provider.credentials["refresh_token"] == "1//r"
        assert len(received) == 1
        assert "refresh_token" not in received[0]

    @pytest.mark.asyncio
    async def test_without_refresh_token(self, provider: OAuthProvider) -> None:
        with pytest.raises(ValueError):
            await provider.refresh_access_token()

    @pytest.mark.asyncio
    async def test_get_access_token_refreshes_when_expiring(self, provider: OAuthProvider) -> None:
        provider.set_credentials(
            {"access_token": "old", "refresh_token": "1//r", "expiry_date": now_ms() + 1000}
        )
        with respx.mock:
            respx.post(GOOGLE_TOKEN_ENDPOINT).mock(
                return_value=httpx.Response(200, json={"access_token": "new", "expires_in": 3600})
            )
            assert await provider.get_access_token() == "new"

    @pytest.mark.asyncio
    async def test_get_access_token_uses_fresh_token(self, provider: OAuthProvider) -> None:
        provider.set_credentials({"access_token": "fresh", "expiry_date": now_ms() + 3600_000})
        assert await provider.get_access_token() == "fresh"


class TestRevoke:
    @pytest.mark.asyncio
    async def test_posts_token(self, provider: OAuthProvider) -> None:
        with respx.mock:
            route = respx.post(GOOGLE_REVOKE_ENDPOINT).mock(return_value=httpx.Response(200))
            await provider.revoke_token("1//r")
        assert _form(route.calls.last.request) == {"token": "1//r"}

    @pytest.mark.asyncio
    async def test_error(self, provider: OAuthProvider) -> None:
        with respx.mock:
            respx.post(GOOGLE_REVOKE_ENDPOINT).mock(
                return_value=httpx.Response(400, json={"error": "invalid_token"})
            )
            with pytest.raises(ProviderHTTPError):
                await provider.revoke_token("bad")


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_shared_client_is_not_closed(self, client_credential) -> None:
        async with httpx.AsyncClient() as shared:
            async with OAuthProvider(client_credential, http_client=shared):
                pass
            assert not shared.is_closed

    def test_credentials_are_copied(self, provider: OAuthProvider) -> None:
        provider.set_credentials({"access_token": "a"})
        provider.credentials["access_token"] = "mutated"
        assert provider.credentials["access_token"] == "a"
