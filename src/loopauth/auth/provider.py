"""Async OAuth2 provider client built on :mod:`httpx`.

:class:`OAuthProvider` is the thin provider-side half of the flow: it builds
authorization URLs, exchanges authorization codes, refreshes and revokes
tokens, and keeps the current token set in memory. It knows nothing about
files; persistence is the job of :class:`~loopauth.auth.token_store.TokenStore`,
which subscribes via :meth:`OAuthProvider.on_tokens`.

Token responses are normalised once: ``expires_in`` (seconds from now) is
converted to ``expiry_date`` (epoch milliseconds), the unit the token file
stores.

Non-2xx responses raise :class:`~loopauth.errors.ProviderHTTPError`;
transport failures propagate as :class:`httpx.TransportError`. Both are
meant to be passed through :func:`~loopauth.errors.classify_error`.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, Union
from urllib.parse import urlencode

import httpx

from loopauth.auth.pkce import CHALLENGE_METHOD
from loopauth.errors import ProviderHTTPError, extract_oauth_error
from loopauth.models import ClientCredential, now_ms

logger = logging.getLogger(__name__)

GOOGLE_AUTH_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_ENDPOINT = "https://oauth2.googleapis.com/revoke"

# Refresh this long before the provider's stated expiry.
EAGER_REFRESH_MS = 5 * 60 * 1000

TokenCallback = Callable[[dict[str, Any]], Awaitable[None]]


def normalize_token_response(data: Mapping[str, Any]) -> dict[str, Any]:
    """Convert a raw token endpoint response into token-file fields.

    ``expires_in`` becomes an absolute ``expiry_date`` in epoch
    milliseconds; every other field is kept as returned.
    """
    tokens = {k: v for k, v in data.items() if v is not None}
    expires_in = tokens.pop("expires_in", None)
    if expires_in is not None:
        tokens["expiry_date"] = now_ms() + int(float(expires_in) * 1000)
    return tokens


class OAuthProvider:
    """OAuth2 client for one registered application.

    Args:
        client: The application's client identity.
        auth_endpoint: Authorization endpoint URL.
        token_endpoint: Token endpoint URL (code exchange and refresh).
        revoke_endpoint: Token revocation endpoint URL.
        http_client: Optional shared :class:`httpx.AsyncClient`. When
            omitted, one is created lazily and closed by :meth:`aclose`.
        timeout: Request timeout in seconds for the owned client.
    """

    def __init__(
        self,
        client: ClientCredential,
        *,
        auth_endpoint: str = GOOGLE_AUTH_ENDPOINT,
        token_endpoint: str = GOOGLE_TOKEN_ENDPOINT,
        revoke_endpoint: str = GOOGLE_REVOKE_ENDPOINT,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self._client = client
        self.auth_endpoint = auth_endpoint
        self.token_endpoint = token_endpoint
        self.revoke_endpoint = revoke_endpoint
        self._http = http_client
        self._owns_http = http_client is None
        self._timeout = timeout
        self._credentials: dict[str, Any] = {}
        self._listeners: list[TokenCallback] = []

    @property
    def client(self) -> ClientCredential:
        return self._client

    @property
    def credentials(self) -> dict[str, Any]:
        """A copy of the in-memory token set."""
        return dict(self._credentials)

    def set_credentials(self, tokens: Mapping[str, Any]) -> None:
        """Replace the in-memory token set."""
        self._credentials = dict(tokens)

    def on_tokens(self, callback: TokenCallback) -> None:
        """Register *callback* to receive every newly obtained token set.

        Fired after each refresh with exactly what the provider returned
        (a refresh response usually omits ``refresh_token``).
        """
        self._listeners.append(callback)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def _http_client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._timeout)
        return self._http

    async def aclose(self) -> None:
        """Close the owned HTTP client, if any."""
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> "OAuthProvider":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------ #
    # Operations
    # ------------------------------------------------------------------ #

    def generate_auth_url(
        self,
        *,
        redirect_uri: str,
        scope: Union[str, Sequence[str]],
        code_challenge: str,
        state: str,
        access_type: str = "offline",
        prompt: str = "consent",
    ) -> str:
        """Build the authorization URL the user's browser is sent to."""
        scope_value = scope if isinstance(scope, str) else " ".join(scope)
        params = {
            "client_id": self._client.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "access_type": access_type,
            "prompt": prompt,
            "scope": scope_value,
            "code_challenge": code_challenge,
            "code_challenge_method": CHALLENGE_METHOD,
            "state": state,
        }
        return f"{self.auth_endpoint}?{urlencode(params)}"

    async def exchange_code(self, code: str, code_verifier: str, redirect_uri: str) -> dict[str, Any]:
        """Exchange an authorization code for tokens.

        The returned tokens also become the in-memory credentials.

        Raises:
            ProviderHTTPError: On a non-2xx response.
            httpx.TransportError: On network failure.
        """
        tokens = await self._post_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "code_verifier": code_verifier,
                "redirect_uri": redirect_uri,
            }
        )
        self._credentials = dict(tokens)
        logger.debug("Authorization code exchanged (scope=%s)", tokens.get("scope"))
        return tokens

    async def refresh_access_token(self, refresh_token: Optional[str] = None) -> dict[str, Any]:
        """Obtain a new access token with *refresh_token* (default: the in-memory one).

        The in-memory credentials keep their previous ``refresh_token``
        when the response does not carry a new one. Registered
        :meth:`on_tokens` callbacks are awaited with the response tokens.

        Raises:
            ProviderHTTPError: On a non-2xx response (e.g. ``invalid_grant``).
            ValueError: If no refresh token is available.
        """
        refresh_token = refresh_token or self._credentials.get("refresh_token")
        if not refresh_token:
            raise ValueError("No refresh token is set")

        tokens = await self._post_token(
            {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )
        merged = {**self._credentials, **tokens}
        merged.setdefault("refresh_token", refresh_token)
        self._credentials = merged
        logger.debug("Access token refreshed")
        await self._emit(tokens)
        return tokens

    async def get_access_token(self) -> str:
        """Return a usable access token, refreshing silently when it is about to expire.

        Raises:
            ValueError: If there is neither a valid access token nor a
                refresh token.
        """
        access_token = self._credentials.get("access_token")
        expiry = self._credentials.get("expiry_date")
        expiring = expiry is not None and now_ms() >= int(expiry) - EAGER_REFRESH_MS
        if access_token and not expiring:
            return access_token
        if not self._credentials.get("refresh_token"):
            if access_token:
                return access_token
            raise ValueError("No access token or refresh token is set")
        await self.refresh_access_token()
        return self._credentials["access_token"]

    async def revoke_token(self, token: str) -> None:
        """Revoke *token* (access or refresh) at the provider.

        Raises:
            ProviderHTTPError: On a non-2xx response.
        """
        response = await self._http_client().post(
            self.revoke_endpoint,
            data={"token": token},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        if response.is_error:
            error, description = extract_oauth_error(response)
            raise ProviderHTTPError(response.status_code, error, description)

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    async def _post_token(self, data: dict[str, str]) -> dict[str, Any]:
        form = {"client_id": self._client.client_id, **data}
        if self._client.client_secret:
            form["client_secret"] = self._client.client_secret

        response = await self._http_client().post(
            self.token_endpoint,
            data=form,
            headers={"Accept": "application/json"},
        )
        if response.is_error:
            error, description = extract_oauth_error(response)
            logger.debug("Token endpoint returned %s: %s", response.status_code, error)
            raise ProviderHTTPError(response.status_code, error, description)

        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderHTTPError(response.status_code, None, "Token response is not JSON") from exc
        if not isinstance(body, dict) or "access_token" not in body:
            raise ProviderHTTPError(
                response.status_code, None, "Token response missing 'access_token' field"
            )
        return normalize_token_response(body)

    async def _emit(self, tokens: dict[str, Any]) -> None:
        for callback in list(self._listeners):
            await callback(dict(tokens))
