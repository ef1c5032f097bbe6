"""Classification of OAuth provider failures into actionable error kinds.

Provider failures arrive in many shapes: an OAuth error body
(``{"error": "invalid_grant", ...}``) on a 4xx response, a bare HTTP status,
or a transport exception raised before any response exists. This module
turns all of them into a :class:`ProviderAuthError` drawn from a closed set
of :class:`ErrorCode` values, each carrying a reason, numbered remediation
steps and links to the provider console.

Two predicates on the result drive control flow elsewhere:

* :meth:`ProviderAuthError.is_client_invalid` -- the app registration
  itself is broken; do not send the user through a doomed browser flow.
* :meth:`ProviderAuthError.requires_token_clear` -- the stored credential
  is permanently unusable; delete it instead of retrying the refresh.

See Also:
    :func:`classify_error` -- the single mapping entry point.
    :class:`loopauth.auth.token_store.TokenStore` -- clears tokens on
    ``requires_token_clear()``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import httpx

from loopauth.exceptions import AuthError
from loopauth.exit_codes import EXIT_CONNECTION_ERROR

CONSOLE_URL = "https://console.cloud.google.com"
ACCOUNT_URL = "https://myaccount.google.com"
STATUS_URL = "https://status.cloud.google.com"
OAUTH_DOCS_URL = "https://developers.google.com/identity/protocols/oauth2"
OAUTH_SCOPES_URL = "https://developers.google.com/identity/protocols/oauth2/scopes"

LOGIN_COMMAND = "loopauth auth login"


class ErrorCode(str, Enum):
    """Closed set of classified authentication error kinds."""

    OAUTH_NOT_CONFIGURED = "OAUTH_NOT_CONFIGURED"
    INVALID_CLIENT = "INVALID_CLIENT"
    DELETED_CLIENT = "DELETED_CLIENT"
    REDIRECT_URI_MISMATCH = "REDIRECT_URI_MISMATCH"
    INVALID_GRANT = "INVALID_GRANT"
    ACCESS_DENIED = "ACCESS_DENIED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_REVOKED = "TOKEN_REVOKED"
    INSUFFICIENT_SCOPE = "INSUFFICIENT_SCOPE"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    API_NOT_ENABLED = "API_NOT_ENABLED"
    NETWORK_ERROR = "NETWORK_ERROR"
    UNKNOWN = "UNKNOWN"


_CLIENT_INVALID_CODES = frozenset({ErrorCode.DELETED_CLIENT, ErrorCode.INVALID_CLIENT})
_TOKEN_CLEAR_CODES = frozenset(
    {ErrorCode.INVALID_GRANT, ErrorCode.TOKEN_REVOKED, ErrorCode.DELETED_CLIENT}
)


@dataclass(frozen=True)
class ErrorLink:
    """A labelled link shown alongside remediation steps."""

    label: str
    url: str


class ProviderHTTPError(Exception):
    """Raw non-2xx response from a provider endpoint.

    Raised by :class:`~loopauth.auth.provider.OAuthProvider`; never shown
    to users directly -- it is always passed through :func:`classify_error`
    first.

    Args:
        status: HTTP status code of the response.
        error: The OAuth ``error`` field, if the body carried one.
        description: The ``error_description`` field, or the raw body text.
    """

    def __init__(self, status: int, error: Optional[str] = None, description: str = ""):
        self.status = status
        self.error = error
        self.description = description
        detail = error or f"HTTP {status}"
        super().__init__(f"{detail}: {description}" if description else detail)


class ProviderAuthError(AuthError):
    """A classified provider error with actionable guidance.

    Attributes:
        code: The :class:`ErrorCode` this failure was classified as.
        reason: One-sentence human-readable explanation.
        fix: Ordered remediation steps.
        links: Helpful console/documentation links.
        account: Account the failure relates to, when known.
        auth_url: URL the user can re-authenticate at, when known.
        scope: Scope that was missing, when known.
        original: The underlying exception, if any.
    """

    def __init__(
        self,
        code: ErrorCode,
        reason: str,
        fix: list[str],
        links: Optional[list[ErrorLink]] = None,
        account: Optional[str] = None,
        auth_url: Optional[str] = None,
        scope: Optional[str] = None,
        original: Optional[BaseException] = None,
    ) -> None:
        super().__init__(
            reason,
            exit_code=EXIT_CONNECTION_ERROR if code == ErrorCode.NETWORK_ERROR else None,
        )
        self.code = code
        self.reason = reason
        self.fix = list(fix)
        self.links = list(links or [])
        self.account = account
        self.auth_url = auth_url
        self.scope = scope
        self.original = original

    def is_client_invalid(self) -> bool:
        """Whether the OAuth client registration itself is broken."""
        return self.code in _CLIENT_INVALID_CODES

    def requires_token_clear(self) -> bool:
        """Whether the stored credential is permanently unusable."""
        return self.code in _TOKEN_CLEAR_CODES

    def to_dict(self) -> dict[str, Any]:
        """Return a structured representation suitable for JSON output.

        Optional fields are only included when set.
        """
        data: dict[str, Any] = {
            "error_code": self.code.value,
            "reason": self.reason,
            "fix_steps": list(self.fix),
        }
        if self.links:
            data["links"] = [{"label": link.label, "url": link.url} for link in self.links]
        if self.auth_url:
            data["auth_url"] = self.auth_url
        if self.account:
            data["account"] = self.account
        if self.scope:
            data["scope"] = self.scope
        return data

    def to_display_string(self) -> str:
        """Format the error as numbered fix steps and links for a terminal."""
        lines = [f"Error: {self.reason}", "", "How to fix:"]
        lines.extend(f"  {i}. {step}" for i, step in enumerate(self.fix, 1))
        if self.links:
            lines.append("")
            lines.append("Helpful links:")
            lines.extend(f"  - {link.label}: {link.url}" for link in self.links)
        if self.auth_url:
            lines.append("")
            lines.append(f"Re-authenticate at: {self.auth_url}")
        return "\n".join(lines)


@dataclass
class _Context:
    account: Optional[str] = None
    auth_url: Optional[str] = None
    scope: Optional[str] = None


# --- Public entry point ---


def classify_error(
    exc: BaseException,
    account: Optional[str] = None,
    auth_url: Optional[str] = None,
    scope: Optional[str] = None,
) -> ProviderAuthError:
    """Map any provider-call failure to a :class:`ProviderAuthError`.

    OAuth error codes in the response body win over HTTP status; transport
    failures map to ``NETWORK_ERROR``; anything unrecognised becomes
    ``UNKNOWN``. An exception that is already classified is returned as is.

    Args:
        exc: The exception raised by the provider call.
        account: Account the call was made for, if known.
        auth_url: Re-authentication URL to attach, if known.
        scope: Scope involved in the call, if known.

    Returns:
        The classified error.
    """
    if isinstance(exc, ProviderAuthError):
        return exc

    ctx = _Context(account=account, auth_url=auth_url, scope=scope)

    if isinstance(exc, ProviderHTTPError):
        return _classify_http(exc, exc.status, exc.error, exc.description, ctx)

    if isinstance(exc, httpx.HTTPStatusError):
        error_code, description = extract_oauth_error(exc.response)
        return _classify_http(exc, exc.response.status_code, error_code, description, ctx)

    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError)):
        return _network_error(exc, ctx)

    message = str(exc)
    if any(marker in message for marker in ("ENOTFOUND", "ECONNREFUSED", "Name or service not known")):
        return _network_error(exc, ctx)
    return _unknown_error(exc, ctx)


def extract_oauth_error(response: httpx.Response) -> tuple[Optional[str], str]:
    """Pull ``error``/``error_description`` out of a provider response body."""
    try:
        body = response.json()
    except ValueError:
        return None, response.text
    if not isinstance(body, dict):
        return None, response.text
    error = body.get("error")
    # Google API errors nest the details: {"error": {"status": ..., "message": ...}}
    if isinstance(error, dict):
        return error.get("status"), str(error.get("message", ""))
    return error, str(body.get("error_description") or error or "")


def _classify_http(
    exc: BaseException,
    status: int,
    error_code: Optional[str],
    description: str,
    ctx: _Context,
) -> ProviderAuthError:
    description = description or str(exc) or "Unknown error"
    code = (error_code or "").lower()

    if code == "redirect_uri_mismatch":
        return _redirect_uri_mismatch(description, exc, ctx)
    if code == "invalid_client":
        return _invalid_client(description, exc, ctx)
    if code == "deleted_client":
        return _deleted_client(description, exc, ctx)
    if code == "invalid_grant":
        return _invalid_grant(description, exc, ctx)
    if code in ("token_revoked", "revoked_token"):
        return _token_revoked(description, exc, ctx)
    if code == "access_denied":
        return _access_denied(description, exc, ctx)
    if code == "insufficient_scope":
        return _insufficient_scope(description, exc, ctx)

    if status == 401:
        return _token_expired(description, exc, ctx)
    if status == 403:
        lowered = description.lower()
        if "has not been used" in lowered or "not enabled" in lowered:
            return _api_not_enabled(description, exc, ctx)
        if "scope" in lowered or "permission" in lowered:
            return _insufficient_scope(description, exc, ctx)
        return _access_denied(description, exc, ctx)
    if status == 429:
        return _quota_exceeded(description, exc, ctx)
    return _unknown_error(exc, ctx, description)


# --- Builders ---


def _redirect_uri_mismatch(description: str, exc: BaseException, ctx: _Context) -> ProviderAuthError:
    return ProviderAuthError(
        code=ErrorCode.REDIRECT_URI_MISMATCH,
        reason=f"OAuth redirect URI mismatch: {description}",
        fix=[
            "Go to Google Cloud Console > APIs & Services > Credentials",
            "Edit your OAuth 2.0 Client ID",
            "If using a Desktop app client, loopback redirects are allowed automatically",
            "If using a Web client: add http://127.0.0.1/oauth2callback to the authorized redirect URIs",
            "Save changes and try again",
        ],
        links=[
            ErrorLink("Google Cloud Credentials", f"{CONSOLE_URL}/apis/credentials"),
            ErrorLink("OAuth Setup Guide", OAUTH_DOCS_URL),
        ],
        account=ctx.account,
        auth_url=ctx.auth_url,
        original=exc,
    )


def _invalid_client(description: str, exc: BaseException, ctx: _Context) -> ProviderAuthError:
    return ProviderAuthError(
        code=ErrorCode.INVALID_CLIENT,
        reason=f"OAuth client credentials are invalid: {description}",
        fix=[
            "Verify your client_id ends with .apps.googleusercontent.com",
            "Check that client_secret matches the one in Google Cloud Console",
            "If credentials were recently regenerated, download fresh credentials",
            "Ensure the credentials file is valid JSON",
        ],
        links=[ErrorLink("Google Cloud Credentials", f"{CONSOLE_URL}/apis/credentials")],
        account=ctx.account,
        original=exc,
    )


def _deleted_client(description: str, exc: BaseException, ctx: _Context) -> ProviderAuthError:
    return ProviderAuthError(
        code=ErrorCode.DELETED_CLIENT,
        reason=f"OAuth client has been deleted from Google Cloud: {description}",
        fix=[
            "The OAuth client in your credentials file no longer exists in Google Cloud",
            "Go to Google Cloud Console > APIs & Services > Credentials",
            "Create a new OAuth 2.0 Client ID (Desktop app type)",
            "Download it and save it as your credentials.json",
            f"Run '{LOGIN_COMMAND}' again",
        ],
        links=[ErrorLink("Create OAuth Credentials", f"{CONSOLE_URL}/apis/credentials")],
        account=ctx.account,
        original=exc,
    )


def _invalid_grant(description: str, exc: BaseException, ctx: _Context) -> ProviderAuthError:
    return ProviderAuthError(
        code=ErrorCode.INVALID_GRANT,
        reason=f"Your authentication token has been revoked or expired: {description}",
        fix=[
            f"Run the authentication flow again: {LOGIN_COMMAND}",
            "When prompted, click 'Allow' to grant permissions",
            "If the issue persists, check whether the app was removed from your Google Account",
        ],
        links=[ErrorLink("Third-party apps in your account", f"{ACCOUNT_URL}/connections")],
        account=ctx.account,
        auth_url=ctx.auth_url,
        original=exc,
    )


def _token_revoked(description: str, exc: BaseException, ctx: _Context) -> ProviderAuthError:
    return ProviderAuthError(
        code=ErrorCode.TOKEN_REVOKED,
        reason=f"Access for this application was revoked: {description}",
        fix=[
            f"Run the authentication flow again: {LOGIN_COMMAND}",
            "Grant access again when the consent screen appears",
        ],
        links=[ErrorLink("Third-party apps in your account", f"{ACCOUNT_URL}/connections")],
        account=ctx.account,
        auth_url=ctx.auth_url,
        original=exc,
    )


def _access_denied(description: str, exc: BaseException, ctx: _Context) -> ProviderAuthError:
    return ProviderAuthError(
        code=ErrorCode.ACCESS_DENIED,
        reason=f"Access was denied: {description}",
        fix=[
            "Re-run authentication and click 'Allow' when prompted",
            "If the consent screen says the app is unverified, click 'Advanced' then 'Go to [app]'",
            "Check that you are signing in with the correct Google account",
        ],
        links=[ErrorLink("OAuth Consent Screen", f"{CONSOLE_URL}/apis/credentials/consent")],
        account=ctx.account,
        auth_url=ctx.auth_url,
        original=exc,
    )


def _token_expired(description: str, exc: BaseException, ctx: _Context) -> ProviderAuthError:
    return ProviderAuthError(
        code=ErrorCode.TOKEN_EXPIRED,
        reason=f"Your access token has expired and could not be refreshed: {description}",
        fix=[
            f"Run authentication again: {LOGIN_COMMAND}",
            "Ensure you have a stable internet connection",
            "Check that your refresh token has not been revoked",
        ],
        account=ctx.account,
        auth_url=ctx.auth_url,
        original=exc,
    )


def _insufficient_scope(description: str, exc: BaseException, ctx: _Context) -> ProviderAuthError:
    return ProviderAuthError(
        code=ErrorCode.INSUFFICIENT_SCOPE,
        reason=f"Missing required permissions: {description}",
        fix=[
            "Re-authenticate to grant all required permissions",
            f"Run: {LOGIN_COMMAND}",
            "When prompted, make sure every permission checkbox is selected",
        ],
        links=[ErrorLink("OAuth Scopes Reference", OAUTH_SCOPES_URL)],
        account=ctx.account,
        auth_url=ctx.auth_url,
        scope=ctx.scope,
        original=exc,
    )


_API_NAME_RE = re.compile(r"(\w+)\s+API", re.IGNORECASE)


def _api_not_enabled(description: str, exc: BaseException, ctx: _Context) -> ProviderAuthError:
    match = _API_NAME_RE.search(description)
    api_name = match.group(1) if match else "the required"
    return ProviderAuthError(
        code=ErrorCode.API_NOT_ENABLED,
        reason=f"{api_name} API is not enabled for your project",
        fix=[
            "Go to Google Cloud Console > APIs & Services > Library",
            f'Search for "{api_name} API" and enable it',
            "Wait a few minutes for the change to propagate",
            "Try your request again",
        ],
        links=[
            ErrorLink("API Library", f"{CONSOLE_URL}/apis/library"),
            ErrorLink("Enable Drive API", f"{CONSOLE_URL}/apis/library/drive.googleapis.com"),
            ErrorLink("Enable Gmail API", f"{CONSOLE_URL}/apis/library/gmail.googleapis.com"),
            ErrorLink("Enable Calendar API", f"{CONSOLE_URL}/apis/library/calendar-json.googleapis.com"),
        ],
        account=ctx.account,
        original=exc,
    )


def _quota_exceeded(description: str, exc: BaseException, ctx: _Context) -> ProviderAuthError:
    return ProviderAuthError(
        code=ErrorCode.QUOTA_EXCEEDED,
        reason=f"API quota has been exceeded: {description}",
        fix=[
            "Wait a few minutes and try again",
            "Check your API quota usage in Google Cloud Console",
            "Consider requesting a quota increase if needed",
        ],
        links=[ErrorLink("Request Quota Increase", f"{CONSOLE_URL}/iam-admin/quotas")],
        account=ctx.account,
        original=exc,
    )


def _network_error(exc: BaseException, ctx: _Context) -> ProviderAuthError:
    return ProviderAuthError(
        code=ErrorCode.NETWORK_ERROR,
        reason="Unable to connect to the OAuth provider",
        fix=[
            "Check your internet connection",
            "Verify that googleapis.com is reachable from your network",
            "Check for firewall or proxy restrictions",
            "Check Google Cloud status for outages",
        ],
        links=[ErrorLink("Google Cloud Status", STATUS_URL)],
        account=ctx.account,
        original=exc,
    )


def _unknown_error(exc: BaseException, ctx: _Context, description: str = "") -> ProviderAuthError:
    return ProviderAuthError(
        code=ErrorCode.UNKNOWN,
        reason=description or str(exc) or "An unknown error occurred",
        fix=[
            "Check the error message above for details",
            "Verify your OAuth credentials are configured correctly",
            f"Try re-authenticating: {LOGIN_COMMAND}",
        ],
        links=[ErrorLink("Google Cloud Console", CONSOLE_URL)],
        account=ctx.account,
        auth_url=ctx.auth_url,
        original=exc,
    )


# --- Configuration-time errors (raised before any provider call) ---


def not_configured_error(reason: str, fix: list[str]) -> ProviderAuthError:
    """Build an ``OAUTH_NOT_CONFIGURED`` error for a missing or unreadable client file."""
    return ProviderAuthError(
        code=ErrorCode.OAUTH_NOT_CONFIGURED,
        reason=reason,
        fix=fix,
        links=[ErrorLink("Create OAuth Credentials", f"{CONSOLE_URL}/apis/credentials")],
    )


def invalid_client_format_error(client_id: str) -> ProviderAuthError:
    """Build an ``INVALID_CLIENT`` error for a structurally broken client id."""
    return ProviderAuthError(
        code=ErrorCode.INVALID_CLIENT,
        reason="Invalid client_id format. Expected an id ending with .apps.googleusercontent.com",
        fix=[
            "Verify you downloaded OAuth 2.0 Client credentials (not a Service Account or API key)",
            "The client_id should look like: 123456789-abc.apps.googleusercontent.com",
            "Download fresh credentials from Google Cloud Console",
        ],
        links=[ErrorLink("OAuth Credentials", f"{CONSOLE_URL}/apis/credentials")],
    )
