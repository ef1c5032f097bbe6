"""Loopback HTTP listener that completes one OAuth2 authorization attempt.

:class:`LoopbackCallbackServer` binds ``127.0.0.1`` on an OS-assigned port,
builds a PKCE authorization URL, optionally opens the system browser, and
waits for the provider to redirect back to ``/oauth2callback``. The
callback's ``state`` is compared in constant time against the live state
token; a valid callback consumes the PKCE pair and state on the spot, so a
concurrent or replayed request is rejected by state mismatch rather than by
a lock.

Lifecycle::

    IDLE -> LISTENING -> AWAITING_CALLBACK -> COMPLETED | FAILED -> STOPPED

HTTP surface:

* ``GET /`` -- page linking to the authorization URL (``503`` before the
  flow is initialised, ``500`` once the PKCE state has been consumed)
* ``GET /oauth2callback`` -- ``200`` success page, ``400`` CSRF page or
  missing code, ``500`` classified error page
* anything else -- ``404 text/plain``

For remote or headless sessions, where the browser cannot reach the
loopback port, :meth:`LoopbackCallbackServer.submit_pasted_input` accepts
the redirect URL (or bare code) pasted by the user and performs the same
exchange.
"""

from __future__ import annotations

import asyncio
import logging
import webbrowser
from enum import Enum
from http import HTTPStatus
from typing import Any, Callable, NamedTuple, Optional, Sequence
from urllib.parse import parse_qs, urlparse

import httpx
from pydantic import ValidationError

from loopauth.auth.context import AuthContext
from loopauth.auth.credentials import CredentialResolver, load_client_credential
from loopauth.auth.pages import (
    render_csrf_page,
    render_error_page,
    render_index_page,
    render_success_page,
)
from loopauth.auth.pkce import PkcePair, generate, states_match
from loopauth.auth.provider import OAuthProvider
from loopauth.auth.token_store import TokenStore
from loopauth.config import get_scopes, is_project_level_path
from loopauth.errors import ProviderAuthError, ProviderHTTPError, classify_error
from loopauth.exceptions import AuthError, InvalidUsageError
from loopauth.models import ClientCredential
from loopauth.output import banner

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"
CALLBACK_PATH = "/oauth2callback"
SHUTDOWN_DELAY = 2.0

_TEXT = "text/plain; charset=utf-8"
_HTML = "text/html; charset=utf-8"


class ServerState(str, Enum):
    """Lifecycle states of a :class:`LoopbackCallbackServer`."""

    IDLE = "idle"
    LISTENING = "listening"
    AWAITING_CALLBACK = "awaiting_callback"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


class PastedCode(NamedTuple):
    """An authorization code recovered from user input."""

    code: str
    state: Optional[str] = None


def extract_code_from_input(text: str) -> Optional[PastedCode]:
    """Parse an authorization code out of pasted text.

    Accepts, in order:

    1. A full redirect URL: ``http://127.0.0.1:PORT/oauth2callback?code=X&state=Y``
    2. A query string: ``?code=X&state=Y``
    3. A bare code longer than 10 characters with no whitespace and no ``://``

    Returns:
        The code and (when present) state, or ``None`` if nothing usable
        was found.
    """
    trimmed = text.strip()
    if not trimmed:
        return None

    parsed = urlparse(trimmed)
    if parsed.scheme and parsed.netloc:
        found = _code_from_query(parsed.query)
        if found is not None:
            return found

    if trimmed.startswith("?"):
        found = _code_from_query(trimmed[1:])
        if found is not None:
            return found

    if len(trimmed) > 10 and "://" not in trimmed and not any(c.isspace() for c in trimmed):
        return PastedCode(code=trimmed)
    return None


def _code_from_query(query: str) -> Optional[PastedCode]:
    params = parse_qs(query)
    codes = params.get("code")
    if not codes or not codes[0]:
        return None
    states = params.get("state")
    return PastedCode(code=codes[0], state=states[0] if states else None)


class LoopbackCallbackServer:
    """One-shot OAuth2 loopback redirect receiver.

    Args:
        token_store: Store that validates any cached credential and persists
            the exchanged tokens.
        context: Session context; consulted for a previous client-identity
            failure and updated with this attempt's failure.
        resolver: Client credential resolver used once the port is bound.
        provider_factory: Builds the provider used for the code exchange
            from the resolved client credential. Defaults to an
            :class:`OAuthProvider` with the token store provider's endpoints.
        scopes: Scopes to request; defaults to :func:`~loopauth.config.get_scopes`.
        profile: Active profile name, shown on the success page.
        shutdown_delay: Seconds to keep listening after a successful
            callback so the success page finishes flushing.
        browser_opener: Callable that opens a URL in the system browser.
    """

    def __init__(
        self,
        token_store: TokenStore,
        *,
        context: Optional[AuthContext] = None,
        resolver: Optional[CredentialResolver] = None,
        provider_factory: Optional[Callable[[ClientCredential], OAuthProvider]] = None,
        scopes: Optional[Sequence[str]] = None,
        profile: Optional[str] = None,
        shutdown_delay: float = SHUTDOWN_DELAY,
        browser_opener: Callable[[str], Any] = webbrowser.open,
    ) -> None:
        self._store = token_store
        self._context = context if context is not None else token_store.context
        self._resolver = resolver
        self._provider_factory = provider_factory or self._default_provider
        self._scopes = list(scopes) if scopes is not None else None
        self._profile = profile
        self._shutdown_delay = shutdown_delay
        self._browser_opener = browser_opener

        self._state = ServerState.IDLE
        self._server: Optional[asyncio.AbstractServer] = None
        self._provider: Optional[OAuthProvider] = None
        self._pkce: Optional[PkcePair] = None
        self._state_token: Optional[str] = None
        self._auth_url: Optional[str] = None
        self._redirect_uri: Optional[str] = None
        self._done = asyncio.Event()
        self._succeeded = False
        self._stop_task: Optional[asyncio.Task[None]] = None
        self.last_error: Optional[ProviderAuthError] = None

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def authorization_url(self) -> Optional[str]:
        """The authorization URL of the live attempt, if one was built."""
        return self._auth_url

    @property
    def redirect_uri(self) -> Optional[str]:
        return self._redirect_uri

    @property
    def succeeded(self) -> bool:
        """Whether this server obtained (or found) a valid credential."""
        return self._succeeded

    def get_running_port(self) -> Optional[int]:
        """Return the bound ephemeral port, or ``None`` if not listening."""
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def start(self, open_browser: bool = True) -> bool:
        """Begin an authorization attempt.

        Returns immediately with ``True`` when the stored credential already
        validates. Otherwise binds the listener, resolves the client
        credential, generates PKCE/state and (if *open_browser*) launches
        the browser.

        Returns:
            ``True`` if the flow is running or no flow was needed; ``False``
            if it could not be started. The reason is in :attr:`last_error`.
        """
        if self._state is not ServerState.IDLE:
            raise RuntimeError(f"Server already started (state: {self._state.value})")

        if await self._store.validate():
            logger.info("Stored credential is valid; no authorization needed")
            self._finish(success=True)
            return True

        try:
            self._server = await asyncio.start_server(self._handle_connection, LOOPBACK_HOST, 0)
        except OSError as exc:
            logger.error("Failed to start auth server: %s", exc)
            self._fail(classify_error(exc))
            return False
        self._state = ServerState.LISTENING
        port = self.get_running_port()
        self._redirect_uri = f"http://{LOOPBACK_HOST}:{port}{CALLBACK_PATH}"
        logger.info("Authentication server listening on http://%s:%s", LOOPBACK_HOST, port)

        try:
            credential = load_client_credential(self._resolver)
        except ProviderAuthError as exc:
            logger.error("Failed to load credentials for auth flow: %s", exc.reason)
            self._fail(exc)
            await self.stop()
            return False

        if self._context.client_invalid:
            blocked = self._context.last_error
            assert blocked is not None
            banner("AUTHENTICATION BLOCKED", blocked.to_display_string(), style="red")
            self._fail(blocked)
            await self.stop()
            return False

        self._provider = self._provider_factory(credential)
        self._pkce, self._state_token = generate()
        self._auth_url = self._provider.generate_auth_url(
            redirect_uri=self._redirect_uri,
            scope=self._scopes if self._scopes is not None else get_scopes(),
            code_challenge=self._pkce.challenge,
            state=self._state_token,
        )
        self._state = ServerState.AWAITING_CALLBACK

        if open_browser:
            banner(
                "AUTHENTICATION REQUIRED",
                "Opening your browser to authenticate...\n\n"
                f"Auth URL (copy if the browser doesn't open):\n  {self._auth_url}\n\n"
                "If running remotely: open the URL in your local browser. The redirect\n"
                "page won't load; copy the URL from the address bar and paste it here.",
            )
            await self._open_browser(self._auth_url)
        else:
            banner(
                "AUTHENTICATION REQUIRED",
                f"Open this URL in a browser:\n  {self._auth_url}\n\n"
                "After approving, copy the URL from the address bar and paste it here.",
            )
        return True

    async def wait_for_completion(self, timeout: Optional[float] = None) -> bool:
        """Wait until the attempt completes or fails.

        Returns:
            ``True`` on success, ``False`` on failure.

        Raises:
            asyncio.TimeoutError: If *timeout* seconds pass first.
        """
        await asyncio.wait_for(self._done.wait(), timeout)
        return self._succeeded

    @property
    def finished(self) -> bool:
        """Whether the attempt has reached COMPLETED or FAILED."""
        return self._done.is_set()

    async def wait_stopped(self) -> None:
        """Wait for a scheduled post-success shutdown to run."""
        task = self._stop_task
        if task is not None and not task.done():
            await asyncio.wait({task})

    async def stop(self) -> None:
        """Close the listener. Safe to call repeatedly or before :meth:`start`."""
        stop_task = self._stop_task
        if stop_task is not None and stop_task is not asyncio.current_task():
            stop_task.cancel()
        self._stop_task = None

        server = self._server
        self._server = None
        if server is not None:
            server.close()
            await server.wait_closed()
            logger.debug("Authentication server stopped")

        provider = self._provider
        self._provider = None
        if provider is not None:
            await provider.aclose()

        if self._state is not ServerState.IDLE:
            if not self._done.is_set():
                self._finish(success=False)
            self._state = ServerState.STOPPED

    # ------------------------------------------------------------------ #
    # Pasted-input path
    # ------------------------------------------------------------------ #

    async def submit_pasted_input(self, text: str) -> bool:
        """Complete the flow from a pasted redirect URL, query string, or code.

        Returns:
            ``True`` once the flow has completed (including when the HTTP
            callback already completed it).

        Raises:
            InvalidUsageError: If no authorization code can be extracted;
                the flow stays open for another attempt.
            AuthError: If the pasted state does not match; the flow stays
                open for another attempt.
            ProviderAuthError: If the code exchange failed; the flow is over.
        """
        if self._succeeded:
            return True

        pasted = extract_code_from_input(text)
        if pasted is None:
            raise InvalidUsageError(
                "Could not extract an authorization code. Paste the full redirect URL."
            )
        if self._state_token is None:
            raise AuthError("No authorization attempt is awaiting a code")
        if pasted.state is not None and not states_match(self._state_token, pasted.state):
            raise AuthError("State parameter mismatch (possible CSRF). Please try again.")

        error = await self._exchange(pasted.code)
        if error is not None:
            raise error
        return True

    # ------------------------------------------------------------------ #
    # HTTP handling
    # ------------------------------------------------------------------ #

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            request_line = await reader.readline()
            if not request_line:
                return
            parts = request_line.decode("latin-1").split()
            while True:
                line = await reader.readline()
                if line in (b"\r\n", b"\n", b""):
                    break

            if len(parts) < 2:
                status, content_type, body = 400, _TEXT, "Bad Request"
            else:
                status, content_type, body = await self._route(parts[0], parts[1])
            await self._respond(writer, status, content_type, body)
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            logger.debug("Callback connection dropped: %s", exc)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def _route(self, method: str, target: str) -> tuple[int, str, str]:
        parsed = urlparse(target)
        if parsed.path not in ("/", CALLBACK_PATH):
            return 404, _TEXT, "Not Found"
        if method.upper() != "GET":
            return 405, _TEXT, "Method Not Allowed"
        if parsed.path == "/":
            return self._handle_root()
        return await self._handle_callback(parse_qs(parsed.query))

    def _handle_root(self) -> tuple[int, str, str]:
        if self._provider is None:
            return 503, _TEXT, "Authentication server is starting. Please wait and refresh."
        if self._pkce is None or self._state_token is None or self._auth_url is None:
            return 500, _TEXT, "PKCE not initialized - call start() first"
        return 200, _HTML, render_index_page(self._auth_url)

    async def _handle_callback(self, params: dict[str, list[str]]) -> tuple[int, str, str]:
        received_state = params.get("state", [None])[0]
        if not states_match(self._state_token, received_state):
            logger.warning("Rejected callback with missing or mismatched state")
            return 400, _HTML, render_csrf_page()

        provider_error = params.get("error", [None])[0]
        if provider_error:
            description = params.get("error_description", [""])[0]
            self._consume()
            error = classify_error(
                ProviderHTTPError(400, provider_error, description), auth_url=self._auth_url
            )
            self._fail(error)
            return 400, _HTML, render_error_page(error)

        code = params.get("code", [None])[0]
        if not code:
            return 400, _TEXT, "Authorization code missing"

        error = await self._exchange(code)
        if error is not None:
            return 500, _HTML, render_error_page(error)

        self._schedule_stop()
        token_path = self._store.path
        ignore_dir = token_path.parent.name if is_project_level_path(token_path) else None
        return 200, _HTML, render_success_page(str(token_path), ignore_dir, self._profile)

    async def _respond(
        self, writer: asyncio.StreamWriter, status: int, content_type: str, body: str
    ) -> None:
        payload = body.encode("utf-8")
        head = (
            f"HTTP/1.1 {status} {HTTPStatus(status).phrase}\r\n"
            f"Content-Type: {content_type}\r\n"
            f"Content-Length: {len(payload)}\r\n"
            "Cache-Control: no-store\r\n"
            "Connection: close\r\n"
            "\r\n"
        )
        writer.write(head.encode("latin-1") + payload)
        await writer.drain()

    # ------------------------------------------------------------------ #
    # Exchange and state transitions
    # ------------------------------------------------------------------ #

    def _consume(self) -> Optional[PkcePair]:
        """Take the live PKCE pair and drop the state token (single use)."""
        pkce = self._pkce
        self._pkce = None
        self._state_token = None
        return pkce

    async def _exchange(self, code: str) -> Optional[ProviderAuthError]:
        """Exchange *code* and persist the tokens; return the error on failure."""
        pkce = self._consume()
        if pkce is None or self._provider is None or self._redirect_uri is None:
            error = classify_error(AuthError("Authentication flow not properly initiated"))
            self._fail(error)
            return error

        try:
            tokens = await self._provider.exchange_code(code, pkce.verifier, self._redirect_uri)
            await self._store.save(tokens)
        except (ProviderHTTPError, httpx.HTTPError, OSError, ValidationError) as exc:
            error = classify_error(exc, account=self._context.account, auth_url=self._auth_url)
            logger.error("Token exchange failed: %s [%s]", error.reason, error.code.value)
            self._fail(error)
            return error

        logger.info("Authorization completed; tokens saved to %s", self._store.path)
        self._context.reset()
        self._finish(success=True)
        return None

    def _fail(self, error: ProviderAuthError) -> None:
        self.last_error = error
        self._context.record(error)
        self._finish(success=False)

    def _finish(self, success: bool) -> None:
        self._succeeded = success
        if self._state is not ServerState.STOPPED:
            self._state = ServerState.COMPLETED if success else ServerState.FAILED
        self._done.set()

    def _schedule_stop(self) -> None:
        async def _stop_later() -> None:
            await asyncio.sleep(self._shutdown_delay)
            await self.stop()

        self._stop_task = asyncio.get_running_loop().create_task(_stop_later())

    async def _open_browser(self, url: str) -> None:
        try:
            opened = await asyncio.to_thread(self._browser_opener, url)
        except webbrowser.Error as exc:
            logger.warning("Failed to open browser automatically: %s", exc)
            return
        if opened is False:
            logger.warning("No browser could be opened; open the URL manually")

    def _default_provider(self, credential: ClientCredential) -> OAuthProvider:
        base = self._store.provider
        return OAuthProvider(
            credential,
            auth_endpoint=base.auth_endpoint,
            token_endpoint=base.token_endpoint,
            revoke_endpoint=base.revoke_endpoint,
        )
