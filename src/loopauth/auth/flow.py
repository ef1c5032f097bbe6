"""End-to-end authentication orchestration.

Ties the pieces together for callers that just want a valid credential:

* :func:`open_token_store` -- resolve the client, build the provider and
  the token store for the active profile.
* :func:`authenticate` -- run one :class:`LoopbackCallbackServer` attempt
  against a store, with a five-minute ceiling, always stopping the
  listener afterwards.
* :func:`login` / :func:`get_valid_access_token` / :func:`logout` -- the
  operations behind the ``loopauth auth`` commands.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import webbrowser
from pathlib import Path
from typing import Any, Callable, Optional

from loopauth.auth.context import AuthContext
from loopauth.auth.credentials import CredentialResolver, load_client_credential
from loopauth.auth.provider import OAuthProvider
from loopauth.auth.server import SHUTDOWN_DELAY, LoopbackCallbackServer
from loopauth.auth.token_store import TokenStore, delete_token_file
from loopauth.config import get_active_profile, get_token_path
from loopauth.errors import ProviderAuthError
from loopauth.exceptions import AuthError, InvalidUsageError
from loopauth.models import ClientCredential
from loopauth.output import warning

logger = logging.getLogger(__name__)

AUTH_TIMEOUT = 5 * 60.0

PasteReader = Callable[[], Optional[str]]


def open_token_store(
    context: Optional[AuthContext] = None,
    credential: Optional[ClientCredential] = None,
    resolver: Optional[CredentialResolver] = None,
) -> TokenStore:
    """Build a :class:`TokenStore` for the active profile.

    Raises:
        ProviderAuthError: If the client credentials are missing or invalid.
    """
    if credential is None:
        credential = load_client_credential(resolver)
    return TokenStore(OAuthProvider(credential), context=context)


async def authenticate(
    store: TokenStore,
    *,
    open_browser: bool = True,
    timeout: Optional[float] = AUTH_TIMEOUT,
    read_pasted: Optional[PasteReader] = None,
    resolver: Optional[CredentialResolver] = None,
    browser_opener: Callable[[str], Any] = webbrowser.open,
    shutdown_delay: float = SHUTDOWN_DELAY,
) -> None:
    """Make sure *store* holds a valid credential, running the browser flow if needed.

    Args:
        store: Token store to validate and fill.
        open_browser: Launch the system browser at the authorization URL.
        timeout: Seconds to wait for the browser callback.
        read_pasted: Blocking reader for a pasted redirect URL or code;
            ``None`` from it cancels. It runs on a background thread, and the
            browser callback can still finish the attempt while it waits.
            When given, the paste prompt replaces the timed wait.
        resolver: Client credential resolver for the flow.
        browser_opener: Callable that opens a URL in the browser.
        shutdown_delay: Grace period before the listener closes on success.

    Raises:
        ProviderAuthError: If the flow could not start or the exchange failed.
        AuthError: On timeout or cancellation.
    """
    server = LoopbackCallbackServer(
        store,
        resolver=resolver,
        profile=get_active_profile(),
        shutdown_delay=shutdown_delay,
        browser_opener=browser_opener,
    )
    try:
        if not await server.start(open_browser=open_browser):
            raise _failure(server)
        if server.succeeded:
            return

        if read_pasted is not None:
            await _read_until_finished(server, read_pasted)
        else:
            try:
                await server.wait_for_completion(timeout)
            except asyncio.TimeoutError:
                raise AuthError(
                    f"Authentication timed out after {int(timeout or 0)} seconds. Please try again."
                ) from None

        if not server.succeeded:
            raise _failure(server)
        await server.wait_stopped()
    finally:
        await server.stop()


async def _read_until_finished(server: LoopbackCallbackServer, read_pasted: PasteReader) -> None:
    """Prompt for pasted input until the attempt finishes.

    The prompt runs in a background thread so the listener keeps serving
    the browser callback, which may finish the attempt while a prompt is
    still open. That prompt is then abandoned.
    """
    completion = asyncio.ensure_future(server.wait_for_completion())
    try:
        while not server.finished:
            prompt = _read_in_thread(read_pasted)
            await asyncio.wait({prompt, completion}, return_when=asyncio.FIRST_COMPLETED)
            if server.finished:
                prompt.cancel()
                break

            text = prompt.result()
            if text is None:
                raise AuthError("Authentication cancelled")
            try:
                await server.submit_pasted_input(text)
            except ProviderAuthError:
                raise
            except (InvalidUsageError, AuthError) as exc:
                warning(str(exc))
    finally:
        completion.cancel()


def _read_in_thread(read_pasted: PasteReader) -> asyncio.Future:
    """Call *read_pasted* on a daemon thread and return a future for its result.

    An abandoned prompt must not block interpreter exit, so the default
    executor is not used.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future = loop.create_future()

    def settle(result: Optional[str], exc: Optional[BaseException]) -> None:
        if future.done():
            return
        if exc is not None:
            future.set_exception(exc)
        else:
            future.set_result(result)

    def run() -> None:
        result: Optional[str] = None
        exc: Optional[BaseException] = None
        try:
            result = read_pasted()
        except Exception as error:  # noqa: BLE001 - handed to the awaiting coroutine
            exc = error
        if not loop.is_closed():
            loop.call_soon_threadsafe(settle, result, exc)

    threading.Thread(target=run, name="loopauth-paste", daemon=True).start()
    return future


def _failure(server: LoopbackCallbackServer) -> Exception:
    if server.last_error is not None:
        return server.last_error
    return AuthError("Authentication failed")


async def login(
    *,
    open_browser: bool = True,
    timeout: Optional[float] = AUTH_TIMEOUT,
    read_pasted: Optional[PasteReader] = None,
    context: Optional[AuthContext] = None,
) -> Path:
    """Run the full login flow for the active profile.

    Returns:
        The token file path.
    """
    store = open_token_store(context)
    try:
        await authenticate(
            store, open_browser=open_browser, timeout=timeout, read_pasted=read_pasted
        )
    finally:
        await store.provider.aclose()
    return store.path


async def get_valid_access_token(context: Optional[AuthContext] = None) -> str:
    """Return a valid access token, refreshing it if needed.

    Raises:
        AuthError: If no usable credential is stored. When a refresh
            failure was classified, that :class:`ProviderAuthError` is
            raised instead.
    """
    context = context if context is not None else AuthContext()
    store = open_token_store(context)
    try:
        if not await store.validate():
            if context.last_error is not None:
                raise context.last_error
            raise AuthError("Not authenticated. Run: loopauth auth login")
        return store.provider.credentials["access_token"]
    finally:
        await store.provider.aclose()


async def logout(revoke: bool = False) -> bool:
    """Delete stored tokens, optionally revoking them at the provider first.

    Plain logout works without client credentials.

    Returns:
        Whether the provider confirmed revocation (always ``False`` without
        *revoke*).
    """
    if not revoke:
        delete_token_file(get_token_path())
        return False

    store = open_token_store()
    try:
        return await store.revoke()
    finally:
        await store.provider.aclose()
