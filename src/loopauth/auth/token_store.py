"""Durable token storage with atomic rewrites and single-flight refresh.

:class:`TokenStore` owns the on-disk token file for one
:class:`~loopauth.auth.provider.OAuthProvider`:

* **Load** -- :meth:`TokenStore.load_saved` reads and schema-validates the
  file. A corrupted file is deleted rather than surfaced, so the normal
  re-authentication path can recover. When the file is absent, legacy
  locations are tried and the first valid one is migrated.
* **Save** -- every write goes through :func:`~loopauth.config.atomic_write`
  under an :class:`asyncio.Lock` keyed by the token path, so two writers in
  one process never interleave and a crash never leaves a half-written file.
* **Refresh** -- :meth:`TokenStore.refresh_if_needed` treats a token as
  expired five minutes early. Concurrent callers share one in-flight
  refresh task instead of each hitting the token endpoint.
* **Merge** -- the provider's token notifications are merged into the
  existing file by :meth:`TokenStore.handle_tokens_update`: a response
  without a ``refresh_token`` keeps the stored one, and ``created_at`` is
  always carried forward.

Example::

    provider = OAuthProvider(client)
    store = TokenStore(provider)
    if await store.validate():
        token = provider.credentials["access_token"]
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, ClassVar, Mapping, Optional, Sequence

import httpx
from pydantic import ValidationError

from loopauth.auth.context import AuthContext
from loopauth.auth.provider import OAuthProvider
from loopauth.config import atomic_write, get_legacy_token_paths, get_token_path, is_project_level_path
from loopauth.errors import ProviderHTTPError, classify_error
from loopauth.models import StoredCredential, now_ms, utc_now_iso

logger = logging.getLogger(__name__)

REFRESH_BUFFER_MS = 5 * 60 * 1000


@dataclass
class TokenStatus:
    """Summary of the token file, as shown by ``loopauth auth status``."""

    path: str
    exists: bool
    valid: bool = False
    has_access_token: bool = False
    has_refresh_token: bool = False
    expires_at: Optional[str] = None
    expired: Optional[bool] = None
    created_at: Optional[str] = None
    scopes: Optional[list[str]] = None
    project_level: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class TokenStore:
    """Persist, load, refresh, and clear the stored credential.

    Args:
        provider: Provider whose in-memory credentials this store mirrors.
            The store subscribes to its token notifications.
        path: Token file path. Defaults to :func:`~loopauth.config.get_token_path`.
        context: Session context that refresh failures are recorded on.
        legacy_paths: Pre-migration token locations to migrate from.
            Defaults to :func:`~loopauth.config.get_legacy_token_paths`.
        refresh_buffer_ms: How long before expiry a token counts as stale.
    """

    _path_locks: ClassVar[dict[str, asyncio.Lock]] = {}

    def __init__(
        self,
        provider: OAuthProvider,
        path: Optional[Path] = None,
        *,
        context: Optional[AuthContext] = None,
        legacy_paths: Optional[Sequence[Path]] = None,
        refresh_buffer_ms: int = REFRESH_BUFFER_MS,
    ) -> None:
        self._provider = provider
        self._path = path if path is not None else get_token_path()
        self._legacy_paths = (
            list(legacy_paths) if legacy_paths is not None else get_legacy_token_paths()
        )
        self.context = context if context is not None else AuthContext()
        self._refresh_buffer_ms = refresh_buffer_ms
        self._inflight: Optional[asyncio.Task[bool]] = None
        provider.on_tokens(self.handle_tokens_update)

    @property
    def path(self) -> Path:
        """The token file path."""
        return self._path

    @property
    def provider(self) -> OAuthProvider:
        return self._provider

    def _lock(self) -> asyncio.Lock:
        """Return the write lock shared by every store using this token path."""
        key = str(self._path.resolve())
        lock = self._path_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._path_locks[key] = lock
        return lock

    # ------------------------------------------------------------------ #
    # Loading
    # ------------------------------------------------------------------ #

    async def load_saved(self) -> bool:
        """Load the token file into the provider.

        Returns:
            ``True`` if valid tokens were loaded. ``False`` when the file is
            absent (and no legacy file could be migrated) or was corrupted;
            a corrupted file is deleted.
        """
        if not self._path.exists() and not await self._migrate_legacy():
            logger.debug("No token file found at %s", self._path)
            return False

        try:
            stored = _read_stored(self._path)
        except FileNotFoundError:
            return False
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as exc:
            logger.warning("Removing corrupted token file %s: %s", self._path, _short(exc))
            delete_token_file(self._path)
            return False
        except OSError as exc:
            logger.warning("Could not read token file %s: %s", self._path, exc)
            return False

        self._provider.set_credentials(stored.to_file_dict())
        logger.debug("Tokens loaded from %s", self._path)
        return True

    async def _migrate_legacy(self) -> bool:
        """Copy the first valid legacy token file to the current path.

        Invalid legacy files are skipped and left in place.
        """
        for legacy in self._legacy_paths:
            if legacy == self._path or not legacy.is_file():
                continue
            try:
                stored = _read_stored(legacy)
            except (OSError, json.JSONDecodeError, UnicodeDecodeError, ValidationError) as exc:
                logger.debug("Skipping legacy token file %s: %s", legacy, _short(exc))
                continue

            data = stored.to_file_dict()
            data.setdefault("created_at", utc_now_iso())
            async with self._lock():
                atomic_write(self._path, _serialize(data))
            logger.warning("Migrated tokens from legacy location %s to %s", legacy, self._path)
            return True
        return False

    # ------------------------------------------------------------------ #
    # Validation and refresh
    # ------------------------------------------------------------------ #

    async def validate(self) -> bool:
        """Ensure an access token is present, then refresh it if it is stale."""
        if not self._provider.credentials.get("access_token"):
            if not await self.load_saved():
                return False
            if not self._provider.credentials.get("access_token"):
                return False
        return await self.refresh_if_needed()

    async def refresh_if_needed(self) -> bool:
        """Refresh the access token when it is within the expiry buffer.

        Concurrent calls made while a refresh is in flight await that same
        refresh and receive its result.

        Returns:
            ``True`` if a usable access token is held afterwards, ``False``
            when there is no token material or the refresh failed.
        """
        if self._inflight is None:
            credentials = self._provider.credentials
            access_token = credentials.get("access_token")
            refresh_token = credentials.get("refresh_token")
            if not access_token and not refresh_token:
                logger.info("No access or refresh token available. Please re-authenticate.")
                return False
            if not self._is_stale(credentials):
                return True
            if not refresh_token:
                logger.info("Access token expired and no refresh token is stored")
                return False
            task = asyncio.get_running_loop().create_task(self._refresh())
            task.add_done_callback(self._clear_inflight)
            self._inflight = task

        return await asyncio.shield(self._inflight)

    def _clear_inflight(self, task: asyncio.Task[bool]) -> None:
        if self._inflight is task:
            self._inflight = None

    def _is_stale(self, credentials: Mapping[str, Any]) -> bool:
        expiry = credentials.get("expiry_date")
        if expiry is None:
            return not credentials.get("access_token")
        return now_ms() >= int(expiry) - self._refresh_buffer_ms

    async def _refresh(self) -> bool:
        logger.info("Access token expired or nearing expiry, refreshing")
        try:
            tokens = await self._provider.refresh_access_token()
        except (ProviderHTTPError, httpx.HTTPError, OSError, ValueError) as exc:
            error = classify_error(exc, account=self.context.account)
            self.context.record(error)
            logger.warning("Token refresh failed: %s [%s]", error.reason, error.code.value)
            if error.requires_token_clear():
                await self.clear()
            return False
        if not tokens.get("access_token"):
            logger.warning("Received invalid tokens during refresh")
            return False
        logger.info("Token refreshed successfully")
        return True

    # ------------------------------------------------------------------ #
    # Writing
    # ------------------------------------------------------------------ #

    async def save(self, tokens: Mapping[str, Any]) -> None:
        """Persist *tokens* with a fresh ``created_at`` and load them into the provider.

        Raises:
            OSError: If the file cannot be written; the previous file is
                left untouched.
            pydantic.ValidationError: If *tokens* carries no token material.
        """
        data = {**tokens, "created_at": utc_now_iso()}
        stored = StoredCredential.model_validate(data)
        async with self._lock():
            atomic_write(self._path, _serialize(stored.to_file_dict()))
        self._provider.set_credentials(tokens)
        logger.info("Tokens saved to %s", self._path)

    async def handle_tokens_update(self, new_tokens: Mapping[str, Any]) -> None:
        """Merge a provider token notification into the token file.

        The stored ``refresh_token`` is kept unless the notification carries
        a new one, and ``created_at`` is carried forward from the file.
        Write failures are logged; the in-memory tokens remain usable.
        """
        async with self._lock():
            try:
                current = _read_stored(self._path).to_file_dict()
            except FileNotFoundError:
                current = {}
            except (json.JSONDecodeError, UnicodeDecodeError, ValidationError, OSError) as exc:
                logger.warning("Replacing unreadable token file %s: %s", self._path, _short(exc))
                current = {}

            merged = {**current, **new_tokens}
            refresh_token = new_tokens.get("refresh_token") or current.get("refresh_token")
            if refresh_token:
                merged["refresh_token"] = refresh_token
            merged["created_at"] = current.get("created_at") or utc_now_iso()

            try:
                atomic_write(self._path, _serialize(merged))
            except OSError as exc:
                logger.error("Error saving updated tokens to %s: %s", self._path, exc)
                return
        logger.debug("Tokens updated and saved")

    async def clear(self) -> None:
        """Forget the credentials in memory and delete the token file.

        Best-effort: a missing file is fine and other failures are logged.
        """
        self._provider.set_credentials({})
        async with self._lock():
            delete_token_file(self._path)

    async def revoke(self) -> bool:
        """Revoke the stored grant at the provider, then :meth:`clear`.

        Returns:
            Whether the provider confirmed the revocation. Local tokens are
            cleared either way.
        """
        credentials = self._provider.credentials
        if not credentials and await self.load_saved():
            credentials = self._provider.credentials
        token = credentials.get("refresh_token") or credentials.get("access_token")

        revoked = False
        if token:
            try:
                await self._provider.revoke_token(token)
                revoked = True
            except (ProviderHTTPError, httpx.HTTPError) as exc:
                logger.warning("Token revocation failed: %s", exc)
        await self.clear()
        return revoked

    # ------------------------------------------------------------------ #
    # Inspection
    # ------------------------------------------------------------------ #

    def status(self) -> TokenStatus:
        """Describe the token file without touching the provider."""
        return token_status(self._path)


# ------------------------------------------------------------------ #
# Module-level helpers
# ------------------------------------------------------------------ #


def token_status(path: Path) -> TokenStatus:
    """Describe the token file at *path* (no client credentials needed)."""
    status = TokenStatus(
        path=str(path),
        exists=path.exists(),
        project_level=is_project_level_path(path),
    )
    if not status.exists:
        return status
    try:
        stored = _read_stored(path)
    except (OSError, json.JSONDecodeError, UnicodeDecodeError, ValidationError):
        return status

    status.valid = True
    status.has_access_token = bool(stored.access_token)
    status.has_refresh_token = bool(stored.refresh_token)
    status.created_at = stored.created_at
    if stored.expiry_date is not None:
        status.expires_at = datetime.fromtimestamp(
            stored.expiry_date / 1000, tz=timezone.utc
        ).isoformat()
        status.expired = stored.is_stale(0)
    if stored.scope:
        status.scopes = stored.scope.split()
    return status


def delete_token_file(path: Path) -> bool:
    """Delete the token file at *path*, best-effort.

    Returns:
        ``True`` if a file was removed. A missing file is not an error and
        other failures are logged, never raised.
    """
    try:
        path.unlink()
    except FileNotFoundError:
        logger.debug("Token file already deleted")
        return False
    except OSError as exc:
        logger.warning("Error clearing tokens at %s: %s", path, exc)
        return False
    logger.info("Tokens cleared")
    return True


def _read_stored(path: Path) -> StoredCredential:
    return StoredCredential.model_validate(json.loads(path.read_text(encoding="utf-8")))


def _serialize(data: Mapping[str, Any]) -> str:
    return json.dumps(dict(data), indent=2) + "\n"


def _short(exc: BaseException) -> str:
    """First line of an exception message (pydantic errors are multi-line)."""
    text = str(exc)
    return text.splitlines()[0] if text else type(exc).__name__
