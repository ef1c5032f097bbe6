"""Canonical Pydantic models for every on-disk and in-memory data shape.

The models fall into two groups:

**Client identity** -- the OAuth client registration, read from a
credentials file or environment variables:
    :class:`OAuthClientSection`, :class:`CredentialsFile`, and the
    normalised :class:`ClientCredential`.

**Stored credential** -- the durable token file written after a
successful code exchange and rewritten on every refresh:
    :class:`StoredCredential`.

Credentials files come in three shapes (``{"installed": {...}}``,
``{"web": {...}}``, or flat). They are validated here and normalised once,
at the boundary, into a single :class:`ClientCredential` so nothing
downstream has to branch on which shape was on disk.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


DEFAULT_LOOPBACK_REDIRECT = "http://127.0.0.1/oauth2callback"


# --- Client identity ---


class ClientCredential(BaseModel):
    """Normalised OAuth client identity.

    Loaded once per authentication attempt and never persisted alongside
    tokens.
    """

    model_config = ConfigDict(frozen=True)

    client_id: str
    client_secret: Optional[str] = None
    redirect_uris: tuple[str, ...] = ()


class OAuthClientSection(BaseModel):
    """One client block of a credentials file (all fields optional on disk)."""

    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_uris: Optional[list[str]] = None


class CredentialsFile(BaseModel):
    """A downloaded OAuth client credentials file.

    Example::

        {"installed": {"client_id": "123.apps.googleusercontent.com",
                       "client_secret": "...",
                       "redirect_uris": ["http://localhost"]}}
    """

    model_config = ConfigDict(extra="ignore")

    installed: Optional[OAuthClientSection] = None
    web: Optional[OAuthClientSection] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_uris: Optional[list[str]] = None

    @property
    def kind(self) -> Literal["installed", "web", "flat"]:
        """Which of the three supported shapes this file uses."""
        if self.installed is not None:
            return "installed"
        if self.web is not None:
            return "web"
        return "flat"

    def section(self) -> OAuthClientSection:
        """Return the client block, whichever shape it was stored in."""
        if self.installed is not None:
            return self.installed
        if self.web is not None:
            return self.web
        return OAuthClientSection(
            client_id=self.client_id,
            client_secret=self.client_secret,
            redirect_uris=self.redirect_uris,
        )

    def to_client_credential(self) -> Optional[ClientCredential]:
        """Normalise into a :class:`ClientCredential`.

        Returns:
            The credential, or ``None`` when the file carries no client id.
        """
        section = self.section()
        if not section.client_id:
            return None
        return ClientCredential(
            client_id=section.client_id,
            client_secret=section.client_secret or None,
            redirect_uris=tuple(section.redirect_uris or ()),
        )


# --- Stored credential ---


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string (the ``created_at`` format)."""
    return datetime.now(timezone.utc).isoformat()


def now_ms() -> int:
    """Current time in epoch milliseconds (the ``expiry_date`` unit)."""
    return int(time.time() * 1000)


class StoredCredential(BaseModel):
    """The durable token file contents.

    ``expiry_date`` is epoch milliseconds. ``created_at`` is set once on the
    first acquisition and carried forward across every refresh rewrite.
    Provider fields this model does not name (``id_token``,
    ``refresh_token_expires_in``, ...) are preserved in ``model_extra``.
    """

    model_config = ConfigDict(extra="allow")

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expiry_date: Optional[int] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None
    created_at: Optional[str] = Field(default=None, description="ISO-8601 first acquisition time")

    @model_validator(mode="after")
    def _require_token_material(self) -> "StoredCredential":
        if not self.access_token and not self.refresh_token:
            raise ValueError("token file carries neither an access_token nor a refresh_token")
        return self

    def is_stale(self, buffer_ms: int, now: Optional[int] = None) -> bool:
        """Whether the access token should be treated as expired.

        A token without an ``expiry_date`` is stale only when there is no
        access token at all.

        Args:
            buffer_ms: Safety margin subtracted from the real expiry.
            now: Current epoch milliseconds (defaults to the wall clock).
        """
        if self.expiry_date is None:
            return not self.access_token
        current = now_ms() if now is None else now
        return current >= self.expiry_date - buffer_ms

    def to_file_dict(self) -> dict:
        """Serialisable dict with unset optional fields dropped."""
        return self.model_dump(mode="json", exclude_none=True)
