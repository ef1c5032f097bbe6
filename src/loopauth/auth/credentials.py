"""Locate, parse, and validate the OAuth client identity.

:class:`CredentialResolver` walks an ordered list of
:class:`CredentialSource` objects and returns the first one that yields a
client id:

1. :class:`EnvCredentialSource` -- ``GOOGLE_CLIENT_ID`` / ``GOOGLE_CLIENT_SECRET``
2. :class:`FileCredentialSource` -- one each for ``LOOPAUTH_OAUTH_CREDENTIALS``,
   the active profile's ``credentials.json``, and the config directory's
3. :class:`LegacyCredentialSource` -- pre-migration locations, used with
   a deprecation warning

Each source returns a :class:`ResolvedCredential` or ``None`` for "not
found here". A file that exists but cannot be parsed is an error, not a
miss: silently skipping it would pick up a stale legacy file instead.

:func:`validate_client_config` is the pre-flight check run before any
browser is opened; :func:`load_client_credential` combines both.
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Sequence

from pydantic import ValidationError

from loopauth.config import (
    ENV_CLIENT_ID,
    ENV_CLIENT_SECRET,
    ENV_CREDENTIALS_PATH,
    get_default_keys_path,
    get_env_keys_path,
    get_keys_file_path,
    get_legacy_keys_paths,
    get_profile_keys_path,
    get_token_path,
)
from loopauth.errors import (
    CONSOLE_URL,
    ProviderAuthError,
    invalid_client_format_error,
    not_configured_error,
)
from loopauth.exceptions import ConfigurationError
from loopauth.models import DEFAULT_LOOPBACK_REDIRECT, ClientCredential, CredentialsFile

logger = logging.getLogger(__name__)

CLIENT_ID_SUFFIX = ".apps.googleusercontent.com"
MIN_CLIENT_ID_LENGTH = 50


@dataclass(frozen=True)
class ResolvedCredential:
    """A client credential together with where it came from."""

    credential: ClientCredential
    source: str
    path: Optional[Path] = None
    legacy: bool = False


# --- Sources ---


class CredentialSource(ABC):
    """One place a client identity may be found."""

    name: str = "source"

    @abstractmethod
    def load(self) -> Optional[ResolvedCredential]:
        """Return the credential from this source, or ``None`` if absent.

        Raises:
            ConfigurationError: If the source exists but is unusable.
        """


class EnvCredentialSource(CredentialSource):
    """``GOOGLE_CLIENT_ID`` / ``GOOGLE_CLIENT_SECRET`` environment variables.

    Values are trimmed; a blank id means unset. A secret without an id is
    ignored.
    """

    name = "environment"

    def load(self) -> Optional[ResolvedCredential]:
        client_id = os.environ.get(ENV_CLIENT_ID, "").strip()
        if not client_id:
            return None
        client_secret = os.environ.get(ENV_CLIENT_SECRET, "").strip() or None
        logger.debug("Using client credentials from %s", ENV_CLIENT_ID)
        return ResolvedCredential(
            credential=ClientCredential(
                client_id=client_id,
                client_secret=client_secret,
                redirect_uris=(DEFAULT_LOOPBACK_REDIRECT,),
            ),
            source=self.name,
        )


class FileCredentialSource(CredentialSource):
    """A credentials JSON file in any of the installed/web/flat shapes.

    Args:
        path: File path, or a zero-argument callable returning one (so
            environment changes are honoured at lookup time). A callable
            may return ``None`` when its location does not apply.
        legacy: Whether a hit here should be reported as deprecated.
    """

    def __init__(
        self, path: Path | Callable[[], Optional[Path]], legacy: bool = False
    ) -> None:
        self._path = path
        self.legacy = legacy
        self.name = "legacy file" if legacy else "file"

    @property
    def path(self) -> Optional[Path]:
        return self._path() if callable(self._path) else self._path

    def load(self) -> Optional[ResolvedCredential]:
        path = self.path
        if path is None or not path.is_file():
            return None

        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            parsed = CredentialsFile.model_validate(raw)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            raise ConfigurationError(f"Failed to parse credentials file {path}: {exc}") from exc

        credential = parsed.to_client_credential()
        if credential is None:
            raise ConfigurationError(f"Missing client_id in credentials file {path}")

        if self.legacy:
            logger.warning(
                "Using legacy credentials location: %s. Please move it to: %s",
                path,
                get_keys_file_path(),
            )
        else:
            logger.debug("Using %s client credentials from %s", parsed.kind, path)
        return ResolvedCredential(
            credential=credential, source=self.name, path=path, legacy=self.legacy
        )


class LegacyCredentialSource(CredentialSource):
    """Pre-migration credential file locations, tried in order."""

    name = "legacy file"

    def __init__(self, paths: Callable[[], list[Path]] = get_legacy_keys_paths) -> None:
        self._paths = paths

    def load(self) -> Optional[ResolvedCredential]:
        for path in self._paths():
            resolved = FileCredentialSource(path, legacy=True).load()
            if resolved is not None:
                return resolved
        return None


def default_sources() -> list[CredentialSource]:
    """The standard lookup order.

    Environment variables, then the ``LOOPAUTH_OAUTH_CREDENTIALS`` file, the
    active profile's file, the config directory's file, and finally the
    legacy files. A location that does not apply (no env path, no profile)
    is skipped.
    """
    return [
        EnvCredentialSource(),
        FileCredentialSource(get_env_keys_path),
        FileCredentialSource(get_profile_keys_path),
        FileCredentialSource(get_default_keys_path),
        LegacyCredentialSource(),
    ]


# --- Resolver ---


class CredentialResolver:
    """Try each :class:`CredentialSource` in order until one yields a client id."""

    def __init__(self, sources: Optional[Sequence[CredentialSource]] = None) -> None:
        self._sources = list(sources) if sources is not None else default_sources()

    @property
    def sources(self) -> list[CredentialSource]:
        return list(self._sources)

    def find(self) -> Optional[ResolvedCredential]:
        """Return the first resolved credential, or ``None`` if no source has one."""
        for source in self._sources:
            resolved = source.load()
            if resolved is not None:
                return resolved
        return None

    def resolve(self) -> ClientCredential:
        """Return the client credential.

        Raises:
            ConfigurationError: If no source yields a client id, or a
                credentials file is present but unparseable.
        """
        resolved = self.find()
        if resolved is None:
            raise ConfigurationError(credentials_error_message())
        return resolved.credential


def credentials_error_message() -> str:
    """Multi-line guidance shown when no client credentials can be found."""
    return f"""OAuth credentials not found. Provide them using one of these methods:

1. Environment variables:
   export {ENV_CLIENT_ID}="123456789-abc{CLIENT_ID_SUFFIX}"
   export {ENV_CLIENT_SECRET}="..."

2. Credentials file:
   Save the downloaded JSON as {get_keys_file_path()}
   or point {ENV_CREDENTIALS_PATH} at it.

Tokens are saved to: {get_token_path()}

To get OAuth credentials:
1. Go to the Google Cloud Console ({CONSOLE_URL})
2. Create or select a project and enable the APIs you need
3. Create OAuth 2.0 credentials (Desktop app type)
4. Download the credentials JSON file"""


# --- Pre-flight validation ---


@dataclass
class ValidationResult:
    """Outcome of :func:`validate_client_config`."""

    errors: list[ProviderAuthError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    resolved: Optional[ResolvedCredential] = None

    @property
    def valid(self) -> bool:
        return not self.errors


def check_client_id(client_id: str) -> list[str]:
    """Structural check of a client id.

    Returns:
        Non-fatal warnings (untrimmed whitespace, suspiciously short id).

    Raises:
        ProviderAuthError: ``INVALID_CLIENT`` if the id does not end with
            the provider's client id suffix.
    """
    if not client_id.strip().endswith(CLIENT_ID_SUFFIX):
        raise invalid_client_format_error(client_id)
    warnings: list[str] = []
    if client_id != client_id.strip():
        warnings.append("client_id contains leading or trailing whitespace")
    if len(client_id) < MIN_CLIENT_ID_LENGTH:
        warnings.append("client_id appears unusually short - may be truncated")
    return warnings


def validate_client_config(resolver: Optional[CredentialResolver] = None) -> ValidationResult:
    """Validate the OAuth client configuration before starting a flow."""
    resolver = resolver or CredentialResolver()
    result = ValidationResult()

    try:
        resolved = resolver.find()
    except ConfigurationError as exc:
        result.errors.append(
            not_configured_error(
                str(exc),
                [
                    "Ensure the credentials file is valid JSON with a client_id",
                    "Download a fresh credentials file from Google Cloud Console",
                    "Make sure the file is not corrupted or truncated",
                ],
            )
        )
        return result

    if resolved is None:
        keys_path = get_keys_file_path()
        result.errors.append(
            not_configured_error(
                f"OAuth credentials file not found at: {keys_path}",
                [
                    "Go to Google Cloud Console > APIs & Services > Credentials",
                    'Create OAuth 2.0 Client ID (choose "Desktop app" type)',
                    "Download the credentials JSON file",
                    f"Save it as: {keys_path}",
                    f"Or set {ENV_CLIENT_ID} and {ENV_CLIENT_SECRET}",
                ],
            )
        )
        return result

    result.resolved = resolved

    credential = resolved.credential
    try:
        result.warnings.extend(check_client_id(credential.client_id))
    except ProviderAuthError as exc:
        result.errors.append(exc)

    secret = credential.client_secret
    if not secret:
        result.warnings.append("No client_secret found - some auth flows may not work")
    elif secret != secret.strip():
        result.warnings.append("client_secret contains leading or trailing whitespace")

    token_dir = get_token_path().parent
    if token_dir.exists() and not os.access(token_dir, os.W_OK):
        result.warnings.append(f"Token directory may not be writable: {token_dir}")

    return result


def load_client_credential(resolver: Optional[CredentialResolver] = None) -> ClientCredential:
    """Validate the configuration and return a trimmed client credential.

    Warnings are logged; the first error is raised.

    Raises:
        ProviderAuthError: ``OAUTH_NOT_CONFIGURED`` or ``INVALID_CLIENT``.
    """
    result = validate_client_config(resolver)
    if result.errors:
        raise result.errors[0]
    for warning in result.warnings:
        logger.warning(warning)

    assert result.resolved is not None
    credential = result.resolved.credential
    return credential.model_copy(
        update={
            "client_id": credential.client_id.strip(),
            "client_secret": (credential.client_secret or "").strip() or None,
        }
    )
