"""Configuration management with XDG paths, profiles, scopes, and atomic writes.

This module handles every path and environment-derived setting for loopauth:

* **Directory layout** -- ``$XDG_CONFIG_HOME/loopauth/`` (default
  ``~/.config/loopauth/``) holds the client credentials file and the token
  file. Named profiles live under ``profiles/<name>/``. See
  :func:`get_config_dir`, :func:`get_profile_dir`, :func:`get_data_dir`.
* **Profiles** -- ``LOOPAUTH_PROFILE`` selects a profile; names are
  validated by :func:`validate_profile_name` so they can never escape the
  profiles directory.
* **File resolution** -- :func:`get_token_path` applies the env-var >
  profile > default precedence. The credentials file has one lookup per
  location (:func:`get_env_keys_path`, :func:`get_profile_keys_path`,
  :func:`get_default_keys_path`), tried in that order.
  :func:`get_legacy_keys_paths` and :func:`get_legacy_token_paths` list
  pre-migration locations that are still honoured.
* **Scopes** -- :func:`get_scopes` derives the OAuth scope list from the
  enabled services (``LOOPAUTH_SERVICES``) and read-only mode
  (``LOOPAUTH_READ_ONLY``).

All token writes use :func:`atomic_write` (temp file in the same directory,
then ``os.replace``) so the destination is always either the old or the new
version, never a partial one.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Optional

from loopauth.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_APP_NAME = "loopauth"
_LEGACY_APP_NAME = "google-drive-mcp"
_KEYS_FILENAME = "credentials.json"
_TOKEN_FILENAME = "tokens.json"

ENV_PROFILE = "LOOPAUTH_PROFILE"
ENV_TOKEN_PATH = "LOOPAUTH_TOKEN_PATH"
ENV_CREDENTIALS_PATH = "LOOPAUTH_OAUTH_CREDENTIALS"
ENV_SERVICES = "LOOPAUTH_SERVICES"
ENV_READ_ONLY = "LOOPAUTH_READ_ONLY"
ENV_CLIENT_ID = "GOOGLE_CLIENT_ID"
ENV_CLIENT_SECRET = "GOOGLE_CLIENT_SECRET"

LEGACY_ENV_TOKEN_PATH = "GOOGLE_DRIVE_MCP_TOKEN_PATH"
LEGACY_ENV_CREDENTIALS_PATH = "GOOGLE_DRIVE_OAUTH_CREDENTIALS"

_PROFILE_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


# --- XDG path resolution ---


def _xdg_base(env_var: str, default_segments: tuple[str, ...]) -> Path:
    """Resolve an XDG base directory from an env var with fallback segments under $HOME."""
    env_value = os.environ.get(env_var, "")
    if env_value:
        return Path(env_value)
    base = Path.home()
    for seg in default_segments:
        base = base / seg
    return base


def get_config_home() -> Path:
    """Return ``$XDG_CONFIG_HOME`` (default ``~/.config``)."""
    return _xdg_base("XDG_CONFIG_HOME", (".config",))


def get_config_dir() -> Path:
    """Return the loopauth configuration directory.

    The directory is not created here; writers call
    :func:`ensure_private_dir` before writing into it.
    """
    return get_config_home() / _APP_NAME


def get_data_dir() -> Path:
    """Return the data directory (crash logs), creating it if necessary.

    ``$XDG_DATA_HOME/loopauth/`` (default ``~/.local/share/loopauth/``).
    """
    path = _xdg_base("XDG_DATA_HOME", (".local", "share")) / _APP_NAME
    path.mkdir(parents=True, exist_ok=True)
    return path


def ensure_private_dir(path: Path) -> Path:
    """Create *path* (and parents) readable only by the owner, if absent."""
    path.mkdir(parents=True, exist_ok=True, mode=0o700)
    return path


# --- Profiles ---


def validate_profile_name(name: str) -> str:
    """Check that *name* is a safe profile directory name.

    Args:
        name: Candidate profile name.

    Returns:
        The name unchanged.

    Raises:
        ConfigurationError: If the name is longer than 64 characters or
            contains anything other than ASCII letters, digits, ``-`` and
            ``_`` (which rules out path traversal, separators and NUL).
    """
    if not _PROFILE_NAME_RE.match(name):
        raise ConfigurationError(
            f"Invalid profile name {name!r}: use 1-64 letters, digits, '-' or '_'"
        )
    return name


def get_active_profile() -> Optional[str]:
    """Return the active profile name from ``LOOPAUTH_PROFILE``, or ``None``.

    Raises:
        ConfigurationError: If the variable is set to an invalid name.
    """
    value = os.environ.get(ENV_PROFILE, "")
    if not value:
        return None
    return validate_profile_name(value)


def get_profile_dir(name: str) -> Path:
    """Return ``<config_dir>/profiles/<name>/``."""
    return get_config_dir() / "profiles" / validate_profile_name(name)


def _base_dir() -> Path:
    """The profile directory when a profile is active, else the config directory."""
    profile = get_active_profile()
    if profile is not None:
        return get_profile_dir(profile)
    return get_config_dir()


# --- File resolution ---


def get_env_keys_path() -> Optional[Path]:
    """Return the ``LOOPAUTH_OAUTH_CREDENTIALS`` path, or ``None`` when unset."""
    env_path = os.environ.get(ENV_CREDENTIALS_PATH)
    if not env_path:
        return None
    return Path(env_path).expanduser().resolve()


def get_profile_keys_path() -> Optional[Path]:
    """Return ``<profile_dir>/credentials.json``, or ``None`` without an active profile."""
    profile = get_active_profile()
    if profile is None:
        return None
    return get_profile_dir(profile) / _KEYS_FILENAME


def get_default_keys_path() -> Path:
    """Return ``<config_dir>/credentials.json``."""
    return get_config_dir() / _KEYS_FILENAME


def get_keys_file_path() -> Path:
    """Return the preferred location of the OAuth client credentials file.

    This is where users are told to save the file. Lookup itself tries
    every location in turn (see :mod:`loopauth.auth.credentials`).

    Precedence (high to low):
        1. ``LOOPAUTH_OAUTH_CREDENTIALS``
        2. ``<profile_dir>/credentials.json`` when a profile is active
        3. ``<config_dir>/credentials.json``
    """
    return get_env_keys_path() or get_profile_keys_path() or get_default_keys_path()


def get_legacy_keys_paths() -> list[Path]:
    """Return pre-migration credentials file locations, in lookup order."""
    paths: list[Path] = []
    legacy_env = os.environ.get(LEGACY_ENV_CREDENTIALS_PATH)
    if legacy_env:
        paths.append(Path(legacy_env).expanduser().resolve())
    cwd = Path.cwd()
    paths.append(cwd / "gcp-oauth.keys.json")
    paths.append(cwd / "client_secret.json")
    return paths


def get_token_path() -> Path:
    """Return the absolute path of the token file.

    Precedence (high to low):
        1. ``LOOPAUTH_TOKEN_PATH``
        2. ``GOOGLE_DRIVE_MCP_TOKEN_PATH`` (legacy name)
        3. ``<profile_dir>/tokens.json`` when a profile is active
        4. ``<config_dir>/tokens.json``
    """
    for var in (ENV_TOKEN_PATH, LEGACY_ENV_TOKEN_PATH):
        value = os.environ.get(var)
        if value:
            return Path(value).expanduser().resolve()
    return _base_dir() / _TOKEN_FILENAME


def get_legacy_token_paths() -> list[Path]:
    """Return pre-migration token file locations, in lookup order.

    The current token path is never included.
    """
    current = get_token_path()
    candidates = [
        Path.home() / ".gcp-saved-tokens.json",
        Path.cwd() / "google-tokens.json",
        get_config_home() / _LEGACY_APP_NAME / _TOKEN_FILENAME,
    ]
    return [p for p in candidates if p != current]


def is_project_level_path(path: Path) -> bool:
    """Whether *path* lives outside the user config home.

    Token files stored inside a project checkout need a version-control
    ignore rule; ones under ``~/.config`` do not.
    """
    try:
        path.resolve().relative_to(get_config_home().resolve())
    except ValueError:
        return True
    return False


# --- Services and scopes ---

SERVICE_NAMES: tuple[str, ...] = (
    "drive",
    "docs",
    "sheets",
    "slides",
    "calendar",
    "gmail",
    "contacts",
)

_SERVICE_SCOPES: dict[str, tuple[str, ...]] = {
    "drive": ("drive", "drive.file", "drive.readonly"),
    "docs": ("documents",),
    "sheets": ("spreadsheets",),
    "slides": ("presentations",),
    "calendar": ("calendar",),
    "gmail": ("gmail.modify", "mail.google.com", "gmail.settings.basic"),
    "contacts": ("contacts",),
}

_READONLY_SERVICE_SCOPES: dict[str, tuple[str, ...]] = {
    "drive": ("drive.readonly",),
    "docs": ("documents.readonly",),
    "sheets": ("spreadsheets.readonly",),
    "slides": ("presentations.readonly",),
    "calendar": ("calendar.readonly",),
    "gmail": ("gmail.readonly",),
    "contacts": ("contacts.readonly",),
}

# Scopes that are full hosts rather than googleapis.com/auth/ suffixes.
_FULL_URL_SCOPES = frozenset({"mail.google.com"})


def get_enabled_services() -> list[str]:
    """Return the enabled services from ``LOOPAUTH_SERVICES``.

    * unset -- every service
    * empty -- no services
    * ``"drive,gmail"`` -- only those; unknown names are logged and skipped
    """
    value = os.environ.get(ENV_SERVICES)
    if value is None:
        return list(SERVICE_NAMES)

    enabled: list[str] = []
    unknown: list[str] = []
    for raw in value.split(","):
        name = raw.strip().lower()
        if not name:
            continue
        if name in SERVICE_NAMES:
            if name not in enabled:
                enabled.append(name)
        else:
            unknown.append(name)
    if unknown:
        logger.warning(
            "Unknown services: %s. Valid: %s", ", ".join(unknown), ", ".join(SERVICE_NAMES)
        )
    return enabled


def is_read_only_mode() -> bool:
    """Whether ``LOOPAUTH_READ_ONLY`` requests the read-only scope set."""
    return os.environ.get(ENV_READ_ONLY, "").strip().lower() in ("1", "true", "yes", "on")


def _scope_url(scope: str) -> str:
    if scope in _FULL_URL_SCOPES:
        return f"https://{scope}/"
    return f"https://www.googleapis.com/auth/{scope}"


def get_scopes() -> list[str]:
    """Return the de-duplicated OAuth scope URLs for the enabled services."""
    scope_map = _READONLY_SERVICE_SCOPES if is_read_only_mode() else _SERVICE_SCOPES
    scopes: list[str] = []
    for service in get_enabled_services():
        for scope in scope_map[service]:
            url = _scope_url(scope)
            if url not in scopes:
                scopes.append(url)
    return scopes


# --- Atomic file writes ---


def atomic_write(path: Path, data: str, mode: int = 0o600) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is an atomic rename. Its permissions are restricted
    before any content is written. On any failure the temp file is removed
    and the error re-raised; *path* is left untouched.
    """
    ensure_private_dir(path.parent)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        os.chmod(tmp_path, mode)
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None  # prevent double-close below
        os.replace(tmp_path, path)
    except BaseException:
        # Clean up the temp file on any error (including KeyboardInterrupt).
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise
