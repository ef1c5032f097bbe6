"""Shared test fixtures for loopauth.

Provides reusable fixtures for isolated config environments, client
credentials, providers and token stores, output state, and running CLI
commands. These fixtures are automatically discovered by pytest and
available to all test modules without explicit imports.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import pytest

from loopauth.auth.provider import OAuthProvider
from loopauth.auth.token_store import TokenStore
from loopauth.models import ClientCredential, now_ms
from loopauth.output import OutputFormat, OutputManager, reset_output, set_output


CLIENT_ID = "123456789012-abcdefghijklmnopqrstuv.apps.googleusercontent.com"
CLIENT_SECRET = "GOCSPX-test-secret"
TOKEN_URL = "https://oauth2.googleapis.com/token"
REVOKE_URL = "https://oauth2.googleapis.com/revoke"


# ---------------------------------------------------------------------------
# Auto-reset global state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    The OutputManager caches references to sys.stdout/sys.stderr at
    creation time.  When Typer's CliRunner redirects those streams during
    a test and the test finishes, the cached references become stale
    ("I/O operation on closed file").  Resetting forces a fresh manager
    to be created on next use.
    """
    yield
    reset_output()


@pytest.fixture(autouse=True)
def _reset_loopauth_logger() -> None:
    """Drop handlers installed by ``configure_logging`` during a CLI test."""
    yield
    logger = logging.getLogger("loopauth")
    for handler in list(logger.handlers):
        if getattr(handler, "_loopauth", False):
            logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


# ---------------------------------------------------------------------------
# Config isolation fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate configuration to a temporary directory.

    Points HOME, XDG_CONFIG_HOME and XDG_DATA_HOME at subdirectories of
    tmp_path so that tests never touch real user config or tokens. Clears
    every LOOPAUTH_* and GOOGLE_* variable that affects path or client
    resolution and changes the working directory to tmp_path.

    Returns:
        The tmp_path root directory for additional file creation.
    """
    home_dir = tmp_path / "home"
    home_dir.mkdir()
    monkeypatch.setenv("HOME", str(home_dir))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))

    for var in [
        "LOOPAUTH_PROFILE",
        "LOOPAUTH_TOKEN_PATH",
        "LOOPAUTH_OAUTH_CREDENTIALS",
        "LOOPAUTH_SERVICES",
        "LOOPAUTH_READ_ONLY",
        "LOOPAUTH_DEBUG",
        "GOOGLE_CLIENT_ID",
        "GOOGLE_CLIENT_SECRET",
        "GOOGLE_DRIVE_MCP_TOKEN_PATH",
        "GOOGLE_DRIVE_OAUTH_CREDENTIALS",
    ]:
        monkeypatch.delenv(var, raising=False)

    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def config_dir(isolated_config: Path) -> Path:
    """The loopauth config directory inside the isolated environment."""
    return isolated_config / "config" / "loopauth"


@pytest.fixture
def credentials_file(config_dir: Path) -> Path:
    """Write a valid installed-app credentials file to the default location."""
    config_dir.mkdir(parents=True, exist_ok=True)
    path = config_dir / "credentials.json"
    path.write_text(
        json.dumps(
            {
                "installed": {
                    "client_id": CLIENT_ID,
                    "client_secret": CLIENT_SECRET,
                    "redirect_uris": ["http://localhost"],
                }
            }
        )
    )
    return path


def write_tokens(path: Path, **fields: Any) -> dict[str, Any]:
    """Write a token file with sensible defaults; return what was written."""
    data: dict[str, Any] = {
        "access_token": "ya29.access",
        "refresh_token": "1//refresh",
        "expiry_date": now_ms() + 60 * 60 * 1000,
        "token_type": "Bearer",
        "created_at": "2026-01-01T00:00:00+00:00",
    }
    data.update(fields)
    data = {k: v for k, v in data.items() if v is not None}
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))
    return data


# ---------------------------------------------------------------------------
# Provider and store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def client_credential() -> ClientCredential:
    """A structurally valid client identity."""
    return ClientCredential(
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        redirect_uris=("http://localhost",),
    )


@pytest.fixture
def provider(client_credential: ClientCredential) -> OAuthProvider:
    """OAuthProvider with the default Google endpoints."""
    return OAuthProvider(client_credential)


@pytest.fixture
def token_path(isolated_config: Path) -> Path:
    """Token file path inside the isolated config directory."""
    return isolated_config / "config" / "loopauth" / "tokens.json"


@pytest.fixture
def store(provider: OAuthProvider, token_path: Path) -> TokenStore:
    """TokenStore on the isolated token path with no legacy locations."""
    return TokenStore(provider, token_path, legacy_paths=[])


# ---------------------------------------------------------------------------
# Output fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def quiet_output() -> OutputManager:
    """Set up a quiet output manager for tests that don't care about output.

    Installs a PLAIN-format, quiet, colourless OutputManager as the global
    output and resets it after the test completes.
    """
    output = OutputManager(format=OutputFormat.PLAIN, quiet=True, no_color=True)
    set_output(output)
    yield output
    reset_output()


@pytest.fixture
def json_output() -> OutputManager:
    """Set up JSON output for tests that check JSON-formatted output."""
    output = OutputManager(format=OutputFormat.JSON)
    set_output(output)
    yield output
    reset_output()


# ---------------------------------------------------------------------------
# CLI runner fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_runner():
    """Typer CLI test runner.

    Returns a CliRunner instance that captures stdout/stderr and
    provides a consistent interface for invoking Typer apps in tests.
    """
    from typer.testing import CliRunner

    return CliRunner()


@pytest.fixture
def make_tokens():
    """Factory fixture: ``make_tokens(path, **overrides)`` writes a token file."""
    return write_tokens
