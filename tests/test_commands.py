"""Tests for the ``loopauth auth`` commands and the root callback."""

from __future__ import annotations

import json
from pathlib import Path

import httpx
import respx

from loopauth import __version__
from loopauth.app import app
from loopauth.auth.provider import GOOGLE_REVOKE_ENDPOINT, GOOGLE_TOKEN_ENDPOINT
from loopauth.config import get_token_path
from loopauth.exit_codes import EXIT_AUTH_FAILURE, EXIT_CONNECTION_ERROR, EXIT_GENERIC_FAILURE

PLAIN = ["--plain", "--no-color"]
# Restores LOOPAUTH_PROFILE after commands that export --profile.
CLEAN_ENV = {"LOOPAUTH_PROFILE": None}


def _invoke(cli_runner, *args: str, **kwargs):
    kwargs.setdefault("env", CLEAN_ENV)
    return cli_runner.invoke(app, [*PLAIN, *args], **kwargs)


class TestRoot:
    def test_version(self, cli_runner) -> None:
        result = cli_runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"loopauth {__version__}" in result.output

    def test_invalid_profile(self, cli_runner, isolated_config: Path) -> None:
        result = _invoke(cli_runner, "--profile", "../escape", "auth", "status")
        assert result.exit_code == EXIT_GENERIC_FAILURE
        assert "profile" in result.output.lower()


# ------------------------------------------------------------------ #
# status
# ------------------------------------------------------------------ #


class TestStatus:
    def test_no_token_file(self, cli_runner, isolated_config: Path) -> None:
        result = _invoke(cli_runner, "auth", "status")
        assert result.exit_code == 0, result.output
        assert "Exists\tno" in result.output
        assert "loopauth auth login" in result.output

    def test_plain_table(self, cli_runner, isolated_config: Path, make_tokens) -> None:
        make_tokens(get_token_path(), scope="openid email")
        result = _invoke(cli_runner, "auth", "status")
        assert result.exit_code == 0, result.output
        assert "Refresh Token\tyes" in result.output
        assert "Scopes\topenid email" in result.output
        assert "ya29" not in result.output

    def test_json(self, cli_runner, isolated_config: Path, make_tokens) -> None:
        make_tokens(get_token_path())
        result = cli_runner.invoke(app, ["--json", "auth", "status"], env=CLEAN_ENV)
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["exists"] is True
        assert data["has_access_token"] is True
        assert data["expired"] is False
        assert data["profile"] is None
        assert "ya29" not in result.stdout

    def test_profile_changes_token_path(self, cli_runner, isolated_config: Path) -> None:
        result = cli_runner.invoke(
            app, ["--json", "--profile", "work", "auth", "status"], env=CLEAN_ENV
        )
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["profile"] == "work"
        assert Path(data["path"]).parent.name == "work"


# ------------------------------------------------------------------ #
# token
# ------------------------------------------------------------------ #


class TestToken:
    def test_prints_only_the_token(
        self, cli_runner, credentials_file: Path, make_tokens
    ) -> None:
        make_tokens(get_token_path(), access_token="ya29.for-curl")
        result = _invoke(cli_runner, "auth", "token")
        assert result.exit_code == 0, result.output
        assert result.stdout.strip() == "ya29.for-curl"

    def test_not_signed_in(self, cli_runner, credentials_file: Path) -> None:
        result = _invoke(cli_runner, "auth", "token")
        assert result.exit_code == EXIT_AUTH_FAILURE
        assert "Not authenticated" in result.output

    def test_no_client_credentials(self, cli_runner, isolated_config: Path, make_tokens) -> None:
        make_tokens(get_token_path())
        result = _invoke(cli_runner, "auth", "token")
        assert result.exit_code == EXIT_AUTH_FAILURE
        assert "How to fix:" in result.output

    def test_provider_unreachable(
        self, cli_runner, credentials_file: Path, make_tokens
    ) -> None:
        make_tokens(get_token_path(), expiry_date=1000)
        with respx.mock:
            respx.post(GOOGLE_TOKEN_ENDPOINT).mock(side_effect=httpx.ConnectError("down"))
            result = _invoke(cli_runner, "auth", "token")
        assert result.exit_code == EXIT_CONNECTION_ERROR
        assert "Unable to connect" in result.output
        assert result.stdout.strip() == ""


# ------------------------------------------------------------------ #
# login
# ------------------------------------------------------------------ #


class TestLogin:
    def test_no_browser_paste(self, cli_runner, credentials_file: Path) -> None:
        with respx.mock:
            respx.post(GOOGLE_TOKEN_ENDPOINT).mock(
                return_value=httpx.Response(
                    200, json={"access_token": "ya29.pasted", "refresh_token": "1//r", "expires_in": 3600}
                )
            )
            result = _invoke(
                cli_runner, "auth", "login", "--no-browser", input="4/0AbCdEfGhIjKlMn\n"
            )
        assert result.exit_code == 0, result.output
        assert "AUTHENTICATION REQUIRED" in result.output
        assert "Authentication successful." in result.output
        assert json.loads(get_token_path().read_text())["access_token"] == "ya29.pasted"

    def test_already_signed_in(
        self, cli_runner, credentials_file: Path, make_tokens
    ) -> None:
        make_tokens(get_token_path())
        result = _invoke(cli_runner, "auth", "login", "--no-browser")
        assert result.exit_code == 0, result.output
        assert "AUTHENTICATION REQUIRED" not in result.output

    def test_cancelled_prompt(self, cli_runner, credentials_file: Path) -> None:
        result = _invoke(cli_runner, "auth", "login", "--no-browser", input="")
        assert result.exit_code == EXIT_AUTH_FAILURE
        assert "cancelled" in result.output

    def test_missing_client_credentials(self, cli_runner, isolated_config: Path) -> None:
        result = _invoke(cli_runner, "auth", "login", "--no-browser")
        assert result.exit_code == EXIT_AUTH_FAILURE
        assert "OAuth credentials file not found" in result.output


# ------------------------------------------------------------------ #
# logout
# ------------------------------------------------------------------ #


class TestLogout:
    def test_nothing_stored(self, cli_runner, isolated_config: Path) -> None:
        result = _invoke(cli_runner, "auth", "logout")
        assert result.exit_code == 0
        assert "No stored credential." in result.output

    def test_local_delete(self, cli_runner, isolated_config: Path, make_tokens) -> None:
        make_tokens(get_token_path())
        result = _invoke(cli_runner, "auth", "logout")
        assert result.exit_code == 0, result.output
        assert "Tokens removed" in result.output
        assert not get_token_path().exists()

    def test_revoke(self, cli_runner, credentials_file: Path, make_tokens) -> None:
        make_tokens(get_token_path())
        with respx.mock:
            respx.post(GOOGLE_REVOKE_ENDPOINT).mock(return_value=httpx.Response(200))
            result = _invoke(cli_runner, "auth", "logout", "--revoke")
        assert result.exit_code == 0, result.output
        assert "Access revoked" in result.output
        assert not get_token_path().exists()

    def test_revoke_without_client_still_deletes(
        self, cli_runner, isolated_config: Path, make_tokens
    ) -> None:
        make_tokens(get_token_path())
        result = _invoke(cli_runner, "auth", "logout", "--revoke")
        assert result.exit_code == 0, result.output
        assert "Could not revoke" in result.output
        assert not get_token_path().exists()


# ------------------------------------------------------------------ #
# doctor
# ------------------------------------------------------------------ #


class TestDoctor:
    def test_valid(self, cli_runner, credentials_file: Path) -> None:
        result = _invoke(cli_runner, "auth", "doctor")
        assert result.exit_code == 0, result.output
        assert "looks good" in result.output
        assert str(credentials_file) in result.output

    def test_json(self, cli_runner, credentials_file: Path) -> None:
        result = cli_runner.invoke(app, ["--json", "auth", "doctor"], env=CLEAN_ENV)
        assert result.exit_code == 0, result.output
        data, _ = json.JSONDecoder().raw_decode(result.stdout)
        assert data["valid"] is True
        assert data["source"] == "file"
        assert data["errors"] == []

    def test_missing(self, cli_runner, isolated_config: Path) -> None:
        result = _invoke(cli_runner, "auth", "doctor")
        assert result.exit_code == 1
        assert "OAuth credentials file not found" in result.output
