"""Tests for client credential resolution and pre-flight validation."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from loopauth.auth.credentials import (
    CredentialResolver,
    EnvCredentialSource,
    FileCredentialSource,
    LegacyCredentialSource,
    check_client_id,
    load_client_credential,
    validate_client_config,
)
from loopauth.errors import ErrorCode, ProviderAuthError
from loopauth.exceptions import ConfigurationError
from loopauth.models import DEFAULT_LOOPBACK_REDIRECT

CLIENT_ID = "123456789012-abcdefghijklmnopqrstuv.apps.googleusercontent.com"


def _write(path: Path, data: object) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))
    return path


# ------------------------------------------------------------------ #
# Sources
# ------------------------------------------------------------------ #


class TestEnvCredentialSource:
    def test_absent(self, isolated_config: Path) -> None:
        assert EnvCredentialSource().load() is None

    def test_trims_values(self, isolated_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GOOGLE_CLIENT_ID", f"  {CLIENT_ID}\n")
        monkeypatch.setenv("GOOGLE_CLIENT_SECRET", " s3cret ")
        resolved = EnvCredentialSource().load()
        assert resolved is not None
        assert resolved.credential.client_id == CLIENT_ID
        assert resolved.credential.client_secret == "s3cret"
        assert resolved.credential.redirect_uris == (DEFAULT_LOOPBACK_REDIRECT,)
        assert resolved.source == "environment"

    def test_blank_id_is_unset(self, isolated_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GOOGLE_CLIENT_ID", "   ")
        monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "s3cret")
        assert EnvCredentialSource().load() is None


class TestFileCredentialSource:
    @pytest.mark.parametrize(
        "data, kind",
        [
            ({"installed": {"client_id": CLIENT_ID, "client_secret": "s"}}, "installed"),
            ({"web": {"client_id": CLIENT_ID, "client_secret": "s"}}, "web"),
            ({"client_id": CLIENT_ID, "client_secret": "s"}, "flat"),
        ],
    )
    def test_three_shapes(self, tmp_path: Path, data: dict, kind: str) -> None:
        path = _write(tmp_path / "creds.json", data)
        resolved = FileCredentialSource(path).load()
        assert resolved is not None
        assert resolved.credential.client_id == CLIENT_ID
        assert resolved.credential.client_secret == "s"
        assert resolved.path == path
        assert resolved.legacy is False

    def test_missing_file(self, tmp_path: Path) -> None:
        assert FileCredentialSource(tmp_path / "absent.json").load() is None

    def test_invalid_json_is_an_error(self, tmp_path: Path) -> None:
        path = tmp_path / "creds.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError, match="Failed to parse"):
            FileCredentialSource(path).load()

    def test_missing_client_id_is_an_error(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "creds.json", {"installed": {"client_secret": "s"}})
        with pytest.raises(ConfigurationError, match="Missing client_id"):
            FileCredentialSource(path).load()

    def test_path_callable_is_evaluated_lazily(self, tmp_path: Path) -> None:
        target = {"path": tmp_path / "a.json"}
        source = FileCredentialSource(lambda: target["path"])
        assert source.load() is None
        target["path"] = _write(tmp_path / "b.json", {"client_id": CLIENT_ID})
        assert source.load() is not None

    def test_legacy_hit_logs_warning(
        self, isolated_config: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        path = _write(isolated_config / "gcp-oauth.keys.json", {"client_id": CLIENT_ID})
        with caplog.at_level(logging.WARNING, logger="loopauth"):
            resolved = FileCredentialSource(path, legacy=True).load()
        assert resolved is not None and resolved.legacy
        assert "legacy credentials location" in caplog.text


# ------------------------------------------------------------------ #
# Resolver
# ------------------------------------------------------------------ #


class TestCredentialResolver:
    def test_env_wins_over_file(
        self,
        isolated_config: Path,
        credentials_file: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        other = "999999999999-zyxwvutsrqponmlkjihgfe.apps.googleusercontent.com"
        monkeypatch.setenv("GOOGLE_CLIENT_ID", other)
        assert CredentialResolver().resolve().client_id == other

    def test_default_file(self, credentials_file: Path) -> None:
        resolved = CredentialResolver().find()
        assert resolved is not None
        assert resolved.path == credentials_file
        assert resolved.source == "file"

    def test_env_path_override(self, isolated_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = _write(isolated_config / "custom" / "keys.json", {"web": {"client_id": CLIENT_ID}})
        monkeypatch.setenv("LOOPAUTH_OAUTH_CREDENTIALS", str(path))
        assert CredentialResolver().resolve().client_id == CLIENT_ID

    def test_profile_file(self, isolated_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        profile_keys = isolated_config / "config" / "loopauth" / "profiles" / "work" / "credentials.json"
        _write(profile_keys, {"installed": {"client_id": CLIENT_ID}})
        monkeypatch.setenv("LOOPAUTH_PROFILE", "work")
        resolved = CredentialResolver().find()
        assert resolved is not None
        assert resolved.path == profile_keys

    def test_profile_without_file_falls_back_to_default(
        self, credentials_file: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LOOPAUTH_PROFILE", "work")
        resolved = CredentialResolver().find()
        assert resolved is not None
        assert resolved.path == credentials_file
        assert CredentialResolver().resolve().client_id == CLIENT_ID

    def test_profile_file_beats_default(
        self, config_dir: Path, credentials_file: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        other = "999999999999-zyxwvutsrqponmlkjihgfe.apps.googleusercontent.com"
        _write(config_dir / "profiles" / "work" / "credentials.json", {"client_id": other})
        monkeypatch.setenv("LOOPAUTH_PROFILE", "work")
        assert CredentialResolver().resolve().client_id == other

    def test_missing_env_path_falls_back_to_default(
        self, credentials_file: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LOOPAUTH_OAUTH_CREDENTIALS", str(tmp_path / "absent.json"))
        resolved = CredentialResolver().find()
        assert resolved is not None
        assert resolved.path == credentials_file

    def test_source_without_location_is_skipped(self) -> None:
        assert FileCredentialSource(lambda: None).load() is None

    def test_legacy_fallback(self, isolated_config: Path) -> None:
        _write(isolated_config / "client_secret.json", {"installed": {"client_id": CLIENT_ID}})
        resolved = CredentialResolver().find()
        assert resolved is not None
        assert resolved.legacy is True

    def test_current_file_beats_legacy(self, isolated_config: Path, credentials_file: Path) -> None:
        _write(isolated_config / "client_secret.json", {"client_id": "legacy.apps.googleusercontent.com"})
        assert CredentialResolver().resolve().client_id == CLIENT_ID

    def test_corrupt_file_does_not_fall_through(
        self, isolated_config: Path, config_dir: Path
    ) -> None:
        config_dir.mkdir(parents=True)
        (config_dir / "credentials.json").write_text("garbage")
        _write(isolated_config / "client_secret.json", {"client_id": CLIENT_ID})
        with pytest.raises(ConfigurationError):
            CredentialResolver().find()

    def test_nothing_found(self, isolated_config: Path) -> None:
        resolver = CredentialResolver()
        assert resolver.find() is None
        with pytest.raises(ConfigurationError, match="OAuth credentials not found"):
            resolver.resolve()

    def test_custom_sources(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "only.json", {"client_id": CLIENT_ID})
        resolver = CredentialResolver([LegacyCredentialSource(lambda: [path])])
        resolved = resolver.find()
        assert resolved is not None and resolved.source == "legacy file"
        assert len(resolver.sources) == 1


# ------------------------------------------------------------------ #
# Validation
# ------------------------------------------------------------------ #


class TestCheckClientId:
    def test_valid(self) -> None:
        assert check_client_id(CLIENT_ID) == []

    def test_bad_suffix(self) -> None:
        with pytest.raises(ProviderAuthError) as exc_info:
            check_client_id("my-client-id")
        assert exc_info.value.code == ErrorCode.INVALID_CLIENT

    def test_whitespace_and_short_warnings(self) -> None:
        warnings = check_client_id(" 1.apps.googleusercontent.com ")
        assert any("whitespace" in w for w in warnings)
        assert any("short" in w for w in warnings)


class TestValidateClientConfig:
    def test_valid(self, credentials_file: Path) -> None:
        result = validate_client_config()
        assert result.valid
        assert result.warnings == []
        assert result.resolved is not None

    def test_missing(self, isolated_config: Path) -> None:
        result = validate_client_config()
        assert not result.valid
        assert result.errors[0].code == ErrorCode.OAUTH_NOT_CONFIGURED
        assert "OAuth credentials file not found at:" in result.errors[0].reason

    def test_unparseable(self, config_dir: Path) -> None:
        config_dir.mkdir(parents=True)
        (config_dir / "credentials.json").write_text("[1, 2")
        result = validate_client_config()
        assert result.errors[0].code == ErrorCode.OAUTH_NOT_CONFIGURED

    def test_bad_client_id(self, config_dir: Path) -> None:
        _write(config_dir / "credentials.json", {"installed": {"client_id": "nope", "client_secret": "s"}})
        result = validate_client_config()
        assert result.errors[0].code == ErrorCode.INVALID_CLIENT

    def test_missing_secret_warns(self, config_dir: Path) -> None:
        _write(config_dir / "credentials.json", {"installed": {"client_id": CLIENT_ID}})
        result = validate_client_config()
        assert result.valid
        assert any("client_secret" in w for w in result.warnings)


class TestLoadClientCredential:
    def test_returns_trimmed_credential(self, config_dir: Path) -> None:
        _write(
            config_dir / "credentials.json",
            {"installed": {"client_id": f" {CLIENT_ID} ", "client_secret": " s "}},
        )
        credential = load_client_credential()
        assert credential.client_id == CLIENT_ID
        assert credential.client_secret == "s"

    def test_raises_first_error(self, isolated_config: Path) -> None:
        with pytest.raises(ProviderAuthError) as exc_info:
            load_client_credential()
        assert exc_info.value.code == ErrorCode.OAUTH_NOT_CONFIGURED
