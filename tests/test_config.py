"""Tests for environment-driven settings."""

from __future__ import annotations

import logging

import pytest

from aws_ops_gateway import config
from aws_ops_gateway.config import load_settings

_ENV_VARS = (
    "APP_HOST",
    "APP_PORT",
    "LOG_LEVEL",
    "LOG_FILE",
    "SDK_TIMEOUT_SECONDS",
    "MAX_OUTPUT_CHARACTERS",
    "CREDENTIAL_REFRESH_BUFFER_SECONDS",
    "CREDENTIAL_SESSION_DURATION_SECONDS",
    "LOCAL_CREDENTIAL_TTL_SECONDS",
    "AWS_USE_LOCAL_CREDENTIALS",
    "TRUST_PRINCIPAL_ARN",
    "ACCOUNTS_CONFIG_PATH",
    "HTTP_ENABLE_CORS",
    "HTTP_ALLOWED_ORIGINS",
    "AWS_STS_REGION",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(config, "load_dotenv", lambda **_: False)


def test_defaults() -> None:
    settings = load_settings()

    assert settings.server.port == 5000
    assert settings.credentials.refresh_buffer_seconds == 300
    assert settings.credentials.session_duration_seconds == 3600
    assert settings.credentials.force_local_mode is False
    assert settings.accounts.config_path is None
    assert settings.server.http_enable_cors is False


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APP_PORT", "8080")
    monkeypatch.setenv("CREDENTIAL_REFRESH_BUFFER_SECONDS", "120")
    monkeypatch.setenv("AWS_USE_LOCAL_CREDENTIALS", "true")
    monkeypatch.setenv("HTTP_ENABLE_CORS", "1")
    monkeypatch.setenv("HTTP_ALLOWED_ORIGINS", "https://Ops.example.com, http://localhost:3000")
    monkeypatch.setenv("AWS_STS_REGION", "eu-west-1")

    settings = load_settings()

    assert settings.server.port == 8080
    assert settings.credentials.refresh_buffer_seconds == 120
    assert settings.credentials.force_local_mode is True
    assert settings.server.http_enable_cors is True
    assert settings.server.http_allowed_origins == (
        "https://Ops.example.com",
        "http://localhost:3000",
    )
    assert settings.aws.sts_region == "eu-west-1"


def test_settings_are_cached(monkeypatch: pytest.MonkeyPatch) -> None:
    first = load_settings()
    monkeypatch.setenv("APP_PORT", "9000")

    assert load_settings() is first


def test_malformed_integer_falls_back(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    monkeypatch.setenv("APP_PORT", "not-a-port")

    with caplog.at_level(logging.WARNING):
        settings = load_settings()

    assert settings.server.port == 5000
    assert "Invalid integer value for APP_PORT" in caplog.text


def test_out_of_range_value_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APP_PORT", "80")

    with pytest.raises(RuntimeError, match="Invalid configuration"):
        load_settings()


def test_refresh_buffer_must_be_shorter_than_lifetimes(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CREDENTIAL_REFRESH_BUFFER_SECONDS", "1800")
    monkeypatch.setenv("LOCAL_CREDENTIAL_TTL_SECONDS", "900")

    with pytest.raises(RuntimeError, match="CREDENTIAL_REFRESH_BUFFER_SECONDS"):
        load_settings()


def test_path_outside_project_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ACCOUNTS_CONFIG_PATH", "../../etc/accounts.yaml")

    with pytest.raises(ValueError, match="Path traversal"):
        load_settings()
