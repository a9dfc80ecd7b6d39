"""Configuration management for the AWS operations gateway."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

_config_logger = logging.getLogger(__name__)


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class ExecutionSettings(BaseModel):
    sdk_timeout_seconds: int = Field(default=30, ge=1, le=300)
    max_output_characters: int = Field(default=20_000, ge=1, le=200_000)
    max_retries: int = Field(default=2, ge=0, le=10)


class CredentialSettings(BaseModel):
    """Credential broker settings.

    ``refresh_buffer_seconds`` is the safety margin: a cached credential whose
    expiry is closer than this is re-resolved before being handed out.
    """

    refresh_buffer_seconds: int = Field(default=300, ge=0, le=3600)
    session_duration_seconds: int = Field(default=3600, ge=900, le=43200)
    local_credential_ttl_seconds: int = Field(default=3600, ge=60, le=86400)
    session_name_prefix: str = Field(default="aws-ops-gateway")
    force_local_mode: bool = Field(
        default=False,
        description="Resolve every account from the local credential chain (development).",
    )
    trust_principal_arn: str = Field(
        default="arn:aws:iam::000000000000:role/AwsOpsGatewayExecutionRole",
        description="Principal placed in the trust policy shown when an account is added.",
    )


class AccountSettings(BaseModel):
    config_path: str | None = Field(default=None, description="Optional accounts.yaml seed file")


class AWSSettings(BaseModel):
    default_region: str | None = Field(default=None)
    default_profile: str | None = Field(default=None)
    sts_region: str = Field(default="us-east-1")


class ServerSettings(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=5000, ge=1024, le=65535)
    http_allowed_origins: tuple[str, ...] = Field(default=("http://localhost:3000",))
    http_enable_cors: bool = Field(default=False)


class Settings(BaseModel):
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    credentials: CredentialSettings = Field(default_factory=CredentialSettings)
    accounts: AccountSettings = Field(default_factory=AccountSettings)
    aws: AWSSettings = Field(default_factory=AWSSettings)


ENV_KEYS = {
    "host": "APP_HOST",
    "port": "APP_PORT",
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
    "accounts_path": "ACCOUNTS_CONFIG_PATH",
    "aws_region": "AWS_DEFAULT_REGION",
    "aws_profile": "AWS_PROFILE",
    "max_retries": "AWS_OPS_MAX_RETRIES",
}

_TRUE_VALUES = frozenset({"1", "true", "yes"})


def _split_csv_preserve_case(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_path(path: str) -> str:
    candidate = Path(path)
    root = _project_root().resolve()
    if candidate.is_absolute():
        resolved = candidate.resolve()
    else:
        resolved = (root / candidate).resolve()
    if not resolved.is_relative_to(root):
        raise ValueError(f"Path traversal detected: '{path}' resolves outside project root")
    return str(resolved)


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        _config_logger.warning(
            "Invalid integer value for %s: %r, using default %d", key, value, default
        )
        return default


def load_settings() -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached()


@lru_cache(maxsize=1)
def _load_settings_cached() -> Settings:
    load_dotenv(dotenv_path=_project_root() / ".env")
    log_file_env = os.getenv(ENV_KEYS["log_file"])
    accounts_path_env = os.getenv(ENV_KEYS["accounts_path"])
    allowed_origins = _split_csv_preserve_case(os.getenv("HTTP_ALLOWED_ORIGINS"))

    settings_data: dict[str, object] = {
        "server": {
            "host": os.getenv(ENV_KEYS["host"], ServerSettings().host),
            "port": _env_int(ENV_KEYS["port"], ServerSettings().port),
            "http_allowed_origins": (
                tuple(allowed_origins)
                if allowed_origins
                else ServerSettings().http_allowed_origins
            ),
            "http_enable_cors": _env_bool("HTTP_ENABLE_CORS", ServerSettings().http_enable_cors),
        },
        "logging": {
            "level": os.getenv(ENV_KEYS["log_level"], LoggingSettings().level),
            "file": _resolve_path(log_file_env) if log_file_env else None,
        },
        "execution": {
            "sdk_timeout_seconds": _env_int(
                "SDK_TIMEOUT_SECONDS",
                ExecutionSettings().sdk_timeout_seconds,
            ),
            "max_output_characters": _env_int(
                "MAX_OUTPUT_CHARACTERS",
                ExecutionSettings().max_output_characters,
            ),
            "max_retries": _env_int(
                ENV_KEYS["max_retries"],
                ExecutionSettings().max_retries,
            ),
        },
        "credentials": {
            "refresh_buffer_seconds": _env_int(
                "CREDENTIAL_REFRESH_BUFFER_SECONDS",
                CredentialSettings().refresh_buffer_seconds,
            ),
            "session_duration_seconds": _env_int(
                "CREDENTIAL_SESSION_DURATION_SECONDS",
                CredentialSettings().session_duration_seconds,
            ),
            "local_credential_ttl_seconds": _env_int(
                "LOCAL_CREDENTIAL_TTL_SECONDS",
                CredentialSettings().local_credential_ttl_seconds,
            ),
            "session_name_prefix": os.getenv(
                "CREDENTIAL_SESSION_NAME_PREFIX",
                CredentialSettings().session_name_prefix,
            ),
            "force_local_mode": _env_bool(
                "AWS_USE_LOCAL_CREDENTIALS",
                CredentialSettings().force_local_mode,
            ),
            "trust_principal_arn": os.getenv(
                "TRUST_PRINCIPAL_ARN",
                CredentialSettings().trust_principal_arn,
            ),
        },
        "accounts": {
            "config_path": _resolve_path(accounts_path_env) if accounts_path_env else None,
        },
        "aws": {
            "default_region": os.getenv("AWS_REGION") or os.getenv(ENV_KEYS["aws_region"]),
            "default_profile": os.getenv(ENV_KEYS["aws_profile"]),
            "sts_region": os.getenv("AWS_STS_REGION", AWSSettings().sts_region),
        },
    }

    try:
        settings = Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    credentials = settings.credentials
    if credentials.refresh_buffer_seconds >= min(
        credentials.session_duration_seconds, credentials.local_credential_ttl_seconds
    ):
        raise RuntimeError(
            "Invalid configuration: CREDENTIAL_REFRESH_BUFFER_SECONDS must be shorter than "
            "CREDENTIAL_SESSION_DURATION_SECONDS and LOCAL_CREDENTIAL_TTL_SECONDS"
        )

    return settings
