"""STS-backed identity provider: role assumption, local credentials, identity checks.

The broker talks to the cloud only through the ``IdentityProvider`` protocol,
so a different provider (or a fake in tests) can be swapped in.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

import botocore.session
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from aws_ops_gateway.utils.time import ensure_aware, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CredentialSet:
    """Immutable, time-bounded AWS credentials resolved for one account."""

    account_id: str
    access_key_id: str
    secret_access_key: str = field(repr=False)
    expires_at: datetime
    session_token: str | None = field(default=None, repr=False)
    resolved_at: datetime = field(default_factory=utc_now)

    def __repr__(self) -> str:
        return (
            f"CredentialSet(account_id={self.account_id!r}, "
            f"access_key_id={self.access_key_id[:8]}***, "
            f"expires_at={self.expires_at.isoformat()})"
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return ensure_aware(self.expires_at) <= (now or utc_now())

    def expires_within(self, seconds: int, now: datetime | None = None) -> bool:
        return ensure_aware(self.expires_at) <= (now or utc_now()) + timedelta(seconds=seconds)


@dataclass(frozen=True)
class CallerIdentity:
    account: str
    arn: str
    user_id: str


class STSCredentialError(Exception):
    """STS refused to issue or accept credentials."""

    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


class STSUnavailableError(Exception):
    """STS could not be reached or answered with something unusable."""


class IdentityProvider(Protocol):
    async def assume_role(
        self,
        account_id: str,
        role_arn: str,
        external_id: str,
        session_name: str,
        duration_seconds: int = 3600,
    ) -> CredentialSet: ...

    async def local_credentials(self, account_id: str, ttl_seconds: int) -> CredentialSet: ...

    async def get_caller_identity(self, credential_set: CredentialSet) -> CallerIdentity: ...


_ASSUME_ROLE_CODE_MAP = {
    "AccessDenied": "access_denied",
    "AccessDeniedException": "access_denied",
    "ExpiredToken": "token_expired",
    "ExpiredTokenException": "token_expired",
    "InvalidClientTokenId": "invalid_token",
    "MalformedPolicyDocument": "policy_error",
    "PackedPolicyTooLarge": "policy_too_large",
    "RegionDisabledException": "region_disabled",
    "Throttling": "throttled",
    "ThrottlingException": "throttled",
}

# GetCallerIdentity answers that mean "these credentials are not usable".
_REJECTION_CODES = {
    "AccessDenied": "rejected",
    "InvalidClientTokenId": "rejected",
    "SignatureDoesNotMatch": "rejected",
    "UnrecognizedClientException": "rejected",
    "AuthFailure": "rejected",
    "ExpiredToken": "token_expired",
    "ExpiredTokenException": "token_expired",
    "RequestExpired": "token_expired",
}


class STSIdentityProvider:
    """Thread-safe STS provider using the process's own credential chain."""

    def __init__(
        self,
        region: str = "us-east-1",
        profile: str | None = None,
        timeout_seconds: int = 15,
        max_retries: int = 2,
    ) -> None:
        self._region = region
        self._profile = profile
        self._config = Config(
            connect_timeout=5,
            read_timeout=timeout_seconds,
            retries={"max_attempts": max_retries},
        )
        self._session: Any = None
        self._client: Any = None
        self._lock = threading.Lock()

    def _get_session(self) -> Any:
        if self._session is not None:
            return self._session
        with self._lock:
            if self._session is None:
                self._session = botocore.session.Session(profile=self._profile)
            return self._session

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client

        session = self._get_session()
        with self._lock:
            if self._client is not None:
                return self._client
            self._client = session.create_client(
                "sts",
                region_name=self._region,
                config=self._config,
            )
            logger.info("STS client initialized (region=%s)", self._region)
            return self._client

    def _get_identity_client(self, credential_set: CredentialSet) -> Any:
        # botocore sessions are not thread-safe; build clients under the lock.
        session = self._get_session()
        with self._lock:
            return session.create_client(
                "sts",
                region_name=self._region,
                config=self._config,
                aws_access_key_id=credential_set.access_key_id,
                aws_secret_access_key=credential_set.secret_access_key,
                aws_session_token=credential_set.session_token,
            )

    async def assume_role(
        self,
        account_id: str,
        role_arn: str,
        external_id: str,
        session_name: str,
        duration_seconds: int = 3600,
    ) -> CredentialSet:
        """
        Assume ``role_arn`` presenting ``external_id``.

        Raises:
            STSCredentialError: If STS refuses the assumption or cannot be called
        """
        return await asyncio.to_thread(
            self._assume_role_sync,
            account_id,
            role_arn,
            external_id,
            session_name,
            duration_seconds,
        )

    async def local_credentials(self, account_id: str, ttl_seconds: int) -> CredentialSet:
        return await asyncio.to_thread(self._local_credentials_sync, account_id, ttl_seconds)

    async def get_caller_identity(self, credential_set: CredentialSet) -> CallerIdentity:
        return await asyncio.to_thread(self._get_caller_identity_sync, credential_set)

    def _assume_role_sync(
        self,
        account_id: str,
        role_arn: str,
        external_id: str,
        session_name: str,
        duration_seconds: int,
    ) -> CredentialSet:
        safe_session_name = self._sanitize_session_name(session_name)

        try:
            client = self._get_client()
            response = client.assume_role(
                RoleArn=role_arn,
                RoleSessionName=safe_session_name,
                ExternalId=external_id,
                DurationSeconds=duration_seconds,
            )
        except ClientError as exc:
            error_code = exc.response.get("Error", {}).get("Code", "Unknown")
            error_message = exc.response.get("Error", {}).get("Message", str(exc))
            logger.warning(
                "STS AssumeRole failed: role=%s, session=%s, error=%s: %s",
                role_arn,
                safe_session_name,
                error_code,
                error_message,
            )
            raise STSCredentialError(
                error_message, code=_ASSUME_ROLE_CODE_MAP.get(error_code, "sts_error")
            ) from exc
        except NoCredentialsError as exc:
            raise STSCredentialError(
                "No local AWS credentials available to call STS", code="missing_credentials"
            ) from exc
        except BotoCoreError as exc:
            logger.warning("STS AssumeRole unreachable: role=%s, error=%s", role_arn, exc)
            raise STSCredentialError(str(exc), code="sts_unavailable") from exc

        creds = response.get("Credentials")
        if not creds:
            raise STSCredentialError(
                "Failed to assume role - no credentials returned", code="sts_error"
            )

        logger.info("Assumed role: %s, session=%s", role_arn, safe_session_name)

        return CredentialSet(
            account_id=account_id,
            access_key_id=creds["AccessKeyId"],
            secret_access_key=creds["SecretAccessKey"],
            session_token=creds.get("SessionToken"),
            expires_at=ensure_aware(creds["Expiration"]),
        )

    def _local_credentials_sync(self, account_id: str, ttl_seconds: int) -> CredentialSet:
        try:
            credentials = self._get_session().get_credentials()
            if credentials is None:
                raise STSCredentialError(
                    "Failed to get local AWS credentials: none configured",
                    code="missing_credentials",
                )
            # Refreshable credentials (SSO, instance profile, ...) refresh here.
            frozen = credentials.get_frozen_credentials()
            expiry = getattr(credentials, "_expiry_time", None)
        except BotoCoreError as exc:
            logger.warning(
                "Local AWS credentials unavailable: account_id=%s, error=%s", account_id, exc
            )
            raise STSCredentialError(
                f"Failed to get local AWS credentials: {exc}", code="missing_credentials"
            ) from exc

        now = utc_now()
        if isinstance(expiry, datetime):
            expires_at = min(ensure_aware(expiry), now + timedelta(seconds=ttl_seconds))
        else:
            expires_at = now + timedelta(seconds=ttl_seconds)

        logger.info(
            "Using local AWS credentials: account_id=%s, method=%s",
            account_id,
            getattr(credentials, "method", "unknown"),
        )
        return CredentialSet(
            account_id=account_id,
            access_key_id=frozen.access_key,
            secret_access_key=frozen.secret_key,
            session_token=frozen.token,
            expires_at=expires_at,
            resolved_at=now,
        )

    def _get_caller_identity_sync(self, credential_set: CredentialSet) -> CallerIdentity:
        try:
            client = self._get_identity_client(credential_set)
            response = client.get_caller_identity()
        except ClientError as exc:
            error_code = exc.response.get("Error", {}).get("Code", "Unknown")
            error_message = exc.response.get("Error", {}).get("Message", str(exc))
            rejection = _REJECTION_CODES.get(error_code)
            if rejection is not None:
                raise STSCredentialError(error_message, code=rejection) from exc
            raise STSUnavailableError(f"{error_code}: {error_message}") from exc
        except BotoCoreError as exc:
            raise STSUnavailableError(str(exc)) from exc

        if not isinstance(response, dict) or not response.get("Arn") or not response.get("Account"):
            raise STSUnavailableError("Malformed GetCallerIdentity response")

        return CallerIdentity(
            account=response["Account"],
            arn=response["Arn"],
            user_id=response.get("UserId", ""),
        )

    def _sanitize_session_name(self, name: str) -> str:
        """Sanitize for STS (2-64 chars, alphanumeric/=,.@-)."""
        safe = re.sub(r"[^a-zA-Z0-9=,.@-]", "-", name)
        safe = re.sub(r"-+", "-", safe).strip("-")
        if len(safe) > 64:
            suffix = hashlib.sha256(name.encode()).hexdigest()[:8]
            safe = safe[:55] + "-" + suffix
        return safe if len(safe) >= 2 else "gw-" + safe
