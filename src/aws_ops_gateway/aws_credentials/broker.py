"""Credential broker: resolves, caches and validates per-account AWS access."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime

from aws_ops_gateway.accounts.models import (
    Account,
    AccountLookup,
    AccountMode,
    AssumedRoleMode,
    LocalMode,
)
from aws_ops_gateway.aws_credentials.cache import CredentialStore
from aws_ops_gateway.aws_credentials.sts_provider import (
    CredentialSet,
    IdentityProvider,
    STSCredentialError,
    STSUnavailableError,
)
from aws_ops_gateway.errors import ResolutionError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CredentialStatus:
    cached: bool
    valid: bool
    expires_at: datetime | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "cached": self.cached,
            "valid": self.valid,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
        }


class CredentialBroker:
    """Produces usable credentials for an account id.

    Credentials handed out always have at least the store's refresh buffer of
    headroom before expiry. Role assumption for one account is single-flight.
    """

    def __init__(
        self,
        accounts: AccountLookup,
        provider: IdentityProvider,
        store: CredentialStore,
        session_duration_seconds: int = 3600,
        local_credential_ttl_seconds: int = 3600,
        session_name_prefix: str = "aws-ops-gateway",
        force_local_mode: bool = False,
    ) -> None:
        self._accounts = accounts
        self._provider = provider
        self._store = store
        self._session_duration_seconds = session_duration_seconds
        self._local_credential_ttl_seconds = local_credential_ttl_seconds
        self._session_name_prefix = session_name_prefix
        self._force_local_mode = force_local_mode

    async def resolve(self, account_id: str) -> CredentialSet:
        """Return cached credentials or resolve fresh ones.

        Raises:
            AccountNotFoundError: unknown account id
            ResolutionError: role assumption or local credential lookup failed
        """
        account = self._accounts.get_account(account_id)
        if not account.is_active:
            raise ResolutionError(f"AWS account {account_id} is disabled", "account_inactive")
        return await self._store.get_or_resolve(
            account_id, lambda: self._resolve_fresh(account)
        )

    async def validate(self, credential_set: CredentialSet) -> bool:
        """Check credentials with a GetCallerIdentity call.

        Expired or rejected credentials yield ``False``; only transport-level
        failures raise ``ValidationError``.
        """
        if credential_set.is_expired():
            return False
        try:
            identity = await self._provider.get_caller_identity(credential_set)
        except STSCredentialError as exc:
            logger.warning(
                "AWS credentials rejected: account_id=%s, reason=%s",
                credential_set.account_id,
                exc.code,
            )
            return False
        except STSUnavailableError as exc:
            raise ValidationError(f"Credential validation unavailable: {exc}") from exc

        logger.info(
            "AWS credentials validated: account_id=%s, arn=%s",
            credential_set.account_id,
            identity.arn,
        )
        return True

    async def clear_cache(self, account_id: str | None = None) -> None:
        await self._store.clear(account_id)
        if account_id:
            logger.info("Cleared cached credentials for account %s", account_id)
        else:
            logger.info("Cleared all cached credentials")

    async def status(self, account_id: str) -> CredentialStatus:
        """Report cache presence and validity without resolving anything."""
        self._accounts.get_account(account_id)
        entry = await self._store.peek(account_id)
        if entry is None:
            return CredentialStatus(cached=False, valid=False)

        creds = entry.credential_set
        if creds.is_expired():
            await self._store.evict(account_id, creds)
            logger.info("Evicted expired credentials for account %s", account_id)
            return CredentialStatus(cached=False, valid=False)

        try:
            await self._provider.get_caller_identity(creds)
        except STSCredentialError as exc:
            if exc.code == "token_expired":
                await self._store.evict(account_id, creds)
                logger.info("Evicted provider-expired credentials for account %s", account_id)
                return CredentialStatus(cached=False, valid=False)
            await self._store.record_validation(account_id, creds, False)
            return CredentialStatus(cached=True, valid=False, expires_at=creds.expires_at)
        except STSUnavailableError as exc:
            raise ValidationError(f"Credential validation unavailable: {exc}") from exc

        await self._store.record_validation(account_id, creds, True)
        return CredentialStatus(cached=True, valid=True, expires_at=creds.expires_at)

    async def test_account(self, account_id: str) -> tuple[CredentialSet, bool]:
        """Resolve and validate in one step, recording the outcome on the cache entry."""
        creds = await self.resolve(account_id)
        valid = await self.validate(creds)
        await self._store.record_validation(account_id, creds, valid)
        return creds, valid

    async def _resolve_fresh(self, account: Account) -> CredentialSet:
        mode: AccountMode = LocalMode() if self._force_local_mode else account.mode
        started = time.monotonic()
        try:
            creds = await self._resolve_for_mode(account, mode)
        except STSCredentialError as exc:
            logger.error(
                "Credential resolution failed: account_id=%s, mode=%s, code=%s",
                account.account_id,
                mode.kind,
                exc.code,
            )
            raise ResolutionError(
                f"Failed to resolve credentials for {account.account_id}: {exc}", exc.code
            ) from exc

        if creds.expires_within(self._store.refresh_buffer_seconds):
            raise ResolutionError(
                f"Credentials for {account.account_id} expire at "
                f"{creds.expires_at.isoformat()}, inside the refresh margin",
                "credentials_expiring",
            )

        logger.info(
            "Resolved credentials: account_id=%s, mode=%s, expires_at=%s, duration_ms=%d",
            account.account_id,
            mode.kind,
            creds.expires_at.isoformat(),
            int((time.monotonic() - started) * 1000),
        )
        return creds

    async def _resolve_for_mode(self, account: Account, mode: AccountMode) -> CredentialSet:
        if isinstance(mode, LocalMode):
            return await self._provider.local_credentials(
                account.account_id, self._local_credential_ttl_seconds
            )
        if isinstance(mode, AssumedRoleMode):
            return await self._provider.assume_role(
                account_id=account.account_id,
                role_arn=mode.role_arn,
                external_id=mode.external_id,
                session_name=f"{self._session_name_prefix}-{int(time.time())}",
                duration_seconds=self._session_duration_seconds,
            )
        raise ResolutionError(
            f"Unsupported credential mode for {account.account_id}: {mode!r}", "unsupported_mode"
        )
