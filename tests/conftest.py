from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from aws_ops_gateway.accounts.models import Account, AssumedRoleMode, LocalMode
from aws_ops_gateway.accounts.store import AccountStore
from aws_ops_gateway.aws_credentials.broker import CredentialBroker
from aws_ops_gateway.aws_credentials.cache import CredentialStore
from aws_ops_gateway.aws_credentials.sts_provider import CallerIdentity, CredentialSet
from aws_ops_gateway.config import _load_settings_cached
from aws_ops_gateway.executions.registry import ExecutionRegistry
from aws_ops_gateway.gateway import clients
from aws_ops_gateway.utils.time import utc_now

ROLE_ARN = "arn:aws:iam::111111111111:role/OpsGatewayRole"


def make_credentials(
    account_id: str = "prod", seconds: int = 3600, key: str = "ASIATESTKEY00001"
) -> CredentialSet:
    return CredentialSet(
        account_id=account_id,
        access_key_id=key,
        secret_access_key="secret",
        session_token="session-token",
        expires_at=utc_now() + timedelta(seconds=seconds),
    )


class FakeIdentityProvider:
    """In-memory IdentityProvider recording every call."""

    def __init__(self) -> None:
        self.assume_calls: list[dict[str, object]] = []
        self.local_calls: list[dict[str, object]] = []
        self.identity_calls: list[CredentialSet] = []
        self.assume_error: Exception | None = None
        self.local_error: Exception | None = None
        self.identity_error: Exception | None = None
        self.lifetime_seconds: int | None = None
        self.delay: float = 0.0

    async def assume_role(
        self,
        account_id: str,
        role_arn: str,
        external_id: str,
        session_name: str,
        duration_seconds: int = 3600,
    ) -> CredentialSet:
        self.assume_calls.append(
            {
                "account_id": account_id,
                "role_arn": role_arn,
                "external_id": external_id,
                "session_name": session_name,
                "duration_seconds": duration_seconds,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.assume_error is not None:
            raise self.assume_error
        return make_credentials(
            account_id,
            seconds=self.lifetime_seconds or duration_seconds,
            key=f"ASIAASSUMED{len(self.assume_calls):05d}",
        )

    async def local_credentials(self, account_id: str, ttl_seconds: int) -> CredentialSet:
        self.local_calls.append({"account_id": account_id, "ttl_seconds": ttl_seconds})
        if self.local_error is not None:
            raise self.local_error
        return make_credentials(
            account_id,
            seconds=self.lifetime_seconds or ttl_seconds,
            key=f"AKIALOCAL{len(self.local_calls):07d}",
        )

    async def get_caller_identity(self, credential_set: CredentialSet) -> CallerIdentity:
        self.identity_calls.append(credential_set)
        if self.identity_error is not None:
            raise self.identity_error
        return CallerIdentity(
            account="111111111111",
            arn="arn:aws:sts::111111111111:assumed-role/OpsGatewayRole/session",
            user_id="AROATEST:session",
        )


@pytest.fixture(autouse=True)
def _reset_caches():
    _load_settings_cached.cache_clear()
    clients._CLIENT_CACHE.clear()
    yield
    _load_settings_cached.cache_clear()
    clients._CLIENT_CACHE.clear()


@pytest.fixture
def accounts() -> AccountStore:
    return AccountStore(
        [
            Account(
                account_id="prod",
                display_name="Production",
                default_region="eu-west-1",
                mode=AssumedRoleMode(role_arn=ROLE_ARN, external_id="ext-id-123"),
            ),
            Account(account_id="dev", display_name="Development", default_region="us-east-1"),
            Account(
                account_id="legacy",
                display_name="Legacy",
                default_region="us-east-1",
                mode=LocalMode(),
                is_active=False,
            ),
        ]
    )


@pytest.fixture
def provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def store() -> CredentialStore:
    return CredentialStore(refresh_buffer_seconds=300)


@pytest.fixture
def broker(accounts, provider, store) -> CredentialBroker:
    return CredentialBroker(accounts=accounts, provider=provider, store=store)


@pytest.fixture
def registry() -> ExecutionRegistry:
    return ExecutionRegistry()


@pytest.fixture
def credentials_factory():
    return make_credentials
