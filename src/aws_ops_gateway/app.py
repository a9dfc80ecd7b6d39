"""Application context assembly."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

from aws_ops_gateway.accounts.loader import load_accounts
from aws_ops_gateway.accounts.store import AccountStore
from aws_ops_gateway.aws_credentials.broker import CredentialBroker
from aws_ops_gateway.aws_credentials.cache import CredentialStore
from aws_ops_gateway.aws_credentials.sts_provider import IdentityProvider, STSIdentityProvider
from aws_ops_gateway.config import Settings, load_settings
from aws_ops_gateway.executions.registry import ExecutionRegistry
from aws_ops_gateway.gateway.operations import ResourceGateway

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Process-wide dependency container.

    Built once at startup; the broker and the registry are the only owners of
    credential and execution state.
    """

    settings: Settings
    accounts: AccountStore
    provider: IdentityProvider
    broker: CredentialBroker
    registry: ExecutionRegistry
    gateway: ResourceGateway


def build_app_context(
    settings: Settings,
    accounts: AccountStore | None = None,
    provider: IdentityProvider | None = None,
) -> AppContext:
    if accounts is None:
        seed = load_accounts(settings.accounts.config_path) if settings.accounts.config_path else []
        accounts = AccountStore(seed)
        logger.info("Loaded %d AWS account(s)", len(seed))

    if provider is None:
        provider = STSIdentityProvider(
            region=settings.aws.sts_region,
            profile=settings.aws.default_profile,
            timeout_seconds=settings.execution.sdk_timeout_seconds,
            max_retries=settings.execution.max_retries,
        )

    store = CredentialStore(refresh_buffer_seconds=settings.credentials.refresh_buffer_seconds)
    broker = CredentialBroker(
        accounts=accounts,
        provider=provider,
        store=store,
        session_duration_seconds=settings.credentials.session_duration_seconds,
        local_credential_ttl_seconds=settings.credentials.local_credential_ttl_seconds,
        session_name_prefix=settings.credentials.session_name_prefix,
        force_local_mode=settings.credentials.force_local_mode,
    )
    if settings.credentials.force_local_mode:
        logger.warning("AWS_USE_LOCAL_CREDENTIALS is set: every account uses local credentials")

    registry = ExecutionRegistry()
    gateway = ResourceGateway(broker, registry, accounts, settings)
    return AppContext(
        settings=settings,
        accounts=accounts,
        provider=provider,
        broker=broker,
        registry=registry,
        gateway=gateway,
    )


@lru_cache(maxsize=1)
def get_app_context() -> AppContext:
    """Return the cached process-wide context."""
    return build_app_context(load_settings())
