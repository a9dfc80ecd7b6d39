"""AWS credential resolution, caching and validation."""

from aws_ops_gateway.aws_credentials.broker import CredentialBroker, CredentialStatus
from aws_ops_gateway.aws_credentials.cache import CredentialCacheEntry, CredentialStore
from aws_ops_gateway.aws_credentials.sts_provider import (
    CallerIdentity,
    CredentialSet,
    IdentityProvider,
    STSCredentialError,
    STSIdentityProvider,
    STSUnavailableError,
)

__all__ = [
    "CallerIdentity",
    "CredentialBroker",
    "CredentialCacheEntry",
    "CredentialSet",
    "CredentialStatus",
    "CredentialStore",
    "IdentityProvider",
    "STSCredentialError",
    "STSIdentityProvider",
    "STSUnavailableError",
]
