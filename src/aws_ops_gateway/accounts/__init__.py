"""Account lookup and management."""

from aws_ops_gateway.accounts.models import (
    Account,
    AccountLookup,
    AccountMode,
    AssumedRoleMode,
    LocalMode,
    parse_role_arn,
)
from aws_ops_gateway.accounts.store import AccountStore, build_trust_policy

__all__ = [
    "Account",
    "AccountLookup",
    "AccountMode",
    "AccountStore",
    "AssumedRoleMode",
    "LocalMode",
    "build_trust_policy",
    "parse_role_arn",
]
