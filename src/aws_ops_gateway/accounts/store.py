"""In-memory account registry used as the broker's account lookup."""

from __future__ import annotations

import logging
import secrets
import threading
import uuid
from dataclasses import replace
from typing import Iterable

from aws_ops_gateway.accounts.models import (
    Account,
    AccountMode,
    AssumedRoleMode,
    LocalMode,
    parse_role_arn,
)
from aws_ops_gateway.errors import AccountNotFoundError, RequestValidationError
from aws_ops_gateway.utils.time import utc_now

logger = logging.getLogger(__name__)


def generate_external_id() -> str:
    return secrets.token_hex(32)


def build_trust_policy(principal_arn: str, external_id: str) -> dict[str, object]:
    """Trust policy the target account's role must carry for assumption to succeed."""
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"AWS": principal_arn},
                "Action": "sts:AssumeRole",
                "Condition": {"StringEquals": {"sts:ExternalId": external_id}},
            }
        ],
    }


class AccountStore:
    """Thread-safe account collection keyed by account id."""

    def __init__(self, accounts: Iterable[Account] = ()) -> None:
        self._lock = threading.Lock()
        self._accounts: dict[str, Account] = {a.account_id: a for a in accounts}

    def list_accounts(self) -> list[Account]:
        with self._lock:
            return list(self._accounts.values())

    def get_account(self, account_id: str) -> Account:
        with self._lock:
            account = self._accounts.get(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    def create_account(
        self,
        display_name: str,
        default_region: str,
        role_arn: str | None = None,
        external_id: str | None = None,
        account_id: str | None = None,
    ) -> Account:
        """Add an account. A role ARN selects assumed-role mode, otherwise local mode."""
        mode: AccountMode
        if role_arn:
            _require_valid_role_arn(role_arn)
            mode = AssumedRoleMode(role_arn=role_arn, external_id=external_id or generate_external_id())
        else:
            mode = LocalMode()

        account = Account(
            account_id=account_id or f"account-{uuid.uuid4().hex[:12]}",
            display_name=display_name,
            default_region=default_region,
            mode=mode,
        )
        with self._lock:
            if account.account_id in self._accounts:
                raise RequestValidationError(
                    f"Account {account.account_id} already exists", "duplicate_account"
                )
            self._accounts[account.account_id] = account

        logger.info(
            "AWS account added: account_id=%s, name=%s, mode=%s",
            account.account_id,
            account.display_name,
            account.mode.kind,
        )
        return account

    def update_account(
        self,
        account_id: str,
        display_name: str | None = None,
        default_region: str | None = None,
        role_arn: str | None = None,
        is_active: bool | None = None,
    ) -> Account:
        if role_arn:
            _require_valid_role_arn(role_arn)

        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)

            changes: dict[str, object] = {}
            if display_name:
                changes["display_name"] = display_name
            if default_region:
                changes["default_region"] = default_region
            if is_active is not None:
                changes["is_active"] = is_active
            if role_arn:
                external_id = account.external_id or generate_external_id()
                changes["mode"] = AssumedRoleMode(role_arn=role_arn, external_id=external_id)

            updated = replace(account, **changes)
            self._accounts[account_id] = updated

        logger.info("AWS account updated: account_id=%s, fields=%s", account_id, sorted(changes))
        return updated

    def delete_account(self, account_id: str) -> Account:
        with self._lock:
            account = self._accounts.pop(account_id, None)
        if account is None:
            raise AccountNotFoundError(account_id)
        logger.info("AWS account removed: account_id=%s", account_id)
        return account

    def touch(self, account_id: str) -> None:
        """Stamp ``last_used_at``; silently ignores accounts deleted meanwhile."""
        with self._lock:
            account = self._accounts.get(account_id)
            if account is not None:
                self._accounts[account_id] = replace(account, last_used_at=utc_now())


def _require_valid_role_arn(role_arn: str) -> None:
    try:
        parse_role_arn(role_arn)
    except ValueError as exc:
        raise RequestValidationError(str(exc), "invalid_role_arn") from exc
