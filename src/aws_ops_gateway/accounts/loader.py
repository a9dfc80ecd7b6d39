"""Loader for the optional ``accounts.yaml`` seed file."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, model_validator

from aws_ops_gateway.accounts.models import (
    Account,
    AssumedRoleMode,
    LocalMode,
    parse_role_arn,
)


class AccountConfig(BaseModel):
    account_id: str = Field(min_length=1, max_length=128)
    display_name: str = Field(min_length=1)
    default_region: str = Field(default="us-east-1")
    mode: Literal["local", "assumed-role"] = Field(default="assumed-role")
    role_arn: str | None = None
    external_id: str | None = None
    is_active: bool = True

    @model_validator(mode="after")
    def _check_role_fields(self) -> "AccountConfig":
        if self.mode == "assumed-role":
            if not self.role_arn or not self.external_id:
                raise ValueError(
                    f"account {self.account_id}: role_arn and external_id are required "
                    "for assumed-role mode"
                )
            parse_role_arn(self.role_arn)
        return self

    def to_account(self) -> Account:
        if self.mode == "assumed-role":
            mode = AssumedRoleMode(role_arn=self.role_arn or "", external_id=self.external_id or "")
        else:
            mode = LocalMode()
        return Account(
            account_id=self.account_id,
            display_name=self.display_name,
            default_region=self.default_region,
            mode=mode,
            is_active=self.is_active,
        )


class AccountsFile(BaseModel):
    version: int = Field(default=1)
    accounts: list[AccountConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_unique_ids(self) -> "AccountsFile":
        seen: set[str] = set()
        for entry in self.accounts:
            if entry.account_id in seen:
                raise ValueError(f"duplicate account_id: {entry.account_id}")
            seen.add(entry.account_id)
        return self


def load_accounts(path: str) -> list[Account]:
    accounts_path = Path(path)
    if not accounts_path.exists():
        raise FileNotFoundError(f"Accounts file not found: {accounts_path}")
    with accounts_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return [entry.to_account() for entry in AccountsFile.model_validate(data).accounts]
