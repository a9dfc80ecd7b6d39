"""Tests for account models, the in-memory store and the YAML seed loader."""

from __future__ import annotations

import re

import pytest
from pydantic import ValidationError

from aws_ops_gateway.accounts.loader import load_accounts
from aws_ops_gateway.accounts.models import AssumedRoleMode, LocalMode, parse_role_arn
from aws_ops_gateway.accounts.store import AccountStore, build_trust_policy
from aws_ops_gateway.errors import AccountNotFoundError, RequestValidationError

ROLE_ARN = "arn:aws:iam::222222222222:role/ops/GatewayAccess"


def test_parse_role_arn() -> None:
    parts = parse_role_arn(ROLE_ARN)

    assert parts.partition == "aws"
    assert parts.aws_account_id == "222222222222"
    assert parts.role_name == "GatewayAccess"


@pytest.mark.parametrize(
    "value",
    ["", "arn:aws:iam::123:role/x", "arn:aws:s3:::bucket", "arn:aws:iam::222222222222:user/bob"],
)
def test_parse_role_arn_rejects_malformed(value: str) -> None:
    with pytest.raises(ValueError):
        parse_role_arn(value)


def test_create_role_account_generates_external_id() -> None:
    store = AccountStore()

    account = store.create_account("Staging", "eu-central-1", role_arn=ROLE_ARN)

    assert isinstance(account.mode, AssumedRoleMode)
    assert re.fullmatch(r"[0-9a-f]{64}", account.external_id or "")
    assert store.get_account(account.account_id) == account


def test_create_without_role_uses_local_mode() -> None:
    store = AccountStore()

    account = store.create_account("Sandbox", "us-east-1", account_id="sandbox")

    assert account.account_id == "sandbox"
    assert isinstance(account.mode, LocalMode)
    assert account.role_arn is None


def test_create_rejects_invalid_role_arn() -> None:
    with pytest.raises(RequestValidationError) as excinfo:
        AccountStore().create_account("Bad", "us-east-1", role_arn="not-an-arn")

    assert excinfo.value.code == "invalid_role_arn"


def test_create_rejects_duplicate_id() -> None:
    store = AccountStore()
    store.create_account("One", "us-east-1", account_id="dup")

    with pytest.raises(RequestValidationError) as excinfo:
        store.create_account("Two", "us-east-1", account_id="dup")

    assert excinfo.value.code == "duplicate_account"


def test_update_keeps_external_id_when_role_changes() -> None:
    store = AccountStore()
    account = store.create_account("Staging", "eu-central-1", role_arn=ROLE_ARN, external_id="keep-me")

    updated = store.update_account(
        account.account_id,
        display_name="Staging EU",
        role_arn="arn:aws:iam::222222222222:role/NewRole",
        is_active=False,
    )

    assert updated.display_name == "Staging EU"
    assert updated.role_arn == "arn:aws:iam::222222222222:role/NewRole"
    assert updated.external_id == "keep-me"
    assert updated.is_active is False
    assert updated.default_region == "eu-central-1"


def test_unknown_account_operations(accounts) -> None:
    with pytest.raises(AccountNotFoundError):
        accounts.get_account("nope")
    with pytest.raises(AccountNotFoundError):
        accounts.update_account("nope", display_name="x")
    with pytest.raises(AccountNotFoundError):
        accounts.delete_account("nope")


def test_delete_account(accounts) -> None:
    accounts.delete_account("dev")

    assert [a.account_id for a in accounts.list_accounts()] == ["prod", "legacy"]


def test_touch_sets_last_used(accounts) -> None:
    assert accounts.get_account("prod").last_used_at is None

    accounts.touch("prod")
    accounts.touch("deleted-meanwhile")

    assert accounts.get_account("prod").last_used_at is not None


def test_to_dict_hides_external_id_by_default(accounts) -> None:
    account = accounts.get_account("prod")

    assert "externalId" not in account.to_dict()
    assert account.to_dict(include_external_id=True)["externalId"] == "ext-id-123"
    assert "ext-id-123" not in repr(account)


def test_build_trust_policy() -> None:
    policy = build_trust_policy("arn:aws:iam::999999999999:role/Gateway", "ext")

    statement = policy["Statement"][0]
    assert statement["Principal"] == {"AWS": "arn:aws:iam::999999999999:role/Gateway"}
    assert statement["Action"] == "sts:AssumeRole"
    assert statement["Condition"] == {"StringEquals": {"sts:ExternalId": "ext"}}


def test_load_accounts_from_yaml(tmp_path) -> None:
    path = tmp_path / "accounts.yaml"
    path.write_text(
        """
version: 1
accounts:
  - account_id: prod
    display_name: Production
    default_region: eu-west-1
    role_arn: arn:aws:iam::111111111111:role/OpsGatewayRole
    external_id: ext-id-123
  - account_id: dev
    display_name: Development
    mode: local
""",
        encoding="utf-8",
    )

    loaded = load_accounts(str(path))

    assert [a.account_id for a in loaded] == ["prod", "dev"]
    assert loaded[0].external_id == "ext-id-123"
    assert isinstance(loaded[1].mode, LocalMode)
    assert loaded[1].default_region == "us-east-1"


def test_load_accounts_requires_role_fields(tmp_path) -> None:
    path = tmp_path / "accounts.yaml"
    path.write_text(
        "accounts:\n  - account_id: prod\n    display_name: Production\n", encoding="utf-8"
    )

    with pytest.raises(ValidationError):
        load_accounts(str(path))


def test_load_accounts_rejects_duplicates(tmp_path) -> None:
    path = tmp_path / "accounts.yaml"
    path.write_text(
        "accounts:\n"
        "  - {account_id: a, display_name: A, mode: local}\n"
        "  - {account_id: a, display_name: B, mode: local}\n",
        encoding="utf-8",
    )

    with pytest.raises(ValidationError):
        load_accounts(str(path))


def test_load_accounts_missing_file(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_accounts(str(tmp_path / "absent.yaml"))
