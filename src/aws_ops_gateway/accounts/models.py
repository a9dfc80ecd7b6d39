"""Account domain objects."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, Union

from aws_ops_gateway.utils.time import utc_now

_ROLE_ARN_RE = re.compile(
    r"^arn:(?P<partition>aws|aws-cn|aws-us-gov):iam::(?P<account>\d{12}):role/(?P<path>(?:[\w+=,.@-]+/)*)(?P<name>[\w+=,.@-]{1,64})$"
)


@dataclass(frozen=True)
class LocalMode:
    """Use the operator's ambient credential chain."""

    kind = "local"


@dataclass(frozen=True)
class AssumedRoleMode:
    """Cross-account access through ``sts:AssumeRole``."""

    role_arn: str
    external_id: str

    kind = "assumed-role"

    def __repr__(self) -> str:
        return f"AssumedRoleMode(role_arn={self.role_arn!r}, external_id=***)"


AccountMode = Union[LocalMode, AssumedRoleMode]


@dataclass(frozen=True)
class RoleArnParts:
    partition: str
    aws_account_id: str
    role_name: str


def parse_role_arn(role_arn: str) -> RoleArnParts:
    """Split an IAM role ARN, raising ``ValueError`` when malformed."""
    match = _ROLE_ARN_RE.match(role_arn.strip())
    if match is None:
        raise ValueError(f"Invalid role ARN format: {role_arn!r}")
    return RoleArnParts(
        partition=match.group("partition"),
        aws_account_id=match.group("account"),
        role_name=match.group("name"),
    )


@dataclass(frozen=True)
class Account:
    account_id: str
    display_name: str
    default_region: str
    mode: AccountMode = field(default_factory=LocalMode)
    is_active: bool = True
    created_at: datetime = field(default_factory=utc_now)
    last_used_at: datetime | None = None

    @property
    def role_arn(self) -> str | None:
        return self.mode.role_arn if isinstance(self.mode, AssumedRoleMode) else None

    @property
    def external_id(self) -> str | None:
        return self.mode.external_id if isinstance(self.mode, AssumedRoleMode) else None

    def to_dict(self, include_external_id: bool = False) -> dict[str, object]:
        data: dict[str, object] = {
            "accountId": self.account_id,
            "displayName": self.display_name,
            "defaultRegion": self.default_region,
            "mode": self.mode.kind,
            "roleArn": self.role_arn,
            "isActive": self.is_active,
            "createdAt": self.created_at.isoformat(),
            "lastUsedAt": self.last_used_at.isoformat() if self.last_used_at else None,
        }
        if include_external_id:
            data["externalId"] = self.external_id
        return data


class AccountLookup(Protocol):
    """Read-only account lookup consumed by the credential broker."""

    def get_account(self, account_id: str) -> Account: ...
