"""Request bodies accepted by the HTTP API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class RequestModel(BaseModel):
    """Accepts both camelCase (UI) and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class CreateAccountRequest(RequestModel):
    display_name: str = Field(min_length=1, max_length=128)
    default_region: str = Field(default="us-east-1", min_length=1)
    role_arn: str | None = None
    external_id: str | None = Field(default=None, min_length=2, max_length=1224)
    account_id: str | None = Field(default=None, min_length=1, max_length=128)


class UpdateAccountRequest(RequestModel):
    display_name: str | None = Field(default=None, min_length=1, max_length=128)
    default_region: str | None = None
    role_arn: str | None = None
    is_active: bool | None = None


class AccountScopedRequest(RequestModel):
    account_id: str = Field(min_length=1)
    region: str | None = None


class CloudWatchQueryRequest(AccountScopedRequest):
    log_group: str = Field(min_length=1)
    filter_pattern: str | None = None
    start_time: int | None = Field(default=None, ge=0)
    end_time: int | None = Field(default=None, ge=0)
    limit: int = Field(default=100, ge=1, le=10_000)


class DynamoDBQueryRequest(AccountScopedRequest):
    table_name: str = Field(min_length=1)
    key_condition_expression: str | None = None
    filter_expression: str | None = None
    expression_attribute_values: dict[str, Any] | None = None
    expression_attribute_names: dict[str, str] | None = None
    index_name: str | None = None
    limit: int | None = Field(default=None, ge=1)
    exclusive_start_key: dict[str, Any] | None = None


class S3ListRequest(AccountScopedRequest):
    bucket: str = Field(min_length=1)
    prefix: str = ""
    delimiter: str | None = None
    max_keys: int = Field(default=1000, ge=1, le=1000)
    continuation_token: str | None = None


class S3GetRequest(AccountScopedRequest):
    bucket: str = Field(min_length=1)
    key: str = Field(min_length=1)


class LambdaInvokeRequest(AccountScopedRequest):
    function_name: str = Field(min_length=1)
    payload: str | dict[str, Any] | None = None
    invocation_type: str = Field(
        default="RequestResponse", pattern="^(RequestResponse|Event|DryRun)$"
    )
    log_type: str = Field(default="None", pattern="^(None|Tail)$")
    qualifier: str | None = None
    node_id: str | None = None


class EmrClusterRequest(AccountScopedRequest):
    cluster_id: str = Field(min_length=1)


class EmrListStepsRequest(EmrClusterRequest):
    step_states: list[str] | None = None


class EmrStep(RequestModel):
    name: str = Field(min_length=1)
    jar: str = Field(min_length=1)
    main_class: str | None = None
    args: list[str] = Field(default_factory=list)
    action_on_failure: str = Field(
        default="CONTINUE",
        pattern="^(TERMINATE_JOB_FLOW|TERMINATE_CLUSTER|CANCEL_AND_WAIT|CONTINUE)$",
    )


class EmrAddStepsRequest(EmrClusterRequest):
    steps: list[EmrStep] = Field(min_length=1)
    node_id: str | None = None
