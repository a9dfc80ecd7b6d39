"""Per-service AWS operations executed with broker-resolved credentials.

Long-running operations (Lambda invocations, EMR step submissions) are
traced: they register an execution, stream progress logs into the registry
and finish it as succeeded or failed.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import timedelta
from decimal import Decimal
from typing import Any

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import BotoCoreError, ClientError

from aws_ops_gateway.accounts.models import AccountLookup
from aws_ops_gateway.aws_credentials.broker import CredentialBroker
from aws_ops_gateway.config import Settings
from aws_ops_gateway.errors import (
    AwsOperationError,
    GatewayError,
    RequestValidationError,
    StateConflictError,
)
from aws_ops_gateway.executions.models import Execution, LogLevel
from aws_ops_gateway.executions.registry import ExecutionRegistry
from aws_ops_gateway.gateway.clients import call_aws_api_async, get_client, read_stream
from aws_ops_gateway.utils.masking import redact_sensitive_fields
from aws_ops_gateway.utils.time import from_epoch_millis, to_epoch_millis, utc_now

logger = logging.getLogger(__name__)

AVAILABLE_REGIONS = (
    {"code": "us-east-1", "name": "US East (N. Virginia)"},
    {"code": "us-east-2", "name": "US East (Ohio)"},
    {"code": "us-west-2", "name": "US West (Oregon)"},
    {"code": "eu-west-1", "name": "Europe (Ireland)"},
    {"code": "eu-central-1", "name": "Europe (Frankfurt)"},
    {"code": "ap-southeast-1", "name": "Asia Pacific (Singapore)"},
    {"code": "ap-northeast-1", "name": "Asia Pacific (Tokyo)"},
)

_ERROR_STATUS = {
    "ResourceNotFoundException": 404,
    "NoSuchKey": 404,
    "NoSuchBucket": 404,
    "ClusterNotFound": 404,
    "AccessDenied": 403,
    "AccessDeniedException": 403,
    "UnrecognizedClientException": 401,
    "InvalidClientTokenId": 401,
    "ExpiredToken": 401,
    "ExpiredTokenException": 401,
    "ValidationException": 400,
    "InvalidParameterValueException": 400,
    "InvalidParameterException": 400,
    "InvalidRequestException": 400,
    "InvalidRequestContentException": 400,
    "TooManyRequestsException": 429,
    "ThrottlingException": 429,
    "Throttling": 429,
    "ProvisionedThroughputExceededException": 429,
}

# AWS answers meaning the cached credentials are no longer honoured.
_CREDENTIAL_REJECTIONS = frozenset(
    {"UnrecognizedClientException", "InvalidClientTokenId", "ExpiredToken", "ExpiredTokenException"}
)

_DEFAULT_LOG_WINDOW = timedelta(hours=24)

TracedCall = Callable[[], Awaitable[tuple[dict[str, Any], str | None]]]


class ResourceGateway:
    def __init__(
        self,
        broker: CredentialBroker,
        registry: ExecutionRegistry,
        accounts: AccountLookup,
        settings: Settings,
    ) -> None:
        self._broker = broker
        self._registry = registry
        self._accounts = accounts
        self._settings = settings
        self._serializer = TypeSerializer()
        self._deserializer = TypeDeserializer()

    # ------------------------------------------------------------------
    # CloudWatch Logs

    async def query_cloudwatch_logs(
        self,
        account_id: str,
        log_group: str,
        filter_pattern: str | None = None,
        start_time: int | None = None,
        end_time: int | None = None,
        limit: int = 100,
        region: str | None = None,
    ) -> dict[str, Any]:
        now = utc_now()
        start_ms = start_time or to_epoch_millis(now - _DEFAULT_LOG_WINDOW)
        end_ms = end_time or to_epoch_millis(now)
        params: dict[str, Any] = {
            "logGroupName": log_group,
            "startTime": start_ms,
            "endTime": end_ms,
            "limit": limit,
        }
        if filter_pattern:
            params["filterPattern"] = filter_pattern

        response = await self._call(
            account_id, "logs", region, "filter_log_events", log_group, **params
        )
        events = [
            {
                "timestamp": from_epoch_millis(event["timestamp"]).isoformat(),
                "message": event.get("message"),
                "logStream": event.get("logStreamName"),
            }
            for event in response.get("events", [])
        ]
        logger.info(
            "CloudWatch query completed: account_id=%s, log_group=%s, events=%d",
            account_id,
            log_group,
            len(events),
        )
        return {
            "success": True,
            "events": events,
            "nextToken": response.get("nextToken"),
            "summary": {
                "totalEvents": len(events),
                "logGroup": log_group,
                "filterPattern": filter_pattern,
                "timeRange": {
                    "start": from_epoch_millis(start_ms).isoformat(),
                    "end": from_epoch_millis(end_ms).isoformat(),
                },
            },
        }

    # ------------------------------------------------------------------
    # DynamoDB

    async def query_dynamodb(
        self,
        account_id: str,
        table_name: str,
        key_condition_expression: str | None = None,
        filter_expression: str | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        index_name: str | None = None,
        limit: int | None = None,
        exclusive_start_key: dict[str, Any] | None = None,
        region: str | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"TableName": table_name}
        if key_condition_expression:
            params["KeyConditionExpression"] = key_condition_expression
        if filter_expression:
            params["FilterExpression"] = filter_expression
        if expression_attribute_values:
            params["ExpressionAttributeValues"] = self._serialize_item(expression_attribute_values)
        if expression_attribute_names:
            params["ExpressionAttributeNames"] = expression_attribute_names
        if index_name:
            params["IndexName"] = index_name
        if limit:
            params["Limit"] = limit
        if exclusive_start_key:
            params["ExclusiveStartKey"] = self._serialize_item(exclusive_start_key)

        method = "query" if key_condition_expression else "scan"
        response = await self._call(account_id, "dynamodb", region, method, table_name, **params)
        items = [self._deserialize_item(item) for item in response.get("Items", [])]
        last_key = response.get("LastEvaluatedKey")
        return {
            "success": True,
            "operation": method,
            "items": items,
            "count": response.get("Count", len(items)),
            "scannedCount": response.get("ScannedCount"),
            "lastEvaluatedKey": self._deserialize_item(last_key) if last_key else None,
        }

    def _serialize_item(self, item: dict[str, Any]) -> dict[str, Any]:
        # TypeSerializer rejects floats; route numbers through Decimal.
        normalized = json.loads(json.dumps(item), parse_float=Decimal)
        return {key: self._serializer.serialize(value) for key, value in normalized.items()}

    def _deserialize_item(self, item: dict[str, Any]) -> dict[str, Any]:
        return {key: self._deserializer.deserialize(value) for key, value in item.items()}

    # ------------------------------------------------------------------
    # S3

    async def list_s3_objects(
        self,
        account_id: str,
        bucket: str,
        prefix: str = "",
        delimiter: str | None = None,
        max_keys: int = 1000,
        continuation_token: str | None = None,
        region: str | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"Bucket": bucket, "Prefix": prefix, "MaxKeys": max_keys}
        if delimiter:
            params["Delimiter"] = delimiter
        if continuation_token:
            params["ContinuationToken"] = continuation_token

        response = await self._call(account_id, "s3", region, "list_objects_v2", bucket, **params)
        return {
            "success": True,
            "bucket": bucket,
            "prefix": prefix,
            "objects": [
                {
                    "key": obj["Key"],
                    "size": obj.get("Size"),
                    "lastModified": obj.get("LastModified"),
                    "storageClass": obj.get("StorageClass"),
                }
                for obj in response.get("Contents", [])
            ],
            "commonPrefixes": [p["Prefix"] for p in response.get("CommonPrefixes", [])],
            "isTruncated": response.get("IsTruncated", False),
            "nextContinuationToken": response.get("NextContinuationToken"),
        }

    async def get_s3_object(
        self,
        account_id: str,
        bucket: str,
        key: str,
        region: str | None = None,
    ) -> dict[str, Any]:
        response = await self._call(
            account_id, "s3", region, "get_object", f"{bucket}/{key}", Bucket=bucket, Key=key
        )
        body = response.get("Body")
        content = (
            await asyncio.to_thread(
                read_stream, body, self._settings.execution.max_output_characters
            )
            if body is not None
            else ""
        )
        return {
            "success": True,
            "bucket": bucket,
            "key": key,
            "contentType": response.get("ContentType"),
            "contentLength": response.get("ContentLength"),
            "lastModified": response.get("LastModified"),
            "content": content,
        }

    # ------------------------------------------------------------------
    # Lambda

    async def invoke_lambda(
        self,
        account_id: str,
        function_name: str,
        payload: str | dict[str, Any] | None = None,
        invocation_type: str = "RequestResponse",
        log_type: str = "None",
        qualifier: str | None = None,
        node_id: str | None = None,
        region: str | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "FunctionName": function_name,
            "InvocationType": invocation_type,
            "LogType": log_type,
        }
        encoded = _encode_lambda_payload(payload)
        if encoded is not None:
            params["Payload"] = encoded
        if qualifier:
            params["Qualifier"] = qualifier

        async def call() -> tuple[dict[str, Any], str | None]:
            started = time.monotonic()
            response = await self._call(
                account_id, "lambda", region, "invoke", function_name, **params
            )
            duration_ms = int((time.monotonic() - started) * 1000)
            raw_payload = response.get("Payload")
            body = (
                await asyncio.to_thread(
                    read_stream, raw_payload, self._settings.execution.max_output_characters
                )
                if raw_payload is not None
                else ""
            )
            function_error = response.get("FunctionError")
            result = {
                "success": function_error is None,
                "functionName": function_name,
                "statusCode": response.get("StatusCode"),
                "executedVersion": response.get("ExecutedVersion"),
                "functionError": function_error,
                "payload": _maybe_json(body),
                "logs": _decode_log_result(response.get("LogResult")),
                "durationMs": duration_ms,
            }
            return result, (f"Lambda function error: {function_error}" if function_error else None)

        return await self._run_traced(
            operation="lambda:Invoke",
            account_id=account_id,
            node_id=node_id or f"lambda-{function_name}",
            details={"functionName": function_name, "invocationType": invocation_type},
            call=call,
        )

    # ------------------------------------------------------------------
    # EMR

    async def describe_emr_cluster(
        self, account_id: str, cluster_id: str, region: str | None = None
    ) -> dict[str, Any]:
        response = await self._call(
            account_id, "emr", region, "describe_cluster", cluster_id, ClusterId=cluster_id
        )
        cluster = response.get("Cluster", {})
        status = cluster.get("Status", {})
        return {
            "success": True,
            "cluster": {
                "id": cluster.get("Id"),
                "name": cluster.get("Name"),
                "state": status.get("State"),
                "stateChangeReason": status.get("StateChangeReason", {}).get("Message"),
                "releaseLabel": cluster.get("ReleaseLabel"),
                "applications": [app.get("Name") for app in cluster.get("Applications", [])],
                "masterPublicDnsName": cluster.get("MasterPublicDnsName"),
                "normalizedInstanceHours": cluster.get("NormalizedInstanceHours"),
                "timeline": status.get("Timeline", {}),
            },
        }

    async def list_emr_steps(
        self,
        account_id: str,
        cluster_id: str,
        step_states: list[str] | None = None,
        region: str | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"ClusterId": cluster_id}
        if step_states:
            params["StepStates"] = step_states
        response = await self._call(account_id, "emr", region, "list_steps", cluster_id, **params)
        return {
            "success": True,
            "clusterId": cluster_id,
            "steps": [
                {
                    "id": step.get("Id"),
                    "name": step.get("Name"),
                    "state": step.get("Status", {}).get("State"),
                    "actionOnFailure": step.get("ActionOnFailure"),
                    "timeline": step.get("Status", {}).get("Timeline", {}),
                }
                for step in response.get("Steps", [])
            ],
            "marker": response.get("Marker"),
        }

    async def add_emr_steps(
        self,
        account_id: str,
        cluster_id: str,
        steps: list[dict[str, Any]],
        node_id: str | None = None,
        region: str | None = None,
    ) -> dict[str, Any]:
        if not steps:
            raise RequestValidationError("At least one EMR step is required")
        emr_steps = [
            {
                "Name": step["name"],
                "ActionOnFailure": step.get("action_on_failure") or "CONTINUE",
                "HadoopJarStep": {
                    key: value
                    for key, value in (
                        ("Jar", step["jar"]),
                        ("MainClass", step.get("main_class")),
                        ("Args", list(step.get("args") or [])),
                    )
                    if value is not None
                },
            }
            for step in steps
        ]

        async def call() -> tuple[dict[str, Any], str | None]:
            response = await self._call(
                account_id,
                "emr",
                region,
                "add_job_flow_steps",
                cluster_id,
                JobFlowId=cluster_id,
                Steps=emr_steps,
            )
            return {
                "success": True,
                "clusterId": cluster_id,
                "stepIds": response.get("StepIds", []),
            }, None

        return await self._run_traced(
            operation="emr:AddJobFlowSteps",
            account_id=account_id,
            node_id=node_id or f"emr-{cluster_id}",
            details={"clusterId": cluster_id, "stepNames": [s["Name"] for s in emr_steps]},
            call=call,
        )

    @staticmethod
    def list_regions() -> dict[str, Any]:
        return {"regions": list(AVAILABLE_REGIONS)}

    # ------------------------------------------------------------------
    # plumbing

    async def _call(
        self,
        account_id: str,
        service: str,
        region: str | None,
        method_name: str,
        resource: str,
        **params: Any,
    ) -> dict[str, Any]:
        account = self._accounts.get_account(account_id)
        credentials = await self._broker.resolve(account_id)
        client = get_client(
            service, credentials, region or account.default_region, self._settings
        )
        try:
            response = await call_aws_api_async(client, method_name, **params)
        except ClientError as exc:
            raise await self._map_client_error(exc, account_id, f"{service}:{method_name}", resource)
        except BotoCoreError as exc:
            logger.error("AWS %s:%s unreachable: %s", service, method_name, exc)
            raise AwsOperationError(
                f"{service}:{method_name} failed: {exc}", "aws_unreachable", 502
            ) from exc
        return response if isinstance(response, dict) else {"result": response}

    async def _map_client_error(
        self, exc: ClientError, account_id: str, operation: str, resource: str
    ) -> AwsOperationError:
        error = exc.response.get("Error", {})
        code = error.get("Code", "Unknown")
        message = error.get("Message", str(exc))
        logger.error(
            "AWS %s failed: account_id=%s, resource=%s, code=%s, message=%s",
            operation,
            account_id,
            resource,
            code,
            message,
        )
        if code in _CREDENTIAL_REJECTIONS:
            await self._broker.clear_cache(account_id)
            return AwsOperationError(
                "AWS credentials are invalid or not configured", "invalid_credentials", 401
            )

        status = _ERROR_STATUS.get(code, 500)
        if status == 404:
            text = f"{resource} not found"
        elif status == 403:
            text = f"Access denied to {resource}"
        elif status == 429:
            text = "Too many requests. Please try again later."
        elif status == 400:
            text = f"Invalid parameters: {message}"
        else:
            text = f"{operation} failed: {message}"
        return AwsOperationError(text, code, status)

    async def _run_traced(
        self,
        operation: str,
        account_id: str,
        node_id: str,
        details: dict[str, Any],
        call: TracedCall,
    ) -> dict[str, Any]:
        self._accounts.get_account(account_id)
        execution = self._registry.create(
            {"operation": operation, "accountId": account_id, "nodeId": node_id, **details}
        )
        execution_id = execution.id
        self._registry.start(execution_id)
        self._registry.log(
            execution_id,
            node_id,
            LogLevel.INFO,
            f"{operation} started",
            redact_sensitive_fields(details),
        )

        try:
            result, failure = await call()
        except asyncio.CancelledError:
            self._registry.log(execution_id, node_id, LogLevel.WARN, f"{operation} interrupted")
            self._registry.stop(execution_id)
            raise
        except GatewayError as exc:
            self._registry.log(
                execution_id, node_id, LogLevel.ERROR, f"{operation} failed: {exc}", {"code": exc.code}
            )
            self._finish(execution_id, node_id, failure=str(exc))
            raise
        except Exception as exc:
            self._registry.log(
                execution_id, node_id, LogLevel.ERROR, f"{operation} failed unexpectedly: {exc}"
            )
            self._finish(execution_id, node_id, failure=str(exc))
            raise

        if failure:
            self._registry.log(execution_id, node_id, LogLevel.ERROR, failure)
        else:
            self._registry.log(execution_id, node_id, LogLevel.INFO, f"{operation} succeeded")
        final = self._finish(execution_id, node_id, failure=failure)
        return {**result, "executionId": execution_id, "executionStatus": final.status.value}

    def _finish(self, execution_id: str, node_id: str, failure: str | None) -> Execution:
        try:
            if failure:
                return self._registry.fail(execution_id, failure)
            return self._registry.succeed(execution_id)
        except StateConflictError:
            # Stopped while the call was in flight; the cancellation stands.
            self._registry.log(
                execution_id,
                node_id,
                LogLevel.WARN,
                "Completed after cancellation; outcome discarded",
            )
            return self._registry.get(execution_id)


def _encode_lambda_payload(payload: str | dict[str, Any] | None) -> bytes | None:
    if payload is None:
        return None
    if isinstance(payload, dict):
        return json.dumps(payload).encode("utf-8")
    text = payload.strip()
    if not text:
        return None
    try:
        json.loads(text)
    except json.JSONDecodeError as exc:
        raise RequestValidationError("Invalid JSON payload provided", "invalid_payload") from exc
    return text.encode("utf-8")


def _maybe_json(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def _decode_log_result(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return base64.b64decode(value).decode("utf-8", errors="replace")
    except ValueError:
        return value
