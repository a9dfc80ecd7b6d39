"""Starlette HTTP API over the broker, the registry and the resource gateway."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from aws_ops_gateway import __version__
from aws_ops_gateway.accounts.store import build_trust_policy
from aws_ops_gateway.app import AppContext, get_app_context
from aws_ops_gateway.aws_credentials.sts_provider import STSIdentityProvider
from aws_ops_gateway.errors import GatewayError, RequestValidationError
from aws_ops_gateway.middleware.audit import AuditMiddleware
from aws_ops_gateway.transport.schemas import (
    CloudWatchQueryRequest,
    CreateAccountRequest,
    DynamoDBQueryRequest,
    EmrAddStepsRequest,
    EmrClusterRequest,
    EmrListStepsRequest,
    LambdaInvokeRequest,
    S3GetRequest,
    S3ListRequest,
    UpdateAccountRequest,
)
from aws_ops_gateway.utils.serialization import json_default

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class GatewayJSONResponse(JSONResponse):
    """JSON response that understands datetimes, Decimals and dataclasses."""

    def render(self, content: Any) -> bytes:
        return json.dumps(
            content,
            default=json_default,
            ensure_ascii=False,
            separators=(",", ":"),
        ).encode("utf-8")


def _context(request: Request) -> AppContext:
    return request.app.state.context


async def _parse_body(request: Request, model: type[ModelT]) -> ModelT:
    raw = await request.body()
    try:
        payload = json.loads(raw) if raw else {}
    except json.JSONDecodeError as exc:
        raise RequestValidationError(f"Request body is not valid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise RequestValidationError("Request body must be a JSON object")
    return model.model_validate(payload)


async def _gateway_error_handler(request: Request, exc: GatewayError) -> Response:
    status_code = exc.status_code
    if status_code >= 500:
        logger.error("Request failed: path=%s, code=%s, error=%s", request.url.path, exc.code, exc)
    else:
        logger.info("Request rejected: path=%s, code=%s", request.url.path, exc.code)
    return GatewayJSONResponse(
        {"error": exc.code, "message": exc.message}, status_code=status_code
    )


async def _pydantic_error_handler(
    request: Request, exc: PydanticValidationError
) -> Response:
    details = [
        {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return GatewayJSONResponse(
        {"error": "invalid_request", "message": "Request validation failed", "details": details},
        status_code=400,
    )


# ----------------------------------------------------------------------
# health


async def health_handler(request: Request) -> Response:
    ctx = _context(request)
    return GatewayJSONResponse(
        {
            "status": "healthy",
            "version": __version__,
            "accounts": len(ctx.accounts.list_accounts()),
            "executions": len(ctx.registry),
        }
    )


# ----------------------------------------------------------------------
# accounts


async def list_accounts_handler(request: Request) -> Response:
    accounts = _context(request).accounts.list_accounts()
    return GatewayJSONResponse({"accounts": [a.to_dict() for a in accounts]})


async def create_account_handler(request: Request) -> Response:
    ctx = _context(request)
    body = await _parse_body(request, CreateAccountRequest)
    account = ctx.accounts.create_account(
        display_name=body.display_name,
        default_region=body.default_region,
        role_arn=body.role_arn,
        external_id=body.external_id,
        account_id=body.account_id,
    )
    content: dict[str, Any] = {"account": account.to_dict(include_external_id=True)}
    if account.external_id:
        content["setupInstructions"] = {
            "message": (
                "Attach this trust policy to the role so the gateway can assume it. "
                "Keep the external id secret."
            ),
            "roleArn": account.role_arn,
            "externalId": account.external_id,
            "trustPolicy": build_trust_policy(
                ctx.settings.credentials.trust_principal_arn, account.external_id
            ),
        }
    return GatewayJSONResponse(content, status_code=201)


async def get_account_handler(request: Request) -> Response:
    account = _context(request).accounts.get_account(request.path_params["account_id"])
    return GatewayJSONResponse({"account": account.to_dict()})


async def update_account_handler(request: Request) -> Response:
    ctx = _context(request)
    account_id = request.path_params["account_id"]
    body = await _parse_body(request, UpdateAccountRequest)
    account = ctx.accounts.update_account(
        account_id,
        display_name=body.display_name,
        default_region=body.default_region,
        role_arn=body.role_arn,
        is_active=body.is_active,
    )
    await ctx.broker.clear_cache(account_id)
    return GatewayJSONResponse({"account": account.to_dict()})


async def delete_account_handler(request: Request) -> Response:
    ctx = _context(request)
    account_id = request.path_params["account_id"]
    ctx.accounts.delete_account(account_id)
    await ctx.broker.clear_cache(account_id)
    return GatewayJSONResponse({"success": True, "accountId": account_id})


async def test_account_handler(request: Request) -> Response:
    ctx = _context(request)
    account_id = request.path_params["account_id"]
    creds, valid = await ctx.broker.test_account(account_id)
    if valid:
        ctx.accounts.touch(account_id)
    return GatewayJSONResponse(
        {
            "success": valid,
            "accountId": account_id,
            "expiresAt": creds.expires_at,
            "message": "Connection successful" if valid else "Credentials were rejected by AWS",
        }
    )


async def credential_status_handler(request: Request) -> Response:
    status = await _context(request).broker.status(request.path_params["account_id"])
    return GatewayJSONResponse(status.to_dict())


async def clear_account_credentials_handler(request: Request) -> Response:
    ctx = _context(request)
    account_id = request.path_params["account_id"]
    ctx.accounts.get_account(account_id)
    await ctx.broker.clear_cache(account_id)
    return GatewayJSONResponse({"success": True, "accountId": account_id})


async def clear_all_credentials_handler(request: Request) -> Response:
    await _context(request).broker.clear_cache()
    return GatewayJSONResponse({"success": True})


# ----------------------------------------------------------------------
# executions


async def list_executions_handler(request: Request) -> Response:
    executions = _context(request).registry.list()
    return GatewayJSONResponse({"executions": [e.to_dict() for e in executions]})


async def get_execution_handler(request: Request) -> Response:
    execution = _context(request).registry.get(request.path_params["execution_id"])
    return GatewayJSONResponse({"execution": execution.to_dict()})


async def get_execution_logs_handler(request: Request) -> Response:
    logs = _context(request).registry.get_logs(request.path_params["execution_id"])
    return GatewayJSONResponse({"logs": [entry.to_dict() for entry in logs]})


async def stop_execution_handler(request: Request) -> Response:
    execution = _context(request).registry.stop(request.path_params["execution_id"])
    return GatewayJSONResponse({"execution": execution.to_dict()})


# ----------------------------------------------------------------------
# AWS resources


async def cloudwatch_query_handler(request: Request) -> Response:
    body = await _parse_body(request, CloudWatchQueryRequest)
    result = await _context(request).gateway.query_cloudwatch_logs(
        body.account_id,
        body.log_group,
        filter_pattern=body.filter_pattern,
        start_time=body.start_time,
        end_time=body.end_time,
        limit=body.limit,
        region=body.region,
    )
    return GatewayJSONResponse(result)


async def dynamodb_query_handler(request: Request) -> Response:
    body = await _parse_body(request, DynamoDBQueryRequest)
    result = await _context(request).gateway.query_dynamodb(
        body.account_id,
        body.table_name,
        key_condition_expression=body.key_condition_expression,
        filter_expression=body.filter_expression,
        expression_attribute_values=body.expression_attribute_values,
        expression_attribute_names=body.expression_attribute_names,
        index_name=body.index_name,
        limit=body.limit,
        exclusive_start_key=body.exclusive_start_key,
        region=body.region,
    )
    return GatewayJSONResponse(result)


async def s3_list_handler(request: Request) -> Response:
    body = await _parse_body(request, S3ListRequest)
    result = await _context(request).gateway.list_s3_objects(
        body.account_id,
        body.bucket,
        prefix=body.prefix,
        delimiter=body.delimiter,
        max_keys=body.max_keys,
        continuation_token=body.continuation_token,
        region=body.region,
    )
    return GatewayJSONResponse(result)


async def s3_get_handler(request: Request) -> Response:
    body = await _parse_body(request, S3GetRequest)
    result = await _context(request).gateway.get_s3_object(
        body.account_id, body.bucket, body.key, region=body.region
    )
    return GatewayJSONResponse(result)


async def lambda_invoke_handler(request: Request) -> Response:
    body = await _parse_body(request, LambdaInvokeRequest)
    result = await _context(request).gateway.invoke_lambda(
        body.account_id,
        body.function_name,
        payload=body.payload,
        invocation_type=body.invocation_type,
        log_type=body.log_type,
        qualifier=body.qualifier,
        node_id=body.node_id,
        region=body.region,
    )
    return GatewayJSONResponse(result)


async def emr_describe_handler(request: Request) -> Response:
    body = await _parse_body(request, EmrClusterRequest)
    result = await _context(request).gateway.describe_emr_cluster(
        body.account_id, body.cluster_id, region=body.region
    )
    return GatewayJSONResponse(result)


async def emr_list_steps_handler(request: Request) -> Response:
    body = await _parse_body(request, EmrListStepsRequest)
    result = await _context(request).gateway.list_emr_steps(
        body.account_id, body.cluster_id, step_states=body.step_states, region=body.region
    )
    return GatewayJSONResponse(result)


async def emr_add_steps_handler(request: Request) -> Response:
    body = await _parse_body(request, EmrAddStepsRequest)
    result = await _context(request).gateway.add_emr_steps(
        body.account_id,
        body.cluster_id,
        [step.model_dump() for step in body.steps],
        node_id=body.node_id,
        region=body.region,
    )
    return GatewayJSONResponse(result)


async def regions_handler(request: Request) -> Response:
    return GatewayJSONResponse(_context(request).gateway.list_regions())


ROUTES = [
    Route("/api/health", endpoint=health_handler, methods=["GET"]),
    Route("/api/accounts", endpoint=list_accounts_handler, methods=["GET"]),
    Route("/api/accounts", endpoint=create_account_handler, methods=["POST"]),
    Route("/api/accounts/{account_id}", endpoint=get_account_handler, methods=["GET"]),
    Route("/api/accounts/{account_id}", endpoint=update_account_handler, methods=["PUT"]),
    Route("/api/accounts/{account_id}", endpoint=delete_account_handler, methods=["DELETE"]),
    Route("/api/accounts/{account_id}/test", endpoint=test_account_handler, methods=["POST"]),
    Route(
        "/api/accounts/{account_id}/status", endpoint=credential_status_handler, methods=["GET"]
    ),
    Route(
        "/api/accounts/{account_id}/credentials",
        endpoint=clear_account_credentials_handler,
        methods=["DELETE"],
    ),
    Route("/api/credentials", endpoint=clear_all_credentials_handler, methods=["DELETE"]),
    Route("/api/executions", endpoint=list_executions_handler, methods=["GET"]),
    Route("/api/executions/{execution_id}", endpoint=get_execution_handler, methods=["GET"]),
    Route(
        "/api/executions/{execution_id}/logs",
        endpoint=get_execution_logs_handler,
        methods=["GET"],
    ),
    Route(
        "/api/executions/{execution_id}/stop", endpoint=stop_execution_handler, methods=["POST"]
    ),
    Route("/api/aws/cloudwatch/query", endpoint=cloudwatch_query_handler, methods=["POST"]),
    Route("/api/aws/dynamodb/query", endpoint=dynamodb_query_handler, methods=["POST"]),
    Route("/api/aws/s3/list", endpoint=s3_list_handler, methods=["POST"]),
    Route("/api/aws/s3/get", endpoint=s3_get_handler, methods=["POST"]),
    Route("/api/aws/lambda/invoke", endpoint=lambda_invoke_handler, methods=["POST"]),
    Route("/api/aws/emr/describe", endpoint=emr_describe_handler, methods=["POST"]),
    Route("/api/aws/emr/steps", endpoint=emr_list_steps_handler, methods=["POST"]),
    Route("/api/aws/emr/steps/add", endpoint=emr_add_steps_handler, methods=["POST"]),
    Route("/api/aws/regions", endpoint=regions_handler, methods=["GET"]),
]


def create_http_app(context: AppContext | None = None) -> Starlette:
    """Create the HTTP application around ``context`` (the process context by default)."""
    ctx = context or get_app_context()
    settings = ctx.settings

    middleware: list[Middleware] = [Middleware(AuditMiddleware)]

    # CORS must be outermost so preflight requests are answered directly.
    if settings.server.http_enable_cors and settings.server.http_allowed_origins:
        from starlette.middleware.cors import CORSMiddleware

        middleware.insert(
            0,
            Middleware(
                CORSMiddleware,
                allow_origins=list(settings.server.http_allowed_origins),
                allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
                allow_headers=["Content-Type", "Accept", "X-Request-Id"],
            ),
        )

    @asynccontextmanager
    async def lifespan(app: Starlette):
        logger.info("Starting AWS operations gateway v%s", __version__)
        if isinstance(ctx.provider, STSIdentityProvider):
            await asyncio.to_thread(ctx.provider._get_client)
        try:
            yield
        finally:
            logger.info("Stopping AWS operations gateway...")

    app = Starlette(
        routes=ROUTES,
        middleware=middleware,
        exception_handlers={
            GatewayError: _gateway_error_handler,
            PydanticValidationError: _pydantic_error_handler,
        },
        lifespan=lifespan,
    )
    app.state.context = ctx
    return app
