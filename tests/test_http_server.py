"""End-to-end tests for the HTTP API using Starlette's TestClient."""

from __future__ import annotations

import io
import logging
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError
from starlette.testclient import TestClient

from aws_ops_gateway.app import build_app_context
from aws_ops_gateway.aws_credentials.sts_provider import STSCredentialError
from aws_ops_gateway.config import ServerSettings, Settings
from aws_ops_gateway.transport.http_server import create_http_app

ROLE_ARN = "arn:aws:iam::333333333333:role/GatewayAccess"


@pytest.fixture
def context(accounts, provider):
    return build_app_context(Settings(), accounts=accounts, provider=provider)


@pytest.fixture
def client(context):
    with TestClient(create_http_app(context)) as test_client:
        yield test_client


def test_health(client) -> None:
    response = client.get("/api/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["accounts"] == 3


def test_list_accounts_hides_external_ids(client) -> None:
    response = client.get("/api/accounts")

    assert response.status_code == 200
    accounts = response.json()["accounts"]
    assert [a["accountId"] for a in accounts] == ["prod", "dev", "legacy"]
    assert all("externalId" not in a for a in accounts)


def test_create_account_returns_setup_instructions(client) -> None:
    response = client.post(
        "/api/accounts",
        json={"displayName": "Analytics", "defaultRegion": "us-west-2", "roleArn": ROLE_ARN},
    )

    assert response.status_code == 201
    body = response.json()
    external_id = body["account"]["externalId"]
    assert len(external_id) == 64
    instructions = body["setupInstructions"]
    assert instructions["roleArn"] == ROLE_ARN
    condition = instructions["trustPolicy"]["Statement"][0]["Condition"]
    assert condition == {"StringEquals": {"sts:ExternalId": external_id}}


def test_create_local_account_has_no_setup_instructions(client) -> None:
    response = client.post("/api/accounts", json={"display_name": "Local", "account_id": "local"})

    assert response.status_code == 201
    assert "setupInstructions" not in response.json()
    assert client.get("/api/accounts/local").json()["account"]["mode"] == "local"


def test_create_account_with_invalid_arn(client) -> None:
    response = client.post("/api/accounts", json={"displayName": "Bad", "roleArn": "nope"})

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_role_arn"


def test_create_account_missing_fields(client) -> None:
    response = client.post("/api/accounts", json={"defaultRegion": "us-east-1"})

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "invalid_request"
    assert body["details"][0]["field"] in {"displayName", "display_name"}


def test_malformed_json_body(client) -> None:
    response = client.post(
        "/api/accounts", content=b"{broken", headers={"content-type": "application/json"}
    )

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_request"


def test_unknown_account_is_404(client) -> None:
    response = client.get("/api/accounts/missing")

    assert response.status_code == 404
    assert response.json() == {
        "error": "account_not_found",
        "message": "AWS account missing not found",
    }


def test_credential_status_without_cache(client) -> None:
    response = client.get("/api/accounts/prod/status")

    assert response.status_code == 200
    assert response.json() == {"cached": False, "valid": False, "expiresAt": None}


def test_account_test_marks_account_used(client, context) -> None:
    response = client.post("/api/accounts/prod/test")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["expiresAt"]
    assert context.accounts.get_account("prod").last_used_at is not None

    status = client.get("/api/accounts/prod/status").json()
    assert status["cached"] is True
    assert status["valid"] is True


def test_account_test_with_denied_role(client, provider) -> None:
    provider.assume_error = STSCredentialError("not authorized to assume", "access_denied")

    response = client.post("/api/accounts/prod/test")

    assert response.status_code == 401
    assert response.json()["error"] == "access_denied"
    assert client.get("/api/accounts/prod/status").json()["cached"] is False


def test_update_account_clears_cached_credentials(client, provider) -> None:
    client.post("/api/accounts/prod/test")

    response = client.put("/api/accounts/prod", json={"displayName": "Prod (EU)"})

    assert response.status_code == 200
    assert response.json()["account"]["displayName"] == "Prod (EU)"
    assert client.get("/api/accounts/prod/status").json()["cached"] is False


def test_delete_account(client) -> None:
    response = client.delete("/api/accounts/dev")

    assert response.status_code == 200
    assert client.get("/api/accounts/dev").status_code == 404


def test_clear_credentials_endpoints(client) -> None:
    client.post("/api/accounts/prod/test")
    client.post("/api/accounts/dev/test")

    assert client.delete("/api/accounts/prod/credentials").status_code == 200
    assert client.get("/api/accounts/prod/status").json()["cached"] is False
    assert client.get("/api/accounts/dev/status").json()["cached"] is True

    assert client.delete("/api/credentials").status_code == 200
    assert client.get("/api/accounts/dev/status").json()["cached"] is False
    assert client.delete("/api/accounts/missing/credentials").status_code == 404


def test_execution_endpoints(client, context) -> None:
    execution = context.registry.create({"operation": "emr:AddJobFlowSteps"})
    context.registry.log(execution.id, "node-1", "info", "queued")

    listed = client.get("/api/executions").json()["executions"]
    assert [e["id"] for e in listed] == [execution.id]

    detail = client.get(f"/api/executions/{execution.id}").json()["execution"]
    assert detail["status"] == "pending"

    logs = client.get(f"/api/executions/{execution.id}/logs").json()["logs"]
    assert logs[0]["message"] == "queued"
    assert logs[0]["nodeId"] == "node-1"

    stopped = client.post(f"/api/executions/{execution.id}/stop")
    assert stopped.status_code == 200
    assert stopped.json()["execution"]["status"] == "cancelled"

    again = client.post(f"/api/executions/{execution.id}/stop")
    assert again.status_code == 200
    assert again.json()["execution"]["endTime"] == stopped.json()["execution"]["endTime"]


@pytest.mark.parametrize(
    ("method", "path"),
    [
        ("get", "/api/executions/exec-missing"),
        ("get", "/api/executions/exec-missing/logs"),
        ("post", "/api/executions/exec-missing/stop"),
    ],
)
def test_unknown_execution_is_404(client, method: str, path: str) -> None:
    response = getattr(client, method)(path)

    assert response.status_code == 404
    assert response.json()["error"] == "execution_not_found"


def test_lambda_invoke_endpoint_records_execution(client) -> None:
    aws_client = MagicMock()
    aws_client.invoke.return_value = {"StatusCode": 200, "Payload": io.BytesIO(b'{"n": 1.5}')}

    with patch("aws_ops_gateway.gateway.operations.get_client", return_value=aws_client):
        response = client.post(
            "/api/aws/lambda/invoke",
            json={"accountId": "dev", "functionName": "fn", "payload": {"x": 1}},
        )

    assert response.status_code == 200
    body = response.json()
    assert body["payload"] == {"n": 1.5}
    execution_id = body["executionId"]
    execution = client.get(f"/api/executions/{execution_id}").json()["execution"]
    assert execution["status"] == "succeeded"
    assert len(client.get(f"/api/executions/{execution_id}/logs").json()["logs"]) == 2


def test_dynamodb_endpoint_serializes_decimals(client) -> None:
    aws_client = MagicMock()
    aws_client.scan.return_value = {
        "Items": [{"pk": {"S": "a"}, "n": {"N": "2"}, "f": {"N": "0.25"}}],
        "Count": 1,
    }

    with patch("aws_ops_gateway.gateway.operations.get_client", return_value=aws_client):
        response = client.post(
            "/api/aws/dynamodb/query", json={"accountId": "dev", "tableName": "t"}
        )

    assert response.status_code == 200
    assert response.json()["items"] == [{"pk": "a", "n": 2, "f": 0.25}]


def test_aws_error_is_mapped(client) -> None:
    aws_client = MagicMock()
    aws_client.get_object.side_effect = ClientError(
        {"Error": {"Code": "NoSuchBucket", "Message": "gone"}}, "GetObject"
    )

    with patch("aws_ops_gateway.gateway.operations.get_client", return_value=aws_client):
        response = client.post(
            "/api/aws/s3/get", json={"accountId": "dev", "bucket": "b", "key": "k"}
        )

    assert response.status_code == 404
    assert response.json()["error"] == "NoSuchBucket"


def test_emr_add_steps_validates_body(client) -> None:
    response = client.post(
        "/api/aws/emr/steps/add", json={"accountId": "dev", "clusterId": "j-1", "steps": []}
    )

    assert response.status_code == 400


def test_regions(client) -> None:
    response = client.get("/api/aws/regions")

    assert response.status_code == 200
    assert {"code": "us-east-1", "name": "US East (N. Virginia)"} in response.json()["regions"]


def test_requests_are_logged(client, caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.INFO, logger="aws_ops_gateway.middleware.audit"):
        response = client.get("/api/accounts", headers={"x-request-id": "req-42"})

    assert response.headers["x-request-id"] == "req-42"
    messages = [r.getMessage() for r in caplog.records if r.name == "aws_ops_gateway.middleware.audit"]
    assert any(m.startswith("REQUEST_START request_id=req-42") for m in messages)
    assert any("REQUEST_END" in m and "status=200" in m for m in messages)


def test_cors_when_enabled(accounts, provider) -> None:
    settings = Settings(
        server=ServerSettings(http_enable_cors=True, http_allowed_origins=("https://ops.example",))
    )
    app = create_http_app(build_app_context(settings, accounts=accounts, provider=provider))

    with TestClient(app) as test_client:
        response = test_client.options(
            "/api/accounts",
            headers={"Origin": "https://ops.example", "Access-Control-Request-Method": "GET"},
        )

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "https://ops.example"
