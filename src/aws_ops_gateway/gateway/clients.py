"""boto3 client factory keyed by resolved credentials."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable

import boto3
from botocore.config import Config

from aws_ops_gateway.aws_credentials.sts_provider import CredentialSet
from aws_ops_gateway.config import Settings, load_settings

ClientCacheKey = tuple[str, ...]

_CLIENT_CACHE: OrderedDict[ClientCacheKey, tuple[object, float]] = OrderedDict()
_CLIENT_CACHE_LOCK = threading.Lock()
_CLIENT_TTL_SECONDS = 3600  # 1 hour
_CLIENT_CACHE_MAX_SIZE = 256

logger = logging.getLogger(__name__)


def _get_cached_client(
    key: ClientCacheKey,
    build_client: Callable[[], object],
) -> object:
    now = time.monotonic()
    with _CLIENT_CACHE_LOCK:
        cached = _CLIENT_CACHE.get(key)
        if cached is not None:
            client, created_at = cached
            if now - created_at < _CLIENT_TTL_SECONDS:
                _CLIENT_CACHE.move_to_end(key)
                return client
            del _CLIENT_CACHE[key]
        client = build_client()
        _CLIENT_CACHE[key] = (client, now)
        while len(_CLIENT_CACHE) > _CLIENT_CACHE_MAX_SIZE:
            _CLIENT_CACHE.popitem(last=False)
        return client


def _credential_fingerprint(creds: CredentialSet) -> str:
    material = "\x1f".join(
        (creds.access_key_id, creds.secret_access_key, creds.session_token or "")
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def get_client(
    service: str,
    credentials: CredentialSet,
    region: str | None,
    settings: Settings | None = None,
):
    settings = settings or load_settings()
    resolved_region = region or settings.aws.default_region or "us-east-1"
    # Only the fingerprint hash, never the plaintext key, goes into the cache key.
    key = (service, resolved_region, _credential_fingerprint(credentials))
    return _get_cached_client(
        key,
        lambda: _create_client(service, credentials, resolved_region, settings),
    )


def _create_client(
    service: str,
    credentials: CredentialSet,
    region: str,
    settings: Settings,
):
    session = boto3.Session(
        aws_access_key_id=credentials.access_key_id,
        aws_secret_access_key=credentials.secret_access_key,
        aws_session_token=credentials.session_token,
        region_name=region,
    )
    return session.client(service, config=_get_service_config(service, settings))


def _get_service_config(service: str, settings: Settings) -> Config:
    base: dict[str, object] = {
        "read_timeout": settings.execution.sdk_timeout_seconds,
        "connect_timeout": settings.execution.sdk_timeout_seconds,
        "retries": {"max_attempts": settings.execution.max_retries + 1},
    }
    if service == "s3":
        base["request_checksum_calculation"] = "when_required"
        base["response_checksum_validation"] = "when_required"
    return Config(**base)


def truncate_text(value: str, max_chars: int) -> str:
    if len(value) <= max_chars:
        return value
    return value[: max_chars - 3] + "..."


def read_stream(obj: object, max_chars: int) -> str:
    """Read at most ``max_chars`` from a botocore stream as text (base64 for binary)."""
    max_chars = max(1, max_chars)
    try:
        content = obj.read(max_chars + 1)  # type: ignore[attr-defined]
    except Exception as exc:
        logger.warning("Failed to read streaming body: %s", exc)
        return "<Error reading stream>"
    if isinstance(content, bytes):
        truncated = len(content) > max_chars
        if truncated:
            content = content[:max_chars]
        try:
            text = content.decode("utf-8")
        except UnicodeDecodeError:
            text = base64.b64encode(content).decode("utf-8")
        return text[: max_chars - 3] + "..." if truncated else text
    return truncate_text(str(content) if content is not None else "", max_chars)


async def call_aws_api_async(client, method_name: str, **kwargs):
    method = getattr(client, method_name)
    return await asyncio.to_thread(lambda: method(**kwargs))
