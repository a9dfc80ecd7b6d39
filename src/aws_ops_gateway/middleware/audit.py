"""Request logging middleware."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from aws_ops_gateway.logging_utils import sanitize_log_value

logger = logging.getLogger(__name__)


class AuditMiddleware(BaseHTTPMiddleware):
    """Logs one REQUEST_START and one REQUEST_END line per API call.

    Only the method, path, status and timing are recorded; request bodies
    (which may carry external ids) never reach the log.
    """

    EXEMPT_PATHS = frozenset({"/api/health"})

    def __init__(self, app: Callable, enabled: bool = True) -> None:
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled or request.url.path in self.EXEMPT_PATHS:
            return await call_next(request)

        request_id = sanitize_log_value(request.headers.get("x-request-id", str(uuid.uuid4())))
        start_time = time.time()
        safe_path = sanitize_log_value(request.url.path)
        client_ip = sanitize_log_value(request.client.host if request.client else "unknown")

        logger.info(
            "REQUEST_START request_id=%s method=%s path=%s client_ip=%s",
            request_id,
            request.method,
            safe_path,
            client_ip,
        )

        error_message: str | None = None
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["x-request-id"] = request_id
            return response
        except Exception as e:
            error_message = sanitize_log_value(str(e))
            raise
        finally:
            duration_ms = int((time.time() - start_time) * 1000)
            if error_message:
                logger.error(
                    "REQUEST_END request_id=%s method=%s path=%s status=%s duration_ms=%d error=%s",
                    request_id,
                    request.method,
                    safe_path,
                    status_code,
                    duration_ms,
                    error_message,
                )
            else:
                logger.info(
                    "REQUEST_END request_id=%s method=%s path=%s status=%s duration_ms=%d",
                    request_id,
                    request.method,
                    safe_path,
                    status_code,
                    duration_ms,
                )
