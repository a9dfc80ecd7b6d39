"""HTTP transport."""

from aws_ops_gateway.transport.http_server import create_http_app

__all__ = ["create_http_app"]
