"""HTTP middleware."""

from aws_ops_gateway.middleware.audit import AuditMiddleware

__all__ = ["AuditMiddleware"]
