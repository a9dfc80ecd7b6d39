"""Execution tracking."""

from aws_ops_gateway.executions.models import (
    Execution,
    ExecutionLog,
    ExecutionStatus,
    LogLevel,
)
from aws_ops_gateway.executions.registry import ExecutionRegistry

__all__ = [
    "Execution",
    "ExecutionLog",
    "ExecutionRegistry",
    "ExecutionStatus",
    "LogLevel",
]
