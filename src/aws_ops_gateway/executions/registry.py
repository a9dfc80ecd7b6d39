"""In-memory ledger of executions and their per-node logs."""

from __future__ import annotations

import copy
import logging
import threading
from collections import OrderedDict
from typing import Any

from aws_ops_gateway.errors import NotFoundError, StateConflictError
from aws_ops_gateway.executions.models import (
    ALLOWED_TRANSITIONS,
    Execution,
    ExecutionLog,
    ExecutionStatus,
    LogLevel,
)
from aws_ops_gateway.utils.time import utc_now

logger = logging.getLogger(__name__)


class ExecutionRegistry:
    """Single authoritative store for executions and logs.

    Every status change is a compare-and-swap under one lock: of two racing
    transitions out of ``running`` the first wins and the second is rejected
    with ``StateConflictError``. Callers only ever receive copies.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._executions: OrderedDict[str, Execution] = OrderedDict()
        self._logs: dict[str, list[ExecutionLog]] = {}

    def list(self) -> list[Execution]:
        with self._lock:
            return [copy.deepcopy(e) for e in self._executions.values()]

    def get(self, execution_id: str) -> Execution:
        with self._lock:
            return copy.deepcopy(self._require(execution_id))

    def get_logs(self, execution_id: str) -> list[ExecutionLog]:
        with self._lock:
            self._require(execution_id)
            return copy.deepcopy(self._logs.get(execution_id, []))

    def stop(self, execution_id: str) -> Execution:
        """Cancel a pending or running execution; a no-op once terminal."""
        with self._lock:
            execution = self._require(execution_id)
            if execution.status.is_terminal:
                logger.info(
                    "Stop ignored for finished execution: id=%s, status=%s",
                    execution_id,
                    execution.status.value,
                )
                return copy.deepcopy(execution)
            self._apply(execution, ExecutionStatus.CANCELLED)
            snapshot = copy.deepcopy(execution)
        logger.info("Execution stopped: id=%s", execution_id)
        return snapshot

    def register(self, execution: Execution) -> Execution:
        """Store a new execution; it must start out pending or running."""
        if execution.status.is_terminal:
            raise StateConflictError(
                f"Execution {execution.id} cannot be registered as {execution.status.value}"
            )
        with self._lock:
            if execution.id in self._executions:
                raise StateConflictError(
                    f"Execution {execution.id} already registered", "duplicate_execution"
                )
            stored = copy.deepcopy(execution)
            self._executions[stored.id] = stored
            self._logs[stored.id] = []
        logger.info("Execution registered: id=%s, status=%s", stored.id, stored.status.value)
        return copy.deepcopy(stored)

    def create(
        self, metadata: dict[str, Any] | None = None, execution_id: str | None = None
    ) -> Execution:
        execution = Execution(metadata=dict(metadata or {}))
        if execution_id:
            execution.id = execution_id
        return self.register(execution)

    def append_log(self, log: ExecutionLog) -> ExecutionLog:
        stored = copy.deepcopy(log)
        with self._lock:
            self._require(stored.execution_id)
            self._logs[stored.execution_id].append(stored)
        return copy.deepcopy(stored)

    def log(
        self,
        execution_id: str,
        node_id: str,
        level: LogLevel | str,
        message: str,
        data: Any = None,
    ) -> ExecutionLog:
        return self.append_log(
            ExecutionLog(
                execution_id=execution_id,
                node_id=node_id,
                level=LogLevel(level),
                message=message,
                data=data,
            )
        )

    def transition(
        self,
        execution_id: str,
        target: ExecutionStatus,
        expected: ExecutionStatus | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Execution:
        """Move an execution to ``target``.

        Raises:
            NotFoundError: unknown execution id
            StateConflictError: current status is not ``expected`` or the
                transition is not allowed by the state machine
        """
        with self._lock:
            execution = self._require(execution_id)
            current = execution.status
            if expected is not None and current is not expected:
                self._reject(execution_id, current, target)
            if target not in ALLOWED_TRANSITIONS[current]:
                self._reject(execution_id, current, target)
            self._apply(execution, target)
            if metadata:
                execution.metadata.update(metadata)
            snapshot = copy.deepcopy(execution)
        logger.info(
            "Execution transitioned: id=%s, %s -> %s", execution_id, current.value, target.value
        )
        return snapshot

    def start(self, execution_id: str) -> Execution:
        return self.transition(execution_id, ExecutionStatus.RUNNING, ExecutionStatus.PENDING)

    def succeed(self, execution_id: str, result: Any = None) -> Execution:
        metadata = {"result": result} if result is not None else None
        return self.transition(
            execution_id, ExecutionStatus.SUCCEEDED, ExecutionStatus.RUNNING, metadata
        )

    def fail(self, execution_id: str, error: str) -> Execution:
        return self.transition(
            execution_id, ExecutionStatus.FAILED, ExecutionStatus.RUNNING, {"error": error}
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._executions)

    def _require(self, execution_id: str) -> Execution:
        execution = self._executions.get(execution_id)
        if execution is None:
            raise NotFoundError(
                f"Execution with ID {execution_id} not found", "execution_not_found"
            )
        return execution

    def _apply(self, execution: Execution, target: ExecutionStatus) -> None:
        execution.status = target
        if target.is_terminal:
            execution.end_time = utc_now()

    def _reject(
        self, execution_id: str, current: ExecutionStatus, target: ExecutionStatus
    ) -> None:
        logger.warning(
            "Rejected execution transition: id=%s, %s -> %s",
            execution_id,
            current.value,
            target.value,
        )
        raise StateConflictError(
            f"Execution {execution_id} cannot move from {current.value} to {target.value}"
        )
