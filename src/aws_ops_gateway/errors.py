"""Error kinds shared by the broker, the registry and the gateway.

Every error carries a short machine-readable ``code`` and the HTTP status the
transport layer answers with.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for all errors surfaced to API callers."""

    status_code = 500

    def __init__(self, message: str, code: str = "internal_error") -> None:
        super().__init__(message)
        self.code = code

    @property
    def message(self) -> str:
        return str(self)


class NotFoundError(GatewayError):
    """Unknown execution, account or AWS resource."""

    status_code = 404

    def __init__(self, message: str, code: str = "not_found") -> None:
        super().__init__(message, code)


# Causes that indicate the caller is not (or no longer) authorized.
_AUTH_RESOLUTION_CODES = frozenset(
    {
        "access_denied",
        "invalid_external_id",
        "missing_credentials",
        "token_expired",
        "invalid_token",
        "account_inactive",
    }
)


class ResolutionError(GatewayError):
    """Credentials could not be resolved for an account."""

    def __init__(self, message: str, code: str = "resolution_failed") -> None:
        super().__init__(message, code)

    @property
    def status_code(self) -> int:  # type: ignore[override]
        return 401 if self.code in _AUTH_RESOLUTION_CODES else 502


class AccountNotFoundError(NotFoundError, ResolutionError):
    """Unknown account id; a not-found and a resolution failure at once."""

    status_code = 404

    def __init__(self, account_id: str) -> None:
        GatewayError.__init__(self, f"AWS account {account_id} not found", "account_not_found")
        self.account_id = account_id


class ValidationError(GatewayError):
    """Transport-level failure while checking credentials. Safe to retry."""

    status_code = 502

    def __init__(self, message: str, code: str = "validation_unavailable") -> None:
        super().__init__(message, code)


class StateConflictError(GatewayError):
    """Attempted execution transition violates the state machine."""

    status_code = 409

    def __init__(self, message: str, code: str = "state_conflict") -> None:
        super().__init__(message, code)


class RequestValidationError(GatewayError):
    """Malformed request payload."""

    status_code = 400

    def __init__(self, message: str, code: str = "invalid_request") -> None:
        super().__init__(message, code)


class AwsOperationError(GatewayError):
    """An AWS service call made by the gateway failed."""

    def __init__(self, message: str, code: str, status_code: int) -> None:
        super().__init__(message, code)
        self._status_code = status_code

    @property
    def status_code(self) -> int:  # type: ignore[override]
        return self._status_code
