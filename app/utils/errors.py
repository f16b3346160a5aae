"""Utility helpers for standardized error responses and domain errors."""
from typing import Any

from fastapi import HTTPException, status


def error_response(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


class DomainError(HTTPException):
    """Base class for errors raised by the escrow engines.

    Each subclass pins an HTTP status and a default error code so routers can
    let the exception propagate and the application handler renders the
    standard ``{"error": {...}}`` payload.
    """

    status_code_default = status.HTTP_400_BAD_REQUEST
    code_default = "DOMAIN_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.code = code or self.code_default
        self.message = message
        self.details = details or {}
        super().__init__(
            status_code=self.status_code_default,
            detail=error_response(self.code, message, self.details),
        )

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class NotFound(DomainError):
    status_code_default = status.HTTP_404_NOT_FOUND
    code_default = "NOT_FOUND"


class InvalidState(DomainError):
    """Operation attempted from a state that forbids it."""

    status_code_default = status.HTTP_409_CONFLICT
    code_default = "INVALID_STATE"

    def __init__(
        self,
        message: str,
        *,
        current: Any = None,
        required: Any = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        payload = dict(details or {})
        if current is not None:
            payload["current"] = getattr(current, "value", current)
        if required is not None:
            if isinstance(required, (list, tuple, set, frozenset)):
                payload["required"] = sorted(getattr(item, "value", item) for item in required)
            else:
                payload["required"] = getattr(required, "value", required)
        super().__init__(message, code=code, details=payload)


class ValidationFailed(DomainError):
    status_code_default = status.HTTP_422_UNPROCESSABLE_ENTITY
    code_default = "VALIDATION_FAILED"


class PreconditionFailed(DomainError):
    status_code_default = status.HTTP_412_PRECONDITION_FAILED
    code_default = "PRECONDITION_FAILED"


class Conflict(DomainError):
    status_code_default = status.HTTP_409_CONFLICT
    code_default = "CONFLICT"


class GatewayError(DomainError):
    """External payment provider failure, kept apart from local errors."""

    status_code_default = status.HTTP_502_BAD_GATEWAY
    code_default = "GATEWAY_ERROR"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.retryable = retryable
        payload = dict(details or {})
        payload["retryable"] = retryable
        super().__init__(message, code=code, details=payload)


class AuthorizationFailed(DomainError):
    status_code_default = status.HTTP_403_FORBIDDEN
    code_default = "AUTHORIZATION_FAILED"


__all__ = [
    "error_response",
    "DomainError",
    "NotFound",
    "InvalidState",
    "ValidationFailed",
    "PreconditionFailed",
    "Conflict",
    "GatewayError",
    "AuthorizationFailed",
]
