from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    NOT_FOUND = "NOT_FOUND"
    TRANSITION_NOT_FOUND = "TRANSITION_NOT_FOUND"
    TERMINAL_STATE = "TERMINAL_STATE"
    AUTHORIZATION_DENIED = "AUTHORIZATION_DENIED"
    GATE_NOT_MET = "GATE_NOT_MET"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    DUPLICATE_CODE = "DUPLICATE_CODE"
    INVALID_STATE = "INVALID_STATE"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"


class LifecycleError(Exception):
    """Base error for lifecycle, approval and policy operations."""

    code: ErrorCode = ErrorCode.VALIDATION_ERROR

    def __init__(self, message: str, *, code: ErrorCode | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFoundError(LifecycleError):
    code = ErrorCode.NOT_FOUND


class TransitionNotFoundError(LifecycleError):
    code = ErrorCode.TRANSITION_NOT_FOUND


class TerminalStateError(LifecycleError):
    code = ErrorCode.TERMINAL_STATE


class AuthorizationDeniedError(LifecycleError):
    code = ErrorCode.AUTHORIZATION_DENIED


class ValidationError(LifecycleError):
    code = ErrorCode.VALIDATION_ERROR


class DuplicateCodeError(LifecycleError):
    code = ErrorCode.DUPLICATE_CODE


class InvalidStateError(LifecycleError):
    code = ErrorCode.INVALID_STATE


class ConcurrentModificationError(LifecycleError):
    code = ErrorCode.CONCURRENT_MODIFICATION
