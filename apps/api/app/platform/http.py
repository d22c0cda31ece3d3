from __future__ import annotations

from fastapi import HTTPException, status

from app.platform.errors import ErrorCode, LifecycleError


_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.TRANSITION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.TERMINAL_STATE: status.HTTP_409_CONFLICT,
    ErrorCode.AUTHORIZATION_DENIED: status.HTTP_403_FORBIDDEN,
    ErrorCode.GATE_NOT_MET: status.HTTP_409_CONFLICT,
    ErrorCode.VALIDATION_ERROR: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.DUPLICATE_CODE: status.HTTP_409_CONFLICT,
    ErrorCode.INVALID_STATE: status.HTTP_409_CONFLICT,
    ErrorCode.CONCURRENT_MODIFICATION: status.HTTP_409_CONFLICT,
}


def status_for_code(code: ErrorCode | str | None, default: int = status.HTTP_200_OK) -> int:
    if code is None:
        return default
    return _STATUS_BY_CODE.get(ErrorCode(code), status.HTTP_400_BAD_REQUEST)


def to_http_exception(exc: LifecycleError) -> HTTPException:
    return HTTPException(status_code=status_for_code(exc.code), detail=exc.to_dict())
