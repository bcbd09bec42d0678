"""Structured request-time errors: ``{"error": {"message", "type", "code"?, "details"?}}``."""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional, Tuple

ErrorType = Literal[
    "invalid_request_error",
    "authentication_error",
    "permission_denied_error",
    "not_found_error",
    "rate_limit_error",
    "upstream_error",
    "internal_error",
]


class ProfileContextError(Exception):
    """Base error rendered to API callers."""

    status_code: int = 500
    error_type: ErrorType = "internal_error"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Any = None,
        status_code: Optional[int] = None,
        error_type: Optional[ErrorType] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details
        if status_code is not None:
            self.status_code = status_code
        if error_type is not None:
            self.error_type = error_type

    def to_response(self) -> Dict[str, Any]:
        return error_response(self.message, self.error_type, self.code, self.details)


class InvalidRequestError(ProfileContextError):
    status_code = 400
    error_type: ErrorType = "invalid_request_error"


class ProfileNotFoundError(ProfileContextError):
    status_code = 404
    error_type: ErrorType = "not_found_error"

    def __init__(self, profile_id: str) -> None:
        super().__init__(f"Profile not found: {profile_id}", code="profile_not_found")
        self.profile_id = profile_id


def error_response(
    message: str,
    error_type: ErrorType = "internal_error",
    code: Optional[str] = None,
    details: Any = None,
) -> Dict[str, Any]:
    error: Dict[str, Any] = {"message": message, "type": error_type}
    if code is not None:
        error["code"] = code
    if details is not None:
        error["details"] = details
    return {"error": error}


def status_to_error_type(status: int) -> ErrorType:
    if status == 400 or status == 422:
        return "invalid_request_error"
    if status == 401:
        return "authentication_error"
    if status == 403:
        return "permission_denied_error"
    if status == 404:
        return "not_found_error"
    if status == 429:
        return "rate_limit_error"
    if status in (502, 503, 504):
        return "upstream_error"
    return "internal_error"


def upstream_error_status(status: int) -> Tuple[int, ErrorType]:
    """Status and error type reported to the caller for an upstream failure.

    Client-side statuses keep their own type and anything else is an ``upstream_error``.
    A missing or out-of-range status (network failure, timeout) is reported as 502.
    """
    reported = status if 400 <= status <= 599 else 502
    error_type = status_to_error_type(reported)
    if error_type == "internal_error":
        error_type = "upstream_error"
    return reported, error_type


__all__ = [
    "ErrorType",
    "InvalidRequestError",
    "ProfileContextError",
    "ProfileNotFoundError",
    "error_response",
    "status_to_error_type",
    "upstream_error_status",
]
