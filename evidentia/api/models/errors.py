"""Error body models for the HTTP layer."""

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    """Error object carried under the ``error`` key."""

    message: str
    type: str
    param: str | None = None
    code: str | None = None


class ErrorResponse(BaseModel):
    """Error response wrapper: ``{"error": {...}}``."""

    error: ErrorDetail


ERROR_TYPE_INVALID_REQUEST = "invalid_request_error"
ERROR_TYPE_NOT_FOUND = "not_found_error"
ERROR_TYPE_SERVICE_UNAVAILABLE = "service_unavailable_error"
ERROR_TYPE_SERVER = "server_error"


def create_error_response(
    message: str,
    error_type: str = ERROR_TYPE_SERVER,
    param: str | None = None,
    code: str | None = None,
) -> ErrorResponse:
    """Create an error response.

    Args:
        message: Human-readable error message
        error_type: Type of error (see ERROR_TYPE_* constants)
        param: Parameter that caused the error (optional)
        code: Error code (optional)

    Returns:
        ErrorResponse object
    """
    return ErrorResponse(
        error=ErrorDetail(
            message=message,
            type=error_type,
            param=param,
            code=code,
        )
    )


def invalid_request_error(message: str, param: str | None = None) -> ErrorResponse:
    return create_error_response(message, ERROR_TYPE_INVALID_REQUEST, param=param)


def not_found_error(message: str, param: str | None = None) -> ErrorResponse:
    return create_error_response(message, ERROR_TYPE_NOT_FOUND, param=param, code="not_found")


def service_unavailable_error(message: str) -> ErrorResponse:
    return create_error_response(message, ERROR_TYPE_SERVICE_UNAVAILABLE, code="not_ready")


def server_error(message: str = "Internal server error", code: str | None = None) -> ErrorResponse:
    return create_error_response(message, ERROR_TYPE_SERVER, code=code)
