"""
juryboard/errors.py
Centralized API error taxonomy

ERROR RESPONSE STRUCTURE:
{
    "success": false,
    "error": "ErrorType",
    "message": "Human-readable description",
    "code": "UNIQUE_ERROR_CODE",
    "details": {} (optional)
}

Ledger and resolver errors are returned synchronously to the caller.
Automation and integration failures never reach this layer; they are
absorbed by the automation engine and recorded in its audit log.
"""

import logging
import uuid
from typing import Optional, Dict, Any
from fastapi import status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ErrorCode:
    """Unique error codes for machine-readable error handling"""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_VALUE = "INVALID_VALUE"
    OUT_OF_RANGE = "OUT_OF_RANGE"

    AUTH_REQUIRED = "AUTH_REQUIRED"
    AUTH_INVALID = "AUTH_INVALID"

    DENIED = "DENIED"
    VOTING_CLOSED = "VOTING_CLOSED"
    ESCALATION_FORBIDDEN = "ESCALATION_FORBIDDEN"

    NOT_FOUND = "NOT_FOUND"
    UNKNOWN_CRITERION = "UNKNOWN_CRITERION"
    UNKNOWN_SORT_FIELD = "UNKNOWN_SORT_FIELD"

    INVALID_STATE = "INVALID_STATE"
    CRITERION_LOCKED = "CRITERION_LOCKED"
    CATEGORY_CYCLE = "CATEGORY_CYCLE"

    RATE_LIMITED = "RATE_LIMITED"

    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorResponse(BaseModel):
    """Standard error response model"""
    success: bool = False
    error: str
    message: str
    code: str
    details: Optional[Dict[str, Any]] = None


class APIError(Exception):
    """Base API exception with consistent structure"""

    def __init__(
        self,
        status_code: int,
        error: str,
        message: str,
        code: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.status_code = status_code
        self.error = error
        self.message = message
        self.code = code
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "success": False,
            "error": self.error,
            "message": self.message,
            "code": self.code
        }
        if self.details:
            result["details"] = self.details
        return result

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content=self.to_dict())


class UnauthorizedError(APIError):
    """401 - Authentication missing or invalid"""
    def __init__(self, message: str = "Authentication required", code: str = ErrorCode.AUTH_REQUIRED):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            error="Unauthorized",
            message=message,
            code=code
        )


class DeniedError(APIError):
    """403 - Permission or voting-window failure. Recoverable once rights or the window change."""
    def __init__(self, message: str, code: str = ErrorCode.DENIED, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            error="Denied",
            message=message,
            code=code,
            details=details
        )


class OutOfRangeError(APIError):
    """400 - Value outside [0, max_score] or label not in the criterion mapping"""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="Out Of Range",
            message=message,
            code=ErrorCode.OUT_OF_RANGE,
            details=details
        )


class InvalidValueError(APIError):
    """400 - Malformed input that passed schema validation"""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="Invalid Value",
            message=message,
            code=ErrorCode.INVALID_VALUE,
            details=details
        )


class UnknownCriterionError(APIError):
    """400 - Criterion missing or not part of the participant's competition"""
    def __init__(self, criterion_id: Any):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="Unknown Criterion",
            message=f"Criterion '{criterion_id}' is not defined for this competition",
            code=ErrorCode.UNKNOWN_CRITERION,
            details={"criterion_id": criterion_id}
        )


class UnknownSortFieldError(APIError):
    """400 - Sort selector is neither a stored attribute nor a known aggregate"""
    def __init__(self, field: str):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="Unknown Sort Field",
            message=f"Sort field '{field}' is neither a stored attribute nor a known aggregate",
            code=ErrorCode.UNKNOWN_SORT_FIELD,
            details={"field": field}
        )


class NotFoundError(APIError):
    """404 - Resource does not exist"""
    def __init__(self, resource: str, identifier: Any = None, code: str = ErrorCode.NOT_FOUND):
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} with id '{identifier}' not found"
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            error="Not Found",
            message=message,
            code=code
        )


class InvalidStateError(APIError):
    """409 - Operation not allowed in the current state"""
    def __init__(self, message: str, code: str = ErrorCode.INVALID_STATE, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error="Invalid State",
            message=message,
            code=code,
            details=details
        )


class RateLimitError(APIError):
    """429 - Too many requests"""
    def __init__(self, message: str = "Too many requests. Please slow down."):
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            error="Rate Limited",
            message=message,
            code=ErrorCode.RATE_LIMITED
        )


def error_envelope(error: str, message: str, code: str, details: Optional[Dict] = None) -> Dict[str, Any]:
    content = {"success": False, "error": error, "message": message, "code": code}
    if details:
        content["details"] = details
    return content


def internal_error_response(error: Exception, context: str = "") -> JSONResponse:
    """Log an internal error and build a safe 500 response"""
    log_id = str(uuid.uuid4())[:8]
    logger.error(f"[{log_id}] Internal error in {context}: {type(error).__name__}: {str(error)}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_envelope(
            "Internal Error",
            "An unexpected error occurred. Please try again later.",
            ErrorCode.INTERNAL_ERROR,
            {"log_id": log_id},
        ),
    )
