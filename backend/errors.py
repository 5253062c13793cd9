from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    AUTHENTICATION = "AUTHENTICATION"
    VALIDATION = "VALIDATION"
    ANTI_CHEAT = "ANTI_CHEAT"
    RESOURCE = "RESOURCE"
    BUSINESS_LOGIC = "BUSINESS_LOGIC"
    INTERNAL = "INTERNAL"


class ErrorCode(str, Enum):
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"

    INVALID_REQUEST = "INVALID_REQUEST"
    EXPIRED_TOKEN = "EXPIRED_TOKEN"
    TOKEN_ALREADY_USED = "TOKEN_ALREADY_USED"
    TOKEN_REVOKED = "TOKEN_REVOKED"
    INVALID_STATE = "INVALID_STATE"

    RATE_LIMITED = "RATE_LIMITED"
    GEOFENCE_VIOLATION = "GEOFENCE_VIOLATION"
    WIFI_VIOLATION = "WIFI_VIOLATION"

    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    STORAGE_ERROR = "STORAGE_ERROR"

    INELIGIBLE_STUDENT = "INELIGIBLE_STUDENT"
    INSUFFICIENT_STUDENTS = "INSUFFICIENT_STUDENTS"
    SESSION_ENDED = "SESSION_ENDED"

    INTERNAL_ERROR = "INTERNAL_ERROR"


class TokenFailure(str, Enum):
    """Closed outcome set of token validation and consumption."""

    NOT_FOUND = "NOT_FOUND"
    EXPIRED = "EXPIRED"
    USED = "USED"
    REVOKED = "REVOKED"
    CONFLICT = "CONFLICT"


class AppError(Exception):
    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    category: ErrorCategory = ErrorCategory.INTERNAL
    status_code: int = 500
    default_message = "An internal error occurred."
    # Operational errors are expected outcomes of legitimate use.
    operational: bool = True

    def __init__(self, message: str | None = None, details: dict[str, Any] | None = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "detail": self.message,
            "code": self.code.value,
            "category": self.category.value,
        }
        if self.details:
            payload["details"] = self.details
        return payload


# -----------------------------
# Authentication
# -----------------------------
class AuthenticationError(AppError):
    code = ErrorCode.UNAUTHORIZED
    category = ErrorCategory.AUTHENTICATION
    status_code = 401
    default_message = "Missing or invalid client principal."


class AuthorizationError(AppError):
    code = ErrorCode.FORBIDDEN
    category = ErrorCategory.AUTHENTICATION
    status_code = 403
    default_message = "Access forbidden."


# -----------------------------
# Validation
# -----------------------------
class ValidationError(AppError):
    code = ErrorCode.INVALID_REQUEST
    category = ErrorCategory.VALIDATION
    status_code = 400
    default_message = "Invalid request."


class TokenExpiredError(AppError):
    code = ErrorCode.EXPIRED_TOKEN
    category = ErrorCategory.VALIDATION
    status_code = 400
    default_message = "Token has expired."


class TokenAlreadyUsedError(AppError):
    code = ErrorCode.TOKEN_ALREADY_USED
    category = ErrorCategory.VALIDATION
    status_code = 409
    default_message = "Token has already been used."


class TokenRevokedError(AppError):
    code = ErrorCode.TOKEN_REVOKED
    category = ErrorCategory.VALIDATION
    status_code = 400
    default_message = "Token has been revoked."


class InvalidStateError(AppError):
    code = ErrorCode.INVALID_STATE
    category = ErrorCategory.VALIDATION
    status_code = 400
    default_message = "Operation not allowed in the current state."


# -----------------------------
# Anti-cheat
# -----------------------------
class RateLimitedError(AppError):
    code = ErrorCode.RATE_LIMITED
    category = ErrorCategory.ANTI_CHEAT
    status_code = 429
    default_message = "Too many scan attempts. Please wait and retry."


class GeofenceViolationError(AppError):
    code = ErrorCode.GEOFENCE_VIOLATION
    category = ErrorCategory.ANTI_CHEAT
    status_code = 403
    default_message = "Scan location is outside the classroom geofence."


class WifiViolationError(AppError):
    code = ErrorCode.WIFI_VIOLATION
    category = ErrorCategory.ANTI_CHEAT
    status_code = 403
    default_message = "Scan was not made from an allowed Wi-Fi network."


# -----------------------------
# Resource
# -----------------------------
class NotFoundError(AppError):
    code = ErrorCode.NOT_FOUND
    category = ErrorCategory.RESOURCE
    status_code = 404
    default_message = "Resource not found."


class ConflictError(AppError):
    code = ErrorCode.CONFLICT
    category = ErrorCategory.RESOURCE
    status_code = 409
    default_message = "Someone else scanned this code first. Please rescan the current code."


class StorageError(AppError):
    code = ErrorCode.STORAGE_ERROR
    category = ErrorCategory.RESOURCE
    status_code = 503
    default_message = "Storage is temporarily unavailable. Please retry."
    operational = False


# -----------------------------
# Business logic
# -----------------------------
class IneligibleStudentError(AppError):
    code = ErrorCode.INELIGIBLE_STUDENT
    category = ErrorCategory.BUSINESS_LOGIC
    status_code = 403
    default_message = "Student is not eligible for this scan."


class InsufficientStudentsError(AppError):
    code = ErrorCode.INSUFFICIENT_STUDENTS
    category = ErrorCategory.BUSINESS_LOGIC
    status_code = 400
    default_message = "Not enough eligible students."


class SessionEndedError(AppError):
    code = ErrorCode.SESSION_ENDED
    category = ErrorCategory.BUSINESS_LOGIC
    status_code = 400
    default_message = "Session has already ended."


class InternalError(AppError):
    operational = False


_TOKEN_FAILURE_ERRORS: dict[TokenFailure, type[AppError]] = {
    TokenFailure.NOT_FOUND: NotFoundError,
    TokenFailure.EXPIRED: TokenExpiredError,
    TokenFailure.USED: TokenAlreadyUsedError,
    TokenFailure.REVOKED: TokenRevokedError,
    TokenFailure.CONFLICT: ConflictError,
}

_TOKEN_FAILURE_MESSAGES = {
    TokenFailure.NOT_FOUND: "Token not found.",
}


def token_failure_error(failure: TokenFailure, details: dict[str, Any] | None = None) -> AppError:
    error_cls = _TOKEN_FAILURE_ERRORS[failure]
    return error_cls(_TOKEN_FAILURE_MESSAGES.get(failure), details)
