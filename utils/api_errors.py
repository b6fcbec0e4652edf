"""API error taxonomy and normalization of backend error envelopes"""

import logging
from enum import Enum
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_ERROR_MESSAGE = "An error occurred"
DEFAULT_EXTERNAL_ERROR = "Something went wrong. Please try again."


class ErrorCategory(Enum):
    """User-facing error classes; messages shown to users keep these distinct"""

    NOT_ALLOWED = "not_allowed"
    RETRY_LATER = "retry_later"
    ALREADY_DONE = "already_done"
    INVALID_INPUT = "invalid_input"
    SESSION_EXPIRED = "session_expired"
    NOT_FOUND = "not_found"


CATEGORY_MESSAGES: Dict[ErrorCategory, str] = {
    ErrorCategory.NOT_ALLOWED: "You are not allowed to perform this action.",
    ErrorCategory.RETRY_LATER: "The service is temporarily unavailable. Please retry in a moment.",
    ErrorCategory.ALREADY_DONE: "This action has already been done. Refresh to see the current state.",
    ErrorCategory.INVALID_INPUT: "Invalid data or sequence not allowed. Check and try again.",
    ErrorCategory.SESSION_EXPIRED: "Session expired. Please sign in again.",
    ErrorCategory.NOT_FOUND: "Resource not found or no longer available.",
}


# ============================================================================
# REMOTE ERRORS
# ============================================================================

class ApiError(Exception):
    """Base error for a failed backend call"""

    category = ErrorCategory.INVALID_INPUT
    retryable = False

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: Optional[str] = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
        self.details = details

    def user_message(self) -> str:
        if self.code == "INSUFFICIENT_SCOPE":
            return "Action not allowed."
        return CATEGORY_MESSAGES[self.category]

    def __repr__(self):
        return f"{type(self).__name__}(status={self.status}, code={self.code!r}, message={self.message!r})"


class UnauthenticatedError(ApiError):
    """401: the session is missing or expired"""
    category = ErrorCategory.SESSION_EXPIRED


class ForbiddenError(ApiError):
    """403: authenticated but not allowed"""
    category = ErrorCategory.NOT_ALLOWED

    @property
    def insufficient_scope(self) -> bool:
        return self.code == "INSUFFICIENT_SCOPE"

    @property
    def domain_forbidden(self) -> bool:
        if not self.code:
            return False
        return self.code.startswith("NOT_") or self.code.endswith("_FORBIDDEN")


class NotFoundError(ApiError):
    category = ErrorCategory.NOT_FOUND


class GoneError(ApiError):
    """410: the resource (or credential) is permanently gone"""
    category = ErrorCategory.NOT_FOUND


class ConflictError(ApiError):
    """409: the action was already done or raced another one"""
    category = ErrorCategory.ALREADY_DONE


class ValidationError(ApiError):
    """422: the backend rejected the input; message is shown verbatim"""
    category = ErrorCategory.INVALID_INPUT

    def user_message(self) -> str:
        return self.message or CATEGORY_MESSAGES[self.category]


class RateLimitedError(ApiError):
    category = ErrorCategory.RETRY_LATER
    retryable = True

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ServerError(ApiError):
    category = ErrorCategory.RETRY_LATER
    retryable = True


class NetworkError(ApiError):
    """No response was received (connection refused, timeout, DNS...)"""
    category = ErrorCategory.RETRY_LATER
    retryable = True


# ============================================================================
# LOCAL ERRORS
# ============================================================================

class ActionNotPermittedError(Exception):
    """Raised before a request when the viewer may not perform the action"""

    def __init__(self, action: Any, reason: str):
        self.action = action
        self.reason = reason
        super().__init__(f"Action {getattr(action, 'value', action)} not permitted: {reason}")


class TokenIssueValidationError(ValueError):
    """Raised when an external token issuance request fails local validation"""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")


class TokenTargetMismatchError(Exception):
    """Raised when a token is used against an (escrow, milestone) it is not bound to"""
    pass


class ExternalLinkTerminalError(Exception):
    """The external link is expired, revoked or used; a new link is required"""

    def __init__(self, message: str = "This link has expired or has already been used.",
                 status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class SecretAlreadyRevealedError(Exception):
    """The one-time token secret has already been read"""
    pass


class DuplicateSubmissionError(Exception):
    """A mutation for the same intent is already in flight"""

    def __init__(self, intent: str):
        self.intent = intent
        super().__init__(f"Request already in progress for {intent}")


class EndpointNotForClientError(Exception):
    """The endpoint is reserved for server-side or operational use"""

    def __init__(self, method: str, path: str, label: str):
        self.method = method
        self.path = path
        self.label = label
        super().__init__(f"{method} {path} is not for client use ({label})")


# ============================================================================
# NORMALIZATION
# ============================================================================

def format_validation_items(items: list) -> str:
    """Join FastAPI-style validation items as 'loc: msg ; loc: msg'"""
    parts = []
    for item in items:
        if not isinstance(item, Mapping):
            continue
        loc = item.get("loc") or []
        location = ".".join(str(part) for part in loc) if loc else "Error"
        msg = item.get("msg")
        parts.append(f"{location}: {msg}" if msg else location)
    return " ; ".join(parts) if parts else DEFAULT_ERROR_MESSAGE


def normalize_error_payload(payload: Any) -> Dict[str, Any]:
    """
    Extract message, code and details from any backend error envelope.

    Handles {error: {message, code, details}}, {message, code},
    {detail: "..."}, {detail: {message, code}} and {detail: [validation items]}.
    """
    if isinstance(payload, str) and payload.strip():
        return {"message": payload.strip(), "code": None, "details": None}
    if not isinstance(payload, Mapping):
        return {"message": None, "code": None, "details": None}

    error = payload.get("error")
    if isinstance(error, Mapping) and error.get("message"):
        return {"message": error["message"], "code": error.get("code"), "details": error.get("details")}

    if payload.get("message"):
        return {"message": payload["message"], "code": payload.get("code"), "details": dict(payload)}

    detail = payload.get("detail")
    if isinstance(detail, str):
        return {"message": detail, "code": None, "details": detail}
    if isinstance(detail, Mapping) and detail.get("message"):
        return {"message": detail["message"], "code": detail.get("code"), "details": dict(detail)}
    if isinstance(detail, list):
        return {"message": format_validation_items(detail), "code": None, "details": detail}

    return {"message": None, "code": None, "details": None}


def _parse_retry_after(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


def error_from_response(status: int, payload: Any = None, retry_after: Any = None) -> ApiError:
    """Build the typed ApiError for a non-2xx response"""
    normalized = normalize_error_payload(payload)
    message = normalized["message"] or f"HTTP {status}"
    kwargs = {"status": status, "code": normalized["code"], "details": normalized["details"]}

    if status == 401:
        return UnauthenticatedError(message, **kwargs)
    if status == 403:
        return ForbiddenError(message, **kwargs)
    if status == 404:
        return NotFoundError(message, **kwargs)
    if status == 409:
        return ConflictError(message, **kwargs)
    if status == 410:
        return GoneError(message, **kwargs)
    if status == 422:
        return ValidationError(message, **kwargs)
    if status == 429:
        return RateLimitedError(message, retry_after=_parse_retry_after(retry_after), **kwargs)
    if status >= 500:
        return ServerError(message, **kwargs)
    return ApiError(message, **kwargs)


def is_retryable(error: BaseException) -> bool:
    """429, 5xx and network failures are retryable; everything else is not"""
    return isinstance(error, ApiError) and error.retryable


def is_blocking(error: BaseException) -> bool:
    """Errors after which polling a view makes no sense"""
    return isinstance(error, (UnauthenticatedError, ForbiddenError, NotFoundError, GoneError))


def external_user_message(error: BaseException) -> str:
    """User-facing message for failures on the external (token) pathway"""
    if isinstance(error, ExternalLinkTerminalError):
        return str(error)
    if isinstance(error, TokenTargetMismatchError):
        return "Access denied for this link. Check that you are using the right link."
    if not isinstance(error, ApiError):
        return DEFAULT_EXTERNAL_ERROR

    if error.code == "UNSUPPORTED_FILE_TYPE" or error.status == 415:
        return "Unsupported file type."
    if error.code == "FILE_TOO_LARGE" or error.status == 413:
        return "File too large. Reduce its size or choose another file."
    if error.code == "PROOF_NOT_FOUND":
        return "Proof not found for this secure link."

    status_messages = {
        401: "Invalid or expired link. Ask the sender for a new link.",
        403: "Access denied for this link. Check that you are using the right link.",
        404: "Record not found. Check the link or contact the sender.",
        410: "This link has expired or has already been used.",
        429: "Too many attempts. Please retry in a few minutes.",
    }
    if error.status in status_messages:
        return status_messages[error.status]
    return error.message or DEFAULT_EXTERNAL_ERROR
