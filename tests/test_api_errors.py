"""
API Error Tests
Envelope normalization, typed mapping by status and user-facing messages
"""

import pytest

from utils.api_errors import (
    ApiError,
    ConflictError,
    ExternalLinkTerminalError,
    ForbiddenError,
    GoneError,
    NetworkError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    TokenTargetMismatchError,
    UnauthenticatedError,
    ValidationError,
    error_from_response,
    external_user_message,
    format_validation_items,
    is_blocking,
    is_retryable,
    normalize_error_payload,
)


class TestNormalizeErrorPayload:
    """Every backend envelope shape yields a message and code"""

    def test_error_object_envelope(self):
        result = normalize_error_payload({"error": {"message": "Nope", "code": "NOT_OWNER", "details": {"x": 1}}})
        assert result == {"message": "Nope", "code": "NOT_OWNER", "details": {"x": 1}}

    def test_flat_message_envelope(self):
        result = normalize_error_payload({"message": "Bad state", "code": "INVALID_STATE"})
        assert result["message"] == "Bad state"
        assert result["code"] == "INVALID_STATE"

    def test_detail_string(self):
        assert normalize_error_payload({"detail": "Escrow not found"})["message"] == "Escrow not found"

    def test_detail_object(self):
        result = normalize_error_payload({"detail": {"message": "Scope missing", "code": "INSUFFICIENT_SCOPE"}})
        assert result["code"] == "INSUFFICIENT_SCOPE"

    def test_detail_validation_items_are_joined(self):
        items = [
            {"loc": ["body", "expires_in_minutes"], "msg": "too large"},
            {"loc": [], "msg": "bad"},
        ]
        result = normalize_error_payload({"detail": items})
        assert result["message"] == "body.expires_in_minutes: too large ; Error: bad"

    def test_plain_text_body(self):
        assert normalize_error_payload("  upstream timeout ")["message"] == "upstream timeout"

    def test_unknown_shape(self):
        assert normalize_error_payload([1, 2])["message"] is None

    def test_empty_validation_items(self):
        assert format_validation_items(["junk"]) == "An error occurred"


class TestErrorFromResponse:
    """Status codes map to distinct error types"""

    @pytest.mark.parametrize("status,error_type", [
        (401, UnauthenticatedError),
        (403, ForbiddenError),
        (404, NotFoundError),
        (409, ConflictError),
        (410, GoneError),
        (422, ValidationError),
        (429, RateLimitedError),
        (500, ServerError),
        (503, ServerError),
    ])
    def test_status_mapping(self, status, error_type):
        error = error_from_response(status, {"detail": "x"})
        assert type(error) is error_type
        assert error.status == status

    def test_unmapped_client_error(self):
        error = error_from_response(418, None)
        assert type(error) is ApiError
        assert error.message == "HTTP 418"

    def test_retry_after_is_parsed(self):
        assert error_from_response(429, None, retry_after="7").retry_after == 7.0
        assert error_from_response(429, None, retry_after="soon").retry_after is None

    def test_retryable_classes(self):
        assert is_retryable(ServerError("x", status=502))
        assert is_retryable(NetworkError("x"))
        assert is_retryable(RateLimitedError("x", status=429))
        assert not is_retryable(ConflictError("x", status=409))
        assert not is_retryable(RuntimeError("x"))

    def test_blocking_classes(self):
        assert is_blocking(GoneError("x", status=410))
        assert is_blocking(UnauthenticatedError("x", status=401))
        assert not is_blocking(ServerError("x", status=500))


class TestUserMessages:
    """Users see distinct messages per error class"""

    def test_categories_stay_distinct(self):
        messages = {
            ForbiddenError("x").user_message(),
            ServerError("x").user_message(),
            ConflictError("x").user_message(),
            UnauthenticatedError("x").user_message(),
        }
        assert len(messages) == 4

    def test_conflict_says_already_done_without_retry_prompt(self):
        message = error_from_response(409, {"detail": "Proof already decided"}).user_message()

        assert "already" in message
        assert "try again" not in message.lower()
        assert "retry" not in message.lower()
        assert message != ServerError("x").user_message()
        assert message != RateLimitedError("x").user_message()

    def test_validation_message_is_verbatim(self):
        assert ValidationError("amount: must be positive").user_message() == "amount: must be positive"

    def test_insufficient_scope(self):
        error = error_from_response(403, {"detail": {"message": "no", "code": "INSUFFICIENT_SCOPE"}})
        assert error.insufficient_scope
        assert error.user_message() == "Action not allowed."

    def test_domain_forbidden_codes(self):
        assert ForbiddenError("x", code="NOT_ESCROW_SENDER").domain_forbidden
        assert ForbiddenError("x", code="PROOF_FORBIDDEN").domain_forbidden
        assert not ForbiddenError("x").domain_forbidden


class TestExternalMessages:
    """Messages on the external token pathway"""

    def test_terminal_link(self):
        assert "expired" in external_user_message(ExternalLinkTerminalError())

    def test_target_mismatch(self):
        assert external_user_message(TokenTargetMismatchError("x")).startswith("Access denied")

    def test_file_errors(self):
        assert external_user_message(ApiError("x", status=415)) == "Unsupported file type."
        assert external_user_message(ApiError("x", code="FILE_TOO_LARGE")).startswith("File too large")

    def test_status_messages(self):
        assert external_user_message(UnauthenticatedError("x", status=401)).startswith("Invalid or expired link")
        assert external_user_message(RateLimitedError("x", status=429)).startswith("Too many attempts")

    def test_unknown_error(self):
        assert external_user_message(RuntimeError("boom")) == "Something went wrong. Please try again."
