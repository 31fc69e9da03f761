"""Tests for the error envelope format and domain error mapping.

Error responses share one shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from pydantic import ValidationError

from authcore.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
    service_error_response,
)
from authcore.api.schemas import Envelope, ErrorBody
from authcore.service import errors


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.message == "Invalid credentials"
        assert error.details is None

    def test_details_dict(self):
        error = ErrorBody(
            code="validation_error",
            message="Invalid input",
            details={"field": "email", "reason": "invalid format"},
        )
        assert error.details == {"field": "email", "reason": "invalid format"}

    def test_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_missing_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="Error occurred")

    def test_unknown_code_rejected(self):
        """Codes outside the stable set are rejected."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_domain_codes_accepted(self):
        for code in ("account_locked", "two_factor_invalid"):
            assert ErrorBody(code=code, message="x").code == code


class TestEnvelope:
    """Tests for the Envelope model with error support."""

    def test_error_status(self):
        envelope = Envelope(
            status="error", error=ErrorBody(code="unauthorized", message="Invalid token")
        )
        assert envelope.error.code == "unauthorized"
        assert envelope.data is None

    def test_ok_status(self):
        envelope = Envelope(status="ok", data={"principal_id": "123"})
        assert envelope.data == {"principal_id": "123"}
        assert envelope.error is None

    def test_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36  # UUID format

    def test_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestErrorCodeMapping:
    """Tests for HTTP status to error code mapping."""

    @pytest.mark.parametrize(
        "status, code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (429, "rate_limited"),
            (500, "server_error"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_all_generic_codes_covered(self):
        assert set(_STATUS_TO_CODE.values()) == {
            "unauthorized",
            "forbidden",
            "not_found",
            "rate_limited",
            "validation_error",
            "conflict",
            "server_error",
        }


class TestErrorResponseFactory:
    """Tests for the error_response helper."""

    def test_basic(self):
        response = error_response(401, "Invalid credentials")

        assert response.status_code == 401
        data = json.loads(response.body.decode())
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["message"] == "Invalid credentials"
        assert data["request_id"]

    def test_custom_code(self):
        response = error_response(400, "Custom error", code="conflict")
        assert json.loads(response.body.decode())["error"]["code"] == "conflict"

    def test_null_details(self):
        response = error_response(404, "Not found", details=None)
        assert json.loads(response.body.decode())["error"]["details"] is None

    def test_list_details(self):
        response = error_response(400, "Multiple errors", details=[{"field": "a"}, {"field": "b"}])
        assert len(json.loads(response.body.decode())["error"]["details"]) == 2


class TestServiceErrors:
    """Domain errors carry their own status and code."""

    @pytest.mark.parametrize(
        "exc, status, code",
        [
            (errors.ValidationError("bad"), 400, "validation_error"),
            (errors.BadRequestError("bad"), 400, "validation_error"),
            (errors.AuthenticationError("no"), 401, "unauthorized"),
            (errors.TwoFactorInvalidError("no"), 401, "two_factor_invalid"),
            (errors.AccountLockedError(), 403, "account_locked"),
            (errors.NotFoundError("gone"), 404, "not_found"),
            (errors.RateLimitedError(), 429, "rate_limited"),
        ],
    )
    def test_status_and_code(self, exc, status, code):
        response = service_error_response(exc)
        assert response.status_code == status
        assert json.loads(response.body.decode())["error"]["code"] == code

    def test_rate_limited_headers(self):
        response = service_error_response(errors.RateLimitedError(retry_after_seconds=12))

        assert response.headers["Retry-After"] == "12"
        assert response.headers["X-Rate-Limit-Retry-After-Seconds"] == "12"
        details = json.loads(response.body.decode())["error"]["details"]
        assert details == {"retry_after_seconds": 12, "remaining": 0}

    def test_account_locked_headers(self):
        response = service_error_response(errors.AccountLockedError(retry_after_seconds=1800))

        assert response.headers["Retry-After"] == "1800"
        details = json.loads(response.body.decode())["error"]["details"]
        assert details == {"retry_after_seconds": 1800}

    def test_ban_has_no_retry_header(self):
        response = service_error_response(errors.AccountLockedError())

        assert "Retry-After" not in response.headers
        assert json.loads(response.body.decode())["error"]["details"] is None

    def test_empty_detail_serializes_as_null(self):
        response = service_error_response(errors.NotFoundError("session not found"))
        assert json.loads(response.body.decode())["error"]["details"] is None
