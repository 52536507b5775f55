"""Tests for the error envelope format and service error mapping.

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

from tokenward.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from tokenward.api.schemas import Envelope, ErrorBody
from tokenward.service.errors import (
    GenerationError,
    InvalidTokenError,
    MalformedTokenError,
    NotFoundError,
    ServiceError,
    StoreError,
    TokenExpiredError,
    UnauthenticatedError,
    UnknownTokenError,
)


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_accepts_list_details(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"loc": ["body", "ttl_millis"]}, {"loc": ["body", "description"]}],
        )
        assert len(error.details) == 2

    @pytest.mark.parametrize(
        "code",
        ["malformed_token", "invalid_token", "token_expired", "generation_failed", "store_failure"],
    )
    def test_token_error_codes_are_accepted(self, code):
        assert ErrorBody(code=code, message="x").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="x")

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")

        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")

    def test_envelope_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="token_expired", message="auth token has expired"),
            request_id="test-req-123",
        )
        dumped = envelope.model_dump()

        assert dumped["error"]["code"] == "token_expired"
        assert dumped["request_id"] == "test-req-123"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status, code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (404, "not_found"),
            (409, "conflict"),
            (410, "token_expired"),
            (500, "server_error"),
        ],
    )
    def test_status_mapping(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_mapped_codes_are_valid_error_codes(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="x")


class TestServiceErrors:
    @pytest.mark.parametrize(
        "exc, status, code",
        [
            (MalformedTokenError("x"), 401, "malformed_token"),
            (UnknownTokenError("x"), 401, "unauthorized"),
            (InvalidTokenError("x"), 401, "invalid_token"),
            (NotFoundError("x"), 404, "not_found"),
            (GenerationError("x"), 500, "generation_failed"),
            (StoreError("x"), 500, "store_failure"),
        ],
    )
    def test_status_and_code(self, exc, status, code):
        assert exc.status_code == status
        assert exc.error_code == code

    def test_authentication_failures_share_a_base(self):
        for cls in (MalformedTokenError, UnknownTokenError, InvalidTokenError):
            assert issubclass(cls, UnauthenticatedError)
        assert not issubclass(TokenExpiredError, UnauthenticatedError)

    def test_expired_error_carries_token(self):
        marker = object()
        exc = TokenExpiredError("expired", token=marker)

        assert exc.status_code == 410
        assert exc.token is marker

    def test_overrides(self):
        exc = ServiceError("x", status_code=409, error_code="conflict", detail={"name": "a"})

        assert exc.status_code == 409
        assert exc.error_code == "conflict"
        assert exc.detail == {"name": "a"}


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "Invalid credentials")

        assert response.status_code == 401
        data = json.loads(response.body.decode())
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["message"] == "Invalid credentials"
        assert "request_id" in data

    def test_error_response_custom_code(self):
        response = _error_response(401, "bad token", code="invalid_token")

        data = json.loads(response.body.decode())
        assert data["error"]["code"] == "invalid_token"

    def test_error_response_null_details(self):
        response = _error_response(404, "Not found", details=None)

        data = json.loads(response.body.decode())
        assert data["error"]["details"] is None
