"""Error responses keep the stable envelope shape.

{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from pydantic import ValidationError

from portal_access.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from portal_access.api.schemas import Envelope, ErrorBody


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid admin key")
        assert error.code == "unauthorized"
        assert error.details is None

    @pytest.mark.parametrize(
        "code",
        ["invalid_token", "expired", "revoked", "already_used", "verification_required", "locked"],
    )
    def test_portal_reason_codes_are_accepted(self, code):
        assert ErrorBody(code=code, message="x").code == code

    def test_unknown_code_is_rejected(self):
        """Codes outside the stable set never reach clients."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="x")

    def test_details_may_be_a_list(self):
        error = ErrorBody(code="validation_error", message="bad", details=[{"loc": ["body"]}])
        assert len(error.details) == 1


class TestEnvelope:
    def test_request_id_is_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_invalid_status_is_rejected(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestErrorCodeMapping:
    def test_portal_statuses(self):
        assert _error_code_for_status(410) == "expired"
        assert _error_code_for_status(423) == "locked"
        assert _error_code_for_status(429) == "rate_limited"

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_every_mapped_code_is_valid(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="x")


class TestErrorResponseFactory:
    def test_basic_response(self):
        response = _error_response(401, "Invalid admin key")

        data = json.loads(response.body.decode())
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"] == {
            "code": "unauthorized",
            "message": "Invalid admin key",
            "details": None,
        }
        assert data["request_id"]

    def test_explicit_code_and_details(self):
        response = _error_response(
            400, "Invalid code. 2 attempts remaining.", {"attempts_remaining": 2}, code="invalid_code"
        )

        data = json.loads(response.body.decode())
        assert data["error"]["code"] == "invalid_code"
        assert data["error"]["details"] == {"attempts_remaining": 2}
