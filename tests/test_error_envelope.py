"""Error envelope shape:

{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from warden.api.error_handling import _STATUS_TO_CODE, _error_code_for_status, _error_response
from warden.api.schemas import Envelope, ErrorBody
from warden.service.errors import (
    AccountLockedError,
    InsufficientPermissionError,
    InvalidCredentialsError,
    ServiceError,
    TokenExpiredError,
)


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.details is None

    def test_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_envelope_generates_request_id(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id != second.request_id

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestStatusMapping:
    @pytest.mark.parametrize("status,code", sorted(_STATUS_TO_CODE.items()))
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_body(self):
        resp = _error_response(404, "missing", {"id": "x"})
        body = json.loads(resp.body)
        assert resp.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {"code": "not_found", "message": "missing", "details": {"id": "x"}}


class TestServiceErrors:
    def test_every_error_code_is_envelope_safe(self):
        for exc in (
            InvalidCredentialsError(),
            AccountLockedError(None),
            TokenExpiredError("expired"),
            InsufficientPermissionError("denied"),
        ):
            ErrorBody(code=exc.error_code, message=exc.message)

    def test_status_override(self):
        exc = ServiceError("gone", status_code=410, error_code="not_found")
        assert exc.status_code == 410
        assert exc.error_code == "not_found"
        assert exc.detail == {}

    def test_lock_detail_carries_expiry(self):
        until = datetime(2026, 1, 1, tzinfo=timezone.utc)
        exc = AccountLockedError(until)
        assert exc.status_code == 423
        assert exc.detail == {"locked_until": until.isoformat()}
