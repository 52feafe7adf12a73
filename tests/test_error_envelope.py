"""Tests for the error envelope and the domain error to HTTP mapping.

Error responses share one shape:
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

from chatguard.api.error_handling import _error_code_for_status, _error_response
from chatguard.api.schemas import Envelope, ErrorBody
from chatguard.service.errors import (
    ChallengeExpiredError,
    ChallengeMismatchError,
    IPBlockedError,
    NoCredentialError,
    PrincipalUnavailableError,
    RoleMismatchError,
)


class TestErrorBody:
    def test_domain_codes_accepted(self):
        for code in ("ip_blocked", "challenge_expired", "role_mismatch", "invalid_credentials"):
            assert ErrorBody(code=code, message="x").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_missing_message_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_request_id_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_invalid_status_rejected(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status, code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
            (503, "server_error"),
        ],
    )
    def test_status_fallback_codes(self, status, code):
        assert _error_code_for_status(status) == code


class TestServiceErrors:
    @pytest.mark.parametrize(
        "exc, status, code",
        [
            (NoCredentialError(), 401, "no_credential"),
            (RoleMismatchError(), 401, "role_mismatch"),
            (PrincipalUnavailableError(), 401, "principal_unavailable"),
            (ChallengeExpiredError(), 400, "challenge_expired"),
            (ChallengeMismatchError(), 400, "challenge_mismatch"),
        ],
    )
    def test_status_and_code(self, exc, status, code):
        assert exc.status_code == status
        assert exc.error_code == code

    def test_ip_blocked_carries_unblock_time(self):
        until = datetime(2025, 1, 1, 12, 30, tzinfo=timezone.utc)
        exc = IPBlockedError(until, 17)

        assert exc.status_code == 429
        assert exc.detail == {
            "blocked_until": "2025-01-01T12:30:00+00:00",
            "remaining_minutes": 17,
        }
        assert "17 minutes" in exc.message


class TestErrorResponseFactory:
    def test_envelope_body(self):
        response = _error_response(
            429, "address is blocked", {"remaining_minutes": 5}, code="ip_blocked"
        )
        data = json.loads(response.body.decode())

        assert response.status_code == 429
        assert data["status"] == "error"
        assert data["error"] == {
            "code": "ip_blocked",
            "message": "address is blocked",
            "details": {"remaining_minutes": 5},
        }
        assert data["request_id"]

    def test_headers_passed_through(self):
        response = _error_response(
            401, "authentication required", headers={"WWW-Authenticate": "Bearer"}
        )
        assert response.headers["WWW-Authenticate"] == "Bearer"
