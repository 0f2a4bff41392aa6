"""Error envelope format and HTTP mapping.

Every failure is rendered as:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import json

import pytest
from pydantic import ValidationError

from taskdesk.api.error_handling import _error_code_for_status, _error_response
from taskdesk.api.schemas import Envelope, ErrorBody, RegisterRequest, _normalize_unicode
from taskdesk.service.errors import (
    ConflictError,
    ExpiredSessionError,
    InvalidTokenError,
    RateLimitedError,
    SessionRevokedError,
    ServiceError,
)


class TestErrorBody:
    """ErrorBody only accepts the stable codes."""

    @pytest.mark.parametrize(
        "code", ["invalid_token", "session_expired", "session_revoked", "conflict", "not_found"]
    )
    def test_known_codes_accepted(self, code):
        assert ErrorBody(code=code, message="x").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestServiceErrors:
    """Status and code pinned on each service error."""

    @pytest.mark.parametrize(
        "exc_type, status, code",
        [
            (InvalidTokenError, 401, "invalid_token"),
            (ExpiredSessionError, 401, "session_expired"),
            (SessionRevokedError, 403, "session_revoked"),
            (ConflictError, 409, "conflict"),
            (RateLimitedError, 429, "rate_limited"),
        ],
    )
    def test_status_and_code(self, exc_type, status, code):
        exc = exc_type("boom")
        assert (exc.status_code, exc.error_code) == (status, code)

    def test_overrides(self):
        exc = ServiceError("gone", status_code=404, error_code="not_found", detail={"id": "1"})
        assert (exc.status_code, exc.error_code, exc.detail) == (404, "not_found", {"id": "1"})


class TestErrorResponse:
    def test_default_code_from_status(self):
        assert _error_code_for_status(404) == "not_found"
        assert _error_code_for_status(418) == "server_error"

    def test_response_body(self):
        response = _error_response(409, "email is already registered", {"field": "email"})
        body = json.loads(response.body)

        assert response.status_code == 409
        assert body["status"] == "error"
        assert body["data"] is None
        assert body["error"] == {
            "code": "conflict",
            "message": "email is already registered",
            "details": {"field": "email"},
        }
        assert body["request_id"]


class TestHttpEnvelope:
    """Envelope rendering through the application."""

    def test_unknown_route_is_enveloped(self, client):
        response = client.get("/v1/nope")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_request_validation_is_400(self, client):
        response = client.post("/v1/auth/register", json={"email": "a@x.com"})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert {d["field"] for d in error["details"]} >= {"name", "password"}

    def test_request_id_is_echoed(self, client):
        response = client.get("/v1/profile", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_security_headers(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Cache-Control"].startswith("no-store")


class TestInputNormalization:
    def test_zero_width_characters_stripped(self):
        assert _normalize_unicode("Al\u200bice") == "Alice"

    def test_register_normalizes_email(self):
        request = RegisterRequest(name=" Ann ", email=" Ann@Example.COM ", password="secret1")
        assert (request.name, request.email) == ("Ann", "ann@example.com")
