"""Tests for the error envelope format and exception mapping.

Error responses have the shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|null>},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from unityauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from unityauth.api.schemas import CreateInvitationRequest, Envelope, ErrorBody, RegisterRequest
from unityauth.service.errors import (
    AuthenticationError,
    ConflictError,
    InvitationRejected,
    NotFoundError,
    ServerError,
)
from unityauth.storage.errors import ConstraintViolation, UnknownTerritory


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")
        assert Envelope(status="ok").request_id


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (404, "not_found"),
            (409, "conflict"),
            (500, "server_error"),
            (418, "server_error"),
        ],
    )
    def test_error_code_for_status(self, status, code):
        assert _error_code_for_status(status) == code

    def test_mapping_only_uses_known_codes(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="ok")

    def test_codes_cover_only_produced_statuses(self):
        assert sorted(_STATUS_TO_CODE) == [400, 401, 404, 409, 500]
        with pytest.raises(ValidationError):
            ErrorBody(code="forbidden", message="nope")

    def test_error_response_body(self):
        response = _error_response(404, "Session not found")
        body = json.loads(response.body)

        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {"code": "not_found", "message": "Session not found", "details": None}
        assert body["data"] is None


class TestExceptionHandlers:
    @pytest.fixture
    def client(self):
        app = FastAPI()
        register_exception_handlers(app)

        @app.get("/rejected")
        async def rejected():
            raise InvitationRejected("expired")

        @app.get("/unauthorized")
        async def unauthorized():
            raise AuthenticationError("Invalid credentials")

        @app.get("/missing")
        async def missing():
            raise NotFoundError("Session not found")

        @app.get("/conflict")
        async def conflict():
            raise ConflictError("Username already taken", detail={"field": "username"})

        @app.get("/constraint")
        async def constraint():
            raise ConstraintViolation("duplicate", {"field": "token"})

        @app.get("/territory")
        async def territory():
            raise UnknownTerritory("zz")

        @app.get("/server")
        async def server():
            raise ServerError("Registration failed")

        @app.get("/boom")
        async def boom():
            raise RuntimeError("secret internals")

        return TestClient(app, raise_server_exceptions=False)

    @pytest.mark.parametrize(
        "path,status,code",
        [
            ("/rejected", 400, "validation_error"),
            ("/unauthorized", 401, "unauthorized"),
            ("/missing", 404, "not_found"),
            ("/conflict", 409, "conflict"),
            ("/constraint", 409, "conflict"),
            ("/territory", 400, "validation_error"),
            ("/server", 500, "server_error"),
        ],
    )
    def test_status_and_code(self, client, path, status, code):
        response = client.get(path)

        assert response.status_code == status
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == code
        assert body["request_id"]

    def test_rejection_reason_in_details(self, client):
        body = client.get("/rejected").json()
        assert body["error"]["message"] == "This invitation token has expired"
        assert body["error"]["details"] == {"reason": "expired"}

    def test_unhandled_exception_hides_internals(self, client):
        response = client.get("/boom")

        assert response.status_code == 500
        assert response.json()["error"]["message"] == "internal server error"
        assert "secret internals" not in response.text


class TestInvitationRejected:
    @pytest.mark.parametrize(
        "reason,message",
        [
            ("invalid", "Invalid invitation token"),
            ("revoked", "This invitation token has been revoked"),
            ("exhausted", "This invitation token has reached its maximum number of uses"),
            ("expired", "This invitation token has expired"),
            ("email_mismatch", "This invitation token is for a different email address"),
        ],
    )
    def test_messages(self, reason, message):
        exc = InvitationRejected(reason)
        assert exc.message == message
        assert exc.status_code == 400

    def test_unknown_reason(self):
        with pytest.raises(ValueError):
            InvitationRejected("bored")


class TestRequestSchemas:
    def test_email_normalized(self):
        body = RegisterRequest(
            territory_code="dk",
            username="alice",
            password="TestPassword123!",
            invitation_token="inv_x",
            email="  Alice@Example.ORG ",
        )
        assert body.email == "alice@example.org"

    @pytest.mark.parametrize("email", ["plain", "a@b", "a@@b.dk", "a b@c.dk", "@c.dk"])
    def test_bad_emails(self, email):
        with pytest.raises(ValidationError):
            CreateInvitationRequest(token_type="single_use", email=email)

    def test_invitation_bounds(self):
        with pytest.raises(ValidationError):
            CreateInvitationRequest(token_type="group", max_uses=1001)
        with pytest.raises(ValidationError):
            CreateInvitationRequest(token_type="group", max_uses=5, expires_in_days=0)
        with pytest.raises(ValidationError):
            CreateInvitationRequest(token_type="other", max_uses=5)
