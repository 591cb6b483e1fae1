"""Tests for the error envelope format and exception handlers.

Error responses share one shape:
{
    "status": "error",
    "data": null,
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError

from edugate.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from edugate.api.schemas import Envelope, ErrorBody
from edugate.logging import correlation_id_var
from edugate.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ServerError,
)
from edugate.storage.errors import ConstraintViolation


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_accepts_list_details(self):
        error = ErrorBody(
            code="validation_error",
            message="multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_error_body_rejects_unknown_code(self):
        """Only the stable codes are accepted."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="no")

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_envelope_ok_status(self):
        envelope = Envelope(status="ok", data={"user_id": "123"})
        assert envelope.status == "ok"
        assert envelope.error is None

    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_request_id_follows_correlation_id(self):
        token = correlation_id_var.set("req-abc")
        try:
            assert Envelope(status="ok").request_id == "req-abc"
        finally:
            correlation_id_var.reset(token)

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestErrorCodeMapping:
    """HTTP status to stable error code."""

    @pytest.mark.parametrize(
        "status_code,expected",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (500, "server_error"),
        ],
    )
    def test_status_maps_to_code(self, status_code, expected):
        assert _error_code_for_status(status_code) == expected

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_all_codes_covered(self):
        assert set(_STATUS_TO_CODE.values()) == {
            "unauthorized",
            "forbidden",
            "not_found",
            "validation_error",
            "conflict",
            "server_error",
        }


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "invalid credentials")

        assert response.status_code == 401
        data = json.loads(response.body.decode())
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["message"] == "invalid credentials"
        assert data["error"]["details"] is None
        assert data["data"] is None
        assert data["request_id"]

    def test_error_response_custom_code_and_headers(self):
        response = _error_response(
            400, "custom", code="conflict", headers={"X-Test": "1"}
        )
        data = json.loads(response.body.decode())
        assert data["error"]["code"] == "conflict"
        assert response.headers["X-Test"] == "1"


class _Payload(BaseModel):
    count: int


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/unauthorized")
    async def unauthorized():
        raise AuthenticationError("invalid or expired token")

    @app.get("/forbidden")
    async def forbidden():
        raise ForbiddenError("access denied", detail={"required": ["own"]})

    @app.get("/missing")
    async def missing():
        raise NotFoundError("resource not found")

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("email already registered", detail={"field": "email"})

    @app.get("/bad-request")
    async def bad_request():
        raise BadRequestError("current password is incorrect")

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("already enrolled", {"field": "course_id"})

    @app.get("/server-error")
    async def server_error():
        raise ServerError("store unavailable")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("kaboom")

    @app.post("/validate")
    async def validate(body: _Payload):
        return {"count": body.count}

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    def test_authentication_error_is_401_with_challenge(self, client):
        response = client.get("/unauthorized")
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert response.json()["error"]["code"] == "unauthorized"

    def test_forbidden_carries_required_policies(self, client):
        response = client.get("/forbidden")
        body = response.json()
        assert response.status_code == 403
        assert body["error"]["code"] == "forbidden"
        assert body["error"]["details"] == {"required": ["own"]}

    def test_not_found(self, client):
        response = client.get("/missing")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_conflict(self, client):
        response = client.get("/conflict")
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "email"}

    def test_bad_request_is_validation_error(self, client):
        response = client.get("/bad-request")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_constraint_violation_maps_to_conflict(self, client):
        response = client.get("/constraint")
        assert response.status_code == 409
        assert response.json()["error"] == {
            "code": "conflict",
            "message": "already enrolled",
            "details": {"field": "course_id"},
        }

    def test_server_error_is_500(self, client):
        response = client.get("/server-error")
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        assert "WWW-Authenticate" not in response.headers

    def test_unhandled_exception_is_opaque_500(self, client):
        response = client.get("/boom")
        body = response.json()
        assert response.status_code == 500
        assert body["error"]["code"] == "server_error"
        assert "kaboom" not in body["error"]["message"]

    def test_request_validation_is_422_envelope(self, client):
        response = client.post("/validate", json={"count": "many"})
        body = response.json()
        assert response.status_code == 422
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert isinstance(body["error"]["details"], list)
        assert body["error"]["details"][0]["loc"] == ["body", "count"]

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/nope")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
