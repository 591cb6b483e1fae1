import importlib

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient
from pydantic import ValidationError

from edugate import app as app_module
from edugate.api import schemas
from edugate.api.access import extract_resource_id


@pytest.fixture
def fresh_app(monkeypatch):
    """Reload the app module to respect env overrides."""

    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
    monkeypatch.setenv("ENABLE_HSTS", "true")
    reloaded = importlib.reload(app_module)
    try:
        yield reloaded.app
    finally:
        monkeypatch.delenv("ENABLE_HSTS", raising=False)
        importlib.reload(app_module)


def test_security_headers_and_health(fresh_app):
    client = TestClient(fresh_app, base_url="https://testserver")
    response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "version": app_module.__version__}
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Strict-Transport-Security"].startswith("max-age=")
    assert "no-store" in response.headers["Cache-Control"]
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
    assert response.headers["X-Request-ID"]


def test_no_hsts_over_plain_http(fresh_app):
    response = TestClient(fresh_app).get("/healthz")
    assert "Strict-Transport-Security" not in response.headers


def test_allowed_origins_default(monkeypatch):
    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
    reloaded = importlib.reload(app_module)
    origins = reloaded._allowed_origins()
    assert "http://localhost" in origins
    assert "http://127.0.0.1:5173" in origins


def test_allowed_origins_override(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://example.com, https://demo.local")
    try:
        reloaded = importlib.reload(app_module)
        assert reloaded._allowed_origins() == ["https://example.com", "https://demo.local"]
    finally:
        monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
        importlib.reload(app_module)


class TestRequestSchemas:
    def test_register_normalizes_email(self):
        body = schemas.RegisterRequest(
            email="  Student@Example.COM ", password="LongEnough1"
        )
        assert body.email == "student@example.com"
        assert body.role is None

    def test_register_strips_zero_width_characters(self):
        body = schemas.RegisterRequest(
            email="stu\u200bdent@example.com",
            password="LongEnough1",
            display_name="\u200dAda ",
        )
        assert body.email == "student@example.com"
        assert body.display_name == "Ada"

    @pytest.mark.parametrize(
        "email",
        ["plain", "@example.com", "user@", "user@localhost", "us er@example.com"],
    )
    def test_register_rejects_bad_email(self, email):
        with pytest.raises(ValidationError):
            schemas.RegisterRequest(email=email, password="LongEnough1")

    @pytest.mark.parametrize("password", ["short", "x" * 129])
    def test_register_rejects_bad_password_length(self, password):
        with pytest.raises(ValidationError):
            schemas.RegisterRequest(email="a@example.com", password=password)

    def test_register_rejects_unknown_role(self):
        with pytest.raises(ValidationError):
            schemas.RegisterRequest(
                email="a@example.com", password="LongEnough1", role="principal"
            )

    def test_token_length_is_bounded(self):
        with pytest.raises(ValidationError):
            schemas.TokenRefreshRequest(refresh_token="x" * (schemas.MAX_TOKEN_LENGTH + 1))

    def test_course_title_required(self):
        with pytest.raises(ValidationError):
            schemas.CourseCreateRequest(title="")


@pytest.fixture
def probe_client():
    """App whose endpoints echo the resource id the access layer would use."""
    app = FastAPI()

    @app.api_route("/things/{id}", methods=["GET", "POST"])
    async def by_id(request: Request, id: str):
        return {"resource_id": await extract_resource_id(request, "course")}

    @app.get("/courses/{course_id}/materials")
    async def by_typed_id(request: Request, course_id: str):
        return {"resource_id": await extract_resource_id(request, "course")}

    @app.api_route("/search", methods=["GET", "POST"])
    async def unscoped(request: Request):
        return {"resource_id": await extract_resource_id(request, "course")}

    return TestClient(app)


class TestExtractResourceId:
    def test_path_id_wins(self, probe_client):
        response = probe_client.post(
            "/things/from-path?course_id=from-query", json={"course_id": "from-body"}
        )
        assert response.json()["resource_id"] == "from-path"

    def test_typed_path_param(self, probe_client):
        response = probe_client.get("/courses/c-1/materials")
        assert response.json()["resource_id"] == "c-1"

    def test_body_before_query(self, probe_client):
        response = probe_client.post(
            "/search?course_id=from-query", json={"course_id": "from-body"}
        )
        assert response.json()["resource_id"] == "from-body"

    def test_query_fallback(self, probe_client):
        response = probe_client.get("/search?course_id=from-query")
        assert response.json()["resource_id"] == "from-query"

    def test_non_json_body_is_ignored(self, probe_client):
        response = probe_client.post(
            "/search?course_id=q",
            content=b"not json",
            headers={"Content-Type": "text/plain"},
        )
        assert response.json()["resource_id"] == "q"

    def test_missing_everywhere(self, probe_client):
        response = probe_client.post("/search", json={"other": "x"})
        assert response.json()["resource_id"] is None
