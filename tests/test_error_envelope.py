"""Tests for the error envelope and exception handlers."""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from gatehouse.api.error_handling import register_exception_handlers
from gatehouse.api.schemas import Envelope, ErrorBody
from gatehouse.logging import set_correlation_id
from gatehouse.service.errors import (
    ConflictError,
    NotFoundError,
    ServerError,
    ValidationError,
    user_message,
)
from gatehouse.storage.errors import ConstraintViolation


@pytest.fixture
def app():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/api/validation")
    async def validation():
        raise ValidationError("Name is required", fields={"name": "Name is required"})

    @app.get("/api/conflict")
    async def conflict():
        raise ConflictError("Email already registered")

    @app.get("/api/missing")
    async def missing():
        raise NotFoundError("User not found")

    @app.get("/api/internal")
    async def internal():
        raise ServerError("db password=hunter2 leaked")

    @app.get("/api/constraint")
    async def constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/api/boom")
    async def boom():
        raise RuntimeError("secret stack detail")

    @app.get("/page/conflict")
    async def page_conflict():
        raise ConflictError("Email already registered")

    return app


@pytest.fixture
def client(app):
    return TestClient(app, raise_server_exceptions=False)


class TestEnvelopeModels:
    def test_rejects_unknown_error_codes(self):
        with pytest.raises(ValueError):
            ErrorBody(code="teapot", message="no")

    def test_request_id_uses_correlation_id(self):
        set_correlation_id("req-123")
        envelope = Envelope(status="ok", data={"a": 1})
        assert envelope.request_id == "req-123"


class TestServiceErrors:
    def test_validation_error_carries_fields(self, client):
        response = client.get("/api/validation")
        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "validation_error",
            "message": "Name is required",
            "details": {"name": "Name is required"},
        }

    def test_conflict_and_not_found(self, client):
        assert client.get("/api/conflict").json()["error"]["code"] == "conflict"
        missing = client.get("/api/missing")
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "not_found"

    def test_internal_errors_hide_message(self, client):
        """5xx service errors never echo their message to the caller."""
        response = client.get("/api/internal")
        assert response.status_code == 500
        assert "hunter2" not in response.text
        assert response.json()["error"]["message"] == (
            "An internal error occurred. Please try again later."
        )

    def test_constraint_violation_is_409(self, client):
        response = client.get("/api/constraint")
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "email"}

    def test_uncaught_exception_is_generic_500(self, client):
        response = client.get("/api/boom")
        assert response.status_code == 500
        assert "secret stack detail" not in response.text
        assert response.json()["error"]["code"] == "server_error"

    def test_user_message_helper(self):
        assert user_message(ConflictError("Taken")) == "Taken"
        assert user_message(ServerError("boom")) != "boom"
        assert user_message(RuntimeError("boom")) != "boom"


class TestBrowserErrors:
    def test_browser_gets_error_page(self, client):
        response = client.get("/page/conflict")
        assert response.status_code == 409
        assert response.headers["content-type"].startswith("text/html")
        assert "Email already registered" in response.text

    def test_unknown_route_page_and_json(self, client):
        page = client.get("/nowhere")
        assert page.status_code == 404
        assert "Page not found" in page.text
        api = client.get("/nowhere", headers={"Accept": "application/json"})
        assert api.status_code == 404
        assert api.json()["error"]["code"] == "not_found"
