"""Tests for the error envelope format and the exception handlers.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": ...},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from creatorauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
    register_exception_handlers,
)
from creatorauth.api.schemas import Envelope, ErrorBody
from creatorauth.service.errors import (
    AccountLockedError,
    AuthenticationError,
    NotFoundError,
    RateLimitedError,
    ServerError,
)
from creatorauth.storage.errors import ConstraintViolation


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="invalid credentials")
        assert error.details is None

    def test_unknown_code_rejected(self):
        """Only the stable code vocabulary is accepted."""
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_envelope_status_pattern(self):
        with pytest.raises(PydanticValidationError):
            Envelope(status="maybe")
        assert Envelope(status="ok", data={"a": 1}).request_id


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (423, "account_locked"),
            (429, "rate_limited"),
            (500, "server_error"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _STATUS_TO_CODE[status] == code
        assert _error_code_for_status(status) == code

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_shape(self):
        response = error_response(
            429, "too many requests", {"retry_after": 30}, headers={"Retry-After": "30"}
        )
        body = json.loads(response.body)
        assert response.status_code == 429
        assert response.headers["retry-after"] == "30"
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "rate_limited",
            "message": "too many requests",
            "details": {"retry_after": 30},
        }
        assert body["request_id"]


class _Payload(BaseModel):
    email: str


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/locked")
    async def locked():
        raise AccountLockedError("account locked", retry_after=600)

    @app.get("/locked-permanent")
    async def locked_permanent():
        raise AccountLockedError("account locked", permanent=True)

    @app.get("/limited")
    async def limited():
        raise RateLimitedError("too many requests", retry_after=42)

    @app.get("/unauthorized")
    async def unauthorized():
        raise AuthenticationError("invalid token")

    @app.get("/missing")
    async def missing():
        raise NotFoundError("session not found", detail={"session_id": "s-1"})

    @app.get("/server")
    async def server():
        raise ServerError("security check unavailable", detail={"operation": "x"})

    @app.get("/duplicate")
    async def duplicate():
        raise ConstraintViolation("duplicate", {"columns": ["email"]})

    @app.get("/http-envelope")
    async def http_envelope():
        raise HTTPException(
            status_code=403,
            detail={"status": "error", "error": {"code": "forbidden", "message": "admin only"}},
        )

    @app.get("/http-plain")
    async def http_plain():
        raise HTTPException(status_code=404, detail="nothing here")

    @app.get("/crash")
    async def crash():
        raise RuntimeError("boom")

    @app.post("/validate")
    async def validate(payload: _Payload):
        return payload

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_account_locked(self, client):
        response = client.get("/locked")
        body = response.json()
        assert response.status_code == 423
        assert response.headers["Retry-After"] == "600"
        assert body["error"]["code"] == "account_locked"
        assert body["error"]["details"] == {"permanent": False, "retry_after": 600}

    def test_permanent_lock_has_no_retry_after(self, client):
        response = client.get("/locked-permanent")
        assert response.status_code == 423
        assert "retry-after" not in response.headers
        assert response.json()["error"]["details"] == {"permanent": True}

    def test_rate_limited(self, client):
        response = client.get("/limited")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        assert response.json()["error"]["code"] == "rate_limited"

    def test_service_errors(self, client):
        assert client.get("/unauthorized").json()["error"]["code"] == "unauthorized"
        missing = client.get("/missing")
        assert missing.status_code == 404
        assert missing.json()["error"]["details"] == {"session_id": "s-1"}
        server = client.get("/server")
        assert server.status_code == 500
        assert server.json()["error"]["details"] == {"operation": "x"}

    def test_constraint_violation_is_conflict(self, client):
        response = client.get("/duplicate")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_http_exception_envelope_is_unwrapped(self, client):
        response = client.get("/http-envelope")
        assert response.status_code == 403
        assert response.json()["error"] == {
            "code": "forbidden",
            "message": "admin only",
            "details": None,
        }

    def test_plain_http_exception(self, client):
        response = client.get("/http-plain")
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "nothing here"

    def test_request_validation_is_400(self, client):
        response = client.post("/validate", json={})
        body = response.json()
        assert response.status_code == 400
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"][0]["loc"] == ["body", "email"]

    def test_unhandled_exception_hides_details(self, client):
        response = client.get("/crash")
        assert response.status_code == 500
        assert response.json()["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }
