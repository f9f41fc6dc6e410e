"""Tests for the error response body and exception mapping.

Errors are returned as a flat body:
{
    "code": "<stable_code>",
    "message": "<human_readable>",
    "retryAfterSeconds": <int>   # 429 only
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from agriqual.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
    register_exception_handlers,
)
from agriqual.api.schemas import ErrorBody
from agriqual.service.errors import (
    ConflictError,
    InternalError,
    LockedError,
    NotFoundError,
)
from agriqual.storage.errors import ConstraintViolation


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Unauthorized")
        assert error.details is None
        assert error.retry_after_seconds is None

    def test_invalid_code_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_retry_after_serialized_camel_case(self):
        error = ErrorBody(code="rate_limited", message="Slow down", retry_after_seconds=30)
        dumped = error.model_dump(by_alias=True, exclude_none=True)
        assert dumped == {"code": "rate_limited", "message": "Slow down", "retryAfterSeconds": 30}


class TestStatusCodes:
    @pytest.mark.parametrize("status,code", sorted(_STATUS_TO_CODE.items()))
    def test_mapping(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"


class TestErrorResponse:
    def test_plain_body(self):
        resp = error_response(401, "Unauthorized")
        assert resp.status_code == 401
        assert json.loads(resp.body) == {"code": "unauthorized", "message": "Unauthorized"}
        assert "Retry-After" not in resp.headers

    def test_retry_after_header_and_body(self):
        resp = error_response(429, "Locked", retry_after_seconds=899)
        assert resp.headers["Retry-After"] == "899"
        assert json.loads(resp.body)["retryAfterSeconds"] == 899


class _Payload(BaseModel):
    email: str


@pytest.fixture
def error_client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/locked")
    async def locked():
        raise LockedError("Try later", 12.2)

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("An account with this email already exists")

    @app.get("/storage-conflict")
    async def storage_conflict():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/missing")
    async def missing():
        raise NotFoundError("User not found")

    @app.get("/internal")
    async def internal():
        raise InternalError("db password leaked in this message")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("unexpected")

    @app.post("/validate")
    async def validate(body: _Payload):
        return body

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    def test_locked_error(self, error_client):
        resp = error_client.get("/locked")
        assert resp.status_code == 429
        assert resp.json() == {
            "code": "rate_limited",
            "message": "Try later",
            "retryAfterSeconds": 13,
        }
        assert resp.headers["Retry-After"] == "13"

    def test_duplicate_registration_is_400(self, error_client):
        resp = error_client.get("/conflict")
        assert resp.status_code == 400
        assert resp.json()["code"] == "conflict"

    def test_storage_conflict_is_409(self, error_client):
        resp = error_client.get("/storage-conflict")
        assert resp.status_code == 409
        assert resp.json()["details"] == {"field": "email"}

    def test_not_found(self, error_client):
        resp = error_client.get("/missing")
        assert resp.status_code == 404
        assert resp.json() == {"code": "not_found", "message": "User not found"}

    def test_internal_message_hidden(self, error_client):
        resp = error_client.get("/internal")
        assert resp.status_code == 500
        assert resp.json() == {"code": "server_error", "message": "Server error"}

    def test_unhandled_exception(self, error_client):
        resp = error_client.get("/boom")
        assert resp.status_code == 500
        assert resp.json()["message"] == "Server error"

    def test_request_validation_is_400(self, error_client):
        resp = error_client.post("/validate", json={})
        assert resp.status_code == 400
        body = resp.json()
        assert body["code"] == "validation_error"
        assert body["message"].startswith("email:")
