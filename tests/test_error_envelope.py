"""Tests for the error envelope format and exception handlers.

Error responses use the stable envelope:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from hidauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    oauth_error_response,
    register_exception_handlers,
)
from hidauth.api.routes import _http_error
from hidauth.api.schemas import Envelope, ErrorBody
from hidauth.service.errors import (
    InvalidClientAuth,
    InvalidCredentials,
    InvalidGrant,
    TooManyAttempts,
    TransientStoreError,
)
from hidauth.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="invalid email or password")
        assert error.details is None

    def test_details_accept_list(self):
        error = ErrorBody(code="validation_error", message="bad", details=[{"field": "email"}])
        assert error.details == [{"field": "email"}]

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    @pytest.mark.parametrize("code", ["invalid_request", "invalid_grant", "invalid_client"])
    def test_oauth_codes_accepted(self, code):
        assert ErrorBody(code=code, message="x").code == code


class TestStatusMapping:
    def test_every_status_has_a_valid_code(self):
        for status, code in _STATUS_TO_CODE.items():
            assert ErrorBody(code=code, message=str(status)).code == code

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_shape(self):
        response = _error_response(404, "missing", {"id": "x"})
        body = json.loads(response.body)
        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {"code": "not_found", "message": "missing", "details": {"id": "x"}}
        assert body["request_id"]


class TestOAuthErrorResponse:
    def test_invalid_grant_body(self):
        response = oauth_error_response(InvalidGrant("invalid authorization code"))
        assert response.status_code == 400
        assert json.loads(response.body) == {
            "error": "invalid_grant",
            "error_description": "invalid authorization code",
        }
        assert response.headers["cache-control"] == "no-store"

    def test_invalid_client_challenges(self):
        response = oauth_error_response(InvalidClientAuth("invalid client_secret"))
        assert response.status_code == 401
        assert response.headers["www-authenticate"].startswith("Basic")


@pytest.fixture
def error_client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/credentials")
    async def credentials():
        raise InvalidCredentials()

    @app.get("/locked")
    async def locked():
        raise TooManyAttempts()

    @app.get("/store-down")
    async def store_down():
        raise TransientStoreError()

    @app.get("/duplicate")
    async def duplicate():
        raise ConstraintViolation("email already exists", {"field": "email"}, constraint="account_email_key")

    @app.get("/http")
    async def http():
        raise _http_error("forbidden", "nope", status_code=403, details={"why": "test"})

    @app.get("/boom")
    async def boom():
        raise RuntimeError("kaboom")

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_service_error(self, error_client):
        response = error_client.get("/credentials")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"
        assert response.json()["error"]["message"] == "invalid email or password"

    def test_lockout(self, error_client):
        response = error_client.get("/locked")
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"

    def test_transient_store_error_is_retryable(self, error_client):
        response = error_client.get("/store-down")
        assert response.status_code == 503
        assert response.headers["retry-after"] == "1"
        assert response.json()["error"]["code"] == "service_unavailable"

    def test_constraint_violation_is_conflict(self, error_client):
        response = error_client.get("/duplicate")
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {
            "field": "email",
            "constraint": "account_email_key",
        }

    def test_http_error_envelope(self, error_client):
        response = error_client.get("/http")
        assert response.status_code == 403
        assert response.json()["error"] == {
            "code": "forbidden",
            "message": "nope",
            "details": {"why": "test"},
        }

    def test_router_404(self, error_client):
        response = error_client.get("/missing")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_unhandled_exception(self, error_client):
        response = error_client.get("/boom")
        assert response.status_code == 500
        assert response.json()["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")
