"""Tests for the error envelope format and the operational endpoints.

Every failure renders as:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": <object|array|null>},
    "request_id": "<correlation id>"
}
"""

import base64

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from authcore.api.error_handling import _error_code_for_status, _error_response
from authcore.api.schemas import ErrorBody
from authcore.app import create_app
from authcore.service.errors import ErrorKind, Failure, ServiceError
from authcore.service.runtime import Runtime


def _basic(user: str, password: str) -> dict:
    token = base64.b64encode(f"{user}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_known_codes_accepted(self):
        for kind in ErrorKind:
            assert ErrorBody(code=kind.value, message="m").code == kind.value

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="m")


class TestStatusMapping:
    def test_mapped_statuses(self):
        assert _error_code_for_status(401) == "UNAUTHORIZED"
        assert _error_code_for_status(404) == "NOT_FOUND"
        assert _error_code_for_status(429) == "RATE_LIMIT_EXCEEDED"

    def test_unmapped_statuses_fall_back(self):
        assert _error_code_for_status(418) == "BAD_REQUEST"
        assert _error_code_for_status(503) == "INTERNAL_ERROR"

    def test_error_response_shape(self):
        response = _error_response(404, "missing", {"id": "x"})

        assert response.status_code == 404
        assert b'"status":"error"' in response.body
        assert b'"code":"NOT_FOUND"' in response.body


class TestServiceErrorFromFailure:
    """Tests for turning failed outcomes into HTTP errors."""

    def test_kind_selects_status(self):
        assert ServiceError.from_failure(Failure(ErrorKind.USER_EXISTS, "dup")).status_code == 409
        assert ServiceError.from_failure(Failure(ErrorKind.CSRF_INVALID, "csrf")).status_code == 403
        assert ServiceError.from_failure(Failure(ErrorKind.LOGIN_LOCKED, "locked")).status_code == 429

    def test_status_override_keeps_code(self):
        error = ServiceError.from_failure(Failure(ErrorKind.INVALID_TOKEN, "bad"), status_code=400)

        assert error.status_code == 400
        assert error.error_code == "INVALID_TOKEN"

    def test_retry_after_becomes_header(self):
        error = ServiceError.from_failure(Failure(ErrorKind.LOGIN_LOCKED, "locked", retry_after=0))

        assert error.headers == {"Retry-After": "1"}


class TestHttpEnvelope:
    """Tests for envelopes produced by the running application."""

    def test_unknown_route_is_not_found(self, client):
        response = client.get("/v1/does-not-exist")

        assert response.status_code == 404
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "NOT_FOUND"
        assert body["request_id"] == response.headers["X-Request-ID"]

    def test_malformed_json_is_validation_error(self, client):
        response = client.post(
            "/v1/auth/login", content=b"{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_missing_fields_listed(self, client):
        response = client.post("/v1/auth/login", json={})

        details = response.json()["error"]["details"]
        assert {d["field"] for d in details} == {"email", "password"}

    def test_request_id_is_echoed(self, client):
        response = client.get("/v1/me", headers={"X-Request-ID": "trace-123"})

        assert response.headers["X-Request-ID"] == "trace-123"
        assert response.json()["request_id"] == "trace-123"

    def test_security_headers_present(self, client):
        response = client.get("/healthz")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Cache-Control"] == "no-store"

    def test_unhandled_exception_is_generic(self, runtime):
        """Unexpected errors hide their message behind INTERNAL_ERROR."""
        app = create_app(runtime=runtime)

        @app.get("/boom")
        async def boom():
            raise RuntimeError("secret internals")

        response = TestClient(app, raise_server_exceptions=False).get("/boom")

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "INTERNAL_ERROR"
        assert "secret" not in error["message"]

    def test_rate_limit_envelope(self, settings, memory_store, clock):
        """The request past the limit is refused with rate headers and Retry-After."""
        limited_settings = settings.model_copy(update={"verify_rate_limit": 2})
        runtime = Runtime(limited_settings, store=memory_store, clock=clock)
        client = TestClient(create_app(runtime=runtime), raise_server_exceptions=False)
        try:
            statuses = [
                client.post("/v1/auth/verify-email", json={"token": "t" * 40}).status_code
                for _ in range(2)
            ]
            limited = client.post("/v1/auth/verify-email", json={"token": "t" * 40})
        finally:
            runtime.auth.close()

        assert statuses == [400, 400]
        assert limited.status_code == 429
        assert limited.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
        assert limited.headers["X-RateLimit-Limit"] == "2"
        assert limited.headers["X-RateLimit-Remaining"] == "0"
        assert int(limited.headers["Retry-After"]) >= 1


class TestOperationalEndpoints:
    """Tests for the health and metrics endpoints."""

    def test_health_reports_components(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["redis"]["status"] == "not_configured"

    def test_metrics_requires_basic_auth(self, client):
        anonymous = client.get("/metrics")
        wrong = client.get("/metrics", headers=_basic("ops", "guess"))

        assert anonymous.status_code == 401
        assert anonymous.headers["WWW-Authenticate"].startswith("Basic")
        assert anonymous.json()["error"]["code"] == "UNAUTHORIZED"
        assert wrong.status_code == 401

    def test_metrics_non_ascii_credentials_unauthorized(self, client):
        response = client.get("/metrics", headers={"Authorization": "Basic b3BzOé".encode("latin-1")})

        assert response.status_code == 401

    def test_metrics_text(self, client):
        client.get("/healthz")

        response = client.get("/metrics", headers=_basic("ops", "ops-secret"))

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert 'authcore_info{version="0.1.0"} 1' in response.text
        assert "authcore_cache_available 0" in response.text
        assert 'authcore_http_responses_total{status="200"}' in response.text
