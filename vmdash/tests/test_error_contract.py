"""Tests for normalized error responses."""

from fastapi import FastAPI
from fastapi.testclient import TestClient

from vmdash.main import app
from vmdash.core.errors import (
    AlreadyInProgressError,
    AppError,
    CollaboratorUnavailableError,
    app_error_handler,
    unhandled_exception_handler,
)
from vmdash.core.locks import billing_locks
from vmdash.core.middleware.request_id import RequestIdMiddleware


def test_validation_error_has_standard_shape():
    client = TestClient(app)
    resp = client.post("/api/billing/quote", json={"planId": "hour_booster", "quantity": -3})
    assert resp.status_code == 400
    body = resp.json()
    rid = resp.headers.get("x-request-id")
    assert body["error"]["code"] == "invalid_quantity"
    assert body["error"]["request_id"] == rid
    assert body["detail"] == body["error"]["message"]


def test_incoming_request_id_is_echoed():
    client = TestClient(app)
    resp = client.post(
        "/api/billing/quote",
        json={"planId": "hour_booster", "quantity": 99},
        headers={"x-request-id": "req-abc"},
    )
    assert resp.headers["x-request-id"] == "req-abc"
    assert resp.json()["error"]["request_id"] == "req-abc"


def test_conflict_when_billing_change_in_flight(mock_stripe_provider, save_sub):
    save_sub()
    client = TestClient(app)
    with billing_locks.hold("user_alice"):
        resp = client.post(
            "/api/billing/subscribe",
            headers={"X-User-Id": "user_alice"},
            json={"planId": "kd_drop", "quantity": 2},
        )
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "already_in_progress"
    mock_stripe_provider.upgrade_subscription.assert_not_called()


def test_retryable_flag_on_collaborator_errors():
    test_app = FastAPI()
    test_app.add_middleware(RequestIdMiddleware)
    test_app.add_exception_handler(AppError, app_error_handler)

    @test_app.get("/flaky")
    async def flaky():
        raise CollaboratorUnavailableError("Billing provider did not respond in time")

    @test_app.get("/busy")
    async def busy():
        raise AlreadyInProgressError("busy")

    client = TestClient(test_app)
    flaky_resp = client.get("/flaky")
    assert flaky_resp.status_code == 503
    assert flaky_resp.json()["error"]["retryable"] is True

    busy_resp = client.get("/busy")
    assert busy_resp.status_code == 409
    assert "retryable" not in busy_resp.json()["error"]


def test_unhandled_exception_is_normalized():
    test_app = FastAPI()
    test_app.add_middleware(RequestIdMiddleware)
    test_app.add_exception_handler(Exception, unhandled_exception_handler)

    @test_app.get("/boom")
    async def boom():
        raise RuntimeError("secret detail")

    client = TestClient(test_app, raise_server_exceptions=False)
    resp = client.get("/boom")
    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "internal_error"
    assert "secret detail" not in resp.text
