"""
Test billing when disabled.

Verifies graceful degradation when STRIPE_SECRET_KEY not configured.
"""
import pytest
from fastapi.testclient import TestClient

from vmdash.features.billing.provider import BillingWebhookError
from vmdash.features.billing.service import billing_enabled, get_provider, process_webhook_event
from vmdash.main import app


def test_billing_disabled_when_no_stripe_key():
    """Billing should be disabled when STRIPE_SECRET_KEY not set."""
    assert billing_enabled() is False


def test_get_provider_returns_none_when_disabled():
    assert get_provider() is None


def test_process_webhook_raises_when_disabled():
    with pytest.raises(BillingWebhookError):
        process_webhook_event({}, b"{}")


@pytest.mark.parametrize("path", ["/api/billing/subscribe", "/api/billing/cancel", "/api/billing/reactivate", "/api/billing/webhook"])
def test_mutating_endpoints_answer_billing_disabled(path):
    client = TestClient(app)
    resp = client.post(path, headers={"X-User-Id": "user_alice"}, json={"planId": "kd_drop", "quantity": 1})
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "billing_disabled"


def test_quote_and_status_work_without_billing():
    client = TestClient(app)
    quote = client.post("/api/billing/quote", json={"planId": "hour_booster", "quantity": 2})
    assert quote.status_code == 200

    status = client.get("/api/billing/status", headers={"X-User-Id": "user_alice"})
    assert status.status_code == 200
    assert status.json()["billingEnabled"] is False
    assert status.json()["state"] == "none"
