"""Test billing HTTP surface with a mocked Stripe provider."""
from datetime import timedelta

from fastapi.testclient import TestClient

from vmdash.features.billing.provider import BillingWebhookError, CheckoutSession, ProviderSubscription
from vmdash.features.subscriptions.service import get_subscription
from vmdash.main import app


HEADERS = {"X-User-Id": "user_alice"}


def test_plans_listing():
    client = TestClient(app)
    resp = client.get("/api/billing/plans")
    assert resp.status_code == 200
    plans = resp.json()["plans"]
    assert [p["id"] for p in plans] == ["hour_booster", "kd_drop", "dual_mode"]
    assert plans[0]["breakpoints"][0] == {"quantity": 1, "perUnitPrice": "12"}
    assert plans[0]["maxQuantity"] == 20


def test_quote_interpolated():
    client = TestClient(app)
    resp = client.post("/api/billing/quote", json={"planId": "hour_booster", "quantity": 3})
    assert resp.status_code == 200
    assert resp.json() == {"planId": "hour_booster", "quantity": 3, "perUnitPrice": "9.67", "totalPrice": "29"}


def test_quote_not_quotable_routes_to_contact_sales():
    client = TestClient(app)
    resp = client.post("/api/billing/quote", json={"planId": "hour_booster", "quantity": 25})
    assert resp.status_code == 422
    error = resp.json()["error"]
    assert error["code"] == "not_quotable"
    assert error["details"]["route"] == "contact_sales"


def test_quote_invalid_quantity_and_plan():
    client = TestClient(app)
    bad_qty = client.post("/api/billing/quote", json={"planId": "hour_booster", "quantity": 0})
    assert bad_qty.status_code == 400
    assert bad_qty.json()["error"]["code"] == "invalid_quantity"

    bad_plan = client.post("/api/billing/quote", json={"planId": "gold", "quantity": 1})
    assert bad_plan.status_code == 400
    assert bad_plan.json()["error"]["code"] == "validation_error"


def test_status_requires_identity():
    client = TestClient(app)
    resp = client.get("/api/billing/status")
    assert resp.status_code == 401


def test_status_reports_cancelling(save_sub):
    save_sub(cancel=True, vm_count=4)
    client = TestClient(app)
    body = client.get("/api/billing/status", headers=HEADERS).json()
    assert body["plan"] == "hour_booster"
    assert body["quantity"] == 4
    assert body["cancelAtPeriodEnd"] is True
    assert body["state"] == "cancelling"
    assert body["recurring"] is True


def test_subscribe_new_returns_redirect(mock_stripe_provider):
    mock_stripe_provider.create_checkout_session.return_value = CheckoutSession(
        session_ref="cs_1", url="https://checkout.stripe.com/c/cs_1"
    )
    client = TestClient(app)
    resp = client.post("/api/billing/subscribe", headers=HEADERS, json={"planId": "kd_drop", "quantity": 2})

    assert resp.status_code == 200
    body = resp.json()
    assert body["action"] == "new_subscription"
    assert body["redirectUrl"] == "https://checkout.stripe.com/c/cs_1"
    assert body["quote"]["totalPrice"] == "28"


def test_subscribe_upgrade(mock_stripe_provider, save_sub, now):
    save_sub()
    mock_stripe_provider.upgrade_subscription.return_value = ProviderSubscription(
        subscription_ref="sub_123",
        customer_ref="cus_123",
        plan_id="dual_mode",
        vm_count=5,
        current_period_end=now + timedelta(days=30),
        cancel_at_period_end=False,
    )
    client = TestClient(app)
    resp = client.post("/api/billing/subscribe", headers=HEADERS, json={"planId": "dual_mode", "quantity": 5})

    assert resp.status_code == 200
    assert resp.json()["action"] == "upgrade"
    assert "redirectUrl" not in resp.json()
    assert get_subscription("user_alice").plan_id == "dual_mode"


def test_subscribe_invalid_selection_never_calls_stripe(mock_stripe_provider):
    client = TestClient(app)
    resp = client.post("/api/billing/subscribe", headers=HEADERS, json={"planId": "kd_drop", "quantity": 40})
    assert resp.status_code == 422
    mock_stripe_provider.create_checkout_session.assert_not_called()


def test_cancel_without_recurring_subscription(mock_stripe_provider):
    client = TestClient(app)
    resp = client.post("/api/billing/cancel", headers=HEADERS)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_cancel_and_reactivate(mock_stripe_provider, save_sub, now):
    save_sub()

    def _set_cancel(ref, cancel):
        return ProviderSubscription(
            subscription_ref=ref,
            customer_ref="cus_123",
            plan_id="hour_booster",
            vm_count=2,
            current_period_end=now + timedelta(days=30),
            cancel_at_period_end=cancel,
        )

    mock_stripe_provider.set_cancel_at_period_end.side_effect = _set_cancel
    client = TestClient(app)

    cancelled = client.post("/api/billing/cancel", headers=HEADERS)
    assert cancelled.status_code == 200
    assert cancelled.json()["state"] == "cancelling"

    reactivated = client.post("/api/billing/reactivate", headers=HEADERS)
    assert reactivated.status_code == 200
    assert reactivated.json()["state"] == "active"


def test_webhook_bad_signature_is_400(mock_stripe_provider):
    mock_stripe_provider.handle_webhook.side_effect = BillingWebhookError("Invalid signature")
    client = TestClient(app)
    resp = client.post("/api/billing/webhook", content=b"{}", headers={"stripe-signature": "bad"})
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "Invalid signature"
