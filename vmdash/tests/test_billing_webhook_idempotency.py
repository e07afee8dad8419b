"""
Test webhook processing.

Provider parsing is mocked; these cover idempotency and the local write-back.
"""
import logging
import pytest
from datetime import timedelta
from unittest.mock import Mock, patch
from sqlalchemy import select

from vmdash.core.database import get_db_session, billing_events, subscriptions
from vmdash.features.billing.provider import BillingWebhookResult, ProviderSubscription
from vmdash.features.billing.service import process_webhook_event
from vmdash.features.subscriptions.service import get_subscription, mark_vms_shutdown
from vmdash.features.subscriptions.state import classify
from vmdash.models.subscription import SubscriptionState


def _result(now, event_id="evt_1", event_type="checkout.session.completed", account_id="user_alice",
            ref="sub_123", plan_id="kd_drop", vm_count=3, days=30, cancel=False, status="active", ended_at=None):
    return BillingWebhookResult(
        event_id=event_id,
        event_type=event_type,
        account_id=account_id,
        subscription=ProviderSubscription(
            subscription_ref=ref,
            customer_ref="cus_123",
            plan_id=plan_id,
            vm_count=vm_count,
            current_period_end=now + timedelta(days=days),
            cancel_at_period_end=cancel,
            status=status,
        ),
        ended_at=ended_at,
    )


def _provider(result):
    provider = Mock()
    provider.handle_webhook.return_value = result
    return provider


def _event_row(event_id):
    with get_db_session() as session:
        return session.execute(
            select(billing_events).where(billing_events.c.provider_event_id == event_id)
        ).fetchone()


def test_checkout_completed_creates_subscription(now):
    process_webhook_event({}, b"{}", provider=_provider(_result(now)))

    sub = get_subscription("user_alice")
    assert sub.plan_id == "kd_drop"
    assert sub.vm_count == 3
    assert sub.provider_subscription_ref == "sub_123"
    assert sub.provider_customer_ref == "cus_123"
    assert classify(sub, now) == SubscriptionState.ACTIVE
    assert _event_row("evt_1").processed


def test_duplicate_event_is_skipped(now):
    process_webhook_event({}, b"{}", provider=_provider(_result(now, vm_count=3)))
    process_webhook_event({}, b"{}", provider=_provider(_result(now, vm_count=9)))

    assert get_subscription("user_alice").vm_count == 3


def test_subscription_updated_overwrites_record(now, save_sub):
    save_sub(plan_id="hour_booster", vm_count=1)

    result = _result(now, event_id="evt_2", event_type="customer.subscription.updated",
                     account_id=None, plan_id="dual_mode", vm_count=10, cancel=True)
    process_webhook_event({}, b"{}", provider=_provider(result))

    sub = get_subscription("user_alice")
    assert sub.plan_id == "dual_mode"
    assert sub.vm_count == 10
    assert classify(sub, now) == SubscriptionState.CANCELLING


def test_subscription_deleted_expires_and_drops_ref(now, save_sub):
    save_sub(plan_id="kd_drop", vm_count=2)
    ended = now - timedelta(minutes=5)

    result = _result(now, event_id="evt_3", event_type="customer.subscription.deleted",
                     account_id=None, status="canceled", ended_at=ended)
    process_webhook_event({}, b"{}", provider=_provider(result))

    sub = get_subscription("user_alice")
    assert sub.plan_id == "kd_drop"
    assert sub.expires_at == ended
    assert sub.provider_subscription_ref is None
    assert classify(sub, now) == SubscriptionState.EXPIRED


def test_deleted_event_for_superseded_subscription_is_ignored(now, save_sub):
    save_sub(ref="sub_new")

    result = _result(now, event_id="evt_4", event_type="customer.subscription.deleted",
                     account_id="user_alice", ref="sub_old", status="canceled", ended_at=now)
    process_webhook_event({}, b"{}", provider=_provider(result))

    sub = get_subscription("user_alice")
    assert sub.provider_subscription_ref == "sub_new"
    assert classify(sub, now) == SubscriptionState.ACTIVE


def test_event_for_unknown_account_is_recorded_without_write(now):
    result = _result(now, event_id="evt_5", event_type="customer.subscription.updated", account_id=None)
    process_webhook_event({}, b"{}", provider=_provider(result))

    assert _event_row("evt_5").processed
    with get_db_session() as session:
        assert session.execute(select(subscriptions)).fetchall() == []


def test_event_without_subscription_is_acknowledged(now):
    result = BillingWebhookResult(event_id="evt_6", event_type="invoice.paid", account_id=None, subscription=None)
    process_webhook_event({}, b"{}", provider=_provider(result))
    assert _event_row("evt_6").processed


def test_failed_event_is_retried_on_redelivery(now, caplog):
    provider = _provider(_result(now, event_id="evt_7"))

    with patch("vmdash.features.billing.service.save_subscription", side_effect=RuntimeError("db down")):
        with caplog.at_level(logging.ERROR, logger="vmdash"):
            with pytest.raises(RuntimeError):
                process_webhook_event({}, b"{}", provider=provider)

    record = next(r for r in caplog.records if r.getMessage() == "billing.webhook_failed")
    assert record.event_type == "checkout.session.completed"
    assert record.error_code == "RuntimeError"
    assert record.account_id == "user_alice"

    row = _event_row("evt_7")
    assert not row.processed
    assert row.error == "db down"

    process_webhook_event({}, b"{}", provider=provider)
    assert _event_row("evt_7").processed
    assert get_subscription("user_alice").vm_count == 3


def test_renewal_clears_sweep_marker(now, save_sub):
    save_sub(days=-1)
    mark_vms_shutdown("user_alice", now)

    result = _result(now, event_id="evt_8", event_type="customer.subscription.updated", account_id="user_alice")
    process_webhook_event({}, b"{}", provider=_provider(result))

    with get_db_session() as session:
        marker = session.execute(
            select(subscriptions.c.vms_shutdown_at).where(subscriptions.c.account_id == "user_alice")
        ).scalar_one()
    assert marker is None
