"""Test subscription classification."""
import pytest
from datetime import datetime, timedelta, timezone

from vmdash.features.subscriptions.state import classify, is_entitled
from vmdash.models.subscription import Subscription, SubscriptionState


NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _sub(**kwargs):
    values = {"account_id": "user_alice", "plan_id": "kd_drop", "vm_count": 1}
    values.update(kwargs)
    return Subscription(**values)


def test_missing_record_is_none():
    assert classify(None, NOW) == SubscriptionState.NONE


def test_no_plan_is_none_even_with_future_expiry():
    assert classify(_sub(plan_id=None, expires_at=NOW + timedelta(days=3)), NOW) == SubscriptionState.NONE


def test_null_expiry_is_active():
    """Admin grant / perpetual plan."""
    assert classify(_sub(expires_at=None), NOW) == SubscriptionState.ACTIVE
    assert classify(_sub(expires_at=None, cancel_at_period_end=True), NOW) == SubscriptionState.ACTIVE


def test_future_expiry_is_active():
    assert classify(_sub(expires_at=NOW + timedelta(days=1)), NOW) == SubscriptionState.ACTIVE


def test_cancel_flag_with_future_expiry_is_cancelling():
    sub = _sub(expires_at=NOW + timedelta(days=1), cancel_at_period_end=True)
    assert classify(sub, NOW) == SubscriptionState.CANCELLING


def test_past_expiry_overrides_cancel_flag():
    sub = _sub(expires_at=NOW - timedelta(days=1), cancel_at_period_end=True)
    assert classify(sub, NOW) == SubscriptionState.EXPIRED


def test_expiry_exactly_now_is_expired():
    assert classify(_sub(expires_at=NOW), NOW) == SubscriptionState.EXPIRED


def test_premium_expired_yesterday():
    sub = _sub(plan_id="dual_mode", expires_at=NOW - timedelta(days=1))
    assert classify(sub, NOW) == SubscriptionState.EXPIRED


def test_naive_datetimes_are_utc():
    naive_expiry = datetime(2025, 6, 1, 13, 0)
    assert classify(_sub(expires_at=naive_expiry), NOW) == SubscriptionState.ACTIVE
    assert classify(_sub(expires_at=naive_expiry), datetime(2025, 6, 1, 14, 0)) == SubscriptionState.EXPIRED


@pytest.mark.parametrize("cancel", [False, True])
def test_advancing_time_only_moves_toward_expired(cancel):
    expires = NOW + timedelta(hours=5)
    sub = _sub(expires_at=expires, cancel_at_period_end=cancel)
    states = [classify(sub, NOW + timedelta(hours=h)) for h in range(0, 10)]

    first_expired = states.index(SubscriptionState.EXPIRED)
    assert all(s == SubscriptionState.EXPIRED for s in states[first_expired:])
    assert all(s != SubscriptionState.EXPIRED for s in states[:first_expired])


def test_is_entitled():
    assert is_entitled(SubscriptionState.ACTIVE)
    assert is_entitled(SubscriptionState.CANCELLING)
    assert not is_entitled(SubscriptionState.EXPIRED)
    assert not is_entitled(SubscriptionState.NONE)
