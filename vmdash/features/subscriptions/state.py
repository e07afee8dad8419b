"""
vmdash/features/subscriptions/state.py

Subscription classification.

classify() is total and deterministic: every record maps to exactly one
SubscriptionState for a given `now`. The state is never persisted; callers
recompute it on every read.
"""

from datetime import datetime, timezone
from typing import Optional

from vmdash.models.subscription import Subscription, SubscriptionState


def _as_utc(value: datetime) -> datetime:
    # Naive datetimes (e.g. SQLite round-trips) are UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def classify(subscription: Optional[Subscription], now: Optional[datetime] = None) -> SubscriptionState:
    """
    Classify a subscription record at `now`.

    Priority chain (first match wins):
    1. no record or no plan        -> NONE
    2. no expiry                   -> ACTIVE (perpetual / admin grant)
    3. expiry at or before now     -> EXPIRED (overrides cancel flag)
    4. cancel flag, expiry ahead   -> CANCELLING
    5. otherwise                   -> ACTIVE
    """
    if subscription is None or not subscription.plan_id:
        return SubscriptionState.NONE

    if subscription.expires_at is None:
        return SubscriptionState.ACTIVE

    current = _as_utc(now or utc_now())
    if _as_utc(subscription.expires_at) <= current:
        return SubscriptionState.EXPIRED

    if subscription.cancel_at_period_end:
        return SubscriptionState.CANCELLING

    return SubscriptionState.ACTIVE


def is_entitled(state: SubscriptionState) -> bool:
    """True while the account still holds paid-for (or granted) time."""
    return state in (SubscriptionState.ACTIVE, SubscriptionState.CANCELLING)
