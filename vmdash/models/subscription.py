"""
vmdash/models/subscription.py

Subscription record and its derived state.

The record is what we persist; the state is recomputed from it on every
read and never stored.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class SubscriptionState(str, Enum):
    """Classification of a subscription at a point in time."""
    NONE = "none"
    ACTIVE = "active"
    CANCELLING = "cancelling"
    EXPIRED = "expired"


class Subscription(BaseModel):
    """
    Subscription associates one account with a plan and VM count.

    provider_subscription_ref is set only for provider-backed (recurring)
    subscriptions. Admin grants and expired subscriptions carry none, so
    cancel/reactivate are unavailable for them.
    """
    model_config = ConfigDict(frozen=True)

    account_id: str
    plan_id: Optional[str] = None
    vm_count: int = Field(default=0, ge=0)
    expires_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    provider_subscription_ref: Optional[str] = None
    provider_customer_ref: Optional[str] = None

    @property
    def is_provider_backed(self) -> bool:
        return bool(self.provider_subscription_ref)
