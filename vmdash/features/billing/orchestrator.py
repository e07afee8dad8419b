"""
Subscription change orchestration.

Decides whether a subscribe request starts a new checkout or upgrades the
existing provider subscription, and serializes every billing mutation
(subscribe/upgrade, cancel, reactivate) per account.

The only suspension point is the provider call, which runs in a worker
thread bounded by BILLING_TIMEOUT_SECONDS. The local record is written only
from the provider's response, after the call returns. A timeout or provider
failure leaves the record untouched. On timeout the worker thread keeps
running, so the account lock stays held until it returns; a call that
completes at the provider after we gave up is reconciled by the next webhook.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional
import logging

from vmdash.core.config import settings
from vmdash.core.errors import CollaboratorUnavailableError, ValidationError
from vmdash.core.locks import AccountHold, AccountLockRegistry, billing_locks
from vmdash.features.billing.provider import BillingProvider, BillingProviderError
from vmdash.features.billing.service import subscription_from_provider
from vmdash.features.plans.catalog import PlanCatalog, get_catalog
from vmdash.features.pricing.service import Quote, quote
from vmdash.features.subscriptions.service import get_subscription, save_subscription
from vmdash.features.subscriptions.state import classify
from vmdash.models.subscription import Subscription, SubscriptionState


logger = logging.getLogger(__name__)


class SubscribeAction(str, Enum):
    NEW_SUBSCRIPTION = "new_subscription"
    UPGRADE = "upgrade"


@dataclass(frozen=True)
class SubscribeDecision:
    action: SubscribeAction
    quote: Quote


@dataclass
class SubscribeResult:
    action: SubscribeAction
    quote: Quote
    redirect_url: Optional[str] = None
    subscription: Optional[Subscription] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "action": self.action.value,
            "quote": self.quote.to_dict(),
        }
        if self.redirect_url:
            payload["redirectUrl"] = self.redirect_url
        return payload


def decide(
    current: Optional[Subscription],
    plan_id: str,
    quantity: object,
    now: Optional[datetime] = None,
    catalog: Optional[PlanCatalog] = None,
) -> SubscribeDecision:
    """
    New checkout or in-place upgrade.

    The request is priced first, so invalid plans and quantities raise
    before anything else happens.

    Raises:
        ValidationError / InvalidQuantityError / NotQuotableError from quote()
    """
    priced = quote(plan_id, quantity, catalog)
    state = classify(current, now)

    if (
        current is None
        or not current.is_provider_backed
        or state in (SubscriptionState.NONE, SubscriptionState.EXPIRED)
    ):
        return SubscribeDecision(SubscribeAction.NEW_SUBSCRIPTION, priced)
    return SubscribeDecision(SubscribeAction.UPGRADE, priced)


async def call_provider(
    fn: Callable[..., Any],
    *args: Any,
    timeout: Optional[float] = None,
    held: Optional[AccountHold] = None,
    **kwargs: Any,
) -> Any:
    """
    Run a blocking provider call off the event loop, bounded by a timeout.

    A timed-out call cannot be interrupted. If `held` is given, the account
    lock is detached to the running call and released when it returns.

    Raises:
        CollaboratorUnavailableError: timeout or provider failure (retryable)
    """
    limit = timeout if timeout is not None else settings.BILLING_TIMEOUT_SECONDS
    name = getattr(fn, "__name__", "provider_call")
    worker = asyncio.ensure_future(asyncio.to_thread(fn, *args, **kwargs))
    try:
        return await asyncio.wait_for(asyncio.shield(worker), timeout=limit)
    except asyncio.CancelledError:
        if held is not None:
            held.detach(worker)
        raise
    except asyncio.TimeoutError:
        if held is not None:
            held.detach(worker)
        logger.warning("[billing] provider call timed out", extra={"call": name, "timeout_seconds": limit})
        raise CollaboratorUnavailableError(
            "Billing provider did not respond in time",
            details={"call": name, "timeout_seconds": limit},
        )
    except BillingProviderError as e:
        logger.error("[billing] provider call failed", extra={"call": name, "error": str(e)})
        raise CollaboratorUnavailableError(f"Billing provider error: {e}", details={"call": name}) from e


def _checkout_urls() -> Dict[str, str]:
    base = settings.APP_BASE_URL.rstrip("/")
    return {
        "success_url": f"{base}/dashboard?checkout=success",
        "cancel_url": f"{base}/pricing?checkout=cancelled",
    }


async def subscribe_or_upgrade(
    account_id: str,
    plan_id: str,
    quantity: object,
    provider: BillingProvider,
    now: Optional[datetime] = None,
    locks: Optional[AccountLockRegistry] = None,
    timeout: Optional[float] = None,
) -> SubscribeResult:
    """
    Subscribe an account to plan x quantity, or upgrade its existing subscription.

    Returns:
        SubscribeResult; NEW_SUBSCRIPTION carries the checkout redirect URL,
        UPGRADE carries the record written back from the provider

    Raises:
        AlreadyInProgressError: another billing change for the account is in flight
        ValidationError / InvalidQuantityError / NotQuotableError: bad request (provider never called)
        CollaboratorUnavailableError: provider failed or timed out (record unchanged)
    """
    registry = locks or billing_locks
    with registry.hold(account_id) as held:
        current = get_subscription(account_id)
        decision = decide(current, plan_id, quantity, now)
        plan = get_catalog().get_plan(plan_id)
        priced = decision.quote

        logger.info(
            "[billing] subscribe requested",
            extra={
                "account_id": account_id,
                "plan_id": plan_id,
                "quantity": priced.quantity,
                "action": decision.action.value,
            },
        )

        if decision.action == SubscribeAction.NEW_SUBSCRIPTION:
            session = await call_provider(
                provider.create_checkout_session,
                account_id=account_id,
                plan_id=plan.plan_id,
                plan_name=plan.name,
                vm_count=priced.quantity,
                amount_minor_units=priced.total_minor_units,
                customer_ref=current.provider_customer_ref if current else None,
                timeout=timeout,
                held=held,
                **_checkout_urls(),
            )
            return SubscribeResult(decision.action, priced, redirect_url=session.url)

        updated = await call_provider(
            provider.upgrade_subscription,
            subscription_ref=current.provider_subscription_ref,
            plan_id=plan.plan_id,
            plan_name=plan.name,
            vm_count=priced.quantity,
            amount_minor_units=priced.total_minor_units,
            timeout=timeout,
            held=held,
        )
        saved = save_subscription(subscription_from_provider(account_id, updated, current), now)
        logger.info(
            "[billing] upgrade applied",
            extra={"account_id": account_id, "plan_id": saved.plan_id, "vm_count": saved.vm_count},
        )
        return SubscribeResult(decision.action, priced, subscription=saved)


def _require_recurring(current: Optional[Subscription]) -> Subscription:
    if current is None or not current.is_provider_backed:
        raise ValidationError("No recurring subscription for this account")
    return current


async def cancel(
    account_id: str,
    provider: BillingProvider,
    now: Optional[datetime] = None,
    locks: Optional[AccountLockRegistry] = None,
    timeout: Optional[float] = None,
) -> Subscription:
    """
    Cancel at period end. Access continues until expiry (state CANCELLING).

    Raises:
        ValidationError: no recurring subscription, or it has already expired
        AlreadyInProgressError / CollaboratorUnavailableError
    """
    registry = locks or billing_locks
    with registry.hold(account_id) as held:
        current = _require_recurring(get_subscription(account_id))
        if classify(current, now) == SubscriptionState.EXPIRED:
            raise ValidationError("Subscription has already expired")

        updated = await call_provider(
            provider.set_cancel_at_period_end,
            current.provider_subscription_ref,
            True,
            timeout=timeout,
            held=held,
        )
        saved = save_subscription(subscription_from_provider(account_id, updated, current), now)
        logger.info("[billing] cancellation scheduled", extra={"account_id": account_id})
        return saved


async def reactivate(
    account_id: str,
    provider: BillingProvider,
    now: Optional[datetime] = None,
    locks: Optional[AccountLockRegistry] = None,
    timeout: Optional[float] = None,
) -> Subscription:
    """
    Withdraw a pending cancellation.

    Raises:
        ValidationError: no recurring subscription, or it is not cancelling
        AlreadyInProgressError / CollaboratorUnavailableError
    """
    registry = locks or billing_locks
    with registry.hold(account_id) as held:
        current = _require_recurring(get_subscription(account_id))
        if classify(current, now) != SubscriptionState.CANCELLING:
            raise ValidationError("Subscription is not scheduled for cancellation")

        updated = await call_provider(
            provider.set_cancel_at_period_end,
            current.provider_subscription_ref,
            False,
            timeout=timeout,
            held=held,
        )
        saved = save_subscription(subscription_from_provider(account_id, updated, current), now)
        logger.info("[billing] subscription reactivated", extra={"account_id": account_id})
        return saved
