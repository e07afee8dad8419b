"""
Billing service.

Coordinates:
- Whether billing is enabled (Stripe configured)
- Converting the provider's subscription view into the local record
- Webhook processing (idempotent on provider event id)

All Stripe-specific code is in stripe_provider.py.
"""
import os
import hashlib
from typing import Optional, Dict
from datetime import datetime
import logging

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from vmdash.core.config import settings
from vmdash.core.database import get_db_session, billing_events
from vmdash.core.logging import log_event
from vmdash.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
    ProviderSubscription,
)
from vmdash.features.billing.stripe_provider import StripeProvider
from vmdash.features.subscriptions.service import (
    get_subscription,
    get_subscription_by_provider_ref,
    save_subscription,
)
from vmdash.features.subscriptions.state import utc_now
from vmdash.models.subscription import Subscription


logger = logging.getLogger(__name__)

# Provider statuses that mean the recurring relationship is over
ENDED_STATUSES = ("canceled", "incomplete_expired")


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(os.getenv("STRIPE_SECRET_KEY") or settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


def subscription_from_provider(
    account_id: str,
    provider_sub: ProviderSubscription,
    current: Optional[Subscription] = None,
) -> Subscription:
    """
    Build the local record from the provider's authoritative view.

    Plan and VM count fall back to the current record only when the provider
    carries no metadata for them (e.g. a subscription edited outside the app).
    """
    plan_id = provider_sub.plan_id or (current.plan_id if current else None)
    vm_count = provider_sub.vm_count or (current.vm_count if current else 0)
    customer_ref = provider_sub.customer_ref or (current.provider_customer_ref if current else None)
    return Subscription(
        account_id=account_id,
        plan_id=plan_id,
        vm_count=vm_count,
        expires_at=provider_sub.current_period_end,
        cancel_at_period_end=provider_sub.cancel_at_period_end,
        provider_subscription_ref=provider_sub.subscription_ref,
        provider_customer_ref=customer_ref,
    )


def ended_subscription(
    current: Subscription,
    ended_at: Optional[datetime],
    customer_ref: Optional[str] = None,
) -> Subscription:
    """
    Record for a subscription the provider has ended.

    Plan and VM count are kept for display; the expiry moves to the end time
    and the provider ref is dropped, so cancel/reactivate are unavailable.
    """
    return Subscription(
        account_id=current.account_id,
        plan_id=current.plan_id,
        vm_count=current.vm_count,
        expires_at=ended_at or utc_now(),
        cancel_at_period_end=False,
        provider_subscription_ref=None,
        provider_customer_ref=customer_ref or current.provider_customer_ref,
    )


def apply_webhook_result(result: BillingWebhookResult) -> Optional[Subscription]:
    """
    Apply a parsed webhook to the local record.

    Returns:
        The saved record, or None if the event carries nothing to apply
    """
    provider_sub = result.subscription
    if provider_sub is None or not provider_sub.subscription_ref:
        return None

    existing = get_subscription_by_provider_ref(provider_sub.subscription_ref)
    account_id = result.account_id or (existing.account_id if existing else None)
    if not account_id:
        logger.warning(
            "[billing] webhook for unknown account",
            extra={"event_id": result.event_id, "event_type": result.event_type},
        )
        return None

    current = get_subscription(account_id)
    ended = (
        result.event_type == "customer.subscription.deleted"
        or provider_sub.status in ENDED_STATUSES
    )

    if ended:
        if current is None or current.provider_subscription_ref != provider_sub.subscription_ref:
            # Stale event for a subscription the account already replaced
            logger.info(
                "[billing] ignoring end of superseded subscription",
                extra={"account_id": account_id, "event_id": result.event_id},
            )
            return None
        record = ended_subscription(current, result.ended_at or provider_sub.current_period_end, provider_sub.customer_ref)
    else:
        record = subscription_from_provider(account_id, provider_sub, current)

    saved = save_subscription(record)
    logger.info(
        "[billing] webhook applied",
        extra={
            "account_id": account_id,
            "event_type": result.event_type,
            "plan_id": saved.plan_id,
            "vm_count": saved.vm_count,
        },
    )
    return saved


def process_webhook_event(
    headers: Dict[str, str],
    body: bytes,
    provider: Optional[BillingProvider] = None,
) -> BillingWebhookResult:
    """
    Process billing webhook event (idempotent).

    1. Verify signature
    2. Check idempotency (skip if already processed)
    3. Parse event
    4. Apply state changes
    5. Mark as processed

    Returns:
        BillingWebhookResult

    Raises:
        BillingWebhookError: If signature invalid or processing fails
    """
    provider = provider or get_provider()
    if not provider:
        raise BillingWebhookError("Billing not enabled")

    # Verify and parse webhook
    result = provider.handle_webhook(headers, body)

    # Compute payload hash for deduplication
    payload_hash = hashlib.sha256(body).hexdigest()

    try:
        with get_db_session() as session:
            existing = session.execute(
                select(billing_events.c.id, billing_events.c.processed).where(
                    billing_events.c.provider_event_id == result.event_id
                )
            ).fetchone()

            if existing and existing.processed:
                logger.info("[billing] duplicate webhook skipped", extra={"event_id": result.event_id})
                return result

            # A recorded but unprocessed event (earlier failure) is applied again
            if not existing:
                session.execute(
                    insert(billing_events).values(
                        provider_event_id=result.event_id,
                        event_type=result.event_type,
                        payload_hash=payload_hash,
                        processed=False,
                    )
                )
    except IntegrityError:
        # Race condition: another worker already recorded this event
        return result

    try:
        apply_webhook_result(result)

        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.provider_event_id == result.event_id)
                .values(processed=True, processed_at=utc_now())
            )
    except Exception as e:
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.provider_event_id == result.event_id)
                .values(error=str(e))
            )
        log_event(
            "error",
            "billing.webhook_failed",
            account_id=result.account_id,
            event_type=result.event_type,
            error_code=getattr(e, "code", type(e).__name__),
            extra={"event_id": result.event_id, "error": str(e)},
        )
        raise

    return result
