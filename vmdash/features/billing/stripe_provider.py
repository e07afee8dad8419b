"""
Stripe billing provider implementation.

Implements BillingProvider protocol using Stripe API.
Prices are created per quote (monthly recurring, amount = quote total), so no
price ids need to be configured ahead of time.
"""
import json
import os
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import stripe

from vmdash.core.config import settings
from vmdash.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
    CheckoutSession,
    ProviderSubscription,
)


SUBSCRIPTION_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a Stripe object or plain dict."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, AttributeError):
        return default
    return default if value is None else value


def _timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _int_or_zero(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        currency: Optional[str] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to settings.STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to settings.STRIPE_WEBHOOK_SECRET)
            currency: ISO currency code (defaults to settings.STRIPE_CURRENCY)
        """
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY") or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET") or settings.STRIPE_WEBHOOK_SECRET
        self.currency = currency or settings.STRIPE_CURRENCY

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def _metadata(self, account_id: Optional[str], plan_id: str, vm_count: int) -> Dict[str, str]:
        metadata = {"plan_id": plan_id, "vm_count": str(vm_count)}
        if account_id:
            metadata["account_id"] = account_id
        return metadata

    def create_checkout_session(
        self,
        account_id: str,
        plan_id: str,
        plan_name: str,
        vm_count: int,
        amount_minor_units: int,
        success_url: str,
        cancel_url: str,
        customer_ref: Optional[str] = None,
    ) -> CheckoutSession:
        """Create Stripe checkout session with an inline monthly price."""
        metadata = self._metadata(account_id, plan_id, vm_count)
        params: Dict[str, Any] = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {"name": f"{plan_name} x {vm_count} VM"},
                        "unit_amount": amount_minor_units,
                        "recurring": {"interval": "month"},
                    },
                    "quantity": 1,
                }
            ],
            "client_reference_id": account_id,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        }
        if customer_ref:
            params["customer"] = customer_ref

        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")
        return CheckoutSession(session_ref=session.id, url=session.url)

    def upgrade_subscription(
        self,
        subscription_ref: str,
        plan_id: str,
        plan_name: str,
        vm_count: int,
        amount_minor_units: int,
    ) -> ProviderSubscription:
        """Swap the subscription's single item to a new price, invoicing proration now."""
        try:
            current = stripe.Subscription.retrieve(subscription_ref)
            items = _get(_get(current, "items"), "data", [])
            if not items:
                raise BillingProviderError(f"Stripe subscription {subscription_ref} has no items")

            price = stripe.Price.create(
                currency=self.currency,
                unit_amount=amount_minor_units,
                recurring={"interval": "month"},
                product_data={"name": f"{plan_name} x {vm_count} VM"},
            )
            account_id = _get(_get(current, "metadata"), "account_id")
            updated = stripe.Subscription.modify(
                subscription_ref,
                items=[{"id": _get(items[0], "id"), "price": price.id, "quantity": 1}],
                proration_behavior="always_invoice",
                cancel_at_period_end=False,
                metadata=self._metadata(account_id, plan_id, vm_count),
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription update failed: {e}")
        return self._parse_subscription(updated)

    def set_cancel_at_period_end(self, subscription_ref: str, cancel: bool) -> ProviderSubscription:
        try:
            updated = stripe.Subscription.modify(subscription_ref, cancel_at_period_end=cancel)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe cancel_at_period_end update failed: {e}")
        return self._parse_subscription(updated)

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
            event = json.loads(body)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        return self._parse_event(event)

    def _parse_subscription(self, data: Any) -> ProviderSubscription:
        metadata = _get(data, "metadata", {})
        items = _get(_get(data, "items"), "data", [])

        # Newer API versions report the period on the item
        period_end = _get(data, "current_period_end")
        if not period_end and items:
            period_end = _get(items[0], "current_period_end")

        return ProviderSubscription(
            subscription_ref=_get(data, "id"),
            customer_ref=_get(data, "customer"),
            plan_id=_get(metadata, "plan_id"),
            vm_count=_int_or_zero(_get(metadata, "vm_count")),
            current_period_end=_timestamp(period_end),
            cancel_at_period_end=bool(_get(data, "cancel_at_period_end", False)),
            status=_get(data, "status"),
        )

    def _parse_event(self, event: Dict[str, Any]) -> BillingWebhookResult:
        """Parse Stripe event into normalized BillingWebhookResult."""
        event_type = event["type"]
        event_id = event["id"]
        data = event.get("data", {}).get("object", {})
        metadata = data.get("metadata") or {}

        subscription = None
        ended_at = None
        account_id = metadata.get("account_id")

        if event_type in SUBSCRIPTION_EVENTS:
            subscription = self._parse_subscription(data)
            if event_type == "customer.subscription.deleted":
                ended_at = _timestamp(data.get("ended_at") or data.get("canceled_at"))

        elif event_type == "checkout.session.completed":
            account_id = account_id or data.get("client_reference_id")
            subscription_ref = data.get("subscription")
            if subscription_ref:
                try:
                    retrieved = stripe.Subscription.retrieve(subscription_ref)
                except stripe.StripeError as e:
                    raise BillingWebhookError(f"Could not load subscription {subscription_ref}: {e}")
                subscription = self._parse_subscription(retrieved)
                # Session metadata is authoritative for what was bought
                if metadata.get("plan_id"):
                    subscription.plan_id = metadata["plan_id"]
                if metadata.get("vm_count"):
                    subscription.vm_count = _int_or_zero(metadata["vm_count"])

        return BillingWebhookResult(
            event_id=event_id,
            event_type=event_type,
            account_id=account_id,
            subscription=subscription,
            ended_at=ended_at,
            metadata=dict(metadata),
        )
