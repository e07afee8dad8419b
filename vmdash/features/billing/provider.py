"""
Billing provider protocol.

Defines the interface for billing providers (Stripe, etc.).
This allows swapping providers without changing business logic.

Every mutating call returns the provider's view of the subscription; that
view, not the request, is what gets written back locally.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class ProviderSubscription:
    """Provider's authoritative state for one recurring subscription."""
    subscription_ref: str
    customer_ref: Optional[str]
    plan_id: Optional[str]
    vm_count: int
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    status: Optional[str] = None  # active, canceled, past_due, etc.


@dataclass
class CheckoutSession:
    session_ref: str
    url: str


@dataclass
class BillingWebhookResult:
    """Result of processing a billing webhook."""
    event_id: str
    event_type: str
    account_id: Optional[str]
    subscription: Optional[ProviderSubscription]
    ended_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Checkout session creation for a new subscription
    - In-place plan/quantity swap on an existing subscription (prorated)
    - Cancel-at-period-end and its reversal
    - Webhook signature verification and parsing
    """

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
        """
        Create a checkout session for a monthly subscription.

        Args:
            account_id: Internal account ID (stored in metadata)
            plan_id: Internal plan ID
            plan_name: Display name for the line item
            vm_count: Number of VMs being purchased
            amount_minor_units: Monthly total in minor units (cents)
            success_url: URL to redirect on success
            cancel_url: URL to redirect on cancellation
            customer_ref: Existing provider customer, if known

        Returns:
            CheckoutSession with the redirect URL

        Raises:
            BillingProviderError: If session creation fails
        """
        ...

    def upgrade_subscription(
        self,
        subscription_ref: str,
        plan_id: str,
        plan_name: str,
        vm_count: int,
        amount_minor_units: int,
    ) -> ProviderSubscription:
        """
        Swap plan/quantity on an existing subscription, effective immediately.

        Proration is computed by the provider.

        Raises:
            BillingProviderError: If the update fails
        """
        ...

    def set_cancel_at_period_end(self, subscription_ref: str, cancel: bool) -> ProviderSubscription:
        """
        Request (cancel=True) or withdraw (cancel=False) cancellation at period end.

        Raises:
            BillingProviderError: If the update fails
        """
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """
        Verify webhook signature and parse event.

        Args:
            headers: HTTP headers (must include signature header)
            body: Raw webhook body (for signature verification)

        Returns:
            Parsed webhook result

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook processing errors."""
    pass
