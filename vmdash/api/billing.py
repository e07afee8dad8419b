"""
Billing API routes.

- GET  /api/billing/status: Subscription status for the caller
- GET  /api/billing/plans: Plan catalog with price curves
- POST /api/billing/quote: Price a plan + VM count
- POST /api/billing/subscribe: New checkout or in-place upgrade
- POST /api/billing/cancel: Cancel at period end
- POST /api/billing/reactivate: Withdraw a pending cancellation
- POST /api/billing/webhook: Handle Stripe webhooks
"""
from typing import Any
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from vmdash.api.deps import get_current_account
from vmdash.core.errors import BillingDisabledError
from vmdash.features.billing import orchestrator
from vmdash.features.billing.provider import BillingProvider, BillingWebhookError
from vmdash.features.billing.service import billing_enabled, get_provider, process_webhook_event
from vmdash.features.plans.catalog import get_catalog
from vmdash.features.pricing.service import quote
from vmdash.features.subscriptions.service import get_subscription_status


router = APIRouter(prefix="/billing", tags=["billing"])


class PlanSelection(BaseModel):
    """Plan + VM count. Quantity is validated by the pricing engine."""
    model_config = ConfigDict(populate_by_name=True)

    plan_id: str = Field(alias="planId")
    quantity: Any


class BillingStatusResponse(BaseModel):
    plan: str | None
    quantity: int
    expiresAt: str | None  # ISO8601
    cancelAtPeriodEnd: bool
    state: str
    recurring: bool
    billingEnabled: bool


def _require_provider() -> BillingProvider:
    provider = get_provider()
    if provider is None:
        raise BillingDisabledError("Stripe is not configured. Set STRIPE_SECRET_KEY.")
    return provider


@router.get("/status", response_model=BillingStatusResponse)
async def get_status(account_id: str = Depends(get_current_account)):
    status = get_subscription_status(account_id)
    status["billingEnabled"] = billing_enabled()
    return status


@router.get("/plans")
async def list_plans():
    """Plan picker data: every plan with its breakpoints."""
    plans = []
    for plan in get_catalog().list_plans():
        plans.append({
            "id": plan.plan_id,
            "name": plan.name,
            "specs": plan.specs,
            "description": plan.description,
            "features": list(plan.features),
            "maxQuantity": plan.max_quantity,
            "breakpoints": [
                {"quantity": bp.quantity, "perUnitPrice": str(bp.per_unit_price)}
                for bp in plan.breakpoints
            ],
        })
    return {"plans": plans}


@router.post("/quote")
async def get_quote(request: PlanSelection):
    """
    Price a selection.

    Errors:
        400: Unknown plan or invalid quantity
        422: Quantity beyond the price curve (contact sales)
    """
    return quote(request.plan_id, request.quantity).to_dict()


@router.post("/subscribe")
async def subscribe(request: PlanSelection, account_id: str = Depends(get_current_account)):
    """
    Start a subscription or upgrade the current one.

    Returns:
        {"action": "new_subscription", "redirectUrl": "https://checkout.stripe.com/...", "quote": {...}}
        {"action": "upgrade", "quote": {...}}

    Errors:
        400/422: Invalid selection (Stripe never called)
        409: Another billing change for this account is in progress
        503: Billing disabled, or Stripe unavailable (retryable)
    """
    provider = _require_provider()
    result = await orchestrator.subscribe_or_upgrade(
        account_id, request.plan_id, request.quantity, provider=provider
    )
    return result.to_dict()


@router.post("/cancel")
async def cancel(account_id: str = Depends(get_current_account)):
    provider = _require_provider()
    await orchestrator.cancel(account_id, provider=provider)
    return get_subscription_status(account_id)


@router.post("/reactivate")
async def reactivate(account_id: str = Depends(get_current_account)):
    provider = _require_provider()
    await orchestrator.reactivate(account_id, provider=provider)
    return get_subscription_status(account_id)


@router.post("/webhook")
async def handle_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Verifies signature, processes event idempotently, and overwrites the
    subscription record from the event payload.

    Returns:
        {"received": true, "event_id": str}

    Errors:
        400: Invalid signature or payload
        503: Billing disabled
    """
    provider = _require_provider()

    # Read raw body (required for signature verification)
    body = await request.body()
    headers = dict(request.headers)

    try:
        result = process_webhook_event(headers, body, provider=provider)
    except BillingWebhookError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"received": True, "event_id": result.event_id}
