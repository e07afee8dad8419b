"""
vmdash/features/subscriptions/service.py

Subscription + account persistence.

Handles:
- Account lookup/creation and the admin role check
- Reading the subscription record as a Subscription model
- Overwriting the record in one transaction (billing write-back, admin grant)
- VM ownership (which VMs an account may see and act on)
- The swept marker used by the inactive-account VM sweep
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import insert, select, update
from sqlalchemy.orm import Session

from vmdash.core.database import get_db_session, accounts, subscriptions, account_vms
from vmdash.core.errors import NotFoundError, ValidationError
from vmdash.features.plans.catalog import get_catalog
from vmdash.features.subscriptions.state import classify, is_entitled, utc_now
from vmdash.models.subscription import Subscription


logger = logging.getLogger(__name__)

ROLE_ADMIN = "admin"
ROLE_CUSTOMER = "customer"


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # Stored as UTC wall time; SQLite drops the offset
    if value is None:
        return None
    return _aware(value).astimezone(timezone.utc)


def _ensure_account(session: Session, account_id: str, role: Optional[str] = None) -> Dict[str, Any]:
    row = session.execute(
        select(accounts.c.account_id, accounts.c.role).where(accounts.c.account_id == account_id)
    ).fetchone()
    if row:
        if role and row.role != role:
            session.execute(
                update(accounts).where(accounts.c.account_id == account_id).values(role=role)
            )
            return {"account_id": account_id, "role": role}
        return {"account_id": row.account_id, "role": row.role}

    session.execute(
        insert(accounts).values(account_id=account_id, role=role or ROLE_CUSTOMER)
    )
    return {"account_id": account_id, "role": role or ROLE_CUSTOMER}


def get_or_create_account(account_id: str, role: Optional[str] = None) -> Dict[str, Any]:
    """
    Ensure an account row exists.

    Args:
        account_id: Caller identity
        role: If given, the account's role is set to it

    Returns:
        {"account_id": str, "role": str}
    """
    if not account_id:
        raise ValidationError("account_id is required")
    with get_db_session() as session:
        return _ensure_account(session, account_id, role)


def is_admin(account_id: str) -> bool:
    with get_db_session() as session:
        role = session.execute(
            select(accounts.c.role).where(accounts.c.account_id == account_id)
        ).scalar_one_or_none()
    return role == ROLE_ADMIN


def _row_to_subscription(row) -> Subscription:
    return Subscription(
        account_id=row.account_id,
        plan_id=row.plan_id,
        vm_count=row.vm_count or 0,
        expires_at=_aware(row.expires_at),
        cancel_at_period_end=bool(row.cancel_at_period_end),
        provider_subscription_ref=row.provider_subscription_ref,
        provider_customer_ref=row.provider_customer_ref,
    )


def get_subscription(account_id: str) -> Optional[Subscription]:
    """Current subscription record, or None if the account never had one."""
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions).where(subscriptions.c.account_id == account_id)
        ).fetchone()
    return _row_to_subscription(row) if row else None


def get_subscription_by_provider_ref(provider_subscription_ref: str) -> Optional[Subscription]:
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions).where(
                subscriptions.c.provider_subscription_ref == provider_subscription_ref
            )
        ).fetchone()
    return _row_to_subscription(row) if row else None


def save_subscription(subscription: Subscription, now: Optional[datetime] = None) -> Subscription:
    """
    Overwrite an account's subscription record (single transaction).

    A record that classifies as entitled clears the sweep marker, so a
    renewed account is eligible to be swept again after its next lapse.
    """
    values = {
        "plan_id": subscription.plan_id,
        "vm_count": subscription.vm_count,
        "expires_at": _utc(subscription.expires_at),
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "provider_subscription_ref": subscription.provider_subscription_ref,
        "provider_customer_ref": subscription.provider_customer_ref,
        "updated_at": utc_now(),
    }
    if is_entitled(classify(subscription, now)):
        values["vms_shutdown_at"] = None

    with get_db_session() as session:
        _ensure_account(session, subscription.account_id)

        # A provider ref belongs to at most one account
        if subscription.provider_subscription_ref:
            session.execute(
                update(subscriptions)
                .where(
                    subscriptions.c.provider_subscription_ref == subscription.provider_subscription_ref,
                    subscriptions.c.account_id != subscription.account_id,
                )
                .values(provider_subscription_ref=None)
            )

        existing = session.execute(
            select(subscriptions.c.account_id).where(
                subscriptions.c.account_id == subscription.account_id
            )
        ).fetchone()

        if existing:
            session.execute(
                update(subscriptions)
                .where(subscriptions.c.account_id == subscription.account_id)
                .values(**values)
            )
        else:
            session.execute(
                insert(subscriptions).values(account_id=subscription.account_id, **values)
            )

    logger.info(
        "[subscriptions] record saved",
        extra={
            "account_id": subscription.account_id,
            "plan_id": subscription.plan_id,
            "vm_count": subscription.vm_count,
            "provider_backed": subscription.is_provider_backed,
        },
    )
    return subscription


def grant_subscription(
    account_id: str,
    plan_id: str,
    vm_count: int,
    expires_at: Optional[datetime] = None,
) -> Subscription:
    """
    Administrative grant: assign a plan directly, outside the billing provider.

    No provider ref is stored, so the grant cannot be cancelled or reactivated
    through billing. A null expiry is perpetual.
    """
    if plan_id not in get_catalog():
        raise ValidationError(f"Unknown plan: {plan_id}", details={"plan_id": plan_id})
    if isinstance(vm_count, bool) or not isinstance(vm_count, int) or vm_count < 1:
        raise ValidationError(f"vm_count must be a positive integer, got {vm_count!r}")

    granted = Subscription(
        account_id=account_id,
        plan_id=plan_id,
        vm_count=vm_count,
        expires_at=_aware(expires_at),
        cancel_at_period_end=False,
    )
    save_subscription(granted)
    logger.info(
        "[subscriptions] admin grant",
        extra={"account_id": account_id, "plan_id": plan_id, "vm_count": vm_count},
    )
    return granted


def get_subscription_status(account_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Billing status for the dashboard.

    Returns:
        {
            "plan": str | None,
            "quantity": int,
            "expiresAt": str | None (ISO 8601),
            "cancelAtPeriodEnd": bool,
            "state": "none" | "active" | "cancelling" | "expired",
            "recurring": bool
        }
    """
    sub = get_subscription(account_id)
    state = classify(sub, now)
    if sub is None:
        return {
            "plan": None,
            "quantity": 0,
            "expiresAt": None,
            "cancelAtPeriodEnd": False,
            "state": state.value,
            "recurring": False,
        }
    return {
        "plan": sub.plan_id,
        "quantity": sub.vm_count,
        "expiresAt": sub.expires_at.isoformat() if sub.expires_at else None,
        "cancelAtPeriodEnd": sub.cancel_at_period_end,
        "state": state.value,
        "recurring": sub.is_provider_backed,
    }


def assign_vm(account_id: str, vmid: int) -> None:
    """
    Give an account ownership of a VM (replaces any previous owner).

    Clears the account's sweep marker so the next sweep covers the new VM.
    """
    with get_db_session() as session:
        _ensure_account(session, account_id)
        owner = session.execute(
            select(account_vms.c.account_id).where(account_vms.c.vmid == vmid)
        ).scalar_one_or_none()
        if owner is None:
            session.execute(insert(account_vms).values(account_id=account_id, vmid=vmid))
        elif owner != account_id:
            session.execute(
                update(account_vms).where(account_vms.c.vmid == vmid).values(account_id=account_id)
            )
        # The new VM has not been swept yet
        session.execute(
            update(subscriptions)
            .where(subscriptions.c.account_id == account_id)
            .values(vms_shutdown_at=None)
        )


def list_account_vms(account_id: str) -> List[int]:
    with get_db_session() as session:
        rows = session.execute(
            select(account_vms.c.vmid)
            .where(account_vms.c.account_id == account_id)
            .order_by(account_vms.c.vmid)
        ).fetchall()
    return [row.vmid for row in rows]


def get_vm_owner(vmid: int) -> str:
    """
    Raises:
        NotFoundError: VM is not assigned to any account
    """
    with get_db_session() as session:
        owner = session.execute(
            select(account_vms.c.account_id).where(account_vms.c.vmid == vmid)
        ).scalar_one_or_none()
    if owner is None:
        raise NotFoundError(f"VM {vmid} not found")
    return owner


def list_sweep_candidates() -> List[Dict[str, Any]]:
    """
    Non-admin accounts that have not been swept since their last lapse.

    Classification happens in the caller; this only filters on stored columns.
    Accounts without a subscription row are included (state None).
    """
    with get_db_session() as session:
        rows = session.execute(
            select(
                accounts.c.account_id,
                subscriptions.c.plan_id,
                subscriptions.c.vm_count,
                subscriptions.c.expires_at,
                subscriptions.c.cancel_at_period_end,
                subscriptions.c.provider_subscription_ref,
                subscriptions.c.provider_customer_ref,
                subscriptions.c.vms_shutdown_at,
            )
            .select_from(accounts.outerjoin(subscriptions, accounts.c.account_id == subscriptions.c.account_id))
            .where(accounts.c.role != ROLE_ADMIN)
            .where(subscriptions.c.vms_shutdown_at.is_(None))
            .order_by(accounts.c.account_id)
        ).fetchall()

    candidates = []
    for row in rows:
        sub = None
        if row.plan_id is not None or row.expires_at is not None:
            sub = _row_to_subscription(row)
        candidates.append({"account_id": row.account_id, "subscription": sub})
    return candidates


def mark_vms_shutdown(account_id: str, at: Optional[datetime] = None) -> None:
    """Record that the sweep shut this account's VMs down."""
    stamp = _utc(at) or utc_now()
    with get_db_session() as session:
        existing = session.execute(
            select(subscriptions.c.account_id).where(subscriptions.c.account_id == account_id)
        ).fetchone()
        if existing:
            session.execute(
                update(subscriptions)
                .where(subscriptions.c.account_id == account_id)
                .values(vms_shutdown_at=stamp)
            )
        else:
            # Never-subscribed account: a bare row carries the marker
            session.execute(
                insert(subscriptions).values(account_id=account_id, vm_count=0, vms_shutdown_at=stamp)
            )
