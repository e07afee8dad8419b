"""
Admin API routes.

- POST /api/admin/accounts/{account_id}/subscription: Grant a plan directly
- POST /api/admin/accounts/{account_id}/vms: Assign a VM to an account
- POST /api/admin/sweep: Run the inactive-account VM sweep now
"""
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from vmdash.api.deps import require_admin
from vmdash.features.subscriptions.service import (
    assign_vm,
    get_subscription_status,
    grant_subscription,
    list_account_vms,
)
from vmdash.workers.sweep_inactive_vms import sweep_inactive_vms


router = APIRouter(prefix="/admin", tags=["admin"])


class GrantRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_id: str = Field(alias="planId")
    vm_count: Any = Field(alias="vmCount")
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")  # null = perpetual


class AssignVMRequest(BaseModel):
    vmid: int


@router.post("/accounts/{account_id}/subscription")
async def grant(account_id: str, request: GrantRequest, admin_id: str = Depends(require_admin)):
    grant_subscription(account_id, request.plan_id, request.vm_count, request.expires_at)
    return get_subscription_status(account_id)


@router.post("/accounts/{account_id}/vms")
async def assign(account_id: str, request: AssignVMRequest, admin_id: str = Depends(require_admin)):
    assign_vm(account_id, request.vmid)
    return {"account_id": account_id, "vms": list_account_vms(account_id)}


@router.post("/sweep")
async def run_sweep(dry_run: bool = False, admin_id: str = Depends(require_admin)):
    return sweep_inactive_vms(dry_run=dry_run)
