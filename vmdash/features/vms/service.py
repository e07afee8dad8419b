"""
vmdash/features/vms/service.py

VM listing, permissions and lifecycle dispatch.

Every call reads the subscription and the VM status fresh and runs the
authorization gate on them; nothing here is cached across requests.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import logging

from vmdash.core.errors import (
    CollaboratorUnavailableError,
    OperationNotPermittedError,
    PermissionError,
    ValidationError,
)
from vmdash.core.logging import log_event
from vmdash.features.access.gate import check_operation, permitted_operations
from vmdash.features.hypervisor.provider import HypervisorError, HypervisorProvider, get_hypervisor
from vmdash.features.subscriptions.service import (
    get_subscription,
    get_vm_owner,
    is_admin,
    list_account_vms,
)
from vmdash.features.subscriptions.state import classify
from vmdash.models.subscription import SubscriptionState
from vmdash.models.vm import VMOperation, VMPermissions, VMStatus


logger = logging.getLogger(__name__)


def parse_operation(raw: str) -> VMOperation:
    if isinstance(raw, VMOperation):
        return raw
    try:
        return VMOperation(str(raw).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Unknown VM operation: {raw}",
            details={"allowed": [op.value for op in VMOperation]},
        )


def _authorize_vm(account_id: str, vmid: int) -> bool:
    """Ensure the caller may see the VM. Returns the caller's admin flag."""
    admin = is_admin(account_id)
    owner = get_vm_owner(vmid)
    if not admin and owner != account_id:
        raise PermissionError(f"VM {vmid} is not assigned to this account")
    return admin


def _status(hypervisor: HypervisorProvider, vmid: int) -> VMStatus:
    try:
        return VMStatus.parse(hypervisor.get_status(vmid))
    except HypervisorError as e:
        raise CollaboratorUnavailableError(f"Hypervisor unavailable: {e}", details={"vmid": vmid})


def _state_for(account_id: str, now: Optional[datetime]) -> SubscriptionState:
    return classify(get_subscription(account_id), now)


def get_vm_permissions(
    account_id: str,
    vmid: int,
    now: Optional[datetime] = None,
    hypervisor: Optional[HypervisorProvider] = None,
) -> Tuple[VMStatus, VMPermissions]:
    """
    Current status and permitted operations for one VM.

    Raises:
        NotFoundError: VM is not assigned to any account
        PermissionError: VM belongs to another account
        CollaboratorUnavailableError: hypervisor status could not be read
    """
    admin = _authorize_vm(account_id, vmid)
    status = _status(hypervisor or get_hypervisor(), vmid)
    return status, permitted_operations(_state_for(account_id, now), status, admin)


def list_vms(
    account_id: str,
    now: Optional[datetime] = None,
    hypervisor: Optional[HypervisorProvider] = None,
) -> List[Dict[str, Any]]:
    """Dashboard listing: every VM assigned to the account with its permissions."""
    hv = hypervisor or get_hypervisor()
    state = _state_for(account_id, now)
    admin = is_admin(account_id)
    vms = []
    for vmid in list_account_vms(account_id):
        status = _status(hv, vmid)
        vms.append({
            "vmid": vmid,
            "status": status.value,
            "permissions": permitted_operations(state, status, admin).to_dict(),
        })
    return vms


async def dispatch_vm_action(
    account_id: str,
    vmid: int,
    operation: str,
    now: Optional[datetime] = None,
    hypervisor: Optional[HypervisorProvider] = None,
) -> Dict[str, Any]:
    """
    Run a lifecycle operation after a fresh authorization check.

    The gate runs synchronously on freshly read state right before the
    hypervisor call; there is no await between the check and the dispatch.

    Raises:
        ValidationError: unknown operation
        OperationNotPermittedError: gate denies the operation (carries the reason)
        NotFoundError / PermissionError: VM not visible to the caller
        CollaboratorUnavailableError: hypervisor failure
    """
    op = parse_operation(operation)
    hv = hypervisor or get_hypervisor()

    admin = _authorize_vm(account_id, vmid)
    state = _state_for(account_id, now)
    status = _status(hv, vmid)
    perms = check_operation(state, status, admin, op)
    if not perms.allows(op):
        reason = perms.reason_for(op)
        raise OperationNotPermittedError(
            f"Operation '{op.value}' is not permitted on VM {vmid}",
            details={"vmid": vmid, "operation": op.value, "reason": reason.value, "vm_status": status.value},
        )

    try:
        new_status = await asyncio.to_thread(hv.dispatch, vmid, op)
    except HypervisorError as e:
        logger.error("[vms] dispatch failed", extra={"vmid": vmid, "operation": op.value, "error": str(e)})
        raise CollaboratorUnavailableError(f"Hypervisor error: {e}", details={"vmid": vmid})

    log_event(
        "info",
        "vm.dispatched",
        account_id=account_id,
        vmid=vmid,
        extra={"operation": op.value, "admin": admin},
    )
    return {"vmid": vmid, "operation": op.value, "status": VMStatus.parse(new_status).value}
