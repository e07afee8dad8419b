"""
VM API routes.

- GET  /api/vms: VMs assigned to the caller, with permissions
- GET  /api/vms/{vmid}/permissions: Permitted operations for one VM
- POST /api/vms/{vmid}/{operation}: Dispatch after a fresh authorization check
"""
from fastapi import APIRouter, Depends

from vmdash.api.deps import get_current_account
from vmdash.features.vms.service import dispatch_vm_action, get_vm_permissions, list_vms


router = APIRouter(prefix="/vms", tags=["vms"])


@router.get("")
async def get_vms(account_id: str = Depends(get_current_account)):
    return {"vms": list_vms(account_id)}


@router.get("/{vmid}/permissions")
async def get_permissions(vmid: int, account_id: str = Depends(get_current_account)):
    """
    Returns:
        {"vmid": int, "status": str, "start": bool, "stop": bool, "shutdown": bool,
         "reboot": bool, "reasonIfDenied": {operation: reason}}
    """
    status, perms = get_vm_permissions(account_id, vmid)
    return {"vmid": vmid, "status": status.value, **perms.to_dict()}


@router.post("/{vmid}/{operation}")
async def run_operation(vmid: int, operation: str, account_id: str = Depends(get_current_account)):
    """
    Errors:
        400: Unknown operation
        403: Operation not permitted (reason in error.details) or VM not yours
        404: VM not found
        503: Hypervisor unavailable
    """
    return await dispatch_vm_action(account_id, vmid, operation)
