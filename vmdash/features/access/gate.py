"""
vmdash/features/access/gate.py

VM-operation authorization gate.

Maps (subscription state, VM status, admin flag) to the set of lifecycle
operations an account may invoke right now, plus a reason for every
operation it may not. Pure and synchronous: callers re-evaluate it on every
render and immediately before every dispatch. Results are never cached.
"""

from typing import Dict, FrozenSet
import logging

from vmdash.models.subscription import SubscriptionState
from vmdash.models.vm import ALL_OPERATIONS, DenialReason, VMOperation, VMPermissions, VMStatus


logger = logging.getLogger(__name__)

_NOTHING: FrozenSet[VMOperation] = frozenset()

# Operations a state permits, per VM status. Statuses absent from a row
# (paused, unknown) permit nothing.
POLICY: Dict[SubscriptionState, Dict[VMStatus, FrozenSet[VMOperation]]] = {
    SubscriptionState.ACTIVE: {
        VMStatus.STOPPED: frozenset({VMOperation.START}),
        VMStatus.RUNNING: frozenset({VMOperation.SHUTDOWN, VMOperation.REBOOT, VMOperation.STOP}),
    },
    SubscriptionState.CANCELLING: {
        VMStatus.STOPPED: _NOTHING,
        VMStatus.RUNNING: frozenset({VMOperation.SHUTDOWN, VMOperation.STOP}),
    },
    SubscriptionState.EXPIRED: {
        VMStatus.STOPPED: _NOTHING,
        VMStatus.RUNNING: frozenset({VMOperation.STOP}),
    },
    SubscriptionState.NONE: {
        VMStatus.STOPPED: _NOTHING,
        VMStatus.RUNNING: frozenset({VMOperation.STOP}),
    },
}

# Operations the state allows on a VM in the right status; anything outside
# this set is denied because of the subscription, not the VM.
STATE_ALLOWS: Dict[SubscriptionState, FrozenSet[VMOperation]] = {
    SubscriptionState.ACTIVE: ALL_OPERATIONS,
    SubscriptionState.CANCELLING: frozenset({VMOperation.SHUTDOWN, VMOperation.STOP}),
    SubscriptionState.EXPIRED: frozenset({VMOperation.STOP}),
    SubscriptionState.NONE: frozenset({VMOperation.STOP}),
}

_STATE_DENIAL: Dict[SubscriptionState, DenialReason] = {
    SubscriptionState.ACTIVE: DenialReason.NONE,
    SubscriptionState.CANCELLING: DenialReason.SUBSCRIPTION_ENDING,
    SubscriptionState.EXPIRED: DenialReason.NO_SUBSCRIPTION,
    SubscriptionState.NONE: DenialReason.NO_SUBSCRIPTION,
}


def permitted_operations(state: SubscriptionState, vm_status: VMStatus, is_admin: bool) -> VMPermissions:
    """
    Operations an account may invoke on one VM.

    Admin accounts bypass the table and always get the full set. Force-stop
    of a running VM is allowed in every state.
    """
    if is_admin:
        return VMPermissions(permitted=ALL_OPERATIONS, reasons={})

    permitted = POLICY[state].get(vm_status, _NOTHING)
    reasons: Dict[VMOperation, DenialReason] = {}
    for op in VMOperation:
        if op in permitted:
            continue
        if op in STATE_ALLOWS[state]:
            reasons[op] = DenialReason.NONE
        else:
            reasons[op] = _STATE_DENIAL[state]

    return VMPermissions(permitted=permitted, reasons=reasons)


def check_operation(
    state: SubscriptionState,
    vm_status: VMStatus,
    is_admin: bool,
    operation: VMOperation,
) -> VMPermissions:
    """Evaluate the gate for one operation and log the denial, if any."""
    perms = permitted_operations(state, vm_status, is_admin)
    if not perms.allows(operation):
        logger.info(
            "[vm-gate] denied",
            extra={
                "operation": operation.value,
                "state": state.value,
                "vm_status": vm_status.value,
                "reason": perms.reason_for(operation).value,
            },
        )
    return perms
