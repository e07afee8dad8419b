"""
vmdash/models/vm.py

VM status, lifecycle operations, and the permission set derived for them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet


class VMStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    PAUSED = "paused"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: object) -> "VMStatus":
        """Normalize a hypervisor status string; anything unrecognized is UNKNOWN."""
        if isinstance(raw, cls):
            return raw
        try:
            return cls(str(raw or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


class VMOperation(str, Enum):
    START = "start"
    STOP = "stop"  # force stop
    SHUTDOWN = "shutdown"  # graceful
    REBOOT = "reboot"


class DenialReason(str, Enum):
    NO_SUBSCRIPTION = "no_subscription"
    SUBSCRIPTION_ENDING = "subscription_ending"
    NONE = "none"


ALL_OPERATIONS: FrozenSet[VMOperation] = frozenset(VMOperation)


@dataclass(frozen=True)
class VMPermissions:
    """Operations an account may invoke on one VM right now."""
    permitted: FrozenSet[VMOperation]
    reasons: Dict[VMOperation, DenialReason] = field(default_factory=dict)

    def allows(self, operation: VMOperation) -> bool:
        return operation in self.permitted

    def reason_for(self, operation: VMOperation) -> DenialReason:
        return self.reasons.get(operation, DenialReason.NONE)

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {op.value: op in self.permitted for op in VMOperation}
        payload["reasonIfDenied"] = {
            op.value: self.reasons[op].value for op in VMOperation if op in self.reasons
        }
        return payload
