"""
Hypervisor provider protocol.

Status polling and lifecycle dispatch for rented VMs. Only the in-memory
implementation ships; a real driver plugs in through set_hypervisor().
"""
import threading
from collections import deque
from typing import Deque, Dict, List, Optional, Protocol, Tuple
import logging

from vmdash.models.vm import VMOperation, VMStatus


logger = logging.getLogger(__name__)


class HypervisorError(Exception):
    """Hypervisor could not be reached or rejected the request."""
    pass


class HypervisorProvider(Protocol):
    def get_status(self, vmid: int) -> VMStatus:
        """
        Current operational status of a VM.

        Raises:
            HypervisorError: If the hypervisor cannot be queried
        """
        ...

    def dispatch(self, vmid: int, operation: VMOperation) -> VMStatus:
        """
        Perform a lifecycle operation and return the resulting status.

        Raises:
            HypervisorError: If the operation fails
        """
        ...


# Resulting status per operation
_TRANSITIONS: Dict[VMOperation, VMStatus] = {
    VMOperation.START: VMStatus.RUNNING,
    VMOperation.STOP: VMStatus.STOPPED,
    VMOperation.SHUTDOWN: VMStatus.STOPPED,
    VMOperation.REBOOT: VMStatus.RUNNING,
}


# Dispatches remembered by InMemoryHypervisor
DISPATCH_HISTORY = 1000


class InMemoryHypervisor:
    """Dictionary-backed hypervisor for development and tests."""

    def __init__(self, statuses: Optional[Dict[int, VMStatus]] = None):
        self._lock = threading.Lock()
        self._statuses: Dict[int, VMStatus] = dict(statuses or {})
        self._dispatched: Deque[Tuple[int, VMOperation]] = deque(maxlen=DISPATCH_HISTORY)

    @property
    def dispatched(self) -> List[Tuple[int, VMOperation]]:
        """Most recent dispatches, oldest first (bounded by DISPATCH_HISTORY)."""
        with self._lock:
            return list(self._dispatched)

    def set_status(self, vmid: int, status: VMStatus) -> None:
        with self._lock:
            self._statuses[vmid] = status

    def get_status(self, vmid: int) -> VMStatus:
        with self._lock:
            return self._statuses.get(vmid, VMStatus.UNKNOWN)

    def dispatch(self, vmid: int, operation: VMOperation) -> VMStatus:
        with self._lock:
            if vmid not in self._statuses:
                raise HypervisorError(f"VM {vmid} does not exist")
            self._statuses[vmid] = _TRANSITIONS[operation]
            self._dispatched.append((vmid, operation))
            return self._statuses[vmid]


_hypervisor: HypervisorProvider = InMemoryHypervisor()


def get_hypervisor() -> HypervisorProvider:
    return _hypervisor


def set_hypervisor(provider: HypervisorProvider) -> None:
    global _hypervisor
    _hypervisor = provider
    logger.info("[hypervisor] provider set", extra={"provider": type(provider).__name__})
