"""
Per-account advisory locks.

Non-blocking: a second holder for the same account is rejected rather than
queued, so concurrent billing mutations surface as AlreadyInProgressError.
The registry is process-local; run a single API worker per database or
replace it with a database advisory lock.
"""
import asyncio
import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Set

from vmdash.core.errors import AlreadyInProgressError


logger = logging.getLogger(__name__)


class AccountHold:
    """
    A held account lock.

    detach() hands the lock to a still-running future: leaving the `hold()`
    block no longer releases it, the future's completion does.
    """

    def __init__(self, registry: "AccountLockRegistry", account_id: str):
        self.registry = registry
        self.account_id = account_id
        self.detached = False

    def detach(self, future: asyncio.Future) -> None:
        self.detached = True
        future.add_done_callback(self._release_when_done)

    def _release_when_done(self, future: asyncio.Future) -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.warning(
                "[locks] detached call failed",
                extra={"account_id": self.account_id, "error": str(future.exception())},
            )
        self.registry.release(self.account_id)
        logger.info("[locks] detached call settled", extra={"account_id": self.account_id})


class AccountLockRegistry:
    def __init__(self):
        self._guard = threading.Lock()
        self._held: Set[str] = set()

    def try_acquire(self, account_id: str) -> bool:
        with self._guard:
            if account_id in self._held:
                return False
            self._held.add(account_id)
            return True

    def release(self, account_id: str) -> None:
        with self._guard:
            self._held.discard(account_id)

    def is_held(self, account_id: str) -> bool:
        with self._guard:
            return account_id in self._held

    @contextmanager
    def hold(self, account_id: str) -> Iterator[AccountHold]:
        """
        Hold the account's lock for the duration of the block.

        The lock outlives the block only if the yielded AccountHold was
        detached to a future that is still running.

        Raises:
            AlreadyInProgressError: another operation holds it
        """
        if not self.try_acquire(account_id):
            raise AlreadyInProgressError(
                "A billing change for this account is already in progress",
                details={"account_id": account_id},
            )
        held = AccountHold(self, account_id)
        try:
            yield held
        finally:
            if not held.detached:
                self.release(account_id)


billing_locks = AccountLockRegistry()
