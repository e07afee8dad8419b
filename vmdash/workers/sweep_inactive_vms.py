"""Shut down running VMs of accounts without an active subscription."""
from datetime import datetime
import logging

from vmdash.core.config import settings
from vmdash.features.hypervisor.provider import HypervisorError, HypervisorProvider, get_hypervisor
from vmdash.features.subscriptions.service import (
    list_account_vms,
    list_sweep_candidates,
    mark_vms_shutdown,
)
from vmdash.features.subscriptions.state import classify, is_entitled, utc_now
from vmdash.models.vm import VMOperation, VMStatus

logger = logging.getLogger("vmdash.sweep.inactive_vms")


def sweep_inactive_vms(
    *,
    now: datetime | None = None,
    dry_run: bool = False,
    hypervisor: HypervisorProvider | None = None,
) -> dict:
    if not settings.VM_SHUTDOWN_SWEEP_ENABLED:
        logger.info("[sweep] disabled")
        return {"enabled": False, "accounts": 0, "shutdown": 0, "failed": 0, "dry_run": dry_run}

    hv = hypervisor or get_hypervisor()
    current = now or utc_now()
    swept_accounts = 0
    shutdown = 0
    failed = 0

    for candidate in list_sweep_candidates():
        account_id = candidate["account_id"]
        state = classify(candidate["subscription"], current)
        if is_entitled(state):
            continue

        account_failures = 0
        for vmid in list_account_vms(account_id):
            try:
                if VMStatus.parse(hv.get_status(vmid)) != VMStatus.RUNNING:
                    continue
                if not dry_run:
                    hv.dispatch(vmid, VMOperation.SHUTDOWN)
                shutdown += 1
            except HypervisorError as e:
                account_failures += 1
                logger.warning(
                    "[sweep] shutdown failed",
                    extra={"account_id": account_id, "vmid": vmid, "error": str(e)},
                )

        failed += account_failures
        # Accounts with failures stay unmarked and are retried next run
        if not dry_run and account_failures == 0:
            mark_vms_shutdown(account_id, current)
        swept_accounts += 1

    logger.info(
        "[sweep] inactive account VMs",
        extra={"accounts": swept_accounts, "shutdown": shutdown, "failed": failed, "dry_run": dry_run},
    )
    return {"enabled": True, "accounts": swept_accounts, "shutdown": shutdown, "failed": failed, "dry_run": dry_run}


if __name__ == "__main__":
    result = sweep_inactive_vms()
    print(result)
