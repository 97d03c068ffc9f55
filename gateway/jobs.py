"""Periodic gateway jobs: expiry sweep, settlement retries, fee payment retries, reconciliation."""

import logging
from datetime import datetime
from typing import Callable, Optional

from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .config import GatewayConfig
from .errors import ConsistencyFault, NotReady, SettlementFailure
from .escrow import EscrowLedger, utcnow
from .models import RetryStatus
from .payments import AdminPaymentDispatcher
from .settlement import SettlementRouter
from .storage import InMemoryStorage
from .verification import VerificationRequestManager

logger = logging.getLogger(__name__)


class SettlementRetryWorker:
    """Re-drives approved verifications whose settlement has not completed."""

    def __init__(
        self,
        storage: InMemoryStorage,
        router: SettlementRouter,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.router = router
        self.clock = clock

    def run_once(self, now: Optional[datetime] = None) -> dict:
        now = now or self.clock()
        summary = {"completed": 0, "failed": 0, "exhausted": 0, "skipped": 0}

        for retry in self.router.due_retries(now):
            request_id = retry.verification_request_id
            if self.storage.completed_execution(request_id):
                with self.storage.transaction():
                    record = self.storage.get_retry(request_id)
                    record.update(status=RetryStatus.COMPLETED, updated_at=now)
                    self.storage.put_retry(record)
                summary["skipped"] += 1
                continue

            try:
                self.router.process_verified_request(request_id)
            except SettlementFailure as e:
                summary["failed" if e.retry_scheduled else "exhausted"] += 1
                continue
            except ConsistencyFault:
                summary["exhausted"] += 1
                continue
            except NotReady as e:
                logger.warning("Queued settlement is not ready: %s", e, extra={"verification_request_id": str(request_id)})
                summary["skipped"] += 1
                continue
            summary["completed"] += 1

        if any(summary.values()):
            logger.info("Settlement retry run finished", extra=summary)
        return summary


def run_expiry_sweep(verification: VerificationRequestManager) -> int:
    return verification.expire_overdue_requests()


def run_payment_retries(payments: AdminPaymentDispatcher) -> int:
    return payments.retry_due()


def run_reconciliation(ledger: EscrowLedger) -> int:
    mismatches = ledger.reconcile()
    if not mismatches:
        logger.debug("Wallet reconciliation clean")
    return len(mismatches)


def build_scheduler(
    config: GatewayConfig,
    verification: VerificationRequestManager,
    retry_worker: SettlementRetryWorker,
    payments: AdminPaymentDispatcher,
    ledger: EscrowLedger,
) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(
        jobstores={"default": MemoryJobStore()},
        job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 60},
        timezone="UTC",
    )

    scheduler.add_job(
        run_expiry_sweep,
        trigger=IntervalTrigger(seconds=config.expiry_sweep_seconds),
        args=[verification],
        id="expire_verification_requests",
        name="Expire Overdue Verification Requests",
    )
    scheduler.add_job(
        retry_worker.run_once,
        trigger=IntervalTrigger(seconds=config.retry_worker_seconds),
        id="settlement_retry_worker",
        name="Retry Failed Settlements",
    )
    scheduler.add_job(
        run_payment_retries,
        trigger=IntervalTrigger(seconds=config.retry_worker_seconds),
        args=[payments],
        id="admin_payment_retry",
        name="Retry Admin Fee Payments",
    )
    scheduler.add_job(
        run_reconciliation,
        trigger=IntervalTrigger(seconds=config.reconcile_seconds),
        args=[ledger],
        id="reconcile_wallets",
        name="Reconcile Pending Balances",
    )

    logger.info("Gateway jobs configured", extra={"jobs": len(scheduler.get_jobs())})
    return scheduler
