import logging
import secrets
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional, Protocol
from uuid import UUID

from .config import GatewayConfig
from .errors import NotificationError, PaymentSchedulingError
from .escrow import utcnow
from .models import AdminPayment, AdminPaymentStatus, Network
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


class PaymentScheduler(Protocol):
    def schedule_payment(self, network: Network, amount: Decimal, metadata: dict) -> str:
        ...


class NotificationSink(Protocol):
    def send(self, user_id: int, kind: str, payload: dict) -> None:
        ...


class AdminWalletScheduler:
    """Queues compliance-fee transfers to the configured admin wallet per network."""

    def __init__(self, config: GatewayConfig, clock: Callable[[], datetime] = utcnow):
        self.config = config
        self.clock = clock
        self.scheduled: list[dict] = []

    def schedule_payment(self, network: Network, amount: Decimal, metadata: dict) -> str:
        address = self.config.admin_wallets.get(network)
        if not address:
            raise PaymentSchedulingError(f"Admin wallet not configured for network: {network.value}")
        reference = f"ADM-{self.clock():%Y%m%d%H%M%S}-{secrets.token_hex(4).upper()}"
        self.scheduled.append({
            "reference": reference,
            "network": network,
            "to_address": address,
            "amount": amount,
            "metadata": dict(metadata),
        })
        return reference


class LoggingNotificationSink:
    def __init__(self):
        self.sent: list[dict] = []

    def send(self, user_id: int, kind: str, payload: dict) -> None:
        self.sent.append({"user_id": user_id, "kind": kind, "payload": payload})
        logger.info("Notification %s queued", kind, extra={"user_id": user_id})


def notify_quietly(sink: NotificationSink, user_id: int, kind: str, payload: dict) -> None:
    try:
        sink.send(user_id, kind, payload)
    except (NotificationError, OSError) as e:
        logger.warning("Notification %s failed: %s", kind, e, extra={"user_id": user_id})


class AdminPaymentDispatcher:
    """Hands committed fee records to the scheduler; failures back off and retry."""

    def __init__(
        self,
        storage: InMemoryStorage,
        scheduler: PaymentScheduler,
        config: GatewayConfig,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.scheduler = scheduler
        self.config = config
        self.clock = clock

    def dispatch(self, payment_id: UUID) -> Optional[AdminPayment]:
        record = self.storage.get_admin_payment(payment_id)
        if record is None or record["status"] == AdminPaymentStatus.SUBMITTED:
            return AdminPayment(**record) if record else None

        attempts = record["attempts"] + 1
        now = self.clock()
        try:
            reference = self.scheduler.schedule_payment(record["network"], record["amount"], record["metadata"])
        except Exception as e:
            delay = self.config.payment_retry_base_seconds * 2 ** (attempts - 1)
            with self.storage.transaction():
                updated = self.storage.update_admin_payment(
                    payment_id,
                    status=AdminPaymentStatus.RETRY_PENDING,
                    attempts=attempts,
                    last_error=str(e)[:500],
                    next_attempt_at=now + timedelta(seconds=delay),
                )
            logger.warning(
                "Failed to schedule admin payment for compliance fee: %s", e,
                extra={"payment_id": str(payment_id), "attempts": attempts},
            )
            return AdminPayment(**updated)

        with self.storage.transaction():
            updated = self.storage.update_admin_payment(
                payment_id,
                status=AdminPaymentStatus.SUBMITTED,
                attempts=attempts,
                reference=reference,
                last_error=None,
                next_attempt_at=None,
            )
        logger.info(
            "Admin payment scheduled for compliance fee",
            extra={"payment_id": str(payment_id), "reference": reference, "amount": str(record["amount"])},
        )
        return AdminPayment(**updated)

    def retry_due(self) -> int:
        due = self.storage.find_admin_payments(status=AdminPaymentStatus.RETRY_PENDING, due_before=self.clock())
        submitted = 0
        for record in due:
            try:
                payment = self.dispatch(record["id"])
            except Exception:
                logger.exception("Admin payment retry failed", extra={"payment_id": str(record["id"])})
                continue
            if payment.status == AdminPaymentStatus.SUBMITTED:
                submitted += 1
        return submitted
