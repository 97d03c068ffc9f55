import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, NamedTuple, Optional, Union
from uuid import UUID, uuid4

from .audit import AuditLog
from .config import GatewayConfig
from .errors import (
    AccessDenied,
    ConsistencyFault,
    NotReady,
    RequestNotFound,
    SettlementFailure,
    StateConflict,
    UnknownVerificationType,
)
from .escrow import MONEY_QUANTUM, EscrowLedger, utcnow
from .models import (
    AdminPaymentStatus,
    AuditAction,
    ExecutionStatus,
    Network,
    PendingReward,
    Principal,
    RetryStatus,
    RewardDomain,
    RewardStatus,
    SettlementResult,
    SettlementRetry,
    VerificationRequest,
    VerificationStatus,
)
from .payments import AdminPaymentDispatcher, NotificationSink, notify_quietly
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

VERIFICATION_TYPE_ALIASES = {
    "lottery_prize": RewardDomain.LOTTERY_PRIZE,
    "lottery": RewardDomain.LOTTERY_PRIZE,
    "lottery_prize_claim": RewardDomain.LOTTERY_PRIZE,
    "lottery_participation": RewardDomain.LOTTERY_PARTICIPATION,
    "participation": RewardDomain.LOTTERY_PARTICIPATION,
    "airdrop_withdrawal": RewardDomain.AIRDROP_WITHDRAWAL,
    "airdrop": RewardDomain.AIRDROP_WITHDRAWAL,
    "withdrawal": RewardDomain.AIRDROP_WITHDRAWAL,
    "general_withdrawal": RewardDomain.AIRDROP_WITHDRAWAL,
    "trader_withdrawal": RewardDomain.TRADER_WITHDRAWAL,
    "ai_trader": RewardDomain.TRADER_WITHDRAWAL,
    "ai_trader_withdrawal": RewardDomain.TRADER_WITHDRAWAL,
}


def resolve_domain(verification_type: Union[str, RewardDomain, None]) -> RewardDomain:
    if isinstance(verification_type, RewardDomain):
        return verification_type
    key = str(verification_type or "").strip().lower()
    try:
        return VERIFICATION_TYPE_ALIASES[key]
    except KeyError:
        raise UnknownVerificationType(f"Unknown verification type: {verification_type}")


def compliance_fee(amount: Decimal, config: GatewayConfig) -> Decimal:
    """Percentage of the released amount, clamped to the configured floor and ceiling."""
    if amount <= 0:
        return Decimal("0")
    fee = amount * config.compliance_fee_percentage / Decimal("100")
    fee = max(config.min_compliance_fee, min(fee, config.max_compliance_fee))
    return fee.quantize(MONEY_QUANTUM)


class DomainSettlement(NamedTuple):
    action: str
    amount: Decimal
    reward_ids: list[UUID]
    network: Optional[Network]
    details: dict


class SettlementRouter:
    """Dispatches an approved verification to its domain handler and releases escrow.

    Each settlement is one unit of work: reward status changes, the escrow
    release, the fee record and the completed execution row commit together
    or not at all. A failed attempt is recorded separately and queued for
    retry; a request is never settled twice.
    """

    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: EscrowLedger,
        audit: AuditLog,
        payments: AdminPaymentDispatcher,
        notifier: NotificationSink,
        config: GatewayConfig,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.ledger = ledger
        self.audit = audit
        self.payments = payments
        self.notifier = notifier
        self.config = config
        self.clock = clock

        self.action_handlers = {
            RewardDomain.LOTTERY_PRIZE: self._settle_lottery_prize,
            RewardDomain.LOTTERY_PARTICIPATION: self._settle_lottery_participation,
            RewardDomain.AIRDROP_WITHDRAWAL: self._settle_airdrop_withdrawal,
            RewardDomain.TRADER_WITHDRAWAL: self._settle_trader_withdrawal,
        }

    def process_verified_request(self, request_id: UUID) -> SettlementResult:
        existing = self.storage.completed_execution(request_id)
        if existing:
            return self._already_settled(existing)

        try:
            with self.storage.transaction():
                result = self._settle(request_id)
        except NotReady:
            raise
        except ConsistencyFault as e:
            self._record_failure(request_id, e, fatal=True)
            raise
        except Exception as e:
            retry = self._record_failure(request_id, e)
            raise SettlementFailure(
                f"Settlement failed: {e}",
                request_id=request_id,
                retry_scheduled=retry is not None and retry.status == RetryStatus.PENDING,
            ) from e

        return result

    def _settle(self, request_id: UUID) -> SettlementResult:
        now = self.clock()
        request = VerificationRequest(**self.storage.get_request(request_id))
        if request.status != VerificationStatus.APPROVED:
            raise NotReady(f"Verification request is {request.status.value}, not approved")

        # Re-checked under the lock; a concurrent settle may have committed.
        existing = self.storage.completed_execution(request.id)
        if existing:
            return self._already_settled(existing)

        domain = resolve_domain(request.scope)
        handler = self.action_handlers.get(domain)
        if handler is None:
            raise UnknownVerificationType(f"No settlement handler for {domain.value}")

        rewards = [
            PendingReward(**r)
            for r in self.storage.find_rewards(user_id=request.user_id, verification_request_id=request.id)
            if r["domain"] == domain
        ]
        outcome = handler(request, rewards, now)

        fee = compliance_fee(outcome.amount, self.config)
        payment_id = None
        if fee > 0:
            payment_id = uuid4()
            self.storage.add_admin_payment({
                "id": payment_id,
                "verification_request_id": request.id,
                "user_id": request.user_id,
                "network": outcome.network or request.wallet_network or Network.ERC20,
                "amount": fee,
                "status": AdminPaymentStatus.SCHEDULED,
                "reference": None,
                "metadata": {
                    "type": "compliance_fee",
                    "verification_request_id": str(request.id),
                    "user_id": request.user_id,
                    "domain": domain.value,
                    "released_amount": str(outcome.amount),
                },
                "attempts": 0,
                "next_attempt_at": None,
                "last_error": None,
                "created_at": now,
            })
            self.storage.after_commit(lambda: self.payments.dispatch(payment_id))

        self.storage.add_execution_log({
            "id": uuid4(),
            "verification_request_id": request.id,
            "user_id": request.user_id,
            "domain": domain,
            "action_type": outcome.action,
            "amount": outcome.amount,
            "status": ExecutionStatus.COMPLETED,
            "execution_data": {
                **outcome.details,
                "reward_ids": [str(r) for r in outcome.reward_ids],
                "compliance_fee": str(fee),
                "admin_payment_id": str(payment_id) if payment_id else None,
            },
            "error_message": None,
            "executed_at": now,
        })
        self.audit.record(
            request.id, request.user_id, AuditAction.SETTLEMENT_COMPLETED, now,
            details={"action": outcome.action, "amount": outcome.amount, "compliance_fee": fee},
        )

        retry = self.storage.get_retry(request.id)
        if retry and retry["status"] != RetryStatus.COMPLETED:
            retry.update(status=RetryStatus.COMPLETED, updated_at=now, next_attempt_at=now)
            self.storage.put_retry(retry)

        released_payload = {
            "verification_request_id": str(request.id),
            "domain": domain.value,
            "amount": str(outcome.amount),
        }
        self.storage.after_commit(
            lambda: notify_quietly(self.notifier, request.user_id, "reward_released", released_payload)
        )

        logger.info(
            "Settlement completed",
            extra={
                "verification_request_id": str(request.id),
                "user_id": request.user_id,
                "action": outcome.action,
                "amount": str(outcome.amount),
            },
        )
        return SettlementResult(
            verification_request_id=request.id,
            domain=domain,
            action=outcome.action,
            amount=outcome.amount,
            compliance_fee=fee,
            admin_payment_id=payment_id,
            reward_ids=outcome.reward_ids,
        )

    def _already_settled(self, execution: dict) -> SettlementResult:
        data = execution["execution_data"]
        payment_id = data.get("admin_payment_id")
        return SettlementResult(
            verification_request_id=execution["verification_request_id"],
            domain=execution["domain"],
            action=execution["action_type"],
            amount=execution["amount"],
            compliance_fee=Decimal(data.get("compliance_fee", "0")),
            admin_payment_id=UUID(payment_id) if payment_id else None,
            reward_ids=[UUID(r) for r in data.get("reward_ids", [])],
            already_settled=True,
        )

    # Domain handlers

    def _release_rewards(
        self,
        request: VerificationRequest,
        rewards: list[PendingReward],
        final_status: RewardStatus,
        now: datetime,
    ) -> tuple[Decimal, list[PendingReward]]:
        total = Decimal("0")
        released = []
        for reward in rewards:
            current = self.storage.get_pending_reward(reward.id)
            if current is None or current["status"] != RewardStatus.PENDING_VERIFICATION:
                logger.info("Reward already released, skipping", extra={"reward_id": str(reward.id)})
                continue
            self.storage.update_reward(reward.id, status=final_status, released_at=now)
            total += reward.amount
            released.append(reward)
        if total > 0:
            self.ledger.release_pending_to_spendable(request.user_id, total)
        return total, released

    def _settle_lottery_prize(self, request, rewards, now) -> DomainSettlement:
        total, released = self._release_rewards(request, rewards, RewardStatus.CLAIMED, now)
        return DomainSettlement(
            action="lottery_prize_released",
            amount=total,
            reward_ids=[r.id for r in released],
            network=None,
            details={"lottery_ids": sorted({r.context.lottery_id for r in released if r.context.lottery_id})},
        )

    def _settle_lottery_participation(self, request, rewards, now) -> DomainSettlement:
        total, released = self._release_rewards(request, rewards, RewardStatus.CLAIMED, now)
        return DomainSettlement(
            action="lottery_participation_released",
            amount=total,
            reward_ids=[r.id for r in released],
            network=None,
            details={
                "lottery_ids": sorted({r.context.lottery_id for r in released if r.context.lottery_id}),
                "ticket_count": sum(r.context.ticket_count for r in released),
            },
        )

    def _settle_airdrop_withdrawal(self, request, rewards, now) -> DomainSettlement:
        total, released = self._release_rewards(request, rewards, RewardStatus.RELEASED, now)
        return DomainSettlement(
            action="airdrop_withdrawal_processed",
            amount=total,
            reward_ids=[r.id for r in released],
            network=released[0].context.network if released else None,
            details={
                "withdrawal_request_ids": [
                    r.context.withdrawal_request_id for r in released if r.context.withdrawal_request_id
                ],
            },
        )

    def _settle_trader_withdrawal(self, request, rewards, now) -> DomainSettlement:
        total, released = self._release_rewards(request, rewards, RewardStatus.RELEASED, now)
        return DomainSettlement(
            action="trader_withdrawal_processed",
            amount=total,
            reward_ids=[r.id for r in released],
            network=released[0].context.network if released else None,
            details={"account_ids": sorted({r.context.account_id for r in released})},
        )

    # Retry queue

    def _record_failure(self, request_id: UUID, error: Exception, fatal: bool = False) -> Optional[SettlementRetry]:
        now = self.clock()
        try:
            request = VerificationRequest(**self.storage.get_request(request_id))
        except RequestNotFound:
            logger.error("Settlement failed for unknown request", extra={"verification_request_id": str(request_id)})
            return None

        message = str(error)[:500] or error.__class__.__name__
        with self.storage.transaction():
            self.storage.add_execution_log({
                "id": uuid4(),
                "verification_request_id": request.id,
                "user_id": request.user_id,
                "domain": request.scope,
                "action_type": "settlement",
                "amount": None,
                "status": ExecutionStatus.FAILED,
                "execution_data": {"error_type": error.__class__.__name__},
                "error_message": message,
                "executed_at": now,
            })

            existing = self.storage.get_retry(request.id)
            attempts = (existing["attempts"] if existing else 0) + 1
            if fatal or attempts >= self.config.settlement_max_retries:
                status = RetryStatus.EXHAUSTED
                next_attempt_at = now
            else:
                status = RetryStatus.PENDING
                delay = self.config.settlement_retry_base_seconds * 2 ** (attempts - 1)
                next_attempt_at = now + timedelta(seconds=delay)

            retry = {
                "verification_request_id": request.id,
                "user_id": request.user_id,
                "attempts": attempts,
                "status": status,
                "next_attempt_at": next_attempt_at,
                "last_error": message,
                "created_at": existing["created_at"] if existing else now,
                "updated_at": now,
            }
            self.storage.put_retry(retry)
            self.audit.record(
                request.id, request.user_id, AuditAction.SETTLEMENT_FAILED, now,
                details={"error": message, "attempts": attempts, "retry_status": status},
            )

        if fatal:
            logger.critical(
                "Settlement halted on consistency fault",
                extra={"verification_request_id": str(request.id), "error": message},
            )
        elif status == RetryStatus.EXHAUSTED:
            logger.error(
                "Settlement needs operator review",
                extra={"verification_request_id": str(request.id), "attempts": attempts, "error": message},
            )
        else:
            logger.warning(
                "Settlement failed, retry scheduled",
                extra={
                    "verification_request_id": str(request.id),
                    "attempts": attempts,
                    "next_attempt_at": next_attempt_at.isoformat(),
                    "error": message,
                },
            )
        return SettlementRetry(**retry)

    def pending_retries(self, status: Optional[RetryStatus] = None) -> list[SettlementRetry]:
        return [SettlementRetry(**r) for r in self.storage.find_retries(status=status)]

    def due_retries(self, now: Optional[datetime] = None) -> list[SettlementRetry]:
        due = self.storage.find_retries(status=RetryStatus.PENDING, due_before=now or self.clock())
        return [SettlementRetry(**r) for r in due]

    def requeue(self, request_id: UUID, operator: Principal) -> SettlementRetry:
        """Re-arm an exhausted settlement with a fresh retry budget."""
        if not operator.is_admin:
            raise AccessDenied("Admin access required")
        now = self.clock()
        with self.storage.transaction():
            retry = self.storage.get_retry(request_id)
            if retry is None:
                raise StateConflict("No settlement retry recorded for this request")
            if retry["status"] != RetryStatus.EXHAUSTED:
                raise StateConflict(f"Settlement retry is {retry['status'].value}, not exhausted")
            retry.update(status=RetryStatus.PENDING, attempts=0, next_attempt_at=now, updated_at=now)
            self.storage.put_retry(retry)
            self.audit.record(
                request_id, retry["user_id"], AuditAction.SETTLEMENT_REQUEUED, now,
                details={"operator_id": operator.user_id}, ip_address=operator.ip_address,
            )
        logger.warning(
            "Settlement requeued by operator",
            extra={"verification_request_id": str(request_id), "operator_id": operator.user_id},
        )
        return SettlementRetry(**retry)
