import logging
from datetime import date, datetime
from typing import Callable, Optional, Union
from uuid import UUID

from apscheduler.schedulers.background import BackgroundScheduler

from .audit import AuditLog
from .config import GatewayConfig
from .errors import AccessDenied
from .escrow import EscrowLedger, utcnow
from .jobs import SettlementRetryWorker, build_scheduler
from .models import (
    CreateVerificationRequest,
    CreateVerificationResponse,
    CreditRewardRequest,
    PendingReward,
    Principal,
    RetryStatus,
    RewardStatus,
    SettlementRetry,
    SubmitAssistedRequest,
    SubmitSignatureRequest,
    VerificationMethod,
    VerificationRequest,
    VerificationResult,
    VerificationStatus,
    VerificationStatusView,
    WalletSummary,
)
from .payments import (
    AdminPaymentDispatcher,
    AdminWalletScheduler,
    LoggingNotificationSink,
    NotificationSink,
    PaymentScheduler,
)
from .producers import RewardProducer
from .risk import ComplianceReporter, RiskScorer
from .settlement import SettlementRouter, resolve_domain
from .signatures import SignatureVerifier
from .storage import InMemoryStorage
from .verification import VerificationRequestManager

logger = logging.getLogger(__name__)


def require_admin(principal: Principal) -> None:
    if not principal.is_admin:
        raise AccessDenied("Admin access required")


class GatewayService:
    """Wires the gateway components together over one shared store."""

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        storage: Optional[InMemoryStorage] = None,
        payment_scheduler: Optional[PaymentScheduler] = None,
        notifier: Optional[NotificationSink] = None,
        verifier: Optional[SignatureVerifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or GatewayConfig()
        self.storage = storage or InMemoryStorage()
        self.clock = clock
        self.notifier = notifier or LoggingNotificationSink()
        self.payment_scheduler = payment_scheduler or AdminWalletScheduler(self.config, clock)

        self.ledger = EscrowLedger(self.storage, clock)
        self.audit = AuditLog(self.storage)
        self.producers = RewardProducer(self.storage, self.ledger, self.config, clock)
        self.scorer = RiskScorer(self.storage, self.config)
        self.reporter = ComplianceReporter(self.storage, self.audit, clock)
        self.payments = AdminPaymentDispatcher(self.storage, self.payment_scheduler, self.config, clock)
        self.router = SettlementRouter(
            self.storage, self.ledger, self.audit, self.payments, self.notifier, self.config, clock,
        )
        self.verification = VerificationRequestManager(
            self.storage,
            self.audit,
            self.scorer,
            self.router,
            verifier or SignatureVerifier(),
            self.notifier,
            self.config,
            clock,
        )
        self.retry_worker = SettlementRetryWorker(self.storage, self.router, clock)

    def principal(self, user_id: int, ip_address: Optional[str] = None) -> Principal:
        return Principal(user_id=user_id, is_admin=self.config.is_admin(user_id), ip_address=ip_address)

    # Producers

    def credit_reward(self, request: CreditRewardRequest, principal: Principal) -> PendingReward:
        require_admin(principal)
        return self.producers.credit_pending_reward(
            request.user_id,
            request.domain,
            request.amount,
            request.context,
            request.idempotency_key,
        )

    # Owner operations

    def wallet_summary(self, user_id: int) -> WalletSummary:
        rewards = [
            PendingReward(**r)
            for r in self.storage.find_rewards(user_id=user_id, status=RewardStatus.PENDING_VERIFICATION)
        ]
        active = self.verification.active_request(user_id)
        claimable = [
            r for r in rewards
            if r.verification_request_id is None or not self.verification.is_holding(r.verification_request_id)
        ]
        return WalletSummary(
            wallet=self.ledger.get_wallet(user_id),
            rewards=rewards,
            active_request=VerificationStatusView(**active.model_dump()) if active else None,
            can_claim=bool(claimable) and active is None,
        )

    def create_verification(self, principal: Principal, request: CreateVerificationRequest) -> CreateVerificationResponse:
        return self.verification.create_request(
            principal.user_id,
            request.method,
            request.scope,
            request.reward_id,
            principal.ip_address,
        )

    def submit_signature(self, principal: Principal, request: SubmitSignatureRequest) -> VerificationResult:
        return self.verification.submit_signature(
            principal.user_id,
            request.signature,
            request.address,
            request.network,
            request.request_id,
            principal.ip_address,
        )

    def submit_assisted(self, principal: Principal, request: SubmitAssistedRequest) -> VerificationResult:
        return self.verification.submit_assisted(
            principal.user_id, request.evidence, request.request_id, principal.ip_address,
        )

    def get_verification(self, principal: Principal, request_id: UUID) -> VerificationStatusView:
        request = self.verification.get_status(request_id, principal)
        return VerificationStatusView(**request.model_dump())

    def admin_verification(self, principal: Principal, request_id: UUID) -> VerificationRequest:
        require_admin(principal)
        return self.verification.get_status(request_id, principal)

    # Review

    def approve(self, request_id: UUID, principal: Principal, reason: Optional[str] = None) -> VerificationResult:
        return self.verification.approve(request_id, principal, reason)

    def reject(self, request_id: UUID, principal: Principal, reason: str) -> VerificationResult:
        return self.verification.reject(request_id, reason, principal)

    # Compliance

    def compliance_report(self, request_id: UUID, principal: Principal) -> dict:
        return self.reporter.generate_report(request_id, principal)

    def compliance_export(
        self,
        principal: Principal,
        start_date: date,
        end_date: date,
        fmt: str = "json",
        include_sensitive: bool = False,
        scope: Optional[str] = None,
        status: Optional[VerificationStatus] = None,
        method: Optional[VerificationMethod] = None,
    ) -> Union[dict, str]:
        return self.reporter.export(
            principal,
            start_date,
            end_date,
            fmt=fmt,
            include_sensitive=include_sensitive,
            scope=resolve_domain(scope) if scope else None,
            status=status,
            method=method,
        )

    def compliance_stats(self, principal: Principal, start_date: date, end_date: date) -> dict:
        return self.reporter.stats(principal, start_date, end_date)

    # Operations

    def settlement_retries(self, principal: Principal, status: Optional[RetryStatus] = None) -> list[SettlementRetry]:
        require_admin(principal)
        return self.router.pending_retries(status)

    def requeue_settlement(self, request_id: UUID, principal: Principal) -> SettlementRetry:
        return self.router.requeue(request_id, principal)

    def expire_overdue(self, principal: Principal) -> int:
        require_admin(principal)
        return self.verification.expire_overdue_requests()

    def reconcile_wallets(self) -> list[dict]:
        return self.ledger.reconcile()

    def build_scheduler(self) -> BackgroundScheduler:
        return build_scheduler(self.config, self.verification, self.retry_worker, self.payments, self.ledger)
