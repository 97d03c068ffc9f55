import hashlib
import logging
import secrets
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID, uuid4

from .audit import AuditLog
from .config import GatewayConfig
from .errors import (
    AccessDenied,
    NoOpenRequest,
    NoPendingRewards,
    RequestNotFound,
    SettlementFailure,
    StateConflict,
    ValidationError,
)
from .escrow import utcnow
from .models import (
    OPEN_STATUSES,
    AuditAction,
    CreateVerificationResponse,
    Network,
    PendingReward,
    Principal,
    RewardDomain,
    RewardStatus,
    RiskLevel,
    VerificationMethod,
    VerificationRequest,
    VerificationResult,
    VerificationStatus,
)
from .payments import NotificationSink, notify_quietly
from .risk import RiskScorer
from .settlement import SettlementRouter, resolve_domain
from .signatures import SignatureVerifier, normalize_address, normalize_signature, parse_network
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

ASSISTED_INSTRUCTIONS = (
    "Upload proof of wallet ownership (for example a screenshot of the wallet "
    "showing the address, or a transaction sent from it). A reviewer will "
    "confirm the evidence before your rewards are released."
)

REVIEWABLE_STATUSES = (VerificationStatus.PROCESSING, VerificationStatus.VERIFYING)


def generate_nonce(user_id: int, now: datetime, reward_id: Optional[UUID] = None) -> str:
    parts = [str(user_id), str(int(now.timestamp())), secrets.token_hex(16)]
    if reward_id:
        parts.append(str(reward_id))
    return hashlib.sha256(":".join(parts).encode("utf-8")).hexdigest()


def build_challenge_message(user_id: int, scope: RewardDomain, nonce: str, now: datetime, signing_domain: str) -> str:
    return (
        "Wallet Ownership Verification\n\n"
        f"User ID: {user_id}\n"
        f"Scope: {scope.value}\n"
        f"Nonce: {nonce}\n"
        f"Timestamp: {int(now.timestamp())}\n"
        f"Domain: {signing_domain}\n\n"
        "By signing this message, you verify ownership of this wallet address "
        "for reward withdrawal."
    )


class VerificationRequestManager:
    """Owns the verification request state machine.

    Every status change is a conditional update inside a storage
    transaction, so two racing submissions cannot both move a request out of
    ``pending``. Signature recovery runs outside the lock while the request
    sits in ``processing``. Approval hands the request to the settlement
    router; a settlement failure leaves the request approved and queued for
    retry.
    """

    def __init__(
        self,
        storage: InMemoryStorage,
        audit: AuditLog,
        scorer: RiskScorer,
        router: SettlementRouter,
        verifier: SignatureVerifier,
        notifier: NotificationSink,
        config: GatewayConfig,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.audit = audit
        self.scorer = scorer
        self.router = router
        self.verifier = verifier
        self.notifier = notifier
        self.config = config
        self.clock = clock

    # Creation

    def create_request(
        self,
        user_id: int,
        method,
        scope="lottery_prize",
        reward_id: Optional[UUID] = None,
        ip_address: Optional[str] = None,
    ) -> CreateVerificationResponse:
        try:
            method = VerificationMethod(method)
        except ValueError:
            raise ValidationError(f"Unsupported verification method: {method}")
        domain = resolve_domain(scope)
        now = self.clock()
        expires_at = now + timedelta(hours=self.config.verification_ttl_hours)

        with self.storage.transaction():
            open_requests = [
                r for r in self.storage.find_requests(user_id=user_id, statuses=OPEN_STATUSES, scope=domain)
                if r["reward_id"] == reward_id
            ]
            existing = open_requests[0] if open_requests else None
            if existing and existing["status"] == VerificationStatus.PROCESSING:
                raise StateConflict("A signature for these rewards is already being checked")
            if existing and existing["status"] == VerificationStatus.VERIFYING and existing["method"] != method:
                raise StateConflict("Evidence for these rewards is already awaiting review")

            eligible = self._eligible_rewards(user_id, domain, reward_id, existing["id"] if existing else None)
            pending_amount = sum((r.amount for r in eligible), Decimal("0"))
            if pending_amount <= 0:
                raise NoPendingRewards("No pending rewards found for verification")

            nonce = message = None
            if method == VerificationMethod.SIGNATURE:
                nonce = generate_nonce(user_id, now, reward_id)
                message = build_challenge_message(user_id, domain, nonce, now, self.config.signing_domain)

            if existing and existing["status"] == VerificationStatus.VERIFYING:
                # Evidence is under review; only the deadline moves.
                record = self.storage.update_request(
                    existing["id"],
                    expires_at=expires_at,
                    updated_at=now,
                    ip_address=ip_address or existing["ip_address"],
                )
                action = AuditAction.REQUEST_REFRESHED
            elif existing:
                record = self.storage.update_request(
                    existing["id"],
                    method=method,
                    nonce=nonce,
                    message_to_sign=message,
                    expires_at=expires_at,
                    updated_at=now,
                    ip_address=ip_address or existing["ip_address"],
                )
                action = AuditAction.REQUEST_REFRESHED
            else:
                record = {
                    "id": uuid4(),
                    "user_id": user_id,
                    "method": method,
                    "status": VerificationStatus.PENDING,
                    "scope": domain,
                    "reward_id": reward_id,
                    "nonce": nonce,
                    "message_to_sign": message,
                    "signature": None,
                    "wallet_address": None,
                    "wallet_network": None,
                    "evidence": None,
                    "risk_score": 0,
                    "risk_level": RiskLevel.LOW,
                    "risk_factors": [],
                    "ip_address": ip_address,
                    "verification_ip": None,
                    "rejection_reason": None,
                    "reviewed_by": None,
                    "admin_override_by": None,
                    "admin_override_reason": None,
                    "created_at": now,
                    "updated_at": now,
                    "expires_at": expires_at,
                    "verified_at": None,
                }
                self.storage.insert_request(record)
                action = AuditAction.REQUEST_CREATED

            for reward in eligible:
                self.storage.update_reward(reward.id, verification_request_id=record["id"])

            self.audit.record(
                record["id"], user_id, action, now,
                details={
                    "method": method,
                    "scope": domain,
                    "reward_id": reward_id,
                    "pending_amount": pending_amount,
                    "expires_at": expires_at,
                },
                ip_address=ip_address,
            )
            notice = {
                "verification_request_id": str(record["id"]),
                "method": method.value,
                "pending_amount": str(pending_amount),
                "expires_at": expires_at.isoformat(),
            }
            self.storage.after_commit(
                lambda: notify_quietly(self.notifier, user_id, "verification_required", notice)
            )

        logger.info(
            "Verification request %s", "refreshed" if existing else "created",
            extra={"verification_request_id": str(record["id"]), "user_id": user_id, "method": method.value},
        )
        return CreateVerificationResponse(
            request_id=record["id"],
            method=method,
            status=record["status"],
            scope=domain,
            expires_at=expires_at,
            pending_amount=pending_amount,
            message_to_sign=message,
            instructions=ASSISTED_INSTRUCTIONS if method == VerificationMethod.ASSISTED else None,
        )

    def _eligible_rewards(
        self,
        user_id: int,
        domain: RewardDomain,
        reward_id: Optional[UUID] = None,
        request_id: Optional[UUID] = None,
    ) -> list[PendingReward]:
        """Pending rewards in scope that no other request is holding."""
        eligible = []
        for record in self.storage.find_rewards(
            user_id=user_id, domain=domain, status=RewardStatus.PENDING_VERIFICATION, reward_id=reward_id,
        ):
            holder = record["verification_request_id"]
            if holder is not None and holder != request_id and self.is_holding(holder):
                continue
            eligible.append(PendingReward(**record))
        return eligible

    def is_holding(self, request_id: UUID) -> bool:
        """Open requests hold their rewards, as do approvals still waiting on settlement."""
        try:
            held = self.storage.get_request(request_id)
        except RequestNotFound:
            return False
        if held["status"] in OPEN_STATUSES:
            return True
        return held["status"] == VerificationStatus.APPROVED and self.storage.completed_execution(request_id) is None

    def _link_rewards(self, request: VerificationRequest) -> Decimal:
        rewards = self._eligible_rewards(request.user_id, request.scope, request.reward_id, request.id)
        for reward in rewards:
            self.storage.update_reward(reward.id, verification_request_id=request.id)
        return sum((r.amount for r in rewards), Decimal("0"))

    def _unlink_rewards(self, request_id: UUID) -> None:
        for record in self.storage.find_rewards(
            verification_request_id=request_id, status=RewardStatus.PENDING_VERIFICATION,
        ):
            self.storage.update_reward(record["id"], verification_request_id=None)

    def _scope_amount(self, request: VerificationRequest) -> Decimal:
        linked = self.storage.find_rewards(verification_request_id=request.id)
        return sum((r["amount"] for r in linked), Decimal("0"))

    # Signature path

    def submit_signature(
        self,
        user_id: int,
        signature: str,
        address: str,
        network,
        request_id: Optional[UUID] = None,
        ip_address: Optional[str] = None,
    ) -> VerificationResult:
        network = parse_network(network)
        address = normalize_address(address, network)
        signature_bytes = normalize_signature(signature)
        now = self.clock()

        with self.storage.transaction():
            request = self._locate_pending(user_id, VerificationMethod.SIGNATURE, request_id)
            if request.is_expired(now):
                self._expire(request, now, ip_address)
                expired_on_arrival = True
            else:
                expired_on_arrival = False
                request = VerificationRequest(**self.storage.transition_request(
                    request.id,
                    [VerificationStatus.PENDING],
                    VerificationStatus.PROCESSING,
                    signature=signature.strip(),
                    wallet_address=address,
                    wallet_network=network,
                    verification_ip=ip_address,
                    updated_at=now,
                ))
                self._open_attempt(request, ip_address, address, network, now)
                self.audit.record(
                    request.id, user_id, AuditAction.SIGNATURE_SUBMITTED, now,
                    details={"wallet_address": address, "network": network},
                    ip_address=ip_address,
                )
                self._apply_risk(request)

        if expired_on_arrival:
            return VerificationResult(
                success=False,
                request_id=request.id,
                status=VerificationStatus.EXPIRED,
                message="Verification request has expired. Please request a new challenge.",
            )

        failure = self._check_signature(request, signature_bytes, address, network)
        now = self.clock()

        with self.storage.transaction():
            if request.is_expired(now):
                self._expire(request, now, ip_address, from_states=[VerificationStatus.PROCESSING])
                return VerificationResult(
                    success=False,
                    request_id=request.id,
                    status=VerificationStatus.EXPIRED,
                    message="Verification request has expired. Please request a new challenge.",
                )
            if failure:
                self._reject(request, failure, now, from_states=[VerificationStatus.PROCESSING], ip_address=ip_address)
                rejected = True
            else:
                request = VerificationRequest(**self.storage.transition_request(
                    request.id,
                    [VerificationStatus.PROCESSING],
                    VerificationStatus.APPROVED,
                    verified_at=now,
                    updated_at=now,
                ))
                self._link_rewards(request)
                self._close_attempt(request.id, True, now)
                self.audit.record(
                    request.id, user_id, AuditAction.APPROVED, now,
                    details={"method": VerificationMethod.SIGNATURE, "wallet_address": address, "network": network},
                    ip_address=ip_address,
                )
                self._apply_risk(request)
                rejected = False

        if rejected:
            logger.info(
                "Signature verification rejected: %s", failure,
                extra={"verification_request_id": str(request.id), "user_id": user_id},
            )
            return VerificationResult(
                success=False,
                request_id=request.id,
                status=VerificationStatus.REJECTED,
                message=failure,
            )

        logger.info(
            "Signature verification approved",
            extra={"verification_request_id": str(request.id), "user_id": user_id, "network": network.value},
        )
        return self._settle(request, "Verification successful. Your rewards have been released.")

    def _check_signature(
        self,
        request: VerificationRequest,
        signature: bytes,
        address: str,
        network: Network,
    ) -> Optional[str]:
        """Return a rejection reason, or None when the signature proves ownership."""
        if not request.nonce or not request.message_to_sign:
            return "No challenge was issued for this request"
        if f"Nonce: {request.nonce}" not in request.message_to_sign:
            return "Challenge message does not contain the issued nonce"
        if not self.verifier.verify(request.message_to_sign, signature, address, network):
            return "Signature does not match the claimed wallet address"
        return None

    # Assisted path

    def submit_assisted(
        self,
        user_id: int,
        evidence: dict,
        request_id: Optional[UUID] = None,
        ip_address: Optional[str] = None,
    ) -> VerificationResult:
        if not isinstance(evidence, dict) or not evidence:
            raise ValidationError("Evidence is required for assisted verification")
        address = network = None
        if evidence.get("network") or evidence.get("wallet_address"):
            network = parse_network(evidence.get("network"))
            address = normalize_address(evidence.get("wallet_address"), network)
        now = self.clock()

        with self.storage.transaction():
            request = self._locate_pending(user_id, VerificationMethod.ASSISTED, request_id)
            if request.is_expired(now):
                self._expire(request, now, ip_address)
                expired = True
            else:
                expired = False
                request = VerificationRequest(**self.storage.transition_request(
                    request.id,
                    [VerificationStatus.PENDING],
                    VerificationStatus.VERIFYING,
                    evidence=dict(evidence),
                    wallet_address=address,
                    wallet_network=network,
                    verification_ip=ip_address,
                    updated_at=now,
                ))
                self._open_attempt(request, ip_address, address, network, now)
                self.audit.record(
                    request.id, user_id, AuditAction.ASSISTED_SUBMITTED, now,
                    details={"evidence_keys": sorted(evidence.keys()), "wallet_address": address},
                    ip_address=ip_address,
                )
                self._apply_risk(request)

        if expired:
            return VerificationResult(
                success=False,
                request_id=request.id,
                status=VerificationStatus.EXPIRED,
                message="Verification request has expired. Please request a new verification.",
            )
        logger.info(
            "Assisted verification submitted for review",
            extra={"verification_request_id": str(request.id), "user_id": user_id},
        )
        return VerificationResult(
            success=True,
            request_id=request.id,
            status=VerificationStatus.VERIFYING,
            message="Your evidence has been submitted and is awaiting review.",
        )

    # Review

    def approve(self, request_id: UUID, reviewer: Principal, reason: Optional[str] = None) -> VerificationResult:
        if not reviewer.is_admin:
            raise AccessDenied("Reviewer access required")
        now = self.clock()

        with self.storage.transaction():
            request = VerificationRequest(**self.storage.get_request(request_id))
            if request.status in REVIEWABLE_STATUSES and request.is_expired(now):
                self._expire(request, now, reviewer.ip_address, from_states=REVIEWABLE_STATUSES)
                expired = True
            else:
                expired = False
                changes = {"verified_at": now, "updated_at": now, "reviewed_by": reviewer.user_id}
                if request.method == VerificationMethod.SIGNATURE:
                    changes["admin_override_by"] = reviewer.user_id
                    changes["admin_override_reason"] = reason or "Manual approval"
                request = VerificationRequest(**self.storage.transition_request(
                    request.id, REVIEWABLE_STATUSES, VerificationStatus.APPROVED, **changes,
                ))
                self._link_rewards(request)
                self._close_attempt(request.id, True, now)
                self.audit.record(
                    request.id, request.user_id, AuditAction.APPROVED, now,
                    details={"reviewer_id": reviewer.user_id, "reason": reason, "method": request.method},
                    ip_address=reviewer.ip_address,
                )
                self._apply_risk(request)

        if expired:
            raise StateConflict("Verification request expired before review")

        logger.info(
            "Verification approved by reviewer",
            extra={"verification_request_id": str(request.id), "reviewer_id": reviewer.user_id},
        )
        return self._settle(request, "Verification approved. Rewards have been released.")

    def reject(self, request_id: UUID, reason: str, reviewer: Principal) -> VerificationResult:
        if not reviewer.is_admin:
            raise AccessDenied("Reviewer access required")
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")
        now = self.clock()

        with self.storage.transaction():
            request = VerificationRequest(**self.storage.get_request(request_id))
            request = self._reject(
                request, reason.strip(), now,
                from_states=REVIEWABLE_STATUSES,
                ip_address=reviewer.ip_address,
                reviewer_id=reviewer.user_id,
            )

        logger.info(
            "Verification rejected by reviewer",
            extra={"verification_request_id": str(request.id), "reviewer_id": reviewer.user_id},
        )
        return VerificationResult(
            success=True,
            request_id=request.id,
            status=VerificationStatus.REJECTED,
            message="Verification rejected",
        )

    # Expiry

    def expire_overdue_requests(self, now: Optional[datetime] = None) -> int:
        """Move every open request past its deadline to ``expired``; safe to re-run."""
        now = now or self.clock()
        overdue = [
            r for r in self.storage.find_requests(statuses=OPEN_STATUSES)
            if r["expires_at"] <= now
        ]
        expired = 0
        for record in overdue:
            try:
                with self.storage.transaction():
                    self._expire(VerificationRequest(**record), now, None, from_states=OPEN_STATUSES)
            except StateConflict:
                # Resolved by a concurrent transition since the scan.
                continue
            expired += 1
        if expired:
            logger.info("Expired overdue verification requests", extra={"count": expired})
        return expired

    # Queries

    def get_status(self, request_id: UUID, principal: Principal) -> VerificationRequest:
        request = VerificationRequest(**self.storage.get_request(request_id))
        if request.user_id != principal.user_id and not principal.is_admin:
            raise RequestNotFound("Verification request not found")
        return request

    def active_request(self, user_id: int) -> Optional[VerificationRequest]:
        found = self.storage.find_requests(user_id=user_id, statuses=OPEN_STATUSES)
        return VerificationRequest(**found[0]) if found else None

    # Internal transitions; callers hold a transaction.

    def _locate_pending(self, user_id: int, method: VerificationMethod, request_id: Optional[UUID]) -> VerificationRequest:
        if request_id is None:
            found = self.storage.find_requests(
                user_id=user_id, statuses=[VerificationStatus.PENDING], method=method,
            )
            if not found:
                raise NoOpenRequest("No open verification request")
            return VerificationRequest(**found[0])

        request = VerificationRequest(**self.storage.get_request(request_id))
        if request.user_id != user_id:
            raise RequestNotFound("Verification request not found")
        if request.method != method:
            raise StateConflict(f"Verification request expects {request.method.value} verification")
        if request.status != VerificationStatus.PENDING:
            raise StateConflict(f"Verification request is already {request.status.value}")
        return request

    def _expire(
        self,
        request: VerificationRequest,
        now: datetime,
        ip_address: Optional[str],
        from_states=(VerificationStatus.PENDING,),
    ) -> VerificationRequest:
        request = VerificationRequest(**self.storage.transition_request(
            request.id, from_states, VerificationStatus.EXPIRED, updated_at=now,
        ))
        self._unlink_rewards(request.id)
        self._close_attempt(request.id, False, now)
        self.audit.record(
            request.id, request.user_id, AuditAction.EXPIRED, now,
            details={"expires_at": request.expires_at}, ip_address=ip_address,
        )
        self._apply_risk(request)
        notice = {"verification_request_id": str(request.id)}
        self.storage.after_commit(
            lambda: notify_quietly(self.notifier, request.user_id, "verification_expired", notice)
        )
        return request

    def _reject(
        self,
        request: VerificationRequest,
        reason: str,
        now: datetime,
        from_states,
        ip_address: Optional[str] = None,
        reviewer_id: Optional[int] = None,
    ) -> VerificationRequest:
        changes = {"rejection_reason": reason, "updated_at": now}
        if reviewer_id is not None:
            changes["reviewed_by"] = reviewer_id
        # Score before unlinking so the amount reflects what was at stake.
        amount = self._scope_amount(request)
        request = VerificationRequest(**self.storage.transition_request(
            request.id, from_states, VerificationStatus.REJECTED, **changes,
        ))
        self._apply_risk(request, amount)
        self._unlink_rewards(request.id)
        self._close_attempt(request.id, False, now)
        self.audit.record(
            request.id, request.user_id, AuditAction.REJECTED, now,
            details={"reason": reason, "reviewer_id": reviewer_id},
            ip_address=ip_address,
        )
        notice = {"verification_request_id": str(request.id), "reason": reason}
        self.storage.after_commit(
            lambda: notify_quietly(self.notifier, request.user_id, "verification_rejected", notice)
        )
        return request

    def _open_attempt(
        self,
        request: VerificationRequest,
        ip_address: Optional[str],
        address: Optional[str],
        network: Optional[Network],
        now: datetime,
    ) -> None:
        self.storage.add_attempt({
            "id": uuid4(),
            "user_id": request.user_id,
            "verification_request_id": request.id,
            "ip_address": ip_address,
            "wallet_address": address,
            "wallet_network": network,
            "success": False,
            "created_at": now,
            "completed_at": None,
        })

    def _close_attempt(self, request_id: UUID, success: bool, now: datetime) -> None:
        for attempt in reversed(self.storage.find_attempts(verification_request_id=request_id)):
            if attempt["completed_at"] is None:
                self.storage.update_attempt(attempt["id"], success=success, completed_at=now)
                return

    def _apply_risk(self, request: VerificationRequest, amount: Optional[Decimal] = None) -> None:
        if amount is None:
            amount = self._scope_amount(request)
        assessment = self.scorer.score(request, amount)
        self.storage.update_request(
            request.id,
            risk_score=assessment.score,
            risk_level=assessment.level,
            risk_factors=assessment.factors,
        )
        if assessment.level == RiskLevel.HIGH:
            logger.warning(
                "High risk verification",
                extra={"verification_request_id": str(request.id), "risk_score": assessment.score},
            )

    def _settle(self, request: VerificationRequest, message: str) -> VerificationResult:
        try:
            settlement = self.router.process_verified_request(request.id)
        except SettlementFailure as e:
            logger.error(
                "Verification approved but settlement deferred: %s", e,
                extra={"verification_request_id": str(request.id), "retry_scheduled": e.retry_scheduled},
            )
            return VerificationResult(
                success=True,
                request_id=request.id,
                status=VerificationStatus.APPROVED,
                message="Verification approved. Reward release is delayed and will be retried automatically.",
                settlement_status="retry_scheduled" if e.retry_scheduled else "operator_review",
            )
        return VerificationResult(
            success=True,
            request_id=request.id,
            status=VerificationStatus.APPROVED,
            message=message,
            settlement_status="completed",
            released_amount=settlement.amount,
        )
