import csv
import io
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional, Union
from uuid import UUID

from .audit import AuditLog, to_jsonable
from .config import GatewayConfig
from .errors import AccessDenied, ValidationError
from .escrow import utcnow
from .models import (
    AuditAction,
    AuditLogEntry,
    Principal,
    RewardDomain,
    RiskAssessment,
    RiskLevel,
    VerificationAttempt,
    VerificationMethod,
    VerificationRequest,
    VerificationStatus,
)
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

FAILED_ATTEMPT_THRESHOLD = 3
DISTINCT_IP_THRESHOLD = 3

EXPORT_COLUMNS = [
    ("Verification ID", "verification_id"),
    ("User ID", "user_id"),
    ("Scope", "scope"),
    ("Method", "verification_method"),
    ("Wallet Address", "wallet_address"),
    ("Network", "wallet_network"),
    ("Status", "status"),
    ("Risk Score", "risk_score"),
    ("Risk Level", "risk_level"),
    ("Created At", "created_at"),
    ("Verified At", "verified_at"),
    ("Expires At", "expires_at"),
]

SENSITIVE_COLUMNS = [
    ("Rejection Reason", "rejection_reason"),
    ("Reviewed By", "reviewed_by"),
    ("Admin Override By", "admin_override_by"),
    ("Admin Override Reason", "admin_override_reason"),
    ("IP Address", "ip_address"),
    ("Verification IP", "verification_ip"),
]


def failed_attempts(attempts: list[VerificationAttempt]) -> list[VerificationAttempt]:
    return [a for a in attempts if a.completed_at is not None and not a.success]


def distinct_ips(attempts: list[VerificationAttempt]) -> set[str]:
    return {a.ip_address for a in attempts if a.ip_address}


class RiskScorer:
    """Advisory scoring of verification requests; never gates a transition."""

    def __init__(self, storage: InMemoryStorage, config: GatewayConfig):
        self.storage = storage
        self.config = config

    def score(self, request: VerificationRequest, amount: Decimal) -> RiskAssessment:
        attempts = [VerificationAttempt(**a) for a in self.storage.find_attempts(user_id=request.user_id)]
        prior = [a for a in attempts if a.verification_request_id != request.id]
        return self.assess(request, amount, attempts, prior)

    def assess(
        self,
        request: VerificationRequest,
        amount: Decimal,
        attempts: list[VerificationAttempt],
        prior_attempts: list[VerificationAttempt],
    ) -> RiskAssessment:
        score = 0
        factors = []

        if not prior_attempts:
            score += 10
            factors.append("first_time_verification")

        if len(failed_attempts(attempts)) > FAILED_ATTEMPT_THRESHOLD:
            score += 30
            factors.append("multiple_failed_attempts")

        if len(distinct_ips(attempts)) > DISTINCT_IP_THRESHOLD:
            score += 25
            factors.append("multiple_ip_addresses")

        if amount > self.config.risk_high_amount:
            score += 35
            factors.append("high_value_transaction")
        elif amount > self.config.risk_medium_amount:
            score += 20
            factors.append("medium_value_transaction")

        if request.admin_override_by is not None:
            score += 15
            factors.append("admin_override")

        score = min(score, 100)
        if score >= self.config.risk_high_score:
            level = RiskLevel.HIGH
        elif score >= self.config.risk_medium_score:
            level = RiskLevel.MEDIUM
        else:
            level = RiskLevel.LOW
        return RiskAssessment(score=score, level=level, factors=factors)


def generate_flags(
    request: VerificationRequest,
    audit_entries: list[AuditLogEntry],
    attempts: list[VerificationAttempt],
) -> list[dict]:
    flags = []

    if request.risk_level == RiskLevel.HIGH:
        flags.append({
            "type": "high_risk",
            "severity": "high",
            "message": "Verification flagged as high risk",
            "details": list(request.risk_factors),
        })

    failed = failed_attempts(attempts)
    if len(failed) > FAILED_ATTEMPT_THRESHOLD:
        flags.append({
            "type": "multiple_failed_attempts",
            "severity": "medium",
            "message": "Multiple failed verification attempts detected",
            "count": len(failed),
        })

    ips = distinct_ips(attempts)
    if len(ips) > DISTINCT_IP_THRESHOLD:
        flags.append({
            "type": "multiple_ip_addresses",
            "severity": "medium",
            "message": "Verification attempts from multiple IP addresses",
            "ip_count": len(ips),
        })

    if request.admin_override_by is not None:
        approvals = [e for e in audit_entries if e.action_type == AuditAction.APPROVED]
        flags.append({
            "type": "admin_override",
            "severity": "info",
            "message": "Verification manually approved by admin",
            "admin_id": request.admin_override_by,
            "reason": request.admin_override_reason,
            "approved_at": approvals[-1].created_at.isoformat() if approvals else None,
        })

    return flags


class ComplianceReporter:
    """Read-only reports and exports over verification requests and their audit trail."""

    def __init__(
        self,
        storage: InMemoryStorage,
        audit: AuditLog,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.audit = audit
        self.clock = clock

    def generate_report(self, request_id: UUID, principal: Principal) -> dict:
        request = VerificationRequest(**self.storage.get_request(request_id))
        if request.user_id != principal.user_id and not principal.is_admin:
            raise AccessDenied("You do not have access to this report")

        audit_entries = self.audit.entries_for(request.id)
        attempts = [
            VerificationAttempt(**a)
            for a in self.storage.find_attempts(verification_request_id=request.id)
        ]
        executions = self.storage.find_executions(request.id)

        return {
            "verification_id": str(request.id),
            "report_generated_at": self.clock().isoformat(),
            "verification_details": {
                "user_id": request.user_id,
                "scope": request.scope.value,
                "verification_method": request.method.value,
                "wallet_address": request.wallet_address,
                "wallet_network": request.wallet_network.value if request.wallet_network else None,
                "status": request.status.value,
                "risk_score": request.risk_score,
                "risk_level": request.risk_level.value,
                "risk_factors": list(request.risk_factors),
                "created_at": request.created_at.isoformat(),
                "expires_at": request.expires_at.isoformat(),
                "verified_at": request.verified_at.isoformat() if request.verified_at else None,
                "rejection_reason": request.rejection_reason,
            },
            "security_metadata": {
                "ip_address": request.ip_address,
                "verification_ip": request.verification_ip,
            },
            "audit_trail": [
                {
                    "action_type": e.action_type.value,
                    "action_details": e.action_details,
                    "ip_address": e.ip_address,
                    "timestamp": e.created_at.isoformat(),
                }
                for e in audit_entries
            ],
            "verification_attempts": [
                {
                    "ip_address": a.ip_address,
                    "wallet_address": a.wallet_address,
                    "wallet_network": a.wallet_network.value if a.wallet_network else None,
                    "success": a.success,
                    "created_at": a.created_at.isoformat(),
                    "completed_at": a.completed_at.isoformat() if a.completed_at else None,
                }
                for a in attempts
            ],
            "settlements": [to_jsonable(e) for e in executions],
            "compliance_flags": generate_flags(request, audit_entries, attempts),
        }

    def _requests_between(
        self,
        start_date: date,
        end_date: date,
        scope: Optional[RewardDomain] = None,
        status: Optional[VerificationStatus] = None,
        method: Optional[VerificationMethod] = None,
    ) -> list[VerificationRequest]:
        if start_date > end_date:
            raise ValidationError("start_date must not be after end_date")
        requests = [
            VerificationRequest(**r)
            for r in self.storage.find_requests(
                statuses=[status] if status else None, method=method, scope=scope,
            )
            if start_date <= r["created_at"].date() <= end_date
        ]
        requests.sort(key=lambda r: r.created_at)
        return requests

    def export(
        self,
        principal: Principal,
        start_date: date,
        end_date: date,
        fmt: str = "json",
        include_sensitive: bool = False,
        scope: Optional[RewardDomain] = None,
        status: Optional[VerificationStatus] = None,
        method: Optional[VerificationMethod] = None,
    ) -> Union[dict, str]:
        if not principal.is_admin:
            raise AccessDenied("Admin access required")
        if fmt not in ("json", "csv"):
            raise ValidationError("Export format must be json or csv")

        requests = self._requests_between(start_date, end_date, scope, status, method)
        columns = EXPORT_COLUMNS + (SENSITIVE_COLUMNS if include_sensitive else [])
        rows = [self._export_row(r, columns) for r in requests]

        logger.info(
            "Compliance export generated",
            extra={"exported_by": principal.user_id, "records": len(rows), "export_format": fmt},
        )

        if fmt == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer)
            writer.writerow([header for header, _ in columns])
            for row in rows:
                writer.writerow(["" if row[key] is None else row[key] for _, key in columns])
            return buffer.getvalue()

        return {
            "export_metadata": {
                "exported_at": self.clock().isoformat(),
                "exported_by": principal.user_id,
                "date_range": {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
                "filters": {
                    "scope": scope.value if scope else None,
                    "status": status.value if status else None,
                    "method": method.value if method else None,
                },
                "format": "json",
                "include_sensitive": include_sensitive,
                "total_records": len(rows),
            },
            "verifications": rows,
        }

    def _export_row(self, request: VerificationRequest, columns) -> dict:
        values = {
            "verification_id": str(request.id),
            "user_id": request.user_id,
            "scope": request.scope.value,
            "verification_method": request.method.value,
            "wallet_address": request.wallet_address,
            "wallet_network": request.wallet_network.value if request.wallet_network else None,
            "status": request.status.value,
            "risk_score": request.risk_score,
            "risk_level": request.risk_level.value,
            "created_at": request.created_at.isoformat(),
            "verified_at": request.verified_at.isoformat() if request.verified_at else None,
            "expires_at": request.expires_at.isoformat(),
            "rejection_reason": request.rejection_reason,
            "reviewed_by": request.reviewed_by,
            "admin_override_by": request.admin_override_by,
            "admin_override_reason": request.admin_override_reason,
            "ip_address": request.ip_address,
            "verification_ip": request.verification_ip,
        }
        return {key: values[key] for _, key in columns}

    def stats(self, principal: Principal, start_date: date, end_date: date) -> dict:
        if not principal.is_admin:
            raise AccessDenied("Admin access required")
        requests = self._requests_between(start_date, end_date)
        total = len(requests)
        by_status = {s.value: 0 for s in VerificationStatus}
        by_scope = {d.value: 0 for d in RewardDomain}
        for r in requests:
            by_status[r.status.value] += 1
            by_scope[r.scope.value] += 1
        high_risk = sum(1 for r in requests if r.risk_level == RiskLevel.HIGH)
        overrides = sum(1 for r in requests if r.admin_override_by is not None)
        return {
            "date_range": {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
            "total_verifications": total,
            "by_status": by_status,
            "by_scope": by_scope,
            "high_risk_count": high_risk,
            "high_risk_percentage": round(high_risk / total * 100, 2) if total else 0.0,
            "admin_override_count": overrides,
        }
