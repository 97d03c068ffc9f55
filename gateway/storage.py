import copy
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, Optional, TypeVar
from uuid import UUID

from .errors import InsufficientPendingBalance, RequestNotFound, StateConflict
from .models import (
    AdminPaymentStatus,
    ExecutionStatus,
    RetryStatus,
    RewardDomain,
    RewardStatus,
    VerificationStatus,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InMemoryStorage:
    """Transactional record store shared by every gateway component.

    One re-entrant lock serialises writers. The outermost transaction
    snapshots all record sets and restores them if the block raises, so a
    failed unit of work leaves no partial mutation behind. Nested
    transactions join the outer one.
    """

    TABLES = (
        "wallets",
        "pending_rewards",
        "verification_requests",
        "verification_attempts",
        "audit_log",
        "execution_log",
        "settlement_retries",
        "admin_payments",
        "idempotency_index",
    )

    def __init__(self):
        self.wallets: dict[int, dict] = {}
        self.pending_rewards: dict[UUID, dict] = {}
        self.verification_requests: dict[UUID, dict] = {}
        self.verification_attempts: dict[UUID, dict] = {}
        self.audit_log: list[dict] = []
        self.execution_log: dict[UUID, dict] = {}
        self.settlement_retries: dict[UUID, dict] = {}
        self.admin_payments: dict[UUID, dict] = {}
        self.idempotency_index: dict[str, UUID] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    # Transactions

    @contextmanager
    def transaction(self):
        self._lock.acquire()
        depth = getattr(self._local, "depth", 0)
        outermost = depth == 0
        snapshot = self._snapshot() if outermost else None
        if outermost:
            self._local.hooks = []
        self._local.depth = depth + 1
        try:
            yield self
        except BaseException:
            if outermost:
                self._restore(snapshot)
            raise
        finally:
            self._local.depth = depth
            hooks = self._local.hooks if outermost else []
            if outermost:
                self._local.hooks = []
            self._lock.release()

        for hook in hooks:
            try:
                hook()
            except Exception:
                logger.exception("Post-commit hook failed", extra={"hook": getattr(hook, "__name__", repr(hook))})

    def with_transaction(self, fn: Callable[["InMemoryStorage"], T]) -> T:
        with self.transaction():
            return fn(self)

    def after_commit(self, hook: Callable[[], None]) -> None:
        """Run ``hook`` once the outermost transaction commits; dropped on rollback."""
        self._require_transaction()
        self._local.hooks.append(hook)

    @property
    def in_transaction(self) -> bool:
        return getattr(self._local, "depth", 0) > 0

    def _require_transaction(self) -> None:
        if not self.in_transaction:
            raise RuntimeError("Store writes must run inside a transaction")

    def _snapshot(self) -> dict:
        return {name: copy.deepcopy(getattr(self, name)) for name in self.TABLES}

    def _restore(self, snapshot: dict) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)

    # Wallets

    def get_wallet(self, user_id: int) -> Optional[dict]:
        with self._lock:
            record = self.wallets.get(user_id)
            return dict(record) if record else None

    def _ensure_wallet(self, user_id: int, now: datetime) -> dict:
        record = self.wallets.get(user_id)
        if record is None:
            record = {
                "user_id": user_id,
                "spendable_balance": Decimal("0"),
                "pending_balance": Decimal("0"),
                "updated_at": now,
            }
            self.wallets[user_id] = record
        return record

    def credit_wallet_pending(self, user_id: int, amount: Decimal, now: datetime) -> dict:
        self._require_transaction()
        record = self._ensure_wallet(user_id, now)
        record["pending_balance"] += amount
        record["updated_at"] = now
        return dict(record)

    def move_pending_to_spendable(self, user_id: int, amount: Decimal, now: datetime) -> dict:
        self._require_transaction()
        record = self.wallets.get(user_id)
        if record is None or record["pending_balance"] < amount:
            available = record["pending_balance"] if record else Decimal("0")
            raise InsufficientPendingBalance(
                f"Pending balance {available} is below release amount {amount} for user {user_id}"
            )
        record["pending_balance"] -= amount
        record["spendable_balance"] += amount
        record["updated_at"] = now
        return dict(record)

    # Pending rewards

    def add_pending_reward(self, record: dict) -> None:
        self._require_transaction()
        self.pending_rewards[record["id"]] = record
        if record.get("idempotency_key"):
            self.idempotency_index[record["idempotency_key"]] = record["id"]

    def get_pending_reward(self, reward_id: UUID) -> Optional[dict]:
        with self._lock:
            record = self.pending_rewards.get(reward_id)
            return dict(record) if record else None

    def reward_for_idempotency_key(self, key: str) -> Optional[dict]:
        with self._lock:
            reward_id = self.idempotency_index.get(key)
            return self.get_pending_reward(reward_id) if reward_id else None

    def find_rewards(
        self,
        user_id: Optional[int] = None,
        domain: Optional[RewardDomain] = None,
        status: Optional[RewardStatus] = None,
        reward_id: Optional[UUID] = None,
        verification_request_id: Optional[UUID] = None,
    ) -> list[dict]:
        with self._lock:
            rewards = [
                dict(r) for r in self.pending_rewards.values()
                if (user_id is None or r["user_id"] == user_id)
                and (domain is None or r["domain"] == domain)
                and (status is None or r["status"] == status)
                and (reward_id is None or r["id"] == reward_id)
                and (verification_request_id is None or r["verification_request_id"] == verification_request_id)
            ]
        rewards.sort(key=lambda r: r["created_at"])
        return rewards

    def update_reward(self, reward_id: UUID, **changes) -> dict:
        self._require_transaction()
        record = self.pending_rewards[reward_id]
        record.update(changes)
        return dict(record)

    # Verification requests

    def insert_request(self, record: dict) -> None:
        self._require_transaction()
        self.verification_requests[record["id"]] = record

    def get_request(self, request_id: UUID) -> dict:
        with self._lock:
            record = self.verification_requests.get(request_id)
            if record is None:
                raise RequestNotFound("Verification request not found")
            return dict(record)

    def find_requests(
        self,
        user_id: Optional[int] = None,
        statuses: Optional[Iterable[VerificationStatus]] = None,
        method=None,
        scope: Optional[RewardDomain] = None,
    ) -> list[dict]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            found = [
                dict(r) for r in self.verification_requests.values()
                if (user_id is None or r["user_id"] == user_id)
                and (wanted is None or r["status"] in wanted)
                and (method is None or r["method"] == method)
                and (scope is None or r["scope"] == scope)
            ]
        found.sort(key=lambda r: r["created_at"], reverse=True)
        return found

    def update_request(self, request_id: UUID, **changes) -> dict:
        self._require_transaction()
        record = self.verification_requests[request_id]
        record.update(changes)
        return dict(record)

    def transition_request(
        self,
        request_id: UUID,
        from_states: Iterable[VerificationStatus],
        to_state: VerificationStatus,
        **changes,
    ) -> dict:
        """Conditional status update: applies only if the current status is in ``from_states``."""
        self._require_transaction()
        record = self.verification_requests.get(request_id)
        if record is None:
            raise RequestNotFound("Verification request not found")
        allowed = set(from_states)
        if record["status"] not in allowed:
            raise StateConflict(
                f"Verification request is {record['status'].value}, expected one of "
                f"{sorted(s.value for s in allowed)}"
            )
        record.update(changes)
        record["status"] = to_state
        return dict(record)

    # Attempts and audit

    def add_attempt(self, record: dict) -> None:
        self._require_transaction()
        self.verification_attempts[record["id"]] = record

    def update_attempt(self, attempt_id: UUID, **changes) -> None:
        self._require_transaction()
        self.verification_attempts[attempt_id].update(changes)

    def find_attempts(self, user_id: Optional[int] = None, verification_request_id: Optional[UUID] = None) -> list[dict]:
        with self._lock:
            attempts = [
                dict(a) for a in self.verification_attempts.values()
                if (user_id is None or a["user_id"] == user_id)
                and (verification_request_id is None or a["verification_request_id"] == verification_request_id)
            ]
        attempts.sort(key=lambda a: a["created_at"])
        return attempts

    def append_audit(self, record: dict) -> None:
        self._require_transaction()
        self.audit_log.append(record)

    def audit_entries(self, verification_request_id: Optional[UUID] = None) -> list[dict]:
        with self._lock:
            return [
                dict(e) for e in self.audit_log
                if verification_request_id is None or e["verification_request_id"] == verification_request_id
            ]

    # Settlement execution log and retry queue

    def add_execution_log(self, record: dict) -> None:
        self._require_transaction()
        if record["status"] == ExecutionStatus.COMPLETED and self.completed_execution(record["verification_request_id"]):
            raise StateConflict("Verification request already settled")
        self.execution_log[record["id"]] = record

    def completed_execution(self, verification_request_id: UUID) -> Optional[dict]:
        with self._lock:
            for record in self.execution_log.values():
                if (record["verification_request_id"] == verification_request_id
                        and record["status"] == ExecutionStatus.COMPLETED):
                    return dict(record)
        return None

    def find_executions(self, verification_request_id: Optional[UUID] = None) -> list[dict]:
        with self._lock:
            records = [
                dict(r) for r in self.execution_log.values()
                if verification_request_id is None or r["verification_request_id"] == verification_request_id
            ]
        records.sort(key=lambda r: r["executed_at"])
        return records

    def get_retry(self, verification_request_id: UUID) -> Optional[dict]:
        with self._lock:
            record = self.settlement_retries.get(verification_request_id)
            return dict(record) if record else None

    def put_retry(self, record: dict) -> None:
        self._require_transaction()
        self.settlement_retries[record["verification_request_id"]] = record

    def find_retries(self, status: Optional[RetryStatus] = None, due_before: Optional[datetime] = None) -> list[dict]:
        with self._lock:
            records = [
                dict(r) for r in self.settlement_retries.values()
                if (status is None or r["status"] == status)
                and (due_before is None or r["next_attempt_at"] <= due_before)
            ]
        records.sort(key=lambda r: r["next_attempt_at"])
        return records

    # Admin payments

    def add_admin_payment(self, record: dict) -> None:
        self._require_transaction()
        self.admin_payments[record["id"]] = record

    def update_admin_payment(self, payment_id: UUID, **changes) -> dict:
        self._require_transaction()
        record = self.admin_payments[payment_id]
        record.update(changes)
        return dict(record)

    def get_admin_payment(self, payment_id: UUID) -> Optional[dict]:
        with self._lock:
            record = self.admin_payments.get(payment_id)
            return dict(record) if record else None

    def find_admin_payments(self, status: Optional[AdminPaymentStatus] = None, due_before: Optional[datetime] = None) -> list[dict]:
        with self._lock:
            records = [
                dict(p) for p in self.admin_payments.values()
                if (status is None or p["status"] == status)
                and (due_before is None or (p["next_attempt_at"] is not None and p["next_attempt_at"] <= due_before))
            ]
        records.sort(key=lambda p: p["created_at"])
        return records
