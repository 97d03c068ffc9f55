import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from .errors import InsufficientPendingBalance, ValidationError
from .models import RewardStatus, Wallet
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

MONEY_QUANTUM = Decimal("0.00000001")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_money(value) -> Decimal:
    """Coerce a caller-supplied amount to an exact 8-place Decimal.

    Floats are refused outright; strings and ints are parsed exactly. Values
    carrying more precision than 8 places are rejected rather than rounded.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError("Amount must be an exact decimal, not a float")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError("Amount is not a valid decimal")
    if not amount.is_finite():
        raise ValidationError("Amount must be finite")
    quantized = amount.quantize(MONEY_QUANTUM)
    if quantized != amount:
        raise ValidationError("Amount has more than 8 decimal places")
    return quantized


class EscrowLedger:
    def __init__(self, storage: InMemoryStorage, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.clock = clock

    def get_wallet(self, user_id: int) -> Wallet:
        record = self.storage.get_wallet(user_id)
        if record is None:
            return Wallet(user_id=user_id)
        return Wallet(**record)

    def credit_pending(self, user_id: int, amount) -> Wallet:
        amount = to_money(amount)
        if amount < 0:
            raise ValidationError("Pending credit must not be negative")
        with self.storage.transaction():
            record = self.storage.credit_wallet_pending(user_id, amount, self.clock())
        return Wallet(**record)

    def release_pending_to_spendable(self, user_id: int, amount) -> Wallet:
        amount = to_money(amount)
        if amount < 0:
            raise ValidationError("Release amount must not be negative")
        try:
            with self.storage.transaction():
                record = self.storage.move_pending_to_spendable(user_id, amount, self.clock())
        except InsufficientPendingBalance as e:
            logger.critical(
                "Escrow consistency fault: %s", e,
                extra={"user_id": user_id, "amount": str(amount)},
            )
            raise
        return Wallet(**record)

    def pending_reward_total(self, user_id: int) -> Decimal:
        rewards = self.storage.find_rewards(user_id=user_id, status=RewardStatus.PENDING_VERIFICATION)
        return sum((r["amount"] for r in rewards), Decimal("0"))

    def reconcile(self, user_id: Optional[int] = None) -> list[dict]:
        """Compare pending balances with outstanding rewards; report, never correct."""
        user_ids = [user_id] if user_id is not None else list(self.storage.wallets.keys())
        mismatches = []
        for uid in user_ids:
            wallet = self.get_wallet(uid)
            expected = self.pending_reward_total(uid)
            if wallet.pending_balance != expected:
                mismatch = {
                    "user_id": uid,
                    "pending_balance": wallet.pending_balance,
                    "outstanding_rewards": expected,
                    "difference": wallet.pending_balance - expected,
                }
                logger.critical("Pending balance does not match outstanding rewards", extra=mismatch)
                mismatches.append(mismatch)
        return mismatches
