import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional
from uuid import uuid4

from pydantic import TypeAdapter

from .config import GatewayConfig
from .errors import StateConflict, ValidationError
from .escrow import EscrowLedger, to_money, utcnow
from .models import (
    AirdropWithdrawalContext,
    LotteryParticipationContext,
    LotteryPrizeContext,
    Network,
    PendingReward,
    RewardContext,
    RewardDomain,
    RewardStatus,
    TraderWithdrawalContext,
)
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

context_adapter = TypeAdapter(RewardContext)

DEFAULT_CONTEXTS = {
    RewardDomain.LOTTERY_PRIZE: LotteryPrizeContext,
    RewardDomain.LOTTERY_PARTICIPATION: LotteryParticipationContext,
    RewardDomain.AIRDROP_WITHDRAWAL: AirdropWithdrawalContext,
}


class RewardProducer:
    """Upstream writers that escrow earned value until the owner verifies a wallet."""

    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: EscrowLedger,
        config: GatewayConfig,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.ledger = ledger
        self.config = config
        self.clock = clock

    def credit_pending_reward(
        self,
        user_id: int,
        domain: RewardDomain,
        amount,
        context=None,
        idempotency_key: Optional[str] = None,
    ) -> PendingReward:
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError("Reward amount must be positive")
        domain = RewardDomain(domain)
        context = self._build_context(domain, context)

        with self.storage.transaction():
            if idempotency_key:
                existing = self.storage.reward_for_idempotency_key(idempotency_key)
                if existing:
                    if existing["user_id"] != user_id or existing["amount"] != amount:
                        raise StateConflict("Idempotency key already used for a different reward")
                    return PendingReward(**existing)

            record = {
                "id": uuid4(),
                "user_id": user_id,
                "domain": domain,
                "amount": amount,
                "status": RewardStatus.PENDING_VERIFICATION,
                "context": context.model_dump(mode="json"),
                "idempotency_key": idempotency_key,
                "verification_request_id": None,
                "created_at": self.clock(),
                "released_at": None,
            }
            self.storage.add_pending_reward(record)
            self.ledger.credit_pending(user_id, amount)

        logger.info(
            "Pending reward credited",
            extra={"user_id": user_id, "domain": domain.value, "amount": str(amount)},
        )
        return PendingReward(**record)

    def _build_context(self, domain: RewardDomain, context):
        if context is None:
            factory = DEFAULT_CONTEXTS.get(domain)
            if factory is None:
                raise ValidationError(f"{domain.value} rewards require a settlement context")
            return factory()
        if isinstance(context, dict):
            context = context_adapter.validate_python({"kind": domain.value, **context})
        if context.kind != domain.value:
            raise ValidationError("Settlement context does not match reward domain")
        return context

    def record_lottery_draw(
        self,
        lottery_id: int,
        winner_user_id: int,
        prize_amount,
        tickets_by_user: dict[int, int],
        ticket_price,
    ) -> list[PendingReward]:
        """Escrow the grand prize and a participation bonus for every ticket holder."""
        ticket_price = to_money(ticket_price)
        per_ticket = (ticket_price * self.config.participation_reward_percentage).quantize(Decimal("0.00000001"))
        if per_ticket < self.config.min_participation_reward:
            per_ticket = self.config.min_participation_reward

        created = []
        with self.storage.transaction():
            for user_id, ticket_count in sorted(tickets_by_user.items()):
                if ticket_count <= 0:
                    continue
                created.append(self.credit_pending_reward(
                    user_id,
                    RewardDomain.LOTTERY_PARTICIPATION,
                    per_ticket * ticket_count,
                    LotteryParticipationContext(lottery_id=lottery_id, ticket_count=ticket_count),
                    idempotency_key=f"lottery-{lottery_id}-participation-{user_id}",
                ))
            created.append(self.credit_pending_reward(
                winner_user_id,
                RewardDomain.LOTTERY_PRIZE,
                prize_amount,
                LotteryPrizeContext(lottery_id=lottery_id, ticket_count=tickets_by_user.get(winner_user_id, 1)),
                idempotency_key=f"lottery-{lottery_id}-prize-{winner_user_id}",
            ))
        return created

    def record_airdrop_withdrawal(
        self,
        user_id: int,
        amount,
        network: Network = Network.ERC20,
        withdrawal_request_id: Optional[str] = None,
    ) -> PendingReward:
        return self.credit_pending_reward(
            user_id,
            RewardDomain.AIRDROP_WITHDRAWAL,
            amount,
            AirdropWithdrawalContext(network=network, withdrawal_request_id=withdrawal_request_id),
            idempotency_key=f"airdrop-{withdrawal_request_id}" if withdrawal_request_id else None,
        )

    def record_trader_withdrawal(
        self,
        user_id: int,
        account_id: int,
        amount,
        network: Network = Network.ERC20,
    ) -> PendingReward:
        return self.credit_pending_reward(
            user_id,
            RewardDomain.TRADER_WITHDRAWAL,
            amount,
            TraderWithdrawalContext(account_id=account_id, network=network),
        )
