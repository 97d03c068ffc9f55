"""
Verified Release Gateway

Escrowed rewards are released to a user's spendable balance only after the
user proves control of a withdrawal wallet:
- Pending / spendable escrow ledger per user
- Reward producers for lottery prizes, participation bonuses and withdrawals
- Signature (EVM and Tron) and reviewer-assisted wallet verification
- Advisory risk scoring and compliance reporting
- Idempotent settlement with a retry queue and compliance fee scheduling
"""

from .models import (
    RewardDomain,
    RewardStatus,
    VerificationMethod,
    VerificationStatus,
    Network,
    Wallet,
    PendingReward,
    VerificationRequest,
)
from .config import GatewayConfig
from .service import GatewayService

__all__ = [
    "RewardDomain",
    "RewardStatus",
    "VerificationMethod",
    "VerificationStatus",
    "Network",
    "Wallet",
    "PendingReward",
    "VerificationRequest",
    "GatewayConfig",
    "GatewayService",
]
