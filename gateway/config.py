import logging
import os
from decimal import Decimal
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .models import Network


def _get_decimal(name: str, default: str) -> Decimal:
    return Decimal(os.getenv(name, default))


def _get_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class GatewayConfig(BaseModel):
    verification_ttl_hours: int = 24
    signing_domain: str = "rewards.gateway"

    compliance_fee_percentage: Decimal = Decimal("5")
    min_compliance_fee: Decimal = Decimal("1.00")
    max_compliance_fee: Decimal = Decimal("1000.00")

    risk_medium_amount: Decimal = Decimal("5000")
    risk_high_amount: Decimal = Decimal("10000")
    risk_medium_score: int = 40
    risk_high_score: int = 60

    settlement_max_retries: int = 5
    settlement_retry_base_seconds: int = 60
    payment_retry_base_seconds: int = 300

    participation_reward_percentage: Decimal = Decimal("0.01")
    min_participation_reward: Decimal = Decimal("0.10")

    admin_user_ids: frozenset[int] = Field(default_factory=frozenset)
    admin_wallets: dict[Network, str] = Field(default_factory=dict)

    scheduler_enabled: bool = False
    expiry_sweep_seconds: int = 300
    retry_worker_seconds: int = 120
    reconcile_seconds: int = 3600

    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    log_level: str = "INFO"

    def is_admin(self, user_id: Optional[int]) -> bool:
        return user_id is not None and user_id in self.admin_user_ids

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        load_dotenv()

        admin_ids = frozenset(
            int(part) for part in os.getenv("ADMIN_USER_IDS", "").split(",") if part.strip()
        )
        admin_wallets = {}
        for network in Network:
            address = os.getenv(f"ADMIN_{network.value.upper()}_WALLET")
            if address:
                admin_wallets[network] = address.strip()

        cors = (os.getenv("CORS_ORIGINS") or "").strip()
        origins = [o.strip() for o in cors.split(",") if o.strip()] or ["*"]

        return cls(
            verification_ttl_hours=_get_int("VERIFICATION_TTL_HOURS", 24),
            signing_domain=os.getenv("SIGNING_DOMAIN", "rewards.gateway"),
            compliance_fee_percentage=_get_decimal("COMPLIANCE_FEE_PERCENTAGE", "5"),
            min_compliance_fee=_get_decimal("MIN_COMPLIANCE_FEE", "1.00"),
            max_compliance_fee=_get_decimal("MAX_COMPLIANCE_FEE", "1000.00"),
            risk_medium_amount=_get_decimal("RISK_MEDIUM_AMOUNT", "5000"),
            risk_high_amount=_get_decimal("RISK_HIGH_AMOUNT", "10000"),
            risk_medium_score=_get_int("RISK_MEDIUM_SCORE", 40),
            risk_high_score=_get_int("RISK_HIGH_SCORE", 60),
            settlement_max_retries=_get_int("SETTLEMENT_MAX_RETRIES", 5),
            settlement_retry_base_seconds=_get_int("SETTLEMENT_RETRY_BASE_SECONDS", 60),
            payment_retry_base_seconds=_get_int("PAYMENT_RETRY_BASE_SECONDS", 300),
            participation_reward_percentage=_get_decimal("PARTICIPATION_REWARD_PERCENTAGE", "0.01"),
            min_participation_reward=_get_decimal("MIN_PARTICIPATION_REWARD", "0.10"),
            admin_user_ids=admin_ids,
            admin_wallets=admin_wallets,
            scheduler_enabled=_get_bool("SCHEDULER_ENABLED"),
            expiry_sweep_seconds=_get_int("EXPIRY_SWEEP_SECONDS", 300),
            retry_worker_seconds=_get_int("RETRY_WORKER_SECONDS", 120),
            reconcile_seconds=_get_int("RECONCILE_SECONDS", 3600),
            cors_origins=origins,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
