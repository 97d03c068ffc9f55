from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class RewardDomain(str, Enum):
    LOTTERY_PRIZE = "lottery_prize"
    LOTTERY_PARTICIPATION = "lottery_participation"
    AIRDROP_WITHDRAWAL = "airdrop_withdrawal"
    TRADER_WITHDRAWAL = "trader_withdrawal"


class RewardStatus(str, Enum):
    PENDING_VERIFICATION = "pending_verification"
    CLAIMED = "claimed"
    RELEASED = "released"


class VerificationMethod(str, Enum):
    SIGNATURE = "signature"
    ASSISTED = "assisted"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    VERIFYING = "verifying"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_open(self) -> bool:
        return self in OPEN_STATUSES

    @property
    def is_terminal(self) -> bool:
        return not self.is_open


OPEN_STATUSES = frozenset({
    VerificationStatus.PENDING,
    VerificationStatus.PROCESSING,
    VerificationStatus.VERIFYING,
})


class Network(str, Enum):
    ERC20 = "erc20"
    BEP20 = "bep20"
    TRC20 = "trc20"
    POLYGON = "polygon"
    ARBITRUM = "arbitrum"
    OPTIMISM = "optimism"
    AVALANCHE = "avalanche"

    @property
    def is_evm(self) -> bool:
        return self != Network.TRC20


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ExecutionStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class RetryStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXHAUSTED = "exhausted"


class AdminPaymentStatus(str, Enum):
    SCHEDULED = "scheduled"
    SUBMITTED = "submitted"
    RETRY_PENDING = "retry_pending"


class AuditAction(str, Enum):
    REQUEST_CREATED = "request_created"
    REQUEST_REFRESHED = "request_refreshed"
    SIGNATURE_SUBMITTED = "signature_submitted"
    ASSISTED_SUBMITTED = "assisted_submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    SETTLEMENT_COMPLETED = "settlement_completed"
    SETTLEMENT_FAILED = "settlement_failed"
    SETTLEMENT_REQUEUED = "settlement_requeued"


# Domain settlement context, one variant per reward domain.

class LotteryPrizeContext(BaseModel):
    kind: Literal["lottery_prize"] = "lottery_prize"
    lottery_id: Optional[int] = None
    ticket_count: int = 1


class LotteryParticipationContext(BaseModel):
    kind: Literal["lottery_participation"] = "lottery_participation"
    lottery_id: Optional[int] = None
    ticket_count: int = 1


class AirdropWithdrawalContext(BaseModel):
    kind: Literal["airdrop_withdrawal"] = "airdrop_withdrawal"
    network: Network = Network.ERC20
    withdrawal_request_id: Optional[str] = None


class TraderWithdrawalContext(BaseModel):
    kind: Literal["trader_withdrawal"] = "trader_withdrawal"
    account_id: int
    network: Network = Network.ERC20


RewardContext = Annotated[
    Union[
        LotteryPrizeContext,
        LotteryParticipationContext,
        AirdropWithdrawalContext,
        TraderWithdrawalContext,
    ],
    Field(discriminator="kind"),
]


class Wallet(BaseModel):
    user_id: int
    spendable_balance: Decimal = Decimal("0")
    pending_balance: Decimal = Decimal("0")
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PendingReward(BaseModel):
    id: UUID
    user_id: int
    domain: RewardDomain
    amount: Decimal
    status: RewardStatus
    context: RewardContext
    idempotency_key: Optional[str] = None
    verification_request_id: Optional[UUID] = None
    created_at: datetime
    released_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class VerificationRequest(BaseModel):
    id: UUID
    user_id: int
    method: VerificationMethod
    status: VerificationStatus
    scope: RewardDomain
    reward_id: Optional[UUID] = None
    nonce: Optional[str] = None
    message_to_sign: Optional[str] = None
    signature: Optional[str] = None
    wallet_address: Optional[str] = None
    wallet_network: Optional[Network] = None
    evidence: Optional[dict] = None
    risk_score: int = 0
    risk_level: RiskLevel = RiskLevel.LOW
    risk_factors: list[str] = Field(default_factory=list)
    ip_address: Optional[str] = None
    verification_ip: Optional[str] = None
    rejection_reason: Optional[str] = None
    reviewed_by: Optional[int] = None
    admin_override_by: Optional[int] = None
    admin_override_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    verified_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at



class VerificationStatusView(BaseModel):
    """What an owner sees of their own request."""

    id: UUID
    method: VerificationMethod
    status: VerificationStatus
    scope: RewardDomain
    reward_id: Optional[UUID] = None
    message_to_sign: Optional[str] = None
    wallet_address: Optional[str] = None
    wallet_network: Optional[Network] = None
    rejection_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    verified_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class VerificationAttempt(BaseModel):
    id: UUID
    user_id: int
    verification_request_id: UUID
    ip_address: Optional[str] = None
    wallet_address: Optional[str] = None
    wallet_network: Optional[Network] = None
    success: bool = False
    created_at: datetime
    completed_at: Optional[datetime] = None


class AuditLogEntry(BaseModel):
    id: UUID
    verification_request_id: UUID
    user_id: int
    action_type: AuditAction
    action_details: dict = Field(default_factory=dict)
    ip_address: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(frozen=True)


class IntegrationExecutionLog(BaseModel):
    id: UUID
    verification_request_id: UUID
    user_id: int
    domain: Optional[RewardDomain] = None
    action_type: str
    amount: Optional[Decimal] = None
    status: ExecutionStatus
    execution_data: dict = Field(default_factory=dict)
    error_message: Optional[str] = None
    executed_at: datetime


class SettlementRetry(BaseModel):
    verification_request_id: UUID
    user_id: int
    attempts: int = 0
    status: RetryStatus = RetryStatus.PENDING
    next_attempt_at: datetime
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class AdminPayment(BaseModel):
    id: UUID
    verification_request_id: UUID
    user_id: int
    network: Network
    amount: Decimal
    status: AdminPaymentStatus
    reference: Optional[str] = None
    metadata: dict = Field(default_factory=dict)
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime


# Request / response bodies

class CreditRewardRequest(BaseModel):
    user_id: int
    domain: RewardDomain
    amount: Decimal
    context: Optional[RewardContext] = None
    idempotency_key: Optional[str] = Field(default=None, description="Replay-safe producer key")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": 42,
            "domain": "lottery_prize",
            "amount": "100.50",
            "context": {"kind": "lottery_prize", "lottery_id": 7},
            "idempotency_key": "lottery-7-winner-42",
        }
    })


class CreateVerificationRequest(BaseModel):
    method: VerificationMethod = VerificationMethod.SIGNATURE
    scope: str = Field(default=RewardDomain.LOTTERY_PRIZE.value, description="Verification type or alias")
    reward_id: Optional[UUID] = None


class SubmitSignatureRequest(BaseModel):
    request_id: Optional[UUID] = None
    signature: str
    address: str
    network: str


class SubmitAssistedRequest(BaseModel):
    request_id: Optional[UUID] = None
    evidence: dict = Field(..., description="Wallet-ownership proof material")


class ApproveRequest(BaseModel):
    reason: Optional[str] = None


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class CreateVerificationResponse(BaseModel):
    request_id: UUID
    method: VerificationMethod
    status: VerificationStatus
    scope: RewardDomain
    expires_at: datetime
    pending_amount: Decimal
    message_to_sign: Optional[str] = None
    instructions: Optional[str] = None


class VerificationResult(BaseModel):
    success: bool
    request_id: UUID
    status: VerificationStatus
    message: str
    settlement_status: Optional[str] = None
    released_amount: Optional[Decimal] = None


class SettlementResult(BaseModel):
    verification_request_id: UUID
    domain: RewardDomain
    action: str
    amount: Decimal
    compliance_fee: Decimal
    admin_payment_id: Optional[UUID] = None
    reward_ids: list[UUID] = Field(default_factory=list)
    already_settled: bool = False


class WalletSummary(BaseModel):
    wallet: Wallet
    rewards: list[PendingReward]
    active_request: Optional[VerificationStatusView] = None
    can_claim: bool


class Principal(BaseModel):
    user_id: int
    is_admin: bool = False
    ip_address: Optional[str] = None


class RiskAssessment(BaseModel):
    score: int
    level: RiskLevel
    factors: list[str] = Field(default_factory=list)
