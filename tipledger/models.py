from datetime import date, datetime
from enum import Enum
from typing import Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ReferralStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CLOSED = "closed"


class MilestoneStatus(str, Enum):
    REWARDED = "rewarded"
    REVERSED = "reversed"


class EventType(str, Enum):
    EARNED = "EARNED"
    REVERSAL = "REVERSAL"


class EarnerStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class FlagSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class BatchStatus(str, Enum):
    GENERATING = "generating"
    GENERATED = "generated"
    FAILED = "failed"
    PAID = "paid"


class ItemType(str, Enum):
    EARNER = "EARNER"
    FEE_DEDUCTION = "FEE_DEDUCTION"


class ItemStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class Earner(BaseModel):
    id: UUID
    status: str = EarnerStatus.ACTIVE.value
    lifetime_gross_tips: int = 0
    lifetime_net_tips: int = 0
    lifetime_payouts: int = 0

    model_config = ConfigDict(from_attributes=True)

    @property
    def unpaid_balance(self) -> int:
        return self.lifetime_net_tips - self.lifetime_payouts


class ReferralRelationship(BaseModel):
    id: UUID
    referrer_id: UUID
    referred_earner_id: UUID
    status: ReferralStatus = ReferralStatus.PENDING
    milestone_reached_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Milestone(BaseModel):
    id: UUID
    referral_id: UUID
    referrer_id: UUID
    earner_id: UUID
    milestone_amount: int
    reward_amount: int
    earner_gross_at_milestone: int
    status: MilestoneStatus
    rewarded_at: datetime
    reversed_at: Optional[datetime] = None
    reversal_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def can_reverse(self) -> bool:
        return self.status == MilestoneStatus.REWARDED


class LedgerEntry(BaseModel):
    id: UUID
    referrer_id: UUID
    milestone_id: Optional[UUID] = None
    event_type: EventType
    amount: int
    balance_after: int
    reversal_reference_id: Optional[UUID] = None
    description: str = ""
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AbuseFlag(BaseModel):
    id: UUID
    earner_id: UUID
    flag_type: str
    severity: FlagSeverity
    status: str = "active"

    model_config = ConfigDict(from_attributes=True)


class PayoutBatch(BaseModel):
    id: UUID
    batch_number: str
    period_start_date: date
    period_end_date: date
    processed_date: date
    status: BatchStatus
    forced: bool = False
    total_amount: int = 0
    total_transfer_fees: int = 0
    total_fee_deductions: int = 0
    total_net_amount: int = 0
    total_beneficiaries: int = 0
    created_at: datetime
    paid_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PayoutBatchItem(BaseModel):
    id: UUID
    payout_batch_id: Optional[UUID] = None
    earner_id: UUID
    item_type: ItemType
    amount: int
    fee: int = 0
    net_amount: int
    status: ItemStatus = ItemStatus.PENDING
    description: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Results of the store's atomic operations. Each call returns exactly one of
# a success type or ``RpcFailure``; callers branch on ``isinstance``.

class AwardSuccess(BaseModel):
    outcome: Literal["ok"] = "ok"
    milestone_id: UUID
    ledger_entry: LedgerEntry
    balance_after: int


class ReversalSuccess(BaseModel):
    outcome: Literal["ok"] = "ok"
    reversal_id: UUID
    balance_after: int


class RpcFailure(BaseModel):
    outcome: Literal["error"] = "error"
    code: str
    message: str


AwardOutcome = Union[AwardSuccess, RpcFailure]
ReversalOutcome = Union[ReversalSuccess, RpcFailure]


class MilestoneConfig(BaseModel):
    enabled: bool
    threshold_cents: int
    reward_cents: int


class ReversalConfig(BaseModel):
    enabled: bool
    window_days: int
    check_abuse_flags: bool
    check_earner_activity: bool
    min_retention: float


class MilestoneAward(BaseModel):
    milestone_id: UUID
    referrer_id: UUID
    referral_id: UUID
    earner_id: UUID
    reward_amount: int
    balance_after: Optional[int] = None


class ReversalRecord(BaseModel):
    milestone_id: UUID
    referrer_id: UUID
    referral_id: UUID
    earner_id: UUID
    original_earned_id: UUID
    reversal_amount: int
    reversal_reason: str
    balance_after: Optional[int] = None


class EvaluationSummary(BaseModel):
    total_candidates: int = 0
    processed: int = 0
    total_amount: int = 0
    errors: list[str] = Field(default_factory=list)


class MilestoneSummary(EvaluationSummary):
    config: MilestoneConfig
    records: list[MilestoneAward] = Field(default_factory=list)


class ReversalSummary(EvaluationSummary):
    config: ReversalConfig
    records: list[ReversalRecord] = Field(default_factory=list)


class ExportRow(BaseModel):
    batch_number: str
    earner_id: UUID
    item_type: ItemType
    item_id: UUID
    amount: int
    fee: int
    net_amount: int


class BatchResult(BaseModel):
    batch: PayoutBatch
    items: list[PayoutBatchItem]
    claimed_fee_items: list[PayoutBatchItem]
    export_rows: list[ExportRow]
    csv: str
    milestones: Optional[MilestoneSummary] = None
    reversals: Optional[ReversalSummary] = None


class BatchDetail(BaseModel):
    batch: PayoutBatch
    items: list[PayoutBatchItem]


class PayoutPeriodRequest(BaseModel):
    period_start_date: Optional[str] = Field(default=None, description="YYYY-MM-DD, defaults to previous Saturday")
    period_end_date: Optional[str] = Field(default=None, description="YYYY-MM-DD, defaults to start + 6 days")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "period_start_date": "2026-10-10",
            "period_end_date": "2026-10-16",
        }
    })


class GeneratePayoutRequest(PayoutPeriodRequest):
    force: bool = False
    run_referrals: bool = True


class FeeDeductionRequest(BaseModel):
    amount: Optional[int] = Field(default=None, description="Cents; defaults to the replacement fee")
    description: Optional[str] = None
