from datetime import date, datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class TransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class TransactionSource(str, Enum):
    NEWS_READING = "news_reading"
    AD_WATCH = "ad_watch"
    TRIVIA = "trivia"
    GAME = "game"
    MISSION = "mission"
    OFFERWALL = "offerwall"
    SURVEY = "survey"
    REFERRAL = "referral"
    WITHDRAWAL = "withdrawal"
    WITHDRAWAL_REFUND = "withdrawal_refund"
    ADJUSTMENT = "adjustment"
    ACCOUNT_MERGE = "account_merge"


# Sources that count towards category totals and lifetime earnings.
EARNING_SOURCES = frozenset({
    TransactionSource.NEWS_READING,
    TransactionSource.AD_WATCH,
    TransactionSource.TRIVIA,
    TransactionSource.GAME,
    TransactionSource.MISSION,
    TransactionSource.OFFERWALL,
    TransactionSource.SURVEY,
    TransactionSource.REFERRAL,
})


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"


class WithdrawalMethod(str, Enum):
    AIRTIME = "airtime"
    GIFT_CARD = "gift_card"
    BANK_TRANSFER = "bank_transfer"
    MOBILE_MONEY = "mobile_money"


class WithdrawalAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class MissionStatus(str, Enum):
    AVAILABLE = "available"
    IN_PROGRESS = "in_progress"
    REVIEWING = "reviewing"
    COMPLETED = "completed"


class MissionAction(str, Enum):
    START = "start"
    COMPLETE_STEP = "complete_step"
    SUBMIT_PROOF = "submit_proof"
    COMPLETE = "complete"
    REJECT_PROOF = "reject_proof"


class OfferStatus(str, Enum):
    CREDITED = "credited"
    REVERSED = "reversed"


# ---- records ----------------------------------------------------------------

class User(BaseModel):
    id: str
    email: Optional[str] = None
    total_points: int = 0
    total_earned: int = 0
    daily_streak: int = 0
    last_active_date: Optional[date] = None
    category_points: dict[TransactionSource, int] = Field(default_factory=dict)
    timezone: str = "UTC"
    email_verified: bool = False
    phone_verified: bool = False
    is_active: bool = True
    merged_into: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Transaction(BaseModel):
    id: str
    user_id: str
    type: TransactionType
    amount: int
    source: TransactionSource
    source_id: Optional[str] = None
    status: str = "completed"
    description: str
    balance_after: int
    metadata: dict = Field(default_factory=dict)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def signed_amount(self) -> int:
        return self.amount if self.type == TransactionType.CREDIT else -self.amount


class RewardRecord(BaseModel):
    key: str
    user_id: str
    action_id: str
    source: TransactionSource
    eligible: bool = True
    points_earned: int = 0
    transaction_id: Optional[str] = None
    created_at: datetime


class DailyProgress(BaseModel):
    user_id: str
    date_key: date
    ads_watched: int = 0
    stories_read: int = 0
    trivia_completed: int = 0
    games_played: int = 0
    points_earned: int = 0


class Withdrawal(BaseModel):
    id: str
    user_id: str
    amount: int
    amount_usd: float
    method: WithdrawalMethod
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    phone_number: Optional[str] = None
    country_code: Optional[str] = None
    email: Optional[str] = None
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    account_name: Optional[str] = None
    product_id: Optional[int] = None
    debit_transaction_id: Optional[str] = None
    refund_transaction_id: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    auto_payout: bool = False
    payout_reference: Optional[str] = None
    delivered_amount: Optional[float] = None
    delivered_currency: Optional[str] = None
    last_error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def can_process(self) -> bool:
        return self.status == WithdrawalStatus.PENDING


class Mission(BaseModel):
    id: str
    title: str
    payout: int = Field(..., gt=0)
    steps: list[str] = Field(default_factory=list)
    requires_proof: bool = False
    is_active: bool = True
    created_at: datetime


class MissionProgress(BaseModel):
    user_id: str
    mission_id: str
    status: MissionStatus = MissionStatus.AVAILABLE
    completed_steps: list[str] = Field(default_factory=list)
    proof_urls: list[str] = Field(default_factory=list)
    points_earned: int = 0
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class OfferCompletion(BaseModel):
    id: str
    provider: str
    transaction_id: str
    user_id: str
    offer_id: Optional[str] = None
    payout: int
    status: OfferStatus
    clawed_back: int = 0
    shortfall: int = 0
    created_at: datetime
    updated_at: datetime


# ---- requests ---------------------------------------------------------------

class CreateUserRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    email: Optional[str] = None
    timezone: Optional[str] = None
    email_verified: bool = False
    phone_verified: bool = False


class SubmitActionRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    action_id: str = Field(..., min_length=1, description="Story id, ad view id, trivia id...")
    source: TransactionSource
    base_points: Optional[int] = Field(
        default=None, ge=0, description="Price for externally priced sources; ignored where a rate is configured",
    )
    eligible: bool = Field(default=True, description="False records the action without paying (e.g. wrong quiz answer)")
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "user-123",
            "action_id": "story-42",
            "source": "news_reading",
            "eligible": True,
        }
    })


class ReferralRequest(BaseModel):
    referrer_user_id: str
    referred_user_id: str


class WalletAdjustmentRequest(BaseModel):
    user_id: str
    amount: int = Field(..., description="Signed points; negative debits")
    reason: str = Field(..., min_length=1)
    admin_id: Optional[str] = None


class MergeAnonymousRequest(BaseModel):
    anon_id: str = Field(..., min_length=1, description="Anonymous session token, with or without the anon: prefix")


class CreateWithdrawalRequest(BaseModel):
    user_id: str
    amount: int = Field(..., gt=0, description="Points to redeem")
    method: WithdrawalMethod
    phone_number: Optional[str] = None
    country_code: Optional[str] = None
    email: Optional[str] = None
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    account_name: Optional[str] = None
    product_id: Optional[int] = None


class ProcessWithdrawalRequest(BaseModel):
    withdrawal_id: str
    action: WithdrawalAction
    rejection_reason: Optional[str] = None
    admin_id: Optional[str] = None


class CreateMissionRequest(BaseModel):
    id: Optional[str] = None
    title: str
    payout: int = Field(..., gt=0)
    steps: list[str] = Field(default_factory=list)
    requires_proof: bool = False


class MissionProgressRequest(BaseModel):
    user_id: str
    action: MissionAction
    step_id: Optional[str] = None
    proof_url: Optional[str] = None


# ---- responses --------------------------------------------------------------

class RewardBreakdown(BaseModel):
    base_points: int
    streak_multiplier: float = 1.0
    streak_label: Optional[str] = None
    happy_hour_multiplier: float = 1.0
    happy_hour_label: Optional[str] = None
    level_multiplier: float = 1.0
    level_name: Optional[str] = None


class ActionResult(BaseModel):
    awarded: bool
    points_earned: int
    already_credited: bool
    message: str
    new_balance: Optional[int] = None
    breakdown: Optional[RewardBreakdown] = None
    transaction: Optional[Transaction] = None


class UserBalance(BaseModel):
    user_id: str
    total_points: int
    total_earned: int
    level: str
    daily_streak: int
    category_points: dict[TransactionSource, int]
    last_transaction_at: Optional[datetime] = None


class LedgerHistoryResponse(BaseModel):
    user_id: str
    entries: list[Transaction]
    total_count: int
    current_balance: int


class ReconciliationReport(BaseModel):
    user_id: str
    balance: int
    ledger_total: int
    category_mismatches: dict[str, dict[str, int]] = Field(default_factory=dict)
    is_balanced: bool


class WalletAdjustmentResponse(BaseModel):
    user_id: str
    previous_balance: int
    new_balance: int
    transaction: Transaction


class AnonymousMergeResult(BaseModel):
    anon_user_id: str
    target_user_id: str
    transferred_points: int = 0
    migrated_records: int = 0
    skipped_records: int = 0
    already_merged: bool = False
    new_balance: int


class WithdrawalResponse(BaseModel):
    withdrawal: Withdrawal
    message: str
    new_balance: Optional[int] = None


class MissionView(BaseModel):
    mission: Mission
    progress: MissionProgress
    points_awarded: int = 0
    new_balance: Optional[int] = None


class PostbackResult(BaseModel):
    provider: str
    transaction_id: str
    status: str
    points: int
    message: str
