import logging
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import uuid4

from .config import Settings, get_settings
from .exceptions import (
    DailyLimitReached,
    InsufficientBalance,
    InvalidState,
    UserNotFound,
    ValidationFailed,
)
from .guard import COLLECTION as REWARD_RECORDS, GuardResult, IdempotencyGuard, reward_key
from .models import (
    EARNING_SOURCES,
    ActionResult,
    AnonymousMergeResult,
    CreateUserRequest,
    DailyProgress,
    LedgerHistoryResponse,
    ReconciliationReport,
    RewardRecord,
    SubmitActionRequest,
    Transaction,
    TransactionSource,
    TransactionType,
    User,
    UserBalance,
    WalletAdjustmentRequest,
    WalletAdjustmentResponse,
)
from .rewards import (
    BOOSTED_SOURCES,
    NO_MODIFIERS,
    HappyHourSchedule,
    RewardModifierSet,
    calculate_reward,
    level_tier,
    local_time,
)
from .storage import InMemoryStorage, UnitOfWork

logger = logging.getLogger(__name__)

# Sources that only the ledger itself may write.
INTERNAL_SOURCES = frozenset({
    TransactionSource.WITHDRAWAL,
    TransactionSource.WITHDRAWAL_REFUND,
    TransactionSource.ADJUSTMENT,
    TransactionSource.ACCOUNT_MERGE,
})

ANON_PREFIX = "anon:"

ACTIVITY_LABELS = {
    TransactionSource.NEWS_READING: "News story read",
    TransactionSource.AD_WATCH: "Ad watched",
    TransactionSource.TRIVIA: "Daily trivia",
    TransactionSource.GAME: "Game played",
    TransactionSource.MISSION: "Mission completed",
    TransactionSource.OFFERWALL: "Offer completed",
    TransactionSource.SURVEY: "Survey completed",
    TransactionSource.REFERRAL: "Referral bonus",
}

# DailyProgress counter per capped activity
PROGRESS_COUNTERS = {
    TransactionSource.AD_WATCH: "ads_watched",
    TransactionSource.NEWS_READING: "stories_read",
    TransactionSource.TRIVIA: "trivia_completed",
    TransactionSource.GAME: "games_played",
}


def user_scope(user_id: str) -> str:
    return f"user:{user_id}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_streak(user: User, today: date) -> int:
    if user.last_active_date == today:
        return user.daily_streak
    if user.last_active_date == today - timedelta(days=1):
        return user.daily_streak + 1
    return 1


def effective_streak(user: User, today: date) -> int:
    """Streak as of `today`; a skipped calendar day means it is already broken."""
    if user.last_active_date in (today, today - timedelta(days=1)):
        return user.daily_streak
    return 0


class LedgerService:
    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[Settings] = None,
        happy_hours: Optional[HappyHourSchedule] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or get_settings()
        self.guard = IdempotencyGuard(self.storage)
        self.happy_hours = happy_hours or HappyHourSchedule(
            weekend_multiplier=self.settings.WEEKEND_BONUS_MULTIPLIER,
            enabled=self.settings.HAPPY_HOUR_ENABLED,
        )
        self.clock = clock or _utcnow

    # ---- users -----------------------------------------------------------

    def register_user(self, request: CreateUserRequest) -> User:
        user = User(
            id=request.user_id,
            email=request.email,
            timezone=request.timezone or self.settings.DEFAULT_TIMEZONE,
            email_verified=request.email_verified,
            phone_verified=request.phone_verified,
            created_at=self.clock(),
        )
        with self.storage.unit_of_work(user_scope(user.id)) as uow:
            data, created = uow.insert_if_absent("users", user.id, user.model_dump(mode="json"))
        if created:
            logger.info("Registered user %s", user.id)
        return User(**data)

    def get_user(self, user_id: str) -> User:
        data = self.storage.get("users", user_id)
        if data is None:
            raise UserNotFound(f"User {user_id} not found")
        return User(**data)

    def load_user(self, uow: UnitOfWork, user_id: str) -> User:
        data = uow.get("users", user_id)
        if data is None:
            # Retryable: the account may not have been promoted yet.
            raise UserNotFound(f"User {user_id} not found")
        return User(**data)

    def merge_anonymous(self, anon_id: str, target_id: str) -> AnonymousMergeResult:
        """
        Promote an anonymous session's earnings onto a signed-in account.

        The balance moves as a debit on the anonymous user and a matching
        credit on the target, so each account still reconciles against its own
        log. Reward records are re-keyed to the target so actions already paid
        anonymously are not paid again; keys the target already holds stay
        behind. The anonymous user is closed and points at the target, which
        makes a repeated merge a no-op.
        """
        anon_user_id = anon_id if anon_id.startswith(ANON_PREFIX) else f"{ANON_PREFIX}{anon_id}"
        if target_id.startswith(ANON_PREFIX):
            raise ValidationFailed("Anonymous sessions can only be merged into a registered account")

        with self.storage.unit_of_work(user_scope(anon_user_id), user_scope(target_id)) as uow:
            target = self.load_user(uow, target_id)
            data = uow.get("users", anon_user_id)
            if data is None:
                return AnonymousMergeResult(
                    anon_user_id=anon_user_id, target_user_id=target_id, new_balance=target.total_points,
                )
            anon = User(**data)
            if anon.merged_into == target_id:
                return AnonymousMergeResult(
                    anon_user_id=anon_user_id, target_user_id=target_id,
                    already_merged=True, new_balance=target.total_points,
                )
            if anon.merged_into is not None:
                raise InvalidState(f"{anon_user_id} was already merged into another account")

            transferred = anon.total_points
            if transferred > 0:
                self.apply_delta_in(
                    uow, anon, -transferred, TransactionSource.ACCOUNT_MERGE, target_id,
                    description=f"Moved to account {target_id}",
                )
                self.apply_delta_in(
                    uow, target, transferred, TransactionSource.ACCOUNT_MERGE, anon_user_id,
                    description="Points earned before sign-in",
                )
            target.total_earned += anon.total_earned
            uow.put("users", target.id, target.model_dump(mode="json"))
            anon.is_active = False
            anon.merged_into = target_id
            uow.put("users", anon.id, anon.model_dump(mode="json"))

            migrated = skipped = 0
            for doc in uow.query(REWARD_RECORDS, user_id=anon_user_id):
                record = RewardRecord(**doc)
                new_key = reward_key(target_id, record.action_id)
                if uow.get(REWARD_RECORDS, new_key) is not None:
                    skipped += 1
                    continue
                uow.delete(REWARD_RECORDS, record.key)
                record.key = new_key
                record.user_id = target_id
                uow.put(REWARD_RECORDS, new_key, record.model_dump(mode="json"))
                migrated += 1

        logger.info("Merged %s into %s: %d points, %d reward records (%d skipped)",
                    anon_user_id, target_id, transferred, migrated, skipped)
        return AnonymousMergeResult(
            anon_user_id=anon_user_id,
            target_user_id=target_id,
            transferred_points=transferred,
            migrated_records=migrated,
            skipped_records=skipped,
            new_balance=target.total_points,
        )

    # ---- balance mutator -------------------------------------------------

    def apply_delta(
        self,
        user_id: str,
        amount: int,
        source: TransactionSource,
        source_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Transaction:
        with self.storage.unit_of_work(user_scope(user_id)) as uow:
            user = self.load_user(uow, user_id)
            return self.apply_delta_in(uow, user, amount, source, source_id, description, metadata)

    def adjust_balance(self, request: WalletAdjustmentRequest) -> WalletAdjustmentResponse:
        reason = request.reason.strip()
        if not reason:
            raise ValidationFailed("A reason is required for balance adjustments")
        admin_id = request.admin_id or "admin"

        with self.storage.unit_of_work(user_scope(request.user_id)) as uow:
            user = self.load_user(uow, request.user_id)
            previous = user.total_points
            txn = self.apply_delta_in(
                uow, user, request.amount, TransactionSource.ADJUSTMENT, admin_id,
                description=reason,
                metadata={"admin_id": admin_id, "previous_balance": previous},
            )

        logger.warning("Admin %s adjusted user %s by %+d points: %s", admin_id, user.id, request.amount, reason)
        return WalletAdjustmentResponse(
            user_id=user.id, previous_balance=previous, new_balance=user.total_points, transaction=txn,
        )

    def apply_delta_in(
        self,
        uow: UnitOfWork,
        user: User,
        amount: int,
        source: TransactionSource,
        source_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Transaction:
        """
        Apply a signed point delta to `user` and stage exactly one transaction.

        Must run inside a unit of work holding the user's scope; `user` is
        updated in place so further work in the same unit sees the new balance.
        """
        if not isinstance(amount, int) or amount == 0:
            raise ValidationFailed("Amount must be a non-zero integer")

        new_balance = user.total_points + amount
        if new_balance < 0:
            raise InsufficientBalance(
                f"Insufficient points: balance {user.total_points}, requested {-amount}"
            )

        user.total_points = new_balance
        if source in EARNING_SOURCES:
            user.category_points[source] = user.category_points.get(source, 0) + amount
            if amount > 0:
                user.total_earned += amount
        uow.put("users", user.id, user.model_dump(mode="json"))

        now = self.clock()
        txn = Transaction(
            id=str(uuid4()),
            user_id=user.id,
            type=TransactionType.CREDIT if amount > 0 else TransactionType.DEBIT,
            amount=abs(amount),
            source=source,
            source_id=source_id,
            description=description or ACTIVITY_LABELS.get(source, source.value),
            balance_after=new_balance,
            metadata=metadata or {},
            created_at=now,
        )
        uow.put("transactions", txn.id, txn.model_dump(mode="json"))
        logger.info(
            "%s %d points for user %s (%s:%s), balance now %d",
            txn.type.value, txn.amount, user.id, source.value, source_id, new_balance,
        )
        return txn

    def credit_once_in(
        self,
        uow: UnitOfWork,
        user: User,
        action_id: str,
        source: TransactionSource,
        points: int,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> tuple[GuardResult, Optional[Transaction]]:
        """Claim the (user, action) reward record and credit `points` if it was free."""
        record = RewardRecord(
            key=reward_key(user.id, action_id),
            user_id=user.id,
            action_id=action_id,
            source=source,
            eligible=points > 0,
            points_earned=points,
            created_at=self.clock(),
        )
        claim = self.guard.claim(uow, record)
        if claim.already_credited:
            return claim, None

        txn = None
        if points > 0:
            txn = self.apply_delta_in(uow, user, points, source, action_id, description, metadata)
            record.transaction_id = txn.id
            uow.put(REWARD_RECORDS, record.key, record.model_dump(mode="json"))
        return claim, txn

    # ---- action submission -----------------------------------------------

    def configured_rate(self, source: TransactionSource) -> Optional[int]:
        return {
            TransactionSource.NEWS_READING: self.settings.RATE_READ_NEWS,
            TransactionSource.AD_WATCH: self.settings.RATE_WATCH_AD,
            TransactionSource.TRIVIA: self.settings.RATE_TRIVIA,
            TransactionSource.GAME: self.settings.RATE_GAME,
            TransactionSource.REFERRAL: self.settings.REFERRAL_SIGNUP_BONUS,
        }.get(source)

    def base_rate(self, source: TransactionSource, requested: Optional[int] = None) -> int:
        """Configured rate for the source, else the caller's price for an externally priced one."""
        rate = self.configured_rate(source)
        if rate is not None:
            return rate
        if requested is None:
            raise ValidationFailed(f"base_points is required for {source.value} rewards")
        return requested

    def daily_cap(self, source: TransactionSource) -> Optional[int]:
        return {
            TransactionSource.AD_WATCH: self.settings.MAX_ADS_PER_DAY,
            TransactionSource.NEWS_READING: self.settings.MAX_NEWS_PER_DAY,
            TransactionSource.TRIVIA: self.settings.MAX_TRIVIA_PER_DAY,
        }.get(source)

    def submit_action(self, request: SubmitActionRequest) -> ActionResult:
        if request.source in INTERNAL_SOURCES:
            raise ValidationFailed(f"{request.source.value} cannot be submitted as an action")

        seen = self.guard.check(reward_key(request.user_id, request.action_id))
        if seen.already_credited:
            return self._already_credited(seen, self.get_user(request.user_id))

        now = self.clock()
        with self.storage.unit_of_work(user_scope(request.user_id)) as uow:
            user = self.load_user(uow, request.user_id)

            if not user.is_active:
                raise ValidationFailed(f"User {user.id} is not active")

            today = local_time(now, user.timezone).date()
            progress = self._daily_progress(uow, user.id, today)
            counter = PROGRESS_COUNTERS.get(request.source)
            cap = self.daily_cap(request.source)
            if request.eligible and cap is not None and getattr(progress, counter) >= cap:
                raise DailyLimitReached(f"Daily limit of {cap} reached for {request.source.value}")

            base = self.base_rate(request.source, request.base_points)
            # Priced on the streak the user walked in with; the credit extends it.
            streak = effective_streak(user, today)
            if request.source in BOOSTED_SOURCES:
                modifiers = RewardModifierSet.resolve(
                    streak_days=streak,
                    lifetime_points=user.total_earned,
                    happy_hour=self.happy_hours.status(now, user.timezone),
                )
            else:
                modifiers = NO_MODIFIERS
            calc = calculate_reward(base, modifiers)
            points = calc.points if request.eligible else 0

            label = ACTIVITY_LABELS.get(request.source, request.source.value)
            claim, txn = self.credit_once_in(
                uow, user, request.action_id, request.source, points,
                description=calc.describe(label),
                metadata={**request.metadata, "breakdown": calc.breakdown.model_dump()},
            )
            if claim.already_credited:
                return self._already_credited(claim, user)

            if txn is not None:
                user.daily_streak = next_streak(user, today)
                user.last_active_date = today
                uow.put("users", user.id, user.model_dump(mode="json"))
                if counter:
                    setattr(progress, counter, getattr(progress, counter) + 1)
                progress.points_earned += txn.amount
                uow.put("daily_progress", self._progress_key(user.id, today), progress.model_dump(mode="json"))

        return ActionResult(
            awarded=txn is not None,
            points_earned=points,
            already_credited=False,
            message="Points awarded" if txn else "Recorded without points",
            new_balance=user.total_points,
            breakdown=calc.breakdown,
            transaction=txn,
        )

    @staticmethod
    def _already_credited(claim: GuardResult, user: User) -> ActionResult:
        return ActionResult(
            awarded=False,
            points_earned=claim.points_earned,
            already_credited=True,
            message="Already submitted; points are only awarded once",
            new_balance=user.total_points,
        )

    def credit_referral(self, referrer_id: str, referred_id: str) -> ActionResult:
        if referrer_id == referred_id:
            raise ValidationFailed("Users cannot refer themselves")
        self.get_user(referred_id)

        points = self.settings.REFERRAL_SIGNUP_BONUS
        with self.storage.unit_of_work(user_scope(referrer_id)) as uow:
            user = self.load_user(uow, referrer_id)
            claim, txn = self.credit_once_in(
                uow, user, f"referral:{referred_id}", TransactionSource.REFERRAL, points,
                description=f"Referral bonus for {referred_id}",
                metadata={"referred_user_id": referred_id},
            )
        if claim.already_credited:
            return ActionResult(
                awarded=False, points_earned=claim.points_earned, already_credited=True,
                message="Referral already rewarded", new_balance=user.total_points,
            )
        return ActionResult(
            awarded=True, points_earned=points, already_credited=False,
            message="Referral bonus credited", new_balance=user.total_points, transaction=txn,
        )

    # ---- day-bucketed progress ------------------------------------------

    @staticmethod
    def _progress_key(user_id: str, day: date) -> str:
        return f"{user_id}_{day.isoformat()}"

    def _daily_progress(self, uow: UnitOfWork, user_id: str, day: date) -> DailyProgress:
        data = uow.get("daily_progress", self._progress_key(user_id, day))
        if data is None:
            return DailyProgress(user_id=user_id, date_key=day)
        return DailyProgress(**data)

    def get_daily_progress(self, user_id: str, day: Optional[date] = None) -> DailyProgress:
        user = self.get_user(user_id)
        day = day or local_time(self.clock(), user.timezone).date()
        data = self.storage.get("daily_progress", self._progress_key(user_id, day))
        return DailyProgress(**data) if data else DailyProgress(user_id=user_id, date_key=day)

    # ---- queries ---------------------------------------------------------

    def _transactions(self, user_id: str) -> list[Transaction]:
        return [Transaction(**t) for t in self.storage.query("transactions", user_id=user_id)]

    def get_balance(self, user_id: str) -> UserBalance:
        user = self.get_user(user_id)
        entries = self._transactions(user_id)
        last = max(entries, key=lambda e: e.created_at) if entries else None
        today = local_time(self.clock(), user.timezone).date()
        return UserBalance(
            user_id=user.id,
            total_points=user.total_points,
            total_earned=user.total_earned,
            level=level_tier(user.total_earned).name,
            daily_streak=effective_streak(user, today),
            category_points=user.category_points,
            last_transaction_at=last.created_at if last else None,
        )

    def get_ledger_history(self, user_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        user = self.get_user(user_id)
        entries = sorted(self._transactions(user_id), key=lambda e: e.created_at, reverse=True)
        return LedgerHistoryResponse(
            user_id=user_id,
            entries=entries[offset:offset + limit],
            total_count=len(entries),
            current_balance=user.total_points,
        )

    def reconcile(self, user_id: str) -> ReconciliationReport:
        """Compare the stored balance and category totals against the transaction log."""
        user = self.get_user(user_id)
        entries = self._transactions(user_id)
        ledger_total = sum(e.signed_amount for e in entries)

        mismatches = {}
        for source in EARNING_SOURCES:
            expected = sum(e.signed_amount for e in entries if e.source == source)
            stored = user.category_points.get(source, 0)
            if expected != stored:
                mismatches[source.value] = {"stored": stored, "ledger": expected}

        report = ReconciliationReport(
            user_id=user_id,
            balance=user.total_points,
            ledger_total=ledger_total,
            category_mismatches=mismatches,
            is_balanced=user.total_points == ledger_total and not mismatches,
        )
        if not report.is_balanced:
            logger.error("Ledger mismatch for user %s: %s", user_id, report.model_dump())
        return report
