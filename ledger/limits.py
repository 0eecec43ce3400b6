from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_FLOOR
from enum import Enum

from .exceptions import PolicyViolation
from .models import User, Withdrawal, WithdrawalStatus


class UserTier(str, Enum):
    NEW = "new"
    REGULAR = "regular"
    VERIFIED = "verified"
    VIP = "vip"


@dataclass(frozen=True)
class WithdrawalTier:
    min_withdrawal_usd: Decimal
    daily_limit_usd: Decimal
    weekly_limit: int  # number of withdrawals per rolling week


WITHDRAWAL_TIERS = {
    UserTier.NEW: WithdrawalTier(min_withdrawal_usd=Decimal("1.00"), daily_limit_usd=Decimal("1.00"), weekly_limit=1),
    UserTier.REGULAR: WithdrawalTier(min_withdrawal_usd=Decimal("0.50"), daily_limit_usd=Decimal("2.00"), weekly_limit=1),
    UserTier.VERIFIED: WithdrawalTier(min_withdrawal_usd=Decimal("0.25"), daily_limit_usd=Decimal("5.00"), weekly_limit=2),
    UserTier.VIP: WithdrawalTier(min_withdrawal_usd=Decimal("0.10"), daily_limit_usd=Decimal("10.00"), weekly_limit=3),
}

VIP_LIFETIME_POINTS = 1_000_000
ESTABLISHED_ACCOUNT_DAYS = 14


def user_tier(user: User, now: datetime) -> UserTier:
    if user.total_earned >= VIP_LIFETIME_POINTS:
        return UserTier.VIP
    account_age = now - user.created_at
    if account_age >= timedelta(days=ESTABLISHED_ACCOUNT_DAYS):
        if user.email_verified and user.phone_verified:
            return UserTier.VERIFIED
        return UserTier.REGULAR
    return UserTier.NEW


class WithdrawalPolicy:
    """Tier-based minimum, daily value and weekly count limits."""

    def __init__(self, points_per_dollar: int = 10000, tiers: dict = None):
        self.points_per_dollar = points_per_dollar
        self.tiers = tiers or WITHDRAWAL_TIERS

    def to_usd(self, points: int) -> Decimal:
        """Cash value in whole cents, rounded down."""
        return (Decimal(points) / self.points_per_dollar).quantize(Decimal("0.01"), rounding=ROUND_FLOOR)

    def to_points(self, usd: Decimal) -> int:
        return int(usd * self.points_per_dollar)

    def check(self, user: User, amount: int, history: list[Withdrawal], now: datetime) -> UserTier:
        # All limits are compared in points.
        tier = user_tier(user, now)
        limits = self.tiers[tier]

        min_points = self.to_points(limits.min_withdrawal_usd)
        if amount < min_points:
            raise PolicyViolation(f"Minimum withdrawal for {tier.value} accounts is {min_points} points")

        live = [w for w in history if w.status != WithdrawalStatus.REJECTED]

        day_ago = now - timedelta(days=1)
        spent_today = sum(w.amount for w in live if w.created_at >= day_ago)
        if spent_today + amount > self.to_points(limits.daily_limit_usd):
            raise PolicyViolation(f"Daily withdrawal limit of ${limits.daily_limit_usd} exceeded")

        week_ago = now - timedelta(days=7)
        if len([w for w in live if w.created_at >= week_ago]) >= limits.weekly_limit:
            raise PolicyViolation(f"Only {limits.weekly_limit} withdrawal(s) per week allowed")

        return tier
