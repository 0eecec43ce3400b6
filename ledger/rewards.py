"""
Reward calculation.

Every boosted reward goes through one rule:

    final = floor(base * streak * happy_hour * level)

Multipliers are Decimals so that tier factors such as 1.15 stay exact and the
floor never loses a point to binary rounding. Nothing here touches storage or
reads the clock; callers pass `now` in.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from decimal import Decimal, ROUND_FLOOR
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import RewardBreakdown, TransactionSource

logger = logging.getLogger(__name__)

ONE = Decimal("1")

# Activity rewards get the full modifier set. Offerwall, survey, mission and
# referral payouts are priced upstream and credited at face value.
BOOSTED_SOURCES = frozenset({
    TransactionSource.NEWS_READING,
    TransactionSource.AD_WATCH,
    TransactionSource.TRIVIA,
    TransactionSource.GAME,
})


@dataclass(frozen=True)
class StreakTier:
    min_days: int
    multiplier: Decimal
    label: str


STREAK_TIERS = (
    StreakTier(0, Decimal("1.00"), "No Streak"),
    StreakTier(3, Decimal("1.05"), "3-Day Streak"),
    StreakTier(7, Decimal("1.10"), "Week Warrior"),
    StreakTier(14, Decimal("1.15"), "Fortnight Champion"),
    StreakTier(30, Decimal("1.20"), "Month Master"),
    StreakTier(60, Decimal("1.25"), "Legend"),
)


@dataclass(frozen=True)
class LevelTier:
    name: str
    min_points: int
    multiplier: Decimal


LEVEL_TIERS = (
    LevelTier("Starter", 0, Decimal("1.00")),
    LevelTier("Bronze", 10_000, Decimal("1.02")),
    LevelTier("Silver", 50_000, Decimal("1.05")),
    LevelTier("Gold", 100_000, Decimal("1.08")),
    LevelTier("Platinum", 500_000, Decimal("1.12")),
    LevelTier("Diamond", 1_000_000, Decimal("1.15")),
)


def streak_tier(streak_days: int) -> StreakTier:
    current = STREAK_TIERS[0]
    for tier in STREAK_TIERS:
        if streak_days >= tier.min_days:
            current = tier
    return current


def level_tier(lifetime_points: int) -> LevelTier:
    current = LEVEL_TIERS[0]
    for tier in LEVEL_TIERS:
        if lifetime_points >= tier.min_points:
            current = tier
    return current


def resolve_zone(tz_name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC", tz_name)
        return ZoneInfo("UTC")


def local_time(now: datetime, tz_name: Optional[str]) -> datetime:
    if now.tzinfo is None:
        now = now.replace(tzinfo=dt_timezone.utc)
    return now.astimezone(resolve_zone(tz_name))


# ---- happy hour -------------------------------------------------------------

@dataclass(frozen=True)
class HappyHourWindow:
    start_hour: int
    end_hour: int
    multiplier: Decimal
    name: str

    def contains(self, local_dt: datetime) -> bool:
        return self.start_hour <= local_dt.hour < self.end_hour


DEFAULT_HAPPY_HOURS = (
    HappyHourWindow(12, 14, Decimal("2.0"), "Lunch Rush"),
    HappyHourWindow(18, 20, Decimal("2.0"), "Evening Boost"),
    HappyHourWindow(21, 23, Decimal("1.5"), "Night Owl"),
)

WEEKEND_DAYS = frozenset({5, 6})  # Saturday, Sunday


@dataclass(frozen=True)
class HappyHourStatus:
    active: bool = False
    multiplier: Decimal = ONE
    label: Optional[str] = None


INACTIVE = HappyHourStatus()


class HappyHourSchedule:
    def __init__(
        self,
        windows: tuple = DEFAULT_HAPPY_HOURS,
        weekend_multiplier: Decimal = ONE,
        enabled: bool = True,
    ):
        self.windows = tuple(windows)
        self.weekend_multiplier = Decimal(str(weekend_multiplier))
        self.enabled = enabled

    def status(self, now: datetime, tz_name: Optional[str] = None) -> HappyHourStatus:
        if not self.enabled:
            return INACTIVE
        local_dt = local_time(now, tz_name)
        # At most one window applies; the first match wins.
        window = next((w for w in self.windows if w.contains(local_dt)), None)
        weekend = local_dt.weekday() in WEEKEND_DAYS and self.weekend_multiplier != ONE

        multiplier = window.multiplier if window else ONE
        if weekend:
            multiplier *= self.weekend_multiplier

        if window and weekend:
            label = f"{window.name} + Weekend Bonus"
        elif window:
            label = window.name
        elif weekend:
            label = "Weekend Bonus"
        else:
            return INACTIVE
        return HappyHourStatus(active=True, multiplier=multiplier, label=label)


# ---- calculator -------------------------------------------------------------

@dataclass(frozen=True)
class RewardModifierSet:
    streak: StreakTier = STREAK_TIERS[0]
    happy_hour: HappyHourStatus = INACTIVE
    level: LevelTier = LEVEL_TIERS[0]

    @classmethod
    def resolve(
        cls,
        streak_days: int,
        lifetime_points: int,
        happy_hour: HappyHourStatus = INACTIVE,
    ) -> "RewardModifierSet":
        return cls(streak=streak_tier(streak_days), happy_hour=happy_hour, level=level_tier(lifetime_points))

    @property
    def multiplier(self) -> Decimal:
        return self.streak.multiplier * self.happy_hour.multiplier * self.level.multiplier


NO_MODIFIERS = RewardModifierSet()


@dataclass(frozen=True)
class RewardCalculation:
    points: int
    breakdown: RewardBreakdown
    modifiers: RewardModifierSet = field(default=NO_MODIFIERS)

    def describe(self, activity: str) -> str:
        labels = []
        if self.modifiers.streak.multiplier != ONE:
            labels.append(f"{self.modifiers.streak.label} x{self.modifiers.streak.multiplier}")
        if self.modifiers.happy_hour.active:
            labels.append(f"{self.modifiers.happy_hour.label} x{self.modifiers.happy_hour.multiplier}")
        if self.modifiers.level.multiplier != ONE:
            labels.append(f"{self.modifiers.level.name} x{self.modifiers.level.multiplier}")
        if not labels:
            return activity
        return f"{activity} ({', '.join(labels)})"


def calculate_reward(base_points: int, modifiers: RewardModifierSet = NO_MODIFIERS) -> RewardCalculation:
    if base_points < 0:
        raise ValueError("base_points must be non-negative")
    raw = Decimal(base_points) * modifiers.multiplier
    points = int(raw.to_integral_value(rounding=ROUND_FLOOR))
    breakdown = RewardBreakdown(
        base_points=base_points,
        streak_multiplier=float(modifiers.streak.multiplier),
        streak_label=modifiers.streak.label,
        happy_hour_multiplier=float(modifiers.happy_hour.multiplier),
        happy_hour_label=modifiers.happy_hour.label,
        level_multiplier=float(modifiers.level.multiplier),
        level_name=modifiers.level.name,
    )
    return RewardCalculation(points=points, breakdown=breakdown, modifiers=modifiers)
