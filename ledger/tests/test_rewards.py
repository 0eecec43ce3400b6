"""
Unit Tests for the Reward Calculator

Tests cover:
1. Streak and level tier boundaries
2. Happy hour windows, time zones and the weekend bonus
3. floor(base * streak * happy_hour * level)
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from ledger.rewards import (
    HappyHourSchedule,
    RewardModifierSet,
    calculate_reward,
    level_tier,
    streak_tier,
)

WEDNESDAY_9AM = datetime(2026, 10, 14, 9, 0, tzinfo=timezone.utc)
WEDNESDAY_LUNCH = datetime(2026, 10, 14, 12, 30, tzinfo=timezone.utc)
SATURDAY_9AM = datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc)
SATURDAY_LUNCH = datetime(2026, 10, 17, 12, 30, tzinfo=timezone.utc)


class TestTiers:
    """Tests for streak and level tier lookup."""

    @pytest.mark.parametrize("days,multiplier", [
        (0, "1.00"), (2, "1.00"), (3, "1.05"), (6, "1.05"), (7, "1.10"),
        (13, "1.10"), (14, "1.15"), (30, "1.20"), (59, "1.20"), (60, "1.25"), (365, "1.25"),
    ])
    def test_streak_tier_boundaries(self, days, multiplier):
        assert streak_tier(days).multiplier == Decimal(multiplier)

    @pytest.mark.parametrize("points,name", [
        (0, "Starter"), (9_999, "Starter"), (10_000, "Bronze"), (50_000, "Silver"),
        (100_000, "Gold"), (500_000, "Platinum"), (999_999, "Platinum"), (1_000_000, "Diamond"),
    ])
    def test_level_tier_boundaries(self, points, name):
        assert level_tier(points).name == name


class TestCalculateReward:
    """Tests for the single reward rule."""

    def test_no_modifiers_returns_base(self):
        assert calculate_reward(10).points == 10

    def test_ten_day_streak(self):
        """Base 10 with a 10-day streak (1.10) is 11 points."""
        modifiers = RewardModifierSet.resolve(streak_days=10, lifetime_points=0)
        assert calculate_reward(10, modifiers).points == 11

    def test_six_day_streak_floors(self):
        """10 * 1.05 = 10.5 is floored to 10."""
        modifiers = RewardModifierSet.resolve(streak_days=6, lifetime_points=0)
        assert calculate_reward(10, modifiers).points == 10

    def test_all_modifiers_compose(self):
        happy = HappyHourSchedule().status(WEDNESDAY_LUNCH)
        modifiers = RewardModifierSet.resolve(streak_days=7, lifetime_points=10_000, happy_hour=happy)

        result = calculate_reward(20, modifiers)

        # 20 * 1.10 * 2.0 * 1.02 = 44.88
        assert result.points == 44
        assert result.breakdown.streak_multiplier == 1.10
        assert result.breakdown.happy_hour_multiplier == 2.0
        assert result.breakdown.level_name == "Bronze"

    def test_exact_decimal_products_do_not_lose_a_point(self):
        # 100 * 1.15 is exactly 115; binary floats would give 114.99999...
        modifiers = RewardModifierSet.resolve(streak_days=14, lifetime_points=0)
        assert calculate_reward(100, modifiers).points == 115

    def test_zero_base(self):
        modifiers = RewardModifierSet.resolve(streak_days=60, lifetime_points=1_000_000)
        assert calculate_reward(0, modifiers).points == 0

    def test_negative_base_rejected(self):
        with pytest.raises(ValueError):
            calculate_reward(-1)

    def test_deterministic(self):
        modifiers = RewardModifierSet.resolve(streak_days=30, lifetime_points=55_000)
        assert calculate_reward(37, modifiers) == calculate_reward(37, modifiers)

    def test_describe_lists_active_modifiers(self):
        modifiers = RewardModifierSet.resolve(streak_days=7, lifetime_points=0)
        text = calculate_reward(10, modifiers).describe("News story read")
        assert text.startswith("News story read")
        assert "Week Warrior" in text
        assert calculate_reward(10).describe("Ad watched") == "Ad watched"


class TestHappyHour:
    """Tests for the happy hour schedule."""

    def test_outside_windows_is_inactive(self):
        status = HappyHourSchedule().status(WEDNESDAY_9AM)
        assert not status.active
        assert status.multiplier == Decimal("1")

    def test_lunch_window(self):
        status = HappyHourSchedule().status(WEDNESDAY_LUNCH)
        assert status.active
        assert status.multiplier == Decimal("2.0")
        assert status.label == "Lunch Rush"

    def test_window_end_is_exclusive(self):
        status = HappyHourSchedule().status(datetime(2026, 10, 14, 14, 0, tzinfo=timezone.utc))
        assert not status.active

    def test_night_owl(self):
        status = HappyHourSchedule().status(datetime(2026, 10, 14, 22, 15, tzinfo=timezone.utc))
        assert status.multiplier == Decimal("1.5")

    def test_uses_user_local_time(self):
        # 11:30 UTC is 13:30 in Berlin (CEST) -> lunch window
        now = datetime(2026, 10, 14, 11, 30, tzinfo=timezone.utc)
        assert not HappyHourSchedule().status(now, "UTC").active
        assert HappyHourSchedule().status(now, "Europe/Berlin").active

    def test_unknown_timezone_falls_back_to_utc(self):
        assert HappyHourSchedule().status(WEDNESDAY_LUNCH, "Not/AZone").active

    def test_weekend_bonus(self):
        schedule = HappyHourSchedule(weekend_multiplier=Decimal("1.25"))

        morning = schedule.status(SATURDAY_9AM)
        assert morning.multiplier == Decimal("1.25")
        assert morning.label == "Weekend Bonus"

        lunch = schedule.status(SATURDAY_LUNCH)
        assert lunch.multiplier == Decimal("2.5")
        assert lunch.label == "Lunch Rush + Weekend Bonus"

    def test_weekend_bonus_off_by_default(self):
        assert not HappyHourSchedule().status(SATURDAY_9AM).active

    def test_disabled_schedule(self):
        assert not HappyHourSchedule(enabled=False).status(WEDNESDAY_LUNCH).active
