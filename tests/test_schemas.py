"""Tests for stepstreak.data.schemas."""

from datetime import date, datetime

import pytest
from pydantic import ValidationError

from stepstreak.data.schemas import (
    DailyLog,
    DayState,
    GoalChange,
    GoalSettings,
    ShieldInventory,
    StreakState,
    daily_log_key,
    make_daily_log,
    make_observation,
    observation_from_record,
)


class TestObservations:
    def test_iso_strings_parsed(self) -> None:
        obs = make_observation("health_store", "2026-03-07T08:00:00", "2026-03-07T09:00:00", 900, "")
        assert obs.start == datetime(2026, 3, 7, 8, 0)
        assert obs.session_id is None

    def test_record_roundtrip(self) -> None:
        obs = make_observation("device_motion", datetime(2026, 3, 7, 8), datetime(2026, 3, 7, 9), 900, "w1")
        assert observation_from_record(obs.to_record()) == obs

    def test_identity_ignores_count(self) -> None:
        a = make_observation("device_motion", datetime(2026, 3, 7, 8), datetime(2026, 3, 7, 9), 900)
        b = make_observation("device_motion", datetime(2026, 3, 7, 8), datetime(2026, 3, 7, 9), 950)
        assert a.identity == b.identity


class TestDailyLog:
    def test_goal_met_derived(self) -> None:
        assert make_daily_log(date(2026, 3, 7), goal_target=10_000, steps=10_000).goal_met
        assert not make_daily_log(date(2026, 3, 7), goal_target=10_000, steps=9999).goal_met

    def test_counts_for_streak(self) -> None:
        missed = make_daily_log(date(2026, 3, 6), goal_target=10_000, steps=10, state=DayState.FINALIZED)
        assert not missed.counts_for_streak
        assert missed.model_copy(update={"shield_used": True}).counts_for_streak

    def test_sessions_sorted_unique(self) -> None:
        log = make_daily_log(date(2026, 3, 7), goal_target=10_000, session_ids=["b", "a", "b"])
        assert log.contributing_session_ids == ["a", "b"]

    def test_key(self) -> None:
        log = make_daily_log(date(2026, 3, 7), goal_target=10_000)
        assert log.key == daily_log_key(date(2026, 3, 7)) == "daily_log/2026-03-07"

    @pytest.mark.parametrize("field,value", [("steps", -1), ("goal_target", 0)])
    def test_invalid_values_rejected(self, field: str, value: int) -> None:
        payload = {"date": "2026-03-07", "steps": 0, "goal_target": 10_000, "goal_met": False, field: value}
        with pytest.raises(ValidationError):
            DailyLog.model_validate(payload)


class TestStreakState:
    def test_current_above_longest_rejected(self) -> None:
        with pytest.raises(ValidationError, match="exceeds"):
            StreakState(current_streak=4, longest_streak=3, streak_start_date=date(2026, 3, 4))

    def test_start_date_iff_active(self) -> None:
        with pytest.raises(ValidationError, match="streak_start_date"):
            StreakState(current_streak=2, longest_streak=2)
        with pytest.raises(ValidationError, match="streak_start_date"):
            StreakState(streak_start_date=date(2026, 3, 4))


class TestShieldInventory:
    def test_total_available(self) -> None:
        assert ShieldInventory(recurring_available=2, purchased_available=3).total_available == 5

    def test_negative_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ShieldInventory(purchased_available=-1)

    def test_period_format(self) -> None:
        with pytest.raises(ValidationError):
            ShieldInventory(last_recurring_refill_period="March")


class TestGoalSettings:
    def test_goal_for_uses_history(self) -> None:
        settings = GoalSettings(
            current_goal=9000,
            history=[
                GoalChange(effective_from=date(2026, 3, 1), goal=8000),
                GoalChange(effective_from=date(2026, 3, 10), goal=9000),
            ],
        )
        assert settings.goal_for(date(2026, 2, 1)) == 8000
        assert settings.goal_for(date(2026, 3, 9)) == 8000
        assert settings.goal_for(date(2026, 3, 12)) == 9000

    def test_no_history_uses_current(self) -> None:
        assert GoalSettings(current_goal=7000).goal_for(date(2026, 3, 7)) == 7000
