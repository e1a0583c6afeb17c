"""Tests for stepstreak.data.goals: goal history resolution."""

from __future__ import annotations

from datetime import date

import pytest

from stepstreak.data.goals import GoalStore
from stepstreak.data.store import MemoryStore


@pytest.fixture
def goals() -> GoalStore:
    return GoalStore(MemoryStore(), default_goal=10_000)


class TestGoalStore:
    def test_default_goal(self, goals: GoalStore) -> None:
        assert goals.goal_for(date(2026, 3, 7)) == 10_000

    def test_change_applies_from_effective_day(self, goals: GoalStore) -> None:
        with goals.store.transaction() as txn:
            goals.stage_change(8000, date(2026, 3, 5), txn)
        assert goals.goal_for(date(2026, 3, 4)) == 10_000
        assert goals.goal_for(date(2026, 3, 5)) == 8000
        assert goals.goal_for(date(2026, 3, 20)) == 8000
        assert goals.get().current_goal == 8000

    def test_second_change_same_day_replaces(self, goals: GoalStore) -> None:
        with goals.store.transaction() as txn:
            goals.stage_change(8000, date(2026, 3, 5), txn)
            goals.stage_change(12_000, date(2026, 3, 5), txn)
        assert goals.goal_for(date(2026, 3, 5)) == 12_000
        assert goals.goal_for(date(2026, 3, 1)) == 10_000
        assert len(goals.get().history) == 2

    def test_history_of_changes(self, goals: GoalStore) -> None:
        with goals.store.transaction() as txn:
            goals.stage_change(8000, date(2026, 3, 1), txn)
        with goals.store.transaction() as txn:
            goals.stage_change(9000, date(2026, 3, 10), txn)
        assert goals.goal_for(date(2026, 2, 28)) == 10_000
        assert goals.goal_for(date(2026, 3, 9)) == 8000
        assert goals.goal_for(date(2026, 3, 10)) == 9000

    @pytest.mark.parametrize("goal", [0, -100])
    def test_non_positive_rejected(self, goals: GoalStore, goal: int) -> None:
        with pytest.raises(ValueError, match="positive"), goals.store.transaction() as txn:
            goals.stage_change(goal, date(2026, 3, 5), txn)
