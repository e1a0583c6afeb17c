"""Aggregate and observation schemas for step tracking, streaks and shields."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import StrEnum
from typing import TypedDict

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class DayState(StrEnum):
    """Explicit lifecycle tag of a calendar day."""

    OPEN = "open"  # today, still live
    FINALIZED = "finalized"  # closed; only reconciliation may raise steps


class BreakReason(StrEnum):
    """Why the backward streak walk stopped."""

    MISSED = "missed"  # record exists, goal not met, no shield
    NO_DATA = "no_data"  # no record for the day at all


class ConsumptionOrder(StrEnum):
    """Which shield bucket is drained first."""

    PURCHASED_FIRST = "purchased_first"
    RECURRING_FIRST = "recurring_first"


class Aggregate(StrEnum):
    """Aggregate kinds announced on the change-event bus."""

    DAILY_LOG = "daily_log"
    STREAK = "streak"
    SHIELDS = "shields"
    GOAL = "goal"
    BADGES = "badges"


# --- Observations ---


class ObservationRecord(TypedDict):
    """Serialized step observation (buffer and HTTP payloads)."""

    provider: str
    start: str  # ISO 8601
    end: str  # ISO 8601
    steps: int
    session_id: str | None


@dataclass(frozen=True)
class StepObservation:
    """Step count attributed to a half-open interval [start, end) by one provider."""

    provider: str
    start: datetime
    end: datetime
    steps: int
    session_id: str | None = None

    @property
    def identity(self) -> tuple[str, datetime, datetime]:
        """Re-issued intervals share this identity."""
        return (self.provider, self.start, self.end)

    def to_record(self) -> ObservationRecord:
        return ObservationRecord(
            provider=self.provider,
            start=self.start.isoformat(),
            end=self.end.isoformat(),
            steps=self.steps,
            session_id=self.session_id,
        )


def make_observation(
    provider: str,
    start: datetime | str,
    end: datetime | str,
    steps: int,
    session_id: str | None = None,
) -> StepObservation:
    """Create an observation, parsing ISO 8601 timestamps when given as strings."""
    return StepObservation(
        provider=provider,
        start=datetime.fromisoformat(start) if isinstance(start, str) else start,
        end=datetime.fromisoformat(end) if isinstance(end, str) else end,
        steps=int(steps),
        session_id=session_id or None,
    )


def observation_from_record(record: ObservationRecord | dict[str, object]) -> StepObservation:
    """Inverse of StepObservation.to_record."""
    session = record.get("session_id")
    return make_observation(
        provider=str(record.get("provider", "")),
        start=str(record["start"]),
        end=str(record["end"]),
        steps=int(str(record.get("steps", 0))),
        session_id=str(session) if session else None,
    )


# --- Aggregates ---


class DailyLog(BaseModel):
    """One reconciled record per local calendar day."""

    model_config = ConfigDict(frozen=True)

    date: date
    steps: int = Field(ge=0)
    goal_target: int = Field(gt=0)
    goal_met: bool
    shield_used: bool = False
    repair_declined: bool = False
    state: DayState = DayState.OPEN
    contributing_session_ids: list[str] = Field(default_factory=list)

    @field_validator("contributing_session_ids")
    @classmethod
    def _unique_sorted(cls, value: list[str]) -> list[str]:
        return sorted(set(value))

    @property
    def counts_for_streak(self) -> bool:
        return self.goal_met or self.shield_used

    @property
    def key(self) -> str:
        return daily_log_key(self.date)


class StreakState(BaseModel):
    """Process-wide streak counters."""

    model_config = ConfigDict(frozen=True)

    current_streak: int = Field(default=0, ge=0)
    longest_streak: int = Field(default=0, ge=0)
    streak_start_date: date | None = None
    last_goal_met_date: date | None = None
    last_reached_milestone: int | None = None  # pending, cleared on consumption
    last_fired_milestone: int | None = None
    break_date: date | None = None
    break_reason: BreakReason | None = None

    @model_validator(mode="after")
    def _check_invariants(self) -> StreakState:
        if self.current_streak > self.longest_streak:
            msg = f"current_streak {self.current_streak} exceeds longest_streak {self.longest_streak}"
            raise ValueError(msg)
        if (self.current_streak == 0) != (self.streak_start_date is None):
            msg = "streak_start_date must be set iff current_streak > 0"
            raise ValueError(msg)
        return self


class ShieldInventory(BaseModel):
    """Two-bucket shield token inventory."""

    model_config = ConfigDict(frozen=True)

    recurring_available: int = Field(default=0, ge=0)
    purchased_available: int = Field(default=0, ge=0)
    last_recurring_refill_period: str | None = Field(default=None, pattern=r"^\d{4}-\d{2}$")
    used_this_period: int = Field(default=0, ge=0)
    total_used_lifetime: int = Field(default=0, ge=0)
    purchased_lifetime: int = Field(default=0, ge=0)

    @property
    def total_available(self) -> int:
        return self.recurring_available + self.purchased_available


class GoalChange(BaseModel):
    """A step goal and the first day it applied to."""

    model_config = ConfigDict(frozen=True)

    effective_from: date
    goal: int = Field(gt=0)


class GoalSettings(BaseModel):
    """The user's current goal plus its change history."""

    model_config = ConfigDict(frozen=True)

    current_goal: int = Field(gt=0)
    history: list[GoalChange] = Field(default_factory=list)

    def goal_for(self, day: date) -> int:
        """Goal in effect on day; days before any recorded change use the earliest goal."""
        applicable = [c for c in self.history if c.effective_from <= day]
        if applicable:
            return max(applicable, key=lambda c: c.effective_from).goal
        if self.history:
            return min(self.history, key=lambda c: c.effective_from).goal
        return self.current_goal


class HighWaterMark(BaseModel):
    """Largest total ever accepted for a day."""

    model_config = ConfigDict(frozen=True)

    date: date
    steps: int = Field(ge=0)


class LegacyBadge(BaseModel):
    """Awarded when a long streak breaks; one per tier."""

    model_config = ConfigDict(frozen=True)

    streak_length: int = Field(gt=0)
    earned_on: date


class LegacyBadges(BaseModel):
    """Badges earned so far, at most one per tier."""

    model_config = ConfigDict(frozen=True)

    badges: list[LegacyBadge] = Field(default_factory=list)

    @model_validator(mode="after")
    def _one_per_tier(self) -> LegacyBadges:
        tiers = [b.streak_length for b in self.badges]
        if len(tiers) != len(set(tiers)):
            msg = "legacy badge tier earned twice"
            raise ValueError(msg)
        return self

    def has_tier(self, streak_length: int) -> bool:
        return any(b.streak_length == streak_length for b in self.badges)


class ReconcileState(BaseModel):
    """Throttle anchor for the reconciliation scheduler."""

    model_config = ConfigDict(frozen=True)

    last_success_at: datetime | None = None
    last_attempt_at: datetime | None = None


# --- Store keys ---

STREAK_KEY = "streak"
SHIELDS_KEY = "shields"
GOAL_KEY = "goal"
RECONCILE_KEY = "reconcile"
BADGES_KEY = "legacy_badges"
DAILY_LOG_PREFIX = "daily_log/"
HIGH_WATER_PREFIX = "hwm/"
OBSERVATIONS_PREFIX = "observations/"


def daily_log_key(day: date) -> str:
    return f"{DAILY_LOG_PREFIX}{day.isoformat()}"


def high_water_key(day: date) -> str:
    return f"{HIGH_WATER_PREFIX}{day.isoformat()}"


def observations_key(day: date) -> str:
    return f"{OBSERVATIONS_PREFIX}{day.isoformat()}"


def make_daily_log(
    day: date,
    goal_target: int,
    steps: int = 0,
    state: DayState = DayState.OPEN,
    shield_used: bool = False,
    session_ids: list[str] | None = None,
) -> DailyLog:
    """Create a daily log with goal_met derived from steps and the frozen goal."""
    return DailyLog(
        date=day,
        steps=steps,
        goal_target=goal_target,
        goal_met=steps >= goal_target,
        shield_used=shield_used,
        state=state,
        contributing_session_ids=session_ids or [],
    )
