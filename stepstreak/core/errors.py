"""Error taxonomy and result types for the streak/shield engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import StrEnum


class StepStreakError(Exception):
    """Base class for all engine errors."""


class ObservationFetchFailure(StepStreakError):
    """The upstream source of truth could not be reached.

    Recoverable: reconciliation skips the affected days and retries on the
    next scheduled attempt.
    """

    def __init__(self, provider: str, reason: str = "") -> None:
        self.provider = provider
        self.reason = reason
        super().__init__(f"fetch from {provider} failed: {reason}" if reason else f"fetch from {provider} failed")


class InsufficientShields(StepStreakError):
    """A shield was requested with both buckets empty."""


class RepairIneligible(StepStreakError):
    """The requested day cannot be repaired (outside window, met, or shielded)."""

    def __init__(self, day: date, reason: str) -> None:
        self.day = day
        self.reason = reason
        super().__init__(f"{day.isoformat()} is not repairable: {reason}")


class CorruptedAggregate(StepStreakError):
    """A persisted aggregate violates an invariant and was rejected."""

    def __init__(self, key: str, detail: str) -> None:
        self.key = key
        self.detail = detail
        super().__init__(f"corrupted aggregate {key}: {detail}")


class RepairOutcome(StrEnum):
    """Outcome of a repair request."""

    REPAIRED = "repaired"
    INSUFFICIENT_SHIELDS = "insufficient_shields"
    INELIGIBLE = "ineligible"
    FAILED = "failed"  # persistence rejected the write


@dataclass
class RepairResult:
    """Result of request_repair; never raised, always returned."""

    day: date
    outcome: RepairOutcome
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome == RepairOutcome.REPAIRED


@dataclass
class ReconcileReport:
    """Summary of a reconciliation pass."""

    window_start: date | None = None
    window_end: date | None = None
    changed_days: list[date] = field(default_factory=list)
    failed_days: list[date] = field(default_factory=list)
    days_checked: int = 0
    deferred: bool = False
    skipped: bool = False  # throttled, nothing attempted
