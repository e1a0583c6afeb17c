"""Streak tracking derived from daily logs, with shield-protected days."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from pathlib import Path

from stepstreak.core.clock import Clock
from stepstreak.core.errors import CorruptedAggregate
from stepstreak.core.events import ChangeEvent, EventBus
from stepstreak.data.audit import report_anomaly
from stepstreak.data.daily_log import DailyLogStore
from stepstreak.data.schemas import (
    BADGES_KEY,
    STREAK_KEY,
    Aggregate,
    BreakReason,
    DailyLog,
    DayState,
    LegacyBadge,
    LegacyBadges,
    StreakState,
)
from stepstreak.data.store import AggregateStore, StoreTransaction, dump_model, load_model

logger = logging.getLogger(__name__)

_MILESTONES = (7, 14, 21, 30, 60, 90, 180, 365)
_DEFAULT_AT_RISK_HOUR = 18
_DEFAULT_HISTORY_DAYS = 7
LEGACY_BADGE_THRESHOLDS = (30, 60, 90, 180, 365)


def is_milestone(streak_days: int) -> bool:
    """7, 14, 21, 30, 60, 90, 180, 365 and every multiple of 100 beyond."""
    if streak_days in _MILESTONES:
        return True
    return streak_days > _MILESTONES[-1] and streak_days % 100 == 0


def check_milestone(streak_days: int) -> int | None:
    """Return streak_days if it is exactly a milestone, else None."""
    return streak_days if is_milestone(streak_days) else None


def next_milestone(streak_days: int) -> int:
    """Smallest milestone strictly above streak_days."""
    for milestone in _MILESTONES:
        if milestone > streak_days:
            return milestone
    return (streak_days // 100 + 1) * 100


def legacy_badge_tier(streak_days: int) -> int | None:
    """Highest legacy badge threshold a streak of this length reached, if any."""
    reached = [t for t in LEGACY_BADGE_THRESHOLDS if t <= streak_days]
    return reached[-1] if reached else None


@dataclass
class StreakWalk:
    """Result of walking backward from a reference day."""

    length: int
    start: date | None
    last_counted: date | None
    break_date: date | None
    break_reason: BreakReason | None


def walk_streak(
    lookup: Callable[[date], DailyLog | None], as_of: date, lenient_today: bool
) -> StreakWalk:
    """Count contiguous goal-met or shielded days ending at as_of.

    Days are looked up one at a time, newest first, and only as far as the
    break. With lenient_today, an as_of day that does not count yet is
    skipped: the streak is neither broken nor extended by it.
    """
    cursor = as_of
    first = lookup(as_of)
    if lenient_today and (first is None or not first.counts_for_streak):
        cursor = as_of - timedelta(days=1)

    length = 0
    last_counted: date | None = None
    start: date | None = None
    while True:
        log = lookup(cursor)
        if log is None:
            return StreakWalk(length, start, last_counted, cursor, BreakReason.NO_DATA)
        if not log.counts_for_streak:
            return StreakWalk(length, start, last_counted, cursor, BreakReason.MISSED)
        length += 1
        start = cursor
        if last_counted is None:
            last_counted = cursor
        cursor -= timedelta(days=1)


def longest_run(logs: Mapping[date, DailyLog], until: date) -> int:
    """Longest contiguous run of counting days on or before until."""
    best = 0
    run = 0
    previous: date | None = None
    for day in sorted(d for d in logs if d <= until):
        if not logs[day].counts_for_streak:
            run = 0
            previous = None
            continue
        run = run + 1 if previous is not None and day - previous == timedelta(days=1) else 1
        previous = day
        best = max(best, run)
    return best


def derive_state(previous: StreakState, walk: StreakWalk, history_best: int = 0) -> StreakState:
    """Fold a walk into the persisted counters, firing a milestone at most once."""
    current = walk.length
    longest = max(previous.longest_streak, current, history_best)

    fired = previous.last_fired_milestone
    pending = previous.last_reached_milestone
    if fired is not None and current < fired:
        # A new, shorter run re-arms milestones.
        fired = None
    if is_milestone(current) and current != fired:
        pending = current
        fired = current
        logger.info("Streak milestone reached: %d days", current)

    return StreakState(
        current_streak=current,
        longest_streak=longest,
        streak_start_date=walk.start if current > 0 else None,
        last_goal_met_date=walk.last_counted if current > 0 else previous.last_goal_met_date,
        last_reached_milestone=pending,
        last_fired_milestone=fired,
        break_date=walk.break_date,
        break_reason=walk.break_reason,
    )


class StreakEngine:
    """Owns the persisted StreakState."""

    def __init__(
        self,
        store: AggregateStore,
        daily_logs: DailyLogStore,
        clock: Clock,
        events: EventBus | None = None,
        audit_dir: Path | None = None,
        at_risk_hour: int = _DEFAULT_AT_RISK_HOUR,
        history_days: int = _DEFAULT_HISTORY_DAYS,
    ) -> None:
        self.store = store
        self.daily_logs = daily_logs
        self.clock = clock
        self.events = events
        self.audit_dir = audit_dir
        self.at_risk_hour = at_risk_hour
        self.history_days = history_days
        self._last_valid = StreakState()

    def get(self, txn: StoreTransaction | None = None) -> StreakState:
        """Snapshot; a corrupted record yields the last valid state."""
        try:
            state = load_model(txn or self.store, STREAK_KEY, StreakState)
        except CorruptedAggregate as exc:
            report_anomaly(self.audit_dir, exc)
            return self._last_valid
        if state is not None:
            self._last_valid = state
        return state or StreakState()

    def stage_recompute(
        self, as_of: date, txn: StoreTransaction, history_from: date | None = None
    ) -> StreakState:
        """Recompute synchronously against txn's view and stage the result.

        Nothing awaits in here, so the walk sees one consistent snapshot. Rows
        the walk reaches are read strictly; a corrupted one rejects the
        recompute. Older runs are only looked for from history_from (default:
        the last history_days days); runs ending before that are already
        covered by the stored longest_streak.
        """
        previous = self.get(txn)
        seen: dict[date, DailyLog | None] = {}

        def lookup(day: date) -> DailyLog | None:
            if day not in seen:
                seen[day] = self.daily_logs.get(day, txn)
            return seen[day]

        lenient = self.clock.day_state(as_of) is DayState.OPEN
        walk = walk_streak(lookup, as_of, lenient_today=lenient)
        window_start = history_from or as_of - timedelta(days=self.history_days - 1)
        recent = self.daily_logs.scan(window_start, as_of, txn, skip=seen)
        recent.update((day, log) for day, log in seen.items() if log is not None)
        state = derive_state(previous, walk, history_best=longest_run(recent, as_of))
        if state != previous:
            txn.put(STREAK_KEY, dump_model(state))
        return state

    async def recompute(
        self, as_of: date | None = None, reason: str = "recompute", history_from: date | None = None
    ) -> StreakState:
        """Recompute and persist the streak. Safe to call redundantly."""
        as_of = as_of or self.clock.today()
        async with self.store.locked(STREAK_KEY):
            previous = self.get()
            try:
                with self.store.transaction() as txn:
                    state = self.stage_recompute(as_of, txn, history_from=history_from)
            except CorruptedAggregate as exc:
                report_anomaly(self.audit_dir, exc)
                return previous
        if state != previous:
            logger.info(
                "Streak %d -> %d (longest %d) as of %s",
                previous.current_streak,
                state.current_streak,
                state.longest_streak,
                as_of.isoformat(),
            )
            await self._announce(reason)
        return state

    def get_badges(self) -> LegacyBadges:
        """Earned legacy badges; a corrupted record reads as none earned."""
        try:
            return load_model(self.store, BADGES_KEY, LegacyBadges) or LegacyBadges()
        except CorruptedAggregate as exc:
            report_anomaly(self.audit_dir, exc)
            return LegacyBadges()

    def run_ending(self, day: date) -> int:
        """Length of the run of counting days ending at day."""
        return walk_streak(self.daily_logs.load, day, lenient_today=False).length

    async def break_streak(self, broken_length: int | None = None) -> LegacyBadge | None:
        """Explicit break: the user declined to repair a missed day, or shields ran out.

        broken_length is the run being given up (default: the stored current
        streak). A run of 30 days or more earns the legacy badge of the highest
        threshold it reached. Each tier is stored once; breaking at a tier
        already earned still returns its badge.
        """
        badge: LegacyBadge | None = None
        stored = False
        async with self.store.locked(STREAK_KEY, BADGES_KEY):
            previous = self.get()
            length = previous.current_streak if broken_length is None else broken_length
            state = previous.model_copy(
                update={"current_streak": 0, "streak_start_date": None, "last_goal_met_date": None}
            )
            with self.store.transaction() as txn:
                txn.put(STREAK_KEY, dump_model(state))
                tier = legacy_badge_tier(length)
                if tier is not None:
                    badge = LegacyBadge(streak_length=tier, earned_on=self.clock.today())
                    badges = self.get_badges()
                    if not badges.has_tier(tier):
                        txn.put(BADGES_KEY, dump_model(LegacyBadges(badges=[*badges.badges, badge])))
                        stored = True
                        logger.info("Legacy badge earned for a %d-day streak", tier)
        logger.info("Streak broken explicitly at %d days", length)
        await self._announce("break")
        if stored and self.events is not None:
            await self.events.publish(ChangeEvent(Aggregate.BADGES, BADGES_KEY, "break"))
        return badge

    async def consume_milestone(self) -> int | None:
        """Return the pending milestone and clear it; later recomputes will not re-fire it."""
        async with self.store.locked(STREAK_KEY):
            state = self.get()
            pending = state.last_reached_milestone
            if pending is None:
                return None
            self.store.put(STREAK_KEY, dump_model(state.model_copy(update={"last_reached_milestone": None})))
        await self._announce("milestone_consumed")
        return pending

    # --- Queries ---

    def is_alive(self, today: date | None = None) -> bool:
        """Alive while the last counted day is today or yesterday."""
        today = today or self.clock.today()
        last = self.get().last_goal_met_date
        return last is not None and (today - last).days <= 1

    def is_at_risk(self, now: datetime | None = None) -> bool:
        """Active streak, today not met yet, and the evening cutoff has passed."""
        now = now or self.clock.now()
        state = self.get()
        if state.current_streak == 0:
            return False
        today = self.daily_logs.load(now.date())
        if today is not None and today.counts_for_streak:
            return False
        return now.hour >= self.at_risk_hour

    def days_until_next_milestone(self) -> int:
        current = self.get().current_streak
        return next_milestone(current) - current

    async def _announce(self, reason: str) -> None:
        if self.events is not None:
            await self.events.publish(ChangeEvent(Aggregate.STREAK, STREAK_KEY, reason))
