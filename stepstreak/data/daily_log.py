"""Daily log store: one reconciled record per local calendar day.

Every write to a day runs merge -> ratchet -> commit inside one transaction
while the caller holds that day's lock. Open days (today) follow the live
total and the current goal; finalized days keep their frozen goal and only
ever move upward, through reconciliation.
"""

from __future__ import annotations

import logging
from collections.abc import Container, Iterable
from dataclasses import dataclass
from datetime import date, timedelta
from pathlib import Path

from stepstreak.core.clock import Clock
from stepstreak.core.errors import CorruptedAggregate
from stepstreak.core.events import ChangeEvent, EventBus
from stepstreak.data.audit import audit_correction, report_anomaly
from stepstreak.data.goals import GoalStore
from stepstreak.data.merge import IntervalMergeEngine
from stepstreak.data.ratchet import HighWaterMarkRatchet
from stepstreak.data.schemas import (
    DAILY_LOG_PREFIX,
    OBSERVATIONS_PREFIX,
    Aggregate,
    DailyLog,
    DayState,
    StepObservation,
    daily_log_key,
    make_daily_log,
    observation_from_record,
    observations_key,
)
from stepstreak.data.store import AggregateStore, StoreTransaction, dump_model, load_model

logger = logging.getLogger(__name__)


@dataclass
class DayWrite:
    """Outcome of staging one day's total."""

    day: date
    log: DailyLog | None
    changed: bool = False
    steps_changed: bool = False
    previous_steps: int | None = None


def _day_of(key: str) -> date:
    return date.fromisoformat(key.removeprefix(DAILY_LOG_PREFIX))


class DailyLogStore:
    """Reads and writes DailyLog rows and the per-day observation buffer."""

    def __init__(
        self,
        store: AggregateStore,
        clock: Clock,
        goals: GoalStore,
        merge_engine: IntervalMergeEngine,
        ratchet: HighWaterMarkRatchet,
        events: EventBus | None = None,
        audit_dir: Path | None = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.goals = goals
        self.merge_engine = merge_engine
        self.ratchet = ratchet
        self.events = events
        self.audit_dir = audit_dir
        self._rolled_through: date | None = None

    # --- Reads ---

    def get(self, day: date, txn: StoreTransaction | None = None) -> DailyLog | None:
        """Strict read: a row violating its invariants raises CorruptedAggregate."""
        return load_model(txn or self.store, daily_log_key(day), DailyLog)

    def load(self, day: date) -> DailyLog | None:
        """Lenient read for collaborators: a corrupted row is reported and hidden."""
        try:
            return self.get(day)
        except CorruptedAggregate as exc:
            report_anomaly(self.audit_dir, exc)
            return None

    def load_range(self, start: date, end: date) -> list[DailyLog]:
        """Rows for start..end inclusive, oldest first; days without a row are omitted."""
        logs: list[DailyLog] = []
        for key in self.store.keys(DAILY_LOG_PREFIX):
            day = _day_of(key)
            if start <= day <= end:
                log = self.load(day)
                if log is not None:
                    logs.append(log)
        return logs

    def scan(
        self,
        start: date,
        end: date,
        txn: StoreTransaction | None = None,
        skip: Container[date] = (),
    ) -> dict[date, DailyLog]:
        """Rows for start..end read one day at a time, including ones staged in txn.

        Days in skip are not read. A corrupted row is reported and left out.
        """
        logs: dict[date, DailyLog] = {}
        day = start
        while day <= end:
            if day in skip:
                day += timedelta(days=1)
                continue
            try:
                log = self.get(day, txn)
            except CorruptedAggregate as exc:
                report_anomaly(self.audit_dir, exc)
                log = None
            if log is not None:
                logs[day] = log
            day += timedelta(days=1)
        return logs

    def buffered(self, day: date, txn: StoreTransaction | None = None) -> list[StepObservation]:
        """Raw observations received on the live path for day."""
        payload = (txn or self.store).get(observations_key(day))
        if not isinstance(payload, list):
            return []
        observations: list[StepObservation] = []
        for record in payload:
            try:
                observations.append(observation_from_record(record))
            except (KeyError, TypeError, ValueError):
                logger.warning("Dropping unreadable buffered observation for %s: %r", day.isoformat(), record)
        return observations

    # --- Staged writes (caller holds the day's lock) ---

    def stage_buffer(
        self,
        day: date,
        observations: Iterable[StepObservation],
        txn: StoreTransaction,
    ) -> list[StepObservation]:
        """Add observations to day's buffer; a re-issued interval keeps its largest count."""
        merged: dict[tuple[str, str, str], StepObservation] = {}
        for obs in [*self.buffered(day, txn), *observations]:
            ident = (obs.provider, obs.start.isoformat(), obs.end.isoformat())
            current = merged.get(ident)
            if current is None or obs.steps > current.steps:
                merged[ident] = obs
        ordered = sorted(merged.values(), key=lambda o: (o.start.isoformat(), o.provider, o.end.isoformat()))
        txn.put(observations_key(day), [o.to_record() for o in ordered])
        return ordered

    def stage_total(
        self,
        day: date,
        observations: list[StepObservation],
        txn: StoreTransaction,
        source: str = "live",
    ) -> DayWrite:
        """Merge, ratchet and stage the day's row."""
        existing = self.get(day, txn)
        state = self.clock.day_state(day)
        candidate = self.merge_engine.merge(observations, day)
        sessions = self.merge_engine.session_ids(observations, day)

        if existing is None and candidate == 0 and not sessions:
            return DayWrite(day=day, log=None)

        accepted = self.ratchet.ratchet(day, candidate, txn)

        if existing is not None and existing.state is DayState.FINALIZED:
            steps = max(existing.steps, accepted)
            updated = existing.model_copy(
                update={
                    "steps": steps,
                    "goal_met": existing.goal_met or steps >= existing.goal_target,
                    "contributing_session_ids": sorted(set(existing.contributing_session_ids) | set(sessions)),
                }
            )
            if steps > existing.steps and self.audit_dir is not None:
                audit_correction(self.audit_dir, existing.key, existing.steps, steps, source)
        elif existing is not None:
            steps = max(existing.steps, accepted)
            # An open row keeps tracking the current goal until its day closes.
            goal_target = self.goals.goal_for(day, txn) if state is DayState.OPEN else existing.goal_target
            updated = existing.model_copy(
                update={
                    "steps": steps,
                    "goal_target": goal_target,
                    "goal_met": steps >= goal_target,
                    "state": state,
                    "contributing_session_ids": sorted(set(existing.contributing_session_ids) | set(sessions)),
                }
            )
        else:
            updated = make_daily_log(
                day,
                goal_target=self.goals.goal_for(day, txn),
                steps=accepted,
                state=state,
                session_ids=sessions,
            )

        if updated == existing:
            return DayWrite(day=day, log=existing, previous_steps=existing.steps if existing else None)
        self.put(updated, txn)
        previous = existing.steps if existing is not None else None
        return DayWrite(
            day=day,
            log=updated,
            changed=True,
            steps_changed=previous != updated.steps,
            previous_steps=previous,
        )

    def stage_goal_refresh(self, day: date, txn: StoreTransaction) -> DailyLog | None:
        """Re-derive an open row against the goal now in effect; finalized rows are untouched."""
        existing = self.get(day, txn)
        if existing is None or self.clock.day_state(day) is DayState.FINALIZED:
            return existing
        goal_target = self.goals.goal_for(day, txn)
        updated = existing.model_copy(update={"goal_target": goal_target, "goal_met": existing.steps >= goal_target})
        self.put(updated, txn)
        return updated

    def stage_flags(
        self,
        day: date,
        txn: StoreTransaction,
        shield_used: bool | None = None,
        repair_declined: bool | None = None,
    ) -> DailyLog:
        """Set shield/declined flags, creating a zero-step row for a day with none."""
        existing = self.get(day, txn)
        if existing is None:
            existing = make_daily_log(day, goal_target=self.goals.goal_for(day, txn), state=self.clock.day_state(day))
        update: dict[str, object] = {}
        if shield_used is not None:
            update["shield_used"] = shield_used
        if repair_declined is not None:
            update["repair_declined"] = repair_declined
        updated = existing.model_copy(update=update)
        self.put(updated, txn)
        return updated

    def put(self, log: DailyLog, txn: StoreTransaction | None = None) -> None:
        (txn or self.store).put(log.key, dump_model(log))

    # --- Locked operations ---

    async def record(self, day: date, observations: list[StepObservation]) -> DayWrite:
        """Live path: buffer observations and update the day if it is still open.

        Late observations for a finalized day are only buffered; reconciliation
        folds them in.
        """
        async with self.store.locked(daily_log_key(day)):
            with self.store.transaction() as txn:
                buffered = self.stage_buffer(day, observations, txn)
                if self.clock.day_state(day) is DayState.FINALIZED:
                    logger.info("Buffered %d late observations for finalized %s", len(observations), day.isoformat())
                    write = DayWrite(day=day, log=self.get(day, txn))
                else:
                    write = self.stage_total(day, buffered, txn)
        if write.changed:
            await self.announce(day, "observations")
        return write

    async def roll_over(self) -> list[date]:
        """Finalize every row whose day has closed while it was still open.

        The first pass checks every past row. A row can only be written open on
        its own day, so later passes only look at days since the previous pass.
        """
        today = self.clock.today()
        since = self._rolled_through
        finalized: list[date] = []
        for key in self.store.keys(DAILY_LOG_PREFIX):
            day = _day_of(key)
            if self.clock.day_state(day) is DayState.OPEN or (since is not None and day < since):
                continue
            async with self.store.locked(key):
                try:
                    log = self.get(day)
                except CorruptedAggregate as exc:
                    report_anomaly(self.audit_dir, exc)
                    continue
                if log is None:
                    continue
                if log.state is DayState.FINALIZED:
                    continue
                self.put(log.model_copy(update={"state": DayState.FINALIZED}))
            finalized.append(day)
            logger.info("Finalized %s at %d steps (goal %d)", day.isoformat(), log.steps, log.goal_target)
        self._rolled_through = today
        for day in finalized:
            await self.announce(day, "rollover")
        return sorted(finalized)

    def prune_before(self, cutoff: date) -> list[date]:
        """Drop observation buffers and high-water marks for days before cutoff."""
        pruned: list[date] = []
        with self.store.transaction() as txn:
            for key in self.store.keys(OBSERVATIONS_PREFIX):
                day = date.fromisoformat(key.removeprefix(OBSERVATIONS_PREFIX))
                if day < cutoff:
                    txn.delete(key)
                    pruned.append(day)
        self.ratchet.prune_before(cutoff)
        if pruned:
            logger.info("Pruned %d observation buffers before %s", len(pruned), cutoff.isoformat())
        return pruned

    async def announce(self, day: date, reason: str) -> None:
        if self.events is not None:
            await self.events.publish(ChangeEvent(Aggregate.DAILY_LOG, day.isoformat(), reason))

    def trailing_window(self, days: int) -> tuple[date, date]:
        """Inclusive window of the last `days` days ending today."""
        today = self.clock.today()
        return today - timedelta(days=max(days, 1) - 1), today
