"""Async reconciliation scheduler: re-derives a trailing window of days from the source of truth."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import date, timedelta

from stepstreak.core.clock import Clock
from stepstreak.core.entitlements import Entitlements
from stepstreak.core.errors import CorruptedAggregate, ObservationFetchFailure, ReconcileReport
from stepstreak.data.audit import report_anomaly
from stepstreak.data.daily_log import DailyLogStore
from stepstreak.data.schemas import RECONCILE_KEY, ReconcileState, daily_log_key
from stepstreak.data.store import AggregateStore, dump_model, load_model
from stepstreak.data.streaks import StreakEngine
from stepstreak.integrations.sources.base import SourceProvider

logger = logging.getLogger(__name__)


class ReconciliationScheduler:
    """Throttled background re-derivation of historical daily totals.

    Each day is fetched outside any lock, then merged, ratcheted and committed
    under that day's lock on its own, so cancelling or failing mid-window never
    undoes days already committed and a rerun from scratch is always safe.
    """

    def __init__(
        self,
        store: AggregateStore,
        source: SourceProvider,
        daily_logs: DailyLogStore,
        streaks: StreakEngine,
        clock: Clock,
        entitlements: Entitlements,
        min_interval: timedelta = timedelta(hours=6),
        poll_seconds: float = 300.0,
    ) -> None:
        self.store = store
        self.source = source
        self.daily_logs = daily_logs
        self.streaks = streaks
        self.clock = clock
        self.entitlements = entitlements
        self.min_interval = min_interval
        self.poll_seconds = poll_seconds
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._run_lock = asyncio.Lock()

    # --- Throttle state ---

    def state(self) -> ReconcileState:
        try:
            return load_model(self.store, RECONCILE_KEY, ReconcileState) or ReconcileState()
        except CorruptedAggregate as exc:
            report_anomaly(self.daily_logs.audit_dir, exc)
            return ReconcileState()

    def is_due(self) -> bool:
        last = self.state().last_success_at
        return last is None or self.clock.now() - last >= self.min_interval

    def trailing_window(self) -> tuple[date, date]:
        return self.daily_logs.trailing_window(self.entitlements.current().reconcile_window_days)

    # --- Reconciliation ---

    async def reconcile_day(self, day: date) -> bool:
        """Fetch, merge, ratchet and commit one day. Returns True if its steps changed.

        Raises ObservationFetchFailure when the source is unreachable.
        """
        fetched = await self.source.fetch_observations(day)
        async with self.store.locked(daily_log_key(day)):
            with self.store.transaction() as txn:
                observations = [*fetched, *self.daily_logs.buffered(day, txn)]
                write = self.daily_logs.stage_total(day, observations, txn, source=f"reconcile:{self.source.name}")
        if write.steps_changed:
            logger.info(
                "Reconciled %s: %s -> %d steps",
                day.isoformat(),
                write.previous_steps if write.previous_steps is not None else "none",
                write.log.steps if write.log is not None else 0,
            )
        if write.changed:
            await self.daily_logs.announce(day, "reconcile")
        return write.steps_changed

    async def reconcile(self, start: date, end: date) -> ReconcileReport:
        """Reconcile start..end inclusive, oldest first, then recompute the streak once."""
        report = ReconcileReport(window_start=start, window_end=end)
        async with self._run_lock:
            await self.daily_logs.roll_over()
            self._record_attempt()
            fetched_any = False
            any_changed = False
            day = start
            try:
                while day <= end:
                    report.days_checked += 1
                    try:
                        changed = await self.reconcile_day(day)
                        fetched_any = True
                    except ObservationFetchFailure as exc:
                        logger.warning("Reconcile of %s deferred: %s", day.isoformat(), exc)
                        report.failed_days.append(day)
                    except CorruptedAggregate as exc:
                        report_anomaly(self.daily_logs.audit_dir, exc)
                        report.failed_days.append(day)
                    else:
                        if changed:
                            report.changed_days.append(day)
                            any_changed = True
                    day += timedelta(days=1)
            finally:
                if any_changed:
                    # A corrected past day can resurrect or extend the streak.
                    await self.streaks.recompute(reason="reconcile", history_from=start)

            if not fetched_any:
                report.deferred = True
                logger.warning("Source unavailable for the whole window; reconciliation deferred")
            else:
                self._record_success()
                # Days before the tier's window are never re-derived again.
                self.daily_logs.prune_before(self.trailing_window()[0])
        logger.info(
            "Reconciled %s..%s: %d changed, %d failed",
            start.isoformat(),
            end.isoformat(),
            len(report.changed_days),
            len(report.failed_days),
        )
        return report

    async def maybe_reconcile(self, force: bool = False) -> ReconcileReport:
        """Run over the tier's trailing window unless throttled."""
        if not force and not self.is_due():
            logger.debug("Reconciliation throttled")
            return ReconcileReport(skipped=True)
        start, end = self.trailing_window()
        return await self.reconcile(start, end)

    async def trigger_now(self) -> ReconcileReport:
        """Explicit trigger (foregrounding, manual refresh): bypasses the throttle."""
        return await self.maybe_reconcile(force=True)

    def _record_attempt(self) -> None:
        state = self.state()
        self.store.put(RECONCILE_KEY, dump_model(state.model_copy(update={"last_attempt_at": self.clock.now()})))

    def _record_success(self) -> None:
        state = self.state()
        self.store.put(RECONCILE_KEY, dump_model(state.model_copy(update={"last_success_at": self.clock.now()})))

    # --- Background loop ---

    async def start(self) -> None:
        """Start the scheduler loop."""
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Reconciliation scheduler started (every %.0fs)", self.poll_seconds)

    async def stop(self) -> None:
        """Stop the scheduler loop."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Reconciliation scheduler stopped")

    async def _loop(self) -> None:
        """Main loop: wake every poll interval and reconcile when due."""
        while self._running:
            try:
                await self.maybe_reconcile()
            except Exception:
                logger.exception("Error in scheduled reconciliation")
            await asyncio.sleep(self.poll_seconds)
