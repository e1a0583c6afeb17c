"""Tests for stepstreak.integrations.scheduler."""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock, patch

from stepstreak.core.clock import FixedClock
from stepstreak.core.config import Settings
from stepstreak.core.engine import StepEngine
from stepstreak.data.audit import CORRECTIONS_LOG
from stepstreak.data.schemas import DayState, observations_key
from stepstreak.data.store import MemoryStore
from stepstreak.integrations.scheduler import ReconciliationScheduler
from tests.conftest import TODAY, FakeSource, days_before, seed_log, walk


def _scheduler(engine: StepEngine) -> ReconciliationScheduler:
    assert engine.scheduler is not None
    return engine.scheduler


class TestReconcileDay:
    async def test_lower_source_total_never_regresses(
        self, synced_engine: StepEngine, store: MemoryStore, source: FakeSource
    ) -> None:
        day = days_before(2)
        seed_log(store, day, 8000)
        source.data[day] = [walk(day, 5000)]

        report = await _scheduler(synced_engine).reconcile(day, day)

        assert report.changed_days == []
        log = synced_engine.load_daily_log(day)
        assert log is not None
        assert log.steps == 8000

    async def test_upward_correction_is_audited(
        self, synced_engine: StepEngine, store: MemoryStore, source: FakeSource, config: Settings
    ) -> None:
        day = days_before(2)
        seed_log(store, day, 8000)
        source.data[day] = [walk(day, 12_000)]

        report = await _scheduler(synced_engine).reconcile(day, day)

        assert report.changed_days == [day]
        log = synced_engine.load_daily_log(day)
        assert log is not None
        assert log.steps == 12_000
        assert log.goal_met
        assert log.state is DayState.FINALIZED
        entries = (config.data_audit_path / CORRECTIONS_LOG).read_text().splitlines()
        entry = json.loads(entries[-1])
        assert entry["before"] == 8000
        assert entry["after"] == 12_000
        assert entry["source"] == "reconcile:health_store"

    async def test_correction_keeps_frozen_goal(
        self, synced_engine: StepEngine, store: MemoryStore, source: FakeSource
    ) -> None:
        day = days_before(2)
        seed_log(store, day, 8000, goal=9000)
        await synced_engine.set_goal(6000)
        source.data[day] = [walk(day, 8500)]

        await _scheduler(synced_engine).reconcile(day, day)

        log = synced_engine.load_daily_log(day)
        assert log is not None
        assert log.goal_target == 9000
        assert log.goal_met is False

    async def test_buffered_late_observations_folded_in(
        self, synced_engine: StepEngine, store: MemoryStore
    ) -> None:
        day = days_before(1)
        seed_log(store, day, 8000)
        assert await synced_engine.record_observations([walk(day, 11_000)]) == []

        report = await _scheduler(synced_engine).reconcile(day, day)

        assert report.changed_days == [day]
        log = synced_engine.load_daily_log(day)
        assert log is not None
        assert log.steps == 11_000


class TestReconcileWindow:
    async def test_correction_resurrects_streak(
        self, synced_engine: StepEngine, store: MemoryStore, source: FakeSource
    ) -> None:
        seed_log(store, days_before(3), 10_000)
        seed_log(store, days_before(2), 8000)
        seed_log(store, days_before(1), 10_000)
        assert (await synced_engine.streaks.recompute()).current_streak == 1
        source.data[days_before(2)] = [walk(days_before(2), 10_400)]

        await _scheduler(synced_engine).reconcile(days_before(3), TODAY)

        assert synced_engine.get_streak().current_streak == 3

    async def test_partial_failure_commits_other_days(
        self, synced_engine: StepEngine, store: MemoryStore, source: FakeSource, clock: FixedClock
    ) -> None:
        seed_log(store, days_before(1), 8000)
        source.data[days_before(1)] = [walk(days_before(1), 12_000)]
        source.fail_days.add(days_before(2))

        report = await _scheduler(synced_engine).reconcile(days_before(2), days_before(1))

        assert report.failed_days == [days_before(2)]
        assert report.changed_days == [days_before(1)]
        assert report.days_checked == 2
        assert report.deferred is False
        assert _scheduler(synced_engine).state().last_success_at == clock.now()

    async def test_source_down_defers_run(
        self, synced_engine: StepEngine, store: MemoryStore, source: FakeSource, clock: FixedClock
    ) -> None:
        seed_log(store, days_before(1), 8000)
        source.down = True

        report = await _scheduler(synced_engine).reconcile(days_before(3), days_before(1))

        assert report.deferred is True
        assert len(report.failed_days) == 3
        state = _scheduler(synced_engine).state()
        assert state.last_success_at is None
        assert state.last_attempt_at == clock.now()
        log = synced_engine.load_daily_log(days_before(1))
        assert log is not None
        assert log.steps == 8000

    async def test_stale_open_row_finalized_first(self, synced_engine: StepEngine, store: MemoryStore) -> None:
        seed_log(store, days_before(1), 4000, state=DayState.OPEN)
        await _scheduler(synced_engine).reconcile(days_before(1), days_before(1))
        log = synced_engine.load_daily_log(days_before(1))
        assert log is not None
        assert log.state is DayState.FINALIZED


class TestPruning:
    async def test_successful_run_prunes_buffers_outside_window(
        self, synced_engine: StepEngine, store: MemoryStore
    ) -> None:
        old, recent = days_before(45), days_before(5)
        await synced_engine.daily_logs.record(old, [walk(old, 700)])
        await synced_engine.daily_logs.record(recent, [walk(recent, 700)])

        report = await _scheduler(synced_engine).maybe_reconcile()

        assert report.deferred is False
        assert store.get(observations_key(old)) is None
        assert store.get(observations_key(recent)) is not None

    async def test_deferred_run_keeps_buffers(
        self, synced_engine: StepEngine, store: MemoryStore, source: FakeSource
    ) -> None:
        old = days_before(45)
        await synced_engine.daily_logs.record(old, [walk(old, 700)])
        source.down = True

        report = await _scheduler(synced_engine).maybe_reconcile()

        assert report.deferred is True
        assert store.get(observations_key(old)) is not None


class TestThrottle:
    async def test_second_run_throttled(
        self, synced_engine: StepEngine, source: FakeSource, clock: FixedClock
    ) -> None:
        scheduler = _scheduler(synced_engine)
        first = await scheduler.maybe_reconcile()
        assert first.skipped is False
        assert first.days_checked == 30

        second = await scheduler.maybe_reconcile()
        assert second.skipped is True

        clock.advance(timedelta(hours=7))
        third = await scheduler.maybe_reconcile()
        assert third.skipped is False

    async def test_trigger_now_bypasses_throttle(self, synced_engine: StepEngine) -> None:
        scheduler = _scheduler(synced_engine)
        await scheduler.maybe_reconcile()
        assert scheduler.is_due() is False
        report = await scheduler.trigger_now()
        assert report.skipped is False

    async def test_deferred_run_stays_due(self, synced_engine: StepEngine, source: FakeSource) -> None:
        source.down = True
        scheduler = _scheduler(synced_engine)
        await scheduler.maybe_reconcile()
        assert scheduler.is_due() is True

    async def test_window_follows_tier(self, synced_engine: StepEngine) -> None:
        scheduler = _scheduler(synced_engine)
        assert scheduler.trailing_window() == (days_before(29), TODAY)
        synced_engine.entitlements.tier = "pro"  # type: ignore[attr-defined]
        assert scheduler.trailing_window() == (days_before(364), TODAY)


class TestSchedulerLoop:
    async def test_start_and_stop(self, synced_engine: StepEngine) -> None:
        scheduler = _scheduler(synced_engine)
        with patch.object(scheduler, "maybe_reconcile", new_callable=AsyncMock) as mock:
            await scheduler.start()
            assert scheduler._running is True
            await asyncio.sleep(0)
            await scheduler.stop()
        assert scheduler._running is False
        assert scheduler._task is None
        mock.assert_awaited_once()

    async def test_loop_survives_errors(self, synced_engine: StepEngine) -> None:
        scheduler = _scheduler(synced_engine)
        scheduler.poll_seconds = 0
        with patch.object(scheduler, "maybe_reconcile", new_callable=AsyncMock) as mock:
            mock.side_effect = RuntimeError("boom")
            await scheduler.start()
            for _ in range(5):
                await asyncio.sleep(0)
            await scheduler.stop()
        assert mock.await_count >= 2
