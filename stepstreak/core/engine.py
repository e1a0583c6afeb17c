"""Engine facade: wires the step, streak and shield services and exposes them to collaborators."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, timedelta

from stepstreak.core.clock import Clock, SystemClock
from stepstreak.core.config import Settings
from stepstreak.core.config import settings as default_settings
from stepstreak.core.entitlements import Entitlements, SettingsEntitlements
from stepstreak.core.errors import CorruptedAggregate, ObservationFetchFailure, ReconcileReport, RepairResult
from stepstreak.core.events import ChangeEvent, EventBus
from stepstreak.data.audit import audit_correction, report_anomaly
from stepstreak.data.daily_log import DailyLogStore
from stepstreak.data.goals import GoalStore
from stepstreak.data.merge import IntervalMergeEngine, ProviderPrecedence
from stepstreak.data.ratchet import HighWaterMarkRatchet
from stepstreak.data.replica import merge_daily_log, merge_shields, merge_streak
from stepstreak.data.schemas import (
    GOAL_KEY,
    SHIELDS_KEY,
    STREAK_KEY,
    Aggregate,
    ConsumptionOrder,
    DailyLog,
    DayState,
    LegacyBadge,
    ShieldInventory,
    StepObservation,
    StreakState,
    daily_log_key,
)
from stepstreak.data.shields import AutoProtectResult, ShieldEngine
from stepstreak.data.store import AggregateStore, EncryptedFileStore, MemoryStore, dump_model
from stepstreak.data.streaks import StreakEngine
from stepstreak.integrations.scheduler import ReconciliationScheduler
from stepstreak.integrations.sources import HttpSourceProvider, SourceConfig, SourceProvider, SourceRouter

logger = logging.getLogger(__name__)

_ONE_MICROSECOND = timedelta(microseconds=1)


@dataclass
class TodaySummary:
    """Today's live total against the goal in effect."""

    date: date
    steps: int
    goal: int
    goal_met: bool


@dataclass
class ForegroundReport:
    """What happened when the app came to the foreground."""

    finalized_days: list[date] = field(default_factory=list)
    reconcile: ReconcileReport | None = None
    auto_protect: AutoProtectResult | None = None
    streak: StreakState | None = None


class StepEngine:
    """Single owner of the step, streak and shield aggregates.

    Collaborators read snapshots and request changes through this object; no
    aggregate is mutated anywhere else.
    """

    def __init__(
        self,
        store: AggregateStore,
        clock: Clock,
        entitlements: Entitlements,
        source: SourceProvider | None = None,
        config: Settings | None = None,
        events: EventBus | None = None,
    ) -> None:
        cfg = config or default_settings
        self.config = cfg
        self.store = store
        self.clock = clock
        self.entitlements = entitlements
        self.source = source
        self.events = events or EventBus()
        audit_dir = cfg.data_audit_path

        self.precedence = ProviderPrecedence(cfg.provider_precedence)
        self.merge_engine = IntervalMergeEngine(clock, self.precedence)
        self.ratchet = HighWaterMarkRatchet(store)
        self.goals = GoalStore(store, cfg.default_step_goal)
        self.daily_logs = DailyLogStore(
            store, clock, self.goals, self.merge_engine, self.ratchet, events=self.events, audit_dir=audit_dir
        )
        self.streaks = StreakEngine(
            store,
            self.daily_logs,
            clock,
            events=self.events,
            audit_dir=audit_dir,
            at_risk_hour=cfg.at_risk_hour,
            history_days=cfg.repair_lookback_days,
        )
        self.shields = ShieldEngine(
            store,
            self.daily_logs,
            self.streaks,
            clock,
            entitlements,
            events=self.events,
            order=ConsumptionOrder(cfg.shield_consumption_order),
            lookback_days=cfg.repair_lookback_days,
            audit_dir=audit_dir,
        )
        self.scheduler: ReconciliationScheduler | None = None
        if source is not None:
            self.scheduler = ReconciliationScheduler(
                store,
                source,
                self.daily_logs,
                self.streaks,
                clock,
                entitlements,
                min_interval=timedelta(hours=cfg.reconcile_min_interval_hours),
                poll_seconds=cfg.reconcile_poll_seconds,
            )

    # --- Lifecycle ---

    async def start(self) -> None:
        if self.source is not None:
            await self.source.initialize()
        if self.scheduler is not None and self.config.reconcile_enabled:
            await self.scheduler.start()

    async def stop(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()
        if self.source is not None:
            await self.source.shutdown()

    # --- Reads ---

    def get_today(self) -> TodaySummary:
        today = self.clock.today()
        log = self.daily_logs.load(today)
        if log is None:
            goal = self.goals.goal_for(today)
            return TodaySummary(date=today, steps=0, goal=goal, goal_met=False)
        return TodaySummary(date=today, steps=log.steps, goal=log.goal_target, goal_met=log.goal_met)

    def get_streak(self) -> StreakState:
        return self.streaks.get()

    def get_shields(self) -> ShieldInventory:
        return self.shields.get()

    def load_daily_log(self, day: date) -> DailyLog | None:
        return self.daily_logs.load(day)

    def load_daily_logs(self, start: date, end: date) -> list[DailyLog]:
        return self.daily_logs.load_range(start, end)

    def get_legacy_badges(self) -> list[LegacyBadge]:
        return self.streaks.get_badges().badges

    # --- Live path ---

    def _days_touched(self, obs: StepObservation) -> list[date]:
        first = self.clock.local_date(obs.start)
        last = self.clock.local_date(obs.end - _ONE_MICROSECOND)
        if last < first:
            return [first]
        return [first + timedelta(days=i) for i in range((last - first).days + 1)]

    async def record_observations(self, observations: Iterable[StepObservation]) -> list[date]:
        """Ingest sensor or sync observations. Returns the days whose steps changed."""
        await self.daily_logs.roll_over()
        by_day: dict[date, list[StepObservation]] = defaultdict(list)
        for obs in observations:
            for day in self._days_touched(obs):
                by_day[day].append(obs)

        changed: list[date] = []
        for day in sorted(by_day):
            write = await self.daily_logs.record(day, by_day[day])
            if write.steps_changed:
                changed.append(day)
        if changed:
            await self.streaks.recompute(reason="observations")
        return changed

    async def refresh_today(self) -> TodaySummary:
        """Pull today's observations from the source; an unreachable source leaves today as is."""
        if self.source is not None:
            try:
                fetched = await self.source.fetch_observations(self.clock.today())
            except ObservationFetchFailure as exc:
                logger.warning("Today's refresh skipped: %s", exc)
            else:
                await self.record_observations(fetched)
        return self.get_today()

    async def set_goal(self, steps: int) -> TodaySummary:
        """Change the current goal from today on; finalized days keep theirs."""
        today = self.clock.today()
        async with self.store.locked(daily_log_key(today), GOAL_KEY):
            with self.store.transaction() as txn:
                self.goals.stage_change(steps, today, txn)
                self.daily_logs.stage_goal_refresh(today, txn)
        await self.events.publish_all(
            [
                ChangeEvent(Aggregate.GOAL, GOAL_KEY, "set_goal"),
                ChangeEvent(Aggregate.DAILY_LOG, today.isoformat(), "goal"),
            ]
        )
        await self.streaks.recompute(reason="goal")
        return self.get_today()

    # --- Shields and streak ---

    async def request_repair(self, day: date) -> RepairResult:
        return await self.shields.repair_date(day)

    async def decline_repair(self, day: date) -> LegacyBadge | None:
        """The user chose not to repair a missed day: remember it and break the streak.

        Returns the legacy badge the broken streak earned, if any.
        """
        key = daily_log_key(day)
        async with self.store.locked(key):
            with self.store.transaction() as txn:
                self.daily_logs.stage_flags(day, txn, repair_declined=True)
        await self.daily_logs.announce(day, "declined")
        return await self.streaks.break_streak(self.streaks.run_ending(day - timedelta(days=1)))

    async def purchase_shields(self, count: int) -> ShieldInventory:
        return await self.shields.purchase(count)

    async def consume_milestone(self) -> int | None:
        return await self.streaks.consume_milestone()

    async def on_foreground(self) -> ForegroundReport:
        """Roll days over, refill, reconcile, protect missed days, then recompute."""
        report = ForegroundReport()
        report.finalized_days = await self.daily_logs.roll_over()
        try:
            await self.shields.grant_recurring()
        except CorruptedAggregate as exc:
            report_anomaly(self.config.data_audit_path, exc)
        if self.scheduler is not None and self.config.reconcile_enabled:
            report.reconcile = await self.scheduler.trigger_now()
        if self.config.auto_deploy_shields:
            report.auto_protect = await self.shields.auto_protect_missed_days()
        report.streak = await self.streaks.recompute(reason="foreground")
        return report

    async def reconcile(self, start: date | None = None, end: date | None = None) -> ReconcileReport:
        """Explicit reconciliation of a window (defaults to the tier's trailing window)."""
        if self.scheduler is None:
            logger.warning("No source configured; reconciliation unavailable")
            return ReconcileReport(deferred=True)
        if start is None or end is None:
            return await self.scheduler.trigger_now()
        return await self.scheduler.reconcile(start, end)

    # --- Replicas from cloud sync ---

    async def apply_remote_daily_log(self, remote: DailyLog) -> DailyLog:
        """Merge another device's copy of a day into the local row."""
        day = remote.date
        async with self.store.locked(daily_log_key(day)):
            with self.store.transaction() as txn:
                local = self.daily_logs.get(day, txn)
                merged = merge_daily_log(local, remote)
                if self.clock.day_state(day) is DayState.FINALIZED:
                    merged = merged.model_copy(update={"state": DayState.FINALIZED})
                self.ratchet.ratchet(day, merged.steps, txn)
                if merged != local:
                    self.daily_logs.put(merged, txn)
        if merged == local:
            return merged
        if local is not None and local.state is DayState.FINALIZED and merged.steps > local.steps:
            audit_correction(self.config.data_audit_path, local.key, local.steps, merged.steps, "replica")
        await self.daily_logs.announce(day, "replica")
        await self.streaks.recompute(reason="replica")
        return merged

    async def apply_remote_shields(self, remote: ShieldInventory) -> ShieldInventory:
        async with self.store.locked(SHIELDS_KEY):
            local = self.shields.load()
            merged = merge_shields(local, remote)
            if merged != local:
                self.store.put(SHIELDS_KEY, dump_model(merged))
        if merged != local:
            await self.events.publish(ChangeEvent(Aggregate.SHIELDS, SHIELDS_KEY, "replica"))
        return merged

    async def apply_remote_streak(self, remote: StreakState) -> StreakState:
        async with self.store.locked(STREAK_KEY):
            local = self.streaks.get()
            merged = merge_streak(local, remote)
            if merged != local:
                self.store.put(STREAK_KEY, dump_model(merged))
        return await self.streaks.recompute(reason="replica")


def build_store(config: Settings) -> AggregateStore:
    """Store backend named by configuration."""
    if config.store_backend == "encrypted":
        if not config.age_recipient or not config.age_identity:
            msg = "Encrypted store requires AGE_RECIPIENT and AGE_IDENTITY"
            raise ValueError(msg)
        return EncryptedFileStore(config.data_store_path, config.age_recipient, config.age_identity)
    return MemoryStore()


def build_source(config: Settings) -> SourceProvider | None:
    """Upstream source router, or None when no endpoint is configured."""
    if not config.source_base_url:
        return None
    router = SourceRouter()
    router.register(
        HttpSourceProvider(
            SourceConfig(
                name="upstream",
                base_url=config.source_base_url,
                api_token=config.source_api_token,
                timeout_seconds=config.source_timeout_seconds,
            )
        )
    )
    return router


def build_engine(
    config: Settings | None = None,
    clock: Clock | None = None,
    store: AggregateStore | None = None,
    source: SourceProvider | None = None,
    entitlements: Entitlements | None = None,
) -> StepEngine:
    """Engine wired from configuration; every collaborator may be injected instead."""
    cfg = config or default_settings
    return StepEngine(
        store=store or build_store(cfg),
        clock=clock or SystemClock(cfg.timezone),
        entitlements=entitlements or SettingsEntitlements(cfg),
        source=source if source is not None else build_source(cfg),
        config=cfg,
    )
