"""Shared fixtures: a fixed clock, an isolated config and an in-memory engine."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from pathlib import Path

import pytest

from stepstreak.core.clock import FixedClock
from stepstreak.core.config import Settings
from stepstreak.core.engine import StepEngine
from stepstreak.core.entitlements import StaticEntitlements
from stepstreak.core.errors import ObservationFetchFailure
from stepstreak.data.schemas import DayState, StepObservation, daily_log_key, make_daily_log, make_observation
from stepstreak.data.store import AggregateStore, MemoryStore, dump_model
from stepstreak.integrations.sources.base import SourceProvider

TODAY = date(2026, 3, 7)
NOON = datetime(2026, 3, 7, 12, 0)


def walk(day: date, steps: int, provider: str = "health_store", session_id: str | None = None) -> StepObservation:
    """A 08:00-20:00 observation on day."""
    return make_observation(
        provider,
        datetime(day.year, day.month, day.day, 8, 0),
        datetime(day.year, day.month, day.day, 20, 0),
        steps,
        session_id,
    )


def seed_log(
    store: AggregateStore,
    day: date,
    steps: int,
    goal: int = 10_000,
    shield_used: bool = False,
    state: DayState = DayState.FINALIZED,
) -> None:
    """Write a DailyLog row directly."""
    log = make_daily_log(day, goal_target=goal, steps=steps, state=state, shield_used=shield_used)
    store.put(daily_log_key(day), dump_model(log))


class FakeSource(SourceProvider):
    """In-memory source of truth with switchable outages."""

    def __init__(self, name: str = "health_store") -> None:
        self._name = name
        self.data: dict[date, list[StepObservation]] = {}
        self.fail_days: set[date] = set()
        self.down = False
        self.calls: list[date] = []

    @property
    def name(self) -> str:
        return self._name

    async def fetch_observations(self, day: date) -> list[StepObservation]:
        self.calls.append(day)
        if self.down or day in self.fail_days:
            raise ObservationFetchFailure(self._name, "offline")
        return list(self.data.get(day, []))


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOON, "UTC")


@pytest.fixture
def config(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        timezone="UTC",
        default_step_goal=10_000,
        subscription_tier="free",
        data_audit_path=tmp_path / "audit",
        data_store_path=tmp_path / "store",
        reconcile_enabled=False,
        auto_deploy_shields=True,
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def engine(store: MemoryStore, clock: FixedClock, config: Settings) -> StepEngine:
    return StepEngine(store=store, clock=clock, entitlements=StaticEntitlements("free"), config=config)


@pytest.fixture
def synced_engine(store: MemoryStore, clock: FixedClock, config: Settings, source: FakeSource) -> StepEngine:
    return StepEngine(store=store, clock=clock, entitlements=StaticEntitlements("free"), source=source, config=config)


def days_before(n: int, today: date = TODAY) -> date:
    return today - timedelta(days=n)
