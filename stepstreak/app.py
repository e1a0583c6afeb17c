"""FastAPI entrypoint exposing the step/streak/shield engine to UI collaborators."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date, datetime

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from stepstreak.core.config import settings
from stepstreak.core.engine import StepEngine, build_engine
from stepstreak.core.errors import CorruptedAggregate, ReconcileReport
from stepstreak.data.schemas import DailyLog, LegacyBadge, ShieldInventory, StreakState, make_observation

logger = logging.getLogger(__name__)

_engine: StepEngine | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the engine and run its reconciliation loop alongside the server."""
    global _engine  # noqa: PLW0603

    logging.getLogger("stepstreak").setLevel(settings.log_level.upper())
    _engine = build_engine(settings)
    if _engine.scheduler is None:
        logger.warning("SOURCE_BASE_URL not set, reconciliation disabled")
    await _engine.start()
    logger.info("Engine started (tier=%s, store=%s)", settings.subscription_tier, settings.store_backend)

    yield

    await _engine.stop()
    logger.info("Engine stopped")


app = FastAPI(title="stepstreak", version="0.1.0", lifespan=lifespan)

_bearer_scheme = HTTPBearer()


@app.exception_handler(CorruptedAggregate)
async def _corrupted_aggregate_handler(request: Request, exc: CorruptedAggregate) -> JSONResponse:
    """A rejected aggregate leaves the previous state in place; the caller sees stale data."""
    logger.error("Request %s rejected: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "State temporarily unavailable"})


# --- Models ---


class HealthResponse(BaseModel):
    """Response for the /health endpoint."""

    status: str


class TodayResponse(BaseModel):
    """Today's live total."""

    date: date
    steps: int
    goal: int
    goal_met: bool


class ShieldsResponse(BaseModel):
    """Shield inventory snapshot plus purchase hints."""

    inventory: ShieldInventory
    total_available: int
    can_buy_more: bool
    next_refill_date: date


class StreakResponse(BaseModel):
    """Streak snapshot plus derived flags."""

    state: StreakState
    alive: bool
    at_risk: bool
    days_until_next_milestone: int


class RepairRequest(BaseModel):
    """Body for /repair and /decline."""

    date: date


class RepairResponse(BaseModel):
    """Outcome of a repair request."""

    date: date
    outcome: str
    reason: str = ""


class ObservationIn(BaseModel):
    """One step observation pushed by a sensor or sync collaborator."""

    provider: str
    start: datetime
    end: datetime
    steps: int
    session_id: str | None = None


class ObservationsRequest(BaseModel):
    """Body for /observations."""

    observations: list[ObservationIn]


class ObservationsResponse(BaseModel):
    """Days whose totals changed."""

    changed_days: list[date]


class GoalRequest(BaseModel):
    """Body for /goal."""

    steps: int = Field(gt=0)


class PurchaseRequest(BaseModel):
    """Body for /shields/purchase."""

    count: int = Field(gt=0)


class DeclineResponse(BaseModel):
    """Outcome of declining a repair."""

    legacy_badge: LegacyBadge | None = None


class MilestoneResponse(BaseModel):
    """Pending milestone, if any."""

    milestone: int | None


class ReconcileResponse(BaseModel):
    """Summary of a reconciliation pass."""

    changed_days: list[date]
    failed_days: list[date]
    days_checked: int
    deferred: bool
    skipped: bool


def _reconcile_response(report: ReconcileReport) -> ReconcileResponse:
    return ReconcileResponse(
        changed_days=report.changed_days,
        failed_days=report.failed_days,
        days_checked=report.days_checked,
        deferred=report.deferred,
        skipped=report.skipped,
    )


# --- Dependencies ---


async def _verify_api_key(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),  # noqa: B008
) -> str:
    """Validate the Bearer token against the configured api_key."""
    if not settings.api_key or credentials.credentials != settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
    return credentials.credentials


def _get_engine() -> StepEngine:
    if _engine is None:
        raise HTTPException(status_code=503, detail="Engine not started")
    return _engine


# --- Endpoints ---


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok")


@app.get("/today", response_model=TodayResponse)
async def today(_key: str = Depends(_verify_api_key)) -> TodayResponse:
    summary = _get_engine().get_today()
    return TodayResponse(date=summary.date, steps=summary.steps, goal=summary.goal, goal_met=summary.goal_met)


@app.get("/streak", response_model=StreakResponse)
async def streak(_key: str = Depends(_verify_api_key)) -> StreakResponse:
    engine = _get_engine()
    return StreakResponse(
        state=engine.get_streak(),
        alive=engine.streaks.is_alive(),
        at_risk=engine.streaks.is_at_risk(),
        days_until_next_milestone=engine.streaks.days_until_next_milestone(),
    )


@app.get("/shields", response_model=ShieldsResponse)
async def shields(_key: str = Depends(_verify_api_key)) -> ShieldsResponse:
    engine = _get_engine()
    inventory = engine.get_shields()
    return ShieldsResponse(
        inventory=inventory,
        total_available=inventory.total_available,
        can_buy_more=engine.shields.can_buy_more(),
        next_refill_date=engine.shields.next_refill_date(),
    )


@app.get("/logs/{day}", response_model=DailyLog)
async def daily_log(day: date, _key: str = Depends(_verify_api_key)) -> DailyLog:
    log = _get_engine().load_daily_log(day)
    if log is None:
        raise HTTPException(status_code=404, detail=f"No log for {day.isoformat()}")
    return log


@app.get("/logs", response_model=list[DailyLog])
async def daily_logs(start: date, end: date, _key: str = Depends(_verify_api_key)) -> list[DailyLog]:
    if end < start:
        raise HTTPException(status_code=422, detail="end must not be before start")
    return _get_engine().load_daily_logs(start, end)


@app.post("/observations", response_model=ObservationsResponse)
async def observations(body: ObservationsRequest, _key: str = Depends(_verify_api_key)) -> ObservationsResponse:
    """Live path: sensor and sync collaborators push observations here."""
    parsed = [make_observation(o.provider, o.start, o.end, o.steps, o.session_id) for o in body.observations]
    changed = await _get_engine().record_observations(parsed)
    return ObservationsResponse(changed_days=changed)


@app.post("/repair", response_model=RepairResponse)
async def repair(body: RepairRequest, _key: str = Depends(_verify_api_key)) -> RepairResponse:
    """Spend a shield on a missed day. Ineligible or unaffordable requests are normal outcomes."""
    result = await _get_engine().request_repair(body.date)
    return RepairResponse(date=result.day, outcome=str(result.outcome), reason=result.reason)


@app.post("/decline", response_model=DeclineResponse)
async def decline(body: RepairRequest, _key: str = Depends(_verify_api_key)) -> DeclineResponse:
    badge = await _get_engine().decline_repair(body.date)
    return DeclineResponse(legacy_badge=badge)


@app.get("/badges", response_model=list[LegacyBadge])
async def badges(_key: str = Depends(_verify_api_key)) -> list[LegacyBadge]:
    return _get_engine().get_legacy_badges()


@app.post("/goal", response_model=TodayResponse)
async def goal(body: GoalRequest, _key: str = Depends(_verify_api_key)) -> TodayResponse:
    summary = await _get_engine().set_goal(body.steps)
    return TodayResponse(date=summary.date, steps=summary.steps, goal=summary.goal, goal_met=summary.goal_met)


@app.post("/shields/purchase", response_model=ShieldInventory)
async def purchase(body: PurchaseRequest, _key: str = Depends(_verify_api_key)) -> ShieldInventory:
    """Credit shields after the purchase-flow collaborator confirmed payment."""
    return await _get_engine().purchase_shields(body.count)


@app.post("/milestone/consume", response_model=MilestoneResponse)
async def consume_milestone(_key: str = Depends(_verify_api_key)) -> MilestoneResponse:
    return MilestoneResponse(milestone=await _get_engine().consume_milestone())


@app.post("/foreground", response_model=StreakState)
async def foreground(_key: str = Depends(_verify_api_key)) -> StreakState:
    """App came to the foreground: roll over, refill, reconcile and protect missed days."""
    report = await _get_engine().on_foreground()
    return report.streak or _get_engine().get_streak()


@app.post("/reconcile", response_model=ReconcileResponse)
async def reconcile(_key: str = Depends(_verify_api_key)) -> ReconcileResponse:
    return _reconcile_response(await _get_engine().reconcile())
