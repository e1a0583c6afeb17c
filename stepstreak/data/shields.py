"""Shield economy: two-bucket inventory, monthly refill, repair of missed days."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from pathlib import Path

from stepstreak.core.clock import Clock
from stepstreak.core.entitlements import Entitlements, TierPolicy
from stepstreak.core.errors import (
    CorruptedAggregate,
    InsufficientShields,
    RepairIneligible,
    RepairOutcome,
    RepairResult,
)
from stepstreak.core.events import ChangeEvent, EventBus
from stepstreak.data.audit import report_anomaly
from stepstreak.data.daily_log import DailyLogStore
from stepstreak.data.schemas import (
    SHIELDS_KEY,
    STREAK_KEY,
    Aggregate,
    ConsumptionOrder,
    DailyLog,
    DayState,
    LegacyBadge,
    ShieldInventory,
    daily_log_key,
)
from stepstreak.data.store import AggregateStore, StoreTransaction, dump_model, load_model
from stepstreak.data.streaks import StreakEngine

logger = logging.getLogger(__name__)

_DEFAULT_LOOKBACK_DAYS = 7


# --- Pure transitions ---


def apply_grant(inventory: ShieldInventory, period: str, policy: TierPolicy) -> ShieldInventory:
    """Grant the period's recurring tokens once; the bank is capped, not accumulated."""
    if inventory.last_recurring_refill_period == period:
        return inventory
    return inventory.model_copy(
        update={
            "recurring_available": min(policy.bank_max, inventory.recurring_available + policy.recurring_amount),
            "last_recurring_refill_period": period,
            "used_this_period": 0,
        }
    )


def apply_purchase(inventory: ShieldInventory, count: int) -> ShieldInventory:
    """Add purchased tokens; they never expire and have no cap."""
    if count <= 0:
        msg = f"Purchase count must be positive, got {count}"
        raise ValueError(msg)
    return inventory.model_copy(
        update={
            "purchased_available": inventory.purchased_available + count,
            "purchased_lifetime": inventory.purchased_lifetime + count,
        }
    )


def apply_consume(
    inventory: ShieldInventory,
    order: ConsumptionOrder = ConsumptionOrder.PURCHASED_FIRST,
) -> ShieldInventory:
    """Spend one token from the bucket the order names first. Never goes negative."""
    if inventory.total_available == 0:
        raise InsufficientShields("No shields available")
    purchased = inventory.purchased_available
    recurring = inventory.recurring_available
    if order is ConsumptionOrder.PURCHASED_FIRST:
        if purchased > 0:
            purchased -= 1
        else:
            recurring -= 1
    elif recurring > 0:
        recurring -= 1
    else:
        purchased -= 1
    return inventory.model_copy(
        update={
            "purchased_available": purchased,
            "recurring_available": recurring,
            "used_this_period": inventory.used_this_period + 1,
            "total_used_lifetime": inventory.total_used_lifetime + 1,
        }
    )


@dataclass
class AutoProtectResult:
    """Summary of the on-open missed-day check."""

    shields_deployed: int = 0
    protected_days: list[date] = field(default_factory=list)
    streak_broken: bool = False
    legacy_badge: LegacyBadge | None = None


class ShieldEngine:
    """Owns the persisted ShieldInventory and the repair operation."""

    def __init__(
        self,
        store: AggregateStore,
        daily_logs: DailyLogStore,
        streaks: StreakEngine,
        clock: Clock,
        entitlements: Entitlements,
        events: EventBus | None = None,
        order: ConsumptionOrder = ConsumptionOrder.PURCHASED_FIRST,
        lookback_days: int = _DEFAULT_LOOKBACK_DAYS,
        audit_dir: Path | None = None,
    ) -> None:
        self.store = store
        self.daily_logs = daily_logs
        self.streaks = streaks
        self.clock = clock
        self.entitlements = entitlements
        self.events = events
        self.order = order
        self.lookback_days = lookback_days
        self.audit_dir = audit_dir
        self._last_valid = ShieldInventory()

    # --- Reads ---

    def load(self, txn: StoreTransaction | None = None) -> ShieldInventory:
        """Strict read used before any write."""
        inventory = load_model(txn or self.store, SHIELDS_KEY, ShieldInventory)
        if inventory is not None:
            self._last_valid = inventory
        return inventory or ShieldInventory()

    def get(self) -> ShieldInventory:
        """Snapshot; a corrupted record yields the last valid inventory."""
        try:
            return self.load()
        except CorruptedAggregate as exc:
            report_anomaly(self.audit_dir, exc)
            return self._last_valid

    def can_buy_more(self) -> bool:
        return self.get().total_available < self.entitlements.current().bank_max

    def next_refill_date(self) -> date:
        return self.clock.next_period_start()

    # --- Inventory transitions ---

    def stage_consume(self, txn: StoreTransaction) -> ShieldInventory:
        inventory = self.load(txn)
        bank_max = self.entitlements.current().bank_max
        if inventory.recurring_available > bank_max:
            # Tier downgrade: recurring tokens above the new cap are forfeited.
            logger.info("Clamping recurring shields %d to bank max %d", inventory.recurring_available, bank_max)
            inventory = inventory.model_copy(update={"recurring_available": bank_max})
        updated = apply_consume(inventory, self.order)
        txn.put(SHIELDS_KEY, dump_model(updated))
        return updated

    async def grant_recurring(self) -> ShieldInventory:
        """Issue this period's recurring tokens if not yet issued."""
        period = self.clock.current_period()
        async with self.store.locked(SHIELDS_KEY):
            inventory = self.load()
            updated = apply_grant(inventory, period, self.entitlements.current())
            if updated == inventory:
                return inventory
            self.store.put(SHIELDS_KEY, dump_model(updated))
        logger.info("Granted recurring shields for %s: %d available", period, updated.recurring_available)
        await self._announce("grant")
        return updated

    refill_check = grant_recurring

    async def purchase(self, count: int) -> ShieldInventory:
        async with self.store.locked(SHIELDS_KEY):
            updated = apply_purchase(self.load(), count)
            self.store.put(SHIELDS_KEY, dump_model(updated))
        logger.info("Purchased %d shields: %d purchased available", count, updated.purchased_available)
        await self._announce("purchase")
        return updated

    async def consume(self) -> ShieldInventory:
        """Spend one token outside of a repair. Raises InsufficientShields when empty."""
        async with self.store.locked(SHIELDS_KEY):
            with self.store.transaction() as txn:
                updated = self.stage_consume(txn)
        await self._announce("consume")
        return updated

    # --- Repair ---

    def check_repairable(self, day: date, log: DailyLog | None) -> None:
        """Raise RepairIneligible unless day may be protected with a shield."""
        age = self.clock.days_ago(day)
        if age < 0 or age >= self.lookback_days:
            raise RepairIneligible(day, f"outside the {self.lookback_days}-day repair window")
        if self.clock.day_state(day) is DayState.OPEN:
            raise RepairIneligible(day, "day is still open")
        if log is not None and log.goal_met:
            raise RepairIneligible(day, "goal already met")
        if log is not None and log.shield_used:
            raise RepairIneligible(day, "already shielded")

    def can_repair(self, day: date) -> bool:
        try:
            self.check_repairable(day, self.daily_logs.load(day))
        except RepairIneligible:
            return False
        return True

    async def repair_date(self, day: date, reason: str = "repair") -> RepairResult:
        """Spend a shield to protect a missed day and recompute the streak.

        The token, the day's flag and the new streak commit as one batch.
        """
        async with self.store.locked(daily_log_key(day), SHIELDS_KEY, STREAK_KEY):
            try:
                with self.store.transaction() as txn:
                    self.check_repairable(day, self.daily_logs.get(day, txn))
                    inventory = self.stage_consume(txn)
                    self.daily_logs.stage_flags(day, txn, shield_used=True)
                    streak = self.streaks.stage_recompute(self.clock.today(), txn)
            except RepairIneligible as exc:
                logger.info("Repair of %s skipped: %s", day.isoformat(), exc.reason)
                return RepairResult(day=day, outcome=RepairOutcome.INELIGIBLE, reason=exc.reason)
            except InsufficientShields:
                logger.info("Repair of %s needs a shield; none available", day.isoformat())
                return RepairResult(day=day, outcome=RepairOutcome.INSUFFICIENT_SHIELDS, reason="no shields available")
            except CorruptedAggregate as exc:
                report_anomaly(self.audit_dir, exc)
                return RepairResult(day=day, outcome=RepairOutcome.FAILED, reason=exc.detail)
        logger.info(
            "Repaired %s with a shield: streak %d, %d shields left",
            day.isoformat(),
            streak.current_streak,
            inventory.total_available,
        )
        if self.events is not None:
            await self.events.publish_all(
                [
                    ChangeEvent(Aggregate.SHIELDS, SHIELDS_KEY, reason),
                    ChangeEvent(Aggregate.DAILY_LOG, day.isoformat(), reason),
                    ChangeEvent(Aggregate.STREAK, STREAK_KEY, reason),
                ]
            )
        return RepairResult(day=day, outcome=RepairOutcome.REPAIRED)

    def missed_gap(self, today: date | None = None) -> list[date] | None:
        """Unprotected finalized days between the last counting day and yesterday.

        None when there is no run to protect: no counting day inside the repair
        window, or the user declined to repair a day of the gap.
        """
        today = today or self.clock.today()
        gap: list[date] = []
        cursor = today - timedelta(days=1)
        while self.clock.days_ago(cursor) < self.lookback_days:
            log = self.daily_logs.load(cursor)
            if log is not None and log.counts_for_streak:
                return sorted(gap)
            if log is not None and log.repair_declined:
                return None
            gap.append(cursor)
            cursor -= timedelta(days=1)
        return None

    async def auto_protect_missed_days(self) -> AutoProtectResult:
        """Deploy shields over missed days since the last counting day, oldest first.

        When the shields run out the streak is broken.
        """
        result = AutoProtectResult()
        gap = self.missed_gap()
        if not gap:
            return result
        at_stake = self.streaks.run_ending(gap[0] - timedelta(days=1))
        for day in gap:
            outcome = await self.repair_date(day, reason="auto_protect")
            if outcome.ok:
                result.shields_deployed += 1
                result.protected_days.append(day)
            elif outcome.outcome is RepairOutcome.INSUFFICIENT_SHIELDS:
                result.legacy_badge = await self.streaks.break_streak(at_stake + result.shields_deployed)
                result.streak_broken = True
                break
            else:
                logger.warning("Auto-protect stopped at %s: %s", day.isoformat(), outcome.reason)
                break
        if result.shields_deployed:
            logger.info("Auto-deployed %d shields", result.shields_deployed)
        return result

    async def _announce(self, reason: str) -> None:
        if self.events is not None:
            await self.events.publish(ChangeEvent(Aggregate.SHIELDS, SHIELDS_KEY, reason))
