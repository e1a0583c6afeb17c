"""Step goal settings and their change history."""

from __future__ import annotations

import logging
from datetime import date

from stepstreak.data.schemas import GOAL_KEY, GoalChange, GoalSettings
from stepstreak.data.store import AggregateStore, StoreTransaction, dump_model, load_model

logger = logging.getLogger(__name__)


class GoalStore:
    """Resolves the goal that applied to any day.

    Changing the goal appends to the history with an effective date, so a
    past day that never got a record still resolves to the goal of its time.
    """

    def __init__(self, store: AggregateStore, default_goal: int) -> None:
        self.store = store
        self.default_goal = default_goal

    def get(self, txn: StoreTransaction | None = None) -> GoalSettings:
        current = load_model(txn or self.store, GOAL_KEY, GoalSettings)
        return current or GoalSettings(current_goal=self.default_goal)

    def goal_for(self, day: date, txn: StoreTransaction | None = None) -> int:
        return self.get(txn).goal_for(day)

    def stage_change(self, goal: int, effective_from: date, txn: StoreTransaction) -> GoalSettings:
        """Stage a new current goal, effective from the given day onward."""
        if goal <= 0:
            msg = f"Step goal must be positive, got {goal}"
            raise ValueError(msg)
        previous = self.get(txn)
        history = [c for c in previous.history if c.effective_from < effective_from]
        if not previous.history:
            # Anchor the goal that applied before the first recorded change.
            history.append(GoalChange(effective_from=date.min, goal=previous.current_goal))
        history.append(GoalChange(effective_from=effective_from, goal=goal))
        updated = GoalSettings(current_goal=goal, history=history)
        txn.put(GOAL_KEY, dump_model(updated))
        logger.info("Step goal %d -> %d from %s", previous.current_goal, goal, effective_from.isoformat())
        return updated
