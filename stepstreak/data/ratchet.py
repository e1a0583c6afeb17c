"""High-water-mark ratchet: a per-day monotonic floor for step totals."""

from __future__ import annotations

import logging
from datetime import date

from stepstreak.data.schemas import HIGH_WATER_PREFIX, HighWaterMark, high_water_key
from stepstreak.data.store import AggregateStore, StoreTransaction, dump_model, load_model

logger = logging.getLogger(__name__)


def accept(existing: int | None, candidate: int) -> int:
    """Accepted value for a candidate total: never below what was accepted before."""
    return max(existing or 0, candidate, 0)


class HighWaterMarkRatchet:
    """Persists the largest total ever accepted for each day.

    Holds no locks; callers hold the day's lock around ratchet().
    """

    def __init__(self, store: AggregateStore) -> None:
        self.store = store

    def get(self, day: date, txn: StoreTransaction | None = None) -> int | None:
        mark = load_model(txn or self.store, high_water_key(day), HighWaterMark)
        return mark.steps if mark is not None else None

    def ratchet(self, day: date, candidate: int, txn: StoreTransaction | None = None) -> int:
        """Feed a candidate total for day and return the accepted value."""
        target = txn or self.store
        existing = self.get(day, txn)
        accepted = accept(existing, candidate)
        if existing is None or accepted > existing:
            target.put(high_water_key(day), dump_model(HighWaterMark(date=day, steps=accepted)))
        elif candidate < existing:
            logger.debug("Ratchet held %s at %d (candidate %d)", day.isoformat(), existing, candidate)
        return accepted

    def prune_before(self, cutoff: date) -> list[date]:
        """Drop marks for days before cutoff; their rows are final and carry the floor themselves."""
        pruned: list[date] = []
        for key in self.store.keys(HIGH_WATER_PREFIX):
            day = date.fromisoformat(key.removeprefix(HIGH_WATER_PREFIX))
            if day < cutoff:
                self.store.delete(key)
                pruned.append(day)
        return pruned
