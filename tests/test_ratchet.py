"""Tests for stepstreak.data.ratchet: per-day high-water mark."""

from __future__ import annotations

from datetime import date

import pytest

from stepstreak.core.errors import CorruptedAggregate
from stepstreak.data.ratchet import HighWaterMarkRatchet, accept
from stepstreak.data.schemas import HighWaterMark, high_water_key
from stepstreak.data.store import MemoryStore

DAY = date(2026, 3, 7)


class TestAccept:
    @pytest.mark.parametrize(
        "existing,candidate,expected",
        [(None, 0, 0), (None, 500, 500), (500, 400, 500), (500, 900, 900), (None, -3, 0)],
    )
    def test_accept(self, existing: int | None, candidate: int, expected: int) -> None:
        assert accept(existing, candidate) == expected


class TestHighWaterMarkRatchet:
    def test_sequence_is_non_decreasing_and_ends_at_max(self) -> None:
        ratchet = HighWaterMarkRatchet(MemoryStore())
        candidates = [1200, 800, 3000, 2999, 0, 3500, 1000]
        accepted = [ratchet.ratchet(DAY, v) for v in candidates]
        assert accepted == sorted(accepted)
        assert accepted[-1] == max(candidates)

    def test_days_are_independent(self) -> None:
        ratchet = HighWaterMarkRatchet(MemoryStore())
        ratchet.ratchet(DAY, 5000)
        assert ratchet.ratchet(date(2026, 3, 8), 100) == 100
        assert ratchet.get(DAY) == 5000

    def test_persisted_in_store(self) -> None:
        store = MemoryStore()
        HighWaterMarkRatchet(store).ratchet(DAY, 4200)
        assert store.get(high_water_key(DAY)) == {"date": "2026-03-07", "steps": 4200}
        assert HighWaterMarkRatchet(store).ratchet(DAY, 10) == 4200

    def test_staged_in_transaction_until_commit(self) -> None:
        store = MemoryStore()
        ratchet = HighWaterMarkRatchet(store)
        txn = store.transaction()
        assert ratchet.ratchet(DAY, 700, txn) == 700
        assert ratchet.get(DAY) is None
        assert ratchet.get(DAY, txn) == 700
        txn.commit()
        assert ratchet.get(DAY) == 700

    def test_unknown_day_is_none(self) -> None:
        assert HighWaterMarkRatchet(MemoryStore()).get(DAY) is None

    def test_stored_mark_validates(self) -> None:
        store = MemoryStore()
        HighWaterMarkRatchet(store).ratchet(DAY, 4200)
        assert HighWaterMark.model_validate(store.get(high_water_key(DAY))) == HighWaterMark(date=DAY, steps=4200)

    def test_corrupted_mark_raises(self) -> None:
        store = MemoryStore()
        store.put(high_water_key(DAY), {"date": "2026-03-07", "steps": -5})
        with pytest.raises(CorruptedAggregate):
            HighWaterMarkRatchet(store).ratchet(DAY, 100)

    def test_prune_before_keeps_recent_marks(self) -> None:
        store = MemoryStore()
        ratchet = HighWaterMarkRatchet(store)
        for offset in range(5):
            ratchet.ratchet(date(2026, 3, 1 + offset), 1000)
        pruned = ratchet.prune_before(date(2026, 3, 4))
        assert pruned == [date(2026, 3, 1), date(2026, 3, 2), date(2026, 3, 3)]
        assert ratchet.get(date(2026, 3, 3)) is None
        assert ratchet.get(date(2026, 3, 4)) == 1000
