"""Interval merge engine: one deduplicated step total per calendar day.

Observations from several providers may overlap in time or be re-issued. The
day is cut into elementary segments at every interval boundary; within a
segment each provider contributes the largest prorated count among its own
covering intervals, and the segment takes the value of the highest-precedence
provider present. Ingestion order never matters.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, date, datetime

from stepstreak.core.clock import Clock
from stepstreak.data.schemas import StepObservation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderRank:
    """A named step source with its declared fidelity rank (lower wins)."""

    name: str
    rank: int
    description: str = ""


class ProviderPrecedence:
    """Ordered table of providers used to resolve overlapping observations.

    Providers missing from the table rank after every declared one, ordered
    by name, so conflicts are always resolved the same way.
    """

    def __init__(self, names: Iterable[str] = ()) -> None:
        self._ranks: dict[str, ProviderRank] = {}
        for name in names:
            self.register(name)

    def register(self, name: str, description: str = "") -> ProviderRank:
        """Append a provider at the lowest declared precedence."""
        if name in self._ranks:
            return self._ranks[name]
        entry = ProviderRank(name=name, rank=len(self._ranks), description=description)
        self._ranks[name] = entry
        return entry

    def sort_key(self, name: str) -> tuple[int, str]:
        entry = self._ranks.get(name)
        if entry is None:
            return (len(self._ranks), name)
        return (entry.rank, "")

    def best(self, names: Iterable[str]) -> str:
        return min(names, key=self.sort_key)

    @property
    def ranks(self) -> list[ProviderRank]:
        return sorted(self._ranks.values(), key=lambda r: r.rank)


@dataclass(frozen=True)
class _Piece:
    """An observation clipped to the day, with its prorated count."""

    provider: str
    start: datetime
    end: datetime
    steps: float


def _dedupe(observations: Iterable[StepObservation]) -> list[StepObservation]:
    """Collapse re-issued intervals (same provider and bounds) to the largest count."""
    best: dict[tuple[str, datetime, datetime], StepObservation] = {}
    for obs in observations:
        current = best.get(obs.identity)
        if current is None or (obs.steps, obs.session_id or "") > (current.steps, current.session_id or ""):
            best[obs.identity] = obs
    return list(best.values())


class IntervalMergeEngine:
    """Merges a day's observations into one total."""

    def __init__(self, clock: Clock, precedence: ProviderPrecedence) -> None:
        self.clock = clock
        self.precedence = precedence

    def _to_utc(self, moment: datetime) -> datetime:
        # Same-zone datetime arithmetic ignores DST shifts; work in UTC.
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=self.clock.tz)
        return moment.astimezone(UTC)

    def _utc_bounds(self, day: date) -> tuple[datetime, datetime]:
        start, end = self.clock.day_bounds(day)
        return start.astimezone(UTC), end.astimezone(UTC)

    def sanitize(self, observations: Iterable[StepObservation], day: date) -> list[StepObservation]:
        """Drop malformed observations and those not touching day; never raises."""
        day_start, day_end = self._utc_bounds(day)
        valid: list[StepObservation] = []
        for obs in observations:
            start = self._to_utc(obs.start)
            end = self._to_utc(obs.end)
            if obs.steps < 0:
                logger.warning("Dropping observation with negative count from %s: %d", obs.provider, obs.steps)
                continue
            if end <= start:
                logger.warning(
                    "Dropping malformed interval from %s: %s -> %s",
                    obs.provider,
                    start.isoformat(),
                    end.isoformat(),
                )
                continue
            if end <= day_start or start >= day_end:
                continue
            valid.append(
                StepObservation(provider=obs.provider, start=start, end=end, steps=obs.steps, session_id=obs.session_id)
            )
        return valid

    def _pieces(self, observations: list[StepObservation], day: date) -> list[_Piece]:
        day_start, day_end = self._utc_bounds(day)
        pieces: list[_Piece] = []
        for obs in observations:
            start = max(obs.start, day_start)
            end = min(obs.end, day_end)
            share = obs.steps * (end - start).total_seconds() / (obs.end - obs.start).total_seconds()
            pieces.append(_Piece(provider=obs.provider, start=start, end=end, steps=share))
        return pieces

    def merge(self, observations: Iterable[StepObservation], day: date) -> int:
        """Deduplicated step total for day. No observations yields 0."""
        pieces = self._pieces(_dedupe(self.sanitize(observations, day)), day)
        if not pieces:
            return 0

        boundaries = sorted({p.start for p in pieces} | {p.end for p in pieces})
        total = 0.0
        for seg_start, seg_end in zip(boundaries, boundaries[1:], strict=False):
            seg_seconds = (seg_end - seg_start).total_seconds()
            per_provider: dict[str, float] = {}
            for piece in pieces:
                if piece.start <= seg_start and piece.end >= seg_end:
                    value = piece.steps * seg_seconds / (piece.end - piece.start).total_seconds()
                    per_provider[piece.provider] = max(per_provider.get(piece.provider, 0.0), value)
            if per_provider:
                total += per_provider[self.precedence.best(per_provider)]
        return int(round(total))

    def session_ids(self, observations: Iterable[StepObservation], day: date) -> list[str]:
        """Walk-session references of the valid observations touching day."""
        return sorted({obs.session_id for obs in self.sanitize(observations, day) if obs.session_id})
