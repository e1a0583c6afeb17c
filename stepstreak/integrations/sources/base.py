"""Abstract base for step observation sources of truth."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, timedelta

from stepstreak.data.schemas import StepObservation


@dataclass
class SourceConfig:
    """Configuration for one observation source."""

    name: str
    enabled: bool = True
    base_url: str = ""
    api_token: str = ""
    timeout_seconds: float = 10.0
    headers: dict[str, str] = field(default_factory=dict)


class SourceProvider(ABC):
    """Upstream provider of raw step observations.

    The engine treats providers as the only ground truth for reconciliation
    and does not assume two calls return consistent data.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique provider name (e.g. 'health_store')."""

    @abstractmethod
    async def fetch_observations(self, day: date) -> list[StepObservation]:
        """Observations touching one local calendar day.

        Raises ObservationFetchFailure when the upstream is unreachable.
        """

    async def fetch_observations_range(self, start: date, end: date) -> dict[date, list[StepObservation]]:
        """Observations for start..end inclusive, keyed by day (one call per day by default)."""
        result: dict[date, list[StepObservation]] = {}
        day = start
        while day <= end:
            result[day] = await self.fetch_observations(day)
            day += timedelta(days=1)
        return result

    async def initialize(self) -> None:  # noqa: B027
        """Initialize the provider (no-op default)."""

    async def shutdown(self) -> None:  # noqa: B027
        """Shut down the provider (no-op default)."""
