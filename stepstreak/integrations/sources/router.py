"""Source router: fans a fetch out to every registered provider."""

from __future__ import annotations

import logging
from datetime import date

from stepstreak.core.errors import ObservationFetchFailure
from stepstreak.data.schemas import StepObservation
from stepstreak.integrations.sources.base import SourceProvider

logger = logging.getLogger(__name__)


class SourceRouter(SourceProvider):
    """Combines several named providers into one source of truth.

    Overlaps between providers are left to the merge engine's precedence
    table. A failing provider is skipped with a warning; the fetch fails only
    when every provider failed.
    """

    def __init__(self) -> None:
        self._providers: dict[str, SourceProvider] = {}

    @property
    def name(self) -> str:
        return "router"

    def register(self, provider: SourceProvider) -> None:
        """Register a provider; a later registration with the same name replaces it."""
        self._providers[provider.name] = provider

    @property
    def providers(self) -> list[SourceProvider]:
        return list(self._providers.values())

    async def fetch_observations(self, day: date) -> list[StepObservation]:
        if not self._providers:
            raise ObservationFetchFailure(self.name, "no source providers registered")
        observations: list[StepObservation] = []
        failures: list[ObservationFetchFailure] = []
        for provider in self._providers.values():
            try:
                observations.extend(await provider.fetch_observations(day))
            except ObservationFetchFailure as exc:
                logger.warning("Source %s unavailable for %s: %s", provider.name, day.isoformat(), exc.reason)
                failures.append(exc)
        if len(failures) == len(self._providers):
            reasons = "; ".join(f"{f.provider}: {f.reason}" for f in failures)
            raise ObservationFetchFailure(self.name, reasons)
        return observations

    async def initialize(self) -> None:
        for provider in self._providers.values():
            await provider.initialize()

    async def shutdown(self) -> None:
        for provider in self._providers.values():
            await provider.shutdown()
