"""HTTP observation source using httpx.

Expects `GET {base_url}/observations?date=YYYY-MM-DD` to answer with a JSON
list of observation records (or an object holding one under
"observations"). Records without a provider are attributed to this source.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

import httpx

from stepstreak.core.errors import ObservationFetchFailure
from stepstreak.data.schemas import StepObservation, observation_from_record
from stepstreak.integrations.sources.base import SourceConfig, SourceProvider

logger = logging.getLogger(__name__)


def _parse_observations(payload: Any, default_provider: str) -> list[StepObservation]:
    """Parse a response body, dropping malformed records."""
    records = payload.get("observations", []) if isinstance(payload, dict) else payload
    if not isinstance(records, list):
        return []
    observations: list[StepObservation] = []
    for record in records:
        if not isinstance(record, dict):
            continue
        try:
            observations.append(observation_from_record({"provider": default_provider, **record}))
        except (KeyError, TypeError, ValueError):
            logger.warning("Dropping malformed observation from %s: %r", default_provider, record)
    return observations


class HttpSourceProvider(SourceProvider):
    """Fetches observations from a REST endpoint."""

    def __init__(self, config: SourceConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def name(self) -> str:
        return self._config.name

    async def initialize(self) -> None:
        self._get_client()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = dict(self._config.headers)
            if self._config.api_token:
                headers["Authorization"] = f"Bearer {self._config.api_token}"
            self._client = httpx.AsyncClient(
                base_url=self._config.base_url,
                headers=headers,
                timeout=self._config.timeout_seconds,
                transport=self._transport,
            )
            logger.info("HttpSourceProvider initialized (%s -> %s)", self.name, self._config.base_url)
        return self._client

    async def shutdown(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch_observations(self, day: date) -> list[StepObservation]:
        if not self._config.enabled:
            raise ObservationFetchFailure(self.name, "source disabled")
        client = self._get_client()
        try:
            resp = await client.get("/observations", params={"date": day.isoformat()})
        except httpx.HTTPError as exc:
            raise ObservationFetchFailure(self.name, str(exc) or type(exc).__name__) from exc
        if resp.status_code != 200:
            raise ObservationFetchFailure(self.name, f"HTTP {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise ObservationFetchFailure(self.name, "response is not JSON") from exc
        observations = _parse_observations(payload, self.name)
        logger.debug("Fetched %d observations for %s from %s", len(observations), day.isoformat(), self.name)
        return observations
