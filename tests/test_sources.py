"""Tests for stepstreak.integrations.sources: HTTP provider and router."""

from __future__ import annotations

from datetime import date

import httpx
import pytest

from stepstreak.core.errors import ObservationFetchFailure
from stepstreak.integrations.sources import HttpSourceProvider, SourceConfig, SourceRouter
from tests.conftest import FakeSource, walk

DAY = date(2026, 3, 6)

_RECORD = {"start": "2026-03-06T08:00:00+00:00", "end": "2026-03-06T09:00:00+00:00", "steps": 1200}


def _provider(handler, **config) -> HttpSourceProvider:  # noqa: ANN001
    cfg = SourceConfig(name="upstream", base_url="https://steps.example.test", api_token="tok", **config)
    return HttpSourceProvider(cfg, transport=httpx.MockTransport(handler))


class TestHttpSourceProvider:
    async def test_fetch_parses_list(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[{**_RECORD, "provider": "health_store", "session_id": "w1"}])

        provider = _provider(handler)
        observations = await provider.fetch_observations(DAY)
        await provider.shutdown()

        assert len(observations) == 1
        assert observations[0].provider == "health_store"
        assert observations[0].steps == 1200
        assert observations[0].session_id == "w1"
        assert seen[0].url.path == "/observations"
        assert seen[0].url.params["date"] == "2026-03-06"
        assert seen[0].headers["Authorization"] == "Bearer tok"

    async def test_fetch_parses_wrapped_object_and_defaults_provider(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"observations": [_RECORD]})

        observations = await _provider(handler).fetch_observations(DAY)
        assert observations[0].provider == "upstream"

    async def test_malformed_records_dropped(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[_RECORD, {"steps": 10}, "junk", {**_RECORD, "start": "yesterday"}])

        observations = await _provider(handler).fetch_observations(DAY)
        assert len(observations) == 1

    async def test_http_error_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        with pytest.raises(ObservationFetchFailure, match="HTTP 503"):
            await _provider(handler).fetch_observations(DAY)

    async def test_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ObservationFetchFailure) as exc_info:
            await _provider(handler).fetch_observations(DAY)
        assert exc_info.value.provider == "upstream"

    async def test_non_json_body(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>")

        with pytest.raises(ObservationFetchFailure, match="not JSON"):
            await _provider(handler).fetch_observations(DAY)

    async def test_disabled_source(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("should not be called")

        with pytest.raises(ObservationFetchFailure, match="disabled"):
            await _provider(handler, enabled=False).fetch_observations(DAY)


    async def test_fetch_after_shutdown_reopens_client(self) -> None:
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.params["date"])
            return httpx.Response(200, json=[_RECORD])

        provider = _provider(handler)
        await provider.initialize()
        await provider.shutdown()
        observations = await provider.fetch_observations(DAY)
        await provider.shutdown()

        assert len(observations) == 1
        assert calls == ["2026-03-06"]


class TestSourceRouter:
    async def test_combines_providers(self) -> None:
        store, motion = FakeSource("health_store"), FakeSource("device_motion")
        store.data[DAY] = [walk(DAY, 5000)]
        motion.data[DAY] = [walk(DAY, 6000, provider="device_motion")]
        router = SourceRouter()
        router.register(store)
        router.register(motion)

        observations = await router.fetch_observations(DAY)

        assert sorted(o.provider for o in observations) == ["device_motion", "health_store"]

    async def test_partial_outage_skips_provider(self) -> None:
        up, down = FakeSource("health_store"), FakeSource("device_motion")
        up.data[DAY] = [walk(DAY, 5000)]
        down.down = True
        router = SourceRouter()
        router.register(up)
        router.register(down)
        assert len(await router.fetch_observations(DAY)) == 1

    async def test_total_outage_raises(self) -> None:
        down = FakeSource("health_store")
        down.down = True
        router = SourceRouter()
        router.register(down)
        with pytest.raises(ObservationFetchFailure, match="offline"):
            await router.fetch_observations(DAY)

    async def test_no_providers(self) -> None:
        with pytest.raises(ObservationFetchFailure, match="no source providers"):
            await SourceRouter().fetch_observations(DAY)

    async def test_fetch_range(self) -> None:
        source = FakeSource()
        source.data[DAY] = [walk(DAY, 100)]
        result = await source.fetch_observations_range(date(2026, 3, 5), DAY)
        assert list(result) == [date(2026, 3, 5), DAY]
        assert result[date(2026, 3, 5)] == []
