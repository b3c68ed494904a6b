"""Tests for WBGT calculation and the heat-index providers."""
import httpx
import pytest

from config.settings import WeatherConfig
from models.schemas import HeatLevel
from utils.retry import RetryExecutor
from weather.provider import (
    FALLBACK_WBGT, HttpHeatIndexProvider, StaticHeatIndexProvider, calculate_wbgt,
    create_heat_index_provider, level_for_wbgt,
)


class TestWbgt:
    @pytest.mark.parametrize("temperature,humidity,wbgt", [
        (35, 70, 33.0), (20, 40, 16.0), (30, 50, 25.8),
    ])
    def test_calculate(self, temperature, humidity, wbgt):
        assert calculate_wbgt(temperature, humidity) == wbgt

    @pytest.mark.parametrize("wbgt,level", [
        (24.9, HeatLevel.CAUTION), (25.0, HeatLevel.WARNING), (27.9, HeatLevel.WARNING),
        (28.0, HeatLevel.SEVERE_WARNING), (30.9, HeatLevel.SEVERE_WARNING), (31.0, HeatLevel.DANGER),
    ])
    def test_levels(self, wbgt, level):
        assert level_for_wbgt(wbgt) == level


class TestStaticProvider:
    @pytest.mark.asyncio
    async def test_per_grid_and_default(self):
        provider = StaticHeatIndexProvider({"grid_a": (35, 70)}, default=(20, 40))
        hot = await provider.get_reading("grid_a")
        assert (hot.wbgt, hot.level) == (33.0, HeatLevel.DANGER)
        cool = await provider.get_reading("grid_z")
        assert cool.level == HeatLevel.CAUTION

        provider.set_reading("grid_z", 35, 70)
        assert (await provider.get_reading("grid_z")).level == HeatLevel.DANGER


class TestHttpProvider:
    @staticmethod
    def _provider(handler, clock, **kwargs):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        retry = RetryExecutor(sleep=clock.sleep, rng=lambda: 0.5)
        return HttpHeatIndexProvider("https://wx.example/", clock=clock, retry=retry, client=client, **kwargs)

    @pytest.mark.asyncio
    async def test_fetches_and_caches(self, clock):
        paths = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(200, json={"temperature": 35, "humidity": 70})

        provider = self._provider(handler, clock, cache_ttl_s=300)
        first = await provider.get_reading("grid_a")
        second = await provider.get_reading("grid_a")
        assert first.wbgt == 33.0
        assert first.observed_at == clock.now()
        assert second is first
        assert paths == ["/observations/grid_a"]

        await clock.advance(301)
        await provider.get_reading("grid_a")
        assert len(paths) == 2
        await provider.close()

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self, clock):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"temperature": 20, "humidity": 40})

        provider = self._provider(handler, clock)
        reading = await provider.get_reading("grid_b")
        assert reading.level == HeatLevel.CAUTION
        assert not reading.fallback
        assert len(calls) == 3
        assert clock.slept == [0.5, 0.75]

    @pytest.mark.asyncio
    async def test_falls_back_when_upstream_down(self, clock):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(503)

        provider = self._provider(handler, clock)
        reading = await provider.get_reading("grid_c")
        assert reading.fallback
        assert (reading.wbgt, reading.level) == (FALLBACK_WBGT, HeatLevel.WARNING)
        assert len(calls) == 6
        # fallback readings are not cached
        await provider.get_reading("grid_c")
        assert len(calls) == 12

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, clock):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(404)

        reading = await self._provider(handler, clock).get_reading("grid_x")
        assert reading.fallback
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_malformed_body_falls_back(self, clock):
        provider = self._provider(lambda r: httpx.Response(200, json={"temp": 30}), clock)
        assert (await provider.get_reading("grid_d")).fallback


class TestFactory:
    def test_static_from_dataclass(self):
        provider = create_heat_index_provider(WeatherConfig(default_temperature=35, default_humidity=70))
        assert isinstance(provider, StaticHeatIndexProvider)
        assert provider.default == (35.0, 70.0)

    def test_http_from_dict(self):
        provider = create_heat_index_provider({"provider": "http", "base_url": "https://wx", "cache_ttl_s": 60})
        assert isinstance(provider, HttpHeatIndexProvider)
        assert provider.cache_ttl.total_seconds() == 60

    def test_http_needs_base_url(self):
        with pytest.raises(ValueError):
            create_heat_index_provider(WeatherConfig(provider="http"))

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            create_heat_index_provider({"provider": "almanac"})
