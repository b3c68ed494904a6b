"""
Heat-index provider — per-grid WBGT readings.

WBGT is approximated from air temperature (°C) and relative humidity (%):

    wbgt = 0.735·T + 0.0374·H + 0.00292·T·H − 2.5   (rounded to 0.1)

and bucketed into caution < warning < severe-warning < danger.

Providers:
  - StaticHeatIndexProvider: fixed readings per grid (tests, demos, pilots)
  - HttpHeatIndexProvider: JSON observation API over httpx, cached per grid,
    falling back to a "warning" reading when the upstream is unreachable
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

import httpx
import structlog

from models.schemas import HeatLevel
from utils.clock import Clock, SystemClock
from utils.retry import RetryExecutor

logger = structlog.get_logger()

FALLBACK_WBGT = 28.0


def calculate_wbgt(temperature: float, humidity: float) -> float:
    wbgt = 0.735 * temperature + 0.0374 * humidity + 0.00292 * temperature * humidity - 2.5
    return round(wbgt, 1)


def level_for_wbgt(wbgt: float) -> HeatLevel:
    if wbgt < 25:
        return HeatLevel.CAUTION
    if wbgt < 28:
        return HeatLevel.WARNING
    if wbgt < 31:
        return HeatLevel.SEVERE_WARNING
    return HeatLevel.DANGER


@dataclass
class HeatReading:
    grid: str
    wbgt: float
    level: HeatLevel
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    observed_at: Optional[datetime] = None
    fallback: bool = False

    @classmethod
    def from_observation(cls, grid: str, temperature: float, humidity: float,
                         observed_at: Optional[datetime] = None) -> HeatReading:
        wbgt = calculate_wbgt(temperature, humidity)
        return cls(
            grid=grid, wbgt=wbgt, level=level_for_wbgt(wbgt),
            temperature=temperature, humidity=humidity, observed_at=observed_at,
        )

    def as_metadata(self) -> dict[str, Any]:
        return {
            "grid": self.grid,
            "temperature": self.temperature,
            "humidity": self.humidity,
            "fallback": self.fallback,
        }


class HeatIndexProvider(ABC):

    @abstractmethod
    async def get_reading(self, grid: str) -> HeatReading:
        ...

    async def close(self) -> None:
        pass


class StaticHeatIndexProvider(HeatIndexProvider):
    """Fixed temperature/humidity per grid, with a default for unknown grids."""

    def __init__(
        self,
        readings: Optional[dict[str, tuple[float, float]]] = None,
        default: tuple[float, float] = (31.0, 60.0),
    ):
        self.readings = dict(readings or {})
        self.default = default

    def set_reading(self, grid: str, temperature: float, humidity: float):
        self.readings[grid] = (temperature, humidity)

    async def get_reading(self, grid: str) -> HeatReading:
        temperature, humidity = self.readings.get(grid, self.default)
        return HeatReading.from_observation(grid, temperature, humidity)


@dataclass
class _CacheEntry:
    reading: HeatReading
    expires_at: datetime


class HttpHeatIndexProvider(HeatIndexProvider):
    """
    GET {base_url}/observations/{grid} → {"temperature": 33.1, "humidity": 58}

    Readings are cached per grid for `cache_ttl_s`. When every retry fails the
    provider returns a fallback reading (WBGT 28, warning) so that at-risk
    households are still contacted on a hot day the upstream is down.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        cache_ttl_s: int = 300,
        clock: Optional[Clock] = None,
        retry: Optional[RetryExecutor] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.cache_ttl = timedelta(seconds=cache_ttl_s)
        self.clock = clock or SystemClock()
        self.retry = retry or RetryExecutor(sleep=self.clock.sleep)
        self._client = client
        self._cache: dict[str, _CacheEntry] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._client = httpx.AsyncClient(headers=headers, timeout=httpx.Timeout(10.0, connect=5.0))
        return self._client

    async def _fetch(self, grid: str) -> dict[str, Any]:
        client = await self._get_client()
        resp = await client.get(f"{self.base_url}/observations/{grid}")
        resp.raise_for_status()
        return resp.json()

    async def get_reading(self, grid: str) -> HeatReading:
        now = self.clock.now()
        cached = self._cache.get(grid)
        if cached and cached.expires_at > now:
            return cached.reading

        try:
            data = await self.retry.execute(
                self._fetch, grid, policy=self.retry.preset("weather"), operation="weather_fetch",
            )
            reading = HeatReading.from_observation(
                grid, float(data["temperature"]), float(data["humidity"]), observed_at=now,
            )
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.error("heat_reading_failed", grid=grid, error=str(e))
            return HeatReading(
                grid=grid, wbgt=FALLBACK_WBGT, level=HeatLevel.WARNING,
                observed_at=now, fallback=True,
            )

        self._cache[grid] = _CacheEntry(reading, now + self.cache_ttl)
        logger.debug("heat_reading_fetched", grid=grid, wbgt=reading.wbgt, level=reading.level.value)
        return reading

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()


def create_heat_index_provider(config: Any, clock: Optional[Clock] = None,
                               retry: Optional[RetryExecutor] = None) -> HeatIndexProvider:
    """Build the provider named by a WeatherConfig (or a plain dict)."""
    if isinstance(config, dict):
        get = config.get
    else:
        get = lambda key, default=None: getattr(config, key, default)

    provider = get("provider", "static")
    if provider == "static":
        return StaticHeatIndexProvider(
            default=(float(get("default_temperature", 31.0)), float(get("default_humidity", 60.0))),
        )
    if provider == "http":
        base_url = get("base_url", "")
        if not base_url:
            raise ValueError("weather.base_url is required for the http provider")
        return HttpHeatIndexProvider(
            base_url, api_key=get("api_key", ""), cache_ttl_s=int(get("cache_ttl_s", 300)),
            clock=clock, retry=retry,
        )
    raise ValueError(f"Unknown weather provider: {provider}")
