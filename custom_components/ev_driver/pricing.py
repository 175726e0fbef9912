"""Effective tariff lookup with a short per-station cache and a configured fallback."""

from __future__ import annotations

from collections.abc import Callable
import logging
import math
import time

from .api_client import CsmsApiClient
from .const import PRICE_CACHE_TTL
from .exceptions import CsmsApiError
from .metrics import MetricsConfig

_LOGGER = logging.getLogger(__name__)


class PriceProvider:
    def __init__(
        self,
        api: CsmsApiClient,
        config: MetricsConfig,
        *,
        ttl: float = PRICE_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._api = api
        self._config = config
        self._ttl = ttl
        self._clock = clock
        self._cache: dict[str, tuple[float, float]] = {}  # station -> (price, fetched_at)

    @property
    def default_price(self) -> float:
        return self._config.default_price_per_kwh

    def cached(self, station_id: str) -> float | None:
        hit = self._cache.get(station_id)
        if hit and (self._clock() - hit[1]) < self._ttl:
            return hit[0]
        return None

    def invalidate(self, station_id: str | None = None) -> None:
        if station_id is None:
            self._cache.clear()
        else:
            self._cache.pop(station_id, None)

    async def get_price(self, station_id: str) -> float:
        """Return the CSMS price for a station, or the configured default on failure."""
        cached = self.cached(station_id)
        if cached is not None:
            return cached

        try:
            price = await self._api.get_effective_price(station_id)
        except CsmsApiError as err:
            _LOGGER.warning(
                "Effective price for %s unavailable (%s); using default %s",
                station_id,
                err,
                self.default_price,
            )
            return self.default_price

        if not math.isfinite(price) or price <= 0:
            _LOGGER.warning(
                "CSMS returned unusable price %s for %s; using default", price, station_id
            )
            return self.default_price

        self._cache[station_id] = (price, self._clock())
        return price
