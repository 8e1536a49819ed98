"""Offline reverse geocoding of photo coordinates to city names."""

import logging
import threading
from typing import Protocol

import reverse_geocode

from config import GEO_KEY_PRECISION

logger = logging.getLogger(__name__)


class Geocoder(Protocol):
    def city_for(self, lat: float, lon: float) -> str | None: ...


class CityGeocoder:
    """Caches lookups by coordinate rounded to GEO_KEY_PRECISION decimals.

    Failed lookups are cached too, as None.
    """

    def __init__(self, precision: int = GEO_KEY_PRECISION):
        self._precision = precision
        self._cache: dict[str, str | None] = {}
        self._lock = threading.Lock()

    def _key(self, lat: float, lon: float) -> str:
        return f"{lat:.{self._precision}f},{lon:.{self._precision}f}"

    def city_for(self, lat: float, lon: float) -> str | None:
        key = self._key(lat, lon)
        with self._lock:
            if key in self._cache:
                return self._cache[key]
        city = self._lookup(lat, lon)
        with self._lock:
            self._cache[key] = city
        return city

    @staticmethod
    def _lookup(lat: float, lon: float) -> str | None:
        try:
            result = reverse_geocode.get((lat, lon))
        except Exception:
            logger.debug("Reverse geocoding failed for (%s, %s)", lat, lon, exc_info=True)
            return None
        city = result.get("city") or ""
        return city or None

    def __len__(self) -> int:
        return len(self._cache)
