"""Coordinates -> provider location key, cached per rounded coordinate pair."""

from __future__ import annotations

import logging
import threading

from rainoracle.errors import LocationNotFound

log = logging.getLogger("rainoracle.resolver")

COORD_PRECISION = 4


class LocationResolver:
    """Caches ``fetcher.resolve_location`` results for the process lifetime.

    Keys are ``(round(lat, 4), round(lon, 4))``.  Entries never expire and
    are not persisted; a restart re-resolves lazily on first use.  Reads
    go straight to the dict, inserts take a lock.
    """

    def __init__(self, fetcher, precision: int = COORD_PRECISION):
        self.fetcher = fetcher
        self.precision = precision
        self._cache: dict[tuple[float, float], str] = {}
        self._insert_lock = threading.Lock()
        self.lookups = 0

    def _key(self, lat: float, lon: float) -> tuple[float, float]:
        return round(lat, self.precision), round(lon, self.precision)

    def resolve(self, lat: float, lon: float) -> str:
        key = self._key(lat, lon)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        location_key = self.fetcher.resolve_location(*key)
        if not location_key:
            raise LocationNotFound(lat, lon)

        with self._insert_lock:
            # another worker may have resolved the same site meanwhile
            existing = self._cache.setdefault(key, location_key)
            self.lookups += 1
        log.info("resolved (%s, %s) -> %s", key[0], key[1], existing)
        return existing

    def __len__(self) -> int:
        return len(self._cache)
