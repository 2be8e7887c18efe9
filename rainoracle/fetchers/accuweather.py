"""
AccuWeather precipitation fetcher.

Uses the ``currentconditions/v1/{key}/historical/24`` endpoint, which returns
the last 24 hourly observations for a location, each carrying the rainfall
of the preceding hour in ``PrecipitationSummary.PastHour``.  Anything older
than 24 hours is out of reach for this tier, so windows reaching further back
raise ``DataUnavailable`` instead of coming back silently short.
"""

from __future__ import annotations

import logging
import time

from rainoracle.errors import DataUnavailable, Fatal, LocationNotFound
from rainoracle.fetchers.http import get_json
from rainoracle.models import Reading

log = logging.getLogger("rainoracle.fetchers.accuweather")

ACCUWEATHER_URL = "https://dataservice.accuweather.com"
HISTORY_SECONDS = 24 * 3600
SOURCE = "AccuWeather historical/24"


class AccuWeatherFetcher:
    """Fetch hourly precipitation readings from AccuWeather.

    Parameters
    ----------
    api_key : str
        AccuWeather API key.  Missing keys are a ``Fatal`` error at call time.
    base_url : str
        API root (default ``https://dataservice.accuweather.com``).
    timeout : float
        Per-request timeout in seconds.
    max_retries : int
        Retries for 429 / 5xx answers before giving up with ``Retryable``.
    clock : callable
        Returns the current unix time; injectable for tests.
    """

    def __init__(
        self,
        api_key: str = "",
        base_url: str = "",
        timeout: float = 30.0,
        max_retries: int = 3,
        clock=time.time,
        sleep=time.sleep,
    ):
        self.api_key = api_key
        self.base_url = (base_url or ACCUWEATHER_URL).rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.clock = clock
        self.sleep = sleep

    # ------------------------------------------------------------------

    def _require_key(self) -> None:
        if not self.api_key:
            raise Fatal("AccuWeather API key not configured")

    def _get(self, path: str, params: dict):
        self._require_key()
        return get_json(
            f"{self.base_url}{path}",
            params={"apikey": self.api_key, **params},
            timeout=self.timeout,
            max_retries=self.max_retries,
            sleep=self.sleep,
        )

    # ------------------------------------------------------------------

    def fetch(self, location_key: str, start_time: int, end_time: int) -> list[Reading]:
        """Readings in ``[start_time, end_time)``, ascending by time."""
        now = int(self.clock())
        effective_start = now - HISTORY_SECONDS
        if start_time < effective_start or end_time > now:
            raise DataUnavailable(start_time, end_time, effective_start, now,
                                  source=SOURCE)

        data = self._get(f"/currentconditions/v1/{location_key}/historical/24",
                         {"details": "true"})
        if not isinstance(data, list):
            log.warning("unexpected AccuWeather payload for %s: %s",
                        location_key, type(data).__name__)
            return []

        readings = self._normalise(data)
        readings = [r for r in readings if start_time <= r.timestamp < end_time]
        log.info("location %s: %d readings in [%d, %d)",
                 location_key, len(readings), start_time, end_time)
        return readings

    @staticmethod
    def _normalise(observations: list[dict]) -> list[Reading]:
        """AccuWeather observations -> sorted readings (missing values skipped)."""
        readings: list[Reading] = []
        for obs in observations:
            epoch = obs.get("EpochTime")
            summary = obs.get("PrecipitationSummary") or {}
            value = ((summary.get("PastHour") or {}).get("Metric") or {}).get("Value")
            if epoch is None or value is None:
                continue
            readings.append(Reading(int(epoch), float(value)))
        readings.sort(key=lambda r: r.timestamp)
        return readings

    # ------------------------------------------------------------------

    def resolve_location(self, lat: float, lon: float) -> str:
        """Geoposition search: coordinates -> AccuWeather location key."""
        data = self._get("/locations/v1/cities/geoposition/search",
                         {"q": f"{lat},{lon}"})
        key = data.get("Key") if isinstance(data, dict) else None
        if not key:
            raise LocationNotFound(lat, lon, "geoposition search returned no Key")
        return str(key)
