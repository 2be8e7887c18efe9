"""
Open-Meteo historical weather fetcher (hourly precipitation, no API key).

Open-Meteo has no location ids: the "location key" is the coordinate pair
rounded to 4 decimals, ``"lat,lon"``.  The archive is built from reanalysis
data and trails real time by a few days; windows ending inside that lag
raise ``DataUnavailable`` with the range the archive can actually serve.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

import numpy as np

from rainoracle.errors import DataUnavailable, LocationNotFound
from rainoracle.fetchers.http import get_json
from rainoracle.models import Reading

log = logging.getLogger("rainoracle.fetchers.open_meteo")

ARCHIVE_API = "https://archive-api.open-meteo.com/v1/archive"
ARCHIVE_EARLIEST = int(datetime(1940, 1, 1, tzinfo=timezone.utc).timestamp())
DEFAULT_ARCHIVE_LAG_SECONDS = 5 * 24 * 3600
SOURCE = "Open-Meteo Historical Weather API"


def _iso_date(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).date().isoformat()


class OpenMeteoFetcher:
    """Hourly precipitation from the Open-Meteo archive.

    Parameters
    ----------
    base_url : str
        Archive endpoint (default ``ARCHIVE_API``).
    archive_lag_seconds : int
        How far behind real time the archive is assumed complete.
    """

    def __init__(
        self,
        api_key: str = "",
        base_url: str = "",
        timeout: float = 60.0,
        max_retries: int = 3,
        archive_lag_seconds: int = DEFAULT_ARCHIVE_LAG_SECONDS,
        clock=time.time,
        sleep=time.sleep,
    ):
        # Open-Meteo is keyless; api_key is accepted so every fetcher
        # shares one constructor signature.
        self.base_url = base_url or ARCHIVE_API
        self.timeout = timeout
        self.max_retries = max_retries
        self.archive_lag_seconds = archive_lag_seconds
        self.clock = clock
        self.sleep = sleep

    # ------------------------------------------------------------------

    def resolve_location(self, lat: float, lon: float) -> str:
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
            raise LocationNotFound(lat, lon, "coordinates out of range")
        return f"{lat:.4f},{lon:.4f}"

    @staticmethod
    def _parse_key(location_key: str) -> tuple[float, float]:
        lat_s, lon_s = location_key.split(",")
        return float(lat_s), float(lon_s)

    # ------------------------------------------------------------------

    def fetch(self, location_key: str, start_time: int, end_time: int) -> list[Reading]:
        """Readings in ``[start_time, end_time)``, ascending by time."""
        effective_end = int(self.clock()) - self.archive_lag_seconds
        if start_time < ARCHIVE_EARLIEST or end_time > effective_end:
            raise DataUnavailable(start_time, end_time, ARCHIVE_EARLIEST,
                                  effective_end, source=SOURCE)

        lat, lon = self._parse_key(location_key)
        params = {
            "latitude": lat,
            "longitude": lon,
            "hourly": "precipitation",
            "start_date": _iso_date(start_time),
            "end_date": _iso_date(end_time - 1),
            "timezone": "UTC",
        }
        data = get_json(self.base_url, params, timeout=self.timeout,
                        max_retries=self.max_retries, sleep=self.sleep)

        hourly = data.get("hourly", {})
        times = hourly.get("time", [])
        if not times:
            log.warning("no hourly data for %s in [%d, %d)",
                        location_key, start_time, end_time)
            return []

        epochs = np.array(times, dtype="datetime64[s]").astype(np.int64)
        values = np.array(hourly.get("precipitation", []), dtype=float)
        if len(values) != len(epochs):
            raise DataUnavailable(start_time, end_time, None, None,
                                  source=f"{SOURCE} (ragged hourly arrays)")

        mask = (~np.isnan(values)) & (epochs >= start_time) & (epochs < end_time)
        order = np.argsort(epochs[mask], kind="stable")
        readings = [
            Reading(int(t), float(v))
            for t, v in zip(epochs[mask][order], values[mask][order])
        ]
        log.info("location %s: %d readings in [%d, %d)",
                 location_key, len(readings), start_time, end_time)
        return readings
