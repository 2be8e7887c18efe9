"""
Pluggable precipitation fetchers.

Each fetcher exposes the same two calls::

    fetch(location_key, start_time, end_time) -> list[Reading]
    resolve_location(lat, lon) -> str

``fetch`` returns readings inside the half-open window in ascending time
order and raises ``DataUnavailable`` rather than return a silently
truncated window.  Fetchers keep no state between calls.
"""

from typing import Protocol

from rainoracle.fetchers.accuweather import AccuWeatherFetcher
from rainoracle.fetchers.open_meteo import OpenMeteoFetcher
from rainoracle.fetchers.synthetic_rainfall import SyntheticRainfallFetcher
from rainoracle.models import Reading


class PrecipitationFetcher(Protocol):
    def fetch(self, location_key: str, start_time: int, end_time: int) -> list[Reading]: ...

    def resolve_location(self, lat: float, lon: float) -> str: ...


FETCHER_REGISTRY: dict[str, type] = {
    "accuweather": AccuWeatherFetcher,
    "open_meteo": OpenMeteoFetcher,
    "synthetic_rainfall": SyntheticRainfallFetcher,
}


def get_fetcher(name: str, **kwargs):
    """Instantiate a fetcher by name."""
    if name not in FETCHER_REGISTRY:
        raise KeyError(
            f"Unknown fetcher '{name}'. Available: {sorted(FETCHER_REGISTRY)}"
        )
    return FETCHER_REGISTRY[name](**kwargs)
