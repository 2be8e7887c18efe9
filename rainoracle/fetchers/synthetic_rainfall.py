"""
Synthetic hourly rainfall for demo / testing purposes.

Produces deterministic, reproducible readings per (location, hour).  Uses a
seeded LCG (linear congruential generator) so the same hour always yields
the same value, whichever window it is fetched in; overlapping fetches see
identical data, just like a real provider.
"""

from __future__ import annotations

import math
import zlib

from rainoracle.models import Reading

HOUR = 3600


class SyntheticRainfallFetcher:
    """Generate synthetic hourly rainfall readings.

    Parameters
    ----------
    seed : int
        Deterministic seed for the LCG (default 42).
    wet_fraction : float
        Share of hours with any rain at all (default 0.3).
    mean_mm : float
        Mean rainfall of a wet hour in mm (default 2.0).
    """

    def __init__(self, seed: int = 42, wet_fraction: float = 0.3,
                 mean_mm: float = 2.0, **_ignored):
        if not 0.0 <= wet_fraction <= 1.0:
            raise ValueError("wet_fraction must be in [0, 1]")
        self.seed = seed
        self.wet_fraction = wet_fraction
        self.mean_mm = mean_mm

    # simple deterministic PRNG (LCG), no external state
    @staticmethod
    def _lcg(state: int) -> tuple[int, float]:
        """Return (next_state, uniform_0_1)."""
        # Numerical Recipes LCG constants
        state = (state * 1664525 + 1013904223) & 0xFFFFFFFF
        return state, state / 0xFFFFFFFF

    def _hour_value(self, location_key: str, hour_index: int) -> float:
        state = zlib.crc32(f"{self.seed}:{location_key}:{hour_index}".encode())
        state, u = self._lcg(state)
        if u >= self.wet_fraction:
            return 0.0
        state, u = self._lcg(state)
        u = max(u, 1e-9)
        return round(-self.mean_mm * math.log(u), 1)

    # ------------------------------------------------------------------

    def resolve_location(self, lat: float, lon: float) -> str:
        return f"syn:{lat:.4f},{lon:.4f}"

    def fetch(self, location_key: str, start_time: int, end_time: int) -> list[Reading]:
        """One reading per whole hour in ``[start_time, end_time)``."""
        first = -(-start_time // HOUR)        # ceil
        readings: list[Reading] = []
        h = first
        while h * HOUR < end_time:
            readings.append(Reading(h * HOUR, self._hour_value(location_key, h)))
            h += 1
        return readings
