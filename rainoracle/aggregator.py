"""
Rainfall aggregation: readings -> fixed-size time buckets -> running total.

Each policy owns a ``RollingState``.  A reading lands in bucket
``timestamp // bucket_seconds``; inside a bucket, readings are keyed by
their timestamp so a reading delivered twice (overlapping fetch windows)
replaces itself instead of double-counting, and a late correction is
applied as a delta.

The running total is maintained incrementally:

  - cumulative semantics:  every bucket since coverage start counts.
  - rolling semantics:     only buckets in the trailing window ending at the
                           latest bucket count; when the latest bucket moves
                           forward, buckets that drop out are subtracted.

Work per ingest is proportional to the new readings (plus, for rolling
windows, the number of buckets the window slides over), never to the full
history.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Iterable, Optional

from rainoracle.errors import StaleReading
from rainoracle.models import (
    AggregationMode,
    AggregationSpec,
    Policy,
    Reading,
    to_tenths,
)

log = logging.getLogger("rainoracle.aggregator")


# ============================================================================
# State
# ============================================================================

@dataclass
class Bucket:
    index: int
    total: int = 0                                   # tenths of mm
    readings: dict[int, int] = field(default_factory=dict)


@dataclass
class RollingState:
    policy_id: str
    aggregation: AggregationSpec
    bucket_seconds: int
    buckets: dict[int, Bucket] = field(default_factory=dict)
    cumulative_sum: int = 0
    peak_sum: int = 0
    last_bucket_index: Optional[int] = None
    last_changed_cycle: Optional[int] = None
    last_fetch_end: Optional[int] = None

    @property
    def window_buckets(self) -> Optional[int]:
        """Width of the rolling window in buckets (None for cumulative)."""
        if self.aggregation.mode != AggregationMode.ROLLING:
            return None
        return max(1, self.aggregation.window_seconds // self.bucket_seconds)

    def counts(self, index: int) -> bool:
        """Does bucket ``index`` contribute to ``cumulative_sum`` right now?"""
        width = self.window_buckets
        if width is None or self.last_bucket_index is None:
            return True
        return self.last_bucket_index - width < index <= self.last_bucket_index

    def counted_range(self) -> tuple[Optional[int], Optional[int]]:
        if not self.buckets:
            return None, None
        first = min(self.buckets)
        width = self.window_buckets
        if width is not None:
            first = max(first, self.last_bucket_index - width + 1)
        return first, self.last_bucket_index

    def counted_buckets(self) -> list[tuple[int, int]]:
        """``[(bucket_index, tenths), ...]`` for the buckets currently counted."""
        return sorted(
            (b.index, b.total) for b in self.buckets.values() if self.counts(b.index)
        )


@dataclass
class IngestResult:
    accepted: int = 0
    replaced: int = 0
    out_of_window: int = 0
    rejected: int = 0                                # NaN, missing or negative
    stale: list[StaleReading] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return (self.accepted + self.replaced) > 0


# ============================================================================
# Aggregator
# ============================================================================

class RainfallAggregator:
    """Owns one ``RollingState`` per monitored policy.

    Parameters
    ----------
    bucket_seconds : int
        Bucket width (default one hour).
    lookback_buckets : int
        Readings more than this many buckets behind the latest bucket are
        rejected as ``StaleReading``.
    aggregation_for : callable(version) -> AggregationSpec
        Aggregation semantics per policy version.
    """

    def __init__(self, bucket_seconds: int = 3600, lookback_buckets: int = 168,
                 aggregation_for=None):
        if bucket_seconds <= 0:
            raise ValueError("bucket_seconds must be > 0")
        self.bucket_seconds = bucket_seconds
        self.lookback_buckets = lookback_buckets
        self.aggregation_for = aggregation_for or (lambda version: AggregationSpec())
        self._states: dict[str, RollingState] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------

    def bucket_index(self, timestamp: int) -> int:
        return timestamp // self.bucket_seconds

    def state(self, policy_id: str) -> Optional[RollingState]:
        return self._states.get(policy_id)

    def state_for(self, policy: Policy) -> RollingState:
        """Existing state for ``policy``, created on first use."""
        st = self._states.get(policy.policy_id)
        if st is None:
            with self._lock:
                st = self._states.setdefault(policy.policy_id, RollingState(
                    policy_id=policy.policy_id,
                    aggregation=self.aggregation_for(policy.version),
                    bucket_seconds=self.bucket_seconds,
                ))
        return st

    def discard(self, policy_id: str) -> None:
        with self._lock:
            self._states.pop(policy_id, None)

    def current_cumulative(self, policy_id: str) -> int:
        st = self._states.get(policy_id)
        return st.cumulative_sum if st else 0

    def has_new_data_since(self, policy_id: str, cycle_id: Optional[int]) -> bool:
        """True if the policy's state changed in a cycle after ``cycle_id``."""
        st = self._states.get(policy_id)
        if st is None or st.last_changed_cycle is None:
            return False
        return cycle_id is None or st.last_changed_cycle > cycle_id

    # ------------------------------------------------------------------

    def ingest(self, policy: Policy, readings: Iterable[Reading],
               cycle_id: Optional[int] = None) -> IngestResult:
        """Merge ``readings`` into the policy's state."""
        st = self.state_for(policy)
        result = IngestResult()

        for reading in sorted(readings, key=lambda r: r.timestamp):
            ts = int(reading.timestamp)
            if not policy.in_coverage(ts):
                result.out_of_window += 1
                continue

            idx = self.bucket_index(ts)
            if (st.last_bucket_index is not None
                    and idx < st.last_bucket_index - self.lookback_buckets):
                stale = StaleReading(policy.policy_id, ts, idx, st.last_bucket_index)
                log.warning("%s", stale)
                result.stale.append(stale)
                continue

            try:
                tenths = to_tenths(reading.precipitation_mm)
            except ValueError as exc:
                log.warning("policy %s: reading at t=%d rejected: %s",
                            policy.policy_id, ts, exc)
                result.rejected += 1
                continue
            if tenths < 0:
                log.warning("policy %s: negative precipitation %s at t=%d rejected",
                            policy.policy_id, reading.precipitation_mm, ts)
                result.rejected += 1
                continue

            if st.last_bucket_index is None or idx > st.last_bucket_index:
                self._advance(st, idx)

            bucket = st.buckets.get(idx)
            if bucket is None:
                bucket = st.buckets[idx] = Bucket(index=idx)

            previous = bucket.readings.get(ts)
            if previous == tenths:
                continue
            delta = tenths - (previous or 0)
            bucket.readings[ts] = tenths
            bucket.total += delta
            if st.counts(idx):
                st.cumulative_sum += delta
                st.peak_sum = max(st.peak_sum, st.cumulative_sum)

            if previous is None:
                result.accepted += 1
            else:
                result.replaced += 1

        if result.changed:
            st.last_changed_cycle = cycle_id
        return result

    def _advance(self, st: RollingState, new_last: int) -> None:
        """Move the latest bucket forward, evicting buckets leaving the window."""
        old_last = st.last_bucket_index
        st.last_bucket_index = new_last
        width = st.window_buckets
        if width is None or old_last is None:
            return

        # buckets (old_last - width, new_last - width] drop out; at most `width`
        lo = old_last - width + 1
        hi = min(new_last - width, old_last)
        for idx in range(lo, hi + 1):
            bucket = st.buckets.get(idx)
            if bucket is not None:
                st.cumulative_sum -= bucket.total
