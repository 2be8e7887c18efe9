"""
Error taxonomy for the oracle engine.

Every failure the engine can meet is one of these classes.  The scheduler
decides what to do with a policy from the class alone:

    Retryable              -> skip the policy this pass, try again next pass
    StaleReading           -> drop the reading, keep going
    DataUnavailable        -> provider cannot serve the window; use the part
                              it can serve or defer
    Fatal                  -> exclude the policy and tell the operator
    ChainRejectedDuplicate -> the report is already on the ledger (success)
"""

from __future__ import annotations


class OracleError(Exception):
    """Base class for every error raised by the engine."""


class Retryable(OracleError):
    """Transient network / provider / ledger failure."""


class Fatal(OracleError):
    """Configuration, authentication or geocoding failure.  Never retried."""


class LocationNotFound(Fatal):
    """The weather provider cannot geocode the coordinates."""

    def __init__(self, lat: float, lon: float, detail: str = ""):
        self.lat = lat
        self.lon = lon
        msg = f"No provider location for ({lat}, {lon})"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


class StaleReading(OracleError):
    """A reading falls too far behind the latest bucket to be merged."""

    def __init__(self, policy_id: str, timestamp: int, bucket_index: int,
                 last_bucket_index: int):
        self.policy_id = policy_id
        self.timestamp = timestamp
        self.bucket_index = bucket_index
        self.last_bucket_index = last_bucket_index
        super().__init__(
            f"Stale reading for policy {policy_id} at t={timestamp}: "
            f"bucket {bucket_index} is behind latest bucket {last_bucket_index}"
        )


class DataUnavailable(OracleError):
    """The provider cannot serve the requested window.

    ``effective_start`` / ``effective_end`` is the range it *can* serve
    (unix seconds, half-open).  Either may be ``None`` when the provider
    serves nothing at all for this location.
    """

    def __init__(self, requested_start: int, requested_end: int,
                 effective_start: int | None, effective_end: int | None,
                 source: str = ""):
        self.requested_start = requested_start
        self.requested_end = requested_end
        self.effective_start = effective_start
        self.effective_end = effective_end
        self.source = source
        super().__init__(
            f"{source or 'provider'} cannot serve [{requested_start}, {requested_end}); "
            f"effective range is [{effective_start}, {effective_end})"
        )

    def overlap(self) -> tuple[int, int] | None:
        """The part of the requested window the provider can serve, if any."""
        if self.effective_start is None or self.effective_end is None:
            return None
        start = max(self.requested_start, self.effective_start)
        end = min(self.requested_end, self.effective_end)
        if start >= end:
            return None
        return start, end


class ChainRejectedDuplicate(OracleError):
    """The ledger already holds a final report for this policy."""

    def __init__(self, policy_id: str, detail: str = ""):
        self.policy_id = policy_id
        super().__init__(f"Ledger already settled policy {policy_id}: {detail}".rstrip(": "))
