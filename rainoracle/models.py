"""
Core data model: policies, readings, decisions, submission records.

Rainfall is carried as integers in tenths of a millimetre everywhere past
the fetcher boundary.  ``to_tenths`` is the only place a float becomes an
integer.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, NamedTuple, Optional


# ============================================================================
# Enumerations
# ============================================================================

class TriggerMode(str, Enum):
    EARLY_TRIGGER = "early_trigger"
    MATURITY_ONLY = "maturity_only"


class PolicyStatus(str, Enum):
    ACTIVE = "active"
    TRIGGERED = "triggered"
    MATURED = "matured"
    SETTLED = "settled"


class DecisionKind(str, Enum):
    TRIGGERED = "triggered"
    MATURED = "matured"


class SubmissionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class AggregationMode(str, Enum):
    CUMULATIVE = "cumulative"
    ROLLING = "rolling"


# ============================================================================
# Units
# ============================================================================

def to_tenths(mm: float) -> int:
    """Millimetres -> integer tenths of a millimetre, half rounded up."""
    if mm is None or math.isnan(mm):
        raise ValueError(f"precipitation must be a number, got {mm!r}")
    return int(math.floor(mm * 10.0 + 0.5))


def from_tenths(tenths: int) -> float:
    return tenths / 10.0


# ============================================================================
# Policy
# ============================================================================

@dataclass(frozen=True)
class AggregationSpec:
    """How buckets combine into the value compared against the threshold.

    ``cumulative`` sums every bucket since coverage start.  ``rolling``
    only counts buckets inside a trailing window of ``window_seconds``
    ending at the latest bucket.
    """
    mode: AggregationMode = AggregationMode.CUMULATIVE
    window_seconds: Optional[int] = None

    def __post_init__(self):
        if self.mode == AggregationMode.ROLLING:
            if not self.window_seconds or self.window_seconds <= 0:
                raise ValueError("rolling aggregation needs window_seconds > 0")

    @classmethod
    def from_dict(cls, d: dict) -> "AggregationSpec":
        return cls(
            mode=AggregationMode(d.get("mode", "cumulative")),
            window_seconds=d.get("window_seconds"),
        )


@dataclass
class Policy:
    policy_id: str
    market_id: int
    lat: float
    lon: float
    coverage_start: int
    coverage_end: int
    threshold: int                      # tenths of mm
    trigger_mode: TriggerMode = TriggerMode.EARLY_TRIGGER
    status: PolicyStatus = PolicyStatus.ACTIVE
    version: str = "v2"
    location_key: Optional[str] = None

    def __post_init__(self):
        if self.coverage_end <= self.coverage_start:
            raise ValueError(
                f"Policy {self.policy_id}: coverage_end must be after coverage_start"
            )
        if self.threshold < 0:
            raise ValueError(f"Policy {self.policy_id}: threshold must be >= 0")

    def in_coverage(self, ts: int) -> bool:
        return self.coverage_start <= ts < self.coverage_end


# ============================================================================
# Readings
# ============================================================================

class Reading(NamedTuple):
    """One provider observation: unix seconds + precipitation in mm."""
    timestamp: int
    precipitation_mm: float


# ============================================================================
# Decisions
# ============================================================================

@dataclass(frozen=True)
class Evidence:
    cumulative: int
    threshold: int
    first_bucket: Optional[int]
    last_bucket: Optional[int]
    bucket_seconds: int
    observed_at: int
    aggregation: str = AggregationMode.CUMULATIVE.value
    peak: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "Evidence":
        return cls(**d)


@dataclass(frozen=True)
class TriggerDecision:
    """``kind is None`` means "nothing to report this pass"."""
    kind: Optional[DecisionKind] = None
    event_occurred: Optional[bool] = None
    evidence: Optional[Evidence] = None

    @classmethod
    def none(cls) -> "TriggerDecision":
        return cls()

    @classmethod
    def early_trigger(cls, evidence: Evidence) -> "TriggerDecision":
        return cls(kind=DecisionKind.TRIGGERED, event_occurred=True, evidence=evidence)

    @classmethod
    def matured(cls, event_occurred: bool, evidence: Evidence) -> "TriggerDecision":
        return cls(kind=DecisionKind.MATURED, event_occurred=event_occurred,
                   evidence=evidence)

    @property
    def is_none(self) -> bool:
        return self.kind is None

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value if self.kind else None,
            "event_occurred": self.event_occurred,
            "evidence": self.evidence.to_dict() if self.evidence else None,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "TriggerDecision":
        return cls(
            kind=DecisionKind(d["kind"]) if d.get("kind") else None,
            event_occurred=d.get("event_occurred"),
            evidence=Evidence.from_dict(d["evidence"]) if d.get("evidence") else None,
        )


# ============================================================================
# Submission records
# ============================================================================

def idempotency_key(policy_id: str, kind: DecisionKind) -> str:
    return f"{policy_id}:{kind.value}"


@dataclass
class SubmissionRecord:
    policy_id: str
    decision: TriggerDecision
    status: SubmissionStatus = SubmissionStatus.PENDING
    retry_count: int = 0
    last_attempt_at: Optional[int] = None
    last_error: Optional[str] = None
    tx_hash: Optional[str] = None
    evidence_hash: Optional[str] = None
    evidence_json: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[int] = None

    @property
    def decision_kind(self) -> DecisionKind:
        return self.decision.kind

    @property
    def key(self) -> str:
        return idempotency_key(self.policy_id, self.decision.kind)
