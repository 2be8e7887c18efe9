"""Evidence documents attached to oracle reports, and their hashes."""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Optional

from rainoracle.aggregator import RollingState
from rainoracle.models import Policy, TriggerDecision

EVIDENCE_VERSION = "2.0"


def _iso(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_evidence(policy: Policy, decision: TriggerDecision,
                   state: Optional[RollingState], generated_at: int) -> dict:
    """Auditable JSON describing why ``decision`` was taken."""
    ev = decision.evidence
    buckets = state.counted_buckets() if state is not None else []
    return {
        "version": EVIDENCE_VERSION,
        "policy_id": policy.policy_id,
        "market_id": policy.market_id,
        "outcome": decision.kind.value,
        "event_occurred": bool(decision.event_occurred),
        "observed_at": ev.observed_at,
        "observed_at_iso": _iso(ev.observed_at),
        "cumulative_mm": ev.cumulative,
        "peak_mm": ev.peak,
        "strike_mm": policy.threshold,
        "aggregation": ev.aggregation,
        "coverage_start": policy.coverage_start,
        "coverage_end": policy.coverage_end,
        "location_key": policy.location_key,
        "bucket_seconds": ev.bucket_seconds,
        "bucket_range": [ev.first_bucket, ev.last_bucket],
        "buckets": [
            {"hour": _iso(idx * ev.bucket_seconds), "mm": mm} for idx, mm in buckets
        ],
        "generated_at": _iso(generated_at),
    }


def evidence_hash(evidence: dict) -> str:
    """SHA-256 over the canonical (sorted, compact) JSON encoding."""
    canonical = json.dumps(evidence, sort_keys=True, separators=(",", ":"))
    return "0x" + hashlib.sha256(canonical.encode()).hexdigest()
