"""
Trigger rules: when does a policy's rainfall turn into a report?

Each rule is a callable with signature::

    rule(policy: Policy, state: RollingState | None, now: int) -> TriggerDecision

All rules are deterministic and side-effect free.

Built-in rules
--------------
A) EarlyTriggerRule
     reached >= threshold while now is inside the coverage window -> EarlyTrigger;
     otherwise behaves like MaturityOnlyRule.
B) MaturityOnlyRule
     now >= coverage_end -> Matured(event_occurred = reached >= threshold).

"Reached" is the running total for cumulative policies and the highest
rolling total ever seen for rolling-window policies.  Equality counts as
reached.
"""

from __future__ import annotations

from typing import Optional

from rainoracle.aggregator import RollingState
from rainoracle.models import (
    AggregationMode,
    Evidence,
    Policy,
    PolicyStatus,
    TriggerDecision,
    TriggerMode,
)


def _evidence(policy: Policy, state: Optional[RollingState], observed_at: int,
              bucket_seconds: int) -> Evidence:
    if state is None:
        return Evidence(cumulative=0, threshold=policy.threshold,
                        first_bucket=None, last_bucket=None,
                        bucket_seconds=bucket_seconds, observed_at=observed_at)
    first, last = state.counted_range()
    return Evidence(
        cumulative=state.cumulative_sum,
        threshold=policy.threshold,
        first_bucket=first,
        last_bucket=last,
        bucket_seconds=state.bucket_seconds,
        observed_at=observed_at,
        aggregation=state.aggregation.mode.value,
        peak=state.peak_sum,
    )


def reached_value(state: Optional[RollingState]) -> int:
    if state is None:
        return 0
    if state.aggregation.mode == AggregationMode.ROLLING:
        return state.peak_sum
    return state.cumulative_sum


# ============================================================================
# B) MaturityOnlyRule
# ============================================================================

class MaturityOnlyRule:
    """Decide only once the coverage window has closed."""

    def __init__(self, bucket_seconds: int = 3600):
        self.bucket_seconds = bucket_seconds

    def __call__(self, policy: Policy, state: Optional[RollingState],
                 now: int) -> TriggerDecision:
        if policy.status != PolicyStatus.ACTIVE:
            return TriggerDecision.none()
        if now < policy.coverage_end:
            return TriggerDecision.none()
        occurred = reached_value(state) >= policy.threshold
        return TriggerDecision.matured(
            occurred,
            _evidence(policy, state, policy.coverage_end, self.bucket_seconds),
        )


# ============================================================================
# A) EarlyTriggerRule
# ============================================================================

class EarlyTriggerRule(MaturityOnlyRule):
    """Fire as soon as the threshold is reached inside the coverage window.

    The running total only grows inside a window, so once this fires the
    decision is final for the policy.
    """

    def __call__(self, policy: Policy, state: Optional[RollingState],
                 now: int) -> TriggerDecision:
        if policy.status != PolicyStatus.ACTIVE:
            return TriggerDecision.none()
        if now < policy.coverage_start:
            return TriggerDecision.none()
        if policy.in_coverage(now) and reached_value(state) >= policy.threshold:
            return TriggerDecision.early_trigger(
                _evidence(policy, state, now, self.bucket_seconds)
            )
        return super().__call__(policy, state, now)


# ============================================================================
# Registry: resolve a rule by trigger mode.
# ============================================================================

TRIGGER_REGISTRY: dict[TriggerMode, type] = {
    TriggerMode.EARLY_TRIGGER: EarlyTriggerRule,
    TriggerMode.MATURITY_ONLY: MaturityOnlyRule,
}


def get_trigger(mode: TriggerMode, bucket_seconds: int = 3600):
    """Look up a trigger rule by mode.  Raises KeyError if unknown."""
    if mode not in TRIGGER_REGISTRY:
        raise KeyError(
            f"Unknown trigger mode '{mode}'. "
            f"Available: {sorted(m.value for m in TRIGGER_REGISTRY)}"
        )
    return TRIGGER_REGISTRY[mode](bucket_seconds)


def evaluate(policy: Policy, state: Optional[RollingState], now: int,
             bucket_seconds: int = 3600) -> TriggerDecision:
    """Pure decision for one policy at time ``now``."""
    return get_trigger(policy.trigger_mode, bucket_seconds)(policy, state, now)
