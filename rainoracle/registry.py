"""
Policy registry: the in-memory set of policies under monitoring.

Two producers feed it through the same update path:

  - ledger events (``on_policy_created`` / ``on_policy_settled``), a latency
    optimization;
  - ``reconcile()``, a full ledger read that is the source of truth and
    repairs anything a missed event left behind.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass, replace
from typing import Callable, Iterable, Optional

from rainoracle.ledger.adapter import LedgerClient, LedgerEvent
from rainoracle.models import Policy, PolicyStatus

log = logging.getLogger("rainoracle.registry")


@dataclass
class ReconcileResult:
    added: int = 0
    removed: int = 0
    corrected: int = 0


class PolicyRegistry:
    """Tracks policies and their ledger status.

    Parameters
    ----------
    ledger : LedgerClient
        Source of truth for ``reconcile()``.
    on_discard : callable(policy_id), optional
        Called when a policy is confirmed Settled (the aggregator drops its
        rolling state here).
    """

    def __init__(self, ledger: LedgerClient,
                 on_discard: Optional[Callable[[str], None]] = None):
        self.ledger = ledger
        self.on_discard = on_discard
        self._policies: dict[str, Policy] = {}
        self._settled: set[str] = set()
        self._excluded: dict[str, str] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, policy_id: str) -> Optional[Policy]:
        return self._policies.get(policy_id)

    def active_policies(self) -> list[Policy]:
        """Active, non-excluded policies, ordered by id."""
        with self._lock:
            return [
                p for pid, p in sorted(self._policies.items())
                if p.status == PolicyStatus.ACTIVE and pid not in self._excluded
            ]

    def is_settled(self, policy_id: str) -> bool:
        return policy_id in self._settled

    @property
    def excluded(self) -> dict[str, str]:
        with self._lock:
            return dict(self._excluded)

    def status_counts(self) -> dict[str, int]:
        with self._lock:
            c = Counter(p.status.value for p in self._policies.values())
            c[PolicyStatus.SETTLED.value] += len(self._settled)
        return {s.value: c.get(s.value, 0) for s in PolicyStatus}

    def __len__(self) -> int:
        return len(self._policies)

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def on_policy_created(self, policy: Policy) -> bool:
        """Start monitoring ``policy``.  Returns False if already known or settled."""
        with self._lock:
            if policy.policy_id in self._settled or policy.policy_id in self._policies:
                return False
            if policy.status == PolicyStatus.SETTLED:
                self._settled.add(policy.policy_id)
                return False
            self._policies[policy.policy_id] = policy
        log.info("monitoring policy %s (%s, strike=%d, coverage=[%d, %d))",
                 policy.policy_id, policy.trigger_mode.value, policy.threshold,
                 policy.coverage_start, policy.coverage_end)
        return True

    def on_policy_settled(self, policy_id: str) -> bool:
        """Stop monitoring ``policy_id`` for good."""
        with self._lock:
            known = self._policies.pop(policy_id, None) is not None
            self._excluded.pop(policy_id, None)
            first = policy_id not in self._settled
            self._settled.add(policy_id)
        if first and self.on_discard is not None:
            self.on_discard(policy_id)
        if known:
            log.info("policy %s settled; monitoring stopped", policy_id)
        return known

    def apply_events(self, events: Iterable[LedgerEvent]) -> int:
        n = 0
        for event in events:
            if event.kind == "policy_created" and event.policy is not None:
                n += self.on_policy_created(event.policy)
            elif event.kind == "policy_settled":
                n += self.on_policy_settled(event.policy_id)
        return n

    def reconcile(self) -> ReconcileResult:
        """Full read of the ledger; add, remove and correct local entries."""
        result = ReconcileResult()
        chain = {p.policy_id: p for p in self.ledger.list_policies()}

        for pid, remote in chain.items():
            if remote.status == PolicyStatus.SETTLED:
                if self.on_policy_settled(pid):
                    result.removed += 1
                continue
            with self._lock:
                local = self._policies.get(pid)
                if local is not None and local.status != remote.status:
                    log.warning("policy %s: status drift %s -> %s (ledger wins)",
                                pid, local.status.value, remote.status.value)
                    self._policies[pid] = replace(remote, location_key=local.location_key)
                    result.corrected += 1
                    continue
            if local is None and self.on_policy_created(remote):
                result.added += 1

        with self._lock:
            vanished = [pid for pid in self._policies if pid not in chain]
            for pid in vanished:
                del self._policies[pid]
                self._excluded.pop(pid, None)
        for pid in vanished:
            log.warning("policy %s no longer on the ledger; dropped", pid)
            if self.on_discard is not None:
                self.on_discard(pid)
        result.removed += len(vanished)

        log.info("reconciled %d ledger policies: +%d -%d ~%d",
                 len(chain), result.added, result.removed, result.corrected)
        return result

    # ------------------------------------------------------------------
    # Exclusion after Fatal errors
    # ------------------------------------------------------------------

    def exclude(self, policy_id: str, reason: str) -> None:
        with self._lock:
            self._excluded[policy_id] = reason
        log.error("policy %s EXCLUDED from monitoring: %s", policy_id, reason)

    def readmit(self, policy_id: str) -> bool:
        with self._lock:
            reason = self._excluded.pop(policy_id, None)
        if reason is not None:
            log.info("policy %s re-admitted (was: %s)", policy_id, reason)
        return reason is not None
