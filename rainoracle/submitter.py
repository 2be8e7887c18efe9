"""
Report submission: the only component that writes to the ledger.

Idempotency is keyed on ``(policy_id, decision_kind)``:

  - no record        -> persist a Pending record, then write to the ledger
  - Confirmed record -> no-op
  - Pending / Failed -> retry the *stored* record (its decision and evidence,
                        not whatever the evaluator says now)

The ledger's own duplicate guard is a backstop: an "already submitted"
rejection proves an earlier attempt landed, so the record becomes Confirmed.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional

from rainoracle.aggregator import RollingState
from rainoracle.errors import ChainRejectedDuplicate, Fatal, Retryable
from rainoracle.evidence import build_evidence, evidence_hash
from rainoracle.ledger.adapter import LedgerClient, Report
from rainoracle.models import (
    Policy,
    SubmissionRecord,
    SubmissionStatus,
    TriggerDecision,
)
from rainoracle.store import SubmissionStore

log = logging.getLogger("rainoracle.submitter")


class ReportSubmitter:
    """Turn decisions into ledger reports, exactly once.

    Parameters
    ----------
    base_delay, max_delay : float
        Backoff between attempts is ``min(base_delay * 2**n, max_delay)``.
    max_attempts : int
        Attempts per round before the record is flagged Failed.
    failed_retry_interval : float
        Failed records get a new round after this many seconds.
    stop_event : threading.Event
        Set on shutdown; wakes backoff waits so the loop can exit with the
        record still Pending (and its bookkeeping persisted).
    """

    def __init__(
        self,
        ledger: LedgerClient,
        store: SubmissionStore,
        base_delay: float = 2.0,
        max_delay: float = 60.0,
        max_attempts: int = 5,
        failed_retry_interval: float = 3600.0,
        clock=time.time,
        stop_event: Optional[threading.Event] = None,
    ):
        self.ledger = ledger
        self.store = store
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.failed_retry_interval = failed_retry_interval
        self.clock = clock
        self.stop_event = stop_event or threading.Event()

    def backoff(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    # ------------------------------------------------------------------

    def submit(self, policy: Policy, decision: TriggerDecision,
               state: Optional[RollingState] = None) -> Optional[SubmissionRecord]:
        """Submit ``decision`` for ``policy`` unless it is already on record."""
        if decision.is_none:
            return None

        with self.store.lock_for(policy.policy_id):
            record = self.store.get(policy.policy_id, decision.kind)
            if record is not None and record.status == SubmissionStatus.CONFIRMED:
                log.debug("policy %s: %s already confirmed (tx=%s)",
                          policy.policy_id, decision.kind.value, record.tx_hash)
                return record

            if record is None:
                now = int(self.clock())
                evidence = build_evidence(policy, decision, state, now)
                record = SubmissionRecord(
                    policy_id=policy.policy_id,
                    decision=decision,
                    evidence_json=evidence,
                    evidence_hash=evidence_hash(evidence),
                    created_at=now,
                )
                self.store.put(record)
                log.info("policy %s: new %s submission (cumulative=%d, threshold=%d)",
                         policy.policy_id, decision.kind.value,
                         decision.evidence.cumulative, policy.threshold)
            else:
                log.info("policy %s: resuming stored %s submission (%s, %d retries)",
                         policy.policy_id, record.decision_kind.value,
                         record.status.value, record.retry_count)

            return self._run_round(record)

    def retry(self, record: SubmissionRecord) -> SubmissionRecord:
        """Run another round for a stored Pending/Failed record."""
        with self.store.lock_for(record.policy_id):
            fresh = self.store.get(record.policy_id, record.decision_kind) or record
            if fresh.status == SubmissionStatus.CONFIRMED:
                return fresh
            return self._run_round(fresh)

    def is_due(self, record: SubmissionRecord, now: Optional[float] = None) -> bool:
        """Pending records are always due; Failed ones on the slow cadence."""
        if record.status == SubmissionStatus.CONFIRMED:
            return False
        if record.status == SubmissionStatus.PENDING or record.last_attempt_at is None:
            return True
        now = self.clock() if now is None else now
        return now - record.last_attempt_at >= self.failed_retry_interval

    def resume_due(self, now: Optional[float] = None) -> list[SubmissionRecord]:
        """Stored records due for another round (Pending, or Failed past the interval)."""
        now = self.clock() if now is None else now
        return [r for r in self.store.outstanding() if self.is_due(r, now)]

    # ------------------------------------------------------------------

    def _report(self, record: SubmissionRecord) -> Report:
        ev = record.decision.evidence
        return Report(
            policy_id=record.policy_id,
            decision_kind=record.decision_kind,
            event_occurred=bool(record.decision.event_occurred),
            observed_at=ev.observed_at,
            cumulative=ev.cumulative,
            evidence_hash=record.evidence_hash,
        )

    def _confirm(self, record: SubmissionRecord, tx_hash: Optional[str],
                 note: Optional[str] = None) -> SubmissionRecord:
        record.status = SubmissionStatus.CONFIRMED
        record.tx_hash = tx_hash
        record.last_error = note
        self.store.put(record)
        return record

    def _run_round(self, record: SubmissionRecord) -> SubmissionRecord:
        if record.status == SubmissionStatus.FAILED:
            record.status = SubmissionStatus.PENDING
            self.store.put(record)

        report = self._report(record)
        for attempt in range(self.max_attempts):
            record.last_attempt_at = int(self.clock())
            try:
                if self.ledger.report_exists(record.policy_id):
                    log.warning("policy %s: report already on ledger; marking confirmed",
                                record.policy_id)
                    return self._confirm(record, record.tx_hash, "report already on ledger")
                tx_hash = self.ledger.submit_report(report)
            except ChainRejectedDuplicate as exc:
                log.warning("policy %s: ledger rejected duplicate (%s); marking confirmed",
                            record.policy_id, exc)
                return self._confirm(record, record.tx_hash, str(exc))
            except Retryable as exc:
                record.retry_count += 1
                record.last_error = str(exc)
                self.store.put(record)
                log.warning("policy %s: attempt %d/%d failed: %s",
                            record.policy_id, attempt + 1, self.max_attempts, exc)
                if attempt + 1 < self.max_attempts:
                    if self.stop_event.wait(self.backoff(attempt)):
                        log.info("policy %s: shutdown during backoff; record stays pending",
                                 record.policy_id)
                        return record
                continue
            except Fatal as exc:
                record.retry_count += 1
                record.status = SubmissionStatus.FAILED
                record.last_error = str(exc)
                self.store.put(record)
                log.error("policy %s: submission FAILED (fatal): %s", record.policy_id, exc)
                return record

            log.info("policy %s: %s report confirmed tx=%s",
                     record.policy_id, record.decision_kind.value, tx_hash)
            return self._confirm(record, tx_hash)

        record.status = SubmissionStatus.FAILED
        self.store.put(record)
        log.error("policy %s: submission FAILED after %d attempts (%s); "
                  "will retry every %ds", record.policy_id, self.max_attempts,
                  record.last_error, int(self.failed_retry_interval))
        return record
