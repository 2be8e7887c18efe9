"""
Poll loop: one pass per cycle over every active policy.

Per policy, in order and under the policy's lock::

    outstanding record?  -> retry it (never re-derive a decision), done
    resolve location     -> fetch window -> ingest -> evaluate -> submit

Policies run concurrently on a bounded thread pool; a pass waits for every
task before returning, so the next pass for a policy never overlaps the
previous one.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Optional

from rainoracle.aggregator import RainfallAggregator
from rainoracle.config import OracleConfig
from rainoracle.errors import DataUnavailable, Fatal, Retryable
from rainoracle.ledger.adapter import LedgerClient
from rainoracle.models import Policy, SubmissionStatus
from rainoracle.registry import PolicyRegistry
from rainoracle.resolver import LocationResolver
from rainoracle.store import SubmissionStore
from rainoracle.submitter import ReportSubmitter
from rainoracle.trigger_rules import evaluate

log = logging.getLogger("rainoracle.scheduler")


class OracleScheduler:
    """Drives registry -> resolver/fetcher -> aggregator -> evaluator -> submitter."""

    def __init__(
        self,
        config: OracleConfig,
        registry: PolicyRegistry,
        resolver: LocationResolver,
        fetcher,
        aggregator: RainfallAggregator,
        submitter: ReportSubmitter,
        store: SubmissionStore,
        ledger: LedgerClient,
        clock=time.time,
        stop_event: Optional[threading.Event] = None,
    ):
        self.config = config
        self.registry = registry
        self.resolver = resolver
        self.fetcher = fetcher
        self.aggregator = aggregator
        self.submitter = submitter
        self.store = store
        self.ledger = ledger
        self.clock = clock
        self.stop_event = stop_event or submitter.stop_event
        self.cycle_id = 0
        self.last_outcomes: Counter = Counter()
        self._evaluated_at: dict[str, int] = {}
        self._chain_checked = False
        self._discard_next = registry.on_discard
        registry.on_discard = self.forget

    # ------------------------------------------------------------------
    # Loop control
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """Abandon fetches not yet started; in-flight submissions finish."""
        if not self.stop_event.is_set():
            log.info("shutdown requested")
        self.stop_event.set()

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    def run_forever(self) -> None:
        interval = self.config.poll_interval_seconds
        log.info("poll loop started (every %ss, %d workers)",
                 interval, self.config.max_workers)
        while not self.stopping:
            started = time.monotonic()
            self.run_cycle()
            elapsed = time.monotonic() - started
            self.stop_event.wait(max(0.0, interval - elapsed))
        log.info("poll loop stopped after %d cycles", self.cycle_id)

    # ------------------------------------------------------------------
    # One pass
    # ------------------------------------------------------------------

    def _refresh_registry(self) -> None:
        if not self._chain_checked:
            self.store.check_chain(self.ledger.genesis_hash())
            self._chain_checked = True

        try:
            self.registry.apply_events(self.ledger.drain_events())
        except Retryable as exc:
            log.warning("ledger events unavailable this cycle: %s", exc)

        if self.cycle_id == 1 or self.cycle_id % self.config.reconcile_every_cycles == 0:
            try:
                self.registry.reconcile()
            except Retryable as exc:
                log.warning("reconciliation skipped this cycle: %s", exc)

    def run_cycle(self) -> Counter:
        """Run one pass and return per-policy outcome counts."""
        self.cycle_id += 1
        cycle = self.cycle_id
        outcomes: Counter = Counter()

        try:
            self._refresh_registry()
        except (Retryable, Fatal) as exc:
            log.error("cycle %d: ledger unreachable, pass skipped: %s", cycle, exc)
            outcomes["ledger_unavailable"] += 1
            self.last_outcomes = outcomes
            return outcomes

        policies = self.registry.active_policies()
        active_ids = {p.policy_id for p in policies}
        # outstanding records whose policy already left Active (the report
        # may have landed) still get their round
        orphans = [
            r for r in self.store.outstanding()
            if r.policy_id not in active_ids
            and not self.registry.is_settled(r.policy_id)
            and r.policy_id not in self.registry.excluded
        ]

        log.info("cycle %d: %d active policies, %d orphaned records",
                 cycle, len(policies), len(orphans))

        with ThreadPoolExecutor(max_workers=self.config.max_workers,
                                thread_name_prefix="oracle") as pool:
            futures = {pool.submit(self._process_policy, p, cycle): p.policy_id
                       for p in policies}
            for record in orphans:
                futures[pool.submit(self._retry_record, record)] = record.policy_id

            for fut in as_completed(futures):
                policy_id = futures[fut]
                try:
                    outcomes[fut.result()] += 1
                except Exception:
                    log.exception("policy %s: unexpected error", policy_id)
                    outcomes["error"] += 1

        self.last_outcomes = outcomes
        self._log_summary(cycle, outcomes)
        return outcomes

    # ------------------------------------------------------------------
    # Per-policy work
    # ------------------------------------------------------------------

    def forget(self, policy_id: str) -> None:
        """Drop everything kept for a policy that settled or left the ledger."""
        self._evaluated_at.pop(policy_id, None)
        self.store.drop_lock(policy_id)
        if self._discard_next is not None:
            self._discard_next(policy_id)

    def _retry_record(self, record) -> str:
        if self.stopping:
            return "abandoned"
        if not self.submitter.is_due(record, self.clock()):
            return "deferred"
        return self.submitter.retry(record).status.value

    def _process_policy(self, policy: Policy, cycle: int) -> str:
        pid = policy.policy_id
        with self.store.lock_for(pid):
            if self.stopping:
                return "abandoned"
            try:
                return self._step(policy, cycle)
            except DataUnavailable as exc:
                log.warning("policy %s: %s; deferred", pid, exc)
                return "deferred"
            except Retryable as exc:
                log.warning("policy %s: %s; retry next pass", pid, exc)
                return "retry_later"
            except Fatal as exc:
                self.registry.exclude(pid, str(exc))
                return "excluded"

    def _step(self, policy: Policy, cycle: int) -> str:
        pid = policy.policy_id
        records = self.store.for_policy(pid)
        outstanding = [r for r in records if r.status != SubmissionStatus.CONFIRMED]
        if outstanding:
            return self._retry_record(outstanding[0])
        if records:
            # decision already confirmed; waiting for the ledger status to follow
            return "reported"

        now = int(self.clock())
        if now < policy.coverage_start:
            return "not_started"

        if policy.location_key is None:
            policy.location_key = self.resolver.resolve(policy.lat, policy.lon)

        state = self.aggregator.state_for(policy)
        self._fetch_and_ingest(policy, state, now, cycle)

        matured = now >= policy.coverage_end
        if matured and (state.last_fetch_end is None
                        or state.last_fetch_end < policy.coverage_end):
            # a maturity report must cover the whole window; early triggers
            # may still fire on partial data since the total only grows
            log.info("policy %s: matured, rainfall up to %s of %d ingested; deferred",
                     pid, state.last_fetch_end, policy.coverage_end)
            return "deferred"

        last_eval = self._evaluated_at.get(pid)
        if (last_eval is not None and not matured
                and not self.aggregator.has_new_data_since(pid, last_eval)):
            return "unchanged"

        decision = evaluate(policy, state, now, self.config.bucket_seconds)
        self._evaluated_at[pid] = cycle
        if decision.is_none:
            return "no_decision"
        if self.registry.is_settled(pid):
            return "settled"

        record = self.submitter.submit(policy, decision, state)
        return record.status.value

    def _fetch_and_ingest(self, policy: Policy, state, now: int, cycle: int) -> None:
        start = policy.coverage_start
        if state.last_fetch_end is not None:
            start = max(start, state.last_fetch_end - self.config.fetch_overlap_seconds)
        end = min(now, policy.coverage_end)
        if start >= end or self.stopping:
            return

        try:
            readings = self.fetcher.fetch(policy.location_key, start, end)
        except DataUnavailable as exc:
            if exc.effective_start is not None and exc.effective_start >= exc.requested_end:
                # the provider's history no longer reaches back this far
                raise Fatal(f"rainfall for [{start}, {end}) is no longer served "
                            f"by the provider ({exc})") from exc
            served = exc.overlap()
            if served is None:
                raise
            # start on a bucket boundary so a fetcher clock that moved on since
            # the error still serves the window
            bucket = self.config.bucket_seconds
            served_start = -(-served[0] // bucket) * bucket
            if served_start >= served[1]:
                raise
            log.warning("policy %s: partial window [%d, %d) of [%d, %d)",
                        policy.policy_id, served_start, served[1], start, end)
            start, end = served_start, served[1]
            readings = self.fetcher.fetch(policy.location_key, start, end)

        result = self.aggregator.ingest(policy, readings, cycle)
        state.last_fetch_end = end
        if result.stale:
            log.warning("policy %s: %d stale readings dropped",
                        policy.policy_id, len(result.stale))
        log.debug("policy %s: +%d ~%d readings, cumulative=%d",
                  policy.policy_id, result.accepted, result.replaced,
                  state.cumulative_sum)

    # ------------------------------------------------------------------
    # Operator view
    # ------------------------------------------------------------------

    def status_summary(self) -> dict:
        return {
            "cycle": self.cycle_id,
            "policies": self.registry.status_counts(),
            "submissions": self.store.counts(),
            "excluded": self.registry.excluded,
            "failed": [r.key for r in self.store.records(SubmissionStatus.FAILED)],
            "last_cycle": dict(self.last_outcomes),
        }

    def _log_summary(self, cycle: int, outcomes: Counter) -> None:
        summary = self.status_summary()
        log.info("cycle %d done: outcomes=%s policies=%s submissions=%s",
                 cycle, dict(outcomes), summary["policies"], summary["submissions"])
        for pid, reason in summary["excluded"].items():
            log.error("policy %s excluded: %s", pid, reason)
        for key in summary["failed"]:
            log.error("submission %s FAILED; needs operator attention", key)
