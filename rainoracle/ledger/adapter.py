"""
ledger/adapter.py - Ledger interface used by the oracle.

The registry and the submitter talk to the ledger only through
``LedgerClient``; whether the backend is the in-memory stub or the HTTP
gateway is chosen by ``ledger_backend`` in the config (``make_ledger``).
"""

from __future__ import annotations

import copy
import hashlib
import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Optional, Protocol

from rainoracle.errors import ChainRejectedDuplicate, Fatal
from rainoracle.models import DecisionKind, Policy, PolicyStatus

log = logging.getLogger("rainoracle.ledger")


@dataclass(frozen=True)
class Report:
    """What goes on chain for one decision."""
    policy_id: str
    decision_kind: DecisionKind
    event_occurred: bool
    observed_at: int
    cumulative: int
    evidence_hash: str

    def to_dict(self) -> dict:
        return {
            "policy_id": self.policy_id,
            "decision_kind": self.decision_kind.value,
            "event_occurred": self.event_occurred,
            "observed_at": self.observed_at,
            "cumulative": self.cumulative,
            "evidence_hash": self.evidence_hash,
        }


@dataclass(frozen=True)
class LedgerEvent:
    kind: str                       # "policy_created" | "policy_settled"
    policy_id: str
    policy: Optional[Policy] = None


class LedgerClient(Protocol):
    def genesis_hash(self) -> str: ...

    def list_policies(self) -> list[Policy]: ...

    def drain_events(self) -> list[LedgerEvent]: ...

    def report_exists(self, policy_id: str) -> bool: ...

    def submit_report(self, report: Report) -> str: ...


#  Stub backend

class InMemoryLedger:
    """Ledger stand-in for tests and demo runs.

    Enforces the chain's own duplicate guard: a second report for a policy,
    or any report for a policy that is no longer active, is rejected with
    ``ChainRejectedDuplicate``.
    """

    def __init__(self, genesis: str = "0xgenesis-stub"):
        self._genesis = genesis
        self._policies: dict[str, Policy] = {}
        self._reports: dict[str, Report] = {}
        self._events: list[LedgerEvent] = []
        self._failures: list[Exception] = []
        self._lock = threading.Lock()
        self._counter = 0
        self.submit_calls = 0

    # -- chain-side actions (what other actors do on chain) --------------

    def create_policy(self, policy: Policy, emit_event: bool = True) -> None:
        with self._lock:
            self._policies[policy.policy_id] = copy.deepcopy(policy)
            if emit_event:
                self._events.append(LedgerEvent("policy_created", policy.policy_id,
                                                copy.deepcopy(policy)))

    def settle(self, policy_id: str, emit_event: bool = True) -> None:
        with self._lock:
            p = self._policies[policy_id]
            self._policies[policy_id] = replace(p, status=PolicyStatus.SETTLED)
            if emit_event:
                self._events.append(LedgerEvent("policy_settled", policy_id))

    def fail_next(self, *errors: Exception) -> None:
        """Queue errors raised by the next ``submit_report`` calls."""
        with self._lock:
            self._failures.extend(errors)

    def reports(self) -> dict[str, Report]:
        with self._lock:
            return dict(self._reports)

    # -- LedgerClient -----------------------------------------------------

    def genesis_hash(self) -> str:
        return self._genesis

    def list_policies(self) -> list[Policy]:
        with self._lock:
            return [copy.deepcopy(p) for p in self._policies.values()]

    def drain_events(self) -> list[LedgerEvent]:
        with self._lock:
            events, self._events = self._events, []
            return events

    def report_exists(self, policy_id: str) -> bool:
        with self._lock:
            return policy_id in self._reports

    def submit_report(self, report: Report) -> str:
        with self._lock:
            self.submit_calls += 1
            if self._failures:
                raise self._failures.pop(0)
            policy = self._policies.get(report.policy_id)
            if policy is None:
                raise Fatal(f"Unknown policy {report.policy_id}")
            if report.policy_id in self._reports:
                raise ChainRejectedDuplicate(report.policy_id, "V2ReportAlreadySubmitted")
            if policy.status != PolicyStatus.ACTIVE:
                raise ChainRejectedDuplicate(report.policy_id, f"policy is {policy.status.value}")

            self._counter += 1
            tx_hash = "0x" + hashlib.sha256(
                f"{self._counter}:{report.policy_id}:{time.time()}".encode()
            ).hexdigest()
            self._reports[report.policy_id] = report
            new_status = (PolicyStatus.TRIGGERED
                          if report.decision_kind == DecisionKind.TRIGGERED
                          else PolicyStatus.MATURED)
            self._policies[report.policy_id] = replace(policy, status=new_status)
        log.info("stub report policy=%s kind=%s tx=%s",
                 report.policy_id, report.decision_kind.value, tx_hash[:18])
        return tx_hash


def make_ledger(cfg) -> LedgerClient:
    """Build the ledger backend named in ``cfg.ledger_backend``."""
    if cfg.ledger_backend == "gateway":
        from rainoracle.ledger.gateway import GatewayLedgerClient
        return GatewayLedgerClient(cfg.ledger_url, timeout=cfg.ledger_timeout_seconds)
    return InMemoryLedger()
