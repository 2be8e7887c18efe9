"""Tests for the policy registry: events, reconciliation, exclusion."""

from rainoracle.ledger import InMemoryLedger, Report
from rainoracle.models import DecisionKind, Policy, PolicyStatus
from rainoracle.registry import PolicyRegistry

DAY = 86400


def _policy(pid, **kw):
    return Policy(pid, 1, 45.0, 9.0, coverage_start=0, coverage_end=10 * DAY,
                  threshold=500, **kw)


def _registry(*policies, emit_event=True):
    ledger = InMemoryLedger()
    for p in policies:
        ledger.create_policy(p, emit_event=emit_event)
    discarded = []
    return ledger, PolicyRegistry(ledger, on_discard=discarded.append), discarded


def _ids(registry):
    return [p.policy_id for p in registry.active_policies()]


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

def test_created_events_add_policies():
    ledger, reg, _ = _registry(_policy("b"), _policy("a"))
    assert reg.apply_events(ledger.drain_events()) == 2
    assert _ids(reg) == ["a", "b"]


def test_duplicate_created_event_ignored():
    ledger, reg, _ = _registry(_policy("a"))
    reg.apply_events(ledger.drain_events())
    assert reg.on_policy_created(_policy("a")) is False
    assert len(reg) == 1


def test_settled_event_removes_and_discards():
    ledger, reg, discarded = _registry(_policy("a"), _policy("b"))
    reg.apply_events(ledger.drain_events())
    ledger.settle("a")
    reg.apply_events(ledger.drain_events())
    assert _ids(reg) == ["b"]
    assert discarded == ["a"]
    assert reg.is_settled("a")


def test_settled_policy_never_readded():
    ledger, reg, _ = _registry(_policy("a"))
    reg.on_policy_settled("a")
    assert reg.apply_events(ledger.drain_events()) == 0     # late created event
    assert _ids(reg) == []


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

def test_reconcile_recovers_missed_creation():
    ledger, reg, _ = _registry(_policy("a"), emit_event=False)
    assert ledger.drain_events() == []
    result = reg.reconcile()
    assert result.added == 1
    assert _ids(reg) == ["a"]


def test_reconcile_recovers_missed_settlement():
    ledger, reg, discarded = _registry(_policy("a"), _policy("b"))
    reg.reconcile()
    ledger.settle("a", emit_event=False)
    result = reg.reconcile()
    assert result.removed == 1
    assert _ids(reg) == ["b"]
    assert discarded == ["a"]


def test_reconcile_corrects_status_drift():
    ledger, reg, _ = _registry(_policy("a"))
    reg.reconcile()
    reg.get("a").location_key = "214046"
    ledger.submit_report(Report("a", DecisionKind.TRIGGERED, True, 100, 600, "0x1"))

    result = reg.reconcile()
    assert result.corrected == 1
    assert reg.get("a").status == PolicyStatus.TRIGGERED
    assert reg.get("a").location_key == "214046"
    assert _ids(reg) == []


def test_reconcile_drops_policies_missing_from_ledger():
    _, reg, discarded = _registry()
    reg.on_policy_created(_policy("ghost"))
    result = reg.reconcile()
    assert result.removed == 1
    assert len(reg) == 0
    assert discarded == ["ghost"]


# ---------------------------------------------------------------------------
# Exclusion
# ---------------------------------------------------------------------------

def test_exclude_and_readmit():
    ledger, reg, _ = _registry(_policy("a"), _policy("b"))
    reg.reconcile()
    reg.exclude("a", "No provider location for (45.0, 9.0)")
    assert _ids(reg) == ["b"]
    assert "a" in reg.excluded

    reg.reconcile()                       # reconciliation keeps the exclusion
    assert _ids(reg) == ["b"]

    assert reg.readmit("a") is True
    assert _ids(reg) == ["a", "b"]
    assert reg.readmit("a") is False


def test_status_counts():
    ledger, reg, _ = _registry(_policy("a"), _policy("b"), _policy("c"))
    reg.reconcile()
    ledger.settle("c")
    reg.apply_events(ledger.drain_events())
    counts = reg.status_counts()
    assert counts["active"] == 2
    assert counts["settled"] == 1
    assert counts["triggered"] == 0
