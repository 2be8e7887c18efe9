"""End-to-end tests for the poll loop with a scripted fetcher and the stub ledger.

Tests cover:
  - early-trigger and maturity-only lifecycles
  - exactly one report per policy over its whole lifecycle
  - overlapping fetch windows
  - partial windows from DataUnavailable, and windows gone for good
  - maturity held back until rainfall through coverage end is in
  - per-policy failure isolation
  - restart safety and the Failed retry cadence
  - per-policy bookkeeping dropped on settlement
  - shutdown
"""

from rainoracle.aggregator import RainfallAggregator
from rainoracle.config import OracleConfig
from rainoracle.errors import DataUnavailable, LocationNotFound, Retryable
from rainoracle.ledger import InMemoryLedger
from rainoracle.models import (
    DecisionKind,
    Evidence,
    Policy,
    Reading,
    SubmissionRecord,
    SubmissionStatus,
    TriggerDecision,
    TriggerMode,
    to_tenths,
)
from rainoracle.registry import PolicyRegistry
from rainoracle.resolver import LocationResolver
from rainoracle.scheduler import OracleScheduler
from rainoracle.store import SubmissionStore
from rainoracle.fetchers import SyntheticRainfallFetcher
from rainoracle.submitter import ReportSubmitter

HOUR = 3600
DAY = 86400
T0 = 1_700_000_000 // HOUR * HOUR


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class ScriptedFetcher:
    """Serves readings from a dict keyed by location key."""

    def __init__(self):
        self.readings: dict[str, list[Reading]] = {}
        self.errors: dict[str, Exception] = {}
        self.bad_sites: set = set()
        self.calls: list[tuple] = []

    def resolve_location(self, lat, lon):
        if (lat, lon) in self.bad_sites:
            raise LocationNotFound(lat, lon)
        return f"{lat:.4f},{lon:.4f}"

    def fetch(self, key, start, end):
        self.calls.append((key, start, end))
        if key in self.errors:
            raise self.errors[key]
        return [r for r in self.readings.get(key, []) if start <= r.timestamp < end]


class LastDayFetcher(ScriptedFetcher):
    """Only serves the trailing 24 hours, like a current-conditions API."""

    def __init__(self, clock):
        super().__init__()
        self.clock = clock

    def fetch(self, key, start, end):
        earliest = self.clock() - DAY
        if start < earliest:
            self.calls.append((key, start, end))
            raise DataUnavailable(start, end, earliest, self.clock())
        return super().fetch(key, start, end)


class TickingLastDayFetcher(LastDayFetcher):
    """Its clock moves on by a second with every request."""

    def fetch(self, key, start, end):
        self.clock.now += 1
        return super().fetch(key, start, end)


class LaggingArchiveFetcher(ScriptedFetcher):
    """Serves a long history that stops ``lag`` seconds before now."""

    def __init__(self, clock, lag):
        super().__init__()
        self.clock = clock
        self.lag = lag

    def fetch(self, key, start, end):
        latest = self.clock() - self.lag
        if end > latest:
            self.calls.append((key, start, end))
            raise DataUnavailable(start, end, T0 - 30 * DAY, latest)
        return super().fetch(key, start, end)


def _policy(pid, lat=45.0, lon=9.0, days=10, threshold=500,
            mode=TriggerMode.EARLY_TRIGGER, **kw):
    return Policy(pid, 1, lat, lon, coverage_start=T0, coverage_end=T0 + days * DAY,
                  threshold=threshold, trigger_mode=mode, **kw)


def _hourly(start, hours, mm):
    return [Reading(start + h * HOUR, mm) for h in range(hours)]


def _oracle(clock, fetcher, policies=(), ledger=None, store=None, **cfg):
    cfg.setdefault("retry_base_delay_seconds", 0.0)
    cfg.setdefault("max_workers", 2)
    config = OracleConfig(**cfg)
    ledger = ledger or InMemoryLedger()
    for p in policies:
        ledger.create_policy(p)
    store = store or SubmissionStore()
    aggregator = RainfallAggregator(config.bucket_seconds, config.lookback_buckets,
                                    aggregation_for=config.aggregation_for)
    registry = PolicyRegistry(ledger, on_discard=aggregator.discard)
    submitter = ReportSubmitter(
        ledger, store,
        base_delay=config.retry_base_delay_seconds,
        max_delay=config.retry_max_delay_seconds,
        max_attempts=config.retry_max_attempts,
        failed_retry_interval=config.failed_retry_interval_seconds,
        clock=clock,
    )
    return OracleScheduler(config, registry, LocationResolver(fetcher), fetcher,
                           aggregator, submitter, store, ledger, clock=clock)


# ---------------------------------------------------------------------------
# Scenario A: early trigger
# ---------------------------------------------------------------------------

def test_early_trigger_reported_once():
    clock = Clock(T0 + 3 * DAY)
    fetcher = ScriptedFetcher()
    fetcher.readings["45.0000,9.0000"] = _hourly(T0, 52, 1.0)      # 52 mm
    oracle = _oracle(clock, fetcher, [_policy("A")])

    outcomes = oracle.run_cycle()
    assert outcomes["confirmed"] == 1
    report = oracle.ledger.reports()["A"]
    assert report.decision_kind == DecisionKind.TRIGGERED
    assert report.cumulative == 520

    # more rain (60 mm total), later passes: nothing new goes out
    fetcher.readings["45.0000,9.0000"] += _hourly(T0 + 52 * HOUR, 8, 1.0)
    for step in (HOUR, 2 * DAY, 8 * DAY):
        clock.now = T0 + 3 * DAY + step
        oracle.run_cycle()
    assert oracle.ledger.submit_calls == 1
    assert [r.key for r in oracle.store.records()] == ["A:triggered"]


def test_no_report_below_threshold():
    clock = Clock(T0 + 2 * DAY)
    fetcher = ScriptedFetcher()
    fetcher.readings["45.0000,9.0000"] = _hourly(T0, 10, 1.0)
    oracle = _oracle(clock, fetcher, [_policy("A")])
    assert oracle.run_cycle()["no_decision"] == 1
    assert oracle.ledger.reports() == {}


# ---------------------------------------------------------------------------
# Scenario B: maturity only
# ---------------------------------------------------------------------------

def test_maturity_only_reported_after_coverage_end():
    clock = Clock(T0 + DAY)
    fetcher = ScriptedFetcher()
    fetcher.readings["45.0000,9.0000"] = _hourly(T0, 30, 1.0)      # 30 mm
    oracle = _oracle(clock, fetcher,
                     [_policy("B", days=5, mode=TriggerMode.MATURITY_ONLY)])

    for day in (1, 2, 4):
        clock.now = T0 + day * DAY
        oracle.run_cycle()
        assert oracle.ledger.reports() == {}

    clock.now = T0 + 5 * DAY
    oracle.run_cycle()
    report = oracle.ledger.reports()["B"]
    assert report.decision_kind == DecisionKind.MATURED
    assert report.event_occurred is False
    assert report.cumulative == 300
    assert report.observed_at == T0 + 5 * DAY

    clock.now += DAY
    oracle.run_cycle()
    assert oracle.ledger.submit_calls == 1


def test_maturity_waits_for_rainfall_through_coverage_end():
    clock = Clock(T0 + 5 * DAY)
    fetcher = LaggingArchiveFetcher(clock, lag=2 * DAY)
    fetcher.readings["45.0000,9.0000"] = (_hourly(T0, 40, 0.5)                # 20 mm
                                          + _hourly(T0 + 3 * DAY, 40, 1.0))   # 40 mm
    oracle = _oracle(clock, fetcher,
                     [_policy("B", days=5, mode=TriggerMode.MATURITY_ONLY)])

    assert oracle.run_cycle() == {"deferred": 1}
    assert oracle.ledger.reports() == {}
    assert oracle.aggregator.current_cumulative("B") == 200

    clock.now = T0 + 6 * DAY
    assert oracle.run_cycle() == {"deferred": 1}
    assert oracle.ledger.reports() == {}

    clock.now = T0 + 7 * DAY
    oracle.run_cycle()
    report = oracle.ledger.reports()["B"]
    assert report.decision_kind == DecisionKind.MATURED
    assert report.event_occurred is True
    assert report.cumulative == 600


def test_expired_window_excludes_policy():
    clock = Clock(T0 + 20 * DAY)
    fetcher = LastDayFetcher(clock)
    fetcher.readings["45.0000,9.0000"] = _hourly(T0, 30, 1.0)
    oracle = _oracle(clock, fetcher,
                     [_policy("B", days=5, mode=TriggerMode.MATURITY_ONLY)])

    assert oracle.run_cycle() == {"excluded": 1}
    assert "no longer served" in oracle.status_summary()["excluded"]["B"]

    oracle.run_cycle()
    assert len(fetcher.calls) == 1
    assert oracle.ledger.reports() == {}


def test_unchanged_policy_not_reevaluated():
    clock = Clock(T0 + DAY)
    fetcher = ScriptedFetcher()
    fetcher.readings["45.0000,9.0000"] = _hourly(T0, 5, 1.0)
    oracle = _oracle(clock, fetcher, [_policy("A")])
    assert oracle.run_cycle()["no_decision"] == 1
    clock.now += HOUR
    assert oracle.run_cycle()["unchanged"] == 1


# ---------------------------------------------------------------------------
# Fetch windows
# ---------------------------------------------------------------------------

def test_overlapping_fetches_do_not_double_count():
    clock = Clock(T0 + DAY)
    fetcher = SyntheticRainfallFetcher(seed=3)
    oracle = _oracle(clock, fetcher, [_policy("A", threshold=100_000)])
    for _ in range(5):
        oracle.run_cycle()
        clock.now += HOUR

    expected = sum(to_tenths(r.precipitation_mm)
                   for r in fetcher.fetch("syn:45.0000,9.0000", T0, clock.now - HOUR))
    assert oracle.aggregator.current_cumulative("A") == expected


def test_fetch_window_starts_overlap_before_last_end():
    clock = Clock(T0 + DAY)
    fetcher = ScriptedFetcher()
    oracle = _oracle(clock, fetcher, [_policy("A")], fetch_overlap_seconds=2 * HOUR)
    oracle.run_cycle()
    clock.now += HOUR
    oracle.run_cycle()
    assert fetcher.calls == [("45.0000,9.0000", T0, T0 + DAY),
                             ("45.0000,9.0000", T0 + DAY - 2 * HOUR, T0 + DAY + HOUR)]


def test_partial_window_used_when_provider_limited():
    clock = Clock(T0 + 3 * DAY)
    fetcher = LastDayFetcher(clock)
    fetcher.readings["45.0000,9.0000"] = _hourly(T0, 72, 1.0)
    oracle = _oracle(clock, fetcher, [_policy("A", threshold=100_000)])
    oracle.run_cycle()

    assert fetcher.calls == [("45.0000,9.0000", T0, T0 + 3 * DAY),
                             ("45.0000,9.0000", T0 + 2 * DAY, T0 + 3 * DAY)]
    assert oracle.aggregator.current_cumulative("A") == 240
    assert oracle.aggregator.state("A").last_fetch_end == T0 + 3 * DAY


def test_partial_window_survives_provider_clock_moving():
    clock = Clock(T0 + 3 * DAY)
    fetcher = TickingLastDayFetcher(clock)
    fetcher.readings["45.0000,9.0000"] = _hourly(T0, 72, 1.0)
    oracle = _oracle(clock, fetcher, [_policy("A", threshold=100_000)])

    assert oracle.run_cycle() == {"no_decision": 1}
    assert fetcher.calls[1] == ("45.0000,9.0000", T0 + 2 * DAY + HOUR, T0 + 3 * DAY)
    assert oracle.aggregator.current_cumulative("A") == 230


def test_policy_not_started_is_not_fetched():
    clock = Clock(T0 - DAY)
    fetcher = ScriptedFetcher()
    oracle = _oracle(clock, fetcher, [_policy("A")])
    assert oracle.run_cycle()["not_started"] == 1
    assert fetcher.calls == []


# ---------------------------------------------------------------------------
# Isolation
# ---------------------------------------------------------------------------

def test_failures_isolated_per_policy():
    clock = Clock(T0 + 3 * DAY)
    fetcher = ScriptedFetcher()
    fetcher.readings["45.0000,9.0000"] = _hourly(T0, 60, 1.0)
    fetcher.errors["46.0000,9.0000"] = Retryable("HTTP 503")
    fetcher.bad_sites.add((47.0, 9.0))
    oracle = _oracle(clock, fetcher, [
        _policy("ok"), _policy("flaky", lat=46.0), _policy("nowhere", lat=47.0),
    ])

    outcomes = oracle.run_cycle()
    assert outcomes == {"confirmed": 1, "retry_later": 1, "excluded": 1}
    assert set(oracle.ledger.reports()) == {"ok"}

    summary = oracle.status_summary()
    assert list(summary["excluded"]) == ["nowhere"]
    assert summary["submissions"]["confirmed"] == 1

    # excluded policy is skipped on the next pass, flaky one is retried
    oracle.run_cycle()
    assert ("46.0000,9.0000" in {c[0] for c in fetcher.calls})
    assert all(not c[0].startswith("47.") for c in fetcher.calls)


# ---------------------------------------------------------------------------
# Restart safety / retries
# ---------------------------------------------------------------------------

def test_restart_resumes_stored_record(tmp_path):
    db = tmp_path / "submissions.db"
    stored = TriggerDecision.early_trigger(Evidence(
        cumulative=511, threshold=500, first_bucket=T0 // HOUR,
        last_bucket=T0 // HOUR + 40, bucket_seconds=HOUR, observed_at=T0 + 2 * DAY))
    store = SubmissionStore(db)
    store.put(SubmissionRecord("A", stored, retry_count=2, evidence_hash="0xabc"))
    store.close()

    clock = Clock(T0 + 3 * DAY)
    fetcher = ScriptedFetcher()
    fetcher.readings["45.0000,9.0000"] = _hourly(T0, 70, 1.0)
    oracle = _oracle(clock, fetcher, [_policy("A")], store=SubmissionStore(db))
    oracle.run_cycle()

    report = oracle.ledger.reports()["A"]
    assert report.cumulative == 511
    assert report.observed_at == T0 + 2 * DAY
    assert report.evidence_hash == "0xabc"
    assert fetcher.calls == []


def test_failed_submission_retried_on_slow_cadence():
    clock = Clock(T0 + 3 * DAY)
    fetcher = ScriptedFetcher()
    fetcher.readings["45.0000,9.0000"] = _hourly(T0, 60, 1.0)
    ledger = InMemoryLedger()
    ledger.fail_next(Retryable("503"), Retryable("503"))
    oracle = _oracle(clock, fetcher, [_policy("A")], ledger=ledger,
                     retry_max_attempts=2, failed_retry_interval_seconds=3600)

    assert oracle.run_cycle()["failed"] == 1
    assert oracle.status_summary()["failed"] == ["A:triggered"]

    clock.now += 600
    assert oracle.run_cycle()["deferred"] == 1
    assert ledger.submit_calls == 2

    clock.now += 3000
    assert oracle.run_cycle()["confirmed"] == 1
    assert ledger.submit_calls == 3


def test_chain_restart_forgets_old_records():
    store = SubmissionStore()
    store.check_chain("0xold")
    old = TriggerDecision.early_trigger(Evidence(
        cumulative=999, threshold=500, first_bucket=None, last_bucket=None,
        bucket_seconds=HOUR, observed_at=T0))
    store.put(SubmissionRecord("A", old, status=SubmissionStatus.CONFIRMED))

    clock = Clock(T0 + 3 * DAY)
    fetcher = ScriptedFetcher()
    fetcher.readings["45.0000,9.0000"] = _hourly(T0, 60, 1.0)
    oracle = _oracle(clock, fetcher, [_policy("A")],
                     ledger=InMemoryLedger(genesis="0xnew"), store=store)
    oracle.run_cycle()
    assert oracle.ledger.reports()["A"].cumulative == 600


def test_settled_policy_state_discarded():
    clock = Clock(T0 + DAY)
    fetcher = ScriptedFetcher()
    fetcher.readings["45.0000,9.0000"] = _hourly(T0, 5, 1.0)
    oracle = _oracle(clock, fetcher, [_policy("A")])
    oracle.run_cycle()
    assert oracle.aggregator.state("A") is not None
    assert "A" in oracle._evaluated_at
    assert len(oracle.store._keys) == 1

    oracle.ledger.settle("A")
    clock.now += HOUR
    oracle.run_cycle()
    assert oracle.aggregator.state("A") is None
    assert oracle.registry.active_policies() == []
    assert "A" not in oracle._evaluated_at
    assert len(oracle.store._keys) == 0


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------

def test_stop_abandons_unstarted_work():
    clock = Clock(T0 + DAY)
    fetcher = ScriptedFetcher()
    oracle = _oracle(clock, fetcher, [_policy("A"), _policy("B", lat=46.0)])
    oracle.stop()
    assert oracle.run_cycle()["abandoned"] == 2
    assert fetcher.calls == []


def test_run_forever_exits_when_stopped():
    clock = Clock(T0 + DAY)
    fetcher = ScriptedFetcher()
    oracle = _oracle(clock, fetcher, [_policy("A")], poll_interval_seconds=3600)
    first_run_cycle = oracle.run_cycle

    def cycle_then_stop():
        result = first_run_cycle()
        oracle.stop()
        return result

    oracle.run_cycle = cycle_then_stop
    oracle.run_forever()
    assert oracle.cycle_id == 1
