"""
Rainfall oracle runner.

Usage:
    rainoracle --config configs/oracle.json
    rainoracle --config configs/oracle.json --once
    rainoracle --demo --once

The config JSON (see ``rainoracle.config``) controls:
  - weather provider selection + API key / base URL
  - ledger backend (in-memory stub or HTTP gateway)
  - poll cadence, bucket width, late-reading look-back
  - submission retry / backoff parameters
  - SQLite store path

``--demo`` swaps in the synthetic rainfall fetcher and an in-memory ledger
seeded with a few sample policies, so the whole pipeline runs offline.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import time

from rainoracle.aggregator import RainfallAggregator
from rainoracle.config import OracleConfig
from rainoracle.fetchers import get_fetcher
from rainoracle.ledger import InMemoryLedger, make_ledger
from rainoracle.models import Policy, TriggerMode
from rainoracle.registry import PolicyRegistry
from rainoracle.resolver import LocationResolver
from rainoracle.scheduler import OracleScheduler
from rainoracle.store import SubmissionStore
from rainoracle.submitter import ReportSubmitter

log = logging.getLogger("rainoracle.cli")

DAY = 86400


# ============================================================================
# Wiring
# ============================================================================

def demo_policies(now: int) -> list[Policy]:
    """A handful of policies around Milan at different lifecycle stages."""
    hour = now - now % 3600
    return [
        Policy("demo-early", 1, 45.4642, 9.1900,
               coverage_start=hour - 3 * DAY, coverage_end=hour + 7 * DAY,
               threshold=300, trigger_mode=TriggerMode.EARLY_TRIGGER),
        Policy("demo-maturity", 2, 45.0703, 7.6869,
               coverage_start=hour - 6 * DAY, coverage_end=hour - DAY,
               threshold=5000, trigger_mode=TriggerMode.MATURITY_ONLY),
        Policy("demo-rolling-v1", 3, 44.4949, 11.3426,
               coverage_start=hour - 2 * DAY, coverage_end=hour + 5 * DAY,
               threshold=400, trigger_mode=TriggerMode.EARLY_TRIGGER, version="v1"),
        Policy("demo-future", 4, 45.4384, 10.9916,
               coverage_start=hour + DAY, coverage_end=hour + 10 * DAY,
               threshold=500),
    ]


def build_scheduler(cfg: OracleConfig, demo: bool = False) -> OracleScheduler:
    if demo:
        fetcher = get_fetcher("synthetic_rainfall")
        ledger = InMemoryLedger(genesis="0xdemo")
        for p in demo_policies(int(time.time())):
            ledger.create_policy(p)
    else:
        fetcher = get_fetcher(
            cfg.provider,
            api_key=cfg.api_key,
            base_url=cfg.provider_base_url,
            timeout=cfg.http_timeout_seconds,
            max_retries=cfg.http_max_retries,
        )
        ledger = make_ledger(cfg)

    store = SubmissionStore(":memory:" if demo else cfg.store_path)
    aggregator = RainfallAggregator(
        bucket_seconds=cfg.bucket_seconds,
        lookback_buckets=cfg.lookback_buckets,
        aggregation_for=cfg.aggregation_for,
    )
    registry = PolicyRegistry(ledger, on_discard=aggregator.discard)
    submitter = ReportSubmitter(
        ledger, store,
        base_delay=cfg.retry_base_delay_seconds,
        max_delay=cfg.retry_max_delay_seconds,
        max_attempts=cfg.retry_max_attempts,
        failed_retry_interval=cfg.failed_retry_interval_seconds,
    )
    return OracleScheduler(
        cfg, registry, LocationResolver(fetcher), fetcher, aggregator,
        submitter, store, ledger,
    )


# ============================================================================
# Summary
# ============================================================================

def print_summary(scheduler: OracleScheduler) -> None:
    summary = scheduler.status_summary()
    print("\n===== Oracle status =====")
    print(f"Cycles run:        {summary['cycle']}")
    for status, n in summary["policies"].items():
        print(f"Policies {status + ':':<10} {n}")
    for status, n in summary["submissions"].items():
        print(f"Reports  {status + ':':<10} {n}")
    print(f"Last cycle:        {summary['last_cycle']}")
    if summary["excluded"]:
        print("Excluded policies:")
        for pid, reason in summary["excluded"].items():
            print(f"  {pid}: {reason}")
    if summary["failed"]:
        print(f"FAILED reports:    {', '.join(summary['failed'])}")
    print("=========================\n")


# ============================================================================
# Entry point
# ============================================================================

def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Parametric rainfall oracle")
    parser.add_argument("--config", help="Path to config JSON")
    parser.add_argument("--once", action="store_true",
                        help="Run a single poll cycle and exit")
    parser.add_argument("--demo", action="store_true",
                        help="Synthetic rainfall + in-memory ledger with sample policies")
    args = parser.parse_args(argv)

    try:
        cfg = OracleConfig.load(args.config)
    except (OSError, ValueError) as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    print(f"=== Rainfall oracle ({'demo' if args.demo else cfg.provider}) ===")
    print(f"Ledger: {'memory (demo)' if args.demo else cfg.ledger_backend}")
    print(f"Poll every {cfg.poll_interval_seconds:.0f}s, "
          f"bucket {cfg.bucket_seconds}s, look-back {cfg.lookback_buckets} buckets\n")

    scheduler = build_scheduler(cfg, demo=args.demo)

    def _handle_signal(signum, frame):
        scheduler.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        if args.once:
            scheduler.run_cycle()
        else:
            scheduler.run_forever()
        print_summary(scheduler)
        failed = scheduler.status_summary()["failed"]
    finally:
        scheduler.store.close()
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
