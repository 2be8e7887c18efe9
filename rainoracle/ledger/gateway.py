"""
ledger/gateway.py - Ledger gateway client over HTTP/JSON.

The gateway sits next to the chain node, holds the reporter key, signs and
relays extrinsics, and exposes a small JSON API:

  GET  /meta                 -> {"genesis_hash": "0x..."}
  GET  /policies             -> [{policy...}, ...]       (full read)
  GET  /events?cursor=N      -> {"events": [...], "cursor": M}
  GET  /reports/<policy_id>  -> 200 if a final report exists, 404 otherwise
  POST /reports              -> {"tx_hash": "0x..."} once finalized

Coordinates travel as integers scaled by 1e6, rainfall in tenths of mm.
"""

from __future__ import annotations

import logging
import threading

import requests

from rainoracle.errors import ChainRejectedDuplicate, Fatal, Retryable
from rainoracle.ledger.adapter import LedgerEvent, Report
from rainoracle.models import Policy, PolicyStatus, TriggerMode

log = logging.getLogger("rainoracle.ledger.gateway")

COORD_SCALE = 1_000_000
DUPLICATE_MARKERS = ("AlreadySubmitted", "AlreadySettled", "PolicyNotActive")


def policy_from_wire(d: dict) -> Policy:
    return Policy(
        policy_id=str(d["policy_id"]),
        market_id=int(d.get("market_id", 0)),
        lat=d["lat"] / COORD_SCALE,
        lon=d["lon"] / COORD_SCALE,
        coverage_start=int(d["coverage_start"]),
        coverage_end=int(d["coverage_end"]),
        threshold=int(d["strike_mm"]),
        trigger_mode=TriggerMode(d.get("trigger_mode", TriggerMode.EARLY_TRIGGER.value)),
        status=PolicyStatus(d.get("status", PolicyStatus.ACTIVE.value)),
        version=str(d.get("version", "v2")),
    )


class GatewayLedgerClient:
    """``LedgerClient`` backed by the ledger gateway's HTTP API."""

    def __init__(self, base_url: str, timeout: float = 30.0, session=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self._cursor = 0
        self._cursor_lock = threading.Lock()

    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            r = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as exc:
            raise Retryable(f"{method} {url}: {type(exc).__name__}: {exc}") from exc
        if r.status_code in (401, 403):
            raise Fatal(f"{method} {url}: gateway rejected credentials (HTTP {r.status_code})")
        if r.status_code == 429 or r.status_code >= 500:
            raise Retryable(f"{method} {url}: HTTP {r.status_code}")
        return r

    def _get_json(self, path: str, **kwargs):
        r = self._request("GET", path, **kwargs)
        if r.status_code != 200:
            raise Fatal(f"GET {path}: HTTP {r.status_code}: {r.text[:200]}")
        return r.json()

    # ------------------------------------------------------------------

    def genesis_hash(self) -> str:
        return str(self._get_json("/meta")["genesis_hash"])

    def list_policies(self) -> list[Policy]:
        return [policy_from_wire(d) for d in self._get_json("/policies")]

    def drain_events(self) -> list[LedgerEvent]:
        with self._cursor_lock:
            data = self._get_json("/events", params={"cursor": self._cursor})
            self._cursor = int(data.get("cursor", self._cursor))

        events: list[LedgerEvent] = []
        for e in data.get("events", []):
            kind = e.get("kind")
            if kind == "policy_created":
                policy = policy_from_wire(e["policy"])
                events.append(LedgerEvent(kind, policy.policy_id, policy))
            elif kind == "policy_settled":
                events.append(LedgerEvent(kind, str(e["policy_id"])))
            else:
                log.debug("ignoring ledger event %r", kind)
        return events

    def report_exists(self, policy_id: str) -> bool:
        r = self._request("GET", f"/reports/{policy_id}")
        if r.status_code == 200:
            return True
        if r.status_code == 404:
            return False
        raise Fatal(f"GET /reports/{policy_id}: HTTP {r.status_code}")

    def submit_report(self, report: Report) -> str:
        r = self._request("POST", "/reports", json=report.to_dict())
        if r.status_code in (200, 201):
            return str(r.json()["tx_hash"])

        detail = r.text[:300]
        if r.status_code == 409 or any(m in detail for m in DUPLICATE_MARKERS):
            raise ChainRejectedDuplicate(report.policy_id, detail)
        raise Fatal(f"POST /reports for {report.policy_id}: HTTP {r.status_code}: {detail}")
