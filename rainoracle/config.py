"""
Oracle configuration.

Values come from a JSON file (``--config``) and are then overridden by
environment variables, so secrets like the AccuWeather key never have to
live in the file::

    {
      "provider": "accuweather",
      "poll_interval_seconds": 1800,
      "bucket_seconds": 3600,
      "version_semantics": {
        "v1": {"mode": "rolling", "window_seconds": 86400},
        "v2": {"mode": "cumulative"}
      }
    }
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path

from rainoracle.models import AggregationMode, AggregationSpec


DEFAULT_VERSION_SEMANTICS = {
    "v1": AggregationSpec(AggregationMode.ROLLING, 24 * 3600),
    "v2": AggregationSpec(AggregationMode.CUMULATIVE),
}

# env var -> (field name, parser)
_ENV_OVERRIDES = {
    "RAINORACLE_PROVIDER": ("provider", str),
    "RAINORACLE_PROVIDER_URL": ("provider_base_url", str),
    "ACCUWEATHER_API_KEY": ("api_key", str),
    "RAINORACLE_LEDGER_BACKEND": ("ledger_backend", str),
    "RAINORACLE_LEDGER_URL": ("ledger_url", str),
    "RAINORACLE_POLL_SECONDS": ("poll_interval_seconds", float),
    "RAINORACLE_BUCKET_SECONDS": ("bucket_seconds", int),
    "RAINORACLE_LOOKBACK_BUCKETS": ("lookback_buckets", int),
    "RAINORACLE_WORKERS": ("max_workers", int),
    "RAINORACLE_DB_PATH": ("store_path", str),
    "RAINORACLE_LOG_LEVEL": ("log_level", str),
}


@dataclass
class OracleConfig:
    # weather provider
    provider: str = "accuweather"
    provider_base_url: str = ""
    api_key: str = ""
    http_timeout_seconds: float = 30.0
    http_max_retries: int = 3

    # ledger
    ledger_backend: str = "memory"          # memory | gateway
    ledger_url: str = "http://127.0.0.1:8080"
    ledger_timeout_seconds: float = 30.0

    # poll loop
    poll_interval_seconds: float = 1800.0
    max_workers: int = 4
    reconcile_every_cycles: int = 1

    # aggregation
    bucket_seconds: int = 3600
    lookback_buckets: int = 168
    fetch_overlap_seconds: int = 7200
    default_aggregation: AggregationSpec = field(default_factory=AggregationSpec)
    version_semantics: dict[str, AggregationSpec] = field(
        default_factory=lambda: dict(DEFAULT_VERSION_SEMANTICS)
    )

    # submission retry
    retry_base_delay_seconds: float = 2.0
    retry_max_delay_seconds: float = 60.0
    retry_max_attempts: int = 5
    failed_retry_interval_seconds: float = 3600.0

    # persistence / logging
    store_path: str = "./data/submissions.db"
    log_level: str = "INFO"

    # ------------------------------------------------------------------

    def aggregation_for(self, version: str) -> AggregationSpec:
        """Aggregation semantics for a policy version."""
        return self.version_semantics.get(version, self.default_aggregation)

    def validate(self) -> None:
        if self.bucket_seconds <= 0:
            raise ValueError("bucket_seconds must be > 0")
        if self.lookback_buckets < 0:
            raise ValueError("lookback_buckets must be >= 0")
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if self.reconcile_every_cycles < 1:
            raise ValueError("reconcile_every_cycles must be >= 1")
        if self.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be >= 1")
        if self.retry_base_delay_seconds < 0 or self.retry_max_delay_seconds < 0:
            raise ValueError("retry delays must be >= 0")
        if self.fetch_overlap_seconds < 0:
            raise ValueError("fetch_overlap_seconds must be >= 0")
        if self.ledger_backend not in ("memory", "gateway"):
            raise ValueError(
                f"Unknown ledger_backend '{self.ledger_backend}'. "
                f"Choose from: ['gateway', 'memory']"
            )
        for version, spec in self.version_semantics.items():
            if spec.mode == AggregationMode.ROLLING and spec.window_seconds < self.bucket_seconds:
                raise ValueError(
                    f"version {version}: rolling window shorter than one bucket"
                )

    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, raw: dict) -> "OracleConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(raw) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {sorted(unknown)}")

        kwargs = dict(raw)
        if "default_aggregation" in kwargs:
            kwargs["default_aggregation"] = AggregationSpec.from_dict(
                kwargs["default_aggregation"])
        if "version_semantics" in kwargs:
            semantics = dict(DEFAULT_VERSION_SEMANTICS)
            for version, spec in kwargs["version_semantics"].items():
                semantics[version] = AggregationSpec.from_dict(spec)
            kwargs["version_semantics"] = semantics
        return cls(**kwargs)

    @classmethod
    def load(cls, path: str | Path | None = None,
             environ: dict | None = None) -> "OracleConfig":
        """JSON file (optional) first, environment variables on top."""
        raw: dict = {}
        if path is not None:
            with open(path) as f:
                raw = json.load(f)

        env = os.environ if environ is None else environ
        for var, (name, parse) in _ENV_OVERRIDES.items():
            value = env.get(var)
            if value:
                raw[name] = parse(value)

        cfg = cls.from_dict(raw)
        cfg.validate()
        return cfg
