"""Audit settings and the per-invocation run context."""

from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from protocol_layer.tools.compliance.aggregator import ResultAggregator
from protocol_layer.tools.compliance.database import AuditHistory
from protocol_layer.tools.compliance.evaluator import RuleEvaluator
from protocol_layer.tools.compliance.loader import RuleSet, load_ruleset
from protocol_layer.tools.compliance.models import HostMetadata
from sensor_layer.facts import FactCollector, FactProvider
from sensor_layer.probes import HostProbes, host_metadata

load_dotenv()
log = logging.getLogger(__name__)

RESULT_DIR_MODE = 0o750


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        log.warning("ignoring non-integer %s=%r", name, raw)
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> frozenset[str]:
    return frozenset(item.strip() for item in os.getenv(name, "").split(",") if item.strip())


@dataclass(frozen=True, slots=True)
class AuditSettings:
    result_dir: Path = Path("/var/log/cis_audit")
    ruleset: Path | None = None
    db_path: Path | None = None
    parallel_jobs: int = 1
    timeout_seconds: float | None = None
    keep_logs: int = 5
    compress_after_days: int = 7
    purge_after_days: int = 30
    skip_rules: frozenset[str] = frozenset()
    min_free_mb: int = 500
    syslog: bool = False
    hostname: str | None = None
    collector_url: str = ""
    collector_api_key: str = ""
    probe_timeout: int = 60

    @property
    def history_path(self) -> Path:
        return self.db_path or self.result_dir / "history.db"

    @classmethod
    def from_env(cls) -> AuditSettings:
        """Read settings from AUDIT_* environment variables (and .env)."""
        ruleset = os.getenv("AUDIT_RULESET")
        db_path = os.getenv("AUDIT_DB_PATH")
        timeout = _env_int("AUDIT_TIMEOUT_SECONDS", 0)
        return cls(
            result_dir=Path(os.getenv("AUDIT_RESULT_DIR", "/var/log/cis_audit")),
            ruleset=Path(ruleset) if ruleset else None,
            db_path=Path(db_path) if db_path else None,
            parallel_jobs=max(1, _env_int("AUDIT_PARALLEL_JOBS", 1)),
            timeout_seconds=float(timeout) if timeout > 0 else None,
            keep_logs=_env_int("AUDIT_KEEP_LOGS", 5),
            compress_after_days=_env_int("AUDIT_COMPRESS_AFTER_DAYS", 7),
            purge_after_days=_env_int("AUDIT_PURGE_AFTER_DAYS", 30),
            skip_rules=_env_list("AUDIT_SKIP_RULES"),
            min_free_mb=_env_int("AUDIT_MIN_FREE_MB", 500),
            syslog=_env_bool("AUDIT_SYSLOG"),
            hostname=os.getenv("AUDIT_HOSTNAME") or None,
            collector_url=os.getenv("AUDIT_COLLECTOR_URL", ""),
            collector_api_key=os.getenv("AUDIT_COLLECTOR_API_KEY", ""),
            probe_timeout=_env_int("AUDIT_PROBE_TIMEOUT", 60),
        )


@dataclass(slots=True)
class RunContext:
    """Everything one audit or remediation invocation works with.

    Created per CLI command or MCP tool call and closed at the end; nothing in
    here outlives the invocation.
    """

    settings: AuditSettings
    ruleset: RuleSet
    collector: FactCollector
    host: HostMetadata
    aggregator: ResultAggregator = field(default_factory=ResultAggregator)
    cancel: threading.Event = field(default_factory=threading.Event)
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    _history: AuditHistory | None = None

    @classmethod
    def create(
        cls,
        settings: AuditSettings | None = None,
        *,
        provider: FactProvider | None = None,
        ruleset: RuleSet | None = None,
        host: HostMetadata | None = None,
        cancel: threading.Event | None = None,
    ) -> RunContext:
        """Load the rule set and wire a fresh collector and aggregator."""
        settings = settings or AuditSettings.from_env()
        ruleset = ruleset or load_ruleset(settings.ruleset)
        provider = provider or HostProbes(timeout=settings.probe_timeout)
        return cls(
            settings=settings,
            ruleset=ruleset,
            collector=FactCollector(provider),
            host=host or host_metadata(settings.hostname),
            cancel=cancel or threading.Event(),
        )

    @property
    def base_name(self) -> str:
        """Artifact file stem: <host>_<timestamp>."""
        return f"{self.host.hostname}_{self.started_at.strftime('%Y%m%d_%H%M%S')}"

    @property
    def history(self) -> AuditHistory:
        if self._history is None:
            path = self.settings.history_path
            path.parent.mkdir(mode=RESULT_DIR_MODE, parents=True, exist_ok=True)
            self._history = AuditHistory(path)
        return self._history

    def evaluator(self) -> RuleEvaluator:
        timeout = self.settings.timeout_seconds
        return RuleEvaluator(
            max_workers=self.settings.parallel_jobs,
            cancel=self.cancel,
            deadline=time.monotonic() + timeout if timeout else None,
            skip=self.settings.skip_rules,
        )

    def close(self) -> None:
        if self._history is not None:
            self._history.close()
            self._history = None

    def __enter__(self) -> RunContext:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
