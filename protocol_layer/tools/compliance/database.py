"""Audit history, SQLite storage for past runs

Provides persistent storage for:
- Audit runs and their summaries
- Per-rule results of every run
- Remediation outcomes
"""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone, timedelta
from pathlib import Path
from typing import Any, Iterable, Sequence

from .aggregator import Summary
from .models import SEVERITY_ORDER, HostMetadata, Result, Severity, Status
from .remediation import RemediationOutcome

_SCHEMA = """
CREATE TABLE IF NOT EXISTS runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT UNIQUE NOT NULL,
    hostname TEXT NOT NULL,
    benchmark TEXT,
    started_at TEXT NOT NULL,
    finished_at TEXT NOT NULL,
    total INTEGER NOT NULL,
    passed INTEGER NOT NULL,
    failed INTEGER NOT NULL,
    compliance_rate REAL NOT NULL,
    weighted_rate REAL NOT NULL,
    complete INTEGER NOT NULL DEFAULT 1,
    summary TEXT NOT NULL,
    host TEXT NOT NULL,
    artifacts TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_runs_hostname ON runs(hostname);
CREATE INDEX IF NOT EXISTS idx_runs_finished ON runs(finished_at);

CREATE TABLE IF NOT EXISTS results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES runs(run_id) ON DELETE CASCADE,
    seq INTEGER NOT NULL,
    rule_id TEXT NOT NULL,
    status TEXT NOT NULL,
    severity TEXT NOT NULL,
    category TEXT,
    description TEXT,
    message TEXT,
    timestamp TEXT NOT NULL,
    duration_ms REAL
);
CREATE INDEX IF NOT EXISTS idx_results_run ON results(run_id);
CREATE INDEX IF NOT EXISTS idx_results_status ON results(status);

CREATE TABLE IF NOT EXISTS remediations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    hostname TEXT NOT NULL,
    source_run_id TEXT,
    rule_id TEXT NOT NULL,
    description TEXT,
    success INTEGER NOT NULL,
    dry_run INTEGER NOT NULL DEFAULT 0,
    message TEXT,
    timestamp TEXT NOT NULL,
    duration_ms REAL
);
CREATE INDEX IF NOT EXISTS idx_remediations_hostname ON remediations(hostname);
"""


def _result_from_row(row: sqlite3.Row) -> Result:
    return Result(
        rule_id=row["rule_id"],
        status=Status(row["status"]),
        message=row["message"] or "",
        description=row["description"] or "",
        category=row["category"] or "",
        severity=Severity(row["severity"]),
        timestamp=row["timestamp"],
        duration_ms=row["duration_ms"] or 0.0,
    )


class AuditHistory:
    """SQLite database of audit runs, results and remediation outcomes."""

    __slots__ = ("db_path", "_local")

    def __init__(self, db_path: str | Path = "history.db") -> None:
        self.db_path = Path(db_path)
        self._local = threading.local()
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "conn"):
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute("PRAGMA busy_timeout=3000")
            self._local.conn = conn
        return self._local.conn  # type: ignore[attr-defined]

    def _init_db(self) -> None:
        """Initialize database schema."""
        conn = self._get_conn()
        conn.executescript(_SCHEMA)
        conn.commit()

    def store_run(
        self,
        run_id: str,
        host: HostMetadata,
        summary: Summary,
        results: Sequence[Result],
        *,
        benchmark: str = "",
        started_at: str | None = None,
        finished_at: str | None = None,
        artifacts: dict[str, str] | None = None,
    ) -> int:
        """Store a finished (or interrupted) run with its results. Returns the row ID."""
        conn = self._get_conn()
        now = datetime.now(timezone.utc).isoformat()
        finished_at = finished_at or now

        with conn:
            cursor = conn.execute(
                "INSERT INTO runs (run_id, hostname, benchmark, started_at, finished_at, total, passed, failed, compliance_rate, weighted_rate, complete, summary, host, artifacts) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    run_id,
                    host.hostname,
                    benchmark,
                    started_at or finished_at,
                    finished_at,
                    summary.total,
                    summary.passed,
                    summary.failed,
                    summary.compliance_rate,
                    summary.weighted_compliance_rate,
                    int(summary.complete),
                    json.dumps(summary.to_dict()),
                    json.dumps(host.to_dict()),
                    json.dumps(artifacts or {}),
                ),
            )
            conn.executemany(
                "INSERT INTO results (run_id, seq, rule_id, status, severity, category, description, message, timestamp, duration_ms) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        run_id,
                        seq,
                        r.rule_id,
                        r.status.value,
                        r.severity.value,
                        r.category,
                        r.description,
                        r.message,
                        r.timestamp,
                        r.duration_ms,
                    )
                    for seq, r in enumerate(results)
                ],
            )
        return cursor.lastrowid  # type: ignore

    def _run_dict(self, row: sqlite3.Row) -> dict[str, Any]:
        return {
            "run_id": row["run_id"],
            "hostname": row["hostname"],
            "benchmark": row["benchmark"],
            "started_at": row["started_at"],
            "finished_at": row["finished_at"],
            "total": row["total"],
            "passed": row["passed"],
            "failed": row["failed"],
            "compliance_rate": row["compliance_rate"],
            "weighted_compliance_rate": row["weighted_rate"],
            "complete": bool(row["complete"]),
            "summary": json.loads(row["summary"]),
            "host": json.loads(row["host"]),
            "artifacts": json.loads(row["artifacts"]),
        }

    def get_latest_run(self, hostname: str) -> dict[str, Any] | None:
        """Get the most recent run for a hostname."""
        row = (
            self._get_conn()
            .execute(
                "SELECT * FROM runs WHERE hostname = ? ORDER BY finished_at DESC, id DESC LIMIT 1",
                (hostname,),
            )
            .fetchone()
        )
        return self._run_dict(row) if row else None

    def get_results(self, run_id: str) -> list[Result]:
        """Results of one run, in evaluation order."""
        return [
            _result_from_row(row)
            for row in self._get_conn()
            .execute("SELECT * FROM results WHERE run_id = ? ORDER BY seq", (run_id,))
            .fetchall()
        ]

    def get_latest_results(self, hostname: str) -> list[Result]:
        """Results of the most recent run for a hostname, empty if none."""
        run = self.get_latest_run(hostname)
        return self.get_results(run["run_id"]) if run else []

    def get_failing_rules(self, hostname: str) -> list[dict[str, Any]]:
        """Failed and warning rules of the latest run, most severe first."""
        failing = [
            {
                "rule_id": r.rule_id,
                "description": r.description,
                "category": r.category,
                "severity": r.severity.value,
                "status": r.status.value,
                "message": r.message,
            }
            for r in self.get_latest_results(hostname)
            if r.status in (Status.FAIL, Status.WARNING)
        ]
        return sorted(failing, key=lambda x: SEVERITY_ORDER[Severity(x["severity"])])

    def store_remediations(
        self,
        hostname: str,
        outcomes: Iterable[RemediationOutcome],
        source_run_id: str | None = None,
    ) -> int:
        """Store remediation outcomes. Returns the count stored."""
        rows = [
            (
                hostname,
                source_run_id,
                o.rule_id,
                o.description,
                int(o.success),
                int(o.dry_run),
                o.message,
                o.timestamp,
                o.duration_ms,
            )
            for o in outcomes
        ]
        conn = self._get_conn()
        with conn:
            conn.executemany(
                "INSERT INTO remediations (hostname, source_run_id, rule_id, description, success, dry_run, message, timestamp, duration_ms) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                rows,
            )
        return len(rows)

    def get_remediation_history(
        self, hostname: str, limit: int = 100
    ) -> list[dict[str, Any]]:
        """Most recent remediation outcomes for a hostname."""
        return [
            {
                "rule_id": row["rule_id"],
                "description": row["description"],
                "success": bool(row["success"]),
                "dry_run": bool(row["dry_run"]),
                "message": row["message"],
                "timestamp": row["timestamp"],
                "source_run_id": row["source_run_id"],
            }
            for row in self._get_conn()
            .execute(
                "SELECT * FROM remediations WHERE hostname = ? ORDER BY timestamp DESC, id DESC LIMIT ?",
                (hostname, limit),
            )
            .fetchall()
        ]

    def get_compliance_trend(self, hostname: str, days: int = 30) -> dict[str, Any]:
        """Get compliance rate trend over time."""
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()

        rows = (
            self._get_conn()
            .execute(
                "SELECT DATE(finished_at) as date, AVG(compliance_rate) as avg_rate FROM runs WHERE hostname = ? AND finished_at >= ? AND complete = 1 GROUP BY DATE(finished_at) ORDER BY date",
                (hostname, cutoff),
            )
            .fetchall()
        )

        trend_data = [
            {"date": row["date"], "rate": round(row["avg_rate"], 2)} for row in rows
        ]

        direction = "insufficient_data"
        if len(trend_data) >= 2:
            delta = trend_data[-1]["rate"] - trend_data[0]["rate"]
            direction = (
                "improving" if delta > 5 else "declining" if delta < -5 else "stable"
            )

        return {
            "hostname": hostname,
            "period_days": days,
            "direction": direction,
            "data_points": trend_data,
        }

    def get_run_history(self, hostname: str, limit: int = 30) -> list[dict[str, Any]]:
        """Get run history for a hostname, newest first."""
        return [
            {
                "run_id": row["run_id"],
                "compliance_rate": row["compliance_rate"],
                "weighted_compliance_rate": row["weighted_rate"],
                "passed": row["passed"],
                "failed": row["failed"],
                "total": row["total"],
                "complete": bool(row["complete"]),
                "finished_at": row["finished_at"],
            }
            for row in self._get_conn()
            .execute(
                "SELECT * FROM runs WHERE hostname = ? ORDER BY finished_at DESC, id DESC LIMIT ?",
                (hostname, limit),
            )
            .fetchall()
        ]

    def close(self) -> None:
        """Close database connection."""
        if hasattr(self._local, "conn"):
            self._local.conn.close()
            del self._local.conn
