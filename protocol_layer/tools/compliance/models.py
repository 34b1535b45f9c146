"""Core audit data model: statuses, severities, verdicts, results, host metadata."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Status(str, Enum):
    """Outcome of a single rule evaluation."""

    PASS = "pass"
    FAIL = "fail"
    INFO = "info"
    WARNING = "warning"
    SKIPPED = "skipped"
    ERROR = "error"

    @property
    def label(self) -> str:
        return self.value.upper()


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def weight(self) -> int:
        return _SEVERITY_WEIGHT[self]

    @property
    def label(self) -> str:
        return self.value.upper()


_SEVERITY_WEIGHT = {Severity.LOW: 1, Severity.MEDIUM: 2, Severity.HIGH: 3}

# Used when sorting findings, most severe first
SEVERITY_ORDER = {Severity.HIGH: 0, Severity.MEDIUM: 1, Severity.LOW: 2}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True, slots=True)
class Verdict:
    """What a rule predicate returns: a status and a human readable message."""

    status: Status
    message: str = ""

    @classmethod
    def passed(cls, message: str = "") -> Verdict:
        return cls(Status.PASS, message)

    @classmethod
    def failed(cls, message: str = "") -> Verdict:
        return cls(Status.FAIL, message)


@dataclass(frozen=True, slots=True)
class Result:
    """Outcome of evaluating one rule in one run."""

    rule_id: str
    status: Status
    message: str
    description: str
    category: str
    severity: Severity
    timestamp: str
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "status": self.status.value,
            "message": self.message,
            "description": self.description,
            "category": self.category,
            "severity": self.severity.value,
            "timestamp": self.timestamp,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Result:
        return cls(
            rule_id=data["rule_id"],
            status=Status(data["status"]),
            message=data.get("message", ""),
            description=data.get("description", ""),
            category=data.get("category", ""),
            severity=Severity(data.get("severity", Severity.MEDIUM.value)),
            timestamp=data.get("timestamp") or _now_iso(),
            duration_ms=float(data.get("duration_ms", 0.0)),
        )


@dataclass(frozen=True, slots=True)
class HostMetadata:
    """Identity of the audited host, shown in every report."""

    hostname: str
    fqdn: str = ""
    os_release: str = ""
    kernel: str = ""
    architecture: str = ""
    audited_at: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "hostname": self.hostname,
            "fqdn": self.fqdn,
            "os_release": self.os_release,
            "kernel": self.kernel,
            "architecture": self.architecture,
            "audited_at": self.audited_at,
        }
