"""Result aggregation: counts, compliance rates, per-category and per-severity views."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .models import Result, Severity, Status


def compliance_rate(passed: int, failed: int) -> float:
    """Percentage of comparable (pass + fail) results that passed, 0 when none."""
    comparable = passed + failed
    return round((passed / comparable) * 100, 2) if comparable > 0 else 0.0


def _empty_counts() -> dict[Status, int]:
    return {status: 0 for status in Status}


@dataclass(frozen=True, slots=True)
class CategorySummary:
    category: str
    total: int
    counts: dict[Status, int]
    compliance_rate: float

    @property
    def passed(self) -> int:
        return self.counts[Status.PASS]

    @property
    def failed(self) -> int:
        return self.counts[Status.FAIL]


@dataclass(frozen=True, slots=True)
class Summary:
    """Aggregate view over a result sequence."""

    total: int
    counts: dict[Status, int]
    compliance_rate: float
    weighted_compliance_rate: float
    by_category: dict[str, CategorySummary] = field(default_factory=dict)
    by_severity: dict[Severity, dict[Status, int]] = field(default_factory=dict)
    complete: bool = True

    @property
    def passed(self) -> int:
        return self.counts[Status.PASS]

    @property
    def failed(self) -> int:
        return self.counts[Status.FAIL]

    def status_label(self) -> str:
        """Executive status from the compliance rate."""
        if self.compliance_rate >= 90:
            return "Compliant"
        if self.compliance_rate >= 70:
            return "Partially Compliant"
        if self.compliance_rate >= 50:
            return "Non-Compliant"
        return "Critical"

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "counts": {s.value: n for s, n in self.counts.items()},
            "compliance_rate": self.compliance_rate,
            "weighted_compliance_rate": self.weighted_compliance_rate,
            "status_label": self.status_label(),
            "complete": self.complete,
            "by_category": {
                name: {
                    "total": cat.total,
                    "counts": {s.value: n for s, n in cat.counts.items()},
                    "compliance_rate": cat.compliance_rate,
                }
                for name, cat in self.by_category.items()
            },
            "by_severity": {
                sev.value: {s.value: n for s, n in counts.items()}
                for sev, counts in self.by_severity.items()
            },
        }


class ResultAggregator:
    """Append-only result sequence with on-demand summaries."""

    __slots__ = ("_results",)

    def __init__(self) -> None:
        self._results: list[Result] = []

    def record(self, result: Result) -> None:
        self._results.append(result)

    def results(self) -> tuple[Result, ...]:
        return tuple(self._results)

    def __len__(self) -> int:
        return len(self._results)

    def by_severity(self) -> dict[Severity, dict[Status, int]]:
        table = {severity: _empty_counts() for severity in Severity}
        for r in self._results:
            table[r.severity][r.status] += 1
        return table

    def summary(self, *, complete: bool = True) -> Summary:
        """Recompute counts and rates. Safe to call mid-run."""
        counts = _empty_counts()
        categories: dict[str, dict[Status, int]] = {}
        weight_passed = weight_failed = 0

        for r in self._results:
            counts[r.status] += 1
            categories.setdefault(r.category, _empty_counts())[r.status] += 1
            if r.status is Status.PASS:
                weight_passed += r.severity.weight
            elif r.status is Status.FAIL:
                weight_failed += r.severity.weight

        by_category = {
            name: CategorySummary(
                category=name,
                total=sum(cat_counts.values()),
                counts=cat_counts,
                compliance_rate=compliance_rate(
                    cat_counts[Status.PASS], cat_counts[Status.FAIL]
                ),
            )
            for name, cat_counts in categories.items()
        }

        return Summary(
            total=len(self._results),
            counts=counts,
            compliance_rate=compliance_rate(counts[Status.PASS], counts[Status.FAIL]),
            weighted_compliance_rate=compliance_rate(weight_passed, weight_failed),
            by_category=by_category,
            by_severity=self.by_severity(),
            complete=complete,
        )
