from __future__ import annotations

from protocol_layer.tools.compliance.aggregator import ResultAggregator, compliance_rate
from protocol_layer.tools.compliance.models import Result, Severity, Status


def _result(
    rule_id: str,
    status: Status,
    severity: Severity = Severity.MEDIUM,
    category: str = "SSH Server Configuration",
) -> Result:
    return Result(
        rule_id=rule_id,
        status=status,
        message="",
        description=f"rule {rule_id}",
        category=category,
        severity=severity,
        timestamp="2026-10-18T08:00:00+00:00",
    )


def _sample_aggregator() -> ResultAggregator:
    aggregator = ResultAggregator()
    for r in (
        _result("5.2.1", Status.PASS, Severity.HIGH),
        _result("5.2.2", Status.FAIL, Severity.HIGH),
        _result("5.2.3", Status.PASS, Severity.LOW),
        _result("1.1.1.1", Status.FAIL, Severity.LOW, "Filesystem Configuration"),
        _result("1.1.2.2", Status.SKIPPED, category="Filesystem Configuration"),
        _result("1.5.1", Status.WARNING, category="Additional Process Hardening"),
        _result("1.5.2", Status.ERROR, category="Additional Process Hardening"),
        _result("1.5.3", Status.INFO, category="Additional Process Hardening"),
    ):
        aggregator.record(r)
    return aggregator


def test_rate_counts_only_pass_and_fail() -> None:
    summary = _sample_aggregator().summary()

    assert summary.total == 8
    assert summary.passed == 2
    assert summary.failed == 2
    assert summary.counts[Status.SKIPPED] == 1
    assert summary.compliance_rate == 50.0
    assert sum(summary.counts.values()) == summary.total


def test_weighted_rate_uses_severity() -> None:
    summary = _sample_aggregator().summary()
    # passed: high(3) + low(1), failed: high(3) + low(1)
    assert summary.weighted_compliance_rate == 50.0

    aggregator = ResultAggregator()
    aggregator.record(_result("a", Status.PASS, Severity.HIGH))
    aggregator.record(_result("b", Status.FAIL, Severity.LOW))
    assert aggregator.summary().weighted_compliance_rate == 75.0
    assert aggregator.summary().compliance_rate == 50.0


def test_no_comparable_results_gives_zero() -> None:
    aggregator = ResultAggregator()
    aggregator.record(_result("a", Status.SKIPPED))
    aggregator.record(_result("b", Status.INFO))
    assert aggregator.summary().compliance_rate == 0.0
    assert ResultAggregator().summary().total == 0
    assert compliance_rate(0, 0) == 0.0


def test_rate_is_rounded_to_two_decimals() -> None:
    assert compliance_rate(2, 1) == 66.67
    assert compliance_rate(1, 2) == 33.33


def test_category_and_severity_breakdown() -> None:
    aggregator = _sample_aggregator()
    summary = aggregator.summary()

    ssh = summary.by_category["SSH Server Configuration"]
    assert ssh.total == 3
    assert ssh.passed == 2
    assert ssh.compliance_rate == 66.67
    assert summary.by_category["Additional Process Hardening"].compliance_rate == 0.0
    assert list(summary.by_category) == [
        "SSH Server Configuration",
        "Filesystem Configuration",
        "Additional Process Hardening",
    ]

    by_severity = aggregator.by_severity()
    assert by_severity[Severity.HIGH][Status.FAIL] == 1
    assert by_severity[Severity.LOW][Status.PASS] == 1


def test_status_label_and_serialization() -> None:
    summary = _sample_aggregator().summary(complete=False)
    data = summary.to_dict()

    assert summary.status_label() == "Non-Compliant"
    assert data["complete"] is False
    assert data["counts"]["pass"] == 2
    assert data["by_severity"]["high"]["fail"] == 1
    assert data["by_category"]["Filesystem Configuration"]["total"] == 2


def test_results_keep_arrival_order() -> None:
    aggregator = _sample_aggregator()
    assert [r.rule_id for r in aggregator.results()][:3] == ["5.2.1", "5.2.2", "5.2.3"]
    assert len(aggregator) == 8
