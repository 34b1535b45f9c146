from __future__ import annotations

import csv
import io
import json

from conftest import sample_host

from protocol_layer.tools.compliance.aggregator import ResultAggregator, Summary
from protocol_layer.tools.compliance.models import Result, Severity, Status
from protocol_layer.tools.compliance.reports import (
    CSV_COLUMNS,
    REPORTERS,
    parse_json_lines,
    render_csv,
    render_html,
    render_json_lines,
    render_text,
    render_text_line,
    result_json_line,
    severity_sorted,
)


def _sample_results() -> list[Result]:
    return [
        Result(
            rule_id="1.1.1.1",
            status=Status.PASS,
            message="cramfs is not loaded, disabled and blacklisted",
            description="Ensure mounting of cramfs filesystems is disabled",
            category="Filesystem Configuration",
            severity=Severity.LOW,
            timestamp="2026-10-18T08:00:01+00:00",
            duration_ms=1.25,
        ),
        Result(
            rule_id="5.2.2",
            status=Status.FAIL,
            message="PermitRootLogin yes, expected no",
            description="Ensure SSH root login is disabled",
            category="SSH Server Configuration",
            severity=Severity.HIGH,
            timestamp="2026-10-18T08:00:02+00:00",
        ),
        Result(
            rule_id="1.7.1",
            status=Status.WARNING,
            message="/etc/motd: <script>alert(1)</script>",
            description="Ensure message of the day is configured properly",
            category="Command Line Warning Banners",
            severity=Severity.MEDIUM,
            timestamp="2026-10-18T08:00:03+00:00",
        ),
    ]


def _summary(results: list[Result], complete: bool = True) -> Summary:
    aggregator = ResultAggregator()
    for r in results:
        aggregator.record(r)
    return aggregator.summary(complete=complete)


def test_text_line_format() -> None:
    results = _sample_results()
    assert render_text_line(results[1]) == (
        "[2026-10-18T08:00:02+00:00] [FAIL] [HIGH] 5.2.2 Ensure SSH root login is disabled"
        " - PermitRootLogin yes, expected no"
    )


def test_text_report_sections_and_summary() -> None:
    results = _sample_results()
    text = render_text(results, _summary(results), sample_host())

    assert "rhel8-test (rhel8-test.example.com)" in text
    assert "\nSSH Server Configuration\n" in text
    assert "AUDIT SUMMARY REPORT" in text
    assert "Compliance Rate     : 50.00%" in text
    assert "INCOMPLETE" not in text

    partial = render_text(results[:1], _summary(results[:1], complete=False), sample_host())
    assert "INCOMPLETE" in partial


def test_json_lines_records() -> None:
    results = _sample_results()
    body = render_json_lines(results, _summary(results), sample_host())
    lines = body.splitlines()

    assert len(lines) == 3
    assert json.loads(lines[1]) == {
        "ruleId": "5.2.2",
        "status": "fail",
        "message": "PermitRootLogin yes, expected no",
        "timestamp": "2026-10-18T08:00:02+00:00",
    }
    assert result_json_line(results[0]) == lines[0]

    parsed = parse_json_lines(body + "\n\n")
    assert [(r.rule_id, r.status) for r in parsed] == [(r.rule_id, r.status) for r in results]


def test_csv_matrix() -> None:
    results = _sample_results()
    rows = list(csv.reader(io.StringIO(render_csv(results, _summary(results), sample_host()))))

    assert tuple(rows[0]) == CSV_COLUMNS
    assert rows[0] == ["id", "description", "status", "category", "severity"]
    assert rows[2] == [
        "5.2.2",
        "Ensure SSH root login is disabled",
        "FAIL",
        "SSH Server Configuration",
        "HIGH",
    ]
    assert len(rows) == 4


def test_html_escapes_result_text() -> None:
    results = _sample_results()
    html = render_html(results, _summary(results), sample_host())

    assert "<script>alert(1)</script>" not in html
    assert "&lt;script&gt;alert(1)&lt;/script&gt;" in html
    assert "Incomplete run" not in html
    assert 'class="badge status-fail"' in html
    assert "Partially Compliant" not in html
    assert "Non-Compliant" in html


def test_html_marks_incomplete_runs() -> None:
    results = _sample_results()[:1]
    html = render_html(results, _summary(results, complete=False), sample_host())
    assert "Incomplete run" in html


def test_reporters_cover_all_artifacts() -> None:
    assert list(REPORTERS) == ["txt", "json", "html", "csv"]
    results = _sample_results()
    summary = _summary(results)
    for renderer in REPORTERS.values():
        assert renderer(results, summary, sample_host())


def test_severity_sorted() -> None:
    ordered = severity_sorted(_sample_results())
    assert [r.rule_id for r in ordered] == ["5.2.2", "1.7.1", "1.1.1.1"]
