"""Report renderers.

Each renderer is a pure function of the result sequence, its summary and the
host metadata, returning the artifact text:
- text: one line per result, category sections, summary block
- json: newline-delimited result records
- html: self-contained dashboard (Jinja2, autoescaped)
- csv: compliance matrix, one row per rule
"""

from __future__ import annotations

import csv
import io
import json
import re
from typing import Any, Callable, Iterable

from jinja2 import Environment

from .aggregator import Summary
from .models import SEVERITY_ORDER, HostMetadata, Result, Status

RULE_SEPARATOR = "=" * 80

# Status to dashboard colour class
STATUS_CSS: dict[Status, str] = {
    Status.PASS: "status-pass",
    Status.FAIL: "status-fail",
    Status.INFO: "status-info",
    Status.WARNING: "status-warning",
    Status.SKIPPED: "status-muted",
    Status.ERROR: "status-muted",
}

CSV_COLUMNS = ("id", "description", "status", "category", "severity")


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-") or "section"


def _sections(results: Iterable[Result]) -> dict[str, list[Result]]:
    sections: dict[str, list[Result]] = {}
    for r in results:
        sections.setdefault(r.category, []).append(r)
    return sections


# Text


def render_text_line(result: Result) -> str:
    line = (
        f"[{result.timestamp}] [{result.status.label}] [{result.severity.label}] "
        f"{result.rule_id} {result.description}"
    )
    return f"{line} - {result.message}" if result.message else line


def render_text(
    results: Iterable[Result], summary: Summary, host: HostMetadata
) -> str:
    lines = [
        "CIS Red Hat Enterprise Linux 8 Benchmark Audit",
        RULE_SEPARATOR,
        f"{'Host':<20}: {host.hostname} ({host.fqdn or host.hostname})",
        f"{'OS':<20}: {host.os_release}",
        f"{'Kernel':<20}: {host.kernel} {host.architecture}".rstrip(),
        f"{'Audited at':<20}: {host.audited_at}",
    ]

    current: str | None = None
    for r in results:
        if r.category != current:
            current = r.category
            lines.extend(["", current, RULE_SEPARATOR])
        lines.append(render_text_line(r))

    counts = summary.counts
    lines.extend(
        [
            "",
            "AUDIT SUMMARY REPORT",
            RULE_SEPARATOR,
            f"{'Total Tests':<20}: {summary.total}",
            f"{'Passed':<20}: {counts[Status.PASS]}",
            f"{'Failed':<20}: {counts[Status.FAIL]}",
            f"{'Info':<20}: {counts[Status.INFO]}",
            f"{'Warnings':<20}: {counts[Status.WARNING]}",
            f"{'Skipped':<20}: {counts[Status.SKIPPED]}",
            f"{'Errors':<20}: {counts[Status.ERROR]}",
            f"{'Compliance Rate':<20}: {summary.compliance_rate:.2f}%",
            f"{'Weighted Rate':<20}: {summary.weighted_compliance_rate:.2f}%",
        ]
    )
    if not summary.complete:
        lines.extend(["", "INCOMPLETE: audit was interrupted before all rules ran"])
    return "\n".join(lines) + "\n"


# JSON lines


def result_json_line(result: Result) -> str:
    return json.dumps(
        {
            "ruleId": result.rule_id,
            "status": result.status.value,
            "message": result.message,
            "timestamp": result.timestamp,
        },
        ensure_ascii=False,
    )


def render_json_lines(
    results: Iterable[Result], summary: Summary, host: HostMetadata
) -> str:
    return "".join(f"{result_json_line(r)}\n" for r in results)


def parse_json_lines(text: str) -> list[Result]:
    """Read results back from a JSON-lines artifact."""
    results: list[Result] = []
    for line in text.splitlines():
        if not line.strip():
            continue
        record: dict[str, Any] = json.loads(line)
        results.append(
            Result.from_dict(
                {
                    "rule_id": record["ruleId"],
                    "status": record["status"],
                    "message": record.get("message", ""),
                    "timestamp": record.get("timestamp"),
                }
            )
        )
    return results


# CSV


def render_csv(results: Iterable[Result], summary: Summary, host: HostMetadata) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for r in results:
        writer.writerow(
            (r.rule_id, r.description, r.status.label, r.category, r.severity.label)
        )
    return buf.getvalue()


# HTML

_HTML_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>CIS RHEL 8 Compliance Report - {{ host.hostname }}</title>
    <style>
        :root {
            --bg:#161616;
            --panel:#262626;
            --text:#f2f4f8;
            --muted:#c1c7cd;
            --border:#393939;
            --green:#42be65;
            --red:#fa4d56;
            --amber:#f1c21b;
            --blue:#33b1ff;
            --grey:#8d8d8d;
        }
        *{box-sizing:border-box;margin:0;padding:0;}
        body{font-family:ui-sans-serif,-apple-system,"Segoe UI",sans-serif;background:var(--bg);color:var(--text);line-height:1.45;padding:20px;}
        .container{max-width:1180px;margin:0 auto;}
        header{margin-bottom:18px;}
        h1{font-size:1.75rem;font-weight:700;margin-bottom:4px;}
        .subtitle{color:var(--muted);font-size:0.9rem;}
        .banner{background:rgba(241,194,27,0.12);border:1px solid var(--amber);color:var(--amber);border-radius:6px;padding:10px;margin-bottom:14px;}
        .grid{display:grid;grid-template-columns:repeat(auto-fit,minmax(160px,1fr));gap:10px;margin-bottom:14px;}
        .card{background:var(--panel);border:1px solid var(--border);border-radius:6px;padding:12px;}
        .card-title{font-size:0.72rem;letter-spacing:0.3px;color:var(--muted);margin-bottom:6px;text-transform:uppercase;}
        .card-value{font-size:1.8rem;font-weight:700;}
        .status-pass{color:var(--green);}
        .status-fail{color:var(--red);}
        .status-info{color:var(--blue);}
        .status-warning{color:var(--amber);}
        .status-muted{color:var(--grey);}
        nav{display:flex;flex-wrap:wrap;gap:6px;margin-bottom:14px;}
        nav a{color:var(--blue);text-decoration:none;font-size:0.85rem;background:var(--panel);border:1px solid var(--border);border-radius:4px;padding:3px 8px;}
        .section{background:var(--panel);border:1px solid var(--border);border-radius:6px;padding:12px;margin-top:10px;}
        .section-title{font-size:1rem;font-weight:700;margin-bottom:8px;}
        table{width:100%;border-collapse:collapse;font-size:0.9rem;}
        th,td{padding:8px 6px;border-bottom:1px solid var(--border);text-align:left;vertical-align:top;}
        th{color:var(--muted);font-size:0.78rem;text-transform:uppercase;font-weight:600;}
        .badge{display:inline-block;padding:3px 7px;border-radius:4px;font-size:0.72rem;font-weight:650;border:1px solid currentColor;}
        .mono{font-family:ui-monospace,monospace;font-size:0.85rem;}
    </style>
</head>
<body>
    <div class="container">
        <header>
            <h1>CIS RHEL 8 Compliance Report</h1>
            <p class="subtitle">Host: {{ host.hostname }}{% if host.fqdn %} ({{ host.fqdn }}){% endif %} | {{ host.os_release }} | Kernel {{ host.kernel }} | Audited: {{ host.audited_at }}</p>
        </header>
        {% if not summary.complete %}
        <div class="banner">Incomplete run: the audit was interrupted before every rule was evaluated.</div>
        {% endif %}
        <div class="grid">
            <div class="card"><div class="card-title">Compliance Rate</div><div class="card-value {{ rate_css }}">{{ "%.2f"|format(summary.compliance_rate) }}%</div></div>
            <div class="card"><div class="card-title">Weighted Rate</div><div class="card-value {{ weighted_css }}">{{ "%.2f"|format(summary.weighted_compliance_rate) }}%</div></div>
            <div class="card"><div class="card-title">Status</div><div class="card-value {{ rate_css }}">{{ summary.status_label() }}</div></div>
            <div class="card"><div class="card-title">Total Rules</div><div class="card-value status-info">{{ summary.total }}</div></div>
        </div>
        <div class="grid">
            {% for status, count in status_counts %}
            <div class="card"><div class="card-title">{{ status.label }}</div><div class="card-value {{ css[status] }}">{{ count }}</div></div>
            {% endfor %}
        </div>
        <div class="section">
            <h2 class="section-title">Categories</h2>
            <table>
                <thead><tr><th>Category</th><th>Total</th><th>Pass</th><th>Fail</th><th>Other</th><th>Rate</th></tr></thead>
                <tbody>
                {% for name, cat in summary.by_category.items() %}
                <tr>
                    <td><a href="#{{ anchors[name] }}" class="status-info">{{ name }}</a></td>
                    <td>{{ cat.total }}</td>
                    <td class="status-pass">{{ cat.passed }}</td>
                    <td class="status-fail">{{ cat.failed }}</td>
                    <td class="status-muted">{{ cat.total - cat.passed - cat.failed }}</td>
                    <td>{{ "%.2f"|format(cat.compliance_rate) }}%</td>
                </tr>
                {% else %}
                <tr><td colspan="6">No results recorded</td></tr>
                {% endfor %}
                </tbody>
            </table>
        </div>
        <nav>
            {% for name in sections %}<a href="#{{ anchors[name] }}">{{ name }}</a>{% endfor %}
        </nav>
        {% for name, items in sections.items() %}
        <div class="section" id="{{ anchors[name] }}">
            <h2 class="section-title">{{ name }}</h2>
            <table>
                <thead><tr><th>Rule</th><th>Description</th><th>Severity</th><th>Status</th><th>Details</th><th>ms</th></tr></thead>
                <tbody>
                {% for r in items %}
                <tr>
                    <td class="mono">{{ r.rule_id }}</td>
                    <td>{{ r.description }}</td>
                    <td>{{ r.severity.label }}</td>
                    <td><span class="badge {{ css[r.status] }}">{{ r.status.label }}</span></td>
                    <td>{{ r.message }}</td>
                    <td class="mono">{{ "%.1f"|format(r.duration_ms) }}</td>
                </tr>
                {% endfor %}
                </tbody>
            </table>
        </div>
        {% endfor %}
    </div>
</body>
</html>
"""

_env = Environment(autoescape=True, trim_blocks=True, lstrip_blocks=True)
_html_template = _env.from_string(_HTML_TEMPLATE)


def _rate_css(rate: float) -> str:
    if rate >= 80:
        return STATUS_CSS[Status.PASS]
    if rate >= 60:
        return STATUS_CSS[Status.WARNING]
    return STATUS_CSS[Status.FAIL]


def render_html(
    results: Iterable[Result], summary: Summary, host: HostMetadata
) -> str:
    sections = _sections(results)
    names = list(dict.fromkeys([*summary.by_category, *sections]))
    return _html_template.render(
        host=host,
        summary=summary,
        sections=sections,
        anchors={name: f"cat-{i}-{_slug(name)}" for i, name in enumerate(names)},
        css=STATUS_CSS,
        status_counts=[(s, summary.counts[s]) for s in Status],
        rate_css=_rate_css(summary.compliance_rate),
        weighted_css=_rate_css(summary.weighted_compliance_rate),
    )


Renderer = Callable[[Iterable[Result], Summary, HostMetadata], str]

# Artifact extension to renderer, in write order
REPORTERS: dict[str, Renderer] = {
    "txt": render_text,
    "json": render_json_lines,
    "html": render_html,
    "csv": render_csv,
}


def severity_sorted(results: Iterable[Result]) -> list[Result]:
    """Results ordered most severe first, registry order within a severity."""
    return sorted(results, key=lambda r: SEVERITY_ORDER[r.severity])
