"""cis-audit command line: audit, remediate, history, rules."""

from __future__ import annotations

import argparse
import logging
import logging.handlers
import signal
import sqlite3
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any

from protocol_layer.tools.compliance.database import AuditHistory
from protocol_layer.tools.compliance.exceptions import AuditError, RegistryError
from protocol_layer.tools.compliance.loader import load_ruleset
from protocol_layer.tools.compliance.models import Result
from protocol_layer.tools.compliance.remediation import RemediationOutcome
from protocol_layer.tools.compliance.reports import render_text_line, result_json_line
from sensor_layer.probes import host_metadata

from .context import AuditSettings, RunContext
from .runner import load_results_file, run_audit, run_remediation

log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_BELOW_THRESHOLD = 2
EXIT_CANCELLED = 130

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "INFO", syslog: bool = False) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        stream=sys.stderr,
    )
    if syslog and Path("/dev/log").exists():
        handler = logging.handlers.SysLogHandler(
            address="/dev/log", facility=logging.handlers.SysLogHandler.LOG_LOCAL0
        )
        handler.setFormatter(logging.Formatter("cis_audit: %(levelname)s %(name)s: %(message)s"))
        logging.getLogger().addHandler(handler)


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--ruleset", type=Path, help="rule set YAML (default: bundled RHEL 8 baseline)")
    common.add_argument("--result-dir", type=Path, help="artifact directory (AUDIT_RESULT_DIR)")
    common.add_argument("--log-level", default="INFO", help="logging level (default: INFO)")

    parser = argparse.ArgumentParser(
        prog="cis-audit", description="CIS Red Hat Enterprise Linux 8 compliance auditor"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    audit = sub.add_parser("audit", parents=[common], help="evaluate the rule set and write reports")
    audit.add_argument("--json", action="store_true", help="stream JSON lines to stdout instead of text")
    audit.add_argument("--quiet", action="store_true", help="no per-rule console output")
    audit.add_argument("--jobs", type=int, help="worker threads (AUDIT_PARALLEL_JOBS)")
    audit.add_argument("--timeout", type=float, help="overall deadline in seconds")
    audit.add_argument("--skip", action="append", default=[], metavar="ID", help="rule id to exclude")
    audit.add_argument("--ship", action="store_true", help="upload the run to AUDIT_COLLECTOR_URL")
    audit.add_argument(
        "--fail-under", type=float, metavar="RATE", help="exit 2 when the compliance rate is below RATE"
    )

    remediate = sub.add_parser(
        "remediate", parents=[common], help="remediate failed rules of the most recent audit"
    )
    remediate.add_argument("--dry-run", action="store_true", help="log intended changes only")
    remediate.add_argument("--results", type=Path, help="JSON-lines artifact instead of history")
    remediate.add_argument("--rule", action="append", dest="rule_ids", metavar="ID", help="limit to rule id")

    history = sub.add_parser("history", parents=[common], help="compliance trend and recent runs")
    history.add_argument("--days", type=int, default=30)
    history.add_argument("--limit", type=int, default=10)

    rules = sub.add_parser("rules", parents=[common], help="list the loaded rule set")
    rules.add_argument("--category", help="only rules in this category")
    return parser


def _settings(args: argparse.Namespace) -> AuditSettings:
    settings = AuditSettings.from_env()
    overrides: dict[str, Any] = {}
    if args.ruleset:
        overrides["ruleset"] = args.ruleset
    if args.result_dir:
        overrides["result_dir"] = args.result_dir
    if getattr(args, "jobs", None):
        overrides["parallel_jobs"] = max(1, args.jobs)
    if getattr(args, "timeout", None):
        overrides["timeout_seconds"] = args.timeout
    if getattr(args, "skip", None):
        overrides["skip_rules"] = settings.skip_rules | frozenset(args.skip)
    return replace(settings, **overrides)


def _print(line: str) -> None:
    print(line, flush=True)


# Commands


def cmd_audit(args: argparse.Namespace, settings: AuditSettings) -> int:
    ctx = RunContext.create(settings)

    def on_result(result: Result) -> None:
        _print(result_json_line(result) if args.json else render_text_line(result))

    def on_signal(signum: int, _frame: Any) -> None:
        log.warning("received %s, stopping after the current rule", signal.Signals(signum).name)
        ctx.cancel.set()

    previous = {sig: signal.signal(sig, on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        with ctx:
            run = run_audit(ctx, on_result=None if args.quiet else on_result, ship=args.ship)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    summary = run.summary
    if not args.json and not args.quiet:
        _print("")
        _print(f"{'Compliance Rate':<20}: {summary.compliance_rate:.2f}% ({summary.status_label()})")
        for ext, path in run.artifacts.items():
            _print(f"{ext.upper() + ' report':<20}: {path}")

    if run.interrupted:
        return EXIT_CANCELLED
    if args.fail_under is not None and summary.compliance_rate < args.fail_under:
        log.warning(
            "compliance rate %.2f%% is below --fail-under %.2f%%",
            summary.compliance_rate,
            args.fail_under,
        )
        return EXIT_BELOW_THRESHOLD
    return EXIT_OK


def _outcome_line(outcome: RemediationOutcome) -> str:
    tag = "DRY-RUN" if outcome.dry_run and outcome.success else "OK" if outcome.success else "FAILED"
    return f"[{tag}] {outcome.rule_id} {outcome.description} - {outcome.message}"


def cmd_remediate(args: argparse.Namespace, settings: AuditSettings) -> int:
    results = load_results_file(args.results) if args.results else None
    with RunContext.create(settings) as ctx:
        report = run_remediation(
            ctx,
            results=results,
            rule_ids=args.rule_ids,
            dry_run=args.dry_run,
            on_outcome=lambda o: _print(_outcome_line(o)),
        )
    if not report.actions:
        _print("Nothing to remediate")
    else:
        _print(
            f"Remediation from {report.source}: {report.succeeded} succeeded, "
            f"{report.failed} failed"
        )
        if not args.dry_run:
            _print("Run 'cis-audit audit' again to verify the changes")
    return EXIT_OK


def cmd_history(args: argparse.Namespace, settings: AuditSettings) -> int:
    hostname = settings.hostname or host_metadata().hostname
    history = AuditHistory(settings.history_path)
    try:
        trend = history.get_compliance_trend(hostname, days=args.days)
        runs = history.get_run_history(hostname, limit=args.limit)
    finally:
        history.close()

    _print(f"Host {hostname}, last {args.days} days: {trend['direction']}")
    for point in trend["data_points"]:
        _print(f"  {point['date']}  {point['rate']:6.2f}%")
    if runs:
        _print("")
        _print("Recent runs:")
    for r in runs:
        flag = "" if r["complete"] else " (incomplete)"
        _print(
            f"  {r['finished_at']}  {r['compliance_rate']:6.2f}%  "
            f"pass={r['passed']} fail={r['failed']} total={r['total']}{flag}"
        )
    return EXIT_OK


def cmd_rules(args: argparse.Namespace, settings: AuditSettings) -> int:
    ruleset = load_ruleset(settings.ruleset)
    registry = ruleset.registry
    rules = registry.by_category(args.category) if args.category else registry.all()
    _print(f"{ruleset.benchmark} v{ruleset.version}: {len(rules)} rules")
    for rule in rules:
        deps = f" (after {', '.join(rule.depends_on)})" if rule.depends_on else ""
        auto = " [remediable]" if rule.id in ruleset.remediations else ""
        _print(f"{rule.id:<10} {rule.severity.label:<6} {rule.description}{deps}{auto}")
    return EXIT_OK


COMMANDS = {
    "audit": cmd_audit,
    "remediate": cmd_remediate,
    "history": cmd_history,
    "rules": cmd_rules,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = _settings(args)
    configure_logging(args.log_level, settings.syslog)
    try:
        return COMMANDS[args.command](args, settings)
    except RegistryError as exc:
        log.error("invalid rule set: %s", exc)
        return EXIT_FATAL
    except AuditError as exc:
        log.error("%s", exc)
        return EXIT_FATAL
    except (OSError, sqlite3.Error) as exc:
        log.error("environment error: %s", exc)
        return EXIT_FATAL
    except KeyboardInterrupt:
        log.warning("interrupted")
        return EXIT_CANCELLED


if __name__ == "__main__":
    sys.exit(main())
