"""Audit and remediation runs.

run_audit streams Results from the evaluator into the aggregator, a JSON-lines
part file and an optional per-result callback, then renders every report,
writes the artifacts atomically with checksum sidecars, records the run in the
history database and rotates old artifacts.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import shutil
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Callable, Iterable

from protocol_layer.tools.compliance.aggregator import Summary
from protocol_layer.tools.compliance.exceptions import (
    AuditEnvironmentError,
    OutputWriteFailure,
)
from protocol_layer.tools.compliance.models import Result
from protocol_layer.tools.compliance.remediation import (
    ActionProvider,
    RemediationAction,
    RemediationOutcome,
    RemediationPlanner,
)
from protocol_layer.tools.compliance.reports import (
    REPORTERS,
    parse_json_lines,
    render_text,
    result_json_line,
)
from sensor_layer.actions import HostActions
from sensor_layer.shipper import ResultShipper, ShipResult

from .context import RESULT_DIR_MODE, RunContext
from .rotation import rotate_results

log = logging.getLogger(__name__)

ARTIFACT_MODE = 0o640


@dataclass(slots=True)
class AuditRun:
    """Outcome of one audit invocation."""

    run_id: str
    base_name: str
    results: tuple[Result, ...]
    summary: Summary
    artifacts: dict[str, Path] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)
    interrupted: bool = False
    ship_result: ShipResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "base_name": self.base_name,
            "interrupted": self.interrupted,
            "summary": self.summary.to_dict(),
            "artifacts": {k: str(v) for k, v in self.artifacts.items()},
            "failures": dict(self.failures),
            "shipped": None if self.ship_result is None else self.ship_result.success,
        }


@dataclass(slots=True)
class RemediationReport:
    source: str
    actions: list[RemediationAction]
    outcomes: list[RemediationOutcome]

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed(self) -> int:
        return len(self.outcomes) - self.succeeded


# Filesystem helpers


def prepare_result_dir(path: Path) -> None:
    """Create the result directory (0750) and make sure it is writable."""
    try:
        if not path.is_dir():
            path.mkdir(mode=RESULT_DIR_MODE, parents=True, exist_ok=True)
            path.chmod(RESULT_DIR_MODE)
    except OSError as exc:
        raise AuditEnvironmentError(f"cannot create result directory {path}: {exc}") from exc
    if not os.access(path, os.W_OK | os.X_OK):
        raise AuditEnvironmentError(f"result directory {path} is not writable")


def check_disk_space(path: Path, min_free_mb: int) -> int:
    """Free space in MB at path, warning when below the threshold."""
    free_mb = shutil.disk_usage(path).free // (1024 * 1024)
    if free_mb < min_free_mb:
        log.warning(
            "only %d MB free in %s (minimum %d MB), artifacts may not fit",
            free_mb,
            path,
            min_free_mb,
        )
    return free_mb


def _open_private(path: Path, mode: int = ARTIFACT_MODE) -> IO[str]:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    return os.fdopen(fd, "w", encoding="utf-8")


def write_artifact(path: Path, content: str) -> Path:
    """Write content atomically, then its `.sha256` sidecar. Returns path."""
    tmp = path.with_name(f".{path.name}.tmp")
    try:
        with _open_private(tmp) as fh:
            fh.write(content)
        os.replace(tmp, path)
        os.chmod(path, ARTIFACT_MODE)
        digest = hashlib.sha256(content.encode("utf-8")).hexdigest()
        sidecar = path.with_name(f"{path.name}.sha256")
        with _open_private(sidecar) as fh:
            fh.write(f"{digest}  {path.name}\n")
    except OSError as exc:
        tmp.unlink(missing_ok=True)
        raise OutputWriteFailure(str(path), exc) from exc
    return path


def _write_plain(path: Path, content: str) -> Path:
    try:
        with _open_private(path) as fh:
            fh.write(content)
    except OSError as exc:
        raise OutputWriteFailure(str(path), exc) from exc
    return path


# Audit


def _ship(ctx: RunContext, run: AuditRun) -> ShipResult:
    payload = {
        "run_id": run.run_id,
        "benchmark": ctx.ruleset.benchmark,
        "host": ctx.host.to_dict(),
        "summary": run.summary.to_dict(),
        "results": [r.to_dict() for r in run.results],
    }

    async def _send() -> ShipResult:
        async with ResultShipper(
            ctx.settings.collector_url,
            hostname=ctx.host.hostname,
            api_key=ctx.settings.collector_api_key,
        ) as shipper:
            return await shipper.ship(payload)

    return asyncio.run(_send())


def run_audit(
    ctx: RunContext,
    *,
    on_result: Callable[[Result], None] | None = None,
    ship: bool = False,
) -> AuditRun:
    """Evaluate the rule set and persist every report artifact.

    Raises AuditEnvironmentError when the result directory is unusable or
    no artifact at all could be written.
    """
    settings = ctx.settings
    result_dir = settings.result_dir
    prepare_result_dir(result_dir)
    check_disk_space(result_dir, settings.min_free_mb)
    if hasattr(os, "geteuid") and os.geteuid() != 0:
        log.warning("not running as root, some facts will be unavailable")

    base = ctx.base_name
    part_path = result_dir / f"{base}.json.part"
    try:
        stream: IO[str] | None = _open_private(part_path)
    except OSError as exc:
        log.error("cannot open %s, results are not streamed to disk: %s", part_path, exc)
        stream = None

    evaluator = ctx.evaluator()
    log.info(
        "auditing %s against %s (%d rules)",
        ctx.host.hostname,
        ctx.ruleset.benchmark,
        len(ctx.ruleset.registry),
    )
    try:
        for result in evaluator.iter_results(ctx.ruleset.registry, ctx.collector):
            ctx.aggregator.record(result)
            if stream is not None:
                stream.write(result_json_line(result) + "\n")
                stream.flush()
            if on_result is not None:
                on_result(result)
    finally:
        if stream is not None:
            stream.close()

    interrupted = evaluator.interrupted
    results = ctx.aggregator.results()
    summary = ctx.aggregator.summary(complete=not interrupted)
    run = AuditRun(
        run_id=ctx.run_id,
        base_name=base,
        results=results,
        summary=summary,
        interrupted=interrupted,
    )

    if interrupted:
        _flush_incomplete(ctx, run, part_path)
    else:
        for ext, renderer in REPORTERS.items():
            path = result_dir / f"{base}.{ext}"
            try:
                run.artifacts[ext] = write_artifact(path, renderer(results, summary, ctx.host))
            except OutputWriteFailure as exc:
                log.error("%s", exc)
                run.failures[ext] = str(exc)
        part_path.unlink(missing_ok=True)
        if not run.artifacts:
            raise AuditEnvironmentError(f"no report could be written to {result_dir}")

    _record(ctx, run)
    try:
        rotate_results(
            result_dir,
            keep=settings.keep_logs,
            compress_after_days=settings.compress_after_days,
            purge_after_days=settings.purge_after_days,
        )
    except OSError as exc:
        log.warning("rotation failed: %s", exc)

    if ship and not interrupted:
        if settings.collector_url:
            run.ship_result = _ship(ctx, run)
        else:
            log.warning("shipping requested but AUDIT_COLLECTOR_URL is not set")

    log.info(
        "audit %s: %d results, %.2f%% compliant%s",
        base,
        summary.total,
        summary.compliance_rate,
        " (interrupted)" if interrupted else "",
    )
    return run


def _flush_incomplete(ctx: RunContext, run: AuditRun, part_path: Path) -> None:
    result_dir = ctx.settings.result_dir
    text_path = result_dir / f"{run.base_name}.txt.incomplete"
    json_path = result_dir / f"{run.base_name}.json.incomplete"
    try:
        run.artifacts["txt.incomplete"] = _write_plain(
            text_path, render_text(run.results, run.summary, ctx.host)
        )
    except OutputWriteFailure as exc:
        log.error("%s", exc)
        run.failures["txt.incomplete"] = str(exc)
    try:
        if part_path.exists():
            os.replace(part_path, json_path)
            run.artifacts["json.incomplete"] = json_path
        else:
            run.artifacts["json.incomplete"] = _write_plain(
                json_path, "".join(result_json_line(r) + "\n" for r in run.results)
            )
    except (OSError, OutputWriteFailure) as exc:
        log.error("cannot archive partial results to %s: %s", json_path, exc)
        run.failures["json.incomplete"] = str(exc)
    log.warning(
        "audit interrupted after %d rules, partial results in %s",
        len(run.results),
        result_dir,
    )


def _record(ctx: RunContext, run: AuditRun) -> None:
    try:
        ctx.history.store_run(
            run.run_id,
            ctx.host,
            run.summary,
            run.results,
            benchmark=ctx.ruleset.benchmark,
            started_at=ctx.started_at.isoformat(),
            finished_at=datetime.now(timezone.utc).isoformat(),
            artifacts={k: str(v) for k, v in run.artifacts.items()},
        )
    except (sqlite3.Error, OSError) as exc:
        log.warning("could not record run in history: %s", exc)


# Remediation


def load_results_file(path: Path) -> list[Result]:
    """Results from a JSON-lines artifact (plain, .incomplete or .part)."""
    try:
        return parse_json_lines(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise AuditEnvironmentError(f"cannot read results {path}: {exc}") from exc
    except (ValueError, KeyError) as exc:
        raise AuditEnvironmentError(f"{path} is not a JSON-lines result file: {exc}") from exc


def run_remediation(
    ctx: RunContext,
    *,
    results: Iterable[Result] | None = None,
    rule_ids: Iterable[str] | None = None,
    dry_run: bool = False,
    provider: ActionProvider | None = None,
    on_outcome: Callable[[RemediationOutcome], None] | None = None,
) -> RemediationReport:
    """Plan and apply remediation for the most recent audit. Never re-audits."""
    source = "results"
    source_run_id: str | None = None
    if results is None:
        latest = ctx.history.get_latest_run(ctx.host.hostname)
        if latest is None:
            raise AuditEnvironmentError(
                f"no audit recorded for {ctx.host.hostname}, run an audit first"
            )
        source_run_id = latest["run_id"]
        source = f"run {source_run_id} ({latest['finished_at']})"
        results = ctx.history.get_results(source_run_id)

    if provider is None:
        if not dry_run and hasattr(os, "geteuid") and os.geteuid() != 0:
            raise AuditEnvironmentError("remediation requires root, use --dry-run to preview")
        provider = HostActions(dry_run=dry_run, timeout=ctx.settings.probe_timeout)

    planner = RemediationPlanner(ctx.ruleset.remediations, provider)
    actions = planner.plan(results)
    if rule_ids:
        wanted = set(rule_ids)
        actions = [a for a in actions if a.target_rule_id in wanted]
    log.info("remediating %d failed rules from %s", len(actions), source)

    outcomes = planner.apply_all(actions, on_outcome=on_outcome)
    try:
        ctx.history.store_remediations(ctx.host.hostname, outcomes, source_run_id)
    except (sqlite3.Error, OSError) as exc:
        log.warning("could not record remediation outcomes: %s", exc)
    return RemediationReport(source=source, actions=actions, outcomes=outcomes)
