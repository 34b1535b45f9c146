from __future__ import annotations

import hashlib
import stat
from pathlib import Path

import pytest
from conftest import FakeActions, FakeProbes, sample_host

from orchestration_layer.context import AuditSettings, RunContext
from orchestration_layer.runner import (
    load_results_file,
    run_audit,
    run_remediation,
    write_artifact,
)
from protocol_layer.tools.compliance.exceptions import (
    AuditEnvironmentError,
    OutputWriteFailure,
)
from protocol_layer.tools.compliance.loader import RuleSet, build_ruleset
from protocol_layer.tools.compliance.models import Result, Status


def _sample_ruleset() -> RuleSet:
    return build_ruleset(
        {
            "benchmark": "CIS Red Hat Enterprise Linux 8 Benchmark",
            "sections": [
                {
                    "category": "Filesystem Configuration",
                    "rules": [
                        {
                            "id": "1.1.2.1",
                            "description": "Ensure /tmp is a separate partition",
                            "check": {"kind": "mount_present", "path": "/tmp"},
                        },
                        {
                            "id": "1.1.2.2",
                            "description": "Ensure nodev option set on /tmp partition",
                            "depends_on": ["1.1.2.1"],
                            "check": {"kind": "mount_option", "path": "/tmp", "option": "nodev"},
                            "remediation": "auto",
                        },
                    ],
                },
                {
                    "category": "SSH Server Configuration",
                    "severity": "high",
                    "rules": [
                        {
                            "id": "5.2.2",
                            "description": "Ensure SSH root login is disabled",
                            "check": {"kind": "sshd_option", "option": "PermitRootLogin", "value": "no"},
                            "remediation": "auto",
                        },
                        {
                            "id": "5.2.3",
                            "description": "Ensure SSH MaxAuthTries is set to 4 or less",
                            "check": {"kind": "sshd_option", "option": "MaxAuthTries", "value": 4, "compare": "le"},
                            "remediation": "auto",
                        },
                    ],
                },
            ],
        }
    )


def _sample_probes() -> FakeProbes:
    return FakeProbes(
        mounts={"/tmp": {"rw", "nosuid"}},
        files={"/etc/ssh/sshd_config": "PermitRootLogin yes\nMaxAuthTries 4\n"},
    )


def _context(settings: AuditSettings) -> RunContext:
    return RunContext.create(
        settings,
        provider=_sample_probes(),
        ruleset=_sample_ruleset(),
        host=sample_host(),
    )


def test_audit_writes_all_artifacts(settings: AuditSettings) -> None:
    streamed: list[Result] = []
    with _context(settings) as ctx:
        run = run_audit(ctx, on_result=streamed.append)

    assert not run.interrupted
    assert [r.rule_id for r in streamed] == ["1.1.2.1", "1.1.2.2", "5.2.2", "5.2.3"]
    assert run.summary.compliance_rate == 50.0
    assert set(run.artifacts) == {"txt", "json", "html", "csv"}
    assert run.failures == {}

    result_dir = settings.result_dir
    assert stat.S_IMODE(result_dir.stat().st_mode) == 0o750
    for ext, path in run.artifacts.items():
        assert path == result_dir / f"{run.base_name}.{ext}"
        assert stat.S_IMODE(path.stat().st_mode) == 0o640
        sidecar = path.with_name(f"{path.name}.sha256")
        digest = hashlib.sha256(path.read_bytes()).hexdigest()
        assert sidecar.read_text() == f"{digest}  {path.name}\n"

    assert not (result_dir / f"{run.base_name}.json.part").exists()
    assert run.base_name.startswith("rhel8-test_")
    assert len(load_results_file(run.artifacts["json"])) == 4
    assert "PermitRootLogin yes, expected no" in run.artifacts["txt"].read_text()


def test_audit_is_recorded_in_history(settings: AuditSettings) -> None:
    with _context(settings) as ctx:
        run = run_audit(ctx)
        latest = ctx.history.get_latest_run("rhel8-test")

    assert latest is not None
    assert latest["run_id"] == run.run_id
    assert latest["failed"] == 2
    assert latest["artifacts"]["csv"].endswith(".csv")
    assert settings.history_path.exists()


def test_interrupted_audit_keeps_partial_results(settings: AuditSettings) -> None:
    ctx = _context(settings)

    def stop_after_first(result: Result) -> None:
        ctx.cancel.set()

    with ctx:
        run = run_audit(ctx, on_result=stop_after_first)
        latest = ctx.history.get_latest_run("rhel8-test")

    assert run.interrupted
    assert [r.rule_id for r in run.results] == ["1.1.2.1"]
    assert set(run.artifacts) == {"txt.incomplete", "json.incomplete"}
    text = run.artifacts["txt.incomplete"].read_text()
    assert "INCOMPLETE" in text
    assert len(load_results_file(run.artifacts["json.incomplete"])) == 1
    assert not (settings.result_dir / f"{run.base_name}.html").exists()
    assert latest["complete"] is False


def test_unusable_result_dir(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("")
    settings = AuditSettings(result_dir=blocker / "results", db_path=tmp_path / "h.db", min_free_mb=0)
    with _context(settings) as ctx:
        with pytest.raises(AuditEnvironmentError):
            run_audit(ctx)


def test_ship_without_collector_is_skipped(settings: AuditSettings) -> None:
    with _context(settings) as ctx:
        run = run_audit(ctx, ship=True)
    assert run.ship_result is None
    assert run.to_dict()["shipped"] is None


def test_write_artifact_failure(tmp_path: Path) -> None:
    with pytest.raises(OutputWriteFailure):
        write_artifact(tmp_path / "missing" / "report.txt", "x")


def test_remediation_from_latest_history_run(settings: AuditSettings) -> None:
    with _context(settings) as ctx:
        audit = run_audit(ctx)

    actions = FakeActions()
    with _context(settings) as ctx:
        report = run_remediation(ctx, provider=actions)
        remediations = ctx.history.get_remediation_history("rhel8-test")

    assert report.source.startswith(f"run {audit.run_id}")
    assert [a.target_rule_id for a in report.actions] == ["1.1.2.2", "5.2.2"]
    assert report.succeeded == 2
    assert report.failed == 0
    assert actions.calls == [
        ("remount", "/tmp", ["nodev"]),
        ("set_option", "/etc/ssh/sshd_config", "PermitRootLogin", "no", " "),
        ("restart_unit", "sshd"),
    ]
    assert {r["rule_id"] for r in remediations} == {"1.1.2.2", "5.2.2"}


def test_remediation_filters_rules_and_reads_results_file(settings: AuditSettings) -> None:
    with _context(settings) as ctx:
        audit = run_audit(ctx)

    results = load_results_file(audit.artifacts["json"])
    assert {r.rule_id: r.status for r in results}["5.2.2"] is Status.FAIL

    actions = FakeActions(dry_run=True)
    with _context(settings) as ctx:
        report = run_remediation(ctx, results=results, rule_ids=["5.2.2"], provider=actions)

    assert report.source == "results"
    assert [o.rule_id for o in report.outcomes] == ["5.2.2"]
    assert report.outcomes[0].dry_run is True


def test_remediation_without_history(settings: AuditSettings) -> None:
    with _context(settings) as ctx:
        with pytest.raises(AuditEnvironmentError, match="run an audit first"):
            run_remediation(ctx, provider=FakeActions())


def test_load_results_file_errors(tmp_path: Path) -> None:
    with pytest.raises(AuditEnvironmentError, match="cannot read"):
        load_results_file(tmp_path / "missing.json")
    bad = tmp_path / "bad.json"
    bad.write_text("not json\n")
    with pytest.raises(AuditEnvironmentError, match="not a JSON-lines"):
        load_results_file(bad)
