from __future__ import annotations

import os
import stat
from pathlib import Path

import pytest

from protocol_layer.tools.compliance.exceptions import RemediationActionFailure
from sensor_layer.actions import HostActions
from sensor_layer.probes import parse_sshd_config


def _sample_sshd_config(tmp_path: Path) -> Path:
    path = tmp_path / "sshd_config"
    path.write_text(
        "# Ciphers and keying\n"
        "#PermitRootLogin prohibit-password\n"
        "MaxAuthTries 6\n"
        "PermitRootLogin yes\n"
        "Banner none\n"
    )
    path.chmod(0o600)
    return path


def test_set_option_replaces_first_and_drops_duplicates(tmp_path: Path) -> None:
    path = _sample_sshd_config(tmp_path)
    HostActions().set_option(str(path), "PermitRootLogin", "no")

    assert path.read_text() == (
        "# Ciphers and keying\n"
        "PermitRootLogin no\n"
        "MaxAuthTries 6\n"
        "Banner none\n"
    )
    assert stat.S_IMODE(path.stat().st_mode) == 0o600


def test_set_option_appends_missing_key(tmp_path: Path) -> None:
    path = _sample_sshd_config(tmp_path)
    HostActions().set_option(str(path), "ClientAliveInterval", "15")
    assert path.read_text().endswith("Banner none\nClientAliveInterval 15\n")

    conf = tmp_path / "sysctl.conf"
    HostActions().set_option(str(conf), "net.ipv4.ip_forward", "0", separator=" = ")
    assert conf.read_text() == "net.ipv4.ip_forward = 0\n"


def test_set_option_inserts_before_match_block(tmp_path: Path) -> None:
    path = tmp_path / "sshd_config"
    path.write_text("Port 22\nMatch User backup\n    X11Forwarding no\n    MaxAuthTries 10\n")
    HostActions().set_option(str(path), "MaxAuthTries", "4")

    assert path.read_text() == (
        "Port 22\nMaxAuthTries 4\nMatch User backup\n    X11Forwarding no\n    MaxAuthTries 10\n"
    )
    assert parse_sshd_config(path.read_text())["maxauthtries"] == "4"


def test_set_option_matches_keys_case_insensitively(tmp_path: Path) -> None:
    path = tmp_path / "sshd_config"
    path.write_text("permitrootlogin yes\nPort 22\n")
    HostActions().set_option(str(path), "PermitRootLogin", "no")

    assert path.read_text() == "PermitRootLogin no\nPort 22\n"
    assert parse_sshd_config(path.read_text())["permitrootlogin"] == "no"


def test_set_option_is_idempotent(tmp_path: Path) -> None:
    path = tmp_path / "login.defs"
    path.write_text("PASS_MAX_DAYS 365\n")
    before = path.stat().st_mtime_ns
    HostActions().set_option(str(path), "PASS_MAX_DAYS", "365")
    assert path.read_text() == "PASS_MAX_DAYS 365\n"
    assert path.stat().st_mtime_ns == before


def test_append_line(tmp_path: Path) -> None:
    path = tmp_path / "fstab"
    path.write_text("UUID=abc / xfs defaults 0 0")
    actions = HostActions()

    actions.append_line(str(path), "tmpfs /tmp tmpfs defaults,nodev,nosuid,noexec 0 0")
    actions.append_line(str(path), "tmpfs /tmp tmpfs defaults,nodev,nosuid,noexec 0 0")

    assert path.read_text().splitlines() == [
        "UUID=abc / xfs defaults 0 0",
        "tmpfs /tmp tmpfs defaults,nodev,nosuid,noexec 0 0",
    ]


def test_write_file(tmp_path: Path) -> None:
    path = tmp_path / "cramfs.conf"
    HostActions().write_file(str(path), "install cramfs /bin/false\n", 0o600)

    assert path.read_text() == "install cramfs /bin/false\n"
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert [p.name for p in tmp_path.iterdir()] == ["cramfs.conf"]


def test_write_file_failure(tmp_path: Path) -> None:
    with pytest.raises(RemediationActionFailure, match="cannot write"):
        HostActions().write_file(str(tmp_path / "missing" / "x.conf"), "x")


def test_set_file_mode_only_removes_bits(tmp_path: Path) -> None:
    path = tmp_path / "crontab"
    path.write_text("")
    path.chmod(0o640)

    HostActions().set_file_mode(str(path), 0o600)
    assert stat.S_IMODE(path.stat().st_mode) == 0o600

    HostActions().set_file_mode(str(path), 0o644)
    assert stat.S_IMODE(path.stat().st_mode) == 0o600

    with pytest.raises(RemediationActionFailure):
        HostActions().set_file_mode(str(tmp_path / "missing"), 0o600)


def test_dry_run_leaves_host_untouched(tmp_path: Path) -> None:
    path = _sample_sshd_config(tmp_path)
    original = path.read_text()
    actions = HostActions(dry_run=True)

    actions.set_option(str(path), "PermitRootLogin", "no")
    actions.append_line(str(path), "AllowGroups sshusers")
    actions.write_file(str(tmp_path / "new.conf"), "x")
    actions.set_file_mode(str(path), 0o400)
    actions.set_sysctl("net.ipv4.ip_forward", "0")
    actions.restart_unit("sshd")
    actions.remount("/tmp", ["nodev"])

    assert path.read_text() == original
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert not (tmp_path / "new.conf").exists()


def test_failed_command_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "sensor_layer.actions.run_cmd", lambda cmd, timeout=30: ("", "Unit sshd.service not found.", 5)
    )
    with pytest.raises(RemediationActionFailure, match="exited with 5"):
        HostActions().restart_unit("sshd")


def test_set_sysctl_persists(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    commands: list[list[str]] = []

    def fake_run(cmd: list[str], timeout: int = 30) -> tuple[str, str, int]:
        commands.append(cmd)
        return "", "", 0

    monkeypatch.setattr("sensor_layer.actions.run_cmd", fake_run)
    conf = tmp_path / "60-cis-audit.conf"
    HostActions(sysctl_conf=str(conf)).set_sysctl("net.ipv4.ip_forward", "0")

    assert commands == [["sysctl", "-w", "net.ipv4.ip_forward=0"]]
    assert conf.read_text() == "net.ipv4.ip_forward = 0\n"
    assert os.access(conf, os.R_OK)
