from __future__ import annotations

from collections import Counter
from pathlib import Path
from typing import Any

import pytest

from orchestration_layer.context import AuditSettings
from protocol_layer.tools.compliance.exceptions import (
    ProbeUnavailable,
    RemediationActionFailure,
)
from protocol_layer.tools.compliance.models import HostMetadata
from sensor_layer.probes import FileStat


class FakeProbes:
    """Fact provider answering from plain dicts, counting every call."""

    def __init__(
        self,
        *,
        modules: set[str] | None = None,
        modprobe: str = "",
        mounts: dict[str, set[str]] | None = None,
        sysctl: dict[str, str] | None = None,
        enabled: dict[str, str] | None = None,
        active: dict[str, str] | None = None,
        packages: set[str] | None = None,
        stats: dict[str, FileStat] | None = None,
        files: dict[str, str] | None = None,
        commands: dict[tuple[str, ...], str] | None = None,
    ) -> None:
        self.modules = frozenset(modules or ())
        self.modprobe = modprobe
        self.mount_table = {k: frozenset(v) for k, v in (mounts or {}).items()}
        self.sysctl_values = sysctl or {}
        self.enabled = enabled or {}
        self.active = active or {}
        self.packages = packages or set()
        self.stats = stats or {}
        self.files = files or {}
        self.commands = commands or {}
        self.calls: Counter[str] = Counter()

    def loaded_modules(self) -> frozenset[str]:
        self.calls["modules"] += 1
        return self.modules

    def modprobe_config(self) -> str:
        self.calls["modprobe"] += 1
        return self.modprobe

    def mounts(self) -> dict[str, frozenset[str]]:
        self.calls["mounts"] += 1
        return self.mount_table

    def sysctl(self, key: str) -> str:
        self.calls[f"sysctl:{key}"] += 1
        if key not in self.sysctl_values:
            raise ProbeUnavailable(f"sysctl {key}: unknown key")
        return self.sysctl_values[key]

    def unit_enabled(self, unit: str) -> str:
        self.calls[f"enabled:{unit}"] += 1
        return self.enabled.get(unit, "not-found")

    def unit_active(self, unit: str) -> str:
        self.calls[f"active:{unit}"] += 1
        return self.active.get(unit, "inactive")

    def package_installed(self, name: str) -> bool:
        self.calls[f"rpm:{name}"] += 1
        return name in self.packages

    def file_stat(self, path: str) -> FileStat | None:
        self.calls[f"stat:{path}"] += 1
        return self.stats.get(path)

    def read_file(self, path: str) -> str | None:
        self.calls[f"file:{path}"] += 1
        return self.files.get(path)

    def command(self, argv: tuple[str, ...]) -> str:
        self.calls[f"cmd:{' '.join(argv)}"] += 1
        if argv not in self.commands:
            raise ProbeUnavailable(f"command not found: {argv[0]}")
        return self.commands[argv]


class FakeActions:
    """Action provider that records calls instead of touching the host."""

    def __init__(self, dry_run: bool = False, fail_on: set[str] | None = None) -> None:
        self.dry_run = dry_run
        self.fail_on = fail_on or set()
        self.calls: list[tuple[Any, ...]] = []

    def _record(self, *call: Any) -> None:
        if call[1] in self.fail_on:
            raise RemediationActionFailure(f"{call[0]} {call[1]} refused")
        self.calls.append(call)

    def write_file(self, path: str, content: str, mode: int = 0o644) -> None:
        self._record("write_file", path, content, mode)

    def append_line(self, path: str, line: str) -> None:
        self._record("append_line", path, line)

    def set_option(self, path: str, key: str, value: str, separator: str = " ") -> None:
        self._record("set_option", path, key, value, separator)

    def set_sysctl(self, key: str, value: str) -> None:
        self._record("set_sysctl", key, value)

    def set_file_mode(
        self, path: str, mode: int, owner: str | None = None, group: str | None = None
    ) -> None:
        self._record("set_file_mode", path, mode, owner, group)

    def restart_unit(self, unit: str) -> None:
        self._record("restart_unit", unit)

    def remount(self, path: str, options: list[str]) -> None:
        self._record("remount", path, options)


def sample_host(hostname: str = "rhel8-test") -> HostMetadata:
    return HostMetadata(
        hostname=hostname,
        fqdn=f"{hostname}.example.com",
        os_release="Red Hat Enterprise Linux release 8.9 (Ootpa)",
        kernel="4.18.0-513.el8.x86_64",
        architecture="x86_64",
        audited_at="2026-10-18T08:00:00+00:00",
    )


def sample_stat(path: str, mode: int, owner: str = "root", group: str = "root") -> FileStat:
    return FileStat(path=path, mode=mode, uid=0, gid=0, owner=owner, group=group)


@pytest.fixture
def settings(tmp_path: Path) -> AuditSettings:
    return AuditSettings(
        result_dir=tmp_path / "results",
        hostname="rhel8-test",
        min_free_mb=0,
    )
