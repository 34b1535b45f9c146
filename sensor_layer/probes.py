"""RHEL 8 host probes.

Read-only access to the system state the baseline rules inspect:
- Kernel modules (/proc/modules, /etc/modprobe.d)
- Mounts (/proc/self/mounts)
- Kernel parameters (/proc/sys, sysctl)
- systemd units and rpm packages
- File metadata and configuration file contents
"""

from __future__ import annotations

import grp
import logging
import os
import platform
import pwd
import re
import socket
import stat
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from protocol_layer.tools.compliance.exceptions import ProbeUnavailable
from protocol_layer.tools.compliance.models import HostMetadata

log = logging.getLogger(__name__)

_MOUNT_ESCAPE = re.compile(r"\\([0-7]{3})")


@dataclass(frozen=True, slots=True)
class FileStat:
    """Mode and ownership of a filesystem object."""

    path: str
    mode: int  # permission bits only
    uid: int
    gid: int
    owner: str
    group: str
    is_dir: bool = False

    @property
    def octal(self) -> str:
        return f"{self.mode:04o}"


def run_cmd(cmd: list[str], timeout: int = 30) -> tuple[str, str, int]:
    """Execute command and return stdout, stderr, returncode.

    Raises ProbeUnavailable when the command is missing or times out.
    """
    try:
        proc = subprocess.run(
            cmd, capture_output=True, text=True, timeout=timeout, check=False
        )
        return proc.stdout, proc.stderr, proc.returncode
    except subprocess.TimeoutExpired as exc:
        raise ProbeUnavailable(
            f"command timed out after {timeout}s: {' '.join(cmd)}"
        ) from exc
    except FileNotFoundError as exc:
        raise ProbeUnavailable(f"command not found: {cmd[0]}") from exc


def parse_config(text: str, separator: str | None = None) -> dict[str, str]:
    """Parse `key value` (or `key<separator>value`) lines. Later keys win."""
    config: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if separator is None:
            parts = line.split(None, 1)
        else:
            parts = line.split(separator, 1)
        if len(parts) == 2:
            config[parts[0].strip()] = parts[1].strip()
    return config


def parse_sshd_config(text: str) -> dict[str, str]:
    """Parse sshd_config into lowercase keywords.

    sshd uses the first value obtained for a keyword, and everything after the
    first Match block is conditional, so parsing stops there.
    """
    config: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.replace("=", " ", 1).split(None, 1)
        keyword = parts[0].lower()
        if keyword == "match":
            break
        if len(parts) == 2:
            config.setdefault(keyword, parts[1].strip())
    return config


def _unescape_mount(field: str) -> str:
    return _MOUNT_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), field)


def _read_os_release() -> str:
    for path in ("/etc/redhat-release", "/etc/system-release"):
        try:
            return Path(path).read_text().strip()
        except OSError:
            continue
    try:
        values = parse_config(Path("/etc/os-release").read_text(), separator="=")
        return values.get("PRETTY_NAME", "").strip('"')
    except OSError:
        return platform.platform()


def host_metadata(hostname: str | None = None) -> HostMetadata:
    """Describe the local host."""
    return HostMetadata(
        hostname=hostname or socket.gethostname().split(".")[0],
        fqdn=socket.getfqdn(),
        os_release=_read_os_release(),
        kernel=platform.release(),
        architecture=platform.machine(),
        audited_at=datetime.now(timezone.utc).isoformat(),
    )


class HostProbes:
    """Fact provider backed by the live system."""

    __slots__ = ("timeout", "modprobe_dir")

    def __init__(self, timeout: int = 60, modprobe_dir: str = "/etc/modprobe.d") -> None:
        self.timeout = timeout
        self.modprobe_dir = modprobe_dir

    def loaded_modules(self) -> frozenset[str]:
        text = Path("/proc/modules").read_text()
        return frozenset(line.split(None, 1)[0] for line in text.splitlines() if line)

    def modprobe_config(self) -> str:
        conf_dir = Path(self.modprobe_dir)
        if not conf_dir.is_dir():
            return ""
        return "\n".join(p.read_text() for p in sorted(conf_dir.glob("*.conf")))

    def mounts(self) -> dict[str, frozenset[str]]:
        table: dict[str, frozenset[str]] = {}
        for line in Path("/proc/self/mounts").read_text().splitlines():
            fields = line.split()
            if len(fields) < 4:
                continue
            # Later entries shadow earlier mounts on the same point
            table[_unescape_mount(fields[1])] = frozenset(fields[3].split(","))
        return table

    def sysctl(self, key: str) -> str:
        proc_path = Path("/proc/sys") / key.replace(".", "/")
        try:
            return " ".join(proc_path.read_text().split())
        except OSError:
            log.debug("falling back to sysctl(8) for %s", key)
        out, err, rc = run_cmd(["sysctl", "-n", key], timeout=self.timeout)
        if rc != 0:
            raise ProbeUnavailable(f"sysctl {key}: {err.strip() or f'exit {rc}'}")
        return " ".join(out.split())

    def unit_enabled(self, unit: str) -> str:
        out, _err, rc = run_cmd(["systemctl", "is-enabled", unit], timeout=self.timeout)
        state = out.strip()
        if state:
            return state.splitlines()[0]
        return "not-found" if rc != 0 else "unknown"

    def unit_active(self, unit: str) -> str:
        out, _err, _rc = run_cmd(["systemctl", "is-active", unit], timeout=self.timeout)
        return out.strip().splitlines()[0] if out.strip() else "unknown"

    def package_installed(self, name: str) -> bool:
        _out, _err, rc = run_cmd(["rpm", "-q", name], timeout=self.timeout)
        return rc == 0

    def file_stat(self, path: str) -> FileStat | None:
        try:
            st = os.stat(path)
        except (FileNotFoundError, NotADirectoryError):
            return None
        try:
            owner = pwd.getpwuid(st.st_uid).pw_name
        except KeyError:
            owner = str(st.st_uid)
        try:
            group = grp.getgrgid(st.st_gid).gr_name
        except KeyError:
            group = str(st.st_gid)
        return FileStat(
            path=path,
            mode=stat.S_IMODE(st.st_mode),
            uid=st.st_uid,
            gid=st.st_gid,
            owner=owner,
            group=group,
            is_dir=stat.S_ISDIR(st.st_mode),
        )

    def read_file(self, path: str) -> str | None:
        try:
            return Path(path).read_text(errors="replace")
        except (FileNotFoundError, NotADirectoryError):
            return None

    def command(self, argv: tuple[str, ...]) -> str:
        out, err, rc = run_cmd(list(argv), timeout=self.timeout)
        if rc != 0 and not out.strip():
            raise ProbeUnavailable(
                f"{argv[0]} exited with {rc}: {err.strip() or 'no output'}"
            )
        return out
