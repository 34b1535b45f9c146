"""RHEL 8 host actions used by remediation.

Every operation either completes or raises RemediationActionFailure. In
dry-run mode the intended change is logged and the host is left untouched.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from pathlib import Path

from protocol_layer.tools.compliance.exceptions import (
    ProbeUnavailable,
    RemediationActionFailure,
)

from .probes import run_cmd

log = logging.getLogger(__name__)

DEFAULT_SYSCTL_CONF = "/etc/sysctl.d/60-cis-audit.conf"
_MATCH_BLOCK = re.compile(r"^[ \t]*match(?=[ \t=]|$)", re.IGNORECASE)


def _atomic_write(path: Path, content: str, mode: int) -> None:
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as fh:
            fh.write(content)
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def _current_mode(path: Path, default: int) -> int:
    try:
        return path.stat().st_mode & 0o7777
    except FileNotFoundError:
        return default


class HostActions:
    """Action provider that changes the live system."""

    __slots__ = ("dry_run", "sysctl_conf", "timeout")

    def __init__(
        self,
        dry_run: bool = False,
        sysctl_conf: str = DEFAULT_SYSCTL_CONF,
        timeout: int = 60,
    ) -> None:
        self.dry_run = dry_run
        self.sysctl_conf = sysctl_conf
        self.timeout = timeout

    def _run(self, cmd: list[str]) -> str:
        try:
            out, err, rc = run_cmd(cmd, timeout=self.timeout)
        except ProbeUnavailable as exc:
            raise RemediationActionFailure(str(exc)) from exc
        if rc != 0:
            raise RemediationActionFailure(
                f"{' '.join(cmd)} exited with {rc}: {err.strip() or out.strip()}"
            )
        return out

    def write_file(self, path: str, content: str, mode: int = 0o644) -> None:
        if self.dry_run:
            log.info("[dry-run] would write %s (mode %04o)", path, mode)
            return
        try:
            _atomic_write(Path(path), content, mode)
        except OSError as exc:
            raise RemediationActionFailure(f"cannot write {path}: {exc}") from exc
        log.info("wrote %s", path)

    def append_line(self, path: str, line: str) -> None:
        target = Path(path)
        try:
            text = target.read_text() if target.exists() else ""
        except OSError as exc:
            raise RemediationActionFailure(f"cannot read {path}: {exc}") from exc
        if line in (existing.strip() for existing in text.splitlines()):
            log.debug("%s already contains %r", path, line)
            return
        if self.dry_run:
            log.info("[dry-run] would append %r to %s", line, path)
            return
        if text and not text.endswith("\n"):
            text += "\n"
        try:
            _atomic_write(target, f"{text}{line}\n", _current_mode(target, 0o644))
        except OSError as exc:
            raise RemediationActionFailure(f"cannot write {path}: {exc}") from exc
        log.info("appended %r to %s", line, path)

    def set_option(self, path: str, key: str, value: str, separator: str = " ") -> None:
        """Replace the `key` line (commented out or not), or add one.

        Keys match case-insensitively. Lines from the first active sshd-style
        ``Match`` block on are conditional and left alone; a missing key is
        inserted just before that block, or appended when there is none.
        """
        target = Path(path)
        try:
            text = target.read_text() if target.exists() else ""
        except OSError as exc:
            raise RemediationActionFailure(f"cannot read {path}: {exc}") from exc

        wanted = f"{key}{separator}{value}"
        pattern = re.compile(rf"^[ \t]*#?{re.escape(key)}(?=[ \t=]|$)", re.IGNORECASE)
        lines = text.splitlines()
        block = next((i for i, line in enumerate(lines) if _MATCH_BLOCK.match(line)), len(lines))
        head: list[str] = []
        replaced = False
        for line in lines[:block]:
            if not pattern.match(line):
                head.append(line)
            elif not replaced:
                # First occurrence is rewritten in place, later ones dropped
                head.append(wanted)
                replaced = True
        if not replaced:
            head.append(wanted)
        updated = "\n".join(head + lines[block:]) + "\n"

        if updated == text:
            log.debug("%s already sets %s", path, wanted)
            return
        if self.dry_run:
            log.info("[dry-run] would set %r in %s", wanted, path)
            return
        try:
            _atomic_write(target, updated, _current_mode(target, 0o644))
        except OSError as exc:
            raise RemediationActionFailure(f"cannot write {path}: {exc}") from exc
        log.info("set %r in %s", wanted, path)

    def set_sysctl(self, key: str, value: str) -> None:
        if self.dry_run:
            log.info("[dry-run] would set sysctl %s=%s", key, value)
            return
        self._run(["sysctl", "-w", f"{key}={value}"])
        self.set_option(self.sysctl_conf, key, value, separator=" = ")

    def set_file_mode(
        self, path: str, mode: int, owner: str | None = None, group: str | None = None
    ) -> None:
        if self.dry_run:
            log.info(
                "[dry-run] would chmod %04o %s, chown %s:%s",
                mode,
                path,
                owner or "-",
                group or "-",
            )
            return
        try:
            current = os.stat(path).st_mode & 0o7777
            # Only ever remove permission bits
            os.chmod(path, current & mode)
            if owner or group:
                shutil.chown(path, user=owner, group=group)
        except (OSError, LookupError) as exc:
            raise RemediationActionFailure(f"cannot set mode on {path}: {exc}") from exc
        log.info("set %s to at most %04o", path, mode)

    def restart_unit(self, unit: str) -> None:
        if self.dry_run:
            log.info("[dry-run] would restart %s", unit)
            return
        self._run(["systemctl", "restart", unit])
        log.info("restarted %s", unit)

    def remount(self, path: str, options: list[str]) -> None:
        opts = ",".join(["remount", *options])
        if self.dry_run:
            log.info("[dry-run] would mount -o %s %s", opts, path)
            return
        self._run(["mount", "-o", opts, path])
        log.info("remounted %s with %s", path, ",".join(options))
