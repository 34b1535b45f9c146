"""Result directory rotation.

The newest `keep` runs stay untouched. Artifacts of older runs are gzip
compressed once they are older than `compress_after_days`; compressed archives
older than `purge_after_days` are deleted together with their checksum sidecar.
"""

from __future__ import annotations

import gzip
import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path

log = logging.getLogger(__name__)

ARTIFACT_SUFFIXES = (".txt", ".json", ".html", ".csv", ".incomplete")
_DAY = 86400


@dataclass(slots=True)
class RotationReport:
    compressed: list[Path] = field(default_factory=list)
    purged: list[Path] = field(default_factory=list)


def _run_stem(path: Path) -> str:
    name = path.name
    if name.endswith(".incomplete"):
        name = name[: -len(".incomplete")]
    return name.rsplit(".", 1)[0]


def _gzip(path: Path) -> Path:
    target = path.with_name(f"{path.name}.gz")
    with path.open("rb") as src, gzip.open(target, "wb", compresslevel=9) as dst:
        shutil.copyfileobj(src, dst)
    shutil.copystat(path, target)
    path.unlink()
    return target


def rotate_results(
    result_dir: Path,
    *,
    keep: int = 5,
    compress_after_days: int = 7,
    purge_after_days: int = 30,
    now: float | None = None,
) -> RotationReport:
    """Compress and purge old run artifacts. Failures are logged per file."""
    now = time.time() if now is None else now
    report = RotationReport()
    if not result_dir.is_dir():
        return report

    runs: dict[str, list[Path]] = {}
    for path in result_dir.iterdir():
        if path.is_file() and path.name.endswith(ARTIFACT_SUFFIXES):
            runs.setdefault(_run_stem(path), []).append(path)

    newest_first = sorted(
        runs.items(),
        key=lambda item: max(p.stat().st_mtime for p in item[1]),
        reverse=True,
    )
    for _stem, paths in newest_first[max(keep, 0) :]:
        for path in paths:
            if now - path.stat().st_mtime < compress_after_days * _DAY:
                continue
            try:
                report.compressed.append(_gzip(path))
            except OSError as exc:
                log.warning("cannot compress %s: %s", path, exc)

    for archive in result_dir.glob("*.gz"):
        try:
            if now - archive.stat().st_mtime < purge_after_days * _DAY:
                continue
            archive.unlink()
            sidecar = archive.with_name(archive.name[: -len(".gz")] + ".sha256")
            sidecar.unlink(missing_ok=True)
            report.purged.append(archive)
        except OSError as exc:
            log.warning("cannot purge %s: %s", archive, exc)

    if report.compressed or report.purged:
        log.info(
            "rotation: compressed %d, purged %d files in %s",
            len(report.compressed),
            len(report.purged),
            result_dir,
        )
    return report
