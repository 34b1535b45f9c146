"""Per-run fact collection.

The FactCollector sits between rule predicates and the host. Every fact is
fetched at most once per run through the injected provider and memoized,
failures included, so all rules observe one consistent value per key.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Callable, Protocol

from protocol_layer.tools.compliance.exceptions import ProbeUnavailable

from .probes import FileStat, parse_config, parse_sshd_config

log = logging.getLogger(__name__)


class FactStatus(str, Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True, slots=True)
class Fact:
    """One observed piece of host state."""

    key: str
    status: FactStatus
    data: Any = None
    error: str | None = None

    @property
    def available(self) -> bool:
        return self.status is FactStatus.AVAILABLE

    @property
    def value(self) -> Any:
        """The observed value. Raises ProbeUnavailable if collection failed."""
        if self.status is FactStatus.UNAVAILABLE:
            raise ProbeUnavailable(f"{self.key}: {self.error}")
        return self.data


class FactProvider(Protocol):
    """OS probe surface consumed by the collector."""

    def loaded_modules(self) -> frozenset[str]: ...

    def modprobe_config(self) -> str: ...

    def mounts(self) -> dict[str, frozenset[str]]: ...

    def sysctl(self, key: str) -> str: ...

    def unit_enabled(self, unit: str) -> str: ...

    def unit_active(self, unit: str) -> str: ...

    def package_installed(self, name: str) -> bool: ...

    def file_stat(self, path: str) -> FileStat | None: ...

    def read_file(self, path: str) -> str | None: ...

    def command(self, argv: tuple[str, ...]) -> str: ...


class FactCollector:
    """Memoizing, thread-safe fact cache with single-flight suppliers."""

    __slots__ = ("provider", "_cache", "_inflight", "_lock", "supplier_calls")

    def __init__(self, provider: FactProvider) -> None:
        self.provider = provider
        self._cache: dict[str, Fact] = {}
        self._inflight: dict[str, threading.Event] = {}
        self._lock = threading.Lock()
        self.supplier_calls = 0

    def get(self, key: str, supplier: Callable[[], Any]) -> Fact:
        """Return the fact for key, invoking supplier only on first use."""
        while True:
            with self._lock:
                cached = self._cache.get(key)
                if cached is not None:
                    return cached
                waiter = self._inflight.get(key)
                if waiter is None:
                    done = threading.Event()
                    self._inflight[key] = done
                    self.supplier_calls += 1
                    break
            waiter.wait()

        fact: Fact | None = None
        try:
            try:
                fact = Fact(key, FactStatus.AVAILABLE, supplier())
            except Exception as exc:
                log.debug("fact %s unavailable: %s", key, exc)
                fact = Fact(
                    key, FactStatus.UNAVAILABLE, error=str(exc) or type(exc).__name__
                )
        finally:
            with self._lock:
                if fact is not None:
                    self._cache[key] = fact
                del self._inflight[key]
            done.set()
        return fact

    def snapshot(self) -> dict[str, Any]:
        """Plain mapping of collected facts, for diagnostics."""
        with self._lock:
            facts = list(self._cache.values())
        return {
            f.key: f.data if f.available else {"unavailable": f.error} for f in facts
        }

    def __len__(self) -> int:
        return len(self._cache)

    # Typed accessors

    def loaded_modules(self) -> Fact:
        return self.get("modules", self.provider.loaded_modules)

    def module_loaded(self, name: str) -> Fact:
        normalized = name.replace("-", "_")
        return self.get(
            f"module:{normalized}",
            lambda: normalized in self.loaded_modules().value,
        )

    def modprobe_config(self) -> Fact:
        return self.get("modprobe.d", self.provider.modprobe_config)

    def mount_options(self, path: str) -> Fact:
        """Options of the filesystem mounted at path, None when not mounted."""
        return self.get(
            f"mount:{path}",
            lambda: self.get("mounts", self.provider.mounts).value.get(path),
        )

    def sysctl(self, key: str) -> Fact:
        return self.get(f"sysctl:{key}", partial(self.provider.sysctl, key))

    def unit_enabled(self, unit: str) -> Fact:
        return self.get(
            f"systemd:enabled:{unit}", partial(self.provider.unit_enabled, unit)
        )

    def unit_active(self, unit: str) -> Fact:
        return self.get(
            f"systemd:active:{unit}", partial(self.provider.unit_active, unit)
        )

    def package_installed(self, name: str) -> Fact:
        return self.get(f"rpm:{name}", partial(self.provider.package_installed, name))

    def file_stat(self, path: str) -> Fact:
        return self.get(f"stat:{path}", partial(self.provider.file_stat, path))

    def file_text(self, path: str) -> Fact:
        return self.get(f"file:{path}", partial(self.provider.read_file, path))

    def config_values(self, path: str, separator: str | None = None) -> Fact:
        """Parsed key/value pairs of a config file, None when the file is missing."""

        def _parse() -> dict[str, str] | None:
            text = self.file_text(path).value
            return None if text is None else parse_config(text, separator=separator)

        return self.get(f"config:{path}:{separator or 'ws'}", _parse)

    def sshd_config(self, path: str = "/etc/ssh/sshd_config") -> Fact:
        def _parse() -> dict[str, str] | None:
            text = self.file_text(path).value
            return None if text is None else parse_sshd_config(text)

        return self.get(f"sshd:{path}", _parse)

    def command(self, argv: tuple[str, ...]) -> Fact:
        return self.get(f"cmd:{' '.join(argv)}", partial(self.provider.command, argv))
