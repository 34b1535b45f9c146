"""Remediation planning and execution.

Failed rules with a registered remediation are mapped to actions. Each action
is a short list of declarative steps executed through an action provider; a
failing action is recorded and the remaining actions still run. Remediation
never re-runs the audit.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated, Any, Callable, Iterable, Literal, Mapping, Protocol, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator

from .exceptions import RemediationActionFailure
from .models import Result, Status

log = logging.getLogger(__name__)


class ActionProvider(Protocol):
    """Side-effecting host operations used by remediation steps."""

    dry_run: bool

    def write_file(self, path: str, content: str, mode: int = 0o644) -> None: ...

    def append_line(self, path: str, line: str) -> None: ...

    def set_option(self, path: str, key: str, value: str, separator: str = " ") -> None: ...

    def set_sysctl(self, key: str, value: str) -> None: ...

    def set_file_mode(
        self, path: str, mode: int, owner: str | None = None, group: str | None = None
    ) -> None: ...

    def restart_unit(self, unit: str) -> None: ...

    def remount(self, path: str, options: list[str]) -> None: ...


def _octal(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(str(value), 8)


# YAML 1.1 reads 0644 as an octal int already, quoted modes arrive as strings
OctalMode = Annotated[int, BeforeValidator(_octal)]


# Steps


class _Step(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class WriteFileStep(_Step):
    action: Literal["write_file"] = "write_file"
    path: str
    content: str
    mode: OctalMode = 0o644

    def run(self, provider: ActionProvider) -> None:
        provider.write_file(self.path, self.content, self.mode)

    def describe(self) -> str:
        return f"write {self.path} (mode {self.mode:04o})"


class AppendLineStep(_Step):
    action: Literal["append_line"] = "append_line"
    path: str
    line: str

    def run(self, provider: ActionProvider) -> None:
        provider.append_line(self.path, self.line)

    def describe(self) -> str:
        return f"ensure {self.path} contains {self.line!r}"


class SetOptionStep(_Step):
    action: Literal["set_option"] = "set_option"
    path: str
    key: str
    value: str
    separator: str = " "

    def run(self, provider: ActionProvider) -> None:
        provider.set_option(self.path, self.key, self.value, self.separator)

    def describe(self) -> str:
        return f"set {self.key}{self.separator}{self.value} in {self.path}"


class SetSysctlStep(_Step):
    action: Literal["set_sysctl"] = "set_sysctl"
    key: str
    value: str

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> str:
        return str(v)

    def run(self, provider: ActionProvider) -> None:
        provider.set_sysctl(self.key, self.value)

    def describe(self) -> str:
        return f"sysctl {self.key}={self.value}"


class SetFileModeStep(_Step):
    action: Literal["set_file_mode"] = "set_file_mode"
    path: str
    mode: OctalMode
    owner: str | None = None
    group: str | None = None

    def run(self, provider: ActionProvider) -> None:
        provider.set_file_mode(self.path, self.mode, self.owner, self.group)

    def describe(self) -> str:
        text = f"chmod {self.mode:04o} {self.path}"
        if self.owner or self.group:
            text += f", chown {self.owner or ''}:{self.group or ''}"
        return text


class RestartUnitStep(_Step):
    action: Literal["restart_unit"] = "restart_unit"
    unit: str

    def run(self, provider: ActionProvider) -> None:
        provider.restart_unit(self.unit)

    def describe(self) -> str:
        return f"restart {self.unit}"


class RemountStep(_Step):
    action: Literal["remount"] = "remount"
    path: str
    options: list[str]

    def run(self, provider: ActionProvider) -> None:
        provider.remount(self.path, self.options)

    def describe(self) -> str:
        return f"remount {self.path} with {','.join(self.options)}"


Step = Annotated[
    Union[
        WriteFileStep,
        AppendLineStep,
        SetOptionStep,
        SetSysctlStep,
        SetFileModeStep,
        RestartUnitStep,
        RemountStep,
    ],
    Field(discriminator="action"),
]


class RemediationSpec(BaseModel):
    """Declared remediation for one rule."""

    model_config = ConfigDict(extra="forbid")

    description: str
    steps: list[Step] = Field(..., min_length=1)


# Actions and outcomes


@dataclass(frozen=True, slots=True)
class RemediationAction:
    target_rule_id: str
    description: str
    steps: tuple[Any, ...] = ()

    def apply(self, provider: ActionProvider) -> None:
        for step in self.steps:
            step.run(provider)

    def describe(self) -> list[str]:
        return [step.describe() for step in self.steps]


@dataclass(frozen=True, slots=True)
class RemediationOutcome:
    """Result-like record of one applied action, independent of the audit record."""

    rule_id: str
    description: str
    success: bool
    message: str
    timestamp: str
    duration_ms: float = 0.0
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "description": self.description,
            "success": self.success,
            "message": self.message,
            "timestamp": self.timestamp,
            "duration_ms": self.duration_ms,
            "dry_run": self.dry_run,
        }


def plan_actions(
    catalog: Mapping[str, RemediationAction], results: Iterable[Result]
) -> list[RemediationAction]:
    """One action per distinct rule whose latest result is Fail and has a mapping."""
    latest: dict[str, Result] = {}
    for result in results:
        latest[result.rule_id] = result
    return [
        catalog[rule_id]
        for rule_id, result in latest.items()
        if result.status is Status.FAIL and rule_id in catalog
    ]


class RemediationPlanner:
    """Maps failed results to remediation actions and applies them."""

    __slots__ = ("catalog", "provider")

    def __init__(
        self, catalog: Mapping[str, RemediationAction], provider: ActionProvider
    ) -> None:
        self.catalog = catalog
        self.provider = provider

    def plan(self, results: Iterable[Result]) -> list[RemediationAction]:
        return plan_actions(self.catalog, results)

    def apply(self, action: RemediationAction) -> RemediationOutcome:
        started = time.perf_counter()
        try:
            action.apply(self.provider)
            success, message = True, "; ".join(action.describe())
        except RemediationActionFailure as exc:
            log.warning("remediation for %s failed: %s", action.target_rule_id, exc)
            success, message = False, str(exc)
        except Exception as exc:
            log.exception("remediation for %s raised", action.target_rule_id)
            success, message = False, f"{type(exc).__name__}: {exc}"

        return RemediationOutcome(
            rule_id=action.target_rule_id,
            description=action.description,
            success=success,
            message=message,
            timestamp=datetime.now(timezone.utc).isoformat(),
            duration_ms=round((time.perf_counter() - started) * 1000, 3),
            dry_run=bool(getattr(self.provider, "dry_run", False)),
        )

    def apply_all(
        self,
        actions: Iterable[RemediationAction],
        on_outcome: Callable[[RemediationOutcome], None] | None = None,
    ) -> list[RemediationOutcome]:
        outcomes: list[RemediationOutcome] = []
        for action in actions:
            outcome = self.apply(action)
            outcomes.append(outcome)
            if on_outcome is not None:
                on_outcome(outcome)
        return outcomes
