"""Declarative check kinds used by the data-driven rule set.

Each check observes facts through the FactCollector and reports whether the
host satisfies it. Checks raise ProbeUnavailable when a fact they need could not
be collected; the rule wrapper built by `build_predicate` turns that into the
status the rule declares for unavailable facts.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .exceptions import ProbeUnavailable
from .models import Status, Verdict
from .remediation import (
    AppendLineStep,
    OctalMode,
    RemountStep,
    RestartUnitStep,
    SetFileModeStep,
    SetOptionStep,
    SetSysctlStep,
    WriteFileStep,
)
from .registry import Predicate

if TYPE_CHECKING:
    from sensor_layer.facts import FactCollector

Compare = Literal["eq", "le", "ge", "subset"]


@dataclass(frozen=True, slots=True)
class Observation:
    ok: bool
    detail: str


def _module_pattern(module: str) -> str:
    # modprobe treats '-' and '_' in module names as the same character
    return "[-_]".join(re.escape(part) for part in re.split(r"[-_]", module))


def _list_items(value: str) -> list[str]:
    return [item.strip().lower() for item in value.split(",") if item.strip()]


def compare_values(actual: str, expected: str, how: Compare) -> bool:
    if how == "eq":
        return actual.strip().lower() == expected.strip().lower()
    if how in ("le", "ge"):
        try:
            got, want = int(actual.split()[0]), int(expected)
        except (ValueError, IndexError):
            return False
        return got <= want if how == "le" else got >= want
    items = _list_items(actual)
    return bool(items) and set(items) <= set(_list_items(expected))


_COMPARE_TEXT = {"eq": "", "le": "at most ", "ge": "at least ", "subset": "within "}


class _Check(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    def observe(self, facts: FactCollector) -> Observation:
        raise NotImplementedError

    def auto_steps(self) -> list[Any] | None:
        """Remediation steps derived from the check, None when not derivable."""
        return None


class ModuleDisabledCheck(_Check):
    kind: Literal["module_disabled"]
    module: str

    def observe(self, facts: FactCollector) -> Observation:
        name = _module_pattern(self.module)
        config = facts.modprobe_config().value
        problems = []
        if facts.module_loaded(self.module).value:
            problems.append("module is loaded")
        if not re.search(rf"^\s*install\s+{name}\s+/bin/(false|true)\b", config, re.M):
            problems.append(f"no 'install {self.module} /bin/false' directive")
        if not re.search(rf"^\s*blacklist\s+{name}\s*$", config, re.M):
            problems.append("not blacklisted")
        if problems:
            return Observation(False, f"{self.module}: {', '.join(problems)}")
        return Observation(True, f"{self.module} is not loaded, disabled and blacklisted")

    def auto_steps(self) -> list[Any] | None:
        return [
            WriteFileStep(
                path=f"/etc/modprobe.d/{self.module}.conf",
                content=f"install {self.module} /bin/false\nblacklist {self.module}\n",
            )
        ]


class MountPresentCheck(_Check):
    kind: Literal["mount_present"]
    path: str

    def observe(self, facts: FactCollector) -> Observation:
        options = facts.mount_options(self.path).value
        if options is None:
            return Observation(False, f"{self.path} is not a separate mount")
        return Observation(True, f"{self.path} is a separate mount")


class MountOptionCheck(_Check):
    kind: Literal["mount_option"]
    path: str
    option: str

    def observe(self, facts: FactCollector) -> Observation:
        options = facts.mount_options(self.path).value
        if options is None:
            return Observation(False, f"{self.path} is not mounted")
        if self.option in options:
            return Observation(True, f"{self.path} mounted with {self.option}")
        return Observation(
            False, f"{self.path} mounted without {self.option} ({','.join(sorted(options))})"
        )

    def auto_steps(self) -> list[Any] | None:
        return [RemountStep(path=self.path, options=[self.option])]


class SysctlCheck(_Check):
    kind: Literal["sysctl"]
    key: str
    expected: str

    @field_validator("expected", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> str:
        return str(v)

    def observe(self, facts: FactCollector) -> Observation:
        actual = facts.sysctl(self.key).value
        if " ".join(actual.split()) == self.expected:
            return Observation(True, f"{self.key} = {actual}")
        return Observation(False, f"{self.key} = {actual}, expected {self.expected}")

    def auto_steps(self) -> list[Any] | None:
        return [SetSysctlStep(key=self.key, value=self.expected)]


class PackageInstalledCheck(_Check):
    kind: Literal["package_installed"]
    package: str

    def observe(self, facts: FactCollector) -> Observation:
        if facts.package_installed(self.package).value:
            return Observation(True, f"{self.package} is installed")
        return Observation(False, f"{self.package} is not installed")


class PackageAbsentCheck(_Check):
    kind: Literal["package_absent"]
    package: str

    def observe(self, facts: FactCollector) -> Observation:
        if facts.package_installed(self.package).value:
            return Observation(False, f"{self.package} is installed")
        return Observation(True, f"{self.package} is not installed")


class UnitEnabledCheck(_Check):
    kind: Literal["unit_enabled"]
    unit: str
    state: str = "enabled"

    def observe(self, facts: FactCollector) -> Observation:
        actual = facts.unit_enabled(self.unit).value
        return Observation(actual == self.state, f"{self.unit} is {actual}")


class UnitActiveCheck(_Check):
    kind: Literal["unit_active"]
    unit: str

    def observe(self, facts: FactCollector) -> Observation:
        actual = facts.unit_active(self.unit).value
        return Observation(actual == "active", f"{self.unit} is {actual}")

    def auto_steps(self) -> list[Any] | None:
        return [RestartUnitStep(unit=self.unit)]


class FileExistsCheck(_Check):
    kind: Literal["file_exists"]
    path: str

    def observe(self, facts: FactCollector) -> Observation:
        if facts.file_stat(self.path).value is None:
            return Observation(False, f"{self.path} does not exist")
        return Observation(True, f"{self.path} exists")


class FileModeCheck(_Check):
    kind: Literal["file_mode"]
    path: str
    max_mode: OctalMode
    owner: str | None = "root"
    group: str | None = "root"

    def observe(self, facts: FactCollector) -> Observation:
        st = facts.file_stat(self.path).value
        if st is None:
            return Observation(False, f"{self.path} does not exist")
        problems = []
        if st.mode & ~self.max_mode:
            problems.append(f"mode {st.octal} exceeds {self.max_mode:04o}")
        if self.owner and st.owner != self.owner:
            problems.append(f"owner {st.owner}, expected {self.owner}")
        if self.group and st.group != self.group:
            problems.append(f"group {st.group}, expected {self.group}")
        if problems:
            return Observation(False, f"{self.path}: {'; '.join(problems)}")
        return Observation(True, f"{self.path} is {st.octal} {st.owner}:{st.group}")

    def auto_steps(self) -> list[Any] | None:
        return [
            SetFileModeStep(
                path=self.path, mode=self.max_mode, owner=self.owner, group=self.group
            )
        ]


class _PatternCheck(_Check):
    pattern: str
    present: bool = True
    ignore_case: bool = False

    @field_validator("pattern")
    @classmethod
    def _compiles(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as exc:
            raise ValueError(f"invalid pattern {v!r}: {exc}") from exc
        return v

    def _search(self, text: str) -> re.Match[str] | None:
        flags = re.MULTILINE | (re.IGNORECASE if self.ignore_case else 0)
        return re.search(self.pattern, text, flags)

    def _judge(self, text: str, where: str) -> Observation:
        match = self._search(text)
        if match is None:
            if self.present:
                return Observation(False, f"no match for {self.pattern!r} in {where}")
            return Observation(True, f"no match for {self.pattern!r} in {where}")
        found = match.group(0).strip()[:120]
        if self.present:
            return Observation(True, f"{where}: {found}")
        return Observation(False, f"{where} contains {found!r}")


class FilePatternCheck(_PatternCheck):
    kind: Literal["file_pattern"]
    path: str
    line: str | None = None  # appended by automatic remediation

    def observe(self, facts: FactCollector) -> Observation:
        text = facts.file_text(self.path).value
        if text is None:
            return Observation(not self.present, f"{self.path} does not exist")
        return self._judge(text, self.path)

    def auto_steps(self) -> list[Any] | None:
        if self.line is None or not self.present:
            return None
        return [AppendLineStep(path=self.path, line=self.line)]


class CommandOutputCheck(_PatternCheck):
    kind: Literal["command_output"]
    command: list[str] = Field(..., min_length=1)

    def observe(self, facts: FactCollector) -> Observation:
        output = facts.command(tuple(self.command)).value
        return self._judge(output, " ".join(self.command))


class ConfigValueCheck(_Check):
    kind: Literal["config_value"]
    path: str
    key: str
    value: str
    compare: Compare = "eq"
    separator: str | None = None

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> str:
        return str(v)

    def observe(self, facts: FactCollector) -> Observation:
        values = facts.config_values(self.path, self.separator).value
        if values is None:
            return Observation(False, f"{self.path} does not exist")
        actual = values.get(self.key)
        wanted = f"{_COMPARE_TEXT[self.compare]}{self.value}"
        if actual is None:
            return Observation(False, f"{self.key} not set in {self.path}, expected {wanted}")
        ok = compare_values(actual, self.value, self.compare)
        detail = f"{self.key} = {actual}" if ok else f"{self.key} = {actual}, expected {wanted}"
        return Observation(ok, detail)

    def auto_steps(self) -> list[Any] | None:
        separator = " = " if self.separator == "=" else self.separator or " "
        return [
            SetOptionStep(path=self.path, key=self.key, value=self.value, separator=separator)
        ]


class SshdOptionCheck(_Check):
    kind: Literal["sshd_option"]
    option: str
    value: str
    compare: Compare = "eq"
    path: str = "/etc/ssh/sshd_config"

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> str:
        return str(v)

    def observe(self, facts: FactCollector) -> Observation:
        config = facts.sshd_config(self.path).value
        if config is None:
            return Observation(False, f"{self.path} does not exist")
        actual = config.get(self.option.lower())
        wanted = f"{_COMPARE_TEXT[self.compare]}{self.value}"
        if actual is None:
            return Observation(False, f"{self.option} not set, expected {wanted}")
        ok = compare_values(actual, self.value, self.compare)
        detail = f"{self.option} {actual}" if ok else f"{self.option} {actual}, expected {wanted}"
        return Observation(ok, detail)

    def auto_steps(self) -> list[Any] | None:
        return [
            SetOptionStep(path=self.path, key=self.option, value=self.value),
            RestartUnitStep(unit="sshd"),
        ]


class AnyOfCheck(_Check):
    """Passes when any alternative holds, e.g. nftables or firewalld."""

    kind: Literal["any_of"]
    checks: list[Check] = Field(..., min_length=1)

    def observe(self, facts: FactCollector) -> Observation:
        failures: list[str] = []
        unavailable: list[str] = []
        for check in self.checks:
            try:
                observation = check.observe(facts)
            except ProbeUnavailable as exc:
                unavailable.append(str(exc))
                continue
            if observation.ok:
                return observation
            failures.append(observation.detail)
        if not failures:
            raise ProbeUnavailable("; ".join(unavailable))
        return Observation(False, "; ".join(failures))


class AllOfCheck(_Check):
    kind: Literal["all_of"]
    checks: list[Check] = Field(..., min_length=1)

    def observe(self, facts: FactCollector) -> Observation:
        observations = [check.observe(facts) for check in self.checks]
        failed = [o.detail for o in observations if not o.ok]
        if failed:
            return Observation(False, "; ".join(failed))
        return Observation(True, "; ".join(o.detail for o in observations))

    def auto_steps(self) -> list[Any] | None:
        steps: list[Any] = []
        for check in self.checks:
            child = check.auto_steps()
            if child is None:
                return None
            steps.extend(child)
        return steps


Check = Annotated[
    Union[
        ModuleDisabledCheck,
        MountPresentCheck,
        MountOptionCheck,
        SysctlCheck,
        PackageInstalledCheck,
        PackageAbsentCheck,
        UnitEnabledCheck,
        UnitActiveCheck,
        FileExistsCheck,
        FileModeCheck,
        FilePatternCheck,
        CommandOutputCheck,
        ConfigValueCheck,
        SshdOptionCheck,
        AnyOfCheck,
        AllOfCheck,
    ],
    Field(discriminator="kind"),
]

AnyOfCheck.model_rebuild()
AllOfCheck.model_rebuild()

OnFail = Literal["fail", "warning", "info"]
OnUnavailable = Literal["fail", "skipped", "warning", "error"]


def build_predicate(
    check: Any,
    *,
    on_fail: OnFail = "fail",
    on_unavailable: OnUnavailable = "fail",
    applies_if: Any | None = None,
) -> Predicate:
    """Wrap a check into a rule predicate returning a Verdict."""
    fail_status = Status(on_fail)
    unavailable_status = Status(on_unavailable)

    def predicate(facts: FactCollector) -> Verdict:
        if applies_if is not None:
            try:
                gate = applies_if.observe(facts)
            except ProbeUnavailable as exc:
                return Verdict(Status.SKIPPED, f"applicability unknown: {exc}")
            if not gate.ok:
                return Verdict(Status.SKIPPED, f"not applicable: {gate.detail}")
        try:
            observation = check.observe(facts)
        except ProbeUnavailable as exc:
            return Verdict(unavailable_status, f"probe unavailable: {exc}")
        return Verdict(Status.PASS if observation.ok else fail_status, observation.detail)

    return predicate
