"""Rule set loading.

A rule set is a YAML document of categorized rule definitions. Loading it
validates the schema, builds the Rule Registry (checking ids, dependencies and
cycles) and the remediation catalog keyed by rule id.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .checks import Check, OnFail, OnUnavailable, build_predicate
from .exceptions import RuleSetError
from .models import Severity
from .registry import Rule, RuleRegistry
from .remediation import RemediationAction, RemediationSpec

log = logging.getLogger(__name__)

DEFAULT_RULESET = Path(__file__).parent / "rulesets" / "rhel8_cis.yaml"


class RuleSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    description: str
    severity: Severity | None = None
    depends_on: list[str] = Field(default_factory=list)
    applies_if: Check | None = None
    check: Check
    on_fail: OnFail = "fail"
    on_unavailable: OnUnavailable = "fail"
    remediation: Literal["auto"] | RemediationSpec | None = None


class SectionSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category: str
    severity: Severity = Severity.MEDIUM
    rules: list[RuleSpec]


class RuleSetSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    benchmark: str
    version: str = "1"
    sections: list[SectionSpec]


@dataclass(slots=True)
class RuleSet:
    """A loaded rule set: registry plus remediation catalog."""

    benchmark: str
    version: str
    registry: RuleRegistry
    remediations: dict[str, RemediationAction] = field(default_factory=dict)
    source: str = ""


def _remediation_for(spec: RuleSpec) -> RemediationAction | None:
    if spec.remediation is None:
        return None
    if spec.remediation == "auto":
        steps = spec.check.auto_steps()
        if steps is None:
            raise RuleSetError(
                f"rule {spec.id}: {spec.check.kind} checks have no automatic remediation"
            )
        return RemediationAction(spec.id, spec.description, tuple(steps))
    return RemediationAction(
        spec.id, spec.remediation.description, tuple(spec.remediation.steps)
    )


def build_ruleset(document: dict[str, Any], source: str = "<memory>") -> RuleSet:
    """Validate a parsed rule set document and build its registry."""
    try:
        spec = RuleSetSpec.model_validate(document)
    except ValidationError as exc:
        raise RuleSetError(f"{source}: invalid rule set\n{exc}") from exc

    registry = RuleRegistry()
    remediations: dict[str, RemediationAction] = {}
    for section in spec.sections:
        for rule_spec in section.rules:
            registry.register(
                Rule(
                    id=rule_spec.id,
                    description=rule_spec.description,
                    category=section.category,
                    severity=rule_spec.severity or section.severity,
                    predicate=build_predicate(
                        rule_spec.check,
                        on_fail=rule_spec.on_fail,
                        on_unavailable=rule_spec.on_unavailable,
                        applies_if=rule_spec.applies_if,
                    ),
                    depends_on=tuple(rule_spec.depends_on),
                )
            )
            action = _remediation_for(rule_spec)
            if action is not None:
                remediations[rule_spec.id] = action

    registry.validate()
    log.info(
        "loaded %d rules (%d with remediation) from %s",
        len(registry),
        len(remediations),
        source,
    )
    return RuleSet(
        benchmark=spec.benchmark,
        version=spec.version,
        registry=registry,
        remediations=remediations,
        source=source,
    )


def load_ruleset(path: str | Path | None = None) -> RuleSet:
    """Load a rule set file, the bundled RHEL 8 baseline by default."""
    path = Path(path) if path else DEFAULT_RULESET
    try:
        document = yaml.safe_load(path.read_text())
    except OSError as exc:
        raise RuleSetError(f"cannot read rule set {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise RuleSetError(f"cannot parse rule set {path}: {exc}") from exc
    if not isinstance(document, dict):
        raise RuleSetError(f"{path}: rule set must be a mapping")
    return build_ruleset(document, source=str(path))
