"""Audit error taxonomy.

Registry errors are fatal before evaluation starts. Per-rule errors are
captured as Results. Output and remediation errors are logged per artifact or
per action and never stop the remaining work.
"""

from __future__ import annotations


class AuditError(Exception):
    """Base class for every error raised by the auditor."""


class RegistryError(AuditError):
    """Rule registry could not be built."""


class DuplicateRuleId(RegistryError):
    def __init__(self, rule_id: str) -> None:
        super().__init__(f"duplicate rule id: {rule_id}")
        self.rule_id = rule_id


class UnknownDependency(RegistryError):
    def __init__(self, rule_id: str, dependency: str) -> None:
        super().__init__(f"rule {rule_id} depends on unknown rule {dependency}")
        self.rule_id = rule_id
        self.dependency = dependency


class DependencyCycle(RegistryError):
    def __init__(self, rule_ids: list[str]) -> None:
        super().__init__(f"dependency cycle between rules: {', '.join(rule_ids)}")
        self.rule_ids = tuple(rule_ids)


class RuleSetError(RegistryError):
    """Rule set document is unreadable or does not match the schema."""


class ProbeUnavailable(AuditError):
    """A fact could not be collected from the host."""


class RuleException(AuditError):
    """A rule predicate raised instead of returning a verdict."""

    def __init__(self, rule_id: str, cause: BaseException) -> None:
        super().__init__(f"{type(cause).__name__}: {cause}")
        self.rule_id = rule_id
        self.cause = cause


class OutputWriteFailure(AuditError):
    """An artifact could not be persisted."""

    def __init__(self, path: str, cause: BaseException) -> None:
        super().__init__(f"cannot write {path}: {cause}")
        self.path = path
        self.cause = cause


class AuditEnvironmentError(AuditError):
    """The result directory is unusable or no artifact could be written."""


class RemediationActionFailure(AuditError):
    """A remediation step failed. Non-fatal for the remaining actions."""
