"""Rule registry.

Holds the declarative rule definitions for one run and hands them out in a
deterministic order: every rule after the rules it depends on, ties broken by
declaration order.
"""

from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Iterator

from .exceptions import DependencyCycle, DuplicateRuleId, UnknownDependency
from .models import Severity, Verdict

if TYPE_CHECKING:
    from sensor_layer.facts import FactCollector

Predicate = Callable[["FactCollector"], Verdict]


@dataclass(frozen=True, slots=True)
class Rule:
    """Single compliance check definition."""

    id: str
    description: str
    category: str
    severity: Severity
    predicate: Predicate = field(compare=False, repr=False)
    depends_on: tuple[str, ...] = ()


class RuleView:
    """Restartable, lazily filtered view over a registry."""

    __slots__ = ("_registry", "_category")

    def __init__(self, registry: RuleRegistry, category: str) -> None:
        self._registry = registry
        self._category = category

    def __iter__(self) -> Iterator[Rule]:
        return (r for r in self._registry.all() if r.category == self._category)

    def __len__(self) -> int:
        return sum(1 for _ in self)


class RuleRegistry:
    """Ordered collection of rules for one audit run."""

    __slots__ = ("_rules", "_order")

    def __init__(self, rules: list[Rule] | None = None) -> None:
        self._rules: dict[str, Rule] = {}
        self._order: tuple[Rule, ...] | None = None
        for rule in rules or ():
            self.register(rule)

    def register(self, rule: Rule) -> None:
        """Add a rule. Raises DuplicateRuleId if the id is already present."""
        if rule.id in self._rules:
            raise DuplicateRuleId(rule.id)
        self._rules[rule.id] = rule
        self._order = None

    def get(self, rule_id: str) -> Rule | None:
        return self._rules.get(rule_id)

    def __contains__(self, rule_id: object) -> bool:
        return rule_id in self._rules

    def __len__(self) -> int:
        return len(self._rules)

    def categories(self) -> list[str]:
        """Categories in the order they first appear in evaluation order."""
        return list(dict.fromkeys(r.category for r in self.all()))

    def by_category(self, category: str) -> RuleView:
        return RuleView(self, category)

    def all(self) -> tuple[Rule, ...]:
        """Rules in dependency order, declaration order for ties."""
        if self._order is None:
            self._order = self._sort()
        return self._order

    def validate(self) -> None:
        """Raise the first registry construction error, if any."""
        self.all()

    def _sort(self) -> tuple[Rule, ...]:
        position = {rule_id: i for i, rule_id in enumerate(self._rules)}
        pending: dict[str, int] = {}
        dependents: dict[str, list[str]] = {rule_id: [] for rule_id in self._rules}

        for rule in self._rules.values():
            deps = set(rule.depends_on)
            for dep in deps:
                if dep not in self._rules:
                    raise UnknownDependency(rule.id, dep)
                dependents[dep].append(rule.id)
            pending[rule.id] = len(deps)

        ready = [position[rule_id] for rule_id, n in pending.items() if n == 0]
        heapq.heapify(ready)
        ids = list(self._rules)
        ordered: list[Rule] = []

        while ready:
            rule_id = ids[heapq.heappop(ready)]
            ordered.append(self._rules[rule_id])
            for child in dependents[rule_id]:
                pending[child] -= 1
                if pending[child] == 0:
                    heapq.heappush(ready, position[child])

        if len(ordered) != len(self._rules):
            stuck = [rule_id for rule_id, n in pending.items() if n > 0]
            raise DependencyCycle(stuck)
        return tuple(ordered)
