"""Rule evaluation.

Walks a registry in dependency order and turns every rule into exactly one
Result. A blocked dependency short-circuits the rule to Skipped without calling
its predicate; a raising predicate becomes an Error Result and evaluation
carries on with the next rule.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterator

from .exceptions import RuleException
from .models import Result, Status, Verdict
from .registry import Rule, RuleRegistry

if TYPE_CHECKING:
    from sensor_layer.facts import FactCollector

log = logging.getLogger(__name__)


class RuleEvaluator:
    """Evaluates registry rules against a fact collector."""

    __slots__ = ("max_workers", "cancel", "deadline", "skip", "interrupted")

    def __init__(
        self,
        *,
        max_workers: int = 1,
        cancel: threading.Event | None = None,
        deadline: float | None = None,
        skip: frozenset[str] = frozenset(),
    ) -> None:
        self.max_workers = max(1, max_workers)
        self.cancel = cancel or threading.Event()
        self.deadline = deadline  # time.monotonic() value
        self.skip = skip
        self.interrupted = False

    def _should_stop(self) -> bool:
        if self.cancel.is_set():
            return True
        if self.deadline is not None and time.monotonic() >= self.deadline:
            log.warning("audit deadline reached, stopping evaluation")
            self.cancel.set()
            return True
        return False

    def evaluate_rule(
        self, rule: Rule, collector: FactCollector, latest: dict[str, Result]
    ) -> Result:
        """Evaluate a single rule given the results of its dependencies."""
        started = time.perf_counter()
        verdict = self._verdict(rule, collector, latest)
        return Result(
            rule_id=rule.id,
            status=verdict.status,
            message=verdict.message,
            description=rule.description,
            category=rule.category,
            severity=rule.severity,
            timestamp=datetime.now(timezone.utc).isoformat(),
            duration_ms=round((time.perf_counter() - started) * 1000, 3),
        )

    def _verdict(
        self, rule: Rule, collector: FactCollector, latest: dict[str, Result]
    ) -> Verdict:
        if rule.id in self.skip:
            return Verdict(Status.SKIPPED, "excluded by configuration")

        for dep in rule.depends_on:
            dep_result = latest.get(dep)
            if dep_result is None:
                return Verdict(Status.SKIPPED, f"blocked by {dep} (not evaluated)")
            if dep_result.status is not Status.PASS:
                return Verdict(
                    Status.SKIPPED, f"blocked by {dep} ({dep_result.status.value})"
                )

        try:
            verdict = rule.predicate(collector)
        except Exception as exc:
            err = RuleException(rule.id, exc)
            log.error("rule %s raised %s", rule.id, err, exc_info=exc)
            return Verdict(Status.ERROR, str(err))

        if not isinstance(verdict, Verdict):
            return Verdict(
                Status.ERROR,
                f"predicate returned {type(verdict).__name__}, expected Verdict",
            )
        return verdict

    def iter_results(
        self, registry: RuleRegistry, collector: FactCollector
    ) -> Iterator[Result]:
        """Yield Results in registry order as they become available."""
        rules = registry.all()
        self.interrupted = False
        if self.max_workers > 1:
            yield from self._iter_parallel(rules, collector)
            return

        latest: dict[str, Result] = {}
        for rule in rules:
            if self._should_stop():
                self.interrupted = True
                log.warning(
                    "evaluation cancelled after %d of %d rules", len(latest), len(rules)
                )
                return
            result = self.evaluate_rule(rule, collector, latest)
            latest[rule.id] = result
            yield result

    def evaluate_all(
        self, registry: RuleRegistry, collector: FactCollector
    ) -> list[Result]:
        return list(self.iter_results(registry, collector))

    def _iter_parallel(
        self, rules: tuple[Rule, ...], collector: FactCollector
    ) -> Iterator[Result]:
        # Rules in one level only depend on rules of earlier levels
        level: dict[str, int] = {}
        batches: list[list[int]] = []
        for idx, rule in enumerate(rules):
            depth = 1 + max((level[d] for d in rule.depends_on), default=-1)
            level[rule.id] = depth
            if depth == len(batches):
                batches.append([])
            batches[depth].append(idx)

        slots: dict[int, Result] = {}
        latest: dict[str, Result] = {}
        next_idx = 0

        def _run(idx: int) -> Result | None:
            if self._should_stop():
                return None
            return self.evaluate_rule(rules[idx], collector, latest)

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="rule"
        ) as executor:
            for batch in batches:
                future_to_idx = {executor.submit(_run, idx): idx for idx in batch}
                for future in as_completed(future_to_idx):
                    result = future.result()
                    if result is not None:
                        slots[future_to_idx[future]] = result
                complete = True
                for idx in batch:
                    if idx in slots:
                        latest[rules[idx].id] = slots[idx]
                    else:
                        complete = False
                if not complete:
                    break
                while next_idx in slots:
                    yield slots[next_idx]
                    next_idx += 1

        if next_idx < len(rules):
            self.interrupted = True
            log.warning(
                "evaluation cancelled after %d of %d rules", len(slots), len(rules)
            )
            for idx in sorted(i for i in slots if i >= next_idx):
                yield slots[idx]
