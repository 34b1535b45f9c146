"""MCP Tools for CIS RHEL 8 Compliance Auditing.

Provides tools for:
- Running an audit of the local host
- Querying the latest compliance status and failing rules
- Compliance history and trend
- Remediation planning
- Rule set lookup
"""

from __future__ import annotations

import asyncio
import logging
from functools import wraps
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from .database import AuditHistory
from .loader import RuleSet, load_ruleset
from .models import Status
from .remediation import plan_actions

if TYPE_CHECKING:
    from fastmcp import FastMCP
    from orchestration_layer.context import AuditSettings

log = logging.getLogger(__name__)

__all__ = ["register_compliance_tools"]


def _tool_handler(fn):
    """Wrap tool handlers with consistent error handling."""

    @wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except Exception as e:
            log.exception("Tool %s failed", fn.__name__)
            return {"status": "error", "message": str(e)}

    return wrapper


def _settings() -> AuditSettings:
    from orchestration_layer.context import AuditSettings

    return AuditSettings.from_env()


def _hostname(settings: AuditSettings, hostname: str | None) -> str:
    if hostname:
        return hostname
    from sensor_layer.probes import host_metadata

    return settings.hostname or host_metadata().hostname


def _open_history(settings: AuditSettings) -> AuditHistory | None:
    if not settings.history_path.exists():
        return None
    return AuditHistory(settings.history_path)


def _rule_dict(ruleset: RuleSet, rule_id: str) -> dict[str, Any]:
    rule = ruleset.registry.get(rule_id)
    if rule is None:
        return {}
    action = ruleset.remediations.get(rule_id)
    return {
        "rule_id": rule.id,
        "description": rule.description,
        "category": rule.category,
        "severity": rule.severity.value,
        "depends_on": list(rule.depends_on),
        "remediation": action.describe() if action else None,
    }


# Pydantic Models


class AuditRequest(BaseModel):
    parallel_jobs: int | None = Field(None, ge=1, description="Worker threads")
    timeout_seconds: float | None = Field(None, gt=0, description="Overall deadline")
    skip_rules: list[str] = Field(default_factory=list, description="Rule ids to exclude")
    ship: bool = Field(False, description="Upload the run to the configured collector")


class HostQueryRequest(BaseModel):
    hostname: str | None = Field(None, description="Hostname (default: this host)")


class FailingRulesRequest(BaseModel):
    hostname: str | None = Field(None, description="Hostname (default: this host)")
    limit: int = Field(50, ge=1, description="Maximum rules to return")


class HistoryRequest(BaseModel):
    hostname: str | None = Field(None, description="Hostname (default: this host)")
    days: int = Field(30, ge=1, description="Number of days of history")
    limit: int = Field(10, ge=1, description="Maximum runs to list")


class RemediationPlanRequest(BaseModel):
    hostname: str | None = Field(None, description="Hostname (default: this host)")
    rule_ids: list[str] = Field(default_factory=list, description="Limit to these rules")


class RuleQuery(BaseModel):
    rule_id: str | None = Field(None, description="Specific rule id, e.g. 5.2.2")
    category: str | None = Field(None, description="Filter by category")


def register_compliance_tools(mcp: FastMCP) -> None:
    """Register all compliance auditing tools with MCP server."""

    @mcp.tool()
    @_tool_handler
    async def run_compliance_audit(params: AuditRequest) -> dict[str, Any]:
        """Audit this host against the CIS RHEL 8 rule set and write the reports."""
        from dataclasses import replace

        from orchestration_layer.context import RunContext
        from orchestration_layer.runner import run_audit

        settings = _settings()
        overrides: dict[str, Any] = {}
        if params.parallel_jobs:
            overrides["parallel_jobs"] = params.parallel_jobs
        if params.timeout_seconds:
            overrides["timeout_seconds"] = params.timeout_seconds
        if params.skip_rules:
            overrides["skip_rules"] = settings.skip_rules | frozenset(params.skip_rules)
        settings = replace(settings, **overrides)

        def _run() -> dict[str, Any]:
            with RunContext.create(settings) as ctx:
                return run_audit(ctx, ship=params.ship).to_dict()

        run = await asyncio.to_thread(_run)
        log.info(
            "Audit %s finished: rate=%.2f%%",
            run["base_name"],
            run["summary"]["compliance_rate"],
        )
        return {"status": "success", **run}

    @mcp.tool()
    @_tool_handler
    async def get_compliance_status(params: HostQueryRequest) -> dict[str, Any]:
        """Get the latest compliance status recorded for a host."""
        settings = _settings()
        hostname = _hostname(settings, params.hostname)
        history = _open_history(settings)
        if history is None:
            return {"status": "error", "message": "No audit history recorded yet"}
        try:
            latest = history.get_latest_run(hostname)
            failing = history.get_failing_rules(hostname) if latest else []
        finally:
            history.close()
        if not latest:
            return {"status": "error", "message": f"No audit data for {hostname}"}

        summary = latest["summary"]
        return {
            "status": "success",
            "hostname": hostname,
            "benchmark": latest["benchmark"],
            "compliance_rate": latest["compliance_rate"],
            "weighted_compliance_rate": latest["weighted_compliance_rate"],
            "assessment": summary.get("status_label"),
            "complete": latest["complete"],
            "counts": summary.get("counts", {}),
            "by_category": summary.get("by_category", {}),
            "failing_rules": failing[:10],
            "last_audit": latest["finished_at"],
        }

    @mcp.tool()
    @_tool_handler
    async def get_failing_rules(params: FailingRulesRequest) -> dict[str, Any]:
        """Failed and warning rules of the latest audit, most severe first."""
        settings = _settings()
        hostname = _hostname(settings, params.hostname)
        history = _open_history(settings)
        if history is None:
            return {"status": "error", "message": "No audit history recorded yet"}
        try:
            failing = history.get_failing_rules(hostname)
        finally:
            history.close()
        return {
            "status": "success",
            "hostname": hostname,
            "count": len(failing),
            "rules": failing[: params.limit],
        }

    @mcp.tool()
    @_tool_handler
    async def get_compliance_history(params: HistoryRequest) -> dict[str, Any]:
        """Compliance trend and recent runs for a host."""
        settings = _settings()
        hostname = _hostname(settings, params.hostname)
        history = _open_history(settings)
        if history is None:
            return {"status": "error", "message": "No audit history recorded yet"}
        try:
            trend = history.get_compliance_trend(hostname, days=params.days)
            runs = history.get_run_history(hostname, limit=params.limit)
            remediations = history.get_remediation_history(hostname, limit=params.limit)
        finally:
            history.close()
        return {
            "status": "success",
            "trend": trend,
            "runs": runs,
            "remediations": remediations,
        }

    @mcp.tool()
    @_tool_handler
    async def plan_remediation(params: RemediationPlanRequest) -> dict[str, Any]:
        """List the remediation actions for the latest audit without applying them."""
        settings = _settings()
        hostname = _hostname(settings, params.hostname)
        history = _open_history(settings)
        if history is None:
            return {"status": "error", "message": "No audit history recorded yet"}
        try:
            results = history.get_latest_results(hostname)
        finally:
            history.close()
        if not results:
            return {"status": "error", "message": f"No audit data for {hostname}"}

        ruleset = await asyncio.to_thread(load_ruleset, settings.ruleset)
        actions = plan_actions(ruleset.remediations, results)
        if params.rule_ids:
            actions = [a for a in actions if a.target_rule_id in set(params.rule_ids)]
        failed = sum(1 for r in results if r.status is Status.FAIL)
        return {
            "status": "success",
            "hostname": hostname,
            "failed_rules": failed,
            "remediable": len(actions),
            "actions": [
                {
                    "rule_id": a.target_rule_id,
                    "description": a.description,
                    "steps": a.describe(),
                }
                for a in actions
            ],
        }

    @mcp.tool()
    @_tool_handler
    async def get_rule_info(params: RuleQuery) -> dict[str, Any]:
        """Look up rules of the loaded rule set by id or category."""
        ruleset = await asyncio.to_thread(load_ruleset, _settings().ruleset)
        if params.rule_id:
            info = _rule_dict(ruleset, params.rule_id)
            if not info:
                return {"status": "error", "message": f"Unknown rule {params.rule_id}"}
            return {"status": "success", "rule": info}

        registry = ruleset.registry
        rules = registry.by_category(params.category) if params.category else registry.all()
        return {
            "status": "success",
            "benchmark": ruleset.benchmark,
            "version": ruleset.version,
            "categories": registry.categories(),
            "count": len(rules),
            "rules": [_rule_dict(ruleset, r.id) for r in rules],
        }
