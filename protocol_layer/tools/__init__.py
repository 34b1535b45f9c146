"""MCP Tools for the CIS auditor.

Available tool modules:
- compliance: CIS RHEL 8 audit, status, history and remediation planning
"""

from .compliance import register_compliance_tools

__all__ = ["register_compliance_tools"]
