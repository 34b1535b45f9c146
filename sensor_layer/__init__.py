"""Sensor layer for CIS RHEL 8 auditing.

Touches the host on behalf of the compliance engine:
- Fact collection (kernel modules, mounts, sysctl, systemd, rpm, files)
- Remediation actions (config edits, sysctl, permissions, services)
- Result shipping to a central collector
"""

from .actions import HostActions
from .facts import Fact, FactCollector, FactStatus
from .probes import FileStat, HostProbes, host_metadata
from .shipper import ResultShipper, ShipResult

__all__ = [
    "Fact",
    "FactCollector",
    "FactStatus",
    "FileStat",
    "HostActions",
    "HostProbes",
    "ResultShipper",
    "ShipResult",
    "host_metadata",
]
