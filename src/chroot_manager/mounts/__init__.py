"""Mount point registry and orchestration."""

from .orchestrator import MountOrchestrator, TeardownReport
from .registry import MountKind, MountPoint, resolve
from .table import MountTable

__all__ = ["MountKind", "MountOrchestrator", "MountPoint", "MountTable", "TeardownReport", "resolve"]
