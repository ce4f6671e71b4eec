"""Session lifecycle control."""

from .controller import MountStatus, SandboxStatus, SessionController, SessionState
from .signals import SignalGuard

__all__ = ["MountStatus", "SandboxStatus", "SessionController", "SessionState", "SignalGuard"]
