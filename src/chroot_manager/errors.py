"""Error taxonomy for chroot-manager.

Every error carries the process exit code the CLI should use for it.
"""

from __future__ import annotations

import signal


class ChrootManagerError(Exception):
    """Base class for all chroot-manager failures."""

    exit_code: int = 1


class FatalConfigError(ChrootManagerError):
    """Invalid or dangerous configuration; raised before any mutation."""


class MissingToolError(FatalConfigError):
    """A required host tool is not installed."""

    exit_code = 127

    def __init__(self, tool: str) -> None:
        super().__init__(f"Required command not found: {tool}")
        self.tool = tool


class BusyError(ChrootManagerError):
    """The sandbox lock is held by another live process."""

    def __init__(self, name: str, pid: int) -> None:
        super().__init__(f"Sandbox '{name}' is in use by process {pid}")
        self.name = name
        self.pid = pid


class MountError(ChrootManagerError):
    """A single establish step failed."""

    def __init__(self, target: str, detail: str = "") -> None:
        message = f"Failed to mount {target}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.target = target
        self.detail = detail


class GuestExecError(ChrootManagerError):
    """The guest command could not be started as requested."""


class SessionInterrupted(ChrootManagerError):
    """A termination signal reached the controller during a session."""

    def __init__(self, signum: int) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        super().__init__(f"Interrupted by {name}")
        self.signum = signum
        self.exit_code = 128 + signum
