"""Host preconditions: privileges and external tools."""

from __future__ import annotations

import os
import shutil
from collections.abc import Iterable

from chroot_manager.errors import FatalConfigError, MissingToolError

# Tools every mutating operation shells out to.
REQUIRED_TOOLS = ("mount", "umount", "chroot")


def is_root() -> bool:
    return os.geteuid() == 0


def require_root() -> None:
    """Abort unless running with an effective uid of 0."""
    if not is_root():
        raise FatalConfigError("This command must be run as root.")


def require_tools(tools: Iterable[str] = REQUIRED_TOOLS) -> None:
    """Abort with exit status 127 if any tool is missing from PATH."""
    for tool in tools:
        if shutil.which(tool) is None:
            raise MissingToolError(tool)
