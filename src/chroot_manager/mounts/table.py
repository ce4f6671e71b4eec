"""Queries against the host mount table."""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

PROC_MOUNTS = Path("/proc/mounts")

_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


def _unescape(field: str) -> str:
    """Decode the octal escapes /proc/mounts uses for spaces and tabs."""
    return _OCTAL_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), field)


class MountTable:
    """Answers whether a path is currently a mount point."""

    def __init__(self, query_tool: str = "mountpoint", mounts_file: str | Path = PROC_MOUNTS) -> None:
        self.query_tool = query_tool
        self.mounts_file = Path(mounts_file)
        self._tool_path: str | None = None
        self._tool_checked = False

    def _query_tool(self) -> str | None:
        if not self._tool_checked:
            self._tool_path = shutil.which(self.query_tool)
            self._tool_checked = True
            if self._tool_path is None:
                logger.debug(f"{self.query_tool} not found, reading {self.mounts_file} instead")
        return self._tool_path

    def is_mounted(self, path: str | Path) -> bool:
        """Check whether ``path`` is a mount point."""
        if self._query_tool():
            result = subprocess.run(
                [self.query_tool, "-q", "--", str(path)],
                capture_output=True,
                text=True,
            )
            return result.returncode == 0
        # The kernel records targets with symlinks resolved.
        targets = self.mount_targets()
        return str(path) in targets or os.path.realpath(path) in targets

    def mount_targets(self) -> set[str]:
        """Read every mount target listed in the mounts file."""
        try:
            content = self.mounts_file.read_text()
        except OSError as e:
            logger.warning(f"Cannot read {self.mounts_file}: {e}")
            return set()

        targets = set()
        for line in content.splitlines():
            fields = line.split()
            if len(fields) >= 2:
                targets.add(_unescape(fields[1]))
        return targets
