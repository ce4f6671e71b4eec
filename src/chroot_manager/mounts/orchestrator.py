"""Establishing and reversing sandbox mounts."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from chroot_manager.config import SandboxConfig
from chroot_manager.errors import MountError

from .registry import MountPoint
from .table import MountTable

logger = logging.getLogger(__name__)

HOST_RESOLV_CONF = Path("/etc/resolv.conf")


@dataclass
class TeardownReport:
    """Outcome of a best-effort teardown."""

    unmounted: list[MountPoint] = field(default_factory=list)
    failed: list[tuple[MountPoint, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def failure_count(self) -> int:
        return len(self.failed)


class MountOrchestrator:
    """Mounts and unmounts a sandbox's mount points in dependency order."""

    def __init__(self, config: SandboxConfig, table: MountTable | None = None) -> None:
        self.config = config
        self.table = table or MountTable()

    def _inside_root(self, path: Path) -> bool:
        root = os.path.realpath(self.config.root_path)
        resolved = os.path.realpath(path)
        return resolved == root or resolved.startswith(root + os.sep)

    def _can_create(self, path: Path) -> bool:
        """Check that creating ``path`` would not write outside the root.

        Walks up to the nearest component that exists (a dangling symlink
        counts as existing) and checks where it resolves.
        """
        existing = path
        while not os.path.lexists(existing) and existing != existing.parent:
            existing = existing.parent
        return self._inside_root(existing)

    def establish(self, mountpoints: Sequence[MountPoint]) -> list[MountPoint]:
        """Mount every point that is not already mounted.

        Safe to call repeatedly: targets that are already mount points are
        left alone.

        Args:
            mountpoints: Mount points in establish order.

        Returns:
            The mount points this call actually mounted.

        Raises:
            MountError: On the first step that fails; later steps are not
                attempted.
        """
        logger.info(f"Preparing mounts for chroot {self.config.name} at {self.config.root}")
        mounted = []
        for mp in mountpoints:
            # A symlink inside the guest could point the target at the host.
            if not self._can_create(mp.target):
                raise MountError(
                    str(mp.target),
                    f"resolves outside the sandbox root to {os.path.realpath(mp.target)}",
                )
            try:
                mp.target.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise MountError(str(mp.target), f"cannot create mount point: {e}") from e

            if not self._inside_root(mp.target):
                raise MountError(
                    str(mp.target),
                    f"resolves outside the sandbox root to {os.path.realpath(mp.target)}",
                )

            if self.table.is_mounted(mp.target):
                logger.info(f"Already mounted: {mp.label}")
                continue

            logger.info(f"Mounting {mp.kind.value}: {mp.label}")
            result = subprocess.run(mp.mount_command(), capture_output=True, text=True)
            if result.returncode != 0:
                raise MountError(str(mp.target), result.stderr.strip())
            mounted.append(mp)
        return mounted

    def reverse(self, mountpoints: Sequence[MountPoint]) -> TeardownReport:
        """Unmount in exactly the reverse of establish order.

        Every target is attempted; a failure is logged and recorded in the
        report but never stops the remaining steps.
        """
        logger.info(f"Unmounting chroot {self.config.name}")
        report = TeardownReport()
        for mp in reversed(mountpoints):
            if not self.table.is_mounted(mp.target):
                continue

            logger.info(f"Unmounting {mp.target}")
            try:
                result = subprocess.run(["umount", str(mp.target)], capture_output=True, text=True)
            except OSError as e:
                logger.warning(f"Failed to unmount {mp.target}: {e}")
                report.failed.append((mp, str(e)))
                continue

            if result.returncode != 0:
                detail = result.stderr.strip()
                logger.warning(f"Failed to unmount {mp.target}: {detail}")
                report.failed.append((mp, detail))
            else:
                report.unmounted.append(mp)

        if report.failed:
            logger.error(f"{report.failure_count} mount(s) could not be unmounted in {self.config.root}")
        return report

    def mounted(self, mountpoints: Sequence[MountPoint]) -> list[MountPoint]:
        """Return the subset of ``mountpoints`` currently mounted."""
        return [mp for mp in mountpoints if self.table.is_mounted(mp.target)]

    def copy_resolv_conf(self, source: Path = HOST_RESOLV_CONF) -> bool:
        """Copy the host DNS resolver configuration into the guest /etc.

        Returns:
            True if the file was copied. Failures only log a warning.
        """
        if not self.config.copy_resolv:
            return False
        if not source.is_file():
            logger.warning(f"{source} not found on host; skipping copy.")
            return False

        target_dir = self.config.root_path / "etc"
        target = target_dir / "resolv.conf"
        if not self._can_create(target):
            logger.warning(f"{target} resolves outside the sandbox root; skipping copy.")
            return False
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            if not self._inside_root(target):
                logger.warning(f"{target} resolves outside the sandbox root; skipping copy.")
                return False
            logger.info(f"Copying {source} to {target}")
            shutil.copyfile(source, target)
        except OSError as e:
            logger.warning(f"Failed to copy {source} into the sandbox: {e}")
            return False
        return True
