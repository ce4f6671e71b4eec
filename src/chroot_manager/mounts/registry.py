"""Mount points that make up one sandbox."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from chroot_manager.config import SandboxConfig
from chroot_manager.errors import FatalConfigError

logger = logging.getLogger(__name__)


class MountKind(Enum):
    """Kinds of mount a sandbox is built from."""

    PROC = "proc"
    SYSFS = "sysfs"
    DEV_BIND = "dev-bind"
    DEVPTS = "devpts"
    TMPFS = "tmpfs"
    BIND = "bind"


# Fixed `mount` arguments per kind, minus the target. None marks the slot
# filled with the bind source. These are not configurable.
MOUNT_ARGS: dict[MountKind, tuple[str | None, ...]] = {
    MountKind.PROC: ("-t", "proc", "-o", "nosuid,nodev,noexec", "proc"),
    MountKind.SYSFS: ("-t", "sysfs", "-o", "nosuid,nodev,noexec", "sys"),
    MountKind.DEV_BIND: ("--bind", "/dev"),
    MountKind.DEVPTS: ("-t", "devpts", "-o", "nosuid,noexec,gid=5,mode=620,ptmxmode=666", "devpts"),
    MountKind.TMPFS: ("-t", "tmpfs", "-o", "nosuid,nodev,noexec,mode=1777", "tmpfs"),
    MountKind.BIND: ("--bind", None),
}


@dataclass(frozen=True)
class MountPoint:
    """A single mount inside the sandbox root."""

    target: Path
    kind: MountKind
    source: str | None = None

    def mount_command(self) -> list[str]:
        """Build the `mount` argument vector for this mount point."""
        try:
            template = MOUNT_ARGS[self.kind]
        except KeyError:
            raise ValueError(f"No mount options defined for {self.kind}") from None

        argv = ["mount"]
        for arg in template:
            if arg is None:
                if not self.source:
                    raise ValueError(f"{self.kind.value} mount of {self.target} has no source")
                argv.append(self.source)
            else:
                argv.append(arg)
        argv.append(str(self.target))
        return argv

    @property
    def label(self) -> str:
        if self.source and self.kind is MountKind.BIND:
            return f"{self.source} -> {self.target}"
        return str(self.target)


# Special filesystems in establish order: children after their parents.
SPECIAL_MOUNTS: tuple[tuple[str, MountKind, str], ...] = (
    ("proc", MountKind.PROC, "mount_proc"),
    ("sys", MountKind.SYSFS, "mount_sys"),
    ("dev", MountKind.DEV_BIND, "mount_dev"),
    ("dev/pts", MountKind.DEVPTS, "mount_dev_pts"),
    ("dev/shm", MountKind.TMPFS, "mount_dev_shm"),
)


def target_under_root(root: Path, relative: str) -> Path:
    """Join a guest path onto the root, refusing anything that escapes it."""
    target = Path(os.path.normpath(os.path.join(root, relative.lstrip("/"))))
    if target == root or root not in target.parents:
        raise FatalConfigError(f"Mount target {relative} escapes sandbox root {root}")
    return target


def special_mountpoints(config: SandboxConfig, enabled_only: bool = True) -> list[MountPoint]:
    """Mount points for proc, sys, dev, dev/pts and dev/shm."""
    root = config.root_path
    return [
        MountPoint(target=target_under_root(root, relative), kind=kind)
        for relative, kind, toggle in SPECIAL_MOUNTS
        if not enabled_only or getattr(config, toggle)
    ]


def bind_mountpoints(config: SandboxConfig, include_missing: bool = False) -> list[MountPoint]:
    """Mount points for the configured host bind directories, in order."""
    root = config.root_path
    mountpoints = []
    for source in config.bind_dirs:
        if not source:
            continue
        if not include_missing and not os.path.isdir(source):
            logger.warning(f"Bind directory does not exist on host: {source} (skipping)")
            continue
        mountpoints.append(
            MountPoint(
                target=target_under_root(root, source),
                kind=MountKind.BIND,
                source=os.path.normpath(source),
            )
        )
    return mountpoints


def resolve(config: SandboxConfig, include_missing: bool = False) -> list[MountPoint]:
    """Return every mount point of the sandbox in establish order.

    Args:
        config: Sandbox configuration.
        include_missing: Keep bind directories whose host source is gone.
            Teardown uses this since a bind can outlive its source.
    """
    return special_mountpoints(config) + bind_mountpoints(config, include_missing)
