"""Session lifecycle: lock, mount, run, tear down, unlock."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Sequence
from contextlib import ExitStack
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from chroot_manager.config import SandboxConfig
from chroot_manager.errors import BusyError, GuestExecError
from chroot_manager.executor import GuestExecutor
from chroot_manager.lock import ExclusivityLock, LockStatus
from chroot_manager.mounts import MountKind, MountOrchestrator, MountPoint, TeardownReport, resolve
from chroot_manager.mounts.registry import bind_mountpoints, special_mountpoints
from chroot_manager.system import require_root, require_tools

from .signals import SignalGuard

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Where a session is in its lifecycle."""

    IDLE = "idle"
    LOCKED = "locked"
    MOUNTED = "mounted"
    ACTIVE = "active"
    UNMOUNTING = "unmounting"
    UNLOCKED = "unlocked"


@dataclass
class MountStatus:
    """Mount state of one target."""

    target: Path
    kind: MountKind
    mounted: bool
    enabled: bool = True
    source: str | None = None
    source_exists: bool = True


@dataclass
class SandboxStatus:
    """Snapshot reported by ``status``."""

    name: str
    root: Path
    special: list[MountStatus] = field(default_factory=list)
    binds: list[MountStatus] = field(default_factory=list)
    lock: LockStatus | None = None

    @property
    def lock_present(self) -> bool:
        return bool(self.lock and self.lock.present)

    @property
    def configured(self) -> list[MountStatus]:
        """Targets a ``prepare`` would mount."""
        return [s for s in self.special if s.enabled] + [s for s in self.binds if s.source_exists]

    @property
    def fully_mounted(self) -> bool:
        return all(s.mounted for s in self.configured)

    @property
    def nothing_mounted(self) -> bool:
        return not any(s.mounted for s in self.special + self.binds)


class SessionController:
    """Runs the sandbox state machine for one invocation.

    ``prepare`` leaves the sandbox mounted. ``shell`` and ``run`` are
    ephemeral: teardown and unlock are registered before the first mount and
    run exactly once, whether the guest exits cleanly, fails, or the
    controller receives SIGINT, SIGTERM or SIGHUP.
    """

    def __init__(
        self,
        config: SandboxConfig,
        lock: ExclusivityLock | None = None,
        orchestrator: MountOrchestrator | None = None,
        executor: GuestExecutor | None = None,
    ) -> None:
        self.config = config
        self.lock = lock or ExclusivityLock(config.name, config.lock_file)
        self.orchestrator = orchestrator or MountOrchestrator(config)
        self.executor = executor or GuestExecutor(config)
        self.state = SessionState.IDLE
        self.last_teardown: TeardownReport | None = None

    def _transition(self, state: SessionState) -> None:
        logger.debug(f"{self.config.name}: {self.state.value} -> {state.value}")
        self.state = state

    def _preflight(self) -> None:
        """Checks that abort before any lock or mount is touched."""
        require_root()
        self.config.validate()
        require_tools()

    def _lock(self, stack: ExitStack, guard: SignalGuard, mode: str) -> None:
        """Acquire the lock and register its release on ``stack``."""
        with guard.shielded():
            result = self.lock.acquire(mode)
            stack.callback(self._unlock, guard)
            self._transition(SessionState.LOCKED)
        guard.raise_pending()

        if result.reclaimed:
            self._audit_stale(result.stale_owner)

    def _audit_stale(self, owner: int | None) -> list[MountPoint]:
        """Look for mounts a dead lock owner may have left behind.

        Leftovers are adopted: establish skips them, and an ephemeral
        session unmounts them along with its own.
        """
        leftovers = self.orchestrator.mounted(resolve(self.config, include_missing=True))
        if leftovers:
            targets = ", ".join(str(mp.target) for mp in leftovers)
            logger.warning(
                f"Previous owner (pid {owner}) left {len(leftovers)} mount(s) active: "
                f"{targets}. Adopting them."
            )
        else:
            logger.info(f"No mounts left behind by previous owner (pid {owner}).")
        return leftovers

    def _unlock(self, guard: SignalGuard) -> None:
        with guard.shielded():
            self._transition(SessionState.UNLOCKED)
            self.lock.release()
            self._transition(SessionState.IDLE)

    def _teardown(self, guard: SignalGuard, mountpoints: Sequence[MountPoint]) -> None:
        with guard.shielded():
            self._transition(SessionState.UNMOUNTING)
            self.last_teardown = self.orchestrator.reverse(mountpoints)

    def _establish(self, mountpoints: Sequence[MountPoint]) -> None:
        self.orchestrator.establish(mountpoints)
        self._transition(SessionState.MOUNTED)
        self.orchestrator.copy_resolv_conf()

    def prepare(self) -> list[MountPoint]:
        """Mount the sandbox and leave it mounted.

        On a failed mount, whatever was mounted is reversed and the lock
        released before the error propagates.

        Returns:
            The mount points that make up the prepared sandbox.
        """
        self._preflight()
        mountpoints = resolve(self.config)
        teardown_points = resolve(self.config, include_missing=True)

        guard = SignalGuard()
        with guard, ExitStack() as stack:
            self._lock(stack, guard, "prepare")
            stack.callback(self._teardown, guard, teardown_points)
            self._establish(mountpoints)
            # Success: keep mounts and lock record for manual use.
            stack.pop_all()

        logger.info(f"Chroot {self.config.name} prepared.")
        return mountpoints

    def _ephemeral(self, launch: Callable[[], int]) -> int:
        self._preflight()
        mountpoints = resolve(self.config)
        teardown_points = resolve(self.config, include_missing=True)

        guard = SignalGuard()
        with guard:
            with ExitStack() as stack:
                self._lock(stack, guard, "ephemeral")
                stack.callback(self._teardown, guard, teardown_points)
                self._establish(mountpoints)

                self._transition(SessionState.ACTIVE)
                with guard.guest_active():
                    status = launch()
            guard.raise_pending()
        return status

    def shell(self, user: str | None = None) -> int:
        """Interactive shell in an ephemeral session; returns the shell's status."""
        return self._ephemeral(lambda: self.executor.run_shell(user))

    def run(self, argv: Sequence[str], user: str | None = None) -> int:
        """Run one command in an ephemeral session; returns its status."""
        if not argv:
            raise GuestExecError("No command given to run inside the chroot.")
        return self._ephemeral(lambda: self.executor.run_command(argv, user))

    def stop(self, force: bool = False) -> TeardownReport:
        """Unmount everything and remove the lock, whoever mounted it.

        Args:
            force: Tear down even while another live process holds the lock.
                Its lock record is still left in place.

        Raises:
            BusyError: If a live process holds the lock and ``force`` is False.
        """
        self._preflight()
        lock_status = self.lock.inspect()
        if lock_status.present and lock_status.alive and lock_status.pid != os.getpid():
            if not force:
                raise BusyError(self.config.name, lock_status.pid or 0)
            logger.warning(
                f"Tearing down chroot {self.config.name} while process {lock_status.pid} "
                f"holds its lock (forced)."
            )

        mountpoints = resolve(self.config, include_missing=True)
        guard = SignalGuard()
        with guard:
            self._teardown(guard, mountpoints)
            self._unlock(guard)
            guard.raise_pending()

        report = self.last_teardown or TeardownReport()
        if report.ok:
            logger.info(f"Chroot {self.config.name} stopped (mounts removed).")
        return report

    def status(self) -> SandboxStatus:
        """Report mount and lock state. Read-only; takes no lock."""
        require_root()
        self.config.validate()

        enabled = set(special_mountpoints(self.config))
        special = [
            MountStatus(
                target=mp.target,
                kind=mp.kind,
                mounted=self.orchestrator.table.is_mounted(mp.target),
                enabled=mp in enabled,
            )
            for mp in special_mountpoints(self.config, enabled_only=False)
        ]
        binds = [
            MountStatus(
                target=mp.target,
                kind=mp.kind,
                mounted=self.orchestrator.table.is_mounted(mp.target),
                source=mp.source,
                source_exists=os.path.isdir(mp.source or ""),
            )
            for mp in bind_mountpoints(self.config, include_missing=True)
        ]
        return SandboxStatus(
            name=self.config.name,
            root=self.config.root_path,
            special=special,
            binds=binds,
            lock=self.lock.inspect(),
        )
