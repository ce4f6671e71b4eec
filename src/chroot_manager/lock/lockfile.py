"""Advisory per-sandbox lock file."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from dataclasses import asdict, dataclass
from pathlib import Path

from chroot_manager.errors import BusyError, FatalConfigError

logger = logging.getLogger(__name__)


def pid_alive(pid: int) -> bool:
    """Check whether a process with this pid exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but belongs to someone else.
        return True
    except OverflowError:
        return False
    return True


@dataclass
class LockRecord:
    """Contents of a lock file."""

    name: str
    pid: int
    mode: str = "ephemeral"
    created_at: float = 0.0

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, text: str) -> LockRecord:
        data = json.loads(text)
        return cls(
            name=str(data["name"]),
            pid=int(data["pid"]),
            mode=str(data.get("mode", "ephemeral")),
            created_at=float(data.get("created_at", 0.0)),
        )


@dataclass
class LockStatus:
    """Read-only view of the lock file."""

    path: Path
    present: bool
    pid: int | None = None
    alive: bool = False
    mode: str | None = None


@dataclass
class AcquireResult:
    """Outcome of a successful acquire."""

    record: LockRecord
    stale_owner: int | None = None

    @property
    def reclaimed(self) -> bool:
        return self.stale_owner is not None


class ExclusivityLock:
    """Cooperative lock keyed by sandbox name.

    The lock is a small JSON file holding the owner's pid. It only keeps two
    invocations of this tool apart; nothing stops other programs from
    touching the sandbox.
    """

    def __init__(self, name: str, lock_file: str | Path) -> None:
        self.name = name
        self.path = Path(lock_file)
        self.pid = os.getpid()

    def _read(self) -> LockRecord | None:
        """Read the current record.

        Returns None when there is no lock file.

        Raises:
            ValueError: If the file exists but cannot be parsed.
        """
        try:
            text = self.path.read_text()
        except FileNotFoundError:
            return None
        try:
            return LockRecord.from_json(text)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise ValueError(f"unreadable lock record: {e}") from e

    def _ensure_dir(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FatalConfigError(f"Cannot create runtime directory {self.path.parent}: {e}") from e

    def _create(self, record: LockRecord) -> bool:
        """Create the lock file if it does not exist yet."""
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as f:
            f.write(record.to_json())
        return True

    def _overwrite(self, record: LockRecord) -> None:
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(record.to_json())
            os.chmod(tmp, 0o644)
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise

    def acquire(self, mode: str = "ephemeral") -> AcquireResult:
        """Take the lock for the current process.

        Args:
            mode: What the owner is doing, recorded for ``status``.

        Returns:
            The new record, and the pid of the previous owner when a stale
            record was reclaimed.

        Raises:
            BusyError: If a different live process holds the lock.
            FatalConfigError: If the lock file cannot be written.
        """
        self._ensure_dir()
        record = LockRecord(name=self.name, pid=self.pid, mode=mode, created_at=time.time())

        try:
            if self._create(record):
                logger.debug(f"Created lock {self.path} for pid {self.pid}")
                return AcquireResult(record=record)

            try:
                current = self._read()
            except ValueError as e:
                logger.warning(f"Lock {self.path} is corrupt ({e}); reclaiming it.")
                self._overwrite(record)
                return self._confirm(record, stale_owner=0)

            if current is None:
                # Removed between our create attempt and the read.
                if self._create(record):
                    return AcquireResult(record=record)
                current = self._read()
                if current is None:
                    raise FatalConfigError(f"Lock file {self.path} keeps disappearing")

            if current.pid == self.pid:
                return AcquireResult(record=current)

            if pid_alive(current.pid):
                raise BusyError(self.name, current.pid)

            logger.warning(
                f"Stale lock {self.path} left by process {current.pid}, which is no longer "
                f"running; reclaiming it."
            )
            self._overwrite(record)
            return self._confirm(record, stale_owner=current.pid)
        except ValueError as e:
            raise FatalConfigError(f"Lock file {self.path} changed while acquiring: {e}") from e
        except OSError as e:
            raise FatalConfigError(f"Cannot write lock file {self.path}: {e}") from e

    def _confirm(self, record: LockRecord, stale_owner: int) -> AcquireResult:
        """Re-read after reclaiming so a racing reclaimer is caught."""
        current = self._read()
        if current is None or current.pid != self.pid:
            holder = current.pid if current else 0
            raise BusyError(self.name, holder)
        return AcquireResult(record=record, stale_owner=stale_owner)

    def release(self) -> bool:
        """Remove the lock file unless another live process owns it.

        Returns:
            True if the file was removed or was already absent.
        """
        try:
            current = self._read()
        except ValueError:
            current = None
            logger.warning(f"Removing unreadable lock file {self.path}")

        if current is not None and current.pid != self.pid and pid_alive(current.pid):
            logger.warning(
                f"Lock {self.path} belongs to running process {current.pid}; leaving it in place."
            )
            return False

        try:
            self.path.unlink()
        except FileNotFoundError:
            return True
        except OSError as e:
            logger.warning(f"Failed to remove lock file {self.path}: {e}")
            return False

        logger.debug(f"Released lock {self.path}")
        return True

    def inspect(self) -> LockStatus:
        """Describe the lock file without changing it."""
        try:
            current = self._read()
        except ValueError:
            return LockStatus(path=self.path, present=True)
        except OSError as e:
            logger.warning(f"Cannot read lock file {self.path}: {e}")
            return LockStatus(path=self.path, present=self.path.exists())

        if current is None:
            return LockStatus(path=self.path, present=False)
        return LockStatus(
            path=self.path,
            present=True,
            pid=current.pid,
            alive=pid_alive(current.pid),
            mode=current.mode,
        )
