"""Running commands and shells inside the sandbox root."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from chroot_manager.config import SandboxConfig
from chroot_manager.errors import GuestExecError

logger = logging.getLogger(__name__)

PRIVILEGED_USER = "root"
DEFAULT_TERM = "xterm-256color"

# Grace period between SIGTERM and SIGKILL when the controller is interrupted.
TERMINATE_GRACE_SECONDS = 10.0


@dataclass(frozen=True)
class GuestAccount:
    """An entry from the guest's /etc/passwd."""

    name: str
    uid: int
    gid: int
    home: str
    shell: str


def lookup_guest_account(root: str | Path, user: str) -> GuestAccount | None:
    """Find ``user`` in the sandbox's own passwd file, not the host's."""
    passwd = Path(root) / "etc" / "passwd"
    real_root = os.path.realpath(root)
    if not os.path.realpath(passwd).startswith(real_root + os.sep):
        logger.warning(f"{passwd} resolves outside the sandbox root; not reading it.")
        return None
    try:
        lines = passwd.read_text().splitlines()
    except OSError as e:
        logger.debug(f"Cannot read {passwd}: {e}")
        return None

    for line in lines:
        if not line or line.startswith("#"):
            continue
        fields = line.split(":")
        if len(fields) < 7 or fields[0] != user:
            continue
        try:
            return GuestAccount(
                name=fields[0],
                uid=int(fields[2]),
                gid=int(fields[3]),
                home=fields[5] or "/",
                shell=fields[6],
            )
        except ValueError:
            logger.warning(f"Malformed entry for {user} in {passwd}")
            return None
    return None


class GuestExecutor:
    """Runs guest programs through ``chroot`` with a minimal environment."""

    def __init__(self, config: SandboxConfig) -> None:
        self.config = config

    def build_env(self, home: str, interactive: bool) -> dict[str, str]:
        """Environment for the guest. Nothing is inherited from the host but TERM."""
        env = {
            "HOME": home,
            "TERM": os.environ.get("TERM") or DEFAULT_TERM,
            "PATH": self.config.guest_path,
        }
        if interactive:
            env["PS1"] = f"{self.config.prompt_prefix}\\u@\\h:\\w\\$ "
        return env

    def _resolve_user(self, user: str | None) -> GuestAccount | None:
        """Return the account to switch to, or None to stay privileged."""
        user = user or self.config.default_user
        if user == PRIVILEGED_USER:
            return None
        account = lookup_guest_account(self.config.root_path, user)
        if account is None:
            raise GuestExecError(f"User '{user}' does not exist inside chroot {self.config.name}")
        return account

    def _chroot_prefix(self, env: dict[str, str]) -> list[str]:
        return [
            "chroot",
            str(self.config.root_path),
            "/usr/bin/env",
            "-i",
            *(f"{key}={value}" for key, value in env.items()),
        ]

    def shell_command(self, user: str | None = None) -> list[str]:
        """Argument vector for an interactive login shell."""
        account = self._resolve_user(user)
        if account is None:
            env = self.build_env("/root", interactive=True)
            return self._chroot_prefix(env) + [self.config.guest_shell, "-l"]

        env = self.build_env(account.home, interactive=True)
        return self._chroot_prefix(env) + ["su", "-s", self.config.guest_shell, account.name]

    def command(self, argv: Sequence[str], user: str | None = None) -> list[str]:
        """Argument vector for a batch command.

        As root the vector is passed straight through. For another account
        it is quoted once into the ``su -c`` string, never re-split.
        """
        if not argv:
            raise GuestExecError("No command given to run inside the chroot.")

        account = self._resolve_user(user)
        if account is None:
            env = self.build_env("/root", interactive=False)
            return self._chroot_prefix(env) + list(argv)

        env = self.build_env(account.home, interactive=False)
        return self._chroot_prefix(env) + [
            "su",
            "-s",
            self.config.guest_shell,
            "-c",
            shlex.join(argv),
            account.name,
        ]

    def run_shell(self, user: str | None = None) -> int:
        """Start an interactive shell and wait for it to exit."""
        argv = self.shell_command(user)
        logger.info(
            f"Entering interactive shell in chroot {self.config.name} "
            f"as {user or self.config.default_user}"
        )
        logger.warning("chroot does not provide strong security isolation like a container or VM.")
        return self._run(argv)

    def run_command(self, argv: Sequence[str], user: str | None = None) -> int:
        """Run one command and return its exit status."""
        full = self.command(argv, user)
        logger.info(f"Running in chroot {self.config.name}: {shlex.join(argv)}")
        return self._run(full)

    def _run(self, argv: list[str]) -> int:
        """Run the guest with inherited stdio and no timeout."""
        logger.debug(f"exec: {shlex.join(argv)}")
        try:
            proc = subprocess.Popen(argv)
        except OSError as e:
            raise GuestExecError(f"Failed to start chroot: {e}") from e

        try:
            returncode = proc.wait()
        except BaseException:
            # Controller interrupted; do not leave the guest running.
            self._terminate(proc)
            raise

        if returncode < 0:
            returncode = 128 - returncode
        if returncode != 0:
            logger.warning(f"Guest command exited with status {returncode}")
        return returncode

    @staticmethod
    def _terminate(proc: subprocess.Popen) -> None:
        if proc.poll() is not None:
            return
        logger.warning(f"Terminating guest process {proc.pid}")
        proc.terminate()
        try:
            proc.wait(timeout=TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning(f"Guest process {proc.pid} ignored SIGTERM; killing it")
            proc.kill()
            proc.wait()
        except BaseException:
            # Interrupted again during the grace period: no more waiting.
            logger.warning(f"Interrupted while stopping guest process {proc.pid}; killing it")
            proc.kill()
            proc.wait()
            raise
