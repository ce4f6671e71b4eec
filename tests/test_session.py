"""Tests for the session lifecycle controller."""

import json
import os
import signal
from dataclasses import replace
from pathlib import Path

import pytest

from chroot_manager.config import SandboxConfig
from chroot_manager.errors import (
    BusyError,
    FatalConfigError,
    GuestExecError,
    MissingToolError,
    MountError,
    SessionInterrupted,
)
from chroot_manager.lock import LockRecord
from chroot_manager.session import SessionController, SessionState

DEAD_PID = 999_999_999

pytestmark = pytest.mark.usefixtures("as_root")


def _write_lock(config: SandboxConfig, pid: int, mode: str = "ephemeral") -> None:
    config.lock_file.parent.mkdir(parents=True, exist_ok=True)
    config.lock_file.write_text(LockRecord(name=config.name, pid=pid, mode=mode).to_json())


class TestPreflight:
    """Failures that must abort before any lock or mount."""

    @pytest.mark.parametrize("root", ["/", "/etc", "/home", "/root"])
    def test_dangerous_root_never_mounts(self, fake_mounts, fake_popen, config: SandboxConfig, root: str) -> None:
        controller = SessionController(replace(config, root=root))

        with pytest.raises(FatalConfigError):
            controller.run(["true"])

        assert fake_mounts.mount_calls == []
        assert not config.lock_file.exists()
        assert fake_popen.launched == []

    def test_requires_root(self, fake_mounts, config: SandboxConfig, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(os, "geteuid", lambda: 1000)

        with pytest.raises(FatalConfigError, match="root"):
            SessionController(config).prepare()

        assert fake_mounts.mount_calls == []

    def test_missing_tool_exits_127(self, fake_mounts, config: SandboxConfig, monkeypatch: pytest.MonkeyPatch) -> None:
        import shutil

        monkeypatch.setattr(shutil, "which", lambda name, *a, **k: None if name == "chroot" else f"/bin/{name}")

        with pytest.raises(MissingToolError) as excinfo:
            SessionController(config).prepare()

        assert excinfo.value.exit_code == 127
        assert fake_mounts.mount_calls == []

    def test_busy_sandbox_is_untouched(self, fake_mounts, fake_popen, config: SandboxConfig, live_pid: int) -> None:
        """A live lock holder stops the session before any mount."""
        _write_lock(config, live_pid)

        with pytest.raises(BusyError):
            SessionController(config).run(["true"])

        assert fake_mounts.mount_calls == []
        assert fake_mounts.umount_calls == []
        assert json.loads(config.lock_file.read_text())["pid"] == live_pid

    def test_empty_command(self, fake_mounts, config: SandboxConfig) -> None:
        with pytest.raises(GuestExecError):
            SessionController(config).run([])

        assert fake_mounts.mount_calls == []


class TestEphemeralSessions:
    """Test shell and run."""

    def test_run_mounts_runs_and_tears_down(self, fake_mounts, fake_popen, config: SandboxConfig) -> None:
        controller = SessionController(config)

        status = controller.run(["apt-get", "update"])

        assert status == 0
        assert fake_popen.launched[0][-2:] == ["apt-get", "update"]
        assert len(fake_mounts.mount_calls) == 7
        assert fake_mounts.umount_targets == list(reversed(fake_mounts.mount_targets))
        assert fake_mounts.mounted == []
        assert not config.lock_file.exists()
        assert controller.state is SessionState.IDLE

    def test_guest_failure_still_tears_down(self, fake_mounts, fake_popen, config: SandboxConfig) -> None:
        """Non-zero guest exit: everything unmounted, lock released, status kept."""
        fake_popen.returncode_for_next = 42

        status = SessionController(config).run(["false"])

        assert status == 42
        assert fake_mounts.mounted == []
        assert not config.lock_file.exists()

    def test_missing_guest_user_still_tears_down(self, fake_mounts, fake_popen, config: SandboxConfig) -> None:
        with pytest.raises(GuestExecError):
            SessionController(config).run(["id"], user="mallory")

        assert fake_popen.launched == []
        assert fake_mounts.mounted == []
        assert not config.lock_file.exists()

    def test_shell(self, fake_mounts, fake_popen, config: SandboxConfig) -> None:
        assert SessionController(config).shell("builder") == 0

        assert fake_popen.launched[0][-1] == "builder"
        assert fake_mounts.mounted == []

    def test_mount_failure_reverses_partial_setup(
        self, fake_mounts, fake_popen, config: SandboxConfig, guest_root: Path
    ) -> None:
        fake_mounts.fail_mount.add(str(guest_root / "dev/pts"))

        with pytest.raises(MountError):
            SessionController(config).run(["true"])

        assert fake_popen.launched == []
        assert fake_mounts.umount_targets == [str(guest_root / p) for p in ("dev", "sys", "proc")]
        assert fake_mounts.mounted == []
        assert not config.lock_file.exists()

    def test_teardown_failure_does_not_change_guest_status(
        self, fake_mounts, fake_popen, config: SandboxConfig, guest_root: Path
    ) -> None:
        fake_mounts.fail_umount.add(str(guest_root / "sys"))
        controller = SessionController(config)

        assert controller.run(["true"]) == 0
        assert controller.last_teardown.failure_count == 1
        assert fake_mounts.mounted == [str(guest_root / "sys")]
        assert not config.lock_file.exists()

    def test_signal_during_guest_tears_down(self, fake_mounts, fake_popen, config: SandboxConfig) -> None:
        """SIGTERM to the controller runs the same teardown as a normal exit."""
        fake_popen.on_wait = lambda proc: signal.raise_signal(signal.SIGTERM)
        previous = signal.getsignal(signal.SIGTERM)

        with pytest.raises(SessionInterrupted) as excinfo:
            SessionController(config).run(["sleep", "infinity"])

        assert excinfo.value.exit_code == 128 + signal.SIGTERM
        assert fake_mounts.mounted == []
        assert not config.lock_file.exists()
        assert signal.getsignal(signal.SIGTERM) == previous

    def test_sigint_during_guest_belongs_to_guest(self, fake_mounts, fake_popen, config: SandboxConfig) -> None:
        """Ctrl-C in the guest's terminal does not tear the session down early."""
        def ctrl_c(proc):
            signal.raise_signal(signal.SIGINT)
            proc.returncode = 130

        fake_popen.on_wait = ctrl_c

        assert SessionController(config).run(["cat"]) == 130
        assert fake_mounts.mounted == []

    def test_signal_during_setup_cleans_partial_mounts(
        self, fake_mounts, fake_popen, config: SandboxConfig, guest_root: Path
    ) -> None:
        real_run = fake_mounts.run
        dev = str(guest_root / "dev")

        def run(argv, **kwargs):
            result = real_run(argv, **kwargs)
            if argv[0] == "mount" and argv[-1] == dev:
                signal.raise_signal(signal.SIGHUP)
            return result

        import subprocess

        subprocess.run = run  # restored by the fake_mounts monkeypatch

        with pytest.raises(SessionInterrupted):
            SessionController(config).run(["true"])

        assert fake_popen.launched == []
        assert fake_mounts.umount_targets == [str(guest_root / p) for p in ("dev", "sys", "proc")]
        assert fake_mounts.mounted == []
        assert not config.lock_file.exists()

    def test_stale_lock_is_reclaimed_and_leftovers_adopted(
        self, fake_mounts, fake_popen, config: SandboxConfig, guest_root: Path, caplog
    ) -> None:
        _write_lock(config, DEAD_PID)
        fake_mounts.mounted.append(str(guest_root / "proc"))

        assert SessionController(config).run(["true"]) == 0

        assert "Stale lock" in caplog.text
        assert "Adopting" in caplog.text
        assert str(guest_root / "proc") not in fake_mounts.mount_targets
        assert fake_mounts.mounted == []
        assert not config.lock_file.exists()


class TestPrepareStopStatus:
    """Test the non-ephemeral operations."""

    def test_status_before_anything(self, fake_mounts, config: SandboxConfig) -> None:
        status = SessionController(config).status()

        assert status.nothing_mounted
        assert [s.mounted for s in status.special] == [False] * 5
        assert [s.mounted for s in status.binds] == [False, False]
        assert status.lock_present is False

    def test_prepare_leaves_mounts_and_lock(self, fake_mounts, config: SandboxConfig) -> None:
        controller = SessionController(config)

        controller.prepare()
        status = SessionController(config).status()

        assert controller.state is SessionState.MOUNTED
        assert status.fully_mounted
        assert len(status.configured) == 7
        assert status.lock_present is True
        assert status.lock.mode == "prepare"
        assert fake_mounts.umount_calls == []

    def test_status_is_read_only(self, fake_mounts, config: SandboxConfig) -> None:
        SessionController(config).status()

        assert fake_mounts.calls == []
        assert not config.lock_file.exists()

    def test_status_shows_disabled_and_missing(self, fake_mounts, config: SandboxConfig, tmp_path: Path) -> None:
        config = replace(config, mount_dev_shm=False, bind_dirs=(str(tmp_path / "gone"),))

        status = SessionController(config).status()

        assert [s.enabled for s in status.special] == [True, True, True, True, False]
        assert status.binds[0].source_exists is False
        assert len(status.configured) == 4

    def test_prepare_failure_reverses_and_unlocks(
        self, fake_mounts, config: SandboxConfig, guest_root: Path, host_binds
    ) -> None:
        fake_mounts.fail_mount.add(str(guest_root) + host_binds[1])

        with pytest.raises(MountError):
            SessionController(config).prepare()

        assert fake_mounts.mounted == []
        assert not config.lock_file.exists()

    def test_stop_after_prepare(self, fake_mounts, config: SandboxConfig) -> None:
        SessionController(config).prepare()

        report = SessionController(config).stop()

        assert report.ok
        assert len(report.unmounted) == 7
        assert fake_mounts.mounted == []
        assert not config.lock_file.exists()

    def test_stop_is_idempotent(self, fake_mounts, config: SandboxConfig) -> None:
        controller = SessionController(config)

        controller.stop()
        report = controller.stop()

        assert report.ok
        assert fake_mounts.umount_calls == []
        # stop inspects and removes the lock but never writes a record
        assert not config.lock_file.exists()

    def test_stop_removes_stale_prepare_lock(self, fake_mounts, config: SandboxConfig, guest_root: Path) -> None:
        """Manual recovery after the preparing process is long gone."""
        _write_lock(config, DEAD_PID, mode="prepare")
        fake_mounts.mounted.extend([str(guest_root / "proc"), str(guest_root / "dev")])

        SessionController(config).stop()

        assert fake_mounts.umount_targets == [str(guest_root / "dev"), str(guest_root / "proc")]
        assert not config.lock_file.exists()

    def test_stop_unmounts_bind_whose_source_vanished(
        self, fake_mounts, config: SandboxConfig, guest_root: Path, tmp_path: Path
    ) -> None:
        gone = str(tmp_path / "gone")
        config = replace(config, bind_dirs=(gone,))
        fake_mounts.mounted.append(str(guest_root) + gone)

        SessionController(config).stop()

        assert fake_mounts.mounted == []

    def test_stop_refuses_live_session(self, fake_mounts, config: SandboxConfig, guest_root: Path, live_pid: int) -> None:
        _write_lock(config, live_pid)
        fake_mounts.mounted.append(str(guest_root / "proc"))

        with pytest.raises(BusyError):
            SessionController(config).stop()

        assert fake_mounts.umount_calls == []

    def test_forced_stop_keeps_foreign_lock(
        self, fake_mounts, config: SandboxConfig, guest_root: Path, live_pid: int
    ) -> None:
        """Forced teardown never revokes another live owner's lock."""
        _write_lock(config, live_pid)
        fake_mounts.mounted.append(str(guest_root / "proc"))

        SessionController(config).stop(force=True)

        assert fake_mounts.mounted == []
        assert json.loads(config.lock_file.read_text())["pid"] == live_pid
