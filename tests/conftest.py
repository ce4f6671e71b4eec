"""Shared fixtures: a fake guest root and a simulated kernel mount table."""

from __future__ import annotations

import os
import shutil
import subprocess
import sys
from pathlib import Path

import pytest

from chroot_manager.config import SandboxConfig

_real_popen = subprocess.Popen

HOST_TOOLS = {"mount", "umount", "chroot", "mountpoint"}


class FakeMounts:
    """Stands in for mount, umount and mountpoint via subprocess.run."""

    def __init__(self) -> None:
        self.mounted: list[str] = []
        self.calls: list[list[str]] = []
        self.fail_mount: set[str] = set()
        self.fail_umount: set[str] = set()

    @property
    def mount_calls(self) -> list[list[str]]:
        return [c for c in self.calls if c[0] == "mount"]

    @property
    def umount_calls(self) -> list[list[str]]:
        return [c for c in self.calls if c[0] == "umount"]

    @property
    def mount_targets(self) -> list[str]:
        return [c[-1] for c in self.mount_calls]

    @property
    def umount_targets(self) -> list[str]:
        return [c[-1] for c in self.umount_calls]

    def run(self, argv, **kwargs) -> subprocess.CompletedProcess:
        argv = [str(a) for a in argv]
        tool = argv[0]
        target = argv[-1]
        returncode = 0
        stderr = ""

        if tool == "mountpoint":
            returncode = 0 if target in self.mounted else 1
        elif tool == "mount":
            self.calls.append(argv)
            if target in self.fail_mount:
                returncode, stderr = 32, f"mount: {target}: permission denied."
            else:
                self.mounted.append(target)
        elif tool == "umount":
            self.calls.append(argv)
            if target in self.fail_umount:
                returncode, stderr = 32, f"umount: {target}: target is busy."
            elif target in self.mounted:
                self.mounted.remove(target)
            else:
                returncode, stderr = 32, f"umount: {target}: not mounted."
        else:
            raise AssertionError(f"unexpected command: {argv}")

        return subprocess.CompletedProcess(argv, returncode, stdout="", stderr=stderr)


class FakePopen:
    """Records guest launches instead of running chroot."""

    launched: list[list[str]] = []
    returncode_for_next = 0
    on_wait = None

    def __init__(self, argv, **kwargs) -> None:
        self.args = list(argv)
        self.pid = 424242
        self.returncode = None
        self.terminated = False
        FakePopen.launched.append(self.args)

    def wait(self, timeout=None) -> int:
        if FakePopen.on_wait is not None:
            hook, FakePopen.on_wait = FakePopen.on_wait, None
            hook(self)
        if self.returncode is None:
            self.returncode = FakePopen.returncode_for_next
        return self.returncode

    def poll(self):
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self.returncode = -15

    def kill(self) -> None:
        self.returncode = -9


@pytest.fixture
def fake_mounts(monkeypatch: pytest.MonkeyPatch) -> FakeMounts:
    """Simulate the kernel mount table and the host tools."""
    fake = FakeMounts()
    monkeypatch.setattr(subprocess, "run", fake.run)

    real_which = shutil.which

    def which(name, *args, **kwargs):
        if name in HOST_TOOLS:
            return f"/usr/bin/{name}"
        return real_which(name, *args, **kwargs)

    monkeypatch.setattr(shutil, "which", which)
    return fake


@pytest.fixture
def fake_popen(monkeypatch: pytest.MonkeyPatch) -> type[FakePopen]:
    FakePopen.launched = []
    FakePopen.returncode_for_next = 0
    FakePopen.on_wait = None
    monkeypatch.setattr(subprocess, "Popen", FakePopen)
    return FakePopen


@pytest.fixture
def as_root(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(os, "geteuid", lambda: 0)


@pytest.fixture
def guest_root(tmp_path: Path) -> Path:
    """A minimal guest filesystem with its own user database."""
    root = tmp_path / "chroot"
    (root / "etc").mkdir(parents=True)
    (root / "etc" / "passwd").write_text(
        "root:x:0:0:root:/root:/bin/bash\n"
        "builder:x:1000:1000:Build User:/home/builder:/bin/bash\n"
    )
    return root


@pytest.fixture
def host_binds(tmp_path: Path) -> list[str]:
    """Two host directories to bind into the guest."""
    binds = []
    for name in ("srcA", "srcB"):
        path = tmp_path / "host" / name
        path.mkdir(parents=True)
        binds.append(str(path))
    return binds


@pytest.fixture
def config(tmp_path: Path, guest_root: Path, host_binds: list[str]) -> SandboxConfig:
    return SandboxConfig(
        root=str(guest_root),
        name="test-sandbox",
        bind_dirs=tuple(host_binds),
        copy_resolv=False,
        log_dir=str(tmp_path / "log"),
        run_dir=str(tmp_path / "run"),
    )


@pytest.fixture
def live_pid():
    """Pid of another process that stays alive for the test."""
    proc = _real_popen([sys.executable, "-c", "import time; time.sleep(60)"])
    try:
        yield proc.pid
    finally:
        proc.kill()
        proc.wait()
