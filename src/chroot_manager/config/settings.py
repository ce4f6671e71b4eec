"""Sandbox configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

from chroot_manager.errors import FatalConfigError

CONFIG_ENV_VAR = "CHROOT_MANAGER_CONFIG"

DEFAULT_GUEST_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

# Host directories that can never be used as a sandbox root.
DENIED_ROOTS = frozenset({
    "/",
    "/bin",
    "/boot",
    "/dev",
    "/etc",
    "/home",
    "/lib",
    "/lib64",
    "/proc",
    "/root",
    "/run",
    "/sbin",
    "/sys",
    "/usr",
    "/var",
})


@dataclass(frozen=True)
class SandboxConfig:
    """Immutable description of one chroot sandbox."""

    root: str = "/srv/chroot/debian"
    name: str = "debian-sandbox"
    default_user: str = "root"
    bind_dirs: tuple[str, ...] = ("/home", "/tmp")

    # Special filesystems
    mount_proc: bool = True
    mount_sys: bool = True
    mount_dev: bool = True
    mount_dev_pts: bool = True
    mount_dev_shm: bool = True

    copy_resolv: bool = True

    # Guest environment
    guest_path: str = DEFAULT_GUEST_PATH
    guest_shell: str = "/bin/bash"

    # Host state
    log_dir: str = "/var/log/chroot-manager"
    run_dir: str = "/run/chroot-manager"

    @property
    def root_path(self) -> Path:
        return Path(os.path.normpath(self.root))

    @property
    def lock_file(self) -> Path:
        return Path(self.run_dir) / f"{self.name}.lock"

    @property
    def log_file(self) -> Path:
        return Path(self.log_dir) / "chroot-manager.log"

    @property
    def prompt_prefix(self) -> str:
        return f"(chroot:{self.name}) "

    def validate(self) -> None:
        """Check the root path and bind list.

        Raises:
            FatalConfigError: If the configuration would expose a host
                directory or cannot describe a usable sandbox.
        """
        if not self.root or not self.root.strip():
            raise FatalConfigError("Sandbox root is not set")
        if not os.path.isabs(self.root):
            raise FatalConfigError(f"Sandbox root must be an absolute path: {self.root}")

        normalized = os.path.normpath(self.root)
        resolved = os.path.realpath(self.root)
        for candidate in (normalized, resolved):
            if candidate in DENIED_ROOTS:
                raise FatalConfigError(
                    f"Refusing to use {self.root} as a sandbox root "
                    f"(resolves to protected host directory {candidate})"
                )

        if not os.path.isdir(resolved):
            raise FatalConfigError(f"Sandbox root does not exist: {self.root}")

        if not self.name or "/" in self.name or self.name in (".", ".."):
            raise FatalConfigError(f"Invalid sandbox name: {self.name!r}")

        for source in self.bind_dirs:
            if not os.path.isabs(source):
                raise FatalConfigError(f"Bind directory must be absolute: {source}")


def _coerce(name: str, value: Any) -> Any:
    """Check a raw config value against the field it is destined for."""
    if name == "bind_dirs":
        if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
            raise FatalConfigError("bind_dirs must be a list of paths")
        return tuple(v for v in value if v)
    if name.startswith("mount_") or name == "copy_resolv":
        if not isinstance(value, bool):
            raise FatalConfigError(f"{name} must be true or false")
        return value
    if not isinstance(value, str):
        raise FatalConfigError(f"{name} must be a string")
    return value


def config_from_dict(data: dict[str, Any], base: SandboxConfig | None = None) -> SandboxConfig:
    """Build a config from a mapping of field names to values."""
    base = base or SandboxConfig()
    known = {f.name for f in fields(SandboxConfig)}

    unknown = sorted(set(data) - known)
    if unknown:
        raise FatalConfigError(f"Unknown configuration keys: {', '.join(unknown)}")

    changes = {key: _coerce(key, value) for key, value in data.items()}
    return replace(base, **changes)


def load_config(
    path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> SandboxConfig:
    """Load configuration from defaults, a JSON file and explicit overrides.

    Args:
        path: JSON config file. Falls back to $CHROOT_MANAGER_CONFIG.
        overrides: Values that win over the file (e.g. from the command line).
            Keys with a ``None`` value are ignored.

    Returns:
        The merged, frozen configuration. It is not validated here; callers
        run :meth:`SandboxConfig.validate` before touching the host.
    """
    config = SandboxConfig()

    path = path or os.getenv(CONFIG_ENV_VAR)
    if path:
        config_file = Path(path)
        try:
            with open(config_file) as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise FatalConfigError(f"Configuration file not found: {config_file}") from e
        except (OSError, json.JSONDecodeError) as e:
            raise FatalConfigError(f"Failed to read configuration file {config_file}: {e}") from e

        if not isinstance(data, dict):
            raise FatalConfigError(f"Configuration file {config_file} must hold a JSON object")
        config = config_from_dict(data, config)

    if overrides:
        config = config_from_dict(
            {k: v for k, v in overrides.items() if v is not None},
            config,
        )

    return config
