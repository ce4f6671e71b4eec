"""chroot-manager - lifecycle manager for bind-mounted chroot sandboxes."""

__version__ = "0.1.0"

# Lazy imports keep `import chroot_manager` free of click/rich.
def __getattr__(name: str):
    """Lazy import of the public classes."""
    if name == "SandboxConfig":
        from chroot_manager.config import SandboxConfig
        return SandboxConfig
    elif name == "SessionController":
        from chroot_manager.session import SessionController
        return SessionController
    elif name == "MountOrchestrator":
        from chroot_manager.mounts import MountOrchestrator
        return MountOrchestrator
    elif name == "ExclusivityLock":
        from chroot_manager.lock import ExclusivityLock
        return ExclusivityLock
    elif name == "GuestExecutor":
        from chroot_manager.executor import GuestExecutor
        return GuestExecutor
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = [
    "SandboxConfig",
    "SessionController",
    "MountOrchestrator",
    "ExclusivityLock",
    "GuestExecutor",
]
