"""Exclusivity lock for sandbox roots."""

from .lockfile import AcquireResult, ExclusivityLock, LockRecord, LockStatus, pid_alive

__all__ = ["AcquireResult", "ExclusivityLock", "LockRecord", "LockStatus", "pid_alive"]
