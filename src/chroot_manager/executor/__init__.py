"""Guest command execution inside the chroot."""

from .guest import GuestAccount, GuestExecutor, lookup_guest_account

__all__ = ["GuestAccount", "GuestExecutor", "lookup_guest_account"]
