"""Turning termination signals into ordinary exceptions."""

from __future__ import annotations

import logging
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from types import FrameType
from typing import Any

from chroot_manager.errors import SessionInterrupted

logger = logging.getLogger(__name__)

GUARDED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


class SignalGuard:
    """Raise :class:`SessionInterrupted` when the controller is signalled.

    Raising from the handler lets the session's ``finally``/``ExitStack``
    teardown run the same way it does on a normal return. Two windows are
    special:

    * while the guest runs, SIGINT belongs to the guest, which shares the
      terminal and sees the same keystroke;
    * while tearing down, signals are recorded and teardown continues.
    """

    def __init__(self, signals: tuple[signal.Signals, ...] = GUARDED_SIGNALS) -> None:
        self.signals = signals
        self.pending: int | None = None
        self._previous: dict[int, Any] = {}
        self._guest_active = False
        self._shielded = False

    def __enter__(self) -> SignalGuard:
        for signum in self.signals:
            self._previous[signum] = signal.signal(signum, self._handle)
        return self

    def __exit__(self, *exc_info: object) -> None:
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)
        self._previous.clear()

    def _handle(self, signum: int, frame: FrameType | None) -> None:
        name = signal.Signals(signum).name
        if self._shielded:
            logger.warning(f"Received {name} during teardown; finishing cleanup first.")
            self.pending = signum
            return
        if self._guest_active and signum == signal.SIGINT:
            logger.debug("SIGINT delivered to the guest")
            return
        logger.warning(f"Received {name}; tearing down the session.")
        raise SessionInterrupted(signum)

    def raise_pending(self) -> None:
        """Re-raise a signal that arrived while shielded."""
        if self.pending is not None:
            signum, self.pending = self.pending, None
            raise SessionInterrupted(signum)

    @contextmanager
    def guest_active(self) -> Iterator[None]:
        self._guest_active = True
        try:
            yield
        finally:
            self._guest_active = False

    @contextmanager
    def shielded(self) -> Iterator[None]:
        """Defer signals for the duration of the block."""
        previous = self._shielded
        self._shielded = True
        try:
            yield
        finally:
            self._shielded = previous
