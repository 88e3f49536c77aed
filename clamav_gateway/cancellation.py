"""Shared cancellation and deadline signal for the two branches of a scan."""

from __future__ import annotations

import threading
import time

from clamav_gateway.exceptions import ScanCancelledError, ScanTimeoutError


class CancelToken:
    """Cancellation flag plus an optional monotonic deadline.

    One token is shared by the digest and scan branches of a single scan, so
    cancelling it stops both.

    Args:
        timeout: Seconds from now until the deadline, or *None* for no deadline.
    """

    def __init__(self, timeout: float | None = None) -> None:
        self._event = threading.Event()
        self._deadline = None if timeout is None else time.monotonic() + timeout

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def cancel(self) -> None:
        self._event.set()

    def remaining(self) -> float | None:
        """Seconds left before the deadline (never negative), or *None*."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def bound(self, timeout: float) -> float:
        """Clamp an operation *timeout* to the time left on the token.

        Never returns zero, which sockets would treat as non-blocking mode.
        """
        left = self.remaining()
        return timeout if left is None else max(min(timeout, left), 0.001)

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ScanCancelledError("scan cancelled")
        if self.expired:
            raise ScanTimeoutError("scan deadline exceeded")
