"""
Cooperative cancellation for the parsers.

A token is checked only between structural steps (XML element
boundaries, multipart part boundaries), never in the middle of decoding a
single scalar field.
"""

import threading
import time
from typing import Optional

from storagewire.lib import error


class CancellationToken:
    """
    Cancellation signal with an optional deadline.

    Args:
        deadline: Absolute ``time.monotonic()`` value after which ``check()``
            raises, or None for no deadline
    """

    def __init__(self, deadline: Optional[float] = None) -> None:
        self._event = threading.Event()
        self.deadline = deadline

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancellationToken":
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self) -> Optional[float]:
        """Seconds left until the deadline, never negative, None without one."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self) -> None:
        """Raise OperationCanceled if cancel() was called or the deadline passed."""
        if self._event.is_set():
            raise error.OperationCanceled(reason="operation was canceled")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise error.OperationCanceled(reason="deadline exceeded")


def check(token: Optional[CancellationToken]) -> None:
    if token is not None:
        token.check()
