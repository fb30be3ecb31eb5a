from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class BusyError(RuntimeError):
    """Raised when the gate is already held by another operation."""


class ConcurrencyGate:
    """Process-wide single-flight flag. Rejected callers are never queued."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def try_acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        if self._lock.locked():
            self._lock.release()

    @contextmanager
    def hold(self) -> Iterator[None]:
        if not self.try_acquire():
            raise BusyError("I'm still working on the last request. Send again in a moment.")
        try:
            yield
        finally:
            self.release()
