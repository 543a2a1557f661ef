from __future__ import annotations

import time


class DeadlineExceededError(TimeoutError):
    """Raised once the run-level deadline has passed."""


class Deadline:
    """Wall-clock budget shared by every store call of one run.

    A ``seconds`` value of ``None`` or ``<= 0`` means the run is unbounded and
    only per-call timeouts apply.
    """

    def __init__(self, seconds: float | None, *, clock=time.monotonic) -> None:
        self._clock = clock
        self._expires_at = clock() + seconds if seconds and seconds > 0 else None

    @property
    def bounded(self) -> bool:
        return self._expires_at is not None

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0.0

    def timeout_for(self, call_timeout: float) -> float:
        remaining = self.remaining()
        if remaining is None:
            return call_timeout
        if remaining <= 0.0:
            raise DeadlineExceededError("run deadline exceeded")
        return min(call_timeout, remaining)
