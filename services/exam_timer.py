from __future__ import annotations

import threading
import time
from typing import Callable

from config import logger

IDLE = "idle"
RUNNING = "running"
EXPIRED = "expired"
COMPLETED = "completed"
CANCELLED = "cancelled"

TERMINAL_STATES = frozenset({EXPIRED, COMPLETED, CANCELLED})


def format_seconds(seconds: int) -> str:
    s = max(0, int(seconds))
    return f"{s // 3600:02d}:{(s % 3600) // 60:02d}:{s % 60:02d}"


class SubmitGuard:
    """One-shot flag: the first `claim()` wins, every later call gets False."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._claimed = False

    @property
    def claimed(self) -> bool:
        return self._claimed

    def claim(self) -> bool:
        with self._lock:
            if self._claimed:
                return False
            self._claimed = True
            return True

    def release(self) -> None:
        """Re-arm after a failed attempt so the examinee can retry."""
        with self._lock:
            self._claimed = False


class ExamTimer:
    """
    Countdown for one exam attempt.

    idle -> running -> expired (fires `on_expire` once) | completed | cancelled.
    Remaining time is derived from the clock at each `tick()`, so a late tick
    never drifts the deadline.
    """

    def __init__(
        self,
        duration_seconds: int = 3600,
        warning_seconds: int = 600,
        on_expire: Callable[[], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if int(duration_seconds) <= 0:
            raise ValueError("duration_seconds must be positive")
        self.duration_seconds = int(duration_seconds)
        self.warning_seconds = max(0, int(warning_seconds))
        self.on_expire = on_expire
        self._clock = clock
        self._lock = threading.Lock()
        self.state = IDLE
        self._started_at: float | None = None
        self._remaining = self.duration_seconds
        self.warning = False

    @property
    def remaining_seconds(self) -> int:
        return self._remaining

    @property
    def elapsed_seconds(self) -> int:
        return self.duration_seconds - self._remaining

    @property
    def is_running(self) -> bool:
        return self.state == RUNNING

    def format_remaining(self) -> str:
        return format_seconds(self._remaining)

    def start(self) -> None:
        with self._lock:
            if self.state == RUNNING:
                return
            if self.state != IDLE:
                raise RuntimeError(f"Cannot start a timer in state {self.state!r}")
            self._started_at = self._clock()
            self._remaining = self.duration_seconds
            self.state = RUNNING

    def tick(self) -> int:
        fire = False
        with self._lock:
            if self.state != RUNNING or self._started_at is None:
                return self._remaining
            used = int(self._clock() - self._started_at)
            self._remaining = max(0, self.duration_seconds - used)
            if not self.warning and self._remaining < self.warning_seconds:
                self.warning = True
                logger.info("Exam time warning: %s remaining", format_seconds(self._remaining))
            if self._remaining <= 0:
                self.state = EXPIRED
                fire = True
        # Callback runs outside the lock so it may call back into complete()/cancel().
        if fire and self.on_expire is not None:
            try:
                self.on_expire()
            except Exception:
                logger.exception("Exam timer expiry callback failed")
        return self._remaining

    def complete(self) -> bool:
        with self._lock:
            if self.state != RUNNING:
                return False
            if self._started_at is not None:
                used = int(self._clock() - self._started_at)
                self._remaining = max(0, self.duration_seconds - used)
            self.state = COMPLETED
            return True

    def cancel(self) -> bool:
        with self._lock:
            if self.state in TERMINAL_STATES:
                return False
            self.state = CANCELLED
            return True
