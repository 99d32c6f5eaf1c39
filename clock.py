# clock.py
# -----------------------------------------------------------------------------
# Countdown derived from absolute instants.
# - remaining = max(0, limit - (now - start)), recomputed on every tick/resume
# - never decremented from a running counter (suspended tabs, sleep, slow ticks)
# - limit <= 0 means no clock at all
# -----------------------------------------------------------------------------
import threading
from typing import Callable, Optional

from errors import TimeExpiredError

TICK_SECONDS = 1.0


def remaining(start_instant: float, time_limit_seconds: float, now: float) -> int:
    """Whole seconds left; 0 once the deadline has passed."""
    if not time_limit_seconds or time_limit_seconds <= 0:
        raise ValueError("remaining() is undefined for unlimited assessments")
    left = float(time_limit_seconds) - (float(now) - float(start_instant))
    if left <= 0:
        return 0
    # ceil so that 0.4s left still reads as 1s, and 0 only once truly expired
    return int(left) if left == int(left) else int(left) + 1


def time_used(start_instant: float, time_limit_seconds: float, now: float) -> int:
    used = max(0.0, float(now) - float(start_instant))
    if time_limit_seconds and time_limit_seconds > 0:
        used = min(used, float(time_limit_seconds))
    return int(round(used))


class IntervalHandle:
    """Background 1 Hz interval; cancel() stops it before the next callback."""

    def __init__(self, interval: float, callback: Callable[[], None]):
        self._interval = interval
        self._callback = callback
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, name="countdown-tick", daemon=True)
        self._thread.start()

    def _run(self):
        while not self._stopped.wait(self._interval):
            try:
                self._callback()
            except Exception as e:
                print(f"[clock] tick callback failed: {e}", flush=True)

    def cancel(self):
        self._stopped.set()

    @property
    def active(self) -> bool:
        return not self._stopped.is_set()


class ThreadScheduler:
    """Schedules real intervals on daemon threads."""

    def call_every(self, interval: float, callback: Callable[[], None]) -> IntervalHandle:
        return IntervalHandle(interval, callback)


class CountdownClock:
    """
    Owns the tick interval of one session.
    With scheduler=None the clock is request-driven: start/cancel only track
    state and the caller evaluates the deadline on each incoming request.
    """

    def __init__(self, time_limit_seconds: int, scheduler=None, interval: float = TICK_SECONDS):
        self.time_limit_seconds = max(0, int(time_limit_seconds or 0))
        self.scheduler = scheduler
        self.interval = interval
        self._handle = None
        self._running = False

    @property
    def limited(self) -> bool:
        return self.time_limit_seconds > 0

    @property
    def running(self) -> bool:
        return self._running

    def remaining(self, start_instant: float, now: float) -> Optional[int]:
        if not self.limited:
            return None
        return remaining(start_instant, self.time_limit_seconds, now)

    def check(self, start_instant: float, now: float) -> None:
        if self.limited and remaining(start_instant, self.time_limit_seconds, now) == 0:
            raise TimeExpiredError(
                f"Time limit of {self.time_limit_seconds // 60} min reached.",
                time_limit_seconds=self.time_limit_seconds,
            )

    def start(self, on_tick: Callable[[], None]) -> None:
        if not self.limited or self._running:
            return
        self._running = True
        if self.scheduler is not None:
            self._handle = self.scheduler.call_every(self.interval, on_tick)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._running = False


__all__ = ["TICK_SECONDS", "remaining", "time_used", "IntervalHandle", "ThreadScheduler", "CountdownClock"]
