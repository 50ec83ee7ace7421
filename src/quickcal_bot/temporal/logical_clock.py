"""
Logical clock with manually fired timers.

Drop-in clock and timer factory for the tracker when wall-clock time is
not wanted: transcript replay and tests. Time only moves when advance()
or advance_to() is called, and timers due in between fire in deadline
order with the clock set to each timer's deadline.
"""
from typing import Callable


class LogicalTimer:
    """Handle returned by LogicalClock.call_later()."""

    def __init__(self, due_at: int, callback: Callable[[], None]):
        self.due_at = due_at
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def __repr__(self) -> str:
        return f"LogicalTimer(due_at={self.due_at}, cancelled={self.cancelled})"


class LogicalClock:
    """
    Epoch-ms clock that only moves when told to.

    Example:
        clock = LogicalClock(start_ms=1_700_000_000_000)
        tracker = ConversationTracker(
            analyzer=analyzer,
            clock=clock.now,
            timer_factory=clock.call_later,
        )
        tracker.add_message("chat", "lunch friday?", "alice")
        clock.advance(45_000)  # fires the debounce timer
    """

    def __init__(self, start_ms: int = 0):
        self._now = start_ms
        self._timers: list[LogicalTimer] = []

    def now(self) -> int:
        return self._now

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> LogicalTimer:
        timer = LogicalTimer(self._now + int(delay_seconds * 1000), callback)
        self._timers.append(timer)
        return timer

    @property
    def armed(self) -> list[LogicalTimer]:
        """Timers that have neither fired nor been cancelled."""
        return [t for t in self._timers if not t.cancelled]

    def advance(self, ms: int) -> int:
        """Move time forward by ms, firing due timers. Returns how many fired."""
        return self.advance_to(self._now + ms)

    def advance_to(self, target_ms: int) -> int:
        """Move time forward to target_ms, firing due timers in deadline order."""
        if target_ms < self._now:
            raise ValueError(f"Cannot move clock backwards ({target_ms} < {self._now})")

        fired = 0
        while True:
            self._timers = [t for t in self._timers if not t.cancelled]
            due = [t for t in self._timers if t.due_at <= target_ms]
            if not due:
                break
            timer = min(due, key=lambda t: t.due_at)
            self._timers.remove(timer)
            self._now = timer.due_at
            timer.callback()
            fired += 1

        self._now = target_ms
        return fired
