"""
Request budget for amoCRM calls.

amoCRM throttles integrations aggressively, so list requests draw from a
fixed-window budget. The window is computed from the clock on every
acquisition: no background task and no lock held across a network call,
so a hung request can never stall the reset.
"""
import time
from dataclasses import dataclass, field
from typing import Callable

from relay.observability import get_logger

logger = get_logger(__name__)


@dataclass
class RequestBudget:
    """
    Fixed-window request counter.

    Args:
        limit: Requests allowed per window
        window: Window length in seconds
    """
    limit: int = 30
    window: float = 60.0
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    used: int = field(default=0, init=False)
    window_started: float = field(default=0.0, init=False)

    def __post_init__(self):
        self.window_started = self.clock()

    def _roll(self, now: float) -> None:
        if now - self.window_started >= self.window:
            self.used = 0
            self.window_started = now

    def try_acquire(self) -> bool:
        """Take one request from the budget; False if the window is spent."""
        now = self.clock()
        self._roll(now)
        if self.used >= self.limit:
            logger.warning(
                "amoCRM request budget exhausted",
                extra={"limit": self.limit, "reset_in_s": round(self.reset_in(), 1)},
            )
            return False
        self.used += 1
        return True

    def reset_in(self) -> float:
        """Seconds until the current window resets."""
        return max(0.0, self.window - (self.clock() - self.window_started))

    @property
    def remaining(self) -> int:
        self._roll(self.clock())
        return max(0, self.limit - self.used)

    def to_dict(self) -> dict:
        return {
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_in_s": round(self.reset_in(), 1),
        }
