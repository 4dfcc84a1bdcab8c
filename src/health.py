"""
Stall watchdog for Sponsor Muter.

If the ad overlay has been up continuously for longer than stall_timeout,
the player is assumed stuck (an ad that never ends, a broken player state)
and the stall callback fires once. The application reloads the page from
there: a fresh page is better than audio muted indefinitely.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class StallStatus:
    """Current watchdog state."""
    armed: bool = False
    armed_at: float = -1
    deadline: float = -1
    stall_count: int = 0


class StallGuard:
    """
    One-shot watchdog per ad.

    arm() when the overlay goes up, disarm() when it comes down. If neither
    disarm() nor a new arm() happens before the deadline, on_stall fires.
    """

    def __init__(self, stall_timeout: float = 10.0):
        """
        Initialize stall guard.

        Args:
            stall_timeout: Seconds an ad may stay on screen before recovery
        """
        self.stall_timeout = stall_timeout
        self.session = None

        self._timer = None
        self._armed_at: Optional[float] = None
        self._fired = False
        self.stall_count = 0

        self._on_stall: Optional[Callable] = None

    def on_stall(self, callback: Callable):
        """Set callback for a stuck ad."""
        self._on_stall = callback

    def attach(self, session):
        self.disarm()
        self.session = session

    def detach(self):
        self.disarm()
        self.session = None

    @property
    def is_armed(self) -> bool:
        return self._armed_at is not None

    def arm(self, started_at: float):
        """Start the countdown for an ad that began at started_at."""
        self.disarm()
        if self.session is None or not self.session.active:
            return

        self._armed_at = started_at
        self._fired = False
        delay = max(0.0, started_at + self.stall_timeout - self.session.now())
        self._timer = self.session.call_later(delay, self._check, name='stall-guard')
        logger.debug(f"[StallGuard] Armed ({delay:.1f}s)")

    def disarm(self):
        if self._timer is not None and self.session is not None:
            self.session.cancel(self._timer)
        self._timer = None
        self._armed_at = None

    def _check(self):
        self._timer = None
        if self._armed_at is None or self._fired:
            return

        elapsed = self.session.now() - self._armed_at
        self._fired = True
        self.stall_count += 1
        logger.error(f"[StallGuard] Ad stuck on screen for {elapsed:.1f}s - forcing reload")

        if self._on_stall:
            try:
                self._on_stall()
            except Exception as e:
                logger.error(f"[StallGuard] Stall recovery failed: {e}")

    def get_status(self) -> StallStatus:
        """Get current watchdog status."""
        status = StallStatus(stall_count=self.stall_count)
        if self._armed_at is not None:
            status.armed = True
            status.armed_at = self._armed_at
            status.deadline = self._armed_at + self.stall_timeout
        return status
