"""
Skip scheduling for Sponsor Muter.

Two independent ways of cutting an ad short:

Long-form ads (in-player):
- A skip window opens skip_min_delay after the ad starts and closes at
  skip_max_delay. Inside it we poll for a skip control that can actually be
  clicked and activate it once: full pointer/mouse/click sequence first,
  direct activation only if that had no visible effect.
- Every tick inside the same window we also try to jump the playback
  position to the end of the ad.

Short-form items (Shorts feed):
- When the dominant item carries a sponsor badge we advance to the next item
  after a jittered delay, at most once per cooldown.
- A visibility watcher confirms the advance when a different item becomes
  the visible one. An unconfirmed advance is never retried. A pending
  advance is dropped if its item stops being the sponsored dominant one.
"""

import logging
import math
import random
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from config import MuterConfig
from environment import (
    CLICK_SEQUENCE, Environment, ElementHandle, PlaybackSurface, SurfaceUnavailable,
)
from signals import SHORT_BADGE_SELECTORS, SHORT_ITEM_SELECTORS, find_dominant_item
from skip_detection import find_ready_skip_control, is_actionable

logger = logging.getLogger(__name__)

NEXT_SHORT_SELECTORS = (
    '#navigation-button-down button',
    'button[aria-label="Next video"]',
    '.navigation-button-down button',
)


@dataclass
class SkipWindow:
    """When we look for a skip control, relative to the ad start."""
    window_start: float
    window_end: float
    activated: bool = False


@dataclass
class SkipSession:
    """The last short-form skip and when the next one may be scheduled."""
    started_at: float = -math.inf
    cooldown_until: float = -math.inf


class SkipScheduler:
    """
    Schedules skip attempts on the timers of the current session.

    Only this class writes the playback position while an ad is showing.
    """

    def __init__(self, env: Environment, config: MuterConfig = None,
                 jitter: Callable[[float, float], float] = random.uniform):
        """
        Initialize skip scheduler.

        Args:
            env: Environment to act on
            config: Timing configuration
            jitter: Returns a random delay in [low, high]; tests pass a stub
        """
        self.env = env
        self.config = config or MuterConfig()
        self.jitter = jitter

        self.session = None

        # Long-form window state
        self.window: Optional[SkipWindow] = None
        self._interruption_seq = 0
        self._window_open_timer = None
        self._window_poll = None
        self.activation_count = 0
        self.seek_count = 0

        # Short-form state
        self.short_skip = SkipSession()
        self.short_trigger_times = deque(maxlen=20)
        self._pending_short = None
        self._pending_item = None
        self._confirm_token = None
        self._confirm_timer = None
        self._confirm_origin = None
        self.short_skip_count = 0
        self.short_confirmed_count = 0

    def attach(self, session):
        """Use this session's timers from now on."""
        self.cancel_all()
        self.session = session

    def detach(self):
        self.cancel_all()
        self.session = None

    def _session_active(self) -> bool:
        return self.session is not None and self.session.active

    # ===== Long-form skip window =====

    def begin_interruption(self, started_at: float):
        """Install the skip window for a new ad, replacing any previous one."""
        self._cancel_window()
        self._interruption_seq += 1
        seq = self._interruption_seq

        if not self._session_active():
            return

        self.window = SkipWindow(
            window_start=started_at + self.config.skip_min_delay,
            window_end=started_at + self.config.skip_max_delay,
        )
        delay = max(0.0, self.window.window_start - self.session.now())
        self._window_open_timer = self.session.call_later(
            delay, lambda: self._open_window(seq), name='skip-window-open'
        )
        logger.debug(f"[SkipScheduler] Skip window opens in {delay:.1f}s")

    def end_interruption(self):
        """Close the skip window; pending polls for this ad become no-ops."""
        self._cancel_window()
        self._interruption_seq += 1
        self.window = None

    def in_window(self) -> bool:
        """True while now is inside the current ad's skip window."""
        window = self.window
        if window is None or not self._session_active():
            return False
        return window.window_start <= self.session.now() <= window.window_end

    def _is_current(self, seq: int) -> bool:
        return seq == self._interruption_seq and self.window is not None

    def _open_window(self, seq: int):
        self._window_open_timer = None
        if not self._is_current(seq):
            return

        self._window_poll = self.session.call_every(
            self.config.skip_poll_interval, lambda: self._poll_window(seq), name='skip-window-poll'
        )
        self._poll_window(seq)

    def _poll_window(self, seq: int):
        if not self._is_current(seq) or self.window.activated:
            self._stop_window_poll()
            return

        now = self.session.now()
        if now > self.window.window_end:
            logger.info("[SkipScheduler] Skip window closed without a skip control")
            self._stop_window_poll()
            return

        control = find_ready_skip_control(self.env)
        if control is None:
            return

        # One activation per ad, whatever the outcome
        self.window.activated = True
        self._stop_window_poll()
        self._activate(control)

    def _activate(self, control: ElementHandle):
        self.activation_count += 1
        logger.info("[SkipScheduler] Skip control ready - clicking")

        try:
            self.env.dispatch_interaction(control, CLICK_SEQUENCE)
        except Exception as e:
            logger.warning(f"[SkipScheduler] Click sequence failed: {e}")

        if self._had_effect(control):
            logger.info("[SkipScheduler] Ad skipped")
            return

        logger.info("[SkipScheduler] Click had no effect - activating directly")
        try:
            self.env.activate_directly(control)
        except Exception as e:
            logger.warning(f"[SkipScheduler] Direct activation failed: {e}")

    def _had_effect(self, control: ElementHandle) -> bool:
        """A skip worked if the control went away or stopped rendering."""
        try:
            if not self.env.is_attached(control):
                return True
            return not self.env.computed_style(control).is_displayed
        except Exception as e:
            # Unknown counts as done: no second activation
            logger.debug(f"[SkipScheduler] Could not check skip effect: {e}")
            return True

    def _stop_window_poll(self):
        if self._window_poll is not None and self.session is not None:
            self.session.cancel(self._window_poll)
        self._window_poll = None

    def _cancel_window(self):
        if self.session is not None:
            self.session.cancel(self._window_open_timer)
        self._window_open_timer = None
        self._stop_window_poll()

    def seek_to_end(self, surface: Optional[PlaybackSurface]) -> bool:
        """
        Jump the ad's playback position to its duration.

        Returns:
            True if the position was moved
        """
        if not self.config.seek_to_end or surface is None:
            return False

        try:
            duration = float(surface.duration)
            position = float(surface.current_time)
            if not math.isfinite(duration) or duration <= 0:
                return False
            if math.isfinite(position) and position >= duration:
                return False
            surface.current_time = duration
        except (SurfaceUnavailable, TypeError, ValueError) as e:
            logger.debug(f"[SkipScheduler] Seek to end failed: {e}")
            return False

        self.seek_count += 1
        logger.debug(f"[SkipScheduler] Seeked ad to end ({duration:.1f}s)")
        return True

    # ===== Short-form skip =====

    def request_short_skip(self, item: ElementHandle) -> bool:
        """
        Schedule an advance past a sponsored short-form item.

        Returns:
            True if a skip was scheduled
        """
        if not self._session_active():
            return False

        now = self.session.now()
        if now < self.short_skip.cooldown_until:
            logger.debug(
                f"[SkipScheduler] Short skip in cooldown "
                f"({self.short_skip.cooldown_until - now:.1f}s left)"
            )
            return False

        self.short_skip = SkipSession(
            started_at=now,
            cooldown_until=now + self.config.short_skip_cooldown,
        )
        self.short_trigger_times.append(now)
        self.short_skip_count += 1

        self.cancel_short_skip()
        delay = self.config.short_skip_base_delay + self.jitter(0.0, self.config.short_skip_variance)
        self._pending_short = self.session.call_later(
            delay, lambda: self._advance_short(item), name='short-skip'
        )
        self._pending_item = item
        self.env.retain(item)
        logger.info(f"[SkipScheduler] Sponsored short - skipping in {delay:.2f}s")
        return True

    def _advance_short(self, item: ElementHandle):
        self._pending_short = None
        self._release_pending_item()
        if not self._still_sponsored(item):
            logger.info("[SkipScheduler] Sponsored short no longer showing - advance dropped")
            return
        method = self._activate_next_control()
        if method is None:
            method = self._scroll_past(item)
        logger.info(f"[SkipScheduler] Advanced past sponsored short ({method})")
        self._watch_confirmation(item)

    def _still_sponsored(self, item: ElementHandle) -> bool:
        """True if item is still the dominant short and still carries its badge."""
        try:
            current = find_dominant_item(self.env)
            if current is None or not self.env.is_same_element(current, item):
                return False
            return self.env.query_within(item, SHORT_BADGE_SELECTORS) is not None
        except Exception as e:
            logger.debug(f"[SkipScheduler] Could not re-check short: {e}")
            return False

    def cancel_short_skip(self):
        """Drop a scheduled advance; the cooldown stays in force."""
        if self.session is not None:
            self.session.cancel(self._pending_short)
        self._pending_short = None
        self._release_pending_item()

    def _release_pending_item(self):
        if self._pending_item is not None:
            self.env.release(self._pending_item)
        self._pending_item = None

    def _activate_next_control(self) -> Optional[str]:
        try:
            control = self.env.query_first(NEXT_SHORT_SELECTORS)
            if control is None or not is_actionable(self.env, control):
                return None
            self.env.dispatch_interaction(control, CLICK_SEQUENCE)
            return 'next-button'
        except Exception as e:
            logger.debug(f"[SkipScheduler] Next control failed: {e}")
            return None

    def _scroll_past(self, item: ElementHandle) -> str:
        try:
            sibling = self.env.next_sibling(item)
            if sibling is not None:
                self.env.scroll_into_view(sibling)
                return 'scroll-to-sibling'
            self.env.scroll_by(self.env.viewport_height())
            return 'scroll-by-viewport'
        except Exception as e:
            logger.warning(f"[SkipScheduler] Scroll fallback failed: {e}")
            return 'failed'

    def _watch_confirmation(self, origin: ElementHandle):
        self._stop_confirmation()
        if not self._session_active():
            return

        try:
            candidates = self.env.query_all(SHORT_ITEM_SELECTORS)
            self._confirm_token = self.session.observe_visibility(
                candidates, self.config.short_confirm_threshold, self._on_item_visible
            )
        except Exception as e:
            logger.debug(f"[SkipScheduler] Could not watch for confirmation: {e}")
            return

        self._confirm_origin = origin
        self.env.retain(origin)

        self._confirm_timer = self.session.call_later(
            self.config.short_confirm_timeout, self._confirmation_timed_out, name='short-confirm'
        )

    def _on_item_visible(self, handle: ElementHandle):
        origin = self._confirm_origin
        if origin is None:
            return
        try:
            if self.env.is_same_element(handle, origin):
                return
        except Exception as e:
            logger.debug(f"[SkipScheduler] Could not compare items: {e}")
            return

        self.short_confirmed_count += 1
        logger.info("[SkipScheduler] Short skip confirmed")
        self._stop_confirmation()

    def _confirmation_timed_out(self):
        self._confirm_timer = None
        logger.debug("[SkipScheduler] Short skip not confirmed")
        self._stop_confirmation()

    def _stop_confirmation(self):
        if self.session is not None:
            self.session.disconnect(self._confirm_token)
            self.session.cancel(self._confirm_timer)
        if self._confirm_origin is not None:
            self.env.release(self._confirm_origin)
        self._confirm_token = None
        self._confirm_timer = None
        self._confirm_origin = None

    def cancel_all(self):
        """Cancel every pending timer and watcher."""
        self.end_interruption()
        self.cancel_short_skip()
        self._stop_confirmation()

    @property
    def short_skip_pending(self) -> bool:
        return self._pending_short is not None and not self._pending_short.cancelled

    def get_status(self) -> dict:
        window = self.window
        return {
            'skip_window_open': window is not None and not window.activated,
            'skip_window_start': window.window_start if window else None,
            'skip_window_end': window.window_end if window else None,
            'skip_activations': self.activation_count,
            'seek_count': self.seek_count,
            'short_skip_pending': self.short_skip_pending,
            'last_short_skip': (
                self.short_skip.started_at if math.isfinite(self.short_skip.started_at) else None
            ),
            'short_skips': self.short_skip_count,
            'short_skips_confirmed': self.short_confirmed_count,
        }
