"""
Ad guard for Sponsor Muter.

The reaction engine for one bound route. Every tick (mutation burst, poll or
route change) it classifies the page and drives the rest:

    NONE -> ACTIVE*   mute (if audible), show overlay, open skip window,
                      arm stall watchdog, count the ad
    ACTIVE* (steady)  re-assert mute, seek ad to end (inside the skip window)
    ACTIVE* -> NONE   restore audio (if still ours), hide overlay,
                      close skip window, disarm watchdog

Sponsored short-form items are handed to the skip scheduler on every tick;
its cooldown decides whether anything happens.
"""

import logging
import random
import threading
import time
from collections import deque
from datetime import datetime
from typing import Callable, Optional

from audio import VolumeController
from config import MuterConfig
from environment import Environment, PlaybackSurface
from health import StallGuard
from overlay import AdOverlay
from signals import DetectionResult, InterruptionState, SignalDetector
from skip_scheduler import SkipScheduler
from timeline import Timeline

logger = logging.getLogger(__name__)


class AdGuard:
    """
    Detection-and-reaction state machine.

    Attached to an ObservationSession by the RouteBinder while a guarded
    route is showing, detached when the route changes away.
    """

    def __init__(self, env: Environment, timeline: Timeline, config: MuterConfig = None,
                 jitter: Callable[[float, float], float] = random.uniform):
        self.env = env
        self.timeline = timeline
        self.config = config or MuterConfig()

        self.detector = SignalDetector(env)
        self.volume = VolumeController()
        self.scheduler = SkipScheduler(env, self.config, jitter=jitter)
        self.stall_guard = StallGuard(self.config.stall_timeout)
        self.overlay = AdOverlay(env)

        self.session = None
        self.state = InterruptionState.NONE
        self.last_result: Optional[DetectionResult] = None
        self.interruption_started_at: Optional[float] = None
        self._audio_pending = False
        self._pending_tick = None
        self.tick_count = 0

        # Reporting only
        self.ad_count = 0
        self.detection_history = deque(maxlen=self.config.history_size)

        self.paused_until = 0.0
        self._state_lock = threading.Lock()

    # ===== Session lifecycle =====

    def attach(self, session):
        """Start reacting on this session's timers."""
        self.session = session
        self.scheduler.attach(session)
        self.stall_guard.attach(session)
        self.state = InterruptionState.NONE
        self.interruption_started_at = None
        self._audio_pending = False

    def detach(self):
        """
        Stop reacting. The overlay is forced hidden and audio ownership is
        dropped without a restore; the video element may already be gone.
        """
        if self.session is not None:
            self.session.cancel(self._pending_tick)
        self._pending_tick = None

        self.overlay.hide(force=True)
        self.volume.release()
        self.scheduler.detach()
        self.stall_guard.detach()

        if self.state.is_active and self.interruption_started_at is not None:
            self._finish_history_entry(self.timeline.now() - self.interruption_started_at)
        self.state = InterruptionState.NONE
        self.interruption_started_at = None
        self._audio_pending = False
        self.session = None

    def _session_active(self) -> bool:
        return self.session is not None and self.session.active

    # ===== Ticks =====

    def request_tick(self, source: str = 'mutation'):
        """Coalesce a burst of notifications into one tick."""
        if not self._session_active():
            return
        if self._pending_tick is not None and not self._pending_tick.cancelled:
            return
        self._pending_tick = self.session.call_later(
            self.config.mutation_debounce, lambda: self._run_requested_tick(source), name='tick-request'
        )

    def _run_requested_tick(self, source: str):
        self._pending_tick = None
        self.tick(source)

    def tick(self, source: str = 'poll') -> InterruptionState:
        """Classify the page and react to any change."""
        if not self._session_active():
            return self.state
        self.tick_count += 1

        if self.is_paused():
            if self.state.is_active:
                self._end_interruption('paused')
            return self.state

        result = self.detector.inspect()
        self.last_result = result
        surface = self._surface()

        if result.sponsored_short and result.dominant_item is not None:
            self.scheduler.request_short_skip(result.dominant_item)

        if result.state.is_active:
            if not self.state.is_active:
                self._start_interruption(result, surface, source)
            elif self._audio_pending:
                self._claim_audio(surface)
            elif surface is not None:
                self.volume.reassert_during_interruption(surface)

            if self._seek_allowed(result):
                self.scheduler.seek_to_end(surface)

        elif self.state.is_active:
            self._end_interruption(source, surface)

        self.state = result.state
        return self.state

    def _surface(self) -> Optional[PlaybackSurface]:
        try:
            return self.env.playback_surface()
        except Exception as e:
            logger.debug(f"[AdGuard] No playback surface: {e}")
            return None

    def _seek_allowed(self, result: DetectionResult) -> bool:
        # A stray skip control alone never moves playback
        if 'structural' not in result.signals and not result.sponsored_short:
            return False
        return self.scheduler.in_window()

    def _claim_audio(self, surface: Optional[PlaybackSurface]):
        if surface is None:
            # Video element not there yet; try again next tick
            self._audio_pending = True
            return
        self._audio_pending = False
        self.volume.on_interruption_start(surface)

    def _start_interruption(self, result: DetectionResult, surface: Optional[PlaybackSurface],
                            source: str):
        now = self.session.now()
        self.interruption_started_at = now
        self.ad_count += 1

        label = '+'.join(result.signals)
        logger.warning(f"AD STARTED #{self.ad_count} ({label}, via {source})")
        self._add_history_entry(result)

        self._claim_audio(surface)
        self.overlay.show(label)
        self.scheduler.begin_interruption(now)
        self.stall_guard.arm(now)

    def _end_interruption(self, source: str, surface: Optional[PlaybackSurface] = None):
        elapsed = 0.0
        if self.interruption_started_at is not None and self.session is not None:
            elapsed = self.session.now() - self.interruption_started_at

        self.volume.on_interruption_end(surface if surface is not None else self._surface())
        self.overlay.hide()
        self.scheduler.end_interruption()
        self.scheduler.cancel_short_skip()
        self.stall_guard.disarm()
        self._finish_history_entry(elapsed)

        self.state = InterruptionState.NONE
        self.interruption_started_at = None
        self._audio_pending = False
        logger.warning(f"AD ENDED after {elapsed:.1f}s ({source})")

    # ===== History =====

    def _add_history_entry(self, result: DetectionResult):
        try:
            path = self.env.current_path()
        except Exception:
            path = None
        self.detection_history.append({
            'time': datetime.now().strftime('%H:%M:%S'),
            'timestamp': time.time(),
            'ad_number': self.ad_count,
            'state': result.state.value,
            'signals': list(result.signals),
            'path': path,
            'duration': None,
        })

    def _finish_history_entry(self, elapsed: Optional[float] = None):
        if not self.detection_history:
            return
        entry = self.detection_history[-1]
        if entry['duration'] is None and elapsed is not None:
            entry['duration'] = round(elapsed, 1)

    # ===== Pause =====

    def pause(self, duration_seconds: float):
        """Suspend reactions; the next tick ends any active ad normally."""
        with self._state_lock:
            self.paused_until = self.timeline.now() + duration_seconds
        logger.info(f"[AdGuard] Paused for {duration_seconds:.0f}s")

    def resume(self):
        with self._state_lock:
            self.paused_until = 0.0
        logger.info("[AdGuard] Resumed")

    def is_paused(self) -> bool:
        with self._state_lock:
            return self.timeline.now() < self.paused_until

    def pause_remaining(self) -> int:
        with self._state_lock:
            return max(0, int(self.paused_until - self.timeline.now()))

    # ===== Status =====

    def get_status_dict(self) -> dict:
        """Current state for the web UI."""
        stall = self.stall_guard.get_status()
        status = {
            'state': self.state.value,
            'blocking': self.overlay.is_visible,
            'blocking_source': self.overlay.source,
            'signals': list(self.last_result.signals) if self.last_result else [],
            'ad_count': self.ad_count,
            'tick_count': self.tick_count,
            'paused': self.is_paused(),
            'pause_remaining': self.pause_remaining(),
            'stall_armed': stall.armed,
            'stall_count': stall.stall_count,
        }
        status.update(self.volume.get_status())
        status.update(self.scheduler.get_status())
        return status
