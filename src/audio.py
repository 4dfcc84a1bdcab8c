"""
Volume control for Sponsor Muter.

Mutes the video element during ads and restores it afterwards, without ever
clobbering a choice the user made.

Ownership rules:
- We only claim the mute if audio was audible when the ad started.
- A snapshot of the original volume/mute is taken exactly once per claimed ad.
- On ad end we restore only if the element is still exactly as we left it
  (muted, volume 0). If anything else touched it meanwhile, we leave it alone.
- Ownership is derived from the snapshot, so the two cannot disagree.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from environment import PlaybackSurface, SurfaceUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AudioSnapshot:
    """Audio state captured when we took over the mute."""
    saved_volume: float
    saved_muted: bool


def _is_silenced(surface: PlaybackSurface) -> bool:
    return bool(surface.muted) or surface.volume == 0


class VolumeController:
    """
    Owns the mute/volume override on the playback surface.

    Only this class writes mute and volume while an ad is showing.
    """

    def __init__(self):
        self._snapshot: Optional[AudioSnapshot] = None
        self._lock = threading.Lock()
        self.restore_count = 0

    @property
    def muted_by_guard(self) -> bool:
        return self._snapshot is not None

    @property
    def snapshot(self) -> Optional[AudioSnapshot]:
        return self._snapshot

    def on_interruption_start(self, surface: PlaybackSurface) -> bool:
        """
        Take over the mute if audio is currently audible.

        Returns:
            True if ownership was claimed
        """
        with self._lock:
            if self._snapshot is not None:
                return False

            try:
                if _is_silenced(surface):
                    logger.info("[VolumeController] Already silenced - leaving audio alone")
                    return False

                snapshot = AudioSnapshot(
                    saved_volume=float(surface.volume),
                    saved_muted=bool(surface.muted),
                )
                surface.muted = True
                try:
                    surface.volume = 0.0
                except SurfaceUnavailable:
                    # Not claimed, so nothing would unmute it later
                    surface.muted = snapshot.saved_muted
                    raise
            except SurfaceUnavailable as e:
                logger.warning(f"[VolumeController] Cannot mute, surface unavailable: {e}")
                return False

            self._snapshot = snapshot
            logger.info(f"[VolumeController] Audio MUTED (saved volume {snapshot.saved_volume:.2f})")
            return True

    def on_interruption_end(self, surface: Optional[PlaybackSurface]) -> bool:
        """
        Give the mute back.

        Returns:
            True if the saved audio state was restored
        """
        with self._lock:
            snapshot = self._snapshot
            if snapshot is None:
                return False
            self._snapshot = None

            if surface is None:
                logger.warning("[VolumeController] Surface gone - ownership dropped without restore")
                return False

            try:
                if not (surface.muted and surface.volume == 0):
                    logger.info("[VolumeController] Audio changed during ad - not restoring")
                    return False

                surface.volume = snapshot.saved_volume
                surface.muted = snapshot.saved_muted
            except SurfaceUnavailable as e:
                logger.warning(f"[VolumeController] Cannot restore, surface unavailable: {e}")
                return False

            self.restore_count += 1
            logger.info(f"[VolumeController] Audio UNMUTED (volume {snapshot.saved_volume:.2f})")
            return True

    def reassert_during_interruption(self, surface: PlaybackSurface) -> bool:
        """
        Re-apply mute if something re-enabled audio mid-ad.

        Back-to-back ads can re-initialise the player; the original snapshot
        is kept.

        Returns:
            True if the mute had to be re-applied
        """
        with self._lock:
            if self._snapshot is None:
                return False

            try:
                if surface.muted and surface.volume == 0:
                    return False
                surface.muted = True
                surface.volume = 0.0
            except SurfaceUnavailable as e:
                logger.debug(f"[VolumeController] Cannot re-assert mute: {e}")
                return False

            logger.info("[VolumeController] Audio re-enabled during ad - muted again")
            return True

    def release(self):
        """Drop ownership without restoring (the surface may be gone)."""
        with self._lock:
            if self._snapshot is not None:
                logger.info("[VolumeController] Ownership released without restore")
            self._snapshot = None

    def get_status(self) -> dict:
        """Current ownership state."""
        with self._lock:
            snapshot = self._snapshot
            return {
                'muted_by_guard': snapshot is not None,
                'saved_volume': snapshot.saved_volume if snapshot else None,
                'saved_muted': snapshot.saved_muted if snapshot else None,
                'restore_count': self.restore_count,
            }
