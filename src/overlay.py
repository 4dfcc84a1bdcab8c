"""
Ad overlay control for Sponsor Muter.

Tracks whether the substitute visual is up and only calls into the
environment on an actual change. How the overlay looks is up to the
environment (browser.py draws a full-viewport image).
"""

import logging
import threading
from typing import Optional

from environment import Environment

logger = logging.getLogger(__name__)


class AdOverlay:
    """Idempotent show/hide wrapper over the environment's overlay."""

    def __init__(self, env: Environment):
        self.env = env
        self._visible = False
        self._source: Optional[str] = None
        self._lock = threading.Lock()
        self.show_count = 0

    def show(self, source: str = 'default') -> bool:
        """
        Show the overlay.

        Args:
            source: Which signals triggered it (for logging/status)

        Returns:
            True if the overlay was newly shown
        """
        with self._lock:
            if self._visible:
                self._source = source
                return False

            try:
                self.env.show_overlay()
            except Exception as e:
                logger.error(f"[Overlay] Error showing overlay: {e}")
                return False

            self._visible = True
            self._source = source
            self.show_count += 1
            logger.info(f"[Overlay] Showing ({source})")
            return True

    def hide(self, force: bool = False) -> bool:
        """
        Hide the overlay.

        Args:
            force: Call into the environment even if we think it is hidden

        Returns:
            True if the environment was asked to hide it
        """
        with self._lock:
            if not self._visible and not force:
                return False

            was_visible = self._visible
            self._visible = False
            self._source = None

            try:
                self.env.hide_overlay()
            except Exception as e:
                logger.error(f"[Overlay] Error hiding overlay: {e}")
                return False

            if was_visible:
                logger.info("[Overlay] Hidden")
            return True

    @property
    def is_visible(self) -> bool:
        return self._visible

    @property
    def source(self) -> Optional[str]:
        return self._source
