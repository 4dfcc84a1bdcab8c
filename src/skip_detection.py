"""
Skip control detection for Sponsor Muter.

Finds skip controls in the document and decides whether one can be
activated right now.
"""

import logging
import re
from typing import Optional, Sequence, Tuple

from environment import Environment, ElementHandle

logger = logging.getLogger(__name__)

# Skip-type controls for long-form ads (old and current player markup)
SKIP_SELECTORS = (
    '.ytp-ad-skip-button',
    '.ytp-ad-skip-button-modern',
    '.ytp-skip-ad-button',
    'button[id^="skip-button"]',
    '.videoAdUiSkipButton',
)

# "Skip 5", "Skip Ad in 5", "Skip in 10s", "Video will play after ad 3"
_COUNTDOWN_RE = re.compile(r'(?:skip|play)\s*(?:ads?\s*)?(?:after\s*ads?\s*)?(?:in\s*)?(\d+)\s*s?\b')


def parse_skip_label(text: Optional[str]) -> Tuple[bool, int]:
    """
    Check a skip control's label for a running countdown.

    - "" (icon-only control) = ready
    - "Skip", "Skip Ad", "Skip Ads", "Skip >" = ready
    - "Skip 5", "Skip Ad in 5", "Skip in 5s" = NOT ready (countdown active)
    - "Skip in 0" = ready (countdown finished before the label updated)

    Returns:
        Tuple of (is_ready, countdown_seconds)
    """
    label = (text or '').lower().strip()
    if not label:
        return (True, 0)

    match = _COUNTDOWN_RE.search(label)
    if match:
        countdown = int(match.group(1))
        if countdown > 0:
            return (False, countdown)
    return (True, 0)


def is_actionable(env: Environment, handle: ElementHandle) -> bool:
    """
    True if the control is attached, rendered, unobscured, enabled and
    has a non-zero size. Lookup failures count as not actionable.
    """
    try:
        if not env.is_attached(handle):
            return False

        style = env.computed_style(handle)
        if not style.is_displayed or style.pointer_events == 'none':
            return False

        if not env.bounding_rect(handle).has_size:
            return False

        if not env.is_enabled(handle):
            return False

        return not env.is_obscured(handle)

    except Exception as e:
        logger.debug(f"[SkipDetection] Actionability check failed: {e}")
        return False


def is_skip_control_ready(env: Environment, handle: ElementHandle) -> bool:
    """True if the skip control is actionable and not counting down."""
    if not is_actionable(env, handle):
        return False

    try:
        is_ready, countdown = parse_skip_label(env.text(handle))
        if not is_ready:
            logger.debug(f"[SkipDetection] Skip countdown active ({countdown}s)")
        return is_ready

    except Exception as e:
        logger.debug(f"[SkipDetection] Label check failed: {e}")
        return False


def find_ready_skip_control(env: Environment,
                            selectors: Sequence[str] = SKIP_SELECTORS) -> Optional[ElementHandle]:
    """Return the first skip control that can be activated now, if any."""
    try:
        candidates = env.query_all(selectors)
    except Exception as e:
        logger.debug(f"[SkipDetection] Skip control lookup failed: {e}")
        return None

    for handle in candidates:
        if is_skip_control_ready(env, handle):
            return handle
    return None
