"""
Ad signal detection for Sponsor Muter.

Classifies the current page state from several independent signals:

- structural: player container carries an ad flag class
- color:      progress bar is painted in the ad hue (exact or fuzzy match)
- affordance: a skip-type control exists anywhere in the document
- badge:      the dominant short-form item carries a sponsor badge
- element:    an ad-specific element is rendered (countdown pie, ad badge text)

Any positive signal wins. Each predicate returns True, False or None
(unknown); unknown counts as negative, and a predicate that raises counts
as unknown. Nothing here writes to the page.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from environment import Environment, ElementHandle
from skip_detection import SKIP_SELECTORS

logger = logging.getLogger(__name__)

PLAYER_SELECTORS = ('.html5-video-player',)
PLAYER_AD_CLASSES = ('ad-showing', 'ad-interrupting')

PROGRESS_SELECTORS = ('.ytp-play-progress', '.ytp-ad-progress')

# Ad-specific elements that only count when actually rendered
AD_ELEMENT_SELECTORS = (
    '.ytp-ad-timed-pie-countdown-container',
    '.ad-simple-attributed-string.ytp-ad-badge__text--clean-player',
    '.ytp-ad-player-overlay',
    '[aria-label="Survey"]',
)

SHORT_ITEM_SELECTORS = ('ytd-reel-video-renderer', 'ytm-shorts-lockup-view-model')
SHORT_BADGE_SELECTORS = (
    'ad-badge-view-model',
    'ytd-ad-slot-renderer',
    '.ytd-ad-slot-renderer',
    '[aria-label="Sponsored"]',
)

# Ad progress bar yellow
AD_REFERENCE_COLOR = (255, 204, 0)

# Fuzzy ad-hue rule: bright, red/green dominant, little blue
AD_MIN_BRIGHTNESS = 110
AD_MIN_RED = 180
AD_MIN_GREEN = 140
AD_MAX_BLUE = 90
AD_MIN_RED_BLUE_GAP = 120

_RGB_RE = re.compile(r'rgba?\(\s*([\d.]+)[\s,]+([\d.]+)[\s,]+([\d.]+)(?:[\s,/]+([\d.]+%?))?\s*\)')
_HEX_RE = re.compile(r'#([0-9a-f]{6})\b')


class InterruptionState(Enum):
    """What is occupying the playback surface right now."""
    NONE = 'none'
    ACTIVE = 'active'
    ACTIVE_SKIPPABLE = 'active_skippable'

    @property
    def is_active(self) -> bool:
        return self is not InterruptionState.NONE


@dataclass
class DetectionResult:
    """One tick's classification with the evidence behind it."""
    state: InterruptionState = InterruptionState.NONE
    signals: List[str] = field(default_factory=list)
    dominant_item: Optional[ElementHandle] = None
    sponsored_short: bool = False


def parse_color(value: Optional[str]) -> Optional[np.ndarray]:
    """
    Parse a CSS colour into an RGB array.

    Returns None for unparseable or fully transparent colours.
    """
    if not value:
        return None
    value = value.strip().lower()

    match = _RGB_RE.search(value)
    if match:
        alpha = match.group(4)
        if alpha is not None:
            alpha_value = float(alpha[:-1]) / 100 if alpha.endswith('%') else float(alpha)
            if alpha_value <= 0:
                return None
        return np.array([float(match.group(i)) for i in (1, 2, 3)])

    match = _HEX_RE.search(value)
    if match:
        digits = match.group(1)
        return np.array([int(digits[i:i + 2], 16) for i in (0, 2, 4)], dtype=float)

    return None


def is_ad_color(value: Optional[str]) -> bool:
    """True if the colour is the ad hue, exactly or within the fuzzy rule."""
    rgb = parse_color(value)
    if rgb is None or not np.all(np.isfinite(rgb)):
        return False

    if np.array_equal(rgb, np.array(AD_REFERENCE_COLOR, dtype=float)):
        return True

    red, green, blue = rgb
    return bool(
        rgb.mean() >= AD_MIN_BRIGHTNESS
        and red >= AD_MIN_RED
        and green >= AD_MIN_GREEN
        and blue <= AD_MAX_BLUE
        and red - blue >= AD_MIN_RED_BLUE_GAP
    )


def visible_extents(env: Environment, items: Sequence[ElementHandle]) -> np.ndarray:
    """Vertical pixels of each item inside the viewport (0 when unmeasurable)."""
    viewport = env.viewport_height()
    if not math.isfinite(viewport) or viewport <= 0:
        return np.zeros(len(items))

    extents = np.zeros(len(items))
    for i, item in enumerate(items):
        try:
            rect = env.bounding_rect(item)
            extents[i] = min(rect.bottom, viewport) - max(rect.top, 0.0)
        except Exception as e:
            logger.debug(f"[SignalDetector] Could not measure item {i}: {e}")
    extents[~np.isfinite(extents)] = 0.0
    return np.clip(extents, 0.0, None)


def find_dominant_item(env: Environment,
                       selectors: Sequence[str] = SHORT_ITEM_SELECTORS) -> Optional[ElementHandle]:
    """
    The short-form item with the largest visible vertical extent.

    Ties go to document order (argmax returns the first maximum).
    """
    try:
        items = env.query_all(selectors)
        if not items:
            return None
        extents = visible_extents(env, items)
    except Exception as e:
        logger.debug(f"[SignalDetector] Dominant item lookup failed: {e}")
        return None

    best = int(np.argmax(extents))
    if extents[best] <= 0:
        return None
    return items[best]


class SignalDetector:
    """
    Multi-signal ad classifier.

    Predicates run in a fixed order and are combined with OR.
    """

    def __init__(self, env: Environment):
        self.env = env
        self.predicates: List[Tuple[str, Callable[[], Optional[bool]]]] = [
            ('structural', self._structural_signal),
            ('color', self._color_signal),
            ('affordance', self._affordance_signal),
            ('element', self._ad_element_signal),
        ]

    def classify(self) -> InterruptionState:
        """Current interruption state."""
        return self.inspect().state

    def inspect(self) -> DetectionResult:
        """Run every predicate and return the state with its evidence."""
        result = DetectionResult()

        for name, predicate in self.predicates:
            if self._evaluate(name, predicate):
                result.signals.append(name)

        # Dominance is recomputed every tick; scrolling is continuous
        result.dominant_item = find_dominant_item(self.env)
        if result.dominant_item is not None:
            if self._evaluate('badge', lambda: self._badge_signal(result.dominant_item)):
                result.signals.append('badge')
                result.sponsored_short = True

        if 'affordance' in result.signals:
            result.state = InterruptionState.ACTIVE_SKIPPABLE
        elif result.signals:
            result.state = InterruptionState.ACTIVE
        return result

    def _evaluate(self, name: str, predicate: Callable[[], Optional[bool]]) -> bool:
        try:
            return predicate() is True
        except Exception as e:
            logger.debug(f"[SignalDetector] {name} signal unavailable: {e}")
            return False

    def _structural_signal(self) -> Optional[bool]:
        player = self.env.query_first(PLAYER_SELECTORS)
        if player is None:
            return None
        return any(self.env.has_class(player, name) for name in PLAYER_AD_CLASSES)

    def _color_signal(self) -> Optional[bool]:
        bar = self.env.query_first(PROGRESS_SELECTORS)
        if bar is None:
            return None
        return is_ad_color(self.env.computed_style(bar).background_color)

    def _affordance_signal(self) -> Optional[bool]:
        # Presence alone counts, visible or not
        return self.env.query_first(SKIP_SELECTORS) is not None

    def _ad_element_signal(self) -> Optional[bool]:
        for handle in self.env.query_all(AD_ELEMENT_SELECTORS):
            try:
                if (self.env.computed_style(handle).is_displayed
                        and self.env.bounding_rect(handle).has_size):
                    return True
            except Exception as e:
                logger.debug(f"[SignalDetector] Ad element check failed: {e}")
        return False

    def _badge_signal(self, item: ElementHandle) -> Optional[bool]:
        return self.env.query_within(item, SHORT_BADGE_SELECTORS) is not None
