"""
Environment capabilities consumed by the guard.

The guard never talks to a browser directly. Everything it needs from the
live document (element lookup, observers, the video element, the overlay)
goes through an Environment. browser.py provides the Playwright-backed one;
tests provide an in-memory document.

Element handles are opaque: the guard only passes them back into the
environment that produced them.
"""

import math
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Sequence

ElementHandle = Any
ObserverToken = Any

# Event sequence for a click that looks like a real one to page handlers
CLICK_SEQUENCE = ('pointerdown', 'mousedown', 'pointerup', 'mouseup', 'click')

# Mutation observation used while a route is bound
MUTATION_CONFIG = {'childList': True, 'subtree': True, 'attributes': True}


class SurfaceUnavailable(Exception):
    """The video element is gone or can no longer be read/written."""


@dataclass
class Rect:
    """Bounding rectangle in viewport coordinates."""
    top: float = 0.0
    left: float = 0.0
    width: float = 0.0
    height: float = 0.0

    @property
    def bottom(self) -> float:
        return self.top + self.height

    @property
    def has_size(self) -> bool:
        return (
            math.isfinite(self.width) and math.isfinite(self.height)
            and self.width > 0 and self.height > 0
        )


@dataclass
class ComputedStyle:
    """Subset of the rendered style the detector and skip logic look at."""
    display: str = 'block'
    visibility: str = 'visible'
    opacity: float = 1.0
    pointer_events: str = 'auto'
    background_color: str = 'rgba(0, 0, 0, 0)'

    @property
    def is_displayed(self) -> bool:
        return (
            self.display != 'none'
            and self.visibility not in ('hidden', 'collapse')
            and self.opacity > 0
        )


class PlaybackSurface:
    """
    The media element under guard.

    Implementations raise SurfaceUnavailable when the element has been
    detached or cannot be reached.
    """

    muted: bool
    volume: float
    duration: float
    current_time: float


class Environment:
    """Capability set supplied by a browser integration layer."""

    # Element queries

    def query_first(self, selectors: Sequence[str]) -> Optional[ElementHandle]:
        raise NotImplementedError

    def query_all(self, selectors: Sequence[str]) -> list:
        raise NotImplementedError

    def query_within(self, root: ElementHandle, selectors: Sequence[str]) -> Optional[ElementHandle]:
        raise NotImplementedError

    def has_class(self, handle: ElementHandle, name: str) -> bool:
        raise NotImplementedError

    def computed_style(self, handle: ElementHandle) -> ComputedStyle:
        raise NotImplementedError

    def bounding_rect(self, handle: ElementHandle) -> Rect:
        raise NotImplementedError

    def viewport_height(self) -> float:
        raise NotImplementedError

    def is_attached(self, handle: ElementHandle) -> bool:
        raise NotImplementedError

    def is_obscured(self, handle: ElementHandle) -> bool:
        raise NotImplementedError

    def is_enabled(self, handle: ElementHandle) -> bool:
        raise NotImplementedError

    def text(self, handle: ElementHandle) -> str:
        raise NotImplementedError

    def next_sibling(self, handle: ElementHandle) -> Optional[ElementHandle]:
        raise NotImplementedError

    def is_same_element(self, first: ElementHandle, second: ElementHandle) -> bool:
        return first is second

    # Handle lifetime

    def retain(self, handle: ElementHandle):
        """Keep handle alive past release_handles() until release() is called."""

    def release(self, handle: ElementHandle):
        """Undo one retain()."""

    def release_handles(self):
        """Free every handle handed out since the last call that nobody retained."""

    # Observers

    def observe_mutations(self, root: Optional[ElementHandle], config: dict,
                          callback: Callable[[], None]) -> ObserverToken:
        raise NotImplementedError

    def observe_visibility(self, handles: Iterable[ElementHandle], threshold: float,
                           callback: Callable[[ElementHandle], None]) -> ObserverToken:
        raise NotImplementedError

    def disconnect(self, token: ObserverToken):
        raise NotImplementedError

    # Navigation

    def on_navigation_finished(self, callback: Callable[[], None]):
        raise NotImplementedError

    def current_path(self) -> str:
        raise NotImplementedError

    # Interaction

    def dispatch_interaction(self, handle: ElementHandle, sequence: Sequence[str] = CLICK_SEQUENCE):
        raise NotImplementedError

    def activate_directly(self, handle: ElementHandle):
        raise NotImplementedError

    def scroll_into_view(self, handle: ElementHandle):
        raise NotImplementedError

    def scroll_by(self, dy: float):
        raise NotImplementedError

    # Media and presentation

    def playback_surface(self) -> Optional[PlaybackSurface]:
        raise NotImplementedError

    def show_overlay(self):
        raise NotImplementedError

    def hide_overlay(self):
        raise NotImplementedError

    def force_reload(self):
        raise NotImplementedError
