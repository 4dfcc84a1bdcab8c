"""
In-memory document for driving the guard without a browser.

Elements declare which selector strings they answer to instead of going
through a CSS engine; queries match on those strings in document order.
"""

import itertools
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from environment import CLICK_SEQUENCE, ComputedStyle, Environment, PlaybackSurface, Rect, SurfaceUnavailable


class FakeElement:
    """A node in the fake document."""

    def __init__(self, selectors=(), classes=(), text='', style=None, rect=None,
                 enabled=True, obscured=False, on_click=None, on_activate=None):
        self.selectors = set(selectors)
        self.classes = set(classes)
        self.text = text
        self.style = style or ComputedStyle()
        self.rect = rect or Rect(top=10, left=10, width=120, height=40)
        self.enabled = enabled
        self.obscured = obscured
        self.on_click = on_click
        self.on_activate = on_activate
        self.attached = True
        self.parent = None
        self.children = []

    def matches(self, selectors):
        return any(selector in self.selectors for selector in selectors)

    def walk(self):
        for child in self.children:
            yield child
            yield from child.walk()

    def __repr__(self):
        return f"<FakeElement {sorted(self.selectors)}>"


class FakeSurface(PlaybackSurface):
    """A <video> element."""

    def __init__(self, muted=False, volume=0.8, duration=30.0, current_time=0.0):
        self.muted = muted
        self.volume = volume
        self.duration = duration
        self.current_time = current_time


class VolumeLockedSurface(FakeSurface):
    """A <video> element whose volume can be read but not written."""

    def __init__(self, **kwargs):
        self.volume_writes_fail = False
        super().__init__(**kwargs)

    @property
    def volume(self):
        return self._volume

    @volume.setter
    def volume(self, value):
        if self.volume_writes_fail:
            raise SurfaceUnavailable('volume write rejected')
        self._volume = value


class DetachedSurface(PlaybackSurface):
    """A <video> element that has been removed from the page."""

    @property
    def muted(self):
        raise SurfaceUnavailable('detached')

    @property
    def volume(self):
        raise SurfaceUnavailable('detached')


class FakeClock:
    """Manually advanced clock for Timeline."""

    def __init__(self, start=0.0):
        self.t = start

    def __call__(self):
        return self.t


def advance(timeline, clock, seconds):
    """Move the clock forward, firing every timer at its own due time."""
    end = clock.t + seconds
    while True:
        due = timeline.next_due()
        if due is None or due > end:
            break
        clock.t = max(clock.t, due)
        timeline.run_due()
    clock.t = end
    timeline.run_due()


class FakeEnvironment(Environment):
    """Environment over a FakeElement tree, recording every action."""

    def __init__(self, path='/', viewport=800.0):
        self.root = FakeElement(selectors=('html',))
        self.path = path
        self.viewport = viewport
        self.surface = None

        self._ids = itertools.count(1)
        self.mutation_observers = {}
        self.visibility_observers = {}
        self.navigation_callbacks = []
        self.disconnected = []

        self.dispatched = []
        self.activated = []
        self.scrolled_into_view = []
        self.scrolled_by = []
        self.overlay_visible = False
        self.overlay_shows = 0
        self.overlay_hides = 0
        self.reload_count = 0
        self.retained = {}

    # ===== Building the document =====

    def add(self, element, parent=None):
        element.parent = parent or self.root
        element.parent.children.append(element)
        return element

    def remove(self, element):
        if element.parent is not None:
            element.parent.children.remove(element)
        element.parent = None
        element.attached = False
        for child in element.walk():
            child.attached = False

    def elements(self):
        return [el for el in self.root.walk() if el.attached]

    # ===== Driving notifications =====

    def mutate(self):
        for callback in list(self.mutation_observers.values()):
            callback()

    def make_visible(self, handle):
        for handles, _, callback in list(self.visibility_observers.values()):
            if any(h is handle for h in handles):
                callback(handle)

    def navigate(self, path, notify=True):
        self.path = path
        if notify:
            for callback in list(self.navigation_callbacks):
                callback()

    # ===== Environment =====

    def query_first(self, selectors):
        for el in self.elements():
            if el.matches(selectors):
                return el
        return None

    def query_all(self, selectors):
        return [el for el in self.elements() if el.matches(selectors)]

    def query_within(self, root, selectors):
        for el in root.walk():
            if el.attached and el.matches(selectors):
                return el
        return None

    def has_class(self, handle, name):
        return name in handle.classes

    def computed_style(self, handle):
        return handle.style

    def bounding_rect(self, handle):
        return handle.rect

    def viewport_height(self):
        return self.viewport

    def is_attached(self, handle):
        return handle.attached

    def is_obscured(self, handle):
        return handle.obscured

    def is_enabled(self, handle):
        return handle.enabled

    def text(self, handle):
        return handle.text

    def next_sibling(self, handle):
        siblings = handle.parent.children if handle.parent else []
        for i, el in enumerate(siblings):
            if el is handle and i + 1 < len(siblings):
                return siblings[i + 1]
        return None

    def retain(self, handle):
        self.retained[handle] = self.retained.get(handle, 0) + 1

    def release(self, handle):
        count = self.retained.get(handle, 0) - 1
        if count > 0:
            self.retained[handle] = count
        else:
            self.retained.pop(handle, None)

    def observe_mutations(self, root, config, callback):
        token = next(self._ids)
        self.mutation_observers[token] = callback
        return token

    def observe_visibility(self, handles, threshold, callback):
        token = next(self._ids)
        self.visibility_observers[token] = (list(handles), threshold, callback)
        return token

    def disconnect(self, token):
        self.disconnected.append(token)
        self.mutation_observers.pop(token, None)
        self.visibility_observers.pop(token, None)

    def on_navigation_finished(self, callback):
        self.navigation_callbacks.append(callback)

    def current_path(self):
        return self.path

    def dispatch_interaction(self, handle, sequence=CLICK_SEQUENCE):
        self.dispatched.append((handle, tuple(sequence)))
        if handle.on_click:
            handle.on_click()

    def activate_directly(self, handle):
        self.activated.append(handle)
        if handle.on_activate:
            handle.on_activate()

    def scroll_into_view(self, handle):
        self.scrolled_into_view.append(handle)

    def scroll_by(self, dy):
        self.scrolled_by.append(dy)

    def playback_surface(self):
        return self.surface

    def show_overlay(self):
        self.overlay_visible = True
        self.overlay_shows += 1

    def hide_overlay(self):
        self.overlay_visible = False
        self.overlay_hides += 1

    def force_reload(self):
        self.reload_count += 1
