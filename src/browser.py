"""
Playwright browser integration for Sponsor Muter.

Implements the Environment capabilities on top of a Playwright sync Page:

- element queries and measurements go through page/element evaluate()
- MutationObserver, IntersectionObserver and YouTube's yt-navigate-finish
  event are installed in the page and report back through one exposed
  binding (__smNotify)
- notifications are queued and only delivered from pump(), so guard code
  never runs inside a Playwright event dispatch
- element handles are disposed by release_handles() after every loop pass
  unless a holder retained them; a single-page app session never navigates,
  so nothing else would free them

Launching: either starts Chromium or attaches to an already running browser
over the DevTools protocol (after probing its /json/version endpoint).
"""

import logging
import math
from collections import deque
from typing import Callable, Iterable, List, Optional, Sequence
from urllib.parse import urlsplit

import requests
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from config import MuterConfig
from environment import (
    CLICK_SEQUENCE, ComputedStyle, ElementHandle, Environment, PlaybackSurface, Rect,
    SurfaceUnavailable,
)

logger = logging.getLogger(__name__)

BINDING_NAME = '__smNotify'
OVERLAY_HOST_ID = '__sponsor_muter_overlay'

# Runs in every new document; safe to run twice
_INSTALL_SCRIPT = r"""
(() => {
  if (window.__sponsorMuter) return;
  window.__sponsorMuter = { observers: new Map(), nextId: 1 };
  window.addEventListener('yt-navigate-finish', () => {
    if (window.__smNotify) window.__smNotify('navigate', 0, -1);
  });
})();
"""

_OBSERVE_MUTATIONS = r"""
(root, cfg) => {
  const sm = window.__sponsorMuter;
  const id = sm.nextId++;
  let pending = false;
  const observer = new MutationObserver(() => {
    if (pending) return;
    pending = true;
    setTimeout(() => { pending = false; window.__smNotify('mutation', id, -1); }, 50);
  });
  observer.observe(root || document.documentElement, cfg);
  sm.observers.set(id, observer);
  return id;
}
"""

_OBSERVE_VISIBILITY = r"""
([els, threshold]) => {
  const sm = window.__sponsorMuter;
  const id = sm.nextId++;
  const observer = new IntersectionObserver((entries) => {
    for (const entry of entries) {
      if (entry.isIntersecting && entry.intersectionRatio >= threshold) {
        window.__smNotify('visible', id, els.indexOf(entry.target));
      }
    }
  }, { threshold: [threshold] });
  els.forEach((el) => observer.observe(el));
  sm.observers.set(id, observer);
  return id;
}
"""

_DISCONNECT = r"""
(id) => {
  const sm = window.__sponsorMuter;
  const observer = sm && sm.observers.get(id);
  if (observer) { observer.disconnect(); sm.observers.delete(id); }
}
"""

_COMPUTED_STYLE = r"""
(el) => {
  const s = getComputedStyle(el);
  return {
    display: s.display,
    visibility: s.visibility,
    opacity: s.opacity,
    pointerEvents: s.pointerEvents,
    backgroundColor: s.backgroundColor,
  };
}
"""

_BOUNDING_RECT = r"""
(el) => {
  const r = el.getBoundingClientRect();
  return { top: r.top, left: r.left, width: r.width, height: r.height };
}
"""

# Our overlay host has pointer-events:none, so elementFromPoint looks through it
_IS_OBSCURED = r"""
(el) => {
  const r = el.getBoundingClientRect();
  const x = r.left + r.width / 2;
  const y = r.top + r.height / 2;
  if (x < 0 || y < 0 || x >= window.innerWidth || y >= window.innerHeight) return true;
  const hit = document.elementFromPoint(x, y);
  return !(hit && (hit === el || el.contains(hit)));
}
"""

_ACTIVE_VIDEO = r"""
() => {
  const videos = [...document.querySelectorAll('video')];
  return videos.find((v) => !v.paused) || videos[0] || null;
}
"""

_SHOW_OVERLAY = r"""
([hostId, src]) => {
  let host = document.getElementById(hostId);
  if (!host) {
    host = document.createElement('div');
    host.id = hostId;
    host.style.cssText =
      'all:initial;position:fixed;inset:0;z-index:2147483647;pointer-events:none;display:none;';
    const shadow = host.attachShadow({ mode: 'open' });
    const img = document.createElement('img');
    img.src = src;
    img.alt = 'Advertisement';
    img.style.cssText = 'all:initial;width:100vw;height:100vh;object-fit:cover;user-select:none;';
    shadow.appendChild(img);
    document.documentElement.appendChild(host);
  }
  host.style.display = 'block';
}
"""

_HIDE_OVERLAY = r"""
(hostId) => {
  const host = document.getElementById(hostId);
  if (host) host.style.display = 'none';
}
"""

_SCROLL_FEED = r"""
(dy) => {
  const feed = document.querySelector('#shorts-container') || document.scrollingElement;
  feed.scrollBy({ top: dy, behavior: 'smooth' });
}
"""

_GET_PROPERTY = "(el, name) => el.isConnected ? { value: el[name] } : null"
_SET_PROPERTY = "(el, [name, value]) => { if (!el.isConnected) return false; el[name] = value; return true; }"


def probe_debug_endpoint(port: int, timeout: float = 2.0) -> Optional[dict]:
    """
    Check a browser's DevTools endpoint.

    Returns:
        The /json/version payload, or None if nothing answers
    """
    try:
        response = requests.get(f'http://127.0.0.1:{port}/json/version', timeout=timeout)
        if response.status_code != 200:
            return None
        return response.json()
    except (requests.RequestException, ValueError) as e:
        logger.debug(f"[Browser] DevTools endpoint on port {port} not available: {e}")
        return None


class VideoSurface(PlaybackSurface):
    """The page's <video> element."""

    _PROPERTIES = {
        'muted': 'muted',
        'volume': 'volume',
        'duration': 'duration',
        'current_time': 'currentTime',
    }

    def __init__(self, handle):
        object.__setattr__(self, '_handle', handle)

    def __getattr__(self, name):
        prop = VideoSurface._PROPERTIES.get(name)
        if prop is None:
            raise AttributeError(name)
        try:
            result = self._handle.evaluate(_GET_PROPERTY, prop)
        except PlaywrightError as e:
            raise SurfaceUnavailable(str(e)) from e
        if result is None:
            raise SurfaceUnavailable('video element detached')
        return result['value']

    def __setattr__(self, name, value):
        prop = VideoSurface._PROPERTIES.get(name)
        if prop is None:
            raise AttributeError(name)
        try:
            ok = self._handle.evaluate(_SET_PROPERTY, [prop, value])
        except PlaywrightError as e:
            raise SurfaceUnavailable(str(e)) from e
        if not ok:
            raise SurfaceUnavailable('video element detached')


class PlaywrightEnvironment(Environment):
    """Environment capabilities over a Playwright sync Page."""

    def __init__(self, page, overlay_image: str):
        self.page = page
        self.overlay_image = overlay_image

        self._events = deque()
        self._observers = {}
        self._navigation_callbacks: List[Callable[[], None]] = []
        self._load_callbacks: List[Callable[[], None]] = []
        self._installed = False

        # Handles handed out since the last release_handles(), and pins by id()
        self._handles = []
        self._retained = {}

    def install(self):
        """Expose the notification binding and hook page events."""
        if self._installed:
            return
        self.page.expose_binding(BINDING_NAME, self._on_notify)
        self.page.add_init_script(_INSTALL_SCRIPT)
        self.page.on('framenavigated', self._on_frame_navigated)
        self.page.on('load', self._on_load)
        try:
            self.page.evaluate(_INSTALL_SCRIPT)
        except PlaywrightError as e:
            logger.debug(f"[Browser] Install into current document failed: {e}")
        self._installed = True
        logger.info("[Browser] Page hooks installed")

    # ===== Event plumbing =====

    def _on_notify(self, source, kind, observer_id, index):
        self._events.append((kind, observer_id, index))

    def _on_frame_navigated(self, frame):
        if frame == self.page.main_frame:
            self._events.append(('navigate', 0, -1))

    def _on_load(self, page=None):
        self._events.append(('load', 0, -1))

    def on_document_loaded(self, callback: Callable[[], None]):
        """Call back after every full document load (observers are gone then)."""
        self._load_callbacks.append(callback)

    def pump(self, timeout: float):
        """Let the page run for timeout seconds, then deliver queued events."""
        self.page.wait_for_timeout(max(10, int(timeout * 1000)))
        self.deliver_events()

    def deliver_events(self):
        while self._events:
            kind, observer_id, index = self._events.popleft()
            try:
                self._deliver(kind, observer_id, index)
            except Exception as e:
                logger.error(f"[Browser] Error handling {kind} event: {e}")

    def _deliver(self, kind, observer_id, index):
        if kind == 'navigate':
            for callback in list(self._navigation_callbacks):
                callback()
        elif kind == 'load':
            # Every in-page observer and handle died with the old document
            self._observers.clear()
            self._forget_handles()
            for callback in list(self._load_callbacks):
                callback()
        elif observer_id in self._observers:
            _, callback, handles = self._observers[observer_id]
            if kind == 'mutation':
                callback()
            elif kind == 'visible' and handles and 0 <= index < len(handles):
                callback(handles[index])

    # ===== Handle lifetime =====

    def _track(self, handle):
        if handle is not None:
            self._handles.append(handle)
        return handle

    def _as_element(self, js_handle) -> Optional[ElementHandle]:
        element = js_handle.as_element()
        if element is None:
            self._dispose(js_handle)
            return None
        return self._track(element)

    def _dispose(self, handle):
        try:
            handle.dispose()
        except PlaywrightError as e:
            logger.debug(f"[Browser] Handle dispose failed: {e}")

    def retain(self, handle: ElementHandle):
        entry = self._retained.setdefault(id(handle), [handle, 0])
        entry[1] += 1

    def release(self, handle: ElementHandle):
        entry = self._retained.get(id(handle))
        if entry is None:
            return
        entry[1] -= 1
        if entry[1] <= 0:
            del self._retained[id(handle)]
            # Freed on the next sweep
            self._handles.append(handle)

    def release_handles(self):
        handles, self._handles = self._handles, []
        seen = set()
        for handle in handles:
            key = id(handle)
            if key in self._retained or key in seen:
                continue
            seen.add(key)
            self._dispose(handle)

    def _forget_handles(self):
        self._handles = []
        self._retained.clear()

    @property
    def live_handles(self) -> int:
        return len({id(h) for h in self._handles} | set(self._retained))

    # ===== Element queries =====

    def query_first(self, selectors: Sequence[str]) -> Optional[ElementHandle]:
        try:
            return self._track(self.page.query_selector(', '.join(selectors)))
        except PlaywrightError as e:
            logger.debug(f"[Browser] query_first failed: {e}")
            return None

    def query_all(self, selectors: Sequence[str]) -> list:
        try:
            return [self._track(h) for h in self.page.query_selector_all(', '.join(selectors))]
        except PlaywrightError as e:
            logger.debug(f"[Browser] query_all failed: {e}")
            return []

    def query_within(self, root: ElementHandle, selectors: Sequence[str]) -> Optional[ElementHandle]:
        try:
            return self._track(root.query_selector(', '.join(selectors)))
        except PlaywrightError as e:
            logger.debug(f"[Browser] query_within failed: {e}")
            return None

    def has_class(self, handle: ElementHandle, name: str) -> bool:
        return bool(handle.evaluate('(el, name) => el.classList.contains(name)', name))

    def computed_style(self, handle: ElementHandle) -> ComputedStyle:
        raw = handle.evaluate(_COMPUTED_STYLE)
        try:
            opacity = float(raw.get('opacity', 1))
        except (TypeError, ValueError):
            opacity = 1.0
        return ComputedStyle(
            display=raw.get('display', ''),
            visibility=raw.get('visibility', ''),
            opacity=opacity,
            pointer_events=raw.get('pointerEvents', ''),
            background_color=raw.get('backgroundColor', ''),
        )

    def bounding_rect(self, handle: ElementHandle) -> Rect:
        raw = handle.evaluate(_BOUNDING_RECT)
        return Rect(top=raw['top'], left=raw['left'], width=raw['width'], height=raw['height'])

    def viewport_height(self) -> float:
        try:
            return float(self.page.evaluate('() => window.innerHeight'))
        except PlaywrightError as e:
            logger.debug(f"[Browser] viewport_height failed: {e}")
            return math.nan

    def is_attached(self, handle: ElementHandle) -> bool:
        try:
            return bool(handle.evaluate('(el) => el.isConnected'))
        except PlaywrightError:
            return False

    def is_obscured(self, handle: ElementHandle) -> bool:
        return bool(handle.evaluate(_IS_OBSCURED))

    def is_enabled(self, handle: ElementHandle) -> bool:
        return handle.is_enabled()

    def text(self, handle: ElementHandle) -> str:
        return handle.text_content() or ''

    def next_sibling(self, handle: ElementHandle) -> Optional[ElementHandle]:
        return self._as_element(handle.evaluate_handle('(el) => el.nextElementSibling'))

    def is_same_element(self, first: ElementHandle, second: ElementHandle) -> bool:
        if first is second:
            return True
        return bool(first.evaluate('(a, b) => a === b', second))

    # ===== Observers =====

    def observe_mutations(self, root: Optional[ElementHandle], config: dict,
                          callback: Callable[[], None]):
        if root is None:
            observer_id = self.page.evaluate(
                f'(cfg) => ({_OBSERVE_MUTATIONS})(null, cfg)', config
            )
        else:
            observer_id = root.evaluate(_OBSERVE_MUTATIONS, config)
        self._observers[observer_id] = ('mutation', callback, None)
        logger.debug(f"[Browser] Mutation observer {observer_id} attached")
        return observer_id

    def observe_visibility(self, handles: Iterable[ElementHandle], threshold: float,
                           callback: Callable[[ElementHandle], None]):
        handles = list(handles)
        for handle in handles:
            self.retain(handle)
        observer_id = self.page.evaluate(_OBSERVE_VISIBILITY, [handles, threshold])
        self._observers[observer_id] = ('visible', callback, handles)
        return observer_id

    def disconnect(self, token):
        entry = self._observers.pop(token, None)
        if entry is None:
            return
        for handle in entry[2] or ():
            self.release(handle)
        try:
            self.page.evaluate(_DISCONNECT, token)
        except PlaywrightError as e:
            logger.debug(f"[Browser] Disconnect {token} failed: {e}")

    # ===== Navigation =====

    def on_navigation_finished(self, callback: Callable[[], None]):
        self._navigation_callbacks.append(callback)

    def current_path(self) -> str:
        parts = urlsplit(self.page.url)
        path = parts.path or '/'
        return f"{path}?{parts.query}" if parts.query else path

    # ===== Interaction =====

    def dispatch_interaction(self, handle: ElementHandle, sequence: Sequence[str] = CLICK_SEQUENCE):
        for event in sequence:
            handle.dispatch_event(event, {'bubbles': True, 'cancelable': True, 'composed': True})

    def activate_directly(self, handle: ElementHandle):
        handle.evaluate('(el) => el.click()')

    def scroll_into_view(self, handle: ElementHandle):
        handle.evaluate("(el) => el.scrollIntoView({ behavior: 'smooth', block: 'start' })")

    def scroll_by(self, dy: float):
        self.page.evaluate(_SCROLL_FEED, dy)

    # ===== Media and presentation =====

    def playback_surface(self) -> Optional[PlaybackSurface]:
        try:
            handle = self._as_element(self.page.evaluate_handle(_ACTIVE_VIDEO))
        except PlaywrightError as e:
            logger.debug(f"[Browser] Video lookup failed: {e}")
            return None
        return VideoSurface(handle) if handle is not None else None

    def show_overlay(self):
        self.page.evaluate(_SHOW_OVERLAY, [OVERLAY_HOST_ID, self.overlay_image])

    def hide_overlay(self):
        self.page.evaluate(_HIDE_OVERLAY, OVERLAY_HOST_ID)

    def force_reload(self):
        logger.warning("[Browser] Reloading page")
        self._observers.clear()
        self._forget_handles()
        try:
            self.page.reload(wait_until='domcontentloaded')
        except PlaywrightError as e:
            logger.error(f"[Browser] Reload failed: {e}")


class BrowserLauncher:
    """Starts Chromium (or attaches to a running one) and opens the page."""

    def __init__(self, config: MuterConfig = None):
        self.config = config or MuterConfig()
        self._playwright = None
        self._browser = None
        self._attached = False
        self.env: Optional[PlaywrightEnvironment] = None

    def start(self) -> PlaywrightEnvironment:
        self._playwright = sync_playwright().start()
        chromium = self._playwright.chromium

        if self.config.cdp_port:
            info = probe_debug_endpoint(self.config.cdp_port)
            if info is None:
                self.stop()
                raise RuntimeError(
                    f"No browser DevTools endpoint on port {self.config.cdp_port} "
                    f"(start Chrome with --remote-debugging-port={self.config.cdp_port})"
                )
            logger.info(f"[Browser] Attaching to {info.get('Browser', 'browser')} "
                        f"on port {self.config.cdp_port}")
            self._browser = chromium.connect_over_cdp(f"http://127.0.0.1:{self.config.cdp_port}")
            self._attached = True
            context = self._browser.contexts[0] if self._browser.contexts else self._browser.new_context()
            page = context.pages[0] if context.pages else context.new_page()
        else:
            logger.info(f"[Browser] Launching Chromium (headless={self.config.headless})")
            self._browser = chromium.launch(
                headless=self.config.headless,
                args=['--autoplay-policy=no-user-gesture-required'],
            )
            page = self._browser.new_page()

        self.env = PlaywrightEnvironment(page, overlay_image=self.config.overlay_image)
        self.env.install()

        if not self._attached or page.url in ('', 'about:blank'):
            logger.info(f"[Browser] Opening {self.config.start_url}")
            page.goto(self.config.start_url, wait_until='domcontentloaded')
        return self.env

    def stop(self):
        if self._browser is not None:
            try:
                self._browser.close()
            except PlaywrightError as e:
                logger.debug(f"[Browser] Close failed: {e}")
            self._browser = None
        if self._playwright is not None:
            try:
                self._playwright.stop()
            except Exception as e:
                logger.debug(f"[Browser] Playwright stop failed: {e}")
            self._playwright = None
        logger.info("[Browser] Stopped")
