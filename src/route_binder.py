"""
Route binding for Sponsor Muter.

YouTube is a single-page app: the document survives navigation, so the
guard has to attach and detach itself as the route changes. The binder
watches navigation-finished events and, because those are not always
emitted, also polls the current path on a fixed interval. Both paths go
through the same idempotent check_route().

Each bind creates an ObservationSession that owns every timer and observer
started while bound. Unbinding closes the session, and any delayed callback
from an old session finds its generation stale and does nothing.
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import urlsplit

from config import MuterConfig
from environment import MUTATION_CONFIG, Environment, ObserverToken
from timeline import Timeline, TimerHandle

logger = logging.getLogger(__name__)

GUARDED_ROUTE_PATTERNS = [
    re.compile(r'^/watch(?:/|$)'),
    re.compile(r'^/shorts/[^/]+'),
    re.compile(r'^/live/[^/]+'),
    re.compile(r'^/playlist(?:/|$)'),
    re.compile(r'^/(?:@[^/]+|channel/[^/]+|c/[^/]+|user/[^/]+)/live(?:/|$)'),
]


def is_guarded_route(path: Optional[str]) -> bool:
    """True if the page at this path can play video worth guarding."""
    if not path:
        return False
    route = urlsplit(path).path or '/'
    return any(pattern.match(route) for pattern in GUARDED_ROUTE_PATTERNS)


@dataclass
class RouteBinding:
    """Where we are and whether the guard is attached."""
    current_path: Optional[str] = None
    is_bound: bool = False


class ObservationSession:
    """
    Owns every timer and observer started while a route is bound.

    Callbacks registered through the session are dropped once it is closed
    or a newer session has replaced it.
    """

    def __init__(self, env: Environment, timeline: Timeline, generation: int,
                 current_generation: Callable[[], int]):
        self.env = env
        self.timeline = timeline
        self.generation = generation
        self._current_generation = current_generation
        self.closed = False
        self._timers = set()
        self._tokens = []

    @property
    def active(self) -> bool:
        return not self.closed and self._current_generation() == self.generation

    def now(self) -> float:
        return self.timeline.now()

    def _guarded(self, callback: Callable):
        def run(*args):
            if not self.active:
                logger.debug(f"[Session] Dropped stale callback (generation {self.generation})")
                return
            callback(*args)
        return run

    def call_later(self, delay: float, callback: Callable[[], None], name: str = '') -> TimerHandle:
        guarded = self._guarded(callback)

        def fire():
            self._timers.discard(handle)
            guarded()

        handle = self.timeline.call_later(delay, fire, name=name)
        self._timers.add(handle)
        return handle

    def call_every(self, interval: float, callback: Callable[[], None], name: str = '') -> TimerHandle:
        handle = self.timeline.call_every(interval, self._guarded(callback), name=name)
        self._timers.add(handle)
        return handle

    def cancel(self, handle: Optional[TimerHandle]):
        if handle is None:
            return
        handle.cancel()
        self._timers.discard(handle)

    def observe_mutations(self, root, config: dict, callback: Callable[[], None]) -> ObserverToken:
        token = self.env.observe_mutations(root, config, self._guarded(callback))
        self._tokens.append(token)
        return token

    def observe_visibility(self, handles, threshold: float,
                           callback: Callable) -> ObserverToken:
        token = self.env.observe_visibility(handles, threshold, self._guarded(callback))
        self._tokens.append(token)
        return token

    def disconnect(self, token: Optional[ObserverToken]):
        if token is None:
            return
        if token in self._tokens:
            self._tokens.remove(token)
        try:
            self.env.disconnect(token)
        except Exception as e:
            logger.debug(f"[Session] Disconnect failed: {e}")

    @property
    def pending_timers(self) -> int:
        return sum(1 for handle in self._timers if not handle.cancelled)

    def close(self):
        """Cancel every timer and disconnect every observer."""
        if self.closed:
            return
        self.closed = True

        for handle in self._timers:
            handle.cancel()
        self._timers.clear()

        for token in self._tokens:
            try:
                self.env.disconnect(token)
            except Exception as e:
                logger.debug(f"[Session] Disconnect failed: {e}")
        self._tokens.clear()


class RouteBinder:
    """
    Binds the guard to guarded routes and unbinds it everywhere else.

    States: Unbound -> Bound when the path matches a guarded route,
    Bound -> Unbound otherwise.
    """

    def __init__(self, env: Environment, timeline: Timeline, guard, config: MuterConfig = None):
        """
        Initialize route binder.

        Args:
            env: Environment to observe
            timeline: Timer queue shared with the rest of the guard
            guard: AdGuard to attach/detach
            config: Timing configuration
        """
        self.env = env
        self.timeline = timeline
        self.guard = guard
        self.config = config or MuterConfig()

        self.binding = RouteBinding()
        self.generation = 0
        self.session: Optional[ObservationSession] = None
        self.bind_count = 0

        self._poll_handle: Optional[TimerHandle] = None
        self._running = False
        self._nav_hooked = False

    def start(self):
        """Hook navigation events, start the route poll and check the current path."""
        if self._running:
            return
        self._running = True

        if not self._nav_hooked:
            self.env.on_navigation_finished(self._on_navigation_finished)
            self._nav_hooked = True

        self._poll_handle = self.timeline.call_every(
            self.config.route_poll_interval,
            lambda: self.check_route('poll'),
            name='route-poll',
        )
        logger.info("[RouteBinder] Started")
        self.check_route('init')

    def stop(self):
        """Stop watching navigation and detach the guard."""
        if not self._running:
            return
        self._running = False
        self.timeline.cancel(self._poll_handle)
        self._poll_handle = None
        self._unbind('stop')
        logger.info("[RouteBinder] Stopped")

    def _on_navigation_finished(self):
        if self._running:
            self.check_route('navigate')

    def check_route(self, source: str = 'poll') -> bool:
        """
        Re-evaluate the binding if the path changed.

        Returns:
            True if the path changed
        """
        try:
            path = self.env.current_path()
        except Exception as e:
            logger.debug(f"[RouteBinder] Could not read path: {e}")
            return False

        if path == self.binding.current_path:
            return False

        previous = self.binding.current_path
        self.binding.current_path = path
        logger.info(f"[RouteBinder] Route changed ({source}): {previous} -> {path}")

        if is_guarded_route(path):
            if self.binding.is_bound:
                # Guarded to guarded: same player, just look again now
                self.guard.tick('route')
            else:
                self._bind(source)
        else:
            self._unbind(source)
        return True

    def reset(self, source: str = 'reset'):
        """Drop the current binding and evaluate the route from scratch."""
        self._unbind(source)
        self.binding.current_path = None
        if self._running:
            self.check_route(source)

    def _next_generation(self) -> int:
        self.generation += 1
        return self.generation

    def _bind(self, source: str):
        session = ObservationSession(
            self.env, self.timeline, self._next_generation(), lambda: self.generation
        )
        self.session = session
        self.binding.is_bound = True
        self.bind_count += 1
        logger.info(f"[RouteBinder] Bound to video ({source}, generation {session.generation})")

        self.guard.attach(session)
        try:
            session.observe_mutations(None, MUTATION_CONFIG, lambda: self.guard.request_tick('mutation'))
        except Exception as e:
            logger.warning(f"[RouteBinder] Mutation observer unavailable, polling only: {e}")
        session.call_every(self.config.tick_interval, lambda: self.guard.tick('poll'), name='tick')

        # Don't wait for the first mutation
        self.guard.tick('init')

    def _unbind(self, source: str):
        if not self.binding.is_bound:
            return
        self.binding.is_bound = False
        session = self.session
        self.session = None
        self._next_generation()

        if session is not None:
            session.close()
        self.guard.detach()
        logger.info(f"[RouteBinder] Unbound ({source})")

    def get_status(self) -> dict:
        return {
            'path': self.binding.current_path,
            'bound': self.binding.is_bound,
            'generation': self.generation,
            'bind_count': self.bind_count,
        }
