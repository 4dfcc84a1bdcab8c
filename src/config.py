"""
Configuration for Sponsor Muter.

All timing values are in seconds.
"""

from dataclasses import dataclass
from typing import Optional

DEFAULT_OVERLAY_IMAGE = 'https://ttalesinteractive.com/graphics/gg.png'


@dataclass
class MuterConfig:
    """Configuration for the interruption guard."""
    # Browser
    start_url: str = "https://www.youtube.com/"
    cdp_port: Optional[int] = None  # Attach to a running browser instead of launching
    headless: bool = False
    webui_port: int = 8080  # 0 disables the web UI

    # Observation
    tick_interval: float = 0.5  # Classification poll while bound
    mutation_debounce: float = 0.05  # Coalesce mutation bursts into one tick
    route_poll_interval: float = 0.4  # SPA navigation events are not always emitted

    # Long-form skip window (relative to interruption start)
    skip_min_delay: float = 4.5  # Skip buttons rarely appear sooner
    skip_max_delay: float = 30.0
    skip_poll_interval: float = 0.2
    seek_to_end: bool = True

    # Short-form skipping
    short_skip_base_delay: float = 0.6
    short_skip_variance: float = 0.8
    short_skip_cooldown: float = 3.0
    short_confirm_threshold: float = 0.51
    short_confirm_timeout: float = 4.0

    # Watchdog
    stall_timeout: float = 10.0

    # Reporting
    history_size: int = 50
    overlay_image: str = DEFAULT_OVERLAY_IMAGE

    def __post_init__(self):
        intervals = {
            'tick_interval': self.tick_interval,
            'route_poll_interval': self.route_poll_interval,
            'skip_poll_interval': self.skip_poll_interval,
            'stall_timeout': self.stall_timeout,
        }
        for name, value in intervals.items():
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")

        delays = {
            'mutation_debounce': self.mutation_debounce,
            'skip_min_delay': self.skip_min_delay,
            'short_skip_base_delay': self.short_skip_base_delay,
            'short_skip_variance': self.short_skip_variance,
            'short_skip_cooldown': self.short_skip_cooldown,
            'short_confirm_timeout': self.short_confirm_timeout,
        }
        for name, value in delays.items():
            if value < 0:
                raise ValueError(f"{name} must not be negative, got {value}")

        if self.skip_min_delay > self.skip_max_delay:
            raise ValueError(
                f"skip_min_delay ({self.skip_min_delay}) is after "
                f"skip_max_delay ({self.skip_max_delay})"
            )
        if not 0 < self.short_confirm_threshold <= 1:
            raise ValueError(
                f"short_confirm_threshold must be in (0, 1], got {self.short_confirm_threshold}"
            )
        if self.history_size < 1:
            raise ValueError(f"history_size must be at least 1, got {self.history_size}")
