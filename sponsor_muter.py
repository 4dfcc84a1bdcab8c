#!/usr/bin/env python3
"""
Sponsor Muter - in-page ad guard for YouTube in a Playwright-driven browser.

Architecture:
- Playwright launches Chromium (or attaches to a running one over CDP)
- The page reports DOM mutations and SPA navigations back through an
  exposed binding; notifications are queued and handled on the main loop
- RouteBinder attaches the AdGuard on video routes and detaches it elsewhere
- AdGuard classifies every tick and drives mute, overlay, skip and watchdog
- Flask web UI for status and pause/resume

Everything except the web UI runs on one thread: pump the browser, then fire
due timers.
"""

import argparse
import logging
import logging.handlers
import signal
import sys
import time
from pathlib import Path

from playwright.sync_api import Error as PlaywrightError

sys.path.insert(0, str(Path(__file__).parent / 'src'))

from ad_guard import AdGuard
from browser import BrowserLauncher
from config import MuterConfig
from route_binder import RouteBinder
from timeline import Timeline
from webui import WebUI

logger = logging.getLogger('SponsorMuter')

LOG_FILE = Path('/tmp/sponsor_muter.log')

# Longest the loop waits in the browser between timer checks
MAX_PUMP_INTERVAL = 0.1


def setup_logging(debug: bool = False, log_file: Path = LOG_FILE):
    """Root logger with rotation (max 5MB, keep 3 backups) plus stdout."""
    log_format = '%(asctime)s [%(levelname).1s] %(message)s'
    log_datefmt = '%Y-%m-%d %H:%M:%S'
    level = logging.DEBUG if debug else logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove any existing handlers to prevent duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    try:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=5*1024*1024,  # 5MB
            backupCount=3
        )
        file_handler.setFormatter(logging.Formatter(log_format, log_datefmt))
        file_handler.setLevel(level)
        root_logger.addHandler(file_handler)
    except OSError as e:
        print(f"Could not open log file {log_file}: {e}", file=sys.stderr)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(log_format, log_datefmt))
    console_handler.setLevel(level)
    root_logger.addHandler(console_handler)


class SponsorMuter:
    """Wires the browser, the guard, the route binder and the web UI."""

    def __init__(self, config: MuterConfig, log_file: Path = LOG_FILE):
        self.config = config
        self.log_file = log_file
        self.timeline = Timeline()
        self.launcher = BrowserLauncher(config)

        self.env = None
        self.guard = None
        self.binder = None
        self.webui = None

        self.running = False
        self.start_time = time.time()

    def start(self):
        self.env = self.launcher.start()

        self.guard = AdGuard(self.env, self.timeline, self.config)
        self.guard.stall_guard.on_stall(self._on_stall)

        self.binder = RouteBinder(self.env, self.timeline, self.guard, self.config)
        self.env.on_document_loaded(lambda: self.binder.reset('load'))
        self.binder.start()

        if self.config.webui_port:
            self.webui = WebUI(self, port=self.config.webui_port, log_file=self.log_file)
            self.webui.start()

        logger.info("Sponsor Muter started")

    def _on_stall(self):
        self.env.force_reload()
        self.binder.reset('reload')

    def run(self):
        """Run until stop() is requested or the browser goes away."""
        try:
            self.start()
            self.running = True
            while self.running:
                self.env.pump(self.timeline.time_until_next(MAX_PUMP_INTERVAL))
                self.timeline.run_due()
                self.env.release_handles()
        except PlaywrightError as e:
            if self.running:
                logger.error(f"Browser connection lost: {e}")
        finally:
            self.shutdown()

    def stop(self):
        """Ask the loop to exit; shutdown happens on the loop's thread."""
        self.running = False

    def shutdown(self):
        logger.info("Stopping...")
        self.running = False

        if self.binder:
            try:
                self.binder.stop()
            except Exception as e:
                logger.warning(f"Error detaching guard: {e}")

        if self.webui:
            self.webui.stop()

        self.launcher.stop()
        logger.info("Stopped")

    # ===== Web UI Methods =====

    def pause_blocking(self, duration_seconds: int = 120):
        """Pause the guard; the next tick ends any ad in progress."""
        self.guard.pause(duration_seconds)
        logger.info(f"[WebUI] Blocking paused for {duration_seconds}s")

    def resume_blocking(self):
        self.guard.resume()
        logger.info("[WebUI] Blocking resumed")

    @property
    def blocking_paused_until(self) -> float:
        """Pause deadline as a wall-clock timestamp, 0 if not paused."""
        remaining = self.guard.pause_remaining()
        return time.time() + remaining if remaining > 0 else 0

    @property
    def detection_history(self):
        return self.guard.detection_history if self.guard else []

    def get_status_dict(self) -> dict:
        """Get current status as dictionary for web API."""
        uptime = int(time.time() - self.start_time)
        status = {
            'uptime': uptime,
            'uptime_str': f"{uptime // 3600}h {(uptime % 3600) // 60}m",
        }
        if self.binder:
            status.update(self.binder.get_status())
        if self.guard:
            status.update(self.guard.get_status_dict())
        return status


def main():
    parser = argparse.ArgumentParser(
        description='Sponsor Muter - mutes, covers and skips YouTube ads in the browser'
    )
    parser.add_argument(
        '--url', '-u',
        default=MuterConfig.start_url,
        help=f'Page to open at launch (default: {MuterConfig.start_url})'
    )
    parser.add_argument(
        '--cdp-port',
        type=int,
        default=None,
        help='Attach to a browser already running with --remote-debugging-port'
    )
    parser.add_argument(
        '--headless',
        action='store_true',
        help='Launch Chromium headless'
    )
    parser.add_argument(
        '--webui-port',
        type=int,
        default=8080,
        help='Web UI port, 0 to disable (default: 8080)'
    )
    parser.add_argument(
        '--skip-min-delay',
        type=float,
        default=MuterConfig.skip_min_delay,
        help=f'Seconds into an ad before looking for a skip button (default: {MuterConfig.skip_min_delay})'
    )
    parser.add_argument(
        '--skip-max-delay',
        type=float,
        default=MuterConfig.skip_max_delay,
        help=f'Give up looking for a skip button after this many seconds (default: {MuterConfig.skip_max_delay})'
    )
    parser.add_argument(
        '--stall-timeout',
        type=float,
        default=MuterConfig.stall_timeout,
        help=f'Reload the page if an ad is still up after this many seconds (default: {MuterConfig.stall_timeout})'
    )
    parser.add_argument(
        '--no-seek',
        action='store_true',
        help='Do not jump ads to their end'
    )
    parser.add_argument(
        '--log-file',
        default=str(LOG_FILE),
        help=f'Log file (default: {LOG_FILE})'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Debug logging'
    )

    args = parser.parse_args()
    log_file = Path(args.log_file)
    setup_logging(args.debug, log_file)

    try:
        config = MuterConfig(
            start_url=args.url,
            cdp_port=args.cdp_port,
            headless=args.headless,
            webui_port=args.webui_port,
            skip_min_delay=args.skip_min_delay,
            skip_max_delay=args.skip_max_delay,
            stall_timeout=args.stall_timeout,
            seek_to_end=not args.no_seek,
        )
    except ValueError as e:
        parser.error(str(e))

    muter = SponsorMuter(config, log_file=log_file)

    def signal_handler(sig, frame):
        logger.info("Shutting down...")
        muter.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        muter.run()
    except RuntimeError as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == '__main__':
    main()
