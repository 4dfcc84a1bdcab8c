"""
Sponsor Muter Web UI

Lightweight Flask-based web interface for monitoring and controlling the
guard while it runs.

Features:
- Status display (route binding, ad state, mute ownership, skip window)
- Pause/resume the guard (1/2/5/10 min presets)
- Recent detection history
- Log viewer

Nothing here touches the browser: pausing only sets a deadline that the
guard picks up on its next tick.
"""

import logging
import threading
import time
from pathlib import Path

from flask import Flask, jsonify, render_template_string

logger = logging.getLogger('SponsorMuter.WebUI')

PAUSE_PRESETS = (1, 2, 5, 10)

INDEX_PAGE = """<!doctype html>
<html>
<head><title>Sponsor Muter</title></head>
<body>
  <h1>Sponsor Muter</h1>
  <pre id="status">loading...</pre>
  <p>
    {% for minutes in presets %}
    <button onclick="fetch('/api/pause/{{ minutes }}', {method: 'POST'})">Pause {{ minutes }}m</button>
    {% endfor %}
    <button onclick="fetch('/api/resume', {method: 'POST'})">Resume</button>
  </p>
  <script>
    async function refresh() {
      const response = await fetch('/api/status');
      document.getElementById('status').textContent = JSON.stringify(await response.json(), null, 2);
    }
    refresh();
    setInterval(refresh, 1000);
  </script>
</body>
</html>
"""


class WebUI:
    """Web UI server for Sponsor Muter."""

    def __init__(self, muter, port: int = 8080, log_file: Path = None):
        """
        Initialize web UI.

        Args:
            muter: SponsorMuter instance to control
            port: Port to run web server on
            log_file: Log file tailed by /api/logs
        """
        self.muter = muter
        self.port = port
        self.log_file = Path(log_file) if log_file else None
        self.server_thread = None
        self.running = False

        self.app = Flask(__name__)

        # Disable Flask's default logging (we use our own)
        log = logging.getLogger('werkzeug')
        log.setLevel(logging.WARNING)

        self._register_routes()

    def _register_routes(self):
        """Register all Flask routes."""

        @self.app.route('/')
        def index():
            """Serve the status page."""
            return render_template_string(INDEX_PAGE, presets=PAUSE_PRESETS)

        @self.app.route('/api/status')
        def api_status():
            """Get current status."""
            try:
                return jsonify(self.muter.get_status_dict())
            except Exception as e:
                logger.error(f"Error getting status: {e}")
                return jsonify({'error': str(e)}), 500

        @self.app.route('/api/pause/<int:minutes>', methods=['POST'])
        def api_pause(minutes):
            """Pause the guard for specified minutes."""
            if minutes not in PAUSE_PRESETS:
                return jsonify({'error': 'Invalid duration. Use 1, 2, 5, or 10 minutes.'}), 400

            try:
                self.muter.pause_blocking(minutes * 60)
                return jsonify({
                    'success': True,
                    'paused_until': self.muter.blocking_paused_until,
                    'duration_minutes': minutes,
                })
            except Exception as e:
                logger.error(f"Error pausing: {e}")
                return jsonify({'error': str(e)}), 500

        @self.app.route('/api/resume', methods=['POST'])
        def api_resume():
            """Resume the guard immediately."""
            try:
                self.muter.resume_blocking()
                return jsonify({'success': True})
            except Exception as e:
                logger.error(f"Error resuming: {e}")
                return jsonify({'error': str(e)}), 500

        @self.app.route('/api/detections')
        def api_detections():
            """Get recent detection history."""
            try:
                detections = list(self.muter.detection_history)
                # Newest first
                return jsonify({'detections': detections[::-1]})
            except Exception as e:
                logger.error(f"Error getting detections: {e}")
                return jsonify({'error': str(e)}), 500

        @self.app.route('/api/logs')
        def api_logs():
            """Get recent log lines."""
            try:
                if self.log_file and self.log_file.exists():
                    # Read last 100 lines
                    with open(self.log_file, 'r') as f:
                        lines = f.readlines()[-100:]
                    return jsonify({'lines': [line.rstrip() for line in lines]})
                return jsonify({'lines': []})
            except Exception as e:
                logger.error(f"Error reading logs: {e}")
                return jsonify({'error': str(e)}), 500

    def start(self):
        """Start the web server in a background thread."""
        if self.running:
            return

        self.running = True

        def run_server():
            logger.info(f"[WebUI] Starting on http://0.0.0.0:{self.port}")
            try:
                self.app.run(
                    host='0.0.0.0',
                    port=self.port,
                    threaded=True,
                    use_reloader=False,
                    debug=False,
                )
            except Exception as e:
                logger.error(f"[WebUI] Server error: {e}")
            finally:
                self.running = False

        self.server_thread = threading.Thread(target=run_server, daemon=True)
        self.server_thread.start()

        # Give it a moment to start
        time.sleep(0.5)
        logger.info(f"[WebUI] Server started on port {self.port}")

    def stop(self):
        """Stop the web server."""
        self.running = False
        logger.info("[WebUI] Server stopping...")
        # Daemon thread; it ends with the process
