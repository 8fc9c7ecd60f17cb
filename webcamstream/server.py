"""
Flask-based MJPEG streaming server.

Provides:
  GET /          - HTML page showing the video stream
  GET /stream    - Multipart MJPEG stream
  GET /snapshot  - Latest frame as a single JPEG
  GET /health    - JSON health check endpoint

ServerLifecycle ties the HTTP server, the capture producer and the
per-client streams together and owns start/stop.
"""

import enum
import logging
import socket
import threading
from typing import Optional

from flask import Flask, Response, jsonify, render_template_string
from werkzeug.exceptions import MethodNotAllowed, ServiceUnavailable
from werkzeug.middleware.dispatcher import DispatcherMiddleware
from werkzeug.serving import make_server

from .broadcaster import CONTENT_TYPE, ServerState, StreamBroadcaster
from .config import StreamConfig
from .frame_cache import FrameCache
from .producer import CaptureProducer

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


class ServerStartFailed(RuntimeError):
    """Raised when the HTTP endpoint cannot be bound."""
    pass


# HTML template for the index page
INDEX_HTML = """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Webcam Streamer</title>
    <style>
        body {
            font-family: Arial, sans-serif;
            background-color: #f0f0f0;
            margin: 0;
            padding: 20px;
            display: flex;
            justify-content: center;
            align-items: center;
            min-height: 100vh;
        }
        .container {
            background-color: white;
            border-radius: 10px;
            box-shadow: 0 0 10px rgba(0, 0, 0, 0.1);
            padding: 20px;
            text-align: center;
        }
        h1 {
            color: #333;
            margin-bottom: 20px;
        }
        img {
            max-width: 100%;
            height: auto;
            border: 1px solid #ddd;
            border-radius: 5px;
        }
        .info {
            margin-top: 10px;
            color: #888;
            font-size: 12px;
        }
    </style>
</head>
<body>
    <div class="container">
        <h1>Webcam Stream</h1>
        <img src="/stream" alt="Webcam Stream" id="stream">
        <div class="info">
            <p>{{ frame_rate }} fps | <a href="/snapshot">snapshot</a> | <a href="/health">health</a></p>
            <p id="status">Connecting...</p>
        </div>
    </div>
    <script>
        const img = document.getElementById('stream');
        const status = document.getElementById('status');

        img.onload = function() {
            status.textContent = 'Streaming';
        };

        img.onerror = function() {
            status.textContent = 'Stream error - retrying...';
            setTimeout(() => {
                img.src = '/stream?' + Date.now();
            }, 2000);
        };
    </script>
</body>
</html>
"""


class WSGISink:
    """
    Output sink for one streaming response.

    Writes go through the WSGI ``write`` callable. Closing shuts the
    client socket down so a write blocked on a stalled client fails
    immediately.
    """

    def __init__(self, write, sock=None):
        self._write = write
        self._sock = sock

    def write(self, data: bytes):
        self._write(data)

    def close(self):
        if self._sock is not None:
            self._sock.shutdown(socket.SHUT_RDWR)


class StreamEndpoint:
    """
    WSGI application for /stream.

    Mounted below Flask so the response body can be written incrementally
    from the serving thread instead of being buffered.
    """

    def __init__(self, lifecycle: "ServerLifecycle"):
        self.lifecycle = lifecycle

    def __call__(self, environ, start_response):
        method = environ.get("REQUEST_METHOD", "GET")
        if method not in ("GET", "HEAD"):
            return MethodNotAllowed(valid_methods=["GET", "HEAD"])(environ, start_response)

        broadcaster = self.lifecycle.broadcaster
        if broadcaster is None or not broadcaster.state.is_running:
            return ServiceUnavailable("Server is not running")(environ, start_response)

        headers = [("Content-Type", CONTENT_TYPE)] + list(NO_CACHE_HEADERS.items())
        write = start_response("200 OK", headers)
        if method == "HEAD":
            return []

        peer = f"{environ.get('REMOTE_ADDR', '?')}:{environ.get('REMOTE_PORT', '?')}"
        logger.debug("Received request for stream from %s", peer)
        # Send the status line and headers before the first frame
        write(b"")
        broadcaster.handle_connection(WSGISink(write, environ.get("werkzeug.socket")), peer)
        return []


def create_app(lifecycle: "ServerLifecycle") -> Flask:
    """Build the Flask application serving ``lifecycle``."""
    app = Flask(__name__)

    @app.route("/")
    def index():
        """Serve the main page with embedded video stream."""
        logger.debug("Received request for home page")
        return render_template_string(INDEX_HTML, frame_rate=lifecycle.config.frame_rate)

    @app.route("/snapshot")
    def snapshot():
        """Latest frame as a single JPEG."""
        frame = lifecycle.cache.wait_for_frame(timeout=1.0)
        if frame is None:
            return Response("No frame available\n", status=503, mimetype="text/plain")
        return Response(frame.data, mimetype="image/jpeg", headers=NO_CACHE_HEADERS)

    @app.route("/health")
    def health():
        """
        Health check endpoint.

        Returns JSON with server and capture status.
        """
        broadcaster = lifecycle.broadcaster
        return jsonify({
            "status": "ok" if lifecycle.phase is LifecycleState.RUNNING else "stopped",
            "state": lifecycle.phase.value,
            "connections": broadcaster.active_count() if broadcaster else 0,
            "capture": lifecycle.producer.get_stats(),
            "config": lifecycle.config.as_dict(),
        })

    app.wsgi_app = DispatcherMiddleware(app.wsgi_app, {"/stream": StreamEndpoint(lifecycle)})
    return app


class LifecycleState(enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class ServerLifecycle:
    """
    Starts and stops the whole server.

    Usage:
        lifecycle = ServerLifecycle(config, producer, cache)
        lifecycle.run()          # start, block until request_stop(), stop

    Signal handlers should only call request_stop(); the thread blocked in
    run() or wait() then performs the actual stop().
    """

    def __init__(self, config: StreamConfig, producer: CaptureProducer, cache: FrameCache):
        self.config = config
        self.producer = producer
        self.cache = cache

        self.state: Optional[ServerState] = None
        self.broadcaster: Optional[StreamBroadcaster] = None
        self.app: Optional[Flask] = None

        self._http = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._phase = LifecycleState.STOPPED
        self._stop_pending = False
        self._stop_requested = threading.Event()
        self._stopped = threading.Event()
        self._stopped.set()

    @property
    def phase(self) -> LifecycleState:
        with self._lock:
            return self._phase

    @property
    def port(self) -> Optional[int]:
        """Port actually bound, once started."""
        return self._http.port if self._http is not None else None

    def start(self):
        """
        Start capture and begin serving. Returns once the endpoint is bound.

        Raises:
            ConfigurationError: the configuration is invalid
            CaptureError: capture could not be started
            ServerStartFailed: the endpoint could not be bound
        """
        with self._lock:
            if self._phase is not LifecycleState.STOPPED:
                logger.warning("Server already %s", self._phase.value)
                return
            self._phase = LifecycleState.STARTING
            self._stop_pending = False
            self._stopped.clear()
            self._stop_requested.clear()

        try:
            self._start()
        except BaseException:
            self._rollback()
            raise

        with self._lock:
            self._phase = LifecycleState.RUNNING
            stop_pending = self._stop_pending
        logger.info("Server running on http://%s:%s", self.config.host, self.port)
        logger.info("Stream URL: http://%s:%s/stream", self.config.host, self.port)

        if stop_pending:
            logger.info("Stop was requested during startup")
            self.stop()

    def _start(self):
        self.config.validate()

        self._http = None
        self.state = ServerState()
        self.broadcaster = StreamBroadcaster(self.cache, self.state, self.config.frame_rate)
        logger.debug("Setting up server routes")
        self.app = create_app(self)

        if not self.producer.is_configured:
            self.producer.setup_session()
        self.producer.start()

        try:
            self._http = make_server(self.config.host, self.config.port, self.app, threaded=True)
        except (OSError, SystemExit) as e:
            # werkzeug reports bind errors and exits instead of raising
            raise ServerStartFailed(
                f"Cannot listen on {self.config.host}:{self.config.port}"
            ) from e

        self.state.mark_running()
        self._thread = threading.Thread(
            target=self._http.serve_forever, name="http-server", daemon=True
        )
        self._thread.start()

    def _rollback(self):
        logger.error("Server failed to start, releasing resources")
        if self.state is not None:
            self.state.mark_stopped()
        if self._http is not None:
            self._http.server_close()
            self._http = None
        self.producer.stop()
        with self._lock:
            self._phase = LifecycleState.STOPPED
            self._stopped.set()

    def request_stop(self):
        """Ask the serving thread to stop. Safe to call from a signal handler."""
        self._stop_requested.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until a stop is requested. Returns False on timeout."""
        return self._stop_requested.wait(timeout)

    def run(self):
        """Start, block until request_stop(), then stop. Start errors propagate."""
        self.start()
        try:
            self.wait()
            logger.info("Shutting down...")
        finally:
            self.stop()

    def stop(self):
        """
        Stop serving: close every client stream, shut the endpoint down and
        stop capture. Idempotent; concurrent callers wait for the first one.
        A stop during startup is deferred until start() reaches RUNNING.
        """
        with self._lock:
            phase = self._phase
            if phase is LifecycleState.RUNNING:
                self._phase = LifecycleState.STOPPING
            elif phase is LifecycleState.STARTING:
                self._stop_pending = True

        if phase is LifecycleState.STARTING:
            logger.info("Server still starting, will stop once running")
            return
        if phase is LifecycleState.STOPPING:
            self._stopped.wait()
            return
        if phase is not LifecycleState.RUNNING:
            logger.debug("Stop requested while %s, nothing to do", phase.value)
            return

        logger.info("Stopping server")
        try:
            self.state.mark_stopped()
            self.broadcaster.close_all()
            self._http.shutdown()
            self._thread.join(timeout=5.0)
            self._http.server_close()
            self.producer.stop()
        finally:
            with self._lock:
                self._phase = LifecycleState.STOPPED
                self._stopped.set()
                self._stop_requested.set()
        logger.info("Server stopped")
