"""
Per-client MJPEG streaming.

Each connected client gets its own pacing loop that reads the shared
FrameCache at the configured frame rate and writes multipart parts to the
client's sink. Loops never wait on each other, so a stalled client only
stalls itself.
"""

import enum
import errno
import itertools
import logging
import threading
from typing import Optional, Protocol, Set

from .frame_cache import FrameCache

logger = logging.getLogger(__name__)

BOUNDARY = "frame"
CONTENT_TYPE = f"multipart/x-mixed-replace; boundary={BOUNDARY}"
PART_HEADER = (
    f"--{BOUNDARY}\r\n"
    "Content-Type: image/jpeg\r\n"
    "\r\n"
).encode("ascii")
PART_TRAILER = b"\r\n"

_DISCONNECT_ERRNOS = {errno.EPIPE, errno.ECONNRESET, errno.ECONNABORTED}


def encode_part(jpeg: bytes) -> bytes:
    """Wrap one JPEG image as a multipart/x-mixed-replace part."""
    return PART_HEADER + jpeg + PART_TRAILER


class Sink(Protocol):
    def write(self, data: bytes) -> None: ...

    def close(self) -> None: ...


class WriteErrorKind(enum.Enum):
    CLIENT_DISCONNECTED = "client_disconnected"
    OTHER = "other"


class StreamWriteError(Exception):
    """Raised when a frame cannot be written to a client."""

    def __init__(self, kind: WriteErrorKind, message: str):
        super().__init__(message)
        self.kind = kind

    @property
    def client_disconnected(self) -> bool:
        return self.kind is WriteErrorKind.CLIENT_DISCONNECTED


def is_client_disconnect(exc: BaseException) -> bool:
    """True for the peer-reset / broken-pipe family of socket errors."""
    if isinstance(exc, (BrokenPipeError, ConnectionResetError, ConnectionAbortedError)):
        return True
    return isinstance(exc, OSError) and exc.errno in _DISCONNECT_ERRNOS


class ServerState:
    """
    Shared running flag.

    Goes from running to stopped exactly once and never back.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._running = False
        self._stopped = threading.Event()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_stopped(self) -> bool:
        return self._stopped.is_set()

    def mark_running(self):
        with self._lock:
            if self._stopped.is_set():
                raise RuntimeError("server state cannot be restarted once stopped")
            self._running = True

    def mark_stopped(self) -> bool:
        """Returns True only for the call that performed the transition."""
        with self._lock:
            if self._stopped.is_set():
                return False
            self._running = False
            self._stopped.set()
            return True


class Connection:
    """One client session: an output sink plus an open/closed flag."""

    _ids = itertools.count(1)

    def __init__(self, sink: Sink, peer: Optional[str] = None):
        self.id = next(self._ids)
        self.sink = sink
        self.peer = peer
        self._closed = threading.Event()

    def __repr__(self):
        if self.peer:
            return f"<Connection {self.id} {self.peer}>"
        return f"<Connection {self.id}>"

    @property
    def is_open(self) -> bool:
        return not self._closed.is_set()

    def write(self, data: bytes):
        self.sink.write(data)

    def close(self):
        """Mark closed and force the sink shut. Idempotent."""
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self.sink.close()
        except OSError as e:
            logger.debug("Error closing %r: %s", self, e)

    def wait_closed(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds, returning early if closed."""
        return self._closed.wait(timeout)


def pace_frames(
    cache: FrameCache,
    state: ServerState,
    frame_interval: float,
    connection: Connection,
) -> int:
    """
    Stream frames from ``cache`` to ``connection`` until the server stops
    or the connection closes.

    Every tick sends the latest cached frame (or nothing, if no frame was
    published yet) and then sleeps ``frame_interval`` seconds.

    Returns:
        Number of frames written.

    Raises:
        StreamWriteError: writing to the sink failed
    """
    sent = 0
    while state.is_running and connection.is_open:
        frame = cache.latest()
        if frame is None:
            logger.debug("No frame available for %r", connection)
        else:
            try:
                connection.write(encode_part(frame.data))
            except Exception as e:
                if not connection.is_open or is_client_disconnect(e):
                    raise StreamWriteError(WriteErrorKind.CLIENT_DISCONNECTED, str(e)) from e
                raise StreamWriteError(WriteErrorKind.OTHER, f"{type(e).__name__}: {e}") from e
            sent += 1
            logger.debug("Frame %d sent to %r", frame.sequence, connection)

        connection.wait_closed(frame_interval)
    return sent


class StreamBroadcaster:
    """
    Runs one pacing loop per client and tracks the active connections.

    handle_connection() blocks for the lifetime of the client, so call it
    from the thread that serves that client.
    """

    def __init__(self, cache: FrameCache, state: ServerState, frame_rate: float):
        self.cache = cache
        self.state = state
        self.frame_interval = 1.0 / frame_rate
        self._lock = threading.Lock()
        self._connections: Set[Connection] = set()

    def _register(self, connection: Connection) -> bool:
        with self._lock:
            if not self.state.is_running:
                return False
            self._connections.add(connection)
            return True

    def _unregister(self, connection: Connection):
        with self._lock:
            self._connections.discard(connection)

    def handle_connection(self, sink: Sink, peer: Optional[str] = None) -> int:
        """
        Stream to ``sink`` until the client goes away or the server stops.

        Returns:
            Number of frames written.
        """
        connection = Connection(sink, peer)
        if not self._register(connection):
            logger.info("Rejecting %r, server is stopping", connection)
            connection.close()
            return 0

        logger.info("Client connected: %r (active=%d)", connection, self.active_count())
        sent = 0
        try:
            sent = pace_frames(self.cache, self.state, self.frame_interval, connection)
        except StreamWriteError as e:
            if e.client_disconnected:
                logger.info("Client disconnected: %r", connection)
            else:
                logger.error("Error writing frame to %r: %s", connection, e)
        finally:
            self._unregister(connection)
            connection.close()
        logger.info("Stream to %r ended after %d frames", connection, sent)
        return sent

    def close_all(self) -> int:
        """Force-close every active connection. Returns how many were closed."""
        with self._lock:
            connections = list(self._connections)
            for connection in connections:
                connection.close()
            self._connections.clear()
        if connections:
            logger.info("Closed %d active connections", len(connections))
        return len(connections)

    def active_count(self) -> int:
        with self._lock:
            return len(self._connections)
