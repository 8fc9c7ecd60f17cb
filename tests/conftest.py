import socket
import sys
import threading
from pathlib import Path

import pytest

# Ensure project root is in sys.path
ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from webcamstream.broadcaster import ServerState
from webcamstream.frame_cache import FrameCache

# Smallest well-formed JPEG: SOI + EOI markers
MINIMAL_JPEG = bytes([0xFF, 0xD8, 0xFF, 0xD9])


class FakeSink:
    """Records writes; can be told to fail on the next write."""

    def __init__(self, fail_with=None, max_writes=None, on_write=None):
        self.chunks = []
        self.fail_with = fail_with
        self.max_writes = max_writes
        self.on_write = on_write
        self.closed = threading.Event()
        self._lock = threading.Lock()

    def write(self, data):
        if self.closed.is_set():
            raise BrokenPipeError("sink closed")
        if self.fail_with is not None:
            raise self.fail_with
        with self._lock:
            self.chunks.append(bytes(data))
            count = len(self.chunks)
        if self.on_write is not None:
            self.on_write(count)
        if self.max_writes is not None and count >= self.max_writes:
            self.closed.set()

    def close(self):
        self.closed.set()

    @property
    def body(self):
        with self._lock:
            return b"".join(self.chunks)


@pytest.fixture
def cache():
    return FrameCache()


@pytest.fixture
def running_state():
    state = ServerState()
    state.mark_running()
    yield state
    state.mark_stopped()


@pytest.fixture
def free_port():
    """A TCP port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]
