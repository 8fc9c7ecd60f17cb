"""
Single-slot cache holding the most recently encoded frame.

The capture thread publishes into the cache; every streaming client reads
from it independently. Publishing overwrites the previous frame, so slow
readers skip frames instead of building up a backlog.
"""

import threading
import time
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Frame:
    """One encoded JPEG image and its position in the capture sequence."""

    data: bytes
    sequence: int
    timestamp: float

    def __len__(self) -> int:
        return len(self.data)


class FrameCache:
    """
    Thread-safe holder of the latest Frame.

    The lock only guards the slot reference. Frame payloads are immutable
    bytes, so a returned frame can be read without holding it.

    Usage:
        cache = FrameCache()
        cache.publish(jpeg_bytes)     # capture thread

        frame = cache.latest()        # any streaming thread
        if frame is not None:
            send(frame.data)
    """

    def __init__(self):
        self._frame: Optional[Frame] = None
        self._sequence = 0
        self.lock = threading.Lock()
        self.condition = threading.Condition(self.lock)

    def publish(self, data: bytes) -> Frame:
        """Replace the cached frame with ``data`` and wake any waiters."""
        data = bytes(data)
        with self.lock:
            self._sequence += 1
            frame = Frame(data=data, sequence=self._sequence, timestamp=time.time())
            self._frame = frame
            self.condition.notify_all()
        return frame

    def latest(self) -> Optional[Frame]:
        """Return the current frame, or None if nothing was published yet."""
        with self.lock:
            return self._frame

    def wait_for_frame(self, timeout: float = 1.0) -> Optional[Frame]:
        """
        Get the latest frame, waiting up to timeout seconds if none available.
        Returns None if timeout expires without a frame.
        """
        with self.lock:
            if self._frame is None:
                self.condition.wait(timeout=timeout)
            return self._frame

    @property
    def frame_count(self) -> int:
        """Number of frames published so far."""
        with self.lock:
            return self._sequence

    def get_stats(self) -> dict:
        """Sequence, timestamp and size of the latest frame."""
        with self.lock:
            frame = self._frame
        return {
            "frames": frame.sequence if frame else 0,
            "last_frame_time": frame.timestamp if frame else 0.0,
            "last_frame_bytes": len(frame) if frame else 0,
        }
