"""
Capture producer: camera frames in, encoded JPEG frames into the cache.
"""

import enum
import logging
import threading
from typing import Optional

from .camera import (
    CaptureError,
    CaptureSource,
    CaptureStartFailed,
    DeviceSetupFailed,
    SessionNotConfigured,
)
from .encoding import FrameEncodeError, JpegEncoder
from .frame_cache import FrameCache

logger = logging.getLogger(__name__)


class RecoveryState(enum.Enum):
    STABLE = "stable"
    RECOVERING = "recovering"
    FAILED = "failed"


class CaptureProducer:
    """
    Owns the capture session and publishes encoded frames.

    Raw frames arrive on the capture source's own thread. Each one is
    encoded and published to the FrameCache; frames that fail to encode
    are dropped.

    Usage:
        producer = CaptureProducer(cache, create_capture(), quality=0.8)
        producer.setup_session()
        producer.start()
        ...
        producer.stop()
    """

    def __init__(
        self,
        cache: FrameCache,
        capture: CaptureSource,
        encoder: Optional[JpegEncoder] = None,
        quality: float = 0.8,
        device: Optional[int] = None,
    ):
        self.cache = cache
        self.capture = capture
        self.encoder = encoder or JpegEncoder()
        self.quality = quality
        self.device = device

        self._configured = False
        self._active = False
        self._dropped = 0
        self._state_lock = threading.Lock()
        self._session_lock = threading.Lock()
        self._recovery = RecoveryState.STABLE

    def _select_device(self, device: Optional[int]) -> int:
        if device is not None:
            return device
        devices = self.capture.enumerate_devices()
        if not devices:
            raise DeviceSetupFailed("No video device available")
        if self.device in devices:
            return self.device
        return devices[0]

    def setup_session(self, device: Optional[int] = None):
        """
        Open a capture device and wire its callbacks to this producer.

        Uses ``device`` if given, otherwise the configured device when it
        is available, otherwise the first device found.
        """
        self._configured = False
        device = self._select_device(device)
        self.capture.open(device)
        self.capture.on_frame(self.handle_frame)
        self.capture.on_error(self.recover_from_error)
        self.device = device
        self._configured = True
        logger.info("Capture session set up on device %s", device)

    def start(self):
        """
        Start capturing.

        Raises:
            SessionNotConfigured: setup_session() has not succeeded
            CaptureStartFailed: the capture source did not start running
        """
        if not self._configured:
            raise SessionNotConfigured("Capture session not set up")

        if self.capture.is_running:
            logger.warning("Capture session already running")
            return

        self.capture.start_running()
        if not self.capture.is_running:
            raise CaptureStartFailed("Failed to start capture session")

        self._active = True
        logger.info("Capture started")

    def stop(self):
        """Stop capturing and release the device. Safe to call even if never started."""
        # Recovery checks _active under the same lock before reopening or restarting
        with self._session_lock:
            self._active = False
            self._configured = False
        self.capture.close()
        logger.info("Capture stopped")

    @property
    def is_running(self) -> bool:
        return self.capture.is_running

    @property
    def is_configured(self) -> bool:
        return self._configured

    def handle_frame(self, raw_frame):
        """Encode one raw frame and publish it. Runs on the capture thread."""
        try:
            data = self.encoder.encode(raw_frame, self.quality)
        except FrameEncodeError as e:
            self._dropped += 1
            logger.warning("Dropping frame: %s", e)
            return

        frame = self.cache.publish(data)
        logger.debug("Frame %d published (%d bytes)", frame.sequence, len(frame))

    def _transition(self, allowed, new_state: RecoveryState) -> bool:
        with self._state_lock:
            if self._recovery not in allowed:
                return False
            self._recovery = new_state
            return True

    @property
    def recovery_state(self) -> RecoveryState:
        with self._state_lock:
            return self._recovery

    def recover_from_error(self, error: Exception) -> bool:
        """
        Make a single attempt to re-establish capture after ``error``.

        Reports arriving while a recovery is in progress are ignored. A
        failed attempt leaves the producer in RecoveryState.FAILED and is
        not retried.

        Returns:
            True if capture was restarted.
        """
        if not self._active:
            logger.warning("Capture not active, not recovering from: %s", error)
            return False

        if not self._transition(
            (RecoveryState.STABLE, RecoveryState.FAILED), RecoveryState.RECOVERING
        ):
            logger.warning("Already attempting to recover from an error")
            return False

        logger.info("Attempting to recover from error: %s", error)
        try:
            self.capture.stop_running()
            with self._session_lock:
                stopped = not self._active
            if not stopped:
                self.setup_session()
                with self._session_lock:
                    stopped = not self._active
                    if not stopped:
                        self.start()
        except CaptureError as e:
            self._transition((RecoveryState.RECOVERING,), RecoveryState.FAILED)
            logger.error("Failed to recover from error: %s", e)
            return False

        if stopped:
            # stop() ran mid-recovery; release whatever was reopened since
            self._configured = False
            self.capture.close()
            self._transition((RecoveryState.RECOVERING,), RecoveryState.STABLE)
            logger.info("Capture stopped during recovery, not restarting")
            return False

        self._transition((RecoveryState.RECOVERING,), RecoveryState.STABLE)
        logger.info("Successfully recovered from error")
        return True

    def get_stats(self) -> dict:
        """Cache statistics plus capture state, dropped frames and recovery state."""
        stats = self.cache.get_stats()
        stats.update({
            "running": self.is_running,
            "device": self.device,
            "dropped": self._dropped,
            "recovery": self.recovery_state.value,
        })
        return stats
