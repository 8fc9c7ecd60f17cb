"""
Camera capture sources.

This module provides capture sources that:
  - Enumerate and open a local camera device
  - Read raw frames continuously in a background thread
  - Hand each raw frame (numpy array, BGR) to a registered callback
  - Report a lost device to a registered error callback
"""

import enum
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

import cv2
import numpy as np

from . import config

logger = logging.getLogger(__name__)

FrameCallback = Callable[[np.ndarray], None]
ErrorCallback = Callable[[Exception], None]


class CaptureErrorKind(enum.Enum):
    DEVICE_SETUP_FAILED = "device_setup_failed"
    SESSION_SETUP_FAILED = "session_setup_failed"
    START_FAILED = "start_failed"


class CaptureError(Exception):
    """Raised when camera operations fail."""

    kind = CaptureErrorKind.START_FAILED

    def __init__(self, message: str, kind: Optional[CaptureErrorKind] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class DeviceSetupFailed(CaptureError):
    kind = CaptureErrorKind.DEVICE_SETUP_FAILED


class SessionSetupFailed(CaptureError):
    kind = CaptureErrorKind.SESSION_SETUP_FAILED


class CaptureStartFailed(CaptureError):
    kind = CaptureErrorKind.START_FAILED


class SessionNotConfigured(CaptureStartFailed):
    """Raised when capture is started before a device was opened."""
    pass


class CaptureSource(ABC):
    """Abstract base class for frame capture sources."""

    def __init__(self):
        self._frame_callback: Optional[FrameCallback] = None
        self._error_callback: Optional[ErrorCallback] = None

    def on_frame(self, callback: FrameCallback):
        """Register the callback invoked with every raw frame."""
        self._frame_callback = callback

    def on_error(self, callback: ErrorCallback):
        """Register the callback invoked when capture stops on its own."""
        self._error_callback = callback

    @abstractmethod
    def enumerate_devices(self) -> List[int]:
        """Return the indices of devices that can be opened."""
        pass

    @abstractmethod
    def open(self, device: int):
        """
        Open ``device`` and prepare it for capture.

        Raises:
            DeviceSetupFailed: the device could not be opened
            SessionSetupFailed: the device opened but cannot deliver frames
        """
        pass

    @abstractmethod
    def start_running(self):
        """Begin delivering frames to the frame callback."""
        pass

    @abstractmethod
    def stop_running(self):
        """Stop delivering frames. Safe to call when not running."""
        pass

    @abstractmethod
    def close(self):
        """Stop capture and release the device."""
        pass

    @property
    @abstractmethod
    def is_running(self) -> bool:
        pass

    def _deliver(self, frame: np.ndarray):
        callback = self._frame_callback
        if callback is not None:
            callback(frame)

    def _report_error(self, error: Exception):
        callback = self._error_callback
        if callback is not None:
            callback(error)


class OpenCVCapture(CaptureSource):
    """
    Capture from a local camera through OpenCV.

    Usage:
        capture = OpenCVCapture()
        capture.open(capture.enumerate_devices()[0])
        capture.on_frame(handle_frame)
        capture.start_running()

        # When done:
        capture.close()
    """

    def __init__(
        self,
        width: int = None,
        height: int = None,
        max_failed_reads: int = 30,
        max_probe_index: int = 8,
    ):
        super().__init__()
        self.width = width or config.WIDTH
        self.height = height or config.HEIGHT
        self.max_failed_reads = max_failed_reads
        self.max_probe_index = max_probe_index

        self._cap: Optional[cv2.VideoCapture] = None
        self._device: Optional[int] = None
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None
        self._running = False

    def enumerate_devices(self) -> List[int]:
        devices = []
        for index in range(self.max_probe_index):
            if index == self._device and self._cap is not None:
                devices.append(index)
                continue
            probe = cv2.VideoCapture(index)
            try:
                if probe.isOpened():
                    devices.append(index)
            finally:
                probe.release()
        logger.debug("Available devices: %s", devices)
        return devices

    def open(self, device: int):
        self.close()
        logger.info("Opening camera %s (%sx%s)", device, self.width, self.height)

        cap = cv2.VideoCapture(device)
        if not cap.isOpened():
            cap.release()
            raise DeviceSetupFailed(f"Cannot open video device {device}")

        width_ok = cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        height_ok = cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        if not (width_ok and height_ok):
            cap.release()
            raise SessionSetupFailed(
                f"Video device {device} rejected resolution {self.width}x{self.height}"
            )

        ok, _ = cap.read()
        if not ok:
            cap.release()
            raise SessionSetupFailed(f"Video device {device} opened but returned no frames")

        with self._lock:
            self._cap = cap
            self._device = device
        logger.info(
            "Camera %s ready (%dx%d)",
            device,
            int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )

    def start_running(self):
        with self._lock:
            if self._running:
                return
            if self._cap is None:
                raise SessionNotConfigured("No video device opened")
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._cap, self._stop_event),
                name=f"capture-{self._device}",
                daemon=True,
            )
            self._running = True
            self._thread.start()

    def _run(self, cap: cv2.VideoCapture, stop_event: threading.Event):
        failed_reads = 0
        error = None

        while not stop_event.is_set():
            ok, frame = cap.read()
            if not ok:
                failed_reads += 1
                if failed_reads >= self.max_failed_reads:
                    error = CaptureError(
                        f"Lost video device {self._device} after {failed_reads} failed reads"
                    )
                    break
                time.sleep(0.01)
                continue
            failed_reads = 0
            self._deliver(frame)

        with self._lock:
            if self._stop_event is stop_event:
                self._running = False

        if error is not None:
            logger.error("%s", error)
            self._report_error(error)

    def stop_running(self):
        with self._lock:
            thread = self._thread
            if self._stop_event is not None:
                self._stop_event.set()
            self._running = False
            self._thread = None

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)

    def close(self):
        self.stop_running()
        with self._lock:
            cap, self._cap = self._cap, None
        if cap is not None:
            cap.release()
            logger.info("Camera %s released", self._device)

    @property
    def is_running(self) -> bool:
        return self._running


class DummyCapture(CaptureSource):
    """
    A dummy capture source for testing without hardware.
    Generates simple test pattern frames.
    """

    def __init__(self, width: int = None, height: int = None, fps: float = 30.0, **kwargs):
        super().__init__()
        self.width = width or config.WIDTH
        self.height = height or config.HEIGHT
        self.fps = fps
        self._opened = False
        self._running = False
        self._frame_count = 0
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        # Gradient background, computed once
        ramp = np.linspace(0, 255, self.height, dtype=np.float32)[:, None]
        self._background = np.zeros((self.height, self.width, 3), dtype=np.uint8)
        self._background[:, :, 2] = ramp.astype(np.uint8)  # Red gradient (BGR)
        self._background[:, :, 0] = (255 - ramp).astype(np.uint8)  # Blue gradient

    def enumerate_devices(self) -> List[int]:
        return [0]

    def open(self, device: int):
        logger.info("Using dummy camera (no real hardware)")
        self._opened = True

    def start_running(self):
        if self._running:
            return
        if not self._opened:
            raise SessionNotConfigured("Dummy camera not opened")
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(self._stop_event,), name="capture-dummy", daemon=True
        )
        self._running = True
        self._thread.start()

    def next_frame(self) -> np.ndarray:
        img = self._background.copy()
        # Green channel varies with the frame counter
        t = self._frame_count % 100
        img[:, :, 1] = int(128 + 127 * (t / 100))
        # Moving bar so motion is visible in the stream
        x = (self._frame_count * 4) % self.width
        img[:, x:x + 8, :] = 255
        self._frame_count += 1
        return img

    def _run(self, stop_event: threading.Event):
        interval = 1.0 / self.fps
        while not stop_event.wait(interval):
            self._deliver(self.next_frame())

    def stop_running(self):
        self._stop_event.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)
        self._running = False

    def close(self):
        self.stop_running()
        self._opened = False

    @property
    def is_running(self) -> bool:
        return self._running


def create_capture(use_dummy: bool = False, **kwargs) -> CaptureSource:
    """
    Factory function to create appropriate capture source.

    Args:
        use_dummy: Use the test pattern source instead of a camera
        **kwargs: Passed to capture constructor

    Returns:
        OpenCVCapture or DummyCapture instance
    """
    if use_dummy:
        return DummyCapture(**kwargs)
    kwargs.pop("fps", None)
    return OpenCVCapture(**kwargs)
