"""
JPEG encoding of raw capture frames.
"""

import io

import numpy as np
from PIL import Image


class FrameEncodeError(Exception):
    """Raised when a raw frame cannot be encoded."""
    pass


def quality_to_pillow(quality: float) -> int:
    """Map a 0.0-1.0 compression quality onto Pillow's 1-100 scale."""
    return max(1, min(100, int(round(quality * 100))))


class JpegEncoder:
    """
    Encodes numpy frames (H, W, 3) as JPEG bytes.

    Frames are expected in BGR channel order, as produced by OpenCV.
    Pass ``bgr=False`` for RGB input.
    """

    def __init__(self, bgr: bool = True):
        self.bgr = bgr

    def encode(self, frame: np.ndarray, quality: float) -> bytes:
        if not isinstance(frame, np.ndarray):
            raise FrameEncodeError("frame must be a numpy array")
        if frame.ndim != 3 or frame.shape[2] not in (3, 4):
            raise FrameEncodeError(f"frame must be HxWxC BGR/BGRA, got shape {frame.shape}")
        if frame.dtype != np.uint8:
            frame = np.clip(frame, 0, 255).astype(np.uint8)

        rgb = frame[:, :, :3]
        if self.bgr:
            rgb = rgb[:, :, ::-1]

        buffer = io.BytesIO()
        try:
            Image.fromarray(np.ascontiguousarray(rgb)).save(
                buffer, format="JPEG", quality=quality_to_pillow(quality)
            )
        except (OSError, ValueError) as e:
            raise FrameEncodeError(f"JPEG encoding failed: {e}") from e
        return buffer.getvalue()
