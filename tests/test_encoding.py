import io

import numpy as np
import pytest
from PIL import Image

from webcamstream.encoding import FrameEncodeError, JpegEncoder, quality_to_pillow


def test_encodes_bgr_frame_as_jpeg():
    frame = np.zeros((48, 64, 3), dtype=np.uint8)
    frame[:, :, 2] = 255  # pure red in BGR

    data = JpegEncoder().encode(frame, 0.9)

    assert data[:2] == b"\xff\xd8"
    image = Image.open(io.BytesIO(data))
    assert image.size == (64, 48)
    r, g, b = image.convert("RGB").getpixel((32, 24))
    assert r > 200 and g < 60 and b < 60


def test_alpha_channel_dropped():
    frame = np.full((8, 8, 4), 128, dtype=np.uint8)
    data = JpegEncoder().encode(frame, 0.5)
    assert Image.open(io.BytesIO(data)).mode == "RGB"


def test_quality_changes_size():
    rng = np.random.default_rng(0)
    frame = rng.integers(0, 255, size=(64, 64, 3), dtype=np.uint8)
    encoder = JpegEncoder()
    assert len(encoder.encode(frame, 0.1)) < len(encoder.encode(frame, 1.0))


@pytest.mark.parametrize("bad", [
    "not an array",
    np.zeros((10, 10), dtype=np.uint8),
    np.zeros((10, 10, 2), dtype=np.uint8),
])
def test_invalid_input_raises(bad):
    with pytest.raises(FrameEncodeError):
        JpegEncoder().encode(bad, 0.8)


def test_quality_mapping():
    assert quality_to_pillow(0.0) == 1
    assert quality_to_pillow(0.8) == 80
    assert quality_to_pillow(1.0) == 100
