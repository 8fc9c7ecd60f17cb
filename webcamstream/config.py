"""
Configuration management for webcamstream.

Defaults can be overridden via environment variables:
  WEBCAMSTREAM_HOST        - Server bind address (default: localhost)
  WEBCAMSTREAM_PORT        - Server port (default: 8080)
  WEBCAMSTREAM_FRAME_RATE  - Stream frames per second (default: 30.0)
  WEBCAMSTREAM_QUALITY     - JPEG quality 0.0-1.0 (default: 0.8)
  WEBCAMSTREAM_WIDTH       - Capture width in pixels (default: 640)
  WEBCAMSTREAM_HEIGHT      - Capture height in pixels (default: 480)
  WEBCAMSTREAM_DEVICE      - Camera index (default: first available)

Command line flags take precedence over the environment.
"""

import enum
import logging
import math
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


def _env_str(name: str, default: str) -> str:
    """Get a string from environment variable with fallback."""
    return os.environ.get(name, default)


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    """Get an integer from environment variable with fallback."""
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        logger.warning("%s=%s is not a valid integer, using default=%s", name, val, default)
        return default


def _env_float(name: str, default: float) -> float:
    """Get a float from environment variable with fallback."""
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        logger.warning("%s=%s is not a valid number, using default=%s", name, val, default)
        return default


# Server settings
HOST = _env_str("WEBCAMSTREAM_HOST", "localhost")
PORT = _env_int("WEBCAMSTREAM_PORT", 8080)

# Stream settings
FRAME_RATE = _env_float("WEBCAMSTREAM_FRAME_RATE", 30.0)
JPEG_QUALITY = _env_float("WEBCAMSTREAM_QUALITY", 0.8)

# Camera settings
WIDTH = _env_int("WEBCAMSTREAM_WIDTH", 640)
HEIGHT = _env_int("WEBCAMSTREAM_HEIGHT", 480)
DEVICE = _env_int("WEBCAMSTREAM_DEVICE", None)


class ConfigField(enum.Enum):
    HOST = "host"
    PORT = "port"
    FRAME_RATE = "frame_rate"
    QUALITY = "jpeg_quality"


class ConfigurationError(ValueError):
    """Raised when a configuration value is out of range.

    ``field`` names the offending setting so callers can tell which
    value was rejected.
    """

    def __init__(self, field: ConfigField, message: str):
        super().__init__(message)
        self.field = field


@dataclass(frozen=True)
class StreamConfig:
    """Validated, immutable server settings."""

    host: str = HOST
    port: int = PORT
    frame_rate: float = FRAME_RATE
    jpeg_quality: float = JPEG_QUALITY
    device: Optional[int] = DEVICE

    def __post_init__(self):
        self.validate()

    def validate(self):
        """
        Check every invariant, raising ConfigurationError for the first
        field that violates one.
        """
        if not self.host:
            raise ConfigurationError(ConfigField.HOST, "host must not be empty")
        if not 0 < self.port <= 65535:
            raise ConfigurationError(
                ConfigField.PORT, f"port must be between 1 and 65535, got {self.port}"
            )
        if not (math.isfinite(self.frame_rate) and self.frame_rate > 0):
            raise ConfigurationError(
                ConfigField.FRAME_RATE,
                f"frame rate must be positive and finite, got {self.frame_rate}",
            )
        if not 0.0 <= self.jpeg_quality <= 1.0:
            raise ConfigurationError(
                ConfigField.QUALITY,
                f"JPEG quality must be between 0.0 and 1.0, got {self.jpeg_quality}",
            )

    @property
    def frame_interval(self) -> float:
        """Seconds between frames sent to a single client."""
        return 1.0 / self.frame_rate

    def as_dict(self) -> dict:
        return {
            "host": self.host,
            "port": self.port,
            "frame_rate": self.frame_rate,
            "jpeg_quality": self.jpeg_quality,
            "device": self.device,
        }


def log_config(config: StreamConfig):
    """Log the effective configuration."""
    logger.info("Current settings:")
    logger.info("  HOST       = %s", config.host)
    logger.info("  PORT       = %s", config.port)
    logger.info("  FRAME_RATE = %s", config.frame_rate)
    logger.info("  QUALITY    = %s", config.jpeg_quality)
    logger.info("  DEVICE     = %s", "auto" if config.device is None else config.device)
    logger.info("  RESOLUTION = %sx%s", WIDTH, HEIGHT)
