"""
Entry point for running webcamstream as a module.

Usage:
    python -m webcamstream [--host HOST] [-p PORT] [--frame-rate FPS]
                           [--jpeg-quality Q] [--device N] [--dummy]
                           [--list-devices] [--verbose]
"""

import argparse
import logging
import signal
import sys

from . import config
from .camera import CaptureError, create_capture
from .config import ConfigurationError, StreamConfig, log_config
from .frame_cache import FrameCache
from .producer import CaptureProducer
from .server import ServerLifecycle, ServerStartFailed

logger = logging.getLogger("webcamstream")


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="webcamstream",
        description="Stream a local camera as MJPEG over HTTP",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python -m webcamstream
    python -m webcamstream --host 0.0.0.0 -p 8000 --frame-rate 15
    python -m webcamstream --dummy --verbose
        """
    )

    parser.add_argument(
        "--host",
        default=config.HOST,
        help=f"Server bind address (default: {config.HOST})"
    )

    parser.add_argument(
        "--port", "-p",
        type=int,
        default=config.PORT,
        help=f"Server port (default: {config.PORT})"
    )

    parser.add_argument(
        "--jpeg-quality",
        type=float,
        default=config.JPEG_QUALITY,
        help=f"JPEG compression quality 0.0-1.0 (default: {config.JPEG_QUALITY})"
    )

    parser.add_argument(
        "--frame-rate",
        type=float,
        default=config.FRAME_RATE,
        help=f"Frames per second sent to each client (default: {config.FRAME_RATE})"
    )

    parser.add_argument(
        "--device",
        type=int,
        default=config.DEVICE,
        help="Camera index (default: first available)"
    )

    parser.add_argument(
        "--dummy", "-d",
        action="store_true",
        help="Use a generated test pattern instead of a camera"
    )

    parser.add_argument(
        "--list-devices",
        action="store_true",
        help="List available camera indices and exit"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging"
    )

    args = parser.parse_args(argv)

    try:
        args.config = StreamConfig(
            host=args.host,
            port=args.port,
            frame_rate=args.frame_rate,
            jpeg_quality=args.jpeg_quality,
            device=args.device,
        )
    except ConfigurationError as e:
        parser.error(f"invalid {e.field.value}: {e}")

    return args


def configure_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    if not verbose:
        # Per-request access log
        logging.getLogger("werkzeug").setLevel(logging.WARNING)


def install_signal_handlers(lifecycle: ServerLifecycle):
    """Route SIGINT/SIGTERM to the lifecycle's stop request."""

    def handle_signal(signum, frame):
        lifecycle.request_stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)
    configure_logging(args.verbose)

    capture = create_capture(use_dummy=args.dummy, fps=args.config.frame_rate)

    if args.list_devices:
        devices = capture.enumerate_devices()
        if not devices:
            print("No video devices found")
        for index in devices:
            print(f"  {index}")
        return 0

    logger.info("=" * 50)
    logger.info("  WEBCAMSTREAM - Webcam MJPEG Stream")
    logger.info("=" * 50)
    log_config(args.config)

    cache = FrameCache()
    producer = CaptureProducer(
        cache,
        capture,
        quality=args.config.jpeg_quality,
        device=args.config.device,
    )
    lifecycle = ServerLifecycle(args.config, producer, cache)
    install_signal_handlers(lifecycle)

    logger.info("Press Ctrl+C to stop")
    try:
        lifecycle.run()
    except CaptureError as e:
        logger.error("Camera error: %s", e)
        return 1
    except ServerStartFailed as e:
        logger.error("Error starting server: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
