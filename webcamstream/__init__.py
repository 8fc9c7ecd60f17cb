"""
webcamstream - Webcam MJPEG Streaming Server

Captures frames from a local camera, encodes them as JPEG and serves the
live sequence to any number of HTTP clients as a multipart MJPEG stream.
"""

__version__ = "0.1.0"
