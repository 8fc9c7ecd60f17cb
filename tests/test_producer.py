import logging
import threading
from unittest.mock import MagicMock

import numpy as np
import pytest

from webcamstream.camera import (
    CaptureError,
    CaptureSource,
    CaptureStartFailed,
    DeviceSetupFailed,
    SessionNotConfigured,
    SessionSetupFailed,
)
from webcamstream.encoding import FrameEncodeError
from webcamstream.producer import CaptureProducer, RecoveryState


class FakeCapture(CaptureSource):
    """In-memory capture source driven by the test."""

    def __init__(self, devices=(0,), refuse_start=False):
        super().__init__()
        self.devices = list(devices)
        self.refuse_start = refuse_start
        self.open_error = None
        self.opened = []
        self.start_calls = 0
        self.closed = 0
        self._running = False

    def enumerate_devices(self):
        return list(self.devices)

    def open(self, device):
        if self.open_error is not None:
            raise self.open_error
        self.opened.append(device)

    def start_running(self):
        self.start_calls += 1
        if not self.refuse_start:
            self._running = True

    def stop_running(self):
        self._running = False

    def close(self):
        self.closed += 1
        self._running = False

    @property
    def is_running(self):
        return self._running

    def emit(self, frame):
        self._deliver(frame)

    def fail(self, error):
        self._running = False
        self._report_error(error)


@pytest.fixture
def capture():
    return FakeCapture()


@pytest.fixture
def producer(cache, capture):
    return CaptureProducer(cache, capture, quality=0.8)


def test_start_without_session_fails(producer):
    with pytest.raises(SessionNotConfigured):
        producer.start()


def test_session_not_configured_is_start_failure(producer):
    with pytest.raises(CaptureStartFailed):
        producer.start()


def test_setup_uses_first_device(cache):
    capture = FakeCapture(devices=[2, 3])
    producer = CaptureProducer(cache, capture)
    producer.setup_session()
    assert capture.opened == [2]
    assert producer.device == 2
    assert producer.is_configured


def test_setup_prefers_configured_device(cache):
    capture = FakeCapture(devices=[0, 1])
    producer = CaptureProducer(cache, capture, device=1)
    producer.setup_session()
    assert capture.opened == [1]


def test_setup_without_devices_fails(cache):
    producer = CaptureProducer(cache, FakeCapture(devices=[]))
    with pytest.raises(DeviceSetupFailed):
        producer.setup_session()
    assert not producer.is_configured


def test_start_failure_raises(cache):
    producer = CaptureProducer(cache, FakeCapture(refuse_start=True))
    producer.setup_session()
    with pytest.raises(CaptureStartFailed):
        producer.start()


def test_start_twice_warns(producer, capture, caplog):
    producer.setup_session()
    producer.start()

    with caplog.at_level(logging.WARNING, logger="webcamstream.producer"):
        producer.start()

    assert capture.start_calls == 1
    assert "already running" in caplog.text


def test_stop_is_safe_before_start(producer, capture):
    producer.stop()
    producer.stop()
    assert capture.closed == 2
    assert not producer.is_running


def test_frames_are_encoded_and_published(producer, capture, cache):
    producer.setup_session()
    producer.start()

    capture.emit(np.zeros((16, 16, 3), dtype=np.uint8))

    frame = cache.latest()
    assert frame is not None
    assert frame.data[:2] == b"\xff\xd8"
    assert producer.get_stats()["frames"] == 1


def test_encoder_failure_drops_frame(cache, capture, caplog):
    encoder = MagicMock()
    encoder.encode.side_effect = [FrameEncodeError("bad frame"), b"\xff\xd8ok"]
    producer = CaptureProducer(cache, capture, encoder=encoder, quality=0.5)
    producer.setup_session()
    producer.start()

    with caplog.at_level(logging.WARNING, logger="webcamstream.producer"):
        capture.emit("raw-1")
    assert cache.latest() is None
    assert "bad frame" in caplog.text

    capture.emit("raw-2")
    assert cache.latest().data == b"\xff\xd8ok"
    encoder.encode.assert_called_with("raw-2", 0.5)
    assert producer.get_stats()["dropped"] == 1


class TestRecovery:

    def test_recovers_by_reopening_and_restarting(self, producer, capture):
        producer.setup_session()
        producer.start()

        capture.fail(CaptureError("device lost"))

        assert producer.recovery_state is RecoveryState.STABLE
        assert capture.opened == [0, 0]
        assert capture.is_running

    def test_failed_recovery_is_not_retried(self, producer, capture, caplog):
        producer.setup_session()
        producer.start()
        capture.open_error = SessionSetupFailed("still broken")

        with caplog.at_level(logging.ERROR, logger="webcamstream.producer"):
            assert producer.recover_from_error(CaptureError("device lost")) is False

        assert producer.recovery_state is RecoveryState.FAILED
        assert capture.start_calls == 1
        assert not capture.is_running
        assert "Failed to recover" in caplog.text

    def test_concurrent_reports_collapse(self, cache):
        entered = threading.Event()
        release = threading.Event()

        class SlowCapture(FakeCapture):
            def open(self, device):
                if self.opened:
                    entered.set()
                    release.wait(5.0)
                super().open(device)

        capture = SlowCapture()
        producer = CaptureProducer(cache, capture)
        producer.setup_session()
        producer.start()

        results = []
        first = threading.Thread(
            target=lambda: results.append(producer.recover_from_error(CaptureError("a")))
        )
        first.start()
        assert entered.wait(2.0)

        assert producer.recovery_state is RecoveryState.RECOVERING
        assert producer.recover_from_error(CaptureError("b")) is False

        release.set()
        first.join(timeout=2.0)
        assert results == [True]
        assert capture.opened == [0, 0]
        assert producer.recovery_state is RecoveryState.STABLE

    def test_no_recovery_after_stop(self, producer, capture):
        producer.setup_session()
        producer.start()
        producer.stop()

        assert producer.recover_from_error(CaptureError("late")) is False
        assert capture.opened == [0]

    def test_stop_during_recovery_keeps_capture_stopped(self, cache):
        entered = threading.Event()
        release = threading.Event()

        class SlowCapture(FakeCapture):
            def open(self, device):
                if self.opened:
                    entered.set()
                    release.wait(5.0)
                super().open(device)

        capture = SlowCapture()
        producer = CaptureProducer(cache, capture)
        producer.setup_session()
        producer.start()

        results = []
        recovery = threading.Thread(
            target=lambda: results.append(producer.recover_from_error(CaptureError("lost")))
        )
        recovery.start()
        assert entered.wait(2.0)

        producer.stop()
        release.set()
        recovery.join(timeout=2.0)

        assert results == [False]
        assert capture.start_calls == 1
        assert not capture.is_running
        assert not producer.is_configured
        assert producer.recovery_state is RecoveryState.STABLE
