"""
Buffered writer tests - debounce coalescing, flush, cancel and failure retry.
"""

import threading
import time
import pytest
from unittest.mock import patch

from slabtrack.core.autosave import BufferedWriter


class Recorder:
    def __init__(self):
        self.writes = []
        self.done = threading.Event()

    def __call__(self, payload):
        self.writes.append(payload)
        self.done.set()


@pytest.fixture
def recorder():
    return Recorder()


class TestDebounce:
    """Test trailing-debounce behavior."""

    def test_burst_coalesces_into_last_payload(self, recorder):
        writer = BufferedWriter(recorder, delay=0.05)
        for payload in ("first", "second", "third"):
            writer.schedule(payload)

        assert recorder.done.wait(2)
        time.sleep(0.1)
        assert recorder.writes == ["third"]
        assert not writer.pending

    def test_nothing_written_before_delay(self, recorder):
        writer = BufferedWriter(recorder, delay=60)
        writer.schedule("payload")
        assert recorder.writes == []
        assert writer.pending
        writer.cancel()

    def test_hold_does_not_start_timer(self, recorder):
        writer = BufferedWriter(recorder, delay=0.01)
        writer.hold("payload")
        time.sleep(0.1)
        assert recorder.writes == []
        assert writer.pending


class TestFlushAndCancel:
    """Test explicit control of pending writes."""

    def test_flush_writes_immediately(self, recorder):
        writer = BufferedWriter(recorder, delay=60)
        writer.schedule("payload")
        assert writer.flush()
        assert recorder.writes == ["payload"]

    def test_flush_without_pending_is_noop(self, recorder):
        assert BufferedWriter(recorder).flush()
        assert recorder.writes == []

    def test_timer_does_not_rewrite_after_flush(self, recorder):
        writer = BufferedWriter(recorder, delay=0.05)
        writer.schedule("payload")
        writer.flush()
        time.sleep(0.2)
        assert recorder.writes == ["payload"]

    def test_cancel_drops_payload(self, recorder):
        writer = BufferedWriter(recorder, delay=0.05)
        writer.schedule("payload")
        writer.cancel()
        time.sleep(0.2)
        assert recorder.writes == []
        assert not writer.pending

    def test_close_flushes_and_rejects_schedule(self, recorder):
        with BufferedWriter(recorder, delay=60, name="test") as writer:
            writer.schedule("payload")
        assert recorder.writes == ["payload"]
        with pytest.raises(RuntimeError, match="test writer is closed"):
            writer.schedule("again")


class TestFailures:
    """Test write failure handling."""

    def test_failed_write_is_requeued(self):
        attempts = []

        def flaky(payload):
            attempts.append(payload)
            if len(attempts) == 1:
                raise OSError("disk full")

        writer = BufferedWriter(flaky, delay=60)
        writer.schedule("payload")
        with patch("slabtrack.core.autosave.logger") as mock_logger:
            assert writer.flush() is False
            mock_logger.error.assert_called_once()
        assert writer.pending

        assert writer.flush()
        assert attempts == ["payload", "payload"]
        assert not writer.pending

    def test_newer_payload_wins_over_requeue(self):
        writer = BufferedWriter(lambda payload: None, delay=60)

        def fail_and_reschedule(payload):
            writer.hold("newer")
            raise OSError("disk full")

        writer._write = fail_and_reschedule
        writer.hold("older")
        assert writer.flush() is False

        written = []
        writer._write = written.append
        writer.flush()
        assert written == ["newer"]
