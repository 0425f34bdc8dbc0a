"""
Debounced persistence for the record store.
Each scheduled payload replaces the pending one and restarts a trailing
timer; only an uninterrupted delay writes. The timer thread writes the
payload captured at schedule time and never reads live store state.
"""

import threading
from typing import Any, Callable, Optional

from ..util.logging import logger

_NOTHING = object()


class BufferedWriter:
    """Trailing-debounce writer with explicit flush and cancel."""

    def __init__(self, write: Callable[[Any], None], delay: float = 1.0, name: str = "autosave"):
        self._write = write
        self.delay = delay
        self.name = name
        self._pending = _NOTHING
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        # Serializes writes so a late timer cannot overwrite a newer flush
        self._write_lock = threading.Lock()
        self._closed = False

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._pending is not _NOTHING

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def schedule(self, payload: Any) -> None:
        """Replace the pending payload and restart the timer."""
        with self._lock:
            if self._closed:
                raise RuntimeError(f"{self.name} writer is closed")
            self._pending = payload
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.delay, self._on_timer)
            self._timer.daemon = True
            self._timer.start()

    def hold(self, payload: Any) -> None:
        """Replace the pending payload without starting a timer."""
        with self._lock:
            self._pending = payload
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def flush(self) -> bool:
        """Write the pending payload now. Returns False if the write failed."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        return self._write_pending()

    def cancel(self) -> None:
        """Drop the pending payload without writing it."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._pending = _NOTHING

    def close(self) -> bool:
        """Flush and refuse further scheduling."""
        ok = self.flush()
        with self._lock:
            self._closed = True
        return ok

    def _on_timer(self):
        with self._lock:
            if self._timer is not threading.current_thread():
                # Superseded by a later schedule or flush
                return
            self._timer = None
        self._write_pending()

    def _write_pending(self) -> bool:
        with self._write_lock:
            with self._lock:
                payload = self._pending
                self._pending = _NOTHING
            if payload is _NOTHING:
                return True
            try:
                self._write(payload)
                return True
            except Exception as e:
                logger.error(f"{self.name} write failed: {e}")
                with self._lock:
                    if self._pending is _NOTHING:
                        self._pending = payload
                return False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
