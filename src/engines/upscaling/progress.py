"""
Cancellation and progress reporting for upscale calls.

Both objects cross the thread boundary between the event loop and the
inference worker, so they only use thread-safe primitives.
"""

import threading
from typing import Callable, Optional

from src.core.exceptions import UpscaleCancelledError
from src.engines.upscaling.schemas import UpscalingPhase, UpscalingProgress

ProgressCallback = Callable[[UpscalingProgress], None]


class CancellationToken:
    """Cooperative cancellation flag polled at safe checkpoints."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise UpscaleCancelledError()


class ProgressReporter:
    """Forwards progress to a callback, never letting the percentage go down.

    The tile loop can restart on CPU after a GPU failure; the reported
    percentage holds at its high-water mark until the retry catches up.
    Exceptions raised by the callback propagate to the caller.
    """

    def __init__(self, callback: Optional[ProgressCallback] = None):
        self._callback = callback
        self._last_percent = 0
        self._lock = threading.Lock()

    def report(self, phase: UpscalingPhase, message: str, percent: int):
        with self._lock:
            percent = max(self._last_percent, min(100, int(percent)))
            self._last_percent = percent

        if self._callback is not None:
            self._callback(UpscalingProgress(phase=phase, message=message, percent=percent))

    def tiles(self, done: int, total: int):
        """Report tile progress on the 5..90 band."""
        percent = 5 + (85 * done) // max(total, 1)
        self.report(
            UpscalingPhase.PROCESSING_TILES,
            f"Processing tile {done}/{total}",
            percent
        )
