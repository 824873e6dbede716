"""Rate-limited progress accounting for a single transfer."""

import time

from config import PROGRESS_INTERVAL
from transfer.models import TransferProgress


class ProgressTracker:
    """
    Tracks bytes moved for one transfer and hands out progress samples.

    `record()` returns a sample at most once per `interval`; `finish()`
    always returns a final sample. Speed is a rolling average over `window`.
    """

    def __init__(
        self,
        total_bytes: int,
        interval: float = PROGRESS_INTERVAL,
        window: float = 2.0,
        clock=time.monotonic,
    ) -> None:
        self.total_bytes = total_bytes
        self.bytes_moved = 0
        self._interval = interval
        self._window = window
        self._clock = clock
        self._samples: list[tuple[float, int]] = [(clock(), 0)]
        self._last_sample_time = self._samples[0][0]

    def record(self, byte_count: int) -> TransferProgress | None:
        """Account for `byte_count` more bytes; return a sample if one is due."""
        now = self._clock()
        self.bytes_moved += byte_count
        self._samples.append((now, byte_count))
        # Trim old samples
        cutoff = now - self._window
        self._samples = [(t, b) for t, b in self._samples if t >= cutoff]

        if now - self._last_sample_time < self._interval:
            return None
        self._last_sample_time = now
        return self._sample(now)

    def finish(self) -> TransferProgress:
        now = self._clock()
        self._last_sample_time = now
        return self._sample(now)

    def get_speed(self) -> float:
        """Returns speed in bytes/sec."""
        if len(self._samples) < 2:
            return 0.0
        total_bytes = sum(b for _, b in self._samples[1:])
        elapsed = self._samples[-1][0] - self._samples[0][0]
        if elapsed <= 0:
            return 0.0
        return total_bytes / elapsed

    def _sample(self, now: float) -> TransferProgress:
        return TransferProgress(
            bytes_moved=self.bytes_moved,
            total_bytes=self.total_bytes,
            sampled_at=now,
            rate_bps=self.get_speed(),
        )
