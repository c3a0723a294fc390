import time
from collections import deque
from typing import NamedTuple, Optional


class RateSample(NamedTuple):
    timestamp: float  # milliseconds
    cumulative_bytes: int


class ThroughputEstimator:
    def __init__(self, window_ms: float = 15000):
        """
        Sliding-window transfer rate calculator.

        Args:
            window_ms: Width of the window in milliseconds. Samples older than
                the newest sample minus this width are discarded.
        """
        if window_ms <= 0:
            raise ValueError("Window must be positive")

        self._window_ms = window_ms
        self._samples = deque()  # RateSample, oldest first

    @property
    def window_ms(self) -> float:
        return self._window_ms

    @property
    def latest(self) -> Optional[RateSample]:
        """The newest sample, or None before the first one."""
        return self._samples[-1] if self._samples else None

    def __len__(self) -> int:
        return len(self._samples)

    def _evict_old_samples(self, now: float) -> None:
        """Drop samples outside the window ending at ``now``."""
        window_start = now - self._window_ms

        while self._samples and self._samples[0].timestamp < window_start:
            self._samples.popleft()

    def sample(self, timestamp: float, cumulative_bytes: int) -> None:
        """
        Record the cumulative byte count observed at ``timestamp`` (ms).

        Timestamps must not go backwards.
        """
        if self._samples and timestamp < self._samples[-1].timestamp:
            raise ValueError(
                f"Sample timestamp {timestamp} is older than the latest sample "
                f"({self._samples[-1].timestamp})"
            )

        self._samples.append(RateSample(timestamp, cumulative_bytes))
        self._evict_old_samples(timestamp)

    def sample_now(self, cumulative_bytes: int) -> None:
        """Record a sample stamped with the monotonic clock."""
        self.sample(time.monotonic() * 1000, cumulative_bytes)

    def rate(self) -> float:
        """Bytes per second across the samples still inside the window."""
        if len(self._samples) < 2:
            return 0

        oldest = self._samples[0]
        latest = self._samples[-1]
        elapsed = latest.timestamp - oldest.timestamp
        if elapsed <= 0:
            return 0

        return (latest.cumulative_bytes - oldest.cumulative_bytes) / elapsed * 1000

    def eta(self, total_bytes: int) -> Optional[float]:
        """Seconds left until ``total_bytes`` at the current rate, None if stalled."""
        latest = self.latest
        if latest is None:
            return None

        remaining = max(total_bytes - latest.cumulative_bytes, 0)
        if remaining == 0:
            return 0.0

        rate = self.rate()
        if rate <= 0:
            return None
        return remaining / rate

    def reset(self) -> None:
        self._samples.clear()

    @property
    def stats(self) -> dict:
        latest = self.latest
        return {
            'samples': len(self._samples),
            'window_ms': self._window_ms,
            'bytes': latest.cumulative_bytes if latest else 0,
            'rate': self.rate(),
        }
