"""
Connection quality derived from heartbeat round trips.
"""

from collections import deque
from enum import Enum
from typing import Deque, List, Optional


EXCELLENT_LATENCY_MS = 100
GOOD_LATENCY_MS = 300


class ConnectionQuality(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    POOR = "poor"
    DISCONNECTED = "disconnected"


def classify_latency(latency_ms: float) -> ConnectionQuality:
    """Excellent below 100 ms, good below 300 ms, poor otherwise."""
    if latency_ms < EXCELLENT_LATENCY_MS:
        return ConnectionQuality.EXCELLENT
    if latency_ms < GOOD_LATENCY_MS:
        return ConnectionQuality.GOOD
    return ConnectionQuality.POOR


class LatencyTracker:
    """Bounded history of round-trip samples in milliseconds."""

    def __init__(self, history_size: int = 20):
        self._samples: Deque[float] = deque(maxlen=history_size)

    def record(self, latency_ms: float) -> ConnectionQuality:
        self._samples.append(latency_ms)
        return classify_latency(latency_ms)

    @property
    def latest(self) -> Optional[float]:
        return self._samples[-1] if self._samples else None

    @property
    def average(self) -> float:
        if not self._samples:
            return 0.0
        return sum(self._samples) / len(self._samples)

    @property
    def samples(self) -> List[float]:
        return list(self._samples)

    def __len__(self) -> int:
        return len(self._samples)
