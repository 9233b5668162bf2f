"""
Temporal Filtering Module - Windowed Mean for Video Sequences

Provides temporal smoothing of IPD measurements across video frames
to reduce detection jitter, with z-score rejection of sporadic bad frames.
"""

import logging
from collections import deque
from typing import Iterable, List, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = 5
DEFAULT_OUTLIER_THRESHOLD = 3.0


class DataSmoother:
    """
    Rolling-window smoother for a scalar measurement stream.

    Keeps the most recent accepted samples (FIFO, bounded by window_size).
    A new value is an outlier when it lies more than
    outlier_threshold standard deviations from the window mean; outliers
    are reported to the caller and never enter the window.

    When the window is empty, get_smoothed_value() returns 0.0.
    """

    def __init__(
        self,
        window_size: int = DEFAULT_WINDOW_SIZE,
        outlier_threshold: float = DEFAULT_OUTLIER_THRESHOLD
    ):
        """
        Initialize smoother.

        Args:
            window_size: Number of accepted samples kept
            outlier_threshold: z-score above which a value is rejected
        """
        if window_size < 1:
            raise ValueError(f"window_size must be >= 1, got {window_size}")
        if outlier_threshold <= 0:
            raise ValueError(f"outlier_threshold must be > 0, got {outlier_threshold}")

        self.window_size = window_size
        self.outlier_threshold = outlier_threshold
        self._window = deque(maxlen=window_size)
        self.last_was_outlier = False

    def __len__(self) -> int:
        return len(self._window)

    @property
    def values(self) -> Tuple[float, ...]:
        return tuple(value for value, _ in self._window)

    @property
    def timestamps(self) -> Tuple[float, ...]:
        return tuple(ts for _, ts in self._window)

    @property
    def is_full(self) -> bool:
        return len(self._window) >= self.window_size

    def _stats(self) -> Tuple[float, float]:
        """Mean and population standard deviation of the current window."""
        arr = np.array(self.values, dtype=np.float64)
        return float(np.mean(arr)), float(np.std(arr))

    def is_outlier(self, value: float) -> bool:
        """
        Check a value against the current window without mutating it.

        Fewer than two samples, or a window with zero variance, never
        produce an outlier.
        """
        if len(self._window) < 2:
            return False

        mean, std = self._stats()
        if std == 0:
            return False

        return abs(value - mean) > self.outlier_threshold * std

    def add_value(self, value: float, timestamp: float) -> bool:
        """
        Offer a new sample.

        Args:
            value: Measurement
            timestamp: Frame timestamp (seconds)

        Returns:
            True if the value was rejected as an outlier
        """
        outlier = self.is_outlier(value)
        self.last_was_outlier = outlier

        if outlier:
            logger.debug(f"Rejected outlier {value:.2f} (window={self.values})")
            return True

        # deque(maxlen) evicts the oldest sample
        self._window.append((float(value), float(timestamp)))
        return False

    def get_smoothed_value(self) -> float:
        """Arithmetic mean of the window, or 0.0 when empty."""
        if not self._window:
            return 0.0
        return self._stats()[0]

    def get_uncertainty(self) -> float:
        """Population standard deviation of the window (0.0 when empty)."""
        if not self._window:
            return 0.0
        return self._stats()[1]

    def reset(self):
        """Clear the window."""
        self._window.clear()
        self.last_was_outlier = False


def smooth_sequence(
    values: Iterable[float],
    window_size: int = DEFAULT_WINDOW_SIZE,
    outlier_threshold: float = DEFAULT_OUTLIER_THRESHOLD,
    timestamps: Optional[Iterable[float]] = None
) -> Tuple[List[float], List[bool]]:
    """
    Apply the smoother to a whole sequence of measurements.

    Args:
        values: Raw measurements
        window_size: Smoother window
        outlier_threshold: Smoother z-score threshold
        timestamps: Optional timestamps (defaults to the sample index)

    Returns:
        Tuple of (smoothed_values, outlier_flags)
    """
    values = list(values)
    if timestamps is None:
        timestamps = range(len(values))

    smoother = DataSmoother(window_size=window_size, outlier_threshold=outlier_threshold)

    smoothed = []
    flags = []
    for value, ts in zip(values, timestamps):
        flags.append(smoother.add_value(value, ts))
        smoothed.append(smoother.get_smoothed_value())

    return smoothed, flags
