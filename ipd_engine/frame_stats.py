"""
Frame statistics helpers: frame-rate monitoring and best-face selection.
"""

import math
import time
from collections import deque
from typing import Optional, Sequence

from .detections import FaceDetection

FPS_SAMPLE_SIZE = 30

# Face ranking weights (size dominates, centrality breaks ties)
SIZE_WEIGHT = 0.7
CENTRALITY_WEIGHT = 0.3


class FrameRateMonitor:
    """Frames-per-second over the most recent FPS_SAMPLE_SIZE frames."""

    def __init__(self, sample_size: int = FPS_SAMPLE_SIZE):
        self._timestamps = deque(maxlen=sample_size)

    def tick(self, timestamp: Optional[float] = None):
        """Record a processed frame (seconds, monotonic)."""
        self._timestamps.append(time.monotonic() if timestamp is None else timestamp)

    def fps(self) -> float:
        """Current frame rate, 0.0 until two frames with distinct times were seen."""
        if len(self._timestamps) < 2:
            return 0.0

        span = self._timestamps[-1] - self._timestamps[0]
        if span <= 0:
            return 0.0

        return round((len(self._timestamps) - 1) / span, 1)

    def reset(self):
        self._timestamps.clear()


def select_best_face(
    detections: Sequence[FaceDetection],
    image_width: float,
    image_height: float
) -> Optional[FaceDetection]:
    """
    Pick the face to measure when several are visible.

    Each face is scored as a weighted sum of its size and centrality:
    score = 0.7 * area_ratio + 0.3 * (1 - center_offset), where area_ratio
    is the box area over the frame area and center_offset the normalized
    distance of the box center from the frame center. A small centered
    face can outscore a larger one near the corner.

    Returns:
        The best face, or None for an empty sequence
    """
    if not detections:
        return None
    if len(detections) == 1:
        return detections[0]
    if image_width <= 0 or image_height <= 0:
        raise ValueError("Image dimensions must be positive")

    center_x = image_width / 2
    center_y = image_height / 2

    def score(face: FaceDetection) -> float:
        box = face.bounding_box
        face_center = box.center
        offset = math.sqrt(
            ((face_center.x - center_x) / image_width) ** 2 +
            ((face_center.y - center_y) / image_height) ** 2
        )
        size_score = box.area / (image_width * image_height)
        return size_score * SIZE_WEIGHT + (1 - offset) * CENTRALITY_WEIGHT

    return max(detections, key=score)
