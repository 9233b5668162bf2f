"""
Card Detection - Contour-based Reference Card Geometry

Pipeline:
1. Grayscale + Gaussian blur (5x5)
2. Canny edge detection (50, 150), dilated to close small gaps
3. External contours, largest first
4. Convex hull + polygon approximation to a quadrilateral
5. Corner ordering (TL, TR, BR, BL), perspective-corrected size and tilt

This is the only place where the engine reads pixels. It fills the
CardDetection contract consumed by the validator and the controller.
"""

import logging
from typing import Optional

import cv2
import numpy as np

from .detections import CardDetection
from .exceptions import InvalidInputError
from .utils import order_corners, perspective_corrected_size, tilt_angle, to_points

logger = logging.getLogger(__name__)

# Card must be at least 1% of the frame area
MIN_CARD_AREA_RATIO = 0.01

# approxPolyDP tolerance as a fraction of the hull perimeter
APPROX_EPSILON_RATIO = 0.02


class ContourCardDetector:
    """
    Finds the largest quadrilateral outline in a frame.

    Confidence is the ratio between the contour area and the area of its
    fitted quadrilateral, which drops for rounded or partial outlines.
    """

    def __init__(
        self,
        min_area_ratio: float = MIN_CARD_AREA_RATIO,
        approx_epsilon_ratio: float = APPROX_EPSILON_RATIO
    ):
        self.min_area_ratio = min_area_ratio
        self.approx_epsilon_ratio = approx_epsilon_ratio
        self._closed = False

    def is_ready(self) -> bool:
        return not self._closed

    def close(self):
        self._closed = True

    def _preprocess(self, image: np.ndarray) -> np.ndarray:
        """Return a dilated edge map."""
        if image.ndim == 3:
            gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        else:
            gray = image

        blurred = cv2.GaussianBlur(gray, (5, 5), 0)
        edges = cv2.Canny(blurred, 50, 150)
        return cv2.dilate(edges, np.ones((3, 3), np.uint8), iterations=1)

    def detect(self, image: np.ndarray) -> Optional[CardDetection]:
        """
        Detect the card outline in a BGR (or grayscale) frame.

        Args:
            image: Frame as a numpy array

        Returns:
            CardDetection, or None if no quadrilateral was found

        Raises:
            InvalidInputError: for an empty or malformed frame
        """
        if image is None or not isinstance(image, np.ndarray) or image.size == 0:
            raise InvalidInputError("Empty frame")
        if image.ndim not in (2, 3):
            raise InvalidInputError(f"Unsupported frame shape {image.shape}")

        h, w = image.shape[:2]
        min_area = self.min_area_ratio * h * w

        edges = self._preprocess(image)
        contours, _ = cv2.findContours(edges, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)

        for contour in sorted(contours, key=cv2.contourArea, reverse=True):
            area = cv2.contourArea(contour)
            if area < min_area:
                break

            hull = cv2.convexHull(contour)
            perimeter = cv2.arcLength(hull, True)
            approx = cv2.approxPolyDP(hull, self.approx_epsilon_ratio * perimeter, True)
            if len(approx) != 4:
                continue

            quad_area = cv2.contourArea(approx)
            if quad_area <= 0:
                continue

            corners = to_points(order_corners(approx.reshape(4, 2)))
            width, height = perspective_corrected_size(corners)

            detection = CardDetection(
                corners=corners,
                width=width,
                height=height,
                angle=tilt_angle(corners),
                confidence=float(min(1.0, area / quad_area)),
            )
            logger.debug(
                f"Card candidate {width:.1f}x{height:.1f}px "
                f"angle={detection.angle:.1f} conf={detection.confidence:.2f}"
            )
            return detection

        return None
