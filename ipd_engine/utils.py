"""
Geometry utilities for the IPD measurement engine.

Pure functions only; safe to call from any thread.
"""

import math
import numpy as np
from typing import Sequence, Tuple

from .detections import Point
from .exceptions import DivisionByZeroError


# ISO/IEC 7810 ID-1 Standard Card Dimensions (mm)
CARD_WIDTH_MM = 85.60
CARD_HEIGHT_MM = 53.98

# Fixed domain constant (85.60 / 53.98), not derived from configuration
CARD_ASPECT_RATIO = 1.586

# Clinically plausible adult IPD range (mm)
IPD_MIN_MM = 40.0
IPD_MAX_MM = 85.0

# Polygons smaller than this (px^2) are treated as degenerate
MIN_POLYGON_AREA_PX = 1e-6


def pixel_distance(a: Point, b: Point) -> float:
    """Euclidean distance between two points in pixels."""
    return math.sqrt((b.x - a.x) ** 2 + (b.y - a.y) ** 2)


def aspect_ratio(width: float, height: float) -> float:
    """
    Width / height ratio.

    Raises:
        DivisionByZeroError: if height is zero
    """
    if height == 0:
        raise DivisionByZeroError("Aspect ratio undefined for zero height")
    return width / height


def normalize_angle(degrees: float) -> float:
    """Normalize an angle to [-180, 180)."""
    return ((degrees + 180.0) % 360.0) - 180.0


def calculate_angle(p1: Point, p2: Point) -> float:
    """Angle of the segment p1->p2 relative to horizontal, in degrees."""
    return normalize_angle(math.degrees(math.atan2(p2.y - p1.y, p2.x - p1.x)))


def tilt_angle(corners: Sequence[Point]) -> float:
    """In-plane tilt of a quadrilateral: angle of its top edge (corner[1] - corner[0])."""
    return calculate_angle(corners[0], corners[1])


def edge_lengths(corners: Sequence[Point]) -> Tuple[float, float, float, float]:
    """
    Lengths of the four edges of an ordered quadrilateral.

    Returns:
        (top, right, bottom, left) for corners ordered TL, TR, BR, BL
    """
    tl, tr, br, bl = corners
    return (
        pixel_distance(tl, tr),
        pixel_distance(tr, br),
        pixel_distance(bl, br),
        pixel_distance(tl, bl),
    )


def polygon_area(corners: Sequence[Point]) -> float:
    """Absolute area of a simple polygon (shoelace formula)."""
    n = len(corners)
    total = 0.0
    for i in range(n):
        p, q = corners[i], corners[(i + 1) % n]
        total += p.x * q.y - q.x * p.y
    return abs(total) / 2.0


def perspective_corrected_size(corners: Sequence[Point]) -> Tuple[float, float]:
    """
    Planar (width, height) of a quadrilateral from the mean of opposite edges.

    Edge lengths do not change with in-plane rotation, so averaging the
    opposite pairs removes tilt bias and halves trapezoidal distortion.
    """
    top, right, bottom, left = edge_lengths(corners)
    return (top + bottom) / 2.0, (left + right) / 2.0


def order_corners(corners: np.ndarray) -> np.ndarray:
    """
    Order 4 corners in clockwise order starting from top-left.

    Args:
        corners: Array of 4 corner points

    Returns:
        Ordered corners: [top-left, top-right, bottom-right, bottom-left]
    """
    corners = np.asarray(corners, dtype=np.float64).reshape(4, 2)
    sorted_by_y = corners[np.argsort(corners[:, 1], kind="stable")]

    top_points = sorted_by_y[:2]
    bottom_points = sorted_by_y[2:]

    top_left, top_right = top_points[np.argsort(top_points[:, 0], kind="stable")]
    bottom_left, bottom_right = bottom_points[np.argsort(bottom_points[:, 0], kind="stable")]

    return np.array([top_left, top_right, bottom_right, bottom_left], dtype=np.float64)


def to_points(corners: np.ndarray) -> Tuple[Point, ...]:
    """Convert an (N, 2) array into Points."""
    return tuple(Point(float(x), float(y)) for x, y in np.asarray(corners).reshape(-1, 2))
