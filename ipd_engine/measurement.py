"""
Distance Module - Pixel to Millimeter Conversion

Converts the pupil-to-pupil pixel distance into millimeters using the
reference card as the scale:

    IPD_mm = (eye_px / card_px) * card_width_mm

Focal length and camera distance cancel out in the ratio, which holds as
long as the card and the eyes sit at roughly the same depth.
"""

import math
from typing import Tuple

from .detections import EyePosition
from .exceptions import DivisionByZeroError, InvalidInputError
from .utils import IPD_MAX_MM, IPD_MIN_MM, pixel_distance


class DistanceCalculator:
    """Stateless pixel-to-millimeter conversion."""

    def pixel_eye_distance(self, eyes: EyePosition) -> float:
        """Distance between pupil centers in pixels."""
        return pixel_distance(eyes.left, eyes.right)

    def compute_ipd(
        self,
        eye_pixel_distance: float,
        card_pixel_width: float,
        card_real_width_mm: float
    ) -> float:
        """
        Convert an eye pixel distance to millimeters.

        This is a pure conversion and does not reject implausible values;
        use is_plausible() for that.

        Args:
            eye_pixel_distance: Pupil distance in pixels
            card_pixel_width: Corrected card width in pixels
            card_real_width_mm: Physical card width in mm

        Returns:
            IPD in millimeters

        Raises:
            InvalidInputError: non-finite input or negative card width
            DivisionByZeroError: card width is zero
        """
        for name, value in (
            ("eye_pixel_distance", eye_pixel_distance),
            ("card_pixel_width", card_pixel_width),
            ("card_real_width_mm", card_real_width_mm),
        ):
            if not math.isfinite(value):
                raise InvalidInputError(f"{name} must be finite, got {value!r}")

        if card_pixel_width == 0:
            raise DivisionByZeroError("Card pixel width is zero")
        if card_pixel_width < 0:
            raise InvalidInputError(f"Card pixel width must be positive, got {card_pixel_width}")

        return (eye_pixel_distance / card_pixel_width) * card_real_width_mm

    @staticmethod
    def is_plausible(ipd_mm: float, ipd_range: Tuple[float, float] = (IPD_MIN_MM, IPD_MAX_MM)) -> bool:
        """Check an IPD against the clinical adult range (inclusive)."""
        low, high = ipd_range
        return low <= ipd_mm <= high
