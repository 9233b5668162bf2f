"""
Calibration Module - Reference Card Validation

Decides whether a detected quadrilateral plausibly is the ISO/IEC 7810
ID-1 reference card and derives the pixel width used for scale.

ISO/IEC 7810 ID-1 Card Dimensions:
- Width: 85.60 mm
- Height: 53.98 mm
- Aspect ratio: 1.586

An invalid card is an expected, frequent condition (card not yet raised,
held at an angle) and is reported as a ValidationResult rather than raised.
"""

import math
import logging
from dataclasses import dataclass
from enum import Enum

from .config import Configuration
from .detections import CardDetection
from .utils import (
    CARD_ASPECT_RATIO,
    MIN_POLYGON_AREA_PX,
    aspect_ratio,
    edge_lengths,
    polygon_area,
)

logger = logging.getLogger(__name__)


class ValidationReason(str, Enum):
    OK = "ok"
    LOW_CONFIDENCE = "low_confidence"
    ASPECT_RATIO_OUT_OF_RANGE = "aspect_ratio_out_of_range"
    TILT_TOO_HIGH = "tilt_too_high"


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of card validation."""
    is_valid: bool
    reason: ValidationReason
    aspect_ratio: float = 0.0

    @classmethod
    def ok(cls, ratio: float) -> "ValidationResult":
        return cls(True, ValidationReason.OK, ratio)

    @classmethod
    def failed(cls, reason: ValidationReason, ratio: float) -> "ValidationResult":
        return cls(False, reason, ratio)


def aspect_ratio_deviation(ratio: float) -> float:
    """Relative deviation of a width/height ratio from the ID-1 ratio."""
    return abs(ratio - CARD_ASPECT_RATIO) / CARD_ASPECT_RATIO


class CardValidator:
    """
    Stateless reference-card checks.

    Usage:
        validator = CardValidator()
        result = validator.validate(card, config)
        if result.is_valid:
            width_px = validator.corrected_width(card)
    """

    def validate(self, detection: CardDetection, config: Configuration) -> ValidationResult:
        """
        Validate a card candidate.

        Checks run in a fixed order (confidence, aspect ratio, tilt) and
        the first failure is reported.

        Args:
            detection: Card candidate from the card detector
            config: Measurement configuration

        Returns:
            ValidationResult

        Raises:
            DivisionByZeroError: if the card height is zero
        """
        ratio = aspect_ratio(detection.width, detection.height)

        if detection.confidence < config.card_confidence_threshold:
            return ValidationResult.failed(ValidationReason.LOW_CONFIDENCE, ratio)

        if aspect_ratio_deviation(ratio) > config.aspect_ratio_tolerance:
            return ValidationResult.failed(ValidationReason.ASPECT_RATIO_OUT_OF_RANGE, ratio)

        if abs(detection.angle) > config.max_tilt_angle_deg:
            return ValidationResult.failed(ValidationReason.TILT_TOO_HIGH, ratio)

        return ValidationResult.ok(ratio)

    def corrected_width(self, detection: CardDetection) -> float:
        """
        Perspective-corrected card width in pixels.

        Uses the mean length of the two long opposite edges of the corner
        quadrilateral. Edge lengths are invariant to in-plane rotation, so
        a tilted card does not shrink the way its bounding width does.
        Falls back to detection.width for degenerate corners.
        """
        corners = detection.corners

        if polygon_area(corners) <= MIN_POLYGON_AREA_PX:
            logger.debug("Degenerate card corners (zero area), using raw width")
            return detection.width

        top, right, bottom, left = edge_lengths(corners)
        if min(top, right, bottom, left) <= 0:
            logger.debug("Degenerate card corners (zero-length edge), using raw width")
            return detection.width

        horizontal = (top + bottom) / 2.0
        vertical = (left + right) / 2.0

        # Card held in portrait: the long side is still the 85.60 mm edge
        width = max(horizontal, vertical)
        if not math.isfinite(width):
            return detection.width
        return width
