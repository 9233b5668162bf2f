"""
Detection primitives and measurement records.

Detections are produced once per frame by external collaborators (face/eye
landmark detector, card geometry detector) and are never mutated by the
engine. Every type validates its numeric ranges on construction and raises
InvalidInputError for malformed values.
"""

import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple

from .exceptions import InvalidInputError


def _require_finite(name: str, value: float) -> None:
    try:
        finite = math.isfinite(value)
    except TypeError:
        raise InvalidInputError(f"{name} must be a number, got {value!r}")
    if not finite:
        raise InvalidInputError(f"{name} must be finite, got {value!r}")


def _require_non_negative(name: str, value: float) -> None:
    _require_finite(name, value)
    if value < 0:
        raise InvalidInputError(f"{name} must be non-negative, got {value!r}")


def _require_confidence(value: float) -> None:
    _require_finite("confidence", value)
    if not 0.0 <= value <= 1.0:
        raise InvalidInputError(f"confidence must be in [0, 1], got {value!r}")


def _field(data: Mapping[str, Any], key: str) -> Any:
    try:
        return data[key]
    except (KeyError, TypeError):
        raise InvalidInputError(f"Missing field '{key}'")


@dataclass(frozen=True)
class Point:
    """2D point in pixel coordinates."""
    x: float
    y: float

    def __post_init__(self):
        _require_finite("x", self.x)
        _require_finite("y", self.y)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Point":
        return cls(x=_field(data, "x"), y=_field(data, "y"))

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y}


@dataclass(frozen=True)
class BoundingBox:
    x: float
    y: float
    width: float
    height: float

    def __post_init__(self):
        _require_finite("x", self.x)
        _require_finite("y", self.y)
        _require_non_negative("width", self.width)
        _require_non_negative("height", self.height)

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def center(self) -> Point:
        return Point(self.x + self.width / 2, self.y + self.height / 2)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BoundingBox":
        return cls(
            x=_field(data, "x"),
            y=_field(data, "y"),
            width=_field(data, "width"),
            height=_field(data, "height"),
        )


@dataclass(frozen=True)
class FaceDetection:
    """Face region reported by the landmark detector."""
    bounding_box: BoundingBox
    confidence: float

    def __post_init__(self):
        _require_confidence(self.confidence)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FaceDetection":
        return cls(
            bounding_box=BoundingBox.from_dict(_field(data, "boundingBox")),
            confidence=_field(data, "confidence"),
        )


@dataclass(frozen=True)
class EyePosition:
    """
    Pupil centers of both eyes.

    In a correctly oriented, non-mirrored frame the left eye is always
    left of the right eye; anything else is rejected as invalid input.
    """
    left: Point
    right: Point
    confidence: float

    def __post_init__(self):
        _require_confidence(self.confidence)
        if not self.left.x < self.right.x:
            raise InvalidInputError(
                f"Left eye must be left of right eye (left.x={self.left.x}, right.x={self.right.x})"
            )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EyePosition":
        return cls(
            left=Point.from_dict(_field(data, "left")),
            right=Point.from_dict(_field(data, "right")),
            confidence=_field(data, "confidence"),
        )


@dataclass(frozen=True)
class CardDetection:
    """
    Reference card candidate.

    corners are ordered TL, TR, BR, BL; width/height are the
    perspective-corrected pixel dimensions and angle is the in-plane tilt
    in degrees.
    """
    corners: Tuple[Point, Point, Point, Point]
    width: float
    height: float
    angle: float
    confidence: float

    def __post_init__(self):
        if len(self.corners) != 4:
            raise InvalidInputError(f"Card needs exactly 4 corners, got {len(self.corners)}")
        object.__setattr__(self, "corners", tuple(self.corners))
        _require_non_negative("width", self.width)
        _require_non_negative("height", self.height)
        _require_finite("angle", self.angle)
        _require_confidence(self.confidence)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CardDetection":
        corners = _field(data, "corners")
        if not isinstance(corners, (list, tuple)):
            raise InvalidInputError("corners must be a list of points")
        return cls(
            corners=tuple(Point.from_dict(c) for c in corners),
            width=_field(data, "width"),
            height=_field(data, "height"),
            angle=_field(data, "angle"),
            confidence=_field(data, "confidence"),
        )

    def to_dict(self) -> dict:
        return {
            "corners": [c.to_dict() for c in self.corners],
            "width": self.width,
            "height": self.height,
            "angle": self.angle,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class DetectionBundle:
    """Everything the collaborators found in one frame."""
    face: Optional[FaceDetection] = None
    eyes: Optional[EyePosition] = None
    card: Optional[CardDetection] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DetectionBundle":
        if not isinstance(data, Mapping):
            raise InvalidInputError("Detection bundle must be a mapping")
        face = data.get("face")
        eyes = data.get("eyes")
        card = data.get("card")
        return cls(
            face=FaceDetection.from_dict(face) if face is not None else None,
            eyes=EyePosition.from_dict(eyes) if eyes is not None else None,
            card=CardDetection.from_dict(card) if card is not None else None,
        )


@dataclass(frozen=True)
class MeasurementSample:
    """One frame's raw measurement, fed to the smoother."""
    timestamp: float
    eye_pixel_distance: float
    card_pixel_width: float
    ipd: float
    confidence: float


@dataclass(frozen=True)
class MeasurementResult:
    """Smoothed IPD exposed to the presentation layer."""
    ipd: float
    confidence: float
    timestamp: float
    plausible: bool = True

    def to_dict(self) -> dict:
        return {
            "ipd": round(self.ipd, 2),
            "confidence": round(self.confidence, 3),
            "timestamp": self.timestamp,
            "plausible": self.plausible,
        }


@dataclass(frozen=True)
class DebugInfo:
    """Diagnostic snapshot for overlays. Purely informational."""
    face_detected: bool
    eye_detected: bool
    card_detected: bool
    pixel_distance: float
    card_pixel_width: float
    current_state: str
    fps: float = 0.0

    def to_dict(self) -> dict:
        return {
            "faceDetected": self.face_detected,
            "eyeDetected": self.eye_detected,
            "cardDetected": self.card_detected,
            "pixelDistance": round(self.pixel_distance, 2),
            "cardPixelWidth": round(self.card_pixel_width, 2),
            "currentState": self.current_state,
            "fps": self.fps,
        }
