"""
IPD (Interpupillary Distance) Measurement Engine

Turns per-frame face, eye and reference-card detections into a stable
interpupillary distance in millimeters, and sequences the acquisition
workflow that decides when the measurement can be trusted.
"""

from .calibration import CardValidator, ValidationReason, ValidationResult
from .config import Configuration, load_config
from .core import MeasurementController
from .detections import (
    BoundingBox,
    CardDetection,
    DebugInfo,
    DetectionBundle,
    EyePosition,
    FaceDetection,
    MeasurementResult,
    MeasurementSample,
    Point,
)
from .measurement import DistanceCalculator
from .states import MeasurementState
from .temporal_filter import DataSmoother

__version__ = "0.1.0"
__all__ = [
    "BoundingBox",
    "CardDetection",
    "CardValidator",
    "Configuration",
    "DataSmoother",
    "DebugInfo",
    "DetectionBundle",
    "DistanceCalculator",
    "EyePosition",
    "FaceDetection",
    "MeasurementController",
    "MeasurementResult",
    "MeasurementSample",
    "MeasurementState",
    "Point",
    "ValidationReason",
    "ValidationResult",
    "load_config",
]
