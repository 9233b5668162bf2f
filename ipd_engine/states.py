"""Measurement workflow states."""

from enum import Enum


class MeasurementState(str, Enum):
    INITIALIZING = "initializing"
    WAITING_FOR_FACE = "waiting_for_face"
    FACE_DETECTED = "face_detected"
    WAITING_FOR_CARD = "waiting_for_card"
    MEASURING = "measuring"
    MEASUREMENT_COMPLETE = "measurement_complete"
    ERROR = "error"
