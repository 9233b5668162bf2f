"""User guidance for every measurement state and card validation outcome."""

from typing import Optional

from .calibration import ValidationReason
from .states import MeasurementState


STATE_MESSAGES = {
    MeasurementState.INITIALIZING: "Initializing system...",
    MeasurementState.WAITING_FOR_FACE: "Please face the camera",
    MeasurementState.FACE_DETECTED: "Face detected, look straight at the camera",
    MeasurementState.WAITING_FOR_CARD: "Please hold a standard card against your forehead",
    MeasurementState.MEASURING: "Measuring... hold still",
    MeasurementState.MEASUREMENT_COMPLETE: "Measurement complete",
    MeasurementState.ERROR: "An error occurred, please restart",
}

CARD_MESSAGES = {
    ValidationReason.OK: "Card detected",
    ValidationReason.LOW_CONFIDENCE: "Card not clearly visible, improve lighting",
    ValidationReason.ASPECT_RATIO_OUT_OF_RANGE: "Hold the card flat and fully in view",
    ValidationReason.TILT_TOO_HIGH: "Please keep card parallel to face",
}

IMPLAUSIBLE_RESULT_MESSAGE = "Result outside the typical adult range, please re-measure"


def status_message(
    state: MeasurementState,
    card_reason: Optional[ValidationReason] = None,
    result_plausible: bool = True
) -> str:
    """
    Guidance text for the current state.

    While the controller waits for or measures the card, a failed card
    validation takes precedence over the generic state message, and an
    implausible running result is called out while measuring.
    """
    if (
        card_reason is not None
        and card_reason is not ValidationReason.OK
        and state in (MeasurementState.WAITING_FOR_CARD, MeasurementState.MEASURING)
    ):
        return CARD_MESSAGES[card_reason]
    if state is MeasurementState.MEASURING and not result_plausible:
        return IMPLAUSIBLE_RESULT_MESSAGE
    return STATE_MESSAGES[state]
