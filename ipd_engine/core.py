"""
Core IPD Measurement Engine

This module provides the MeasurementController state machine that
sequences the acquisition workflow (face, eyes, card, measuring) and
decides when a smoothed measurement is trustworthy.

Frames are pushed one at a time by a single frame-processing actor. The
controller is not thread-safe; callers on several threads must serialize
access (see ipd_service.IPDService).
"""

import time
import logging
from collections.abc import Mapping
from dataclasses import replace
from typing import Callable, List, Optional, Sequence, Union

from .calibration import CardValidator, ValidationReason, ValidationResult
from .config import Configuration
from .detections import (
    DebugInfo,
    DetectionBundle,
    MeasurementResult,
    MeasurementSample,
)
from .exceptions import (
    CalculationError,
    CollaboratorError,
    ControllerStateError,
    IPDEngineError,
)
from .frame_stats import FrameRateMonitor
from .measurement import DistanceCalculator
from .messages import status_message
from .states import MeasurementState
from .temporal_filter import DataSmoother

logger = logging.getLogger(__name__)

# Confidence multipliers for flagged samples
OUTLIER_CONFIDENCE_PENALTY = 0.5
IMPLAUSIBLE_CONFIDENCE_PENALTY = 0.5

StateListener = Callable[[MeasurementState, MeasurementState], None]
ResultListener = Callable[[MeasurementResult], None]
ErrorListener = Callable[[Exception], None]


def aggregate_confidence(
    face_confidence: float,
    eye_confidence: float,
    card_confidence: float,
    outlier: bool = False,
    plausible: bool = True
) -> float:
    """
    Combine per-detection confidences into one measurement confidence.

    The weakest detection bounds the measurement, so the minimum is used.
    Outlier samples and implausible IPDs each halve the result.
    """
    confidence = min(face_confidence, eye_confidence, card_confidence)
    if outlier:
        confidence *= OUTLIER_CONFIDENCE_PENALTY
    if not plausible:
        confidence *= IMPLAUSIBLE_CONFIDENCE_PENALTY
    return confidence


class MeasurementController:
    """
    Finite-state orchestration of an IPD measurement session.

    States flow INITIALIZING -> WAITING_FOR_FACE -> FACE_DETECTED ->
    WAITING_FOR_CARD -> MEASURING -> MEASUREMENT_COMPLETE. ERROR is
    reachable from every state and is left only through initialize().

    Usage:
        controller = MeasurementController(config)
        controller.on_result(lambda r: print(r.ipd))
        controller.initialize()
        controller.start_measurement()
        for bundle in frames:
            controller.process_frame(bundle)
    """

    def __init__(
        self,
        config: Optional[Configuration] = None,
        card_validator: Optional[CardValidator] = None,
        distance_calculator: Optional[DistanceCalculator] = None,
        collaborators: Sequence[object] = (),
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the controller.

        Args:
            config: Measurement configuration (defaults if None)
            card_validator: Card validation service
            distance_calculator: Pixel-to-mm conversion service
            collaborators: External detectors exposing is_ready() and
                optionally close()
            clock: Time source used when frames carry no timestamp
        """
        self.config = config or Configuration()
        self.card_validator = card_validator or CardValidator()
        self.distance_calculator = distance_calculator or DistanceCalculator()
        self.collaborators = list(collaborators)
        self._clock = clock

        self._state = MeasurementState.INITIALIZING
        self._initialized = False
        self._active = False
        self._smoother = self._create_smoother()

        self._latest_result: Optional[MeasurementResult] = None
        self._last_sample: Optional[MeasurementSample] = None
        self._last_card_reason: Optional[ValidationReason] = None
        self._last_seen_ts: Optional[float] = None

        self._fps = FrameRateMonitor()
        self._debug = DebugInfo(
            face_detected=False,
            eye_detected=False,
            card_detected=False,
            pixel_distance=0.0,
            card_pixel_width=0.0,
            current_state=self._state.value,
        )

        self._state_listeners: List[StateListener] = []
        self._result_listeners: List[ResultListener] = []
        self._error_listeners: List[ErrorListener] = []

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    @staticmethod
    def _subscribe(listeners: list, callback: Callable) -> Callable[[], None]:
        listeners.append(callback)

        def unsubscribe():
            if callback in listeners:
                listeners.remove(callback)

        return unsubscribe

    def on_state_change(self, callback: StateListener) -> Callable[[], None]:
        """Register callback(old_state, new_state). Returns an unsubscribe function."""
        return self._subscribe(self._state_listeners, callback)

    def on_result(self, callback: ResultListener) -> Callable[[], None]:
        """Register callback(result) for every result update."""
        return self._subscribe(self._result_listeners, callback)

    def on_error(self, callback: ErrorListener) -> Callable[[], None]:
        """Register callback(exception) for reported errors."""
        return self._subscribe(self._error_listeners, callback)

    @staticmethod
    def _notify(listeners: list, *args):
        for callback in list(listeners):
            try:
                callback(*args)
            except Exception:
                logger.exception(f"Listener {callback!r} failed")

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def smoother(self) -> DataSmoother:
        return self._smoother

    @property
    def is_active(self) -> bool:
        return self._active

    def get_state(self) -> MeasurementState:
        return self._state

    def get_latest_result(self) -> Optional[MeasurementResult]:
        return self._latest_result

    def get_last_sample(self) -> Optional[MeasurementSample]:
        return self._last_sample

    def get_debug_info(self) -> DebugInfo:
        return self._debug

    def get_status_message(self) -> str:
        plausible = self._latest_result.plausible if self._latest_result else True
        return status_message(self._state, self._last_card_reason, plausible)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> MeasurementState:
        """
        Check collaborators and enter WAITING_FOR_FACE.

        Valid from INITIALIZING, or from ERROR as the explicit recovery path.
        A collaborator that is not ready moves the controller to ERROR.
        """
        if self._state not in (MeasurementState.INITIALIZING, MeasurementState.ERROR):
            raise ControllerStateError(f"Cannot initialize in state {self._state.value}")

        self._transition(MeasurementState.INITIALIZING)

        for collaborator in self.collaborators:
            name = type(collaborator).__name__
            try:
                ready = collaborator.is_ready()
            except Exception as e:
                self.report_collaborator_fault(
                    CollaboratorError(f"{name} failed to initialize: {e}")
                )
                return self._state
            if not ready:
                self.report_collaborator_fault(CollaboratorError(f"{name} is not ready"))
                return self._state

        self._initialized = True
        self._transition(MeasurementState.WAITING_FOR_FACE)
        return self._state

    def start_measurement(self) -> MeasurementState:
        """
        Begin (or restart) a measurement session.

        Discards the previous result and smoothing window.

        Raises:
            ControllerStateError: before initialize() or while in ERROR
        """
        if not self._initialized or self._state in (
            MeasurementState.INITIALIZING, MeasurementState.ERROR
        ):
            raise ControllerStateError(
                f"Cannot start measurement in state {self._state.value}; call initialize() first"
            )

        self._smoother = self._create_smoother()
        self._latest_result = None
        self._last_sample = None
        self._last_card_reason = None
        self._last_seen_ts = None
        self._fps.reset()
        self._active = True

        logger.info("Measurement started")
        self._transition(MeasurementState.WAITING_FOR_FACE)
        return self._state

    def stop_measurement(self) -> MeasurementState:
        """
        Stop processing frames.

        Acquisition states fall back to WAITING_FOR_FACE; a completed
        measurement or an error is kept so it can still be read.
        """
        self._active = False
        self._smoother.reset()
        self._last_seen_ts = None

        if self._state in (
            MeasurementState.FACE_DETECTED,
            MeasurementState.WAITING_FOR_CARD,
            MeasurementState.MEASURING,
        ):
            self._transition(MeasurementState.WAITING_FOR_FACE)

        logger.info(f"Measurement stopped in state {self._state.value}")
        return self._state

    def shutdown(self):
        """Stop and release collaborators. A failing close() is a collaborator fault."""
        self._active = False
        for collaborator in self.collaborators:
            close = getattr(collaborator, "close", None)
            if close is None:
                continue
            try:
                close()
            except Exception as e:
                self.report_collaborator_fault(
                    CollaboratorError(f"{type(collaborator).__name__} failed to close: {e}")
                )

    def report_collaborator_fault(self, error: Exception) -> MeasurementState:
        """
        Surface an external collaborator failure and enter ERROR.

        Recovery requires an explicit initialize().
        """
        if not isinstance(error, CollaboratorError):
            wrapped = CollaboratorError(str(error))
            wrapped.__cause__ = error
            error = wrapped

        logger.error(f"Collaborator fault: {error}")
        self._active = False
        self._initialized = False
        self._report_error(error, log=False)
        self._transition(MeasurementState.ERROR)
        return self._state

    # ------------------------------------------------------------------
    # Frame processing
    # ------------------------------------------------------------------

    def process_frame(
        self,
        bundle: Union[DetectionBundle, Mapping],
        timestamp: Optional[float] = None
    ) -> MeasurementState:
        """
        Evaluate one frame's detections and apply at most one transition.

        Args:
            bundle: DetectionBundle or its wire-format mapping
            timestamp: Frame time in seconds (clock() if None)

        Returns:
            The state after this frame
        """
        ts = self._clock() if timestamp is None else timestamp

        if isinstance(bundle, Mapping):
            try:
                bundle = DetectionBundle.from_dict(bundle)
            except IPDEngineError as e:
                self._report_error(e)
                return self._state

        self._fps.tick(ts)
        self._update_debug(bundle)

        if not self._active or self._state in (
            MeasurementState.INITIALIZING,
            MeasurementState.MEASUREMENT_COMPLETE,
            MeasurementState.ERROR,
        ):
            return self._state

        handlers = {
            MeasurementState.WAITING_FOR_FACE: self._handle_waiting_for_face,
            MeasurementState.FACE_DETECTED: self._handle_face_detected,
            MeasurementState.WAITING_FOR_CARD: self._handle_waiting_for_card,
            MeasurementState.MEASURING: self._handle_measuring,
        }

        try:
            handlers[self._state](bundle, ts)
        except CalculationError as e:
            # Invalid geometry: skip this frame, leave the window untouched
            self._report_error(e)

        return self._state

    def _face_ok(self, bundle: DetectionBundle) -> bool:
        return (
            bundle.face is not None
            and bundle.face.confidence >= self.config.face_confidence_threshold
        )

    def _eyes_ok(self, bundle: DetectionBundle) -> bool:
        return (
            bundle.eyes is not None
            and bundle.eyes.confidence >= self.config.eye_confidence_threshold
        )

    def _validate_card(self, bundle: DetectionBundle) -> Optional[ValidationResult]:
        if bundle.card is None:
            self._last_card_reason = None
            return None
        result = self.card_validator.validate(bundle.card, self.config)
        self._last_card_reason = result.reason
        return result

    def _handle_waiting_for_face(self, bundle: DetectionBundle, ts: float):
        if self._face_ok(bundle):
            self._transition(MeasurementState.FACE_DETECTED)

    def _handle_face_detected(self, bundle: DetectionBundle, ts: float):
        if not self._face_ok(bundle):
            self._transition(MeasurementState.WAITING_FOR_FACE)
        elif self._eyes_ok(bundle):
            self._transition(MeasurementState.WAITING_FOR_CARD)

    def _handle_waiting_for_card(self, bundle: DetectionBundle, ts: float):
        if not self._face_ok(bundle):
            self._transition(MeasurementState.WAITING_FOR_FACE)
            return

        validation = self._validate_card(bundle)
        if validation is not None and validation.is_valid:
            self._last_seen_ts = ts
            self._transition(MeasurementState.MEASURING)

    def _handle_measuring(self, bundle: DetectionBundle, ts: float):
        face_ok = self._face_ok(bundle)
        eyes_ok = self._eyes_ok(bundle)

        card_ok = False
        if face_ok:
            try:
                validation = self._validate_card(bundle)
            except CalculationError as e:
                # Unusable card geometry counts as a lost card
                self._last_card_reason = None
                self._report_error(e)
            else:
                card_ok = validation is not None and validation.is_valid

        if face_ok and eyes_ok and card_ok:
            self._last_seen_ts = ts
            self._measure(bundle, ts)
            return

        if self._last_seen_ts is None:
            self._last_seen_ts = ts

        lost_for = ts - self._last_seen_ts
        if lost_for > self.config.loss_grace_period_s:
            logger.info(
                f"Lost {'face' if not face_ok else 'eyes/card'} for {lost_for:.2f}s, "
                f"leaving measuring"
            )
            if face_ok:
                self._transition(MeasurementState.WAITING_FOR_CARD)
            else:
                self._transition(MeasurementState.WAITING_FOR_FACE)

    def _measure(self, bundle: DetectionBundle, ts: float):
        """Run the per-frame pipeline and update the latest result."""
        face, eyes, card = bundle.face, bundle.eyes, bundle.card

        eye_px = self.distance_calculator.pixel_eye_distance(eyes)
        card_px = self.card_validator.corrected_width(card)
        raw_ipd = self.distance_calculator.compute_ipd(
            eye_px, card_px, self.config.card_real_width_mm
        )

        outlier = self._smoother.add_value(raw_ipd, ts)
        if outlier:
            logger.debug(f"Outlier sample {raw_ipd:.2f}mm ignored for smoothing")

        smoothed = self._smoother.get_smoothed_value()
        plausible = self.distance_calculator.is_plausible(smoothed, self.config.ipd_plausible_range)
        confidence = aggregate_confidence(
            face.confidence, eyes.confidence, card.confidence,
            outlier=outlier, plausible=plausible,
        )

        self._last_sample = MeasurementSample(
            timestamp=ts,
            eye_pixel_distance=eye_px,
            card_pixel_width=card_px,
            ipd=raw_ipd,
            confidence=confidence,
        )
        self._latest_result = MeasurementResult(
            ipd=smoothed,
            confidence=confidence,
            timestamp=ts,
            plausible=plausible,
        )
        self._notify(self._result_listeners, self._latest_result)

        if self._smoother.is_full and not outlier and plausible:
            logger.info(f"Measurement complete: IPD={smoothed:.1f}mm confidence={confidence:.2f}")
            self._transition(MeasurementState.MEASUREMENT_COMPLETE)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _create_smoother(self) -> DataSmoother:
        return DataSmoother(
            window_size=self.config.smoothing_window_size,
            outlier_threshold=self.config.outlier_std_dev_threshold,
        )

    def _transition(self, new_state: MeasurementState):
        old_state = self._state
        if new_state == old_state:
            return

        self._state = new_state
        logger.info(f"State: {old_state.value} -> {new_state.value}")

        if new_state == MeasurementState.WAITING_FOR_FACE:
            self._smoother.reset()
            self._last_seen_ts = None
            self._last_card_reason = None

        self._debug = self._replace_debug(current_state=new_state.value)
        self._notify(self._state_listeners, old_state, new_state)

    def _report_error(self, error: Exception, log: bool = True):
        if log:
            logger.warning(f"Frame skipped: {error}")
        self._notify(self._error_listeners, error)

    def _update_debug(self, bundle: DetectionBundle):
        pixel_distance = 0.0
        if bundle.eyes is not None:
            pixel_distance = self.distance_calculator.pixel_eye_distance(bundle.eyes)

        card_pixel_width = 0.0
        if bundle.card is not None:
            card_pixel_width = self.card_validator.corrected_width(bundle.card)

        self._debug = DebugInfo(
            face_detected=bundle.face is not None,
            eye_detected=bundle.eyes is not None,
            card_detected=bundle.card is not None,
            pixel_distance=pixel_distance,
            card_pixel_width=card_pixel_width,
            current_state=self._state.value,
            fps=self._fps.fps(),
        )

    def _replace_debug(self, **changes) -> DebugInfo:
        return replace(self._debug, **changes)
