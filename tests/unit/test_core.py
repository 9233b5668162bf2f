"""Unit tests for the measurement state machine."""
import math

import pytest

from conftest import (
    EventRecorder,
    full_bundle,
    make_card,
    make_eyes,
    make_face,
    rotated_rectangle,
)
from ipd_engine.config import Configuration
from ipd_engine.core import MeasurementController, aggregate_confidence
from ipd_engine.detections import CardDetection, DetectionBundle
from ipd_engine.exceptions import (
    CollaboratorError,
    ControllerStateError,
    DivisionByZeroError,
    InvalidInputError,
)
from ipd_engine.messages import CARD_MESSAGES, IMPLAUSIBLE_RESULT_MESSAGE, STATE_MESSAGES
from ipd_engine.calibration import ValidationReason
from ipd_engine.states import MeasurementState


class FakeDetector:
    """Collaborator double with a controllable readiness."""

    def __init__(self, ready=True, fail_on_close=False):
        self.ready = ready
        self.fail_on_close = fail_on_close
        self.closed = False

    def is_ready(self):
        if isinstance(self.ready, Exception):
            raise self.ready
        return self.ready

    def close(self):
        if self.fail_on_close:
            raise RuntimeError("device busy")
        self.closed = True


def feed(controller, bundles, start=1.0, step=0.1):
    """Push bundles at evenly spaced timestamps; returns the last timestamp."""
    ts = start
    for bundle in bundles:
        controller.process_frame(bundle, timestamp=ts)
        ts = round(ts + step, 6)
    return round(ts - step, 6)


class TestAggregateConfidence:

    def test_minimum_of_detections(self):
        assert aggregate_confidence(0.9, 0.8, 0.95) == pytest.approx(0.8)

    def test_outlier_penalty(self):
        assert aggregate_confidence(0.9, 0.9, 0.9, outlier=True) == pytest.approx(0.45)

    def test_penalties_stack(self):
        assert aggregate_confidence(0.8, 0.9, 0.9, outlier=True, plausible=False) == pytest.approx(0.2)


class TestLifecycle:

    def test_starts_initializing(self):
        controller = MeasurementController()
        assert controller.get_state() == MeasurementState.INITIALIZING
        assert not controller.is_active

    def test_initialize_waits_for_face(self):
        controller = MeasurementController(collaborators=[FakeDetector()])
        assert controller.initialize() == MeasurementState.WAITING_FOR_FACE

    def test_start_before_initialize_raises(self):
        with pytest.raises(ControllerStateError):
            MeasurementController().start_measurement()

    def test_initialize_twice_raises(self, controller):
        with pytest.raises(ControllerStateError):
            controller.initialize()

    def test_frames_ignored_until_started(self):
        controller = MeasurementController()
        controller.initialize()
        controller.process_frame(full_bundle(), timestamp=0.1)
        assert controller.get_state() == MeasurementState.WAITING_FOR_FACE

    def test_stop_returns_to_waiting_for_face(self, measuring_controller):
        measuring_controller.process_frame(full_bundle(), timestamp=0.4)
        assert len(measuring_controller.smoother) == 1

        assert measuring_controller.stop_measurement() == MeasurementState.WAITING_FOR_FACE
        assert not measuring_controller.is_active
        assert len(measuring_controller.smoother) == 0

        measuring_controller.process_frame(full_bundle(), timestamp=0.5)
        assert measuring_controller.get_state() == MeasurementState.WAITING_FOR_FACE

    def test_stop_and_restart(self, controller):
        controller.stop_measurement()
        controller.start_measurement()
        controller.process_frame(DetectionBundle(face=make_face()), timestamp=0.1)
        assert controller.get_state() == MeasurementState.FACE_DETECTED


class TestAcquisition:

    def test_face_then_eyes_then_card(self, controller, recorder):
        controller.process_frame(DetectionBundle(face=make_face()), timestamp=0.1)
        controller.process_frame(DetectionBundle(face=make_face(), eyes=make_eyes()), timestamp=0.2)
        controller.process_frame(full_bundle(), timestamp=0.3)

        assert recorder.states == [
            MeasurementState.FACE_DETECTED,
            MeasurementState.WAITING_FOR_CARD,
            MeasurementState.MEASURING,
        ]
        # No sample on the frame that entered MEASURING
        assert controller.get_latest_result() is None

    def test_one_transition_per_frame(self, controller):
        controller.process_frame(full_bundle(), timestamp=0.1)
        assert controller.get_state() == MeasurementState.FACE_DETECTED

    def test_low_confidence_face_ignored(self, controller):
        controller.process_frame(DetectionBundle(face=make_face(confidence=0.5)), timestamp=0.1)
        assert controller.get_state() == MeasurementState.WAITING_FOR_FACE

    def test_face_confidence_at_threshold_accepted(self, controller, config):
        face = make_face(confidence=config.face_confidence_threshold)
        controller.process_frame(DetectionBundle(face=face), timestamp=0.1)
        assert controller.get_state() == MeasurementState.FACE_DETECTED

    def test_low_confidence_eyes_keep_face_detected(self, controller):
        controller.process_frame(DetectionBundle(face=make_face()), timestamp=0.1)
        controller.process_frame(
            DetectionBundle(face=make_face(), eyes=make_eyes(confidence=0.2)), timestamp=0.2
        )
        assert controller.get_state() == MeasurementState.FACE_DETECTED

    def test_face_lost_from_face_detected(self, controller, recorder):
        controller.process_frame(DetectionBundle(face=make_face()), timestamp=0.1)
        recorder.clear()

        for i in range(5):
            controller.process_frame(DetectionBundle(), timestamp=0.2 + i * 0.1)
            assert controller.get_state() == MeasurementState.WAITING_FOR_FACE

        assert recorder.states == [MeasurementState.WAITING_FOR_FACE]

    def test_invalid_card_keeps_waiting(self, controller):
        controller.process_frame(DetectionBundle(face=make_face()), timestamp=0.1)
        controller.process_frame(DetectionBundle(face=make_face(), eyes=make_eyes()), timestamp=0.2)
        controller.process_frame(full_bundle(card=make_card(angle=30)), timestamp=0.3)

        assert controller.get_state() == MeasurementState.WAITING_FOR_CARD
        assert controller.get_status_message() == CARD_MESSAGES[ValidationReason.TILT_TOO_HIGH]

    def test_waiting_for_card_loses_face(self, controller):
        controller.process_frame(DetectionBundle(face=make_face()), timestamp=0.1)
        controller.process_frame(DetectionBundle(face=make_face(), eyes=make_eyes()), timestamp=0.2)
        controller.process_frame(DetectionBundle(card=make_card()), timestamp=0.3)
        assert controller.get_state() == MeasurementState.WAITING_FOR_FACE


class TestMeasuring:

    def test_completes_after_full_window(self, measuring_controller, config):
        recorder = EventRecorder(measuring_controller)
        feed(measuring_controller, [full_bundle()] * config.smoothing_window_size, start=0.4)

        assert measuring_controller.get_state() == MeasurementState.MEASUREMENT_COMPLETE
        result = measuring_controller.get_latest_result()
        assert result.ipd == pytest.approx(63.0)
        assert result.confidence == pytest.approx(0.9)
        assert result.plausible
        assert len(recorder.of_kind("result")) == config.smoothing_window_size
        assert measuring_controller.get_status_message() == STATE_MESSAGES[
            MeasurementState.MEASUREMENT_COMPLETE
        ]

    def test_result_notified_before_completion(self, measuring_controller):
        recorder = EventRecorder(measuring_controller)
        feed(measuring_controller, [full_bundle()] * 5, start=0.4)

        kinds = [e[0] for e in recorder.events]
        assert kinds[-2:] == ["result", "state"]
        assert recorder.events[-1][2] == MeasurementState.MEASUREMENT_COMPLETE

    def test_last_sample(self, measuring_controller):
        measuring_controller.process_frame(full_bundle(), timestamp=0.4)
        sample = measuring_controller.get_last_sample()
        assert sample.timestamp == 0.4
        assert sample.eye_pixel_distance == pytest.approx(126.0)
        assert sample.card_pixel_width == pytest.approx(171.2)
        assert sample.ipd == pytest.approx(63.0)

    def test_rotated_card_measures_true_width(self, measuring_controller):
        corners = rotated_rectangle((320, 120), 171.2, 107.9, 10)
        xs = [c.x for c in corners]
        card = CardDetection(corners, max(xs) - min(xs), 107.9, 10, 0.9)
        measuring_controller.process_frame(full_bundle(card=card), timestamp=0.4)
        assert measuring_controller.get_latest_result().ipd == pytest.approx(63.0)

    def test_frames_ignored_after_completion(self, measuring_controller):
        feed(measuring_controller, [full_bundle()] * 5, start=0.4)
        result = measuring_controller.get_latest_result()

        measuring_controller.process_frame(DetectionBundle(), timestamp=2.0)
        measuring_controller.process_frame(full_bundle(eyes=make_eyes(140)), timestamp=2.1)

        assert measuring_controller.get_state() == MeasurementState.MEASUREMENT_COMPLETE
        assert measuring_controller.get_latest_result() is result

    def test_restart_from_complete_clears_result(self, measuring_controller):
        feed(measuring_controller, [full_bundle()] * 5, start=0.4)
        measuring_controller.start_measurement()

        assert measuring_controller.get_state() == MeasurementState.WAITING_FOR_FACE
        assert measuring_controller.get_latest_result() is None
        assert len(measuring_controller.smoother) == 0

    def test_stop_keeps_completed_result(self, measuring_controller):
        feed(measuring_controller, [full_bundle()] * 5, start=0.4)
        assert measuring_controller.stop_measurement() == MeasurementState.MEASUREMENT_COMPLETE
        assert measuring_controller.get_latest_result() is not None

    def test_outlier_halves_confidence(self, measuring_controller):
        bundles = [full_bundle(eyes=make_eyes(d)) for d in (126, 127, 126, 125)]
        feed(measuring_controller, bundles, start=0.4)
        before = measuring_controller.smoother.values

        measuring_controller.process_frame(full_bundle(eyes=make_eyes(200)), timestamp=0.9)

        result = measuring_controller.get_latest_result()
        assert measuring_controller.smoother.values == before
        assert measuring_controller.smoother.last_was_outlier
        assert result.confidence == pytest.approx(0.45)
        assert result.ipd == pytest.approx(63.0)
        assert measuring_controller.get_last_sample().ipd == pytest.approx(100.0)
        assert measuring_controller.get_state() == MeasurementState.MEASURING

    def test_implausible_result_never_completes(self, measuring_controller):
        feed(measuring_controller, [full_bundle(eyes=make_eyes(20))] * 8, start=0.4)

        result = measuring_controller.get_latest_result()
        assert measuring_controller.get_state() == MeasurementState.MEASURING
        assert result.ipd == pytest.approx(10.0)
        assert not result.plausible
        assert result.confidence == pytest.approx(0.45)
        assert measuring_controller.get_status_message() == IMPLAUSIBLE_RESULT_MESSAGE

    def test_custom_window_size(self):
        controller = MeasurementController(
            Configuration(smoothing_window_size=3), clock=lambda: 0.0
        )
        controller.initialize()
        controller.start_measurement()
        controller.process_frame(DetectionBundle(face=make_face()), timestamp=0.1)
        controller.process_frame(DetectionBundle(face=make_face(), eyes=make_eyes()), timestamp=0.2)
        feed(controller, [full_bundle()] * 4, start=0.3)
        assert controller.get_state() == MeasurementState.MEASUREMENT_COMPLETE


class TestGracePeriod:

    def test_card_loss_within_grace_keeps_measuring(self, measuring_controller):
        measuring_controller.process_frame(full_bundle(), timestamp=1.0)
        measuring_controller.process_frame(full_bundle(card=None), timestamp=1.2)
        measuring_controller.process_frame(full_bundle(card=None), timestamp=1.5)
        assert measuring_controller.get_state() == MeasurementState.MEASURING
        assert len(measuring_controller.smoother) == 1

    def test_card_loss_beyond_grace(self, measuring_controller):
        measuring_controller.process_frame(full_bundle(), timestamp=1.0)
        measuring_controller.process_frame(full_bundle(card=None), timestamp=1.6)
        assert measuring_controller.get_state() == MeasurementState.WAITING_FOR_CARD

    def test_invalid_card_counts_as_lost(self, measuring_controller):
        measuring_controller.process_frame(full_bundle(), timestamp=1.0)
        measuring_controller.process_frame(full_bundle(card=make_card(angle=40)), timestamp=1.3)
        assert measuring_controller.get_status_message() == CARD_MESSAGES[
            ValidationReason.TILT_TOO_HIGH
        ]
        measuring_controller.process_frame(full_bundle(card=make_card(angle=40)), timestamp=1.7)
        assert measuring_controller.get_state() == MeasurementState.WAITING_FOR_CARD

    def test_good_frame_renews_grace(self, measuring_controller):
        measuring_controller.process_frame(full_bundle(), timestamp=1.0)
        measuring_controller.process_frame(full_bundle(card=None), timestamp=1.4)
        measuring_controller.process_frame(full_bundle(), timestamp=1.45)
        measuring_controller.process_frame(full_bundle(card=None), timestamp=1.9)
        assert measuring_controller.get_state() == MeasurementState.MEASURING

    def test_face_loss_resets_smoother(self, measuring_controller):
        measuring_controller.process_frame(full_bundle(), timestamp=1.0)
        measuring_controller.process_frame(DetectionBundle(), timestamp=1.2)
        assert measuring_controller.get_state() == MeasurementState.MEASURING

        measuring_controller.process_frame(DetectionBundle(), timestamp=1.6)
        assert measuring_controller.get_state() == MeasurementState.WAITING_FOR_FACE
        assert len(measuring_controller.smoother) == 0

    def test_custom_grace_period(self):
        controller = MeasurementController(Configuration(loss_grace_period_s=0.0))
        controller.initialize()
        controller.start_measurement()
        feed(controller, [
            DetectionBundle(face=make_face()),
            DetectionBundle(face=make_face(), eyes=make_eyes()),
            full_bundle(),
            full_bundle(card=None),
        ], start=0.1)
        assert controller.get_state() == MeasurementState.WAITING_FOR_CARD


class TestFrameErrors:

    def test_zero_card_height_skips_frame(self, measuring_controller):
        recorder = EventRecorder(measuring_controller)
        measuring_controller.process_frame(full_bundle(), timestamp=0.4)
        flat = CardDetection(rotated_rectangle((320, 120), 171.2, 107.9), 171.2, 0, 0, 0.9)

        measuring_controller.process_frame(full_bundle(card=flat), timestamp=0.5)

        assert measuring_controller.get_state() == MeasurementState.MEASURING
        assert len(measuring_controller.smoother) == 1
        assert isinstance(recorder.errors[-1], DivisionByZeroError)

    @pytest.mark.parametrize("face,expected", [
        (make_face(), MeasurementState.WAITING_FOR_CARD),
        (None, MeasurementState.WAITING_FOR_FACE),
    ])
    def test_persistent_zero_card_height_leaves_measuring(self, measuring_controller, face, expected):
        measuring_controller.process_frame(full_bundle(), timestamp=1.0)
        flat = CardDetection(rotated_rectangle((320, 120), 171.2, 107.9), 171.2, 0, 0, 0.9)

        for i in range(1, 31):
            measuring_controller.process_frame(
                full_bundle(face=face, card=flat), timestamp=round(1.0 + i * 0.1, 6)
            )

        assert measuring_controller.get_state() == expected

    def test_zero_card_height_reported_each_frame(self, measuring_controller):
        recorder = EventRecorder(measuring_controller)
        flat = CardDetection(rotated_rectangle((320, 120), 171.2, 107.9), 171.2, 0, 0, 0.9)
        measuring_controller.process_frame(full_bundle(card=flat), timestamp=0.4)
        measuring_controller.process_frame(full_bundle(card=flat), timestamp=0.5)
        assert len(recorder.errors) == 2
        assert all(isinstance(e, DivisionByZeroError) for e in recorder.errors)

    def test_face_loss_keeps_last_card_reason(self, measuring_controller):
        measuring_controller.process_frame(full_bundle(card=make_card(angle=40)), timestamp=0.4)
        measuring_controller.process_frame(
            full_bundle(face=None, card=make_card(width=100, height=100)), timestamp=0.5
        )
        assert measuring_controller.get_status_message() == CARD_MESSAGES[
            ValidationReason.TILT_TOO_HIGH
        ]

    def test_mirrored_eyes_mapping_reported(self, controller, recorder):
        frame = {
            "face": {"boundingBox": {"x": 0, "y": 0, "width": 100, "height": 100}, "confidence": 0.9},
            "eyes": {"left": {"x": 80, "y": 50}, "right": {"x": 20, "y": 50}, "confidence": 0.9},
        }
        assert controller.process_frame(frame, timestamp=0.1) == MeasurementState.WAITING_FOR_FACE
        assert isinstance(recorder.errors[0], InvalidInputError)
        assert recorder.states == []

    def test_nan_coordinate_mapping_reported(self, controller, recorder):
        frame = {"eyes": {"left": {"x": math.nan, "y": 0}, "right": {"x": 5, "y": 0},
                          "confidence": 0.9}}
        controller.process_frame(frame, timestamp=0.1)
        assert isinstance(recorder.errors[0], InvalidInputError)

    def test_valid_mapping_accepted(self, controller):
        frame = {"face": {"boundingBox": {"x": 0, "y": 0, "width": 100, "height": 100},
                          "confidence": 0.9}}
        assert controller.process_frame(frame, timestamp=0.1) == MeasurementState.FACE_DETECTED


class TestCollaboratorFaults:

    def test_not_ready_enters_error(self):
        controller = MeasurementController(collaborators=[FakeDetector(ready=False)])
        recorder = EventRecorder(controller)

        assert controller.initialize() == MeasurementState.ERROR
        assert isinstance(recorder.errors[0], CollaboratorError)
        assert controller.get_status_message() == STATE_MESSAGES[MeasurementState.ERROR]

    def test_raising_is_ready_enters_error(self):
        controller = MeasurementController(collaborators=[FakeDetector(ready=OSError("no camera"))])
        assert controller.initialize() == MeasurementState.ERROR

    def test_start_in_error_raises(self):
        controller = MeasurementController(collaborators=[FakeDetector(ready=False)])
        controller.initialize()
        with pytest.raises(ControllerStateError):
            controller.start_measurement()

    def test_reinitialize_recovers(self):
        detector = FakeDetector(ready=False)
        controller = MeasurementController(collaborators=[detector])
        controller.initialize()

        detector.ready = True
        assert controller.initialize() == MeasurementState.WAITING_FOR_FACE
        controller.start_measurement()
        assert controller.is_active

    def test_runtime_fault_stops_processing(self, measuring_controller):
        measuring_controller.report_collaborator_fault(RuntimeError("detector crashed"))

        assert measuring_controller.get_state() == MeasurementState.ERROR
        assert not measuring_controller.is_active
        measuring_controller.process_frame(full_bundle(), timestamp=1.0)
        assert measuring_controller.get_state() == MeasurementState.ERROR

    def test_runtime_fault_is_wrapped(self, controller, recorder):
        cause = RuntimeError("detector crashed")
        controller.report_collaborator_fault(cause)
        error = recorder.errors[0]
        assert isinstance(error, CollaboratorError)
        assert error.__cause__ is cause

    def test_shutdown_closes_collaborators(self):
        detector = FakeDetector()
        controller = MeasurementController(collaborators=[detector])
        controller.initialize()
        controller.shutdown()
        assert detector.closed
        assert controller.get_state() == MeasurementState.WAITING_FOR_FACE

    def test_failing_close_enters_error(self):
        controller = MeasurementController(collaborators=[FakeDetector(fail_on_close=True)])
        controller.initialize()
        controller.shutdown()
        assert controller.get_state() == MeasurementState.ERROR


class TestObservers:

    def test_unsubscribe(self, controller):
        seen = []
        unsubscribe = controller.on_state_change(lambda old, new: seen.append(new))
        controller.process_frame(DetectionBundle(face=make_face()), timestamp=0.1)
        unsubscribe()
        controller.process_frame(DetectionBundle(), timestamp=0.2)
        assert seen == [MeasurementState.FACE_DETECTED]

    def test_failing_listener_does_not_break_processing(self, controller):
        seen = []

        def broken(old, new):
            raise RuntimeError("listener bug")

        controller.on_state_change(broken)
        controller.on_state_change(lambda old, new: seen.append(new))
        controller.process_frame(DetectionBundle(face=make_face()), timestamp=0.1)

        assert controller.get_state() == MeasurementState.FACE_DETECTED
        assert seen == [MeasurementState.FACE_DETECTED]

    def test_state_event_carries_old_state(self, controller, recorder):
        controller.process_frame(DetectionBundle(face=make_face()), timestamp=0.1)
        assert recorder.events == [
            ("state", MeasurementState.WAITING_FOR_FACE, MeasurementState.FACE_DETECTED)
        ]


class TestDebugInfo:

    def test_reflects_last_frame(self, measuring_controller):
        info = measuring_controller.get_debug_info()
        assert info.face_detected and info.eye_detected and info.card_detected
        assert info.pixel_distance == pytest.approx(126.0)
        assert info.card_pixel_width == pytest.approx(171.2)
        assert info.current_state == MeasurementState.MEASURING.value
        assert info.fps == pytest.approx(10.0)

    def test_missing_detections(self, controller):
        controller.process_frame(DetectionBundle(face=make_face()), timestamp=0.1)
        info = controller.get_debug_info()
        assert info.face_detected
        assert not info.eye_detected
        assert info.pixel_distance == 0.0
