"""
IPD Measurement Service - frame-processing actor for one measurement session.

Owns a MeasurementController and serializes every call into it, so the
HTTP layer can hand over frames from concurrent requests. When a frame
arrives without card geometry but with an image, the card detector fills
it in before the bundle reaches the controller.
"""

import logging
import threading
from typing import Any, Dict, List, Mapping, Optional

import cv2
import numpy as np

from ipd_engine.card_detection import ContourCardDetector
from ipd_engine.config import Configuration
from ipd_engine.core import MeasurementController
from ipd_engine.detections import FaceDetection
from ipd_engine.exceptions import CollaboratorError, InvalidInputError
from ipd_engine.frame_stats import select_best_face

logger = logging.getLogger(__name__)


class IPDService:
    """IPD measurement session driven by externally produced detections."""

    def __init__(
        self,
        config: Optional[Configuration] = None,
        card_detector: Optional[ContourCardDetector] = None
    ):
        self.card_detector = card_detector or ContourCardDetector()
        self.controller = MeasurementController(
            config=config,
            collaborators=[self.card_detector],
        )
        self._lock = threading.Lock()
        self._frame_errors: List[Exception] = []
        self.controller.on_error(self._frame_errors.append)

    def initialize(self) -> Dict[str, Any]:
        with self._lock:
            self.controller.initialize()
            return self._status()

    def start_session(self) -> Dict[str, Any]:
        with self._lock:
            self.controller.start_measurement()
            return self._status()

    def stop_session(self) -> Dict[str, Any]:
        with self._lock:
            self.controller.stop_measurement()
            return self._status()

    def shutdown(self):
        with self._lock:
            self.controller.shutdown()

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return self._status()

    def _detect_card(self, image: np.ndarray) -> Optional[dict]:
        try:
            card = self.card_detector.detect(image)
        except cv2.error as e:
            self.controller.report_collaborator_fault(
                CollaboratorError(f"Card detector failed: {e}")
            )
            return None
        return card.to_dict() if card is not None else None

    def _pick_face(self, payload: Mapping[str, Any]) -> Optional[dict]:
        """Reduce a multi-face payload ('faces' plus image size) to one face."""
        faces = payload.get("faces")
        if not faces:
            return payload.get("face")

        detections = [FaceDetection.from_dict(f) for f in faces]
        best = select_best_face(
            detections,
            payload.get("imageWidth") or 0,
            payload.get("imageHeight") or 0,
        )
        return faces[detections.index(best)]

    def submit_frame(
        self,
        payload: Mapping[str, Any],
        image: Optional[np.ndarray] = None,
        timestamp: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Process one frame.

        Args:
            payload: Detection bundle in wire format (face/eyes/card), or
                'faces' with 'imageWidth'/'imageHeight' for several faces
            image: Optional BGR frame used to detect the card
            timestamp: Optional frame time in seconds

        Returns:
            Status dictionary after the frame

        Raises:
            InvalidInputError: malformed detections or geometry
        """
        with self._lock:
            self._frame_errors.clear()

            try:
                bundle = {
                    "face": self._pick_face(payload),
                    "eyes": payload.get("eyes"),
                    "card": payload.get("card"),
                }
            except ValueError as e:
                raise InvalidInputError(f"Invalid face list: {e}") from e

            if bundle["card"] is None and image is not None:
                bundle["card"] = self._detect_card(image)

            self.controller.process_frame(bundle, timestamp)

            invalid = [e for e in self._frame_errors if isinstance(e, InvalidInputError)]
            if invalid:
                raise invalid[0]

            return self._status()

    def _status(self) -> Dict[str, Any]:
        result = self.controller.get_latest_result()
        return {
            "state": self.controller.get_state().value,
            "message": self.controller.get_status_message(),
            "result": result.to_dict() if result else None,
            "debug": self.controller.get_debug_info().to_dict(),
            "errors": [str(e) for e in self._frame_errors],
        }
