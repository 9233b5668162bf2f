"""Pytest configuration and shared fixtures for the IPD measurement engine.

Provides detection builders that produce geometrically consistent faces,
eyes and reference cards, plus a controller wired to an event recorder.
"""
import math
import sys
import logging
from pathlib import Path
from typing import List, Optional, Tuple

import cv2
import numpy as np
import pytest

# Add the project root to Python path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from ipd_engine.config import Configuration
from ipd_engine.core import MeasurementController
from ipd_engine.detections import (
    BoundingBox,
    CardDetection,
    DetectionBundle,
    EyePosition,
    FaceDetection,
    Point,
)
from ipd_engine.utils import CARD_ASPECT_RATIO


# Configure logging for tests
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler()]
)

# Card 171.2px wide maps 2px to 1mm; eyes 126px apart give 63.0mm
CARD_WIDTH_PX = 171.2
EYE_DISTANCE_PX = 126.0


def rotated_rectangle(
    center: Tuple[float, float],
    width: float,
    height: float,
    angle_deg: float = 0.0
) -> Tuple[Point, Point, Point, Point]:
    """Corners TL, TR, BR, BL of a rectangle rotated about its center (y down)."""
    theta = math.radians(angle_deg)
    cos_t, sin_t = math.cos(theta), math.sin(theta)
    cx, cy = center
    corners = []
    for ox, oy in ((-width / 2, -height / 2), (width / 2, -height / 2),
                   (width / 2, height / 2), (-width / 2, height / 2)):
        corners.append(Point(cx + ox * cos_t - oy * sin_t, cy + ox * sin_t + oy * cos_t))
    return tuple(corners)


def draw_card(width: float = 300, height: float = 189, angle_deg: float = 0.0,
              shape: Tuple[int, int, int] = (480, 640, 3)) -> np.ndarray:
    """Black frame with a filled white card at its center."""
    image = np.zeros(shape, dtype=np.uint8)
    corners = rotated_rectangle((shape[1] / 2, shape[0] / 2), width, height, angle_deg)
    polygon = np.array([[c.x, c.y] for c in corners]).round().astype(np.int32)
    cv2.fillPoly(image, [polygon], (255, 255, 255))
    return image


def make_face(confidence: float = 0.9) -> FaceDetection:
    return FaceDetection(BoundingBox(200, 100, 240, 300), confidence)


def make_eyes(distance: float = EYE_DISTANCE_PX, confidence: float = 0.9,
              y: float = 220.0, left_x: float = 257.0) -> EyePosition:
    return EyePosition(Point(left_x, y), Point(left_x + distance, y), confidence)


def make_card(width: float = CARD_WIDTH_PX, height: Optional[float] = None,
              angle: float = 0.0, confidence: float = 0.9,
              center: Tuple[float, float] = (320.0, 120.0)) -> CardDetection:
    if height is None:
        height = width / CARD_ASPECT_RATIO
    return CardDetection(
        corners=rotated_rectangle(center, width, height, angle),
        width=width,
        height=height,
        angle=angle,
        confidence=confidence,
    )


def full_bundle(**kwargs) -> DetectionBundle:
    """Face, eyes and a valid card, with keyword overrides."""
    values = {"face": make_face(), "eyes": make_eyes(), "card": make_card()}
    values.update(kwargs)
    return DetectionBundle(**values)


class EventRecorder:
    """Collects controller notifications in delivery order."""

    def __init__(self, controller: MeasurementController):
        self.events: List[tuple] = []
        controller.on_state_change(lambda old, new: self.events.append(("state", old, new)))
        controller.on_result(lambda result: self.events.append(("result", result)))
        controller.on_error(lambda error: self.events.append(("error", error)))

    def of_kind(self, kind: str) -> List[tuple]:
        return [e for e in self.events if e[0] == kind]

    @property
    def states(self):
        return [e[2] for e in self.of_kind("state")]

    @property
    def errors(self):
        return [e[1] for e in self.of_kind("error")]

    def clear(self):
        self.events.clear()


@pytest.fixture
def config():
    """Default configuration."""
    return Configuration()


@pytest.fixture
def controller(config):
    """Initialized controller with an active session."""
    ctrl = MeasurementController(config, clock=lambda: 0.0)
    ctrl.initialize()
    ctrl.start_measurement()
    return ctrl


@pytest.fixture
def recorder(controller):
    return EventRecorder(controller)


@pytest.fixture
def measuring_controller(controller):
    """Controller driven into MEASURING at t=0.3."""
    controller.process_frame(DetectionBundle(face=make_face()), timestamp=0.1)
    controller.process_frame(DetectionBundle(face=make_face(), eyes=make_eyes()), timestamp=0.2)
    controller.process_frame(full_bundle(), timestamp=0.3)
    return controller
