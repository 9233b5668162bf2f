#!/usr/bin/env python3
"""
IPD Measurement Demo Script

Replay recorded per-frame detections through the measurement controller
and print every state change and the final result. Can also run the card
detector alone on an image.

Usage:
    python demo.py <bundles.jsonl> [options]
    python demo.py --card-image <image_path>

Examples:
    python demo.py session.jsonl
    python demo.py session.jsonl --fps 15 --verbose
    python demo.py --card-image photo.jpg
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Iterator, List, Optional, Tuple

import cv2

from ipd_engine.card_detection import ContourCardDetector
from ipd_engine.config import load_config
from ipd_engine.core import MeasurementController
from ipd_engine.detections import CardDetection, MeasurementResult
from ipd_engine.exceptions import ConfigError
from ipd_engine.states import MeasurementState


def print_header(title: str) -> None:
    """Print formatted header."""
    line = "=" * 70
    print(f"\n{line}")
    print(f"  {title}")
    print(line)


def print_section(title: str) -> None:
    """Print formatted section header."""
    print(f"\n{'-' * 40}")
    print(f"  {title}")
    print(f"{'-' * 40}")


def read_bundles(path: str) -> Iterator[Tuple[int, dict]]:
    """Yield (line_number, bundle) for each non-empty JSON line."""
    with open(path) as f:
        for line_number, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                bundle = json.loads(line)
            except json.JSONDecodeError as e:
                print(f"  ⚠️ Line {line_number}: invalid JSON ({e})")
                continue
            if not isinstance(bundle, dict):
                print(f"  ⚠️ Line {line_number}: expected a JSON object")
                continue
            yield line_number, bundle


def replay(
    path: str,
    fps: float,
    restart_on_complete: bool = False
) -> Optional[MeasurementResult]:
    """
    Feed every bundle of a JSON-lines recording into a controller.

    Frames without a 'timestamp' field are spaced 1/fps seconds apart.

    Returns:
        Latest MeasurementResult, or None if nothing was measured
    """
    print_header("DETECTION REPLAY")
    print(f"  Input: {path}")
    print(f"  Frame rate: {fps:g} fps")

    controller = MeasurementController(load_config())
    transitions: List[str] = []
    errors: List[str] = []

    controller.on_state_change(
        lambda old, new: transitions.append(f"{old.value} -> {new.value}")
    )
    controller.on_error(lambda e: errors.append(str(e)))

    controller.initialize()
    controller.start_measurement()

    frame_count = 0
    for line_number, bundle in read_bundles(path):
        timestamp = bundle.pop("timestamp", frame_count / fps)
        before = len(transitions)
        state = controller.process_frame(bundle, timestamp)
        frame_count += 1

        for transition in transitions[before:]:
            print(f"  [{frame_count:04d}] {transition}  ({controller.get_status_message()})")

        if state == MeasurementState.MEASUREMENT_COMPLETE and restart_on_complete:
            result = controller.get_latest_result()
            print(f"  [{frame_count:04d}] ✓ IPD {result.ipd:.1f} mm, restarting")
            controller.start_measurement()

    print_section("RESULT")
    print(f"  Frames: {frame_count}")
    print(f"  Final state: {controller.get_state().value}")

    result = controller.get_latest_result()
    if result is not None:
        print(f"  ✓ IPD: {result.ipd:.2f} mm")
        print(f"    Confidence: {result.confidence:.1%}")
        print(f"    Plausible: {'Yes' if result.plausible else 'No'}")
    else:
        print("  ✗ No measurement")

    if errors:
        print(f"  Errors ({len(errors)}):")
        for e in errors:
            print(f"    - {e}")

    return result


def detect_card_in_image(image_path: str) -> Optional[CardDetection]:
    """Run the card detector on one image and print the geometry."""
    print_header("CARD DETECTION")

    image = cv2.imread(image_path)
    if image is None:
        print(f"Error: Could not load image: {image_path}")
        return None

    h, w = image.shape[:2]
    print(f"  Image: {image_path}")
    print(f"  Size: {w}x{h}")

    card = ContourCardDetector().detect(image)

    print_section("RESULT")
    if card is None:
        print("  ✗ Card NOT detected")
        return None

    print("  ✓ Card detected!")
    print(f"    Width: {card.width:.1f} px")
    print(f"    Height: {card.height:.1f} px")
    print(f"    Angle: {card.angle:.1f}°")
    print(f"    Confidence: {card.confidence:.1%}")
    print("    Corners:")
    for lbl, corner in zip(['TL', 'TR', 'BR', 'BL'], card.corners):
        print(f"      {lbl}: ({corner.x:.1f}, {corner.y:.1f})")

    return card


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Replay IPD detections or test card detection",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument("bundles_path", nargs="?", help="JSON-lines file of detection bundles")
    parser.add_argument("--card-image", help="Only run card detection on this image")
    parser.add_argument("--fps", type=float, default=30.0,
                        help="Frame rate used for frames without timestamps")
    parser.add_argument("--restart-on-complete", action="store_true",
                        help="Start a new measurement after each completed one")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Show engine log output")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if args.card_image:
        detect_card_in_image(args.card_image)
        return

    if not args.bundles_path:
        parser.error("bundles_path is required unless --card-image is given")
    if not os.path.exists(args.bundles_path):
        print(f"Error: File not found: {args.bundles_path}")
        sys.exit(1)
    if args.fps <= 0:
        parser.error("--fps must be positive")

    try:
        replay(args.bundles_path, args.fps, args.restart_on_complete)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print("\n✓ Done!")


if __name__ == "__main__":
    main()
