"""
Measurement configuration.

Loaded once at session start and read-only afterwards; the model is frozen
so it can be shared between components without locking.
"""

import os
from typing import Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .exceptions import ConfigError
from .utils import CARD_WIDTH_MM, IPD_MAX_MM, IPD_MIN_MM


class Configuration(BaseModel):
    """Tunable parameters of the measurement pipeline."""

    model_config = ConfigDict(frozen=True)

    # Card
    card_real_width_mm: float = Field(CARD_WIDTH_MM, gt=0)
    aspect_ratio_tolerance: float = Field(0.1, ge=0)  # 10% relative tolerance
    max_tilt_angle_deg: float = Field(15.0, ge=0, le=180)

    # Smoothing
    smoothing_window_size: int = Field(5, ge=2)
    outlier_std_dev_threshold: float = Field(3.0, gt=0)

    # Validity
    ipd_plausible_range: Tuple[float, float] = (IPD_MIN_MM, IPD_MAX_MM)

    # Detection thresholds
    face_confidence_threshold: float = Field(0.7, ge=0, le=1)
    eye_confidence_threshold: float = Field(0.7, ge=0, le=1)
    card_confidence_threshold: float = Field(0.6, ge=0, le=1)

    # Tolerated card/eye loss while measuring before falling back
    loss_grace_period_s: float = Field(0.5, ge=0)

    @field_validator("ipd_plausible_range")
    @classmethod
    def _check_range(cls, value: Tuple[float, float]) -> Tuple[float, float]:
        low, high = value
        if not 0 < low < high:
            raise ValueError(f"ipd_plausible_range must satisfy 0 < min < max, got {value}")
        return value


# Environment variable -> configuration field
ENV_OVERRIDES = {
    "IPD_CARD_REAL_WIDTH_MM": "card_real_width_mm",
    "IPD_ASPECT_RATIO_TOLERANCE": "aspect_ratio_tolerance",
    "IPD_MAX_TILT_ANGLE_DEG": "max_tilt_angle_deg",
    "IPD_SMOOTHING_WINDOW_SIZE": "smoothing_window_size",
    "IPD_OUTLIER_STD_DEV_THRESHOLD": "outlier_std_dev_threshold",
    "IPD_FACE_CONFIDENCE_THRESHOLD": "face_confidence_threshold",
    "IPD_EYE_CONFIDENCE_THRESHOLD": "eye_confidence_threshold",
    "IPD_CARD_CONFIDENCE_THRESHOLD": "card_confidence_threshold",
    "IPD_LOSS_GRACE_PERIOD_S": "loss_grace_period_s",
}


def load_config(env_file: Optional[str] = None, **overrides) -> Configuration:
    """
    Build the configuration from defaults, IPD_* environment variables and
    explicit keyword overrides (highest priority).

    IPD_PLAUSIBLE_RANGE takes "min,max".

    Raises:
        ConfigError: if any value fails validation
    """
    load_dotenv(env_file)

    values = {}
    for env_name, field_name in ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is not None and raw.strip():
            values[field_name] = raw.strip()

    raw_range = os.getenv("IPD_PLAUSIBLE_RANGE")
    if raw_range:
        parts = [p.strip() for p in raw_range.split(",")]
        if len(parts) != 2:
            raise ConfigError(f"IPD_PLAUSIBLE_RANGE must be 'min,max', got {raw_range!r}")
        values["ipd_plausible_range"] = tuple(parts)

    values.update(overrides)

    try:
        return Configuration(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
