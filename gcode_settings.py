"""Settings for the DXF to G-code converter.

Feed rates are written to the G-code ``F`` word exactly as given. Settings can
be persisted to a small YAML file whose keys are the ``GcodeSettings`` field
names::

    feedrate: 600
    lift_feedrate: 1800
    travel_feedrate: 3000
    lift_height: 50
    max_error: 0.01
    repetitions: 1
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

ACCEPTED_INPUT_SUFFIXES = [".dxf"]

DEFAULT_STARTING_GCODE = (
    "G28 ;Home\n"
    "G90 ;Absolute positioning\n"
)

DEFAULT_ENDING_GCODE = (
    "G91 ;Relative positioning\n"
    "G0 Z10 ;Raise Z\n"
    "G90 ;Absolute positioning\n"
)


class ConfigurationError(ValueError):
    """Raised when settings are out of range or cannot be parsed."""


@dataclass(frozen=True)
class GcodeSettings:
    starting_gcode: str = DEFAULT_STARTING_GCODE
    ending_gcode: str = DEFAULT_ENDING_GCODE
    feedrate: float = 600
    lift_feedrate: float = 1800
    travel_feedrate: float = 3000
    # May be negative on machines where "up" is the negative Z direction.
    lift_height: float = 50
    # Max chord error of tessellated curves, also the node merge tolerance.
    max_error: float = 0.01
    repetitions: int = 1

    def replace(self, **changes: Any) -> "GcodeSettings":
        return replace(self, **changes)


def _is_positive_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value > 0


def validate_settings(settings: GcodeSettings) -> GcodeSettings:
    """Check every numeric setting and return the settings unchanged.

    Raises ConfigurationError describing the first offending field.
    """
    for name in ("feedrate", "lift_feedrate", "travel_feedrate", "max_error"):
        value = getattr(settings, name)
        if not _is_positive_number(value):
            raise ConfigurationError(f"{name} must be a positive number, got {value!r}")

    lift = settings.lift_height
    if isinstance(lift, bool) or not isinstance(lift, (int, float)) or not math.isfinite(lift):
        raise ConfigurationError(f"lift_height must be a finite number, got {lift!r}")

    reps = settings.repetitions
    if isinstance(reps, bool) or not isinstance(reps, int) or reps < 1:
        raise ConfigurationError(f"repetitions must be an integer >= 1, got {reps!r}")

    for name in ("starting_gcode", "ending_gcode"):
        if not isinstance(getattr(settings, name), str):
            raise ConfigurationError(f"{name} must be text")

    return settings


def load_settings(path: str | Path) -> GcodeSettings:
    """Load and validate settings from a YAML file.

    Keys that are missing from the file keep their defaults.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    try:
        with path.open("r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Cannot parse settings file {path}: {exc}") from exc

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Settings file {path} must contain a mapping")

    known = {f.name for f in fields(GcodeSettings)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigurationError(f"Unknown settings in {path}: {', '.join(map(str, unknown))}")

    settings = GcodeSettings(**raw)
    logger.debug("Loaded settings from %s", path)
    return validate_settings(settings)


def save_settings(settings: GcodeSettings, path: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        yaml.safe_dump(asdict(settings), f, sort_keys=False, allow_unicode=True)
    logger.debug("Saved settings to %s", path)
