from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, TypeAlias
import logging
from pathlib import Path

from gcode_settings import GcodeSettings

logger = logging.getLogger(__name__)

Point: TypeAlias = Tuple[float, float]


@dataclass(frozen=True, slots=True)
class Segment:
    """A straight cut from ``start`` to ``end``."""
    start: Point
    end: Point

    def reversed(self) -> "Segment":
        return Segment(self.end, self.start)

    def undirected_key(self) -> tuple[Point, Point]:
        return (self.start, self.end) if self.start <= self.end else (self.end, self.start)


@dataclass
class MachineState:
    position: Optional[Point] = None
    lifts: int = 0
    cuts: int = 0


def fmt(n: float) -> str:
    # Stable controller-friendly formatting (no scientific notation)
    s = f"{n:.6f}".rstrip("0").rstrip(".")
    return "0" if s in ("", "-0") else s


def _g0_z(z: float, feed: float) -> str:
    return f"G0 Z{fmt(z)} F{fmt(feed)}"

def _g0_xy(x: float, y: float, feed: float) -> str:
    return f"G0 X{fmt(x)} Y{fmt(y)} F{fmt(feed)}"

def _g1_xy(x: float, y: float, feed: float) -> str:
    return f"G1 X{fmt(x)} Y{fmt(y)} F{fmt(feed)}"


def lift_and_travel(state: MachineState, target: Point, settings: GcodeSettings) -> List[str]:
    """Raise the tool, travel to ``target`` and plunge back to the working plane."""
    state.lifts += 1
    return [
        _g0_z(settings.lift_height, settings.lift_feedrate),
        _g0_xy(target[0], target[1], settings.travel_feedrate),
        _g0_z(0, settings.lift_feedrate),
    ]


def cut_to(state: MachineState, target: Point, settings: GcodeSettings) -> str:
    state.position = target
    state.cuts += 1
    return _g1_xy(target[0], target[1], settings.feedrate)


def starting_block(text: str) -> str:
    return text if text.endswith("\n") else text + "\n"


def end_block(text: str) -> str:
    return text


def emit_motion(
    trail: Sequence[Segment],
    settings: GcodeSettings,
    state: Optional[MachineState] = None,
) -> List[str]:
    """
    Turn an ordered trail into G0/G1 lines, ``settings.repetitions`` times over.

    A segment ending where the tool already is gets traversed backwards. The
    lift/travel/plunge triple is only emitted when the tool is not already at
    the start of the next cut, so a continuous trail is cut in one go:

      G0 Z50 F1800       (lift)
      G0 X0 Y0 F3000     (travel)
      G0 Z0 F1800        (plunge)
      G1 X10 Y0 F600
      G1 X10 Y10 F600
    """
    if state is None:
        state = MachineState()

    lines: List[str] = []
    for _ in range(settings.repetitions):
        for segment in trail:
            a, b = segment.start, segment.end
            if state.position == b and state.position != a:
                a, b = b, a
            if state.position is None or state.position != a:
                lines.extend(lift_and_travel(state, a, settings))
            lines.append(cut_to(state, b, settings))

    logger.info("Emitted %d cuts with %d tool lifts", state.cuts, state.lifts)
    return lines


def emit_program(lines: List[str], crlf: bool = False) -> str:
    if not lines:
        return ""
    sep = "\r\n" if crlf else "\n"
    return sep.join(lines) + sep


def build_program(trail: Sequence[Segment], settings: GcodeSettings) -> str:
    """Prologue, motion for every repetition, then the epilogue verbatim."""
    return (
        starting_block(settings.starting_gcode)
        + emit_program(emit_motion(trail, settings))
        + end_block(settings.ending_gcode)
    )


def save_program(text: str, path: str, crlf: bool = False) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)

    if crlf:
        text = text.replace("\r\n", "\n").replace("\n", "\r\n")

    with p.open("w", newline="") as f:
        f.write(text)
