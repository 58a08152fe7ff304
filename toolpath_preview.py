from __future__ import annotations

from pathlib import Path
from typing import List, Sequence, Tuple

from matplotlib.figure import Figure
from matplotlib.lines import Line2D

from gcode_builder import Point, Segment

GRAPH_MARGIN = 10.0


def travel_moves(trail: Sequence[Segment], origin: Point = (0.0, 0.0)) -> List[Tuple[Point, Point]]:
    """Non-cutting moves implied by a trail: into the first cut and across every gap."""
    moves: List[Tuple[Point, Point]] = []
    position = None
    for segment in trail:
        a, b = segment.start, segment.end
        if position == b and position != a:
            a, b = b, a
        if position != a:
            moves.append((origin if position is None else position, a))
        position = b
    return moves


def compute_bounds(trail: Sequence[Segment], margin: float = GRAPH_MARGIN) -> Tuple[float, float, float, float]:
    xs = [p[0] for s in trail for p in (s.start, s.end)]
    ys = [p[1] for s in trail for p in (s.start, s.end)]
    if not xs:
        return 0.0, 100.0, 0.0, 100.0
    return min(xs) - margin, max(xs) + margin, min(ys) - margin, max(ys) + margin


def _draw(ax, trail: Sequence[Segment], title: str) -> None:
    xmin, xmax, ymin, ymax = compute_bounds(trail)
    ax.set_xlim(xmin, xmax)
    ax.set_ylim(ymin, ymax)
    ax.set_aspect("equal")
    ax.grid(True, alpha=0.3)
    ax.set_xlabel("X (mm)")
    ax.set_ylabel("Y (mm)")

    for seg in trail:
        ax.plot([seg.start[0], seg.end[0]], [seg.start[1], seg.end[1]], "-", color="black", alpha=0.8, linewidth=1.5)

    moves = travel_moves(trail)
    for (x0, y0), (x1, y1) in moves:
        ax.plot([x0, x1], [y0, y1], ":", color="blue", alpha=0.4, linewidth=1)

    ax.set_title(f"{title} - {len(trail)} cuts, {len(moves)} lifts")
    ax.legend(
        [Line2D([0], [0], color="black", lw=2), Line2D([0], [0], color="blue", linestyle=":", lw=1)],
        ["Cut", "Travel"],
        loc="upper right",
    )


def render_toolpath(trail: Sequence[Segment], out_path: str | Path, title: str | None = None, dpi: int = 150) -> str:
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)

    fig = Figure(figsize=(14, 9))
    ax = fig.add_subplot()
    _draw(ax, trail, title or out_path.stem)
    fig.savefig(out_path, dpi=dpi, bbox_inches="tight")
    return str(out_path)


def show_toolpath(trail: Sequence[Segment], title: str = "Toolpath") -> None:
    import matplotlib.pyplot as plt

    fig, ax = plt.subplots(figsize=(14, 9))
    _draw(ax, trail, title)
    plt.show()
