from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Sequence, TypeAlias

import argparse
import logging
import math
import sys
import ezdxf
import numpy as np

from gcode_builder import (
    Point,
    Segment,
    build_program,
    save_program,
)
from gcode_settings import (
    ACCEPTED_INPUT_SUFFIXES,
    ConfigurationError,
    GcodeSettings,
    load_settings,
    save_settings,
    validate_settings,
)
from toolpath_preview import render_toolpath

logger = logging.getLogger(__name__)

TAU = 2.0 * math.pi


class GeometryError(ValueError):
    """An entity cannot be tessellated (non-positive radius, bad coordinates...)."""


class EntitySourceError(RuntimeError):
    """The drawing could not be read; nothing is generated."""


@dataclass(frozen=True, slots=True)
class LineEntity:
    start: Point
    end: Point
    handle: str = "?"


@dataclass(frozen=True, slots=True)
class CircleEntity:
    center: Point
    radius: float
    handle: str = "?"


@dataclass(frozen=True, slots=True)
class ArcEntity:
    """Counter-clockwise arc from start_angle to end_angle (radians) unless reversed."""
    center: Point
    radius: float
    start_angle: float
    end_angle: float
    reversed: bool = False
    handle: str = "?"


@dataclass(frozen=True, slots=True)
class EllipseEntity:
    center: Point
    major_axis: Point  # relative to center
    ratio: float  # minor / major
    handle: str = "?"


@dataclass(frozen=True, slots=True)
class UnsupportedEntity:
    dxftype: str
    handle: str = "?"
    reason: str = "unsupported entity type"


Entity: TypeAlias = LineEntity | CircleEntity | ArcEntity | EllipseEntity | UnsupportedEntity


class GeometryProcessor:
    """Small geometry helpers shared by the tessellator, graph and planner."""

    @staticmethod
    def manhattan_distance(a: Point, b: Point) -> float:
        return abs(a[0] - b[0]) + abs(a[1] - b[1])

    @staticmethod
    def distance_to_origin(p: Point) -> float:
        return math.hypot(p[0], p[1])

    @staticmethod
    def is_finite(*values: float) -> bool:
        return all(math.isfinite(v) for v in values)

    @staticmethod
    def polygon_sides(radius: float, max_error: float) -> int:
        """
        Smallest side count (>= 3) of a regular polygon whose circumscribed
        radius exceeds ``radius`` by at most ``max_error``.
        """
        half_angle = math.acos(radius / (max_error + radius))
        if half_angle <= 0.0:
            raise GeometryError(f"max_error {max_error} is too small for radius {radius}")
        return max(3, math.ceil(math.pi / half_angle))

    @staticmethod
    def segments_from_points(points: Sequence[Point]) -> list[Segment]:
        return [Segment(points[i], points[i + 1]) for i in range(len(points) - 1)]


class Tessellator:
    """Approximates circles, arcs and ellipses by chords within ``max_error``."""

    def __init__(self, max_error: float):
        if not (GeometryProcessor.is_finite(max_error) and max_error > 0):
            raise GeometryError(f"max_error must be positive, got {max_error}")
        self.max_error = float(max_error)

    def arc_to_segments(
        self,
        center: Point,
        radius: float,
        start_angle: float,
        end_angle: float,
        reversed: bool = False,
    ) -> list[Segment]:
        if not GeometryProcessor.is_finite(center[0], center[1], radius, start_angle, end_angle):
            raise GeometryError("arc has non-finite parameters")
        if radius <= 0:
            raise GeometryError(f"radius must be positive, got {radius}")

        if reversed:
            start_angle, end_angle = end_angle, start_angle
        sweep = (end_angle - start_angle) % TAU
        if sweep < 1e-12:
            sweep = TAU
        full_turn = math.isclose(sweep, TAU)

        n = GeometryProcessor.polygon_sides(radius, self.max_error)
        # Vertices sit half the polygon excess outside the curve, chord midpoints
        # at most the other half inside it.
        outer_radius = radius / math.cos(math.pi / n)
        vertex_radius = outer_radius - (outer_radius - radius) / 2.0

        actual_n = max(3, math.ceil(n * (sweep / TAU)))
        angles = start_angle + np.linspace(0.0, sweep, actual_n + 1)
        xs = center[0] + vertex_radius * np.cos(angles)
        ys = center[1] + vertex_radius * np.sin(angles)

        points = list(zip(xs.tolist(), ys.tolist()))
        if full_turn:
            points[-1] = points[0]
        return GeometryProcessor.segments_from_points(points)

    def circle_to_segments(self, center: Point, radius: float) -> list[Segment]:
        return self.arc_to_segments(center, radius, 0.0, TAU, reversed=False)

    def ellipse_to_segments(self, center: Point, major_axis: Point, ratio: float) -> list[Segment]:
        if not GeometryProcessor.is_finite(center[0], center[1], major_axis[0], major_axis[1], ratio):
            raise GeometryError("ellipse has non-finite parameters")

        a = np.asarray(major_axis, dtype=float)
        b = ratio * np.array([-a[1], a[0]])
        rad_a = float(np.hypot(*a))
        rad_b = float(np.hypot(*b))
        if ratio <= 0 or rad_a <= 0 or rad_b <= 0:
            raise GeometryError(f"ellipse axes must be positive, got {rad_a} and {rad_b}")

        n = GeometryProcessor.polygon_sides(max(rad_a, rad_b), self.max_error)
        cos_half = math.cos(math.pi / n)
        excess_a = rad_a / cos_half - rad_a
        excess_b = rad_b / cos_half - rad_b
        a = a + a / rad_a * excess_a / 2.0
        b = b + b / rad_b * excess_b / 2.0

        angles = np.linspace(0.0, TAU, n + 1)
        coords = np.asarray(center, dtype=float) + np.outer(np.cos(angles), a) + np.outer(np.sin(angles), b)

        points = [(float(x), float(y)) for x, y in coords]
        points[-1] = points[0]
        return GeometryProcessor.segments_from_points(points)


class SegmentCollector:
    """Flattens entities into straight segments, skipping what cannot be converted."""

    def __init__(self, max_error: float):
        self.tessellator = Tessellator(max_error)
        self.skipped: list[tuple[str, str]] = []

    def collect(self, entities: Iterable[Entity]) -> list[Segment]:
        segments: list[Segment] = []
        self.skipped = []

        for entity in entities:
            if isinstance(entity, UnsupportedEntity):
                logger.warning("Skipping %s handle=%s: %s", entity.dxftype, entity.handle, entity.reason)
                self.skipped.append((entity.handle, entity.reason))
                continue
            try:
                converted = self.entity_to_segments(entity)
            except GeometryError as exc:
                logger.warning("Skipping malformed %s handle=%s: %s", type(entity).__name__, entity.handle, exc)
                self.skipped.append((entity.handle, str(exc)))
                continue

            logger.debug("%s handle=%s -> %d segments", type(entity).__name__, entity.handle, len(converted))
            segments.extend(converted)

        return segments

    def entity_to_segments(self, entity: Entity) -> list[Segment]:
        if isinstance(entity, LineEntity):
            if not GeometryProcessor.is_finite(*entity.start, *entity.end):
                raise GeometryError("line has non-finite coordinates")
            return [Segment(entity.start, entity.end)]

        if isinstance(entity, CircleEntity):
            return self.tessellator.circle_to_segments(entity.center, entity.radius)

        if isinstance(entity, ArcEntity):
            return self.tessellator.arc_to_segments(
                entity.center,
                entity.radius,
                entity.start_angle,
                entity.end_angle,
                reversed=entity.reversed,
            )

        if isinstance(entity, EllipseEntity):
            return self.tessellator.ellipse_to_segments(entity.center, entity.major_axis, entity.ratio)

        raise GeometryError(f"cannot convert {type(entity).__name__}")


@dataclass(slots=True)
class GraphNode:
    point: Point
    # One entry per unconsumed edge; the same neighbour may appear more than once.
    neighbors: list[int] = field(default_factory=list)

    @property
    def degree(self) -> int:
        return len(self.neighbors)


class ConnectivityGraph:
    """
    Undirected multigraph over segment endpoints.

    Two endpoints are the same node when their Manhattan distance is below the
    tolerance; the lowest-index matching node wins. Lookups go through a grid of
    cells twice the tolerance wide, so only the 3x3 block around a point is
    scanned.
    """

    def __init__(self, tolerance: float):
        if not (GeometryProcessor.is_finite(tolerance) and tolerance > 0):
            raise GeometryError(f"tolerance must be positive, got {tolerance}")
        self.tolerance = float(tolerance)
        self.nodes: list[GraphNode] = []
        self.edge_count = 0
        self._cells: dict[tuple[int, int], list[int]] = defaultdict(list)

    def _cell_key(self, point: Point) -> tuple[int, int]:
        size = 2.0 * self.tolerance
        return (math.floor(point[0] / size), math.floor(point[1] / size))

    def _neighbor_keys(self, point: Point):
        base_x, base_y = self._cell_key(point)
        for dx in (-1, 0, 1):
            for dy in (-1, 0, 1):
                yield (base_x + dx, base_y + dy)

    def find_node(self, point: Point) -> int | None:
        best: int | None = None
        for key in self._neighbor_keys(point):
            for index in self._cells.get(key, ()):
                if best is not None and index > best:
                    continue
                if GeometryProcessor.manhattan_distance(self.nodes[index].point, point) < self.tolerance:
                    best = index
        return best

    def get_or_create_node(self, point: Point) -> int:
        index = self.find_node(point)
        if index is not None:
            return index
        self.nodes.append(GraphNode(point))
        index = len(self.nodes) - 1
        self._cells[self._cell_key(point)].append(index)
        return index

    def add_segment(self, segment: Segment) -> bool:
        """Add ``segment`` as an edge. Returns False when it collapses to a single node."""
        n1 = self.get_or_create_node(segment.start)
        n2 = self.get_or_create_node(segment.end)
        if n1 == n2:
            return False
        self.nodes[n1].neighbors.append(n2)
        self.nodes[n2].neighbors.append(n1)
        self.edge_count += 1
        return True

    def add_segments(self, segments: Iterable[Segment]) -> None:
        for segment in segments:
            self.add_segment(segment)

    def edges(self) -> list[tuple[int, int]]:
        """Remaining edges as (low, high) node index pairs, each listed once."""
        result: list[tuple[int, int]] = []
        for index, node in enumerate(self.nodes):
            result.extend((index, other) for other in node.neighbors if index < other)
        return sorted(result)


class PathPlanner:
    """Greedy trail decomposition of a connectivity graph.

    The graph is consumed: every edge is removed as it is walked.
    """

    def __init__(self, graph: ConnectivityGraph):
        self.graph = graph

    def select_start(self) -> int | None:
        # Closest leaf to the origin, else the closest node that still has edges.
        leaf, leaf_dist = None, math.inf
        other, other_dist = None, math.inf
        for index, node in enumerate(self.graph.nodes):
            if not node.neighbors:
                continue
            dist = GeometryProcessor.distance_to_origin(node.point)
            if node.degree == 1:
                if dist < leaf_dist:
                    leaf, leaf_dist = index, dist
            elif dist < other_dist:
                other, other_dist = index, dist
        return leaf if leaf is not None else other

    def walk(self, start: int) -> list[Segment]:
        nodes = self.graph.nodes
        trail: list[Segment] = []
        current = start
        while nodes[current].neighbors:
            # first-added edge first
            nxt = nodes[current].neighbors.pop(0)
            nodes[nxt].neighbors.remove(current)
            trail.append(Segment(nodes[current].point, nodes[nxt].point))
            current = nxt
        self.graph.edge_count -= len(trail)
        return trail

    def plan_trails(self) -> list[list[Segment]]:
        trails: list[list[Segment]] = []
        while (start := self.select_start()) is not None:
            trail = self.walk(start)
            logger.debug("Trail %d: %d segments from %s", len(trails), len(trail), trail[0].start)
            trails.append(trail)
        return trails

    def plan(self) -> list[Segment]:
        return [segment for trail in self.plan_trails() for segment in trail]


class DxfParser:
    """Reads a DXF drawing with ezdxf and decodes its entities into typed descriptors."""

    def parse_file(self, dxf_path: str | Path, *, include_inserts: bool = True) -> list[Entity]:
        try:
            doc = ezdxf.readfile(str(dxf_path))
        except IOError as exc:
            raise EntitySourceError(f"Cannot read {dxf_path}: {exc}") from exc
        except ezdxf.DXFStructureError as exc:
            raise EntitySourceError(f"Invalid or corrupt DXF file {dxf_path}: {exc}") from exc
        return self.parse_modelspace(doc.modelspace(), include_inserts=include_inserts)

    def parse_modelspace(self, modelspace, *, include_inserts: bool = True) -> list[Entity]:
        entities = [self.decode(entity) for entity in self.iter_entities(modelspace, include_inserts=include_inserts)]
        logger.info("Read %d entities", len(entities))
        return entities

    def iter_entities(self, entities, *, include_inserts: bool) -> Iterable:
        for entity in entities:
            entity_type = entity.dxftype()

            if entity_type == "INSERT" and include_inserts:
                yield from self.iter_entities(
                    self.explode(entity),
                    include_inserts=include_inserts,
                )
            elif entity_type == "LWPOLYLINE" or (entity_type == "POLYLINE" and not self.is_mesh(entity)):
                yield from self.explode(entity)
            else:
                yield entity

    def explode(self, entity) -> list:
        try:
            return list(entity.virtual_entities())
        except Exception as exc:
            logger.warning("Cannot explode %s handle=%s: %s", entity.dxftype(), self.get_handle(entity), exc)
            return []

    def decode(self, entity) -> Entity:
        entity_type = entity.dxftype()
        handle = self.get_handle(entity)

        if entity_type == "LINE":
            start, end = entity.dxf.start, entity.dxf.end
            return LineEntity((float(start.x), float(start.y)), (float(end.x), float(end.y)), handle)

        if entity_type in {"CIRCLE", "ARC"}:
            mirrored = self.mirrored_extrusion(entity)
            if mirrored is None:
                return UnsupportedEntity(entity_type, handle, "not parallel to the XY plane")
            center = entity.ocs().to_wcs(entity.dxf.center)
            center_xy = (float(center.x), float(center.y))
            radius = float(entity.dxf.radius)

            if entity_type == "CIRCLE":
                return CircleEntity(center_xy, radius, handle)

            start = math.radians(float(entity.dxf.start_angle))
            end = math.radians(float(entity.dxf.end_angle))
            if mirrored:
                # OCS x axis points along -X: angles mirror and the sweep turns clockwise.
                return ArcEntity(center_xy, radius, math.pi - start, math.pi - end, True, handle)
            return ArcEntity(center_xy, radius, start, end, False, handle)

        if entity_type == "ELLIPSE":
            if self.mirrored_extrusion(entity) is None:
                return UnsupportedEntity(entity_type, handle, "not parallel to the XY plane")
            center = entity.dxf.center
            axis = entity.dxf.major_axis
            sweep = (float(entity.dxf.end_param) - float(entity.dxf.start_param)) % TAU
            if 1e-9 < sweep < TAU - 1e-9:
                logger.warning("Elliptical arc handle=%s is cut as a full ellipse", handle)
            return EllipseEntity(
                (float(center.x), float(center.y)),
                (float(axis.x), float(axis.y)),
                float(entity.dxf.ratio),
                handle,
            )

        return UnsupportedEntity(entity_type, handle)

    def mirrored_extrusion(self, entity) -> bool | None:
        """False for +Z extrusion, True for -Z, None for anything out of the XY plane."""
        x, y, z = entity.dxf.extrusion
        length = math.sqrt(x * x + y * y + z * z)
        if length <= 0 or math.hypot(x, y) > 1e-9 * length:
            return None
        return z < 0

    def get_handle(self, entity) -> str:
        return getattr(getattr(entity, "dxf", None), "handle", None) or "?"

    def is_mesh(self, entity) -> bool:
        for name in ("is_poly_face_mesh", "is_polygon_mesh"):
            value = getattr(entity, name, False)
            if callable(value):
                value = value()
            if value:
                return True
        return False


def tessellate_arc(
    center: Point,
    radius: float,
    max_error: float,
    start_angle: float,
    end_angle: float,
    reversed: bool = False,
) -> list[Segment]:
    return Tessellator(max_error).arc_to_segments(center, radius, start_angle, end_angle, reversed)


def tessellate_ellipse(center: Point, major_axis: Point, ratio: float, max_error: float) -> list[Segment]:
    return Tessellator(max_error).ellipse_to_segments(center, major_axis, ratio)


def collect_segments(entities: Iterable[Entity], max_error: float) -> list[Segment]:
    return SegmentCollector(max_error).collect(entities)


def build_graph(segments: Iterable[Segment], tolerance: float) -> ConnectivityGraph:
    graph = ConnectivityGraph(tolerance)
    graph.add_segments(segments)
    return graph


def plan_toolpath(segments: Iterable[Segment], tolerance: float) -> list[Segment]:
    graph = build_graph(segments, tolerance)
    logger.info("Graph: %d nodes, %d edges", len(graph.nodes), graph.edge_count)
    trails = PathPlanner(graph).plan_trails()
    logger.info("Planned %d trails", len(trails))
    return [segment for trail in trails for segment in trail]


def toolpath_for_entities(entities: Iterable[Entity], settings: GcodeSettings) -> list[Segment]:
    validate_settings(settings)
    segments = collect_segments(entities, settings.max_error)
    logger.info("Collected %d segments", len(segments))
    return plan_toolpath(segments, settings.max_error)


def generate_gcode(entities: Iterable[Entity], settings: GcodeSettings) -> str:
    return build_program(toolpath_for_entities(entities, settings), settings)


def dxf_to_gcode(
    dxf_path: str | Path,
    settings: GcodeSettings,
    *,
    include_inserts: bool = True,
) -> str:
    validate_settings(settings)
    entities = DxfParser().parse_file(dxf_path, include_inserts=include_inserts)
    return generate_gcode(entities, settings)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dxf-to-gcode",
        description="Convert the lines, circles, arcs and ellipses of a DXF drawing to G-code.",
    )
    parser.add_argument("input", type=Path, help="DXF drawing")
    parser.add_argument("-o", "--output", type=Path, help="G-code file (default: input with .gcode suffix)")
    parser.add_argument("--settings", type=Path, help="YAML settings file")
    parser.add_argument("--save-settings", type=Path, help="write the effective settings to this YAML file")
    parser.add_argument("--feedrate", type=float, help="cutting feedrate")
    parser.add_argument("--lift-feedrate", type=float, help="feedrate of lift and plunge moves")
    parser.add_argument("--travel-feedrate", type=float, help="feedrate of travel moves")
    parser.add_argument("--lift-height", type=float, help="Z of the lifted tool")
    parser.add_argument("--max-error", type=float, help="max chord error and node merge tolerance")
    parser.add_argument("--repetitions", type=int, help="number of passes over the whole drawing")
    parser.add_argument("--no-inserts", action="store_true", help="ignore block references")
    parser.add_argument("--preview", type=Path, help="also render the planned toolpath to this PNG")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    dxf_path: Path = args.input
    if dxf_path.suffix.lower() not in ACCEPTED_INPUT_SUFFIXES:
        parser.error(f"expected one of {', '.join(ACCEPTED_INPUT_SUFFIXES)} files, got {dxf_path.name}")
    out_path: Path = args.output or dxf_path.with_suffix(".gcode")

    overrides = {
        "feedrate": args.feedrate,
        "lift_feedrate": args.lift_feedrate,
        "travel_feedrate": args.travel_feedrate,
        "lift_height": args.lift_height,
        "max_error": args.max_error,
        "repetitions": args.repetitions,
    }
    try:
        settings = load_settings(args.settings) if args.settings else GcodeSettings()
        settings = validate_settings(settings.replace(**{k: v for k, v in overrides.items() if v is not None}))
    except (ConfigurationError, FileNotFoundError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    try:
        entities = DxfParser().parse_file(dxf_path, include_inserts=not args.no_inserts)
    except EntitySourceError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    trail = toolpath_for_entities(entities, settings)
    gcode_text = build_program(trail, settings)

    try:
        save_program(gcode_text, str(out_path))
        if args.save_settings:
            save_settings(settings, args.save_settings)
        if args.preview:
            render_toolpath(trail, args.preview, title=dxf_path.name)
    except OSError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"Saved G-code: {out_path}")
    if args.preview:
        print(f"Saved preview: {args.preview}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
