"""
Path graph for Life Path boards.

A board is a set of named segments. Each segment is an ordered run of
waypoints; the last waypoint may branch into other segments through
connections. Segments are referenced by name so every peer can rebuild the same
references from replicated state.

The graph is validated once when it is built and never changes afterwards.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from lifeboard.errors import ConfigurationError, PositionOutOfRange, SegmentNotFound
from lifeboard.lifepath.state import Position


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Connection:
    """Edge from the end of one segment to a waypoint in another."""
    target_segment_name: str
    entry_index: int = 0

    def to_dict(self):
        return {"target": self.target_segment_name, "entry": self.entry_index}


@dataclass(frozen=True)
class Segment:
    name: str
    waypoints: tuple
    connections: tuple = field(default_factory=tuple)
    is_terminal: bool = False

    def __len__(self):
        return len(self.waypoints)

    @property
    def last_index(self):
        return len(self.waypoints) - 1

    def has_connections(self):
        return bool(self.connections)


class PathGraph:

    def __init__(self, segments):
        segments = list(segments)
        if not segments:
            raise ConfigurationError("Path graph has no segments")

        self._segments = {}
        for segment in segments:
            if segment.name in self._segments:
                raise ConfigurationError(f"Duplicate segment name: {segment.name}")
            if not segment.waypoints:
                raise ConfigurationError(f"Segment {segment.name} has no waypoints")
            self._segments[segment.name] = segment
        self._start = segments[0].name

        for segment in segments:
            for conn in segment.connections:
                target = self._segments.get(conn.target_segment_name)
                if target is None:
                    raise SegmentNotFound(
                        f"Segment {segment.name} connects to unknown segment {conn.target_segment_name}"
                    )
                if not 0 <= conn.entry_index < len(target):
                    raise ConfigurationError(
                        f"Connection {segment.name} -> {target.name} enters at "
                        f"{conn.entry_index}, outside 0..{target.last_index}"
                    )

    def __contains__(self, name):
        return name in self._segments

    def __iter__(self):
        return iter(self._segments.values())

    def __len__(self):
        return len(self._segments)

    # ── Lookups ───────────────────────────────────────────────────────

    def segment_by_name(self, name):
        try:
            return self._segments[name]
        except KeyError:
            raise SegmentNotFound(f"Unknown segment: {name}") from None

    def starting_segment(self):
        return self._segments[self._start]

    def position_at(self, segment_name, index):
        segment = self.segment_by_name(segment_name)
        if not 0 <= index < len(segment):
            raise PositionOutOfRange(
                f"Index {index} outside segment {segment_name} (0..{segment.last_index})"
            )
        return segment.waypoints[index]

    def segment_length(self, segment_name):
        return len(self.segment_by_name(segment_name))

    def is_last_index(self, segment_name, index):
        return index >= self.segment_by_name(segment_name).last_index

    def connections_from(self, segment_name):
        return self.segment_by_name(segment_name).connections

    def choices_from(self, segment_name):
        """
        Connections a player may pick between when leaving this segment.

        The starting segment is special: with no connections of its own, every
        other non-terminal segment is offered, entered at its first waypoint.
        That lets a board begin directly at a branch point.
        """
        segment = self.segment_by_name(segment_name)
        if segment.connections or segment_name != self._start:
            return segment.connections
        return tuple(
            Connection(s.name, 0)
            for s in self._segments.values()
            if s.name != self._start and not s.is_terminal
        )

    # ── Serialization ─────────────────────────────────────────────────

    @classmethod
    def from_dict(cls, data):
        """Build a graph from ``{"segments": [{name, waypoints, connections, terminal}]}``."""
        raw_segments = data.get("segments")
        if not raw_segments:
            raise ConfigurationError("Board definition has no segments")

        segments = []
        for raw in raw_segments:
            name = raw.get("name")
            if not name:
                raise ConfigurationError("Segment without a name")
            try:
                waypoints = tuple(Position.from_value(p) for p in raw.get("waypoints", ()))
                connections = tuple(
                    Connection(c["target"], int(c.get("entry", 0)))
                    for c in raw.get("connections", ())
                )
            except (KeyError, TypeError, ValueError) as e:
                raise ConfigurationError(f"Malformed segment {name}: {e}") from e
            segments.append(Segment(
                name=name,
                waypoints=waypoints,
                connections=connections,
                is_terminal=bool(raw.get("terminal", False)),
            ))
        return cls(segments)

    def to_dict(self):
        return {
            "segments": [
                {
                    "name": s.name,
                    "waypoints": [list(p) for p in s.waypoints],
                    "connections": [c.to_dict() for c in s.connections],
                    "terminal": s.is_terminal,
                }
                for s in self._segments.values()
            ]
        }

    def describe(self):
        lines = [f"Segments ({len(self._segments)}):"]
        for i, s in enumerate(self._segments.values()):
            lines.append(f"  {i}: {s.name} - {len(s)} positions, End: {s.is_terminal}")
            for c in s.connections:
                lines.append(f"    -> {c.target_segment_name} (entry: {c.entry_index})")
        return "\n".join(lines)


# ── Built-in Boards ───────────────────────────────────────────────────

def _segment(name, points, connections=(), terminal=False):
    return Segment(
        name=name,
        waypoints=tuple(Position(*p) for p in points),
        connections=tuple(Connection(t, e) for t, e in connections),
        is_terminal=terminal,
    )


def _example_board():
    graph = PathGraph([
        _segment("Start", [(0, 0), (1, 0), (2, 0)], [("BranchA", 0), ("BranchB", 0)]),
        _segment("BranchA", [(3, 1), (4, 1), (5, 1)], [("Converge", 0)]),
        _segment("BranchB", [(3, -1), (4, -1), (5, -1)], [("Converge", 0)]),
        _segment("Converge", [(6, 0), (7, 0)], [("End", 0)]),
        _segment("End", [(8, 0), (9, 0)], terminal=True),
    ])
    tiles = {Position(2, 0): "Stop", Position(4, 1): "Action", Position(4, -1): "Action"}
    return graph, tiles


def _linear_board():
    graph = PathGraph([
        _segment("Linear", [(i, 0) for i in range(10)], terminal=True),
    ])
    return graph, {Position(9, 0): "End"}


def _two_branch_board():
    graph = PathGraph([
        _segment("Start", [(0, 0), (1, 0), (2, 0)], [("LeftPath", 0), ("RightPath", 0)]),
        _segment("LeftPath", [(3, 2), (4, 2), (5, 2)], [("Final", 0)]),
        _segment("RightPath", [(3, -2), (4, -2), (5, -2)], [("Final", 0)]),
        _segment("Final", [(6, 0), (7, 0)], terminal=True),
    ])
    return graph, {Position(2, 0): "Stop"}


def _career_vs_college_board():
    graph = PathGraph([
        _segment("Start", [(0, 0)], [("Career", 0), ("College", 0)]),
        _segment("Career", [(1, 1), (2, 1), (3, 1), (4, 1), (5, 1)], [("Converge", 0)]),
        _segment("College", [(1, -1), (2, -1), (3, -1), (4, -1), (5, -1)], [("Converge", 0)]),
        _segment("Converge", [(6, 0), (7, 0), (8, 0)], [("End", 0)]),
        _segment("End", [(9, 0), (10, 0)], terminal=True),
    ])
    tiles = {
        Position(3, 1): "Payday",
        Position(3, -1): "Action",
        Position(5, 1): "House",
        Position(5, -1): "House",
        Position(7, 0): "Baby",
    }
    return graph, tiles


BOARDS = {
    "example": _example_board,
    "linear": _linear_board,
    "two_branch": _two_branch_board,
    "career_vs_college": _career_vs_college_board,
}


def build_board(name):
    """Return ``(graph, tiles)`` for a built-in board."""
    try:
        factory = BOARDS[name]
    except KeyError:
        raise ConfigurationError(f"Unknown board: {name}. Available: {sorted(BOARDS)}") from None
    return factory()


def parse_tiles(raw_tiles):
    tiles = {}
    for entry in raw_tiles or ():
        try:
            tiles[Position.from_value(entry["position"])] = str(entry["name"])
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Malformed tile entry {entry!r}: {e}") from e
    return tiles


def load_board(source):
    """
    Load ``(graph, tiles)`` from a built-in board name or a JSON file path.

    The file holds ``{"segments": [...], "tiles": [{"position": [x, y], "name": "Stop"}]}``.
    """
    if source in BOARDS:
        return build_board(source)

    path = Path(source)
    if not path.is_file():
        raise ConfigurationError(f"Board {source!r} is neither built in nor a file")
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read board file {path}: {e}") from e

    graph = PathGraph.from_dict(data)
    tiles = parse_tiles(data.get("tiles"))
    logger.info("Loaded board %s: %d segments, %d classified tiles", path, len(graph), len(tiles))
    return graph, tiles
