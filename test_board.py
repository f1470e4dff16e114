"""
Tests for the path graph, built-in boards and tile classification.

Covers: graph validation, lookups, branch choices, board loading from
names and JSON files, and tile name classification.
"""

import json

import pytest

from lifeboard.errors import ConfigurationError, PositionOutOfRange, SegmentNotFound
from lifeboard.lifepath.board import (
    BOARDS, Connection, PathGraph, Segment, build_board, load_board, parse_tiles,
)
from lifeboard.lifepath.state import Position
from lifeboard.lifepath.tiles import NamedTileClassifier, TileKind, kind_from_name


# ── Helpers ───────────────────────────────────────────────────────────

def seg(name, length, connections=(), terminal=False, y=0):
    return Segment(
        name=name,
        waypoints=tuple(Position(i, y) for i in range(length)),
        connections=tuple(Connection(t, e) for t, e in connections),
        is_terminal=terminal,
    )


def board_dict():
    return {
        "segments": [
            {"name": "Start", "waypoints": [[0, 0], [1, 0]], "connections": [{"target": "Finish"}]},
            {"name": "Finish", "waypoints": [[2, 0], [3, 0]], "terminal": True},
        ],
        "tiles": [{"position": [3, 0], "name": "Finish Line"}],
    }


# ══════════════════════════════════════════════════════════════════════
# Graph Validation
# ══════════════════════════════════════════════════════════════════════

class TestValidation:

    def test_empty_graph_rejected(self):
        with pytest.raises(ConfigurationError, match="no segments"):
            PathGraph([])

    def test_duplicate_names_rejected(self):
        with pytest.raises(ConfigurationError, match="Duplicate segment name"):
            PathGraph([seg("A", 2), seg("A", 3)])

    def test_segment_without_waypoints_rejected(self):
        with pytest.raises(ConfigurationError, match="no waypoints"):
            PathGraph([seg("A", 0)])

    def test_unknown_connection_target(self):
        with pytest.raises(SegmentNotFound, match="unknown segment Nowhere"):
            PathGraph([seg("A", 2, [("Nowhere", 0)])])

    def test_entry_index_outside_target(self):
        with pytest.raises(ConfigurationError, match="enters at 5"):
            PathGraph([seg("A", 2, [("B", 5)]), seg("B", 3)])

    def test_segment_not_found_is_a_key_error(self):
        graph = PathGraph([seg("A", 2)])
        with pytest.raises(KeyError):
            graph.segment_by_name("B")


# ══════════════════════════════════════════════════════════════════════
# Lookups
# ══════════════════════════════════════════════════════════════════════

class TestLookups:

    def test_first_segment_is_the_start(self):
        graph, _ = build_board("two_branch")
        assert graph.starting_segment().name == "Start"

    def test_position_at(self):
        graph, _ = build_board("two_branch")
        assert graph.position_at("LeftPath", 1) == Position(4, 2)

    def test_position_out_of_range(self):
        graph, _ = build_board("two_branch")
        with pytest.raises(PositionOutOfRange, match="outside segment Start"):
            graph.position_at("Start", 3)
        with pytest.raises(PositionOutOfRange):
            graph.position_at("Start", -1)

    def test_segment_length_and_last_index(self):
        graph, _ = build_board("linear")
        assert graph.segment_length("Linear") == 10
        assert graph.is_last_index("Linear", 9)
        assert not graph.is_last_index("Linear", 8)

    def test_connections_from(self):
        graph, _ = build_board("two_branch")
        assert graph.connections_from("Start") == (
            Connection("LeftPath", 0), Connection("RightPath", 0),
        )
        assert graph.connections_from("Final") == ()

    def test_choices_from_a_normal_segment_are_its_connections(self):
        graph, _ = build_board("career_vs_college")
        assert [c.target_segment_name for c in graph.choices_from("Start")] == ["Career", "College"]

    def test_start_without_connections_offers_every_other_segment(self):
        graph = PathGraph([
            seg("Start", 1),
            seg("Left", 3, [("Goal", 0)], y=1),
            seg("Right", 3, [("Goal", 0)], y=-1),
            seg("Goal", 2, terminal=True, y=5),
        ])
        choices = graph.choices_from("Start")
        assert choices == (Connection("Left", 0), Connection("Right", 0))

    def test_dead_end_has_no_choices(self):
        graph = PathGraph([seg("Start", 2, [("Dead", 0)]), seg("Dead", 2, y=1)])
        assert graph.choices_from("Dead") == ()

    def test_describe_lists_segments(self):
        graph, _ = build_board("example")
        text = graph.describe()
        assert text.startswith("Segments (5):")
        assert "-> BranchA (entry: 0)" in text
        assert "End - 2 positions, End: True" in text


# ══════════════════════════════════════════════════════════════════════
# Loading Boards
# ══════════════════════════════════════════════════════════════════════

class TestLoading:

    def test_every_builtin_board_builds(self):
        for name in BOARDS:
            graph, tiles = build_board(name)
            assert len(graph) >= 1
            assert isinstance(tiles, dict)

    def test_unknown_builtin_board(self):
        with pytest.raises(ConfigurationError, match="Unknown board: nope"):
            build_board("nope")

    def test_from_dict(self):
        graph = PathGraph.from_dict(board_dict())
        assert graph.starting_segment().name == "Start"
        assert graph.segment_by_name("Finish").is_terminal
        assert graph.connections_from("Start") == (Connection("Finish", 0),)

    def test_to_dict_rebuilds_the_same_graph(self):
        graph, _ = build_board("career_vs_college")
        assert PathGraph.from_dict(graph.to_dict()).to_dict() == graph.to_dict()

    def test_malformed_segment(self):
        with pytest.raises(ConfigurationError, match="Malformed segment Start"):
            PathGraph.from_dict({"segments": [{"name": "Start", "waypoints": [["x", 0]]}]})

    def test_segment_without_name(self):
        with pytest.raises(ConfigurationError, match="without a name"):
            PathGraph.from_dict({"segments": [{"waypoints": [[0, 0]]}]})

    def test_load_board_by_name(self):
        graph, tiles = load_board("two_branch")
        assert "LeftPath" in graph
        assert tiles[Position(2, 0)] == "Stop"

    def test_load_board_from_file(self, tmp_path):
        path = tmp_path / "board.json"
        path.write_text(json.dumps(board_dict()))
        graph, tiles = load_board(str(path))
        assert len(graph) == 2
        assert tiles == {Position(3, 0): "Finish Line"}

    def test_load_board_missing(self, tmp_path):
        with pytest.raises(ConfigurationError, match="neither built in nor a file"):
            load_board(str(tmp_path / "missing.json"))

    def test_load_board_bad_json(self, tmp_path):
        path = tmp_path / "board.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError, match="Cannot read board file"):
            load_board(str(path))

    def test_malformed_tile(self):
        with pytest.raises(ConfigurationError, match="Malformed tile entry"):
            parse_tiles([{"name": "Stop"}])


# ══════════════════════════════════════════════════════════════════════
# Tiles
# ══════════════════════════════════════════════════════════════════════

class TestTiles:

    def test_kind_from_name(self):
        assert kind_from_name("Stop") is TileKind.STOP
        assert kind_from_name("Finish Line") is TileKind.END
        assert kind_from_name("Payday") is TileKind.BONUS
        assert kind_from_name("Action") is TileKind.ACTION
        assert kind_from_name("House") is TileKind.HOUSE
        assert kind_from_name("Baby") is TileKind.BABY
        assert kind_from_name("Grass") is TileKind.PLAIN
        assert kind_from_name(None) is TileKind.PLAIN

    def test_classifier_uses_tile_map(self):
        _, tiles = build_board("career_vs_college")
        classifier = NamedTileClassifier(tiles)
        assert classifier.classify(Position(3, 1)) is TileKind.BONUS
        assert classifier.classify(Position(1, 1)) is TileKind.PLAIN
        assert classifier.name_at(Position(7, 0)) == "Baby"

    def test_empty_classifier(self):
        assert NamedTileClassifier().classify(Position(0, 0)) is TileKind.PLAIN
