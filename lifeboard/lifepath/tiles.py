"""
Tile classification.

The movement rules only care what kind of tile a player landed on. Boards
name their tiles the way a tilemap asset would ("Stop", "End", "Payday"...)
and the classifier turns a name into a ``TileKind``.
"""

from enum import Enum
from typing import Protocol


class TileKind(str, Enum):
    PLAIN = "plain"
    STOP = "stop"      # bonus turn and a branch prompt
    END = "end"        # ends the game for whoever lands here
    BONUS = "bonus"
    ACTION = "action"
    HOUSE = "house"
    BABY = "baby"


# Checked in order; the first keyword contained in the tile name wins.
NAME_KEYWORDS = (
    ("stop", TileKind.STOP),
    ("end", TileKind.END),
    ("finish", TileKind.END),
    ("bonus", TileKind.BONUS),
    ("payday", TileKind.BONUS),
    ("action", TileKind.ACTION),
    ("house", TileKind.HOUSE),
    ("baby", TileKind.BABY),
)


class TileClassifier(Protocol):
    def classify(self, position) -> TileKind:
        ...


def kind_from_name(name):
    if not name:
        return TileKind.PLAIN
    lowered = name.lower()
    for keyword, kind in NAME_KEYWORDS:
        if keyword in lowered:
            return kind
    return TileKind.PLAIN


class NamedTileClassifier:
    """Classify positions through a ``{position: tile name}`` map."""

    def __init__(self, tiles=None):
        self.tiles = dict(tiles or {})

    def name_at(self, position):
        return self.tiles.get(position)

    def classify(self, position):
        return kind_from_name(self.tiles.get(position))
