"""
Constants and replicated state types for Life Path.

Every type here is frozen so a snapshot queued for delivery can never change
underneath the transport. Each one converts to and from a plain dict for the
JSON wire format.
"""

from dataclasses import dataclass, field, replace
from typing import NamedTuple


# ── Players ───────────────────────────────────────────────────────────

PLAYER_ONE = 1
PLAYER_TWO = 2
PLAYER_NUMBERS = (PLAYER_ONE, PLAYER_TWO)
TIE = 0


def other_player(player):
    return PLAYER_TWO if player == PLAYER_ONE else PLAYER_ONE


# ── Container names ───────────────────────────────────────────────────

TURN_CONTAINER = "turn"
SPIN_CONTAINER = "spin"


def path_container(player):
    return f"path:{player}"


def money_container(player):
    return f"money:{player}"


# ── Board coordinates ─────────────────────────────────────────────────

class Position(NamedTuple):
    """Cell coordinate of a waypoint on the board."""
    x: int
    y: int
    z: int = 0

    @classmethod
    def from_value(cls, value):
        """Accept ``[x, y]``, ``[x, y, z]`` or ``{"x": .., "y": ..}``."""
        if isinstance(value, dict):
            return cls(int(value["x"]), int(value["y"]), int(value.get("z", 0)))
        return cls(*(int(v) for v in value))


# ── Replicated state ──────────────────────────────────────────────────

@dataclass(frozen=True)
class PlayerPathState:
    current_segment_name: str
    current_segment_index: int = 0
    history: tuple = field(default_factory=tuple)

    def moved_to(self, index):
        return replace(self, current_segment_index=index)

    def branched_to(self, segment_name, entry_index):
        return PlayerPathState(
            current_segment_name=segment_name,
            current_segment_index=entry_index,
            history=self.history + (self.current_segment_name,),
        )

    def to_dict(self):
        return {
            "segment": self.current_segment_name,
            "index": self.current_segment_index,
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            current_segment_name=data["segment"],
            current_segment_index=int(data["index"]),
            history=tuple(data.get("history", ())),
        )


@dataclass(frozen=True)
class TurnState:
    current_turn_player: int = PLAYER_ONE
    started: bool = False
    ended: bool = False
    winner: int = TIE

    @property
    def in_progress(self):
        return self.started and not self.ended

    def to_dict(self):
        return {
            "current_turn_player": self.current_turn_player,
            "started": self.started,
            "ended": self.ended,
            "winner": self.winner,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            current_turn_player=int(data.get("current_turn_player", PLAYER_ONE)),
            started=bool(data.get("started", False)),
            ended=bool(data.get("ended", False)),
            winner=int(data.get("winner", TIE)),
        )


@dataclass(frozen=True)
class SpinState:
    spinning: bool = False
    final_value: int = 1
    complete: bool = False
    start_time: float = 0.0

    def to_dict(self):
        return {
            "spinning": self.spinning,
            "final_value": self.final_value,
            "complete": self.complete,
            "start_time": self.start_time,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            spinning=bool(data.get("spinning", False)),
            final_value=int(data.get("final_value", 1)),
            complete=bool(data.get("complete", False)),
            start_time=float(data.get("start_time", 0.0)),
        )


def state_codec(state_type):
    """Return ``(encode, decode)`` functions for a replicated state type."""
    return (lambda value: value.to_dict()), state_type.from_dict
