"""
Request / broadcast message set.

Every wire message is a JSON object with a ``type`` field, the same envelope
the room server uses for lobby traffic. Peers send requests; the host answers
with broadcasts, either to everyone or to a single player.

Requests (inside ``{"type": "request", "request": {...}}``):
  spin         {}                        → state(spin) spinning, later state(spin) complete
  move         {steps: int}              → state(path:N)
  path_choice  {connection_index: int}   → state(path:N)
  end_turn     {}                        → state(turn)
  end_game     {winner: int}             → state(turn) ended; winner recomputed by the host

Broadcasts:
  state               {container, seq, value}   replicated container snapshot
  path_choice_offered {player, connections}     to the choosing player only
  landed              {player, segment, index, position, tile}
  game_ended          {winner}                  sent exactly once per game
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from lifeboard.errors import ProtocolError


class RequestKind(str, Enum):
    SPIN = "spin"
    MOVE = "move"
    PATH_CHOICE = "path_choice"
    END_TURN = "end_turn"
    END_GAME = "end_game"


class BroadcastKind(str, Enum):
    STATE = "state"
    PATH_CHOICE_OFFERED = "path_choice_offered"
    LANDED = "landed"
    GAME_ENDED = "game_ended"


@dataclass(frozen=True)
class Request:
    kind: RequestKind
    steps: Optional[int] = None
    connection_index: Optional[int] = None
    winner: Optional[int] = None

    def to_dict(self):
        data = {"kind": self.kind.value}
        if self.kind is RequestKind.MOVE:
            data["steps"] = self.steps
        elif self.kind is RequestKind.PATH_CHOICE:
            data["connection_index"] = self.connection_index
        elif self.kind is RequestKind.END_GAME:
            data["winner"] = self.winner
        return data


def spin_request():
    return Request(RequestKind.SPIN)


def move_request(steps):
    return Request(RequestKind.MOVE, steps=steps)


def path_choice_request(connection_index):
    return Request(RequestKind.PATH_CHOICE, connection_index=connection_index)


def end_turn_request():
    return Request(RequestKind.END_TURN)


def end_game_request(winner=0):
    return Request(RequestKind.END_GAME, winner=winner)


def _int_field(data, name):
    value = data.get(name)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ProtocolError(f"Field '{name}' must be an integer, got {value!r}")
    return value


def parse_request(data):
    """Turn the ``request`` object of a wire message into a Request."""
    if not isinstance(data, dict):
        raise ProtocolError("Request must be an object")
    try:
        kind = RequestKind(data.get("kind"))
    except ValueError:
        raise ProtocolError(f"Unknown request kind: {data.get('kind')!r}") from None

    if kind is RequestKind.MOVE:
        return move_request(_int_field(data, "steps"))
    if kind is RequestKind.PATH_CHOICE:
        return path_choice_request(_int_field(data, "connection_index"))
    if kind is RequestKind.END_GAME:
        # Accepted for compatibility; the host never trusts this value.
        winner = data.get("winner", 0)
        return end_game_request(winner if isinstance(winner, int) else 0)
    return Request(kind)


@dataclass(frozen=True)
class Broadcast:
    kind: BroadcastKind
    payload: dict = field(default_factory=dict)
    # None means every player; otherwise the player number to deliver to.
    target: Optional[int] = None

    def to_message(self):
        return {"type": self.kind.value, **self.payload}


def parse_broadcast(message):
    if not isinstance(message, dict):
        raise ProtocolError("Broadcast must be an object")
    try:
        kind = BroadcastKind(message.get("type"))
    except ValueError:
        raise ProtocolError(f"Unknown broadcast type: {message.get('type')!r}") from None
    payload = {k: v for k, v in message.items() if k != "type"}
    return Broadcast(kind, payload)
