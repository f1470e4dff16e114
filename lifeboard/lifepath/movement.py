"""
Player movement along the path graph.

Phase machine (one per player, host side):
  idle → moving → idle
              ↘ awaiting_path_choice → idle

A move advances the player inside the current segment only. Steps that would
run past the segment's last waypoint are dropped rather than carried into
the next segment; leaving a segment always goes through a branch choice.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from lifeboard.errors import ConsistencyFault, RequestRejected
from lifeboard.lifepath.tiles import TileKind


logger = logging.getLogger(__name__)


class MovePhase(str, Enum):
    IDLE = "idle"
    MOVING = "moving"
    AWAITING_PATH_CHOICE = "awaiting_path_choice"


class Outcome(str, Enum):
    """What the turn should do once a move or a choice has been resolved."""
    TURN_OVER = "turn_over"
    BONUS_TURN = "bonus_turn"            # Stop tile: same player keeps the turn
    AWAITING_CHOICE = "awaiting_choice"  # branch prompt out, turn on hold


@dataclass(frozen=True)
class Landing:
    player: int
    segment: str
    index: int
    position: tuple
    tile: TileKind

    def to_dict(self):
        return {
            "player": self.player,
            "segment": self.segment,
            "index": self.index,
            "position": list(self.position),
            "tile": self.tile.value,
        }


def check_path_state(graph, state):
    """Return a ConsistencyFault if ``state`` points outside the graph, else None."""
    if state.current_segment_name not in graph:
        return ConsistencyFault(f"Unknown segment {state.current_segment_name}")
    length = graph.segment_length(state.current_segment_name)
    if not 0 <= state.current_segment_index < length:
        return ConsistencyFault(
            f"Index {state.current_segment_index} outside {state.current_segment_name} (0..{length - 1})"
        )
    return None


class PlayerMover:

    def __init__(self, player, graph, container, classifier):
        self.player = player
        self.graph = graph
        self.container = container
        self.classifier = classifier
        self.phase = MovePhase.IDLE
        self.offered = ()

    def __repr__(self):
        s = self.state
        return (f"PlayerMover(player={self.player}, {s.current_segment_name}"
                f"[{s.current_segment_index}], {self.phase.value})")

    # ── Queries ───────────────────────────────────────────────────────

    @property
    def state(self):
        return self.container.value

    def segment(self):
        return self.graph.segment_by_name(self.state.current_segment_name)

    def position(self):
        s = self.state
        return self.graph.position_at(s.current_segment_name, s.current_segment_index)

    def tile(self):
        return self.classifier.classify(self.position())

    def at_last_index(self):
        return self.state.current_segment_index >= self.segment().last_index

    def choices(self):
        return self.graph.choices_from(self.state.current_segment_name)

    def has_reached_end(self):
        return self.at_last_index() and self.segment().is_terminal

    def on_end_tile(self):
        return self.tile() is TileKind.END

    def can_move(self):
        """True unless parked on a last waypoint with nowhere to branch to."""
        return not self.at_last_index() or bool(self.choices())

    def landing(self):
        s = self.state
        return Landing(
            player=self.player,
            segment=s.current_segment_name,
            index=s.current_segment_index,
            position=self.position(),
            tile=self.tile(),
        )

    # ── Moving ────────────────────────────────────────────────────────

    def request_move(self, steps):
        """
        Advance up to ``steps`` waypoints within the current segment.

        Returns the number of waypoints actually advanced. Standing on the
        last waypoint of a branching segment advances nothing and opens the
        branch prompt instead.
        """
        if isinstance(steps, bool) or not isinstance(steps, int) or steps <= 0:
            raise RequestRejected(f"Steps must be a positive integer, got {steps!r}")
        if self.phase is MovePhase.MOVING:
            raise RequestRejected("Player is already moving")
        if self.phase is MovePhase.AWAITING_PATH_CHOICE:
            raise RequestRejected("Player must choose a path first")
        if not self.can_move():
            raise RequestRejected("Player cannot move anymore")

        state = self.state
        remaining = self.segment().last_index - state.current_segment_index
        actual = min(steps, remaining)

        if actual == 0:
            self._offer(self.choices())
            logger.info("Player %s at the end of %s, choosing a path", self.player,
                        state.current_segment_name)
            return 0

        new_index = state.current_segment_index + actual
        self.container.write(state.moved_to(new_index))
        self.phase = MovePhase.MOVING
        logger.info("Player %s moved %d spaces out of %d requested. New index: %s[%d]",
                    self.player, actual, steps, state.current_segment_name, new_index)
        return actual

    def complete_move(self):
        """Finish the move in flight and report where the player landed."""
        if self.phase is not MovePhase.MOVING:
            raise RequestRejected("No move in progress")
        self.phase = MovePhase.IDLE
        return self.landing()

    def after_landing(self, landing):
        """
        Decide the next step after a move: bonus prompt, branch prompt or end of turn.

        A Stop tile on a segment with nowhere to go leaves the player idle with
        the bonus turn instead of opening a prompt that could never be answered.
        """
        if landing.tile is TileKind.STOP:
            choices = self.choices()
            if choices:
                self._offer(choices)
            logger.info("Player %s landed on a Stop tile and keeps the turn", self.player)
            return Outcome.BONUS_TURN

        if self.at_last_index() and self.choices():
            self._offer(self.choices())
            return Outcome.AWAITING_CHOICE

        return Outcome.TURN_OVER

    # ── Branch Choices ────────────────────────────────────────────────

    def _offer(self, connections):
        self.offered = tuple(connections)
        self.phase = MovePhase.AWAITING_PATH_CHOICE

    def resolve_path_choice(self, connection_index):
        """Take the chosen connection; returns the landing at its entry waypoint."""
        if self.phase is not MovePhase.AWAITING_PATH_CHOICE:
            raise RequestRejected("No path choice pending")
        if (isinstance(connection_index, bool) or not isinstance(connection_index, int)
                or not 0 <= connection_index < len(self.offered)):
            raise RequestRejected(
                f"Invalid path choice {connection_index!r}; {len(self.offered)} offered"
            )

        connection = self.offered[connection_index]
        state = self.state
        self.container.write(state.branched_to(connection.target_segment_name, connection.entry_index))
        self.offered = ()
        self.phase = MovePhase.IDLE
        logger.info("Player %s chose %s -> %s (entry %d)", self.player,
                    state.current_segment_name, connection.target_segment_name, connection.entry_index)
        return self.landing()

    def after_choice(self, landing):
        """Entering on a Stop tile grants another prompt; otherwise the turn ends."""
        if landing.tile is TileKind.STOP and self.choices():
            self._offer(self.choices())
            return Outcome.BONUS_TURN
        return Outcome.TURN_OVER

    def cancel(self):
        """Drop any pending prompt or move, e.g. when the game ends."""
        self.phase = MovePhase.IDLE
        self.offered = ()
