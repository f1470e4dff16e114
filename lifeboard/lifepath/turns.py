"""
Turn and game-lifecycle state machine.

Phase machine:
  waiting_for_players → in_progress → ended

The game starts once both players are connected and both have been spawned
(their path state and account exist on the host). Player 1 moves first.
A disconnect pauses the game without losing whose turn it is; the game
resumes when the player is back. Ending the game is idempotent: only the
first call records a winner and notifies listeners.
"""

import logging
from dataclasses import replace
from enum import Enum

from lifeboard.errors import RequestRejected
from lifeboard.lifepath.state import (
    PLAYER_NUMBERS, PLAYER_ONE, TIE, TurnState, other_player,
)


logger = logging.getLogger(__name__)


class GamePhase(str, Enum):
    WAITING_FOR_PLAYERS = "waiting_for_players"
    IN_PROGRESS = "in_progress"
    ENDED = "ended"


def evaluate_game_end(players):
    """
    One evaluation pass over ``{player_number: mover}``.

    Returns the winner (1 or 2), TIE (0) or None if the game goes on:
    - exactly one player finished (end of a terminal segment or an End tile) → that player
    - both finished in the same pass → tie
    - nobody can move and nobody finished → tie (deadlock)
    """
    finishers = [
        number for number, mover in sorted(players.items())
        if mover.has_reached_end() or mover.on_end_tile()
    ]
    if len(finishers) == 1:
        return finishers[0]
    if len(finishers) > 1:
        return TIE
    if len(players) == len(PLAYER_NUMBERS) and not any(m.can_move() for m in players.values()):
        return TIE
    return None


class TurnManager:

    def __init__(self, container):
        self.container = container
        self.connected = set()
        self.spawned = set()
        self._ever_started = False
        self._end_listeners = []

    @property
    def state(self):
        return self.container.value

    @property
    def phase(self):
        state = self.state
        if state.ended:
            return GamePhase.ENDED
        if state.started:
            return GamePhase.IN_PROGRESS
        return GamePhase.WAITING_FOR_PLAYERS

    def is_started(self):
        return self.state.started

    def is_ended(self):
        return self.state.ended

    @property
    def current_turn_player(self):
        return self.state.current_turn_player

    @property
    def winner(self):
        return self.state.winner if self.state.ended else None

    def is_turn_of(self, player):
        state = self.state
        return state.in_progress and state.current_turn_player == player

    def is_eligible(self, player):
        """A player may act only once connected and spawned by the host."""
        return player in self.connected and player in self.spawned

    # ── Players ───────────────────────────────────────────────────────

    def player_connected(self, player):
        if player not in PLAYER_NUMBERS:
            raise RequestRejected(f"Unknown player number: {player}")
        self.connected.add(player)
        logger.info("Player %s connected (%d/2)", player, len(self.connected))
        self._maybe_start()

    def player_spawned(self, player):
        if player not in PLAYER_NUMBERS:
            raise RequestRejected(f"Unknown player number: {player}")
        self.spawned.add(player)
        self._maybe_start()

    def player_disconnected(self, player):
        self.connected.discard(player)
        logger.info("Player %s disconnected (%d/2)", player, len(self.connected))
        if self.state.in_progress:
            self.container.write(replace(self.state, started=False))
            logger.info("Game paused - not enough players")

    def _maybe_start(self):
        state = self.state
        if state.ended or state.started:
            return
        if not all(self.is_eligible(p) for p in PLAYER_NUMBERS):
            return

        if self._ever_started:
            self.container.write(replace(state, started=True))
            logger.info("Game resumed, player %s to move", state.current_turn_player)
        else:
            self._ever_started = True
            self.container.write(TurnState(current_turn_player=PLAYER_ONE, started=True))
            logger.info("Game started! Player %s goes first.", PLAYER_ONE)

    # ── Turns ─────────────────────────────────────────────────────────

    def end_turn(self):
        """
        Pass the turn to the other player (host-internal). A paused game still
        flips, so a move that settles during a disconnect uses up the turn.
        """
        state = self.state
        if state.ended or not self._ever_started:
            raise RequestRejected("Game is not in progress")
        next_player = other_player(state.current_turn_player)
        self.container.write(replace(state, current_turn_player=next_player))
        logger.info("Turn switched to player %s", next_player)
        return next_player

    def request_end_turn(self, requester):
        """
        End the turn on a peer's behalf. Only the player whose turn it is may
        do this, so a duplicate request arriving after the flip is refused.
        """
        if not self.is_turn_of(requester):
            raise RequestRejected("Not your turn")
        return self.end_turn()

    # ── Game End ──────────────────────────────────────────────────────

    def on_game_end(self, listener):
        self._end_listeners.append(listener)

    def end_game(self, winner):
        """End the game once. Returns False if it had already ended."""
        state = self.state
        if state.ended:
            logger.debug("Game already ended (winner %s); ignoring end with %s", state.winner, winner)
            return False
        if not self._ever_started:
            raise RequestRejected("Game has not started")
        if winner not in (TIE,) + PLAYER_NUMBERS:
            raise ValueError(f"Invalid winner: {winner}")

        self.container.write(replace(state, ended=True, winner=winner))
        if winner == TIE:
            logger.info("Game ended in a tie")
        else:
            logger.info("Game ended! Winner: player %s", winner)
        for listener in list(self._end_listeners):
            listener(winner)
        return True

    def check_for_game_end(self, players):
        """Evaluate the board and end the game if a result is decided."""
        if self.state.ended:
            return self.state.winner
        winner = evaluate_game_end(players)
        if winner is not None:
            self.end_game(winner)
        return winner

    def bankrupt(self, player):
        """A player's balance went negative: the other player wins."""
        return self.end_game(other_player(player))
