"""
Life Path: authoritative session engine.

One LifePathEngine is the whole host-side context of a game: the board, the
replicated containers, the spinner, the turn manager, one mover per player,
the ledger and the collaborators (tile classifier, path-choice presenter).
Nothing is global; everything is injected or built here.

Requests are processed strictly one at a time. Every handler is synchronous
and starts by re-checking that the game is still running and that the
requester owns the turn, since the world may have changed while the request
was in flight. Work that has to wait (revealing a spin, letting a move settle
before the turn passes) runs in asyncio tasks that come back through the same
serial path.
"""

import asyncio
import logging
import time
from collections import deque

from lifeboard.config import (
    SETTLE_DELAY_SECONDS, SPIN_DURATION_SECONDS, SPIN_MAX, SPIN_MIN, STARTING_MONEY,
)
from lifeboard.errors import RequestRejected, WritePermissionError
from lifeboard.game_engine import ActionResult, GameEngine
from lifeboard.protocol import Broadcast, BroadcastKind, RequestKind, path_choice_request
from lifeboard.replicated import ReplicationHub, Snapshot, WritePermission
from lifeboard.lifepath.board import load_board
from lifeboard.lifepath.ledger import Ledger
from lifeboard.lifepath.movement import MovePhase, Outcome, PlayerMover, check_path_state
from lifeboard.lifepath.spin import Spinner, check_spin_state
from lifeboard.lifepath.state import (
    PLAYER_NUMBERS, SPIN_CONTAINER, TURN_CONTAINER, PlayerPathState, SpinState, TurnState,
    other_player, path_container, state_codec,
)
from lifeboard.lifepath.tiles import NamedTileClassifier
from lifeboard.lifepath.turns import TurnManager, evaluate_game_end


logger = logging.getLogger(__name__)


class BroadcastPresenter:
    """
    Default path-choice presenter: sends the options to the choosing player.
    The player answers with a ``path_choice`` request, so the callback is not
    needed here.
    """

    def __init__(self, engine):
        self.engine = engine

    def present(self, player, connections, callback):
        self.engine.emit(Broadcast(
            BroadcastKind.PATH_CHOICE_OFFERED,
            {"player": player, "connections": [c.to_dict() for c in connections]},
            target=player,
        ))


class LifePathEngine(GameEngine):

    player_count_range = (2, 2)

    def __init__(self, graph, classifier=None, presenter=None, rng=None, clock=time.time,
                 spin_duration=SPIN_DURATION_SECONDS, spin_min=SPIN_MIN, spin_max=SPIN_MAX,
                 settle_delay=SETTLE_DELAY_SECONDS, starting_money=STARTING_MONEY):
        super().__init__()
        self.graph = graph
        self.classifier = classifier or NamedTileClassifier()
        self.presenter = presenter or BroadcastPresenter(self)
        self.clock = clock
        self.settle_delay = settle_delay

        self.hub = ReplicationHub(authoritative=True)
        encode, decode = state_codec(TurnState)
        self.turns = TurnManager(self.hub.create(TURN_CONTAINER, TurnState(), encode=encode, decode=decode))
        encode, decode = state_codec(SpinState)
        self.spinner = Spinner(
            self.hub.create(SPIN_CONTAINER, SpinState(), encode=encode, decode=decode),
            rng=rng, clock=clock, duration=spin_duration, low=spin_min, high=spin_max,
            on_fault=self._on_fault,
        )
        self.ledger = Ledger(self.hub, starting_money)
        self.movers = {}

        self.turns.on_game_end(self._on_game_end)
        self.ledger.on_bankrupt(self._on_bankrupt)

        self._outbox = []
        self._settling = {}          # player -> time the move settles
        self._deferred = deque()
        self._busy = False
        self._tasks = set()
        self._handlers = {
            RequestKind.SPIN: self._do_spin,
            RequestKind.MOVE: self._do_move,
            RequestKind.PATH_CHOICE: self._do_path_choice,
            RequestKind.END_TURN: self._do_end_turn,
            RequestKind.END_GAME: self._do_end_game,
        }

    @classmethod
    def from_config(cls, config, **kwargs):
        """Build an engine for the board and timings named in a ServerConfig."""
        graph, tiles = load_board(config.board)
        kwargs.setdefault("classifier", NamedTileClassifier(tiles))
        return cls(
            graph,
            spin_duration=config.spin_duration,
            spin_min=config.spin_min,
            spin_max=config.spin_max,
            settle_delay=config.settle_delay,
            starting_money=config.starting_money,
            **kwargs,
        )

    # ── Players ───────────────────────────────────────────────────────

    def connect(self, player):
        self._serial(self.turns.player_connected, player)

    def spawn(self, player):
        """Initialize the player's path state and account; idempotent."""
        return self._serial(self._spawn, player)

    def _spawn(self, player):
        if player not in PLAYER_NUMBERS:
            raise RequestRejected(f"Unknown player number: {player}")
        mover = self.movers.get(player)
        if mover is None:
            start = self.graph.starting_segment()
            encode, decode = state_codec(PlayerPathState)
            container = self.hub.create(
                path_container(player), PlayerPathState(start.name, 0),
                encode=encode, decode=decode,
            )
            # Peers already connected learn the starting position too.
            container.rebroadcast()
            mover = PlayerMover(player, self.graph, container, self.classifier)
            self.movers[player] = mover
            self.ledger.open_account(player)
            logger.info("Spawned player %s at %s[0]", player, start.name)
        self.turns.player_spawned(player)
        return mover

    def disconnect(self, player):
        self._serial(self.turns.player_disconnected, player)

    # ── Serial Processing ─────────────────────────────────────────────

    def _serial(self, fn, *args):
        """
        Run ``fn`` to completion before anything else touches the game.
        Work submitted while it runs (e.g. a presenter answering on the spot)
        is queued and processed right after, in order.
        """
        if self._busy:
            self._deferred.append((fn, args))
            return None
        self._busy = True
        try:
            result = fn(*args)
            while self._deferred:
                deferred_fn, deferred_args = self._deferred.popleft()
                deferred_fn(*deferred_args)
        finally:
            self._busy = False
        return result

    def handle_request(self, player, request):
        result = self._serial(self._process, player, request)
        if result is None:
            return ActionResult(accepted=True, log=["Request queued"])
        return result

    def _process(self, player, request):
        handler = self._handlers[request.kind]
        try:
            log = handler(player, request)
        except (RequestRejected, WritePermissionError) as e:
            logger.info("Rejected %s from player %s: %s", request.kind.value, player, e)
            return ActionResult(accepted=False, reason=str(e), game_over=self.turns.is_ended())
        self._verify()
        return ActionResult(accepted=True, log=log or [], game_over=self.turns.is_ended())

    def _require_turn(self, player):
        if self.turns.is_ended():
            raise RequestRejected("Game has ended")
        if not self.turns.is_eligible(player) or player not in self.movers:
            raise RequestRejected(f"Player {player} has not joined the game")
        if not self.turns.is_started():
            raise RequestRejected("Game has not started")
        if not self.turns.is_turn_of(player):
            raise RequestRejected("Not your turn")
        return self.movers[player]

    # ── Request Handlers ──────────────────────────────────────────────

    def _do_spin(self, player, request):
        mover = self._require_turn(player)
        if mover.phase is not MovePhase.IDLE:
            raise RequestRejected("Finish the current move before spinning")
        self.spinner.request_spin()
        self._start_task(self._reveal_later())
        return [f"Player {player} spins"]

    def _do_move(self, player, request):
        mover = self._require_turn(player)
        if not mover.can_move():
            self._check_game_end()
            raise RequestRejected("Player cannot move anymore")

        actual = mover.request_move(request.steps)
        if actual == 0:
            self._present(player)
            return [f"Player {player} chooses a path"]

        if self.settle_delay > 0:
            self._settling[player] = self.clock() + self.settle_delay
            self._start_task(self._settle_later(player, self.settle_delay))
        else:
            self._complete_move(player)
        return [f"Player {player} moves {actual} spaces"]

    def _do_path_choice(self, player, request):
        mover = self._require_turn(player)
        landing = mover.resolve_path_choice(request.connection_index)
        if not self._check_game_end():
            self._apply_outcome(player, mover.after_choice(landing))
        return [f"Player {player} takes {landing.segment}"]

    def _do_end_turn(self, player, request):
        mover = self._require_turn(player)
        if mover.phase is not MovePhase.IDLE:
            raise RequestRejected("Finish the current move before ending the turn")
        next_player = self.turns.request_end_turn(player)
        return [f"Player {next_player}'s turn"]

    def _do_end_game(self, player, request):
        """The requested winner is ignored; the host works the result out itself."""
        if self.turns.is_ended():
            raise RequestRejected("Game has ended")
        if not self.turns.is_eligible(player):
            raise RequestRejected(f"Player {player} has not joined the game")
        if not self.turns.is_started():
            raise RequestRejected("Game has not started")

        winner = self._decided_winner()
        if winner is None:
            raise RequestRejected("No end condition holds")
        if request.winner is not None and request.winner != winner:
            logger.warning("Player %s claimed winner %s; host decided %s", player, request.winner, winner)
        self.turns.end_game(winner)
        return [f"Game over, winner {winner}"]

    # ── Owner Writes ──────────────────────────────────────────────────

    def write_owned(self, player, container, value):
        return self._serial(self._write_owned, player, container, value)

    def _write_owned(self, player, name, value):
        try:
            if self.turns.is_ended():
                raise RequestRejected("Game has ended")
            container = self.hub.get(name)
            if container is None or container.permission is not WritePermission.OWNER:
                raise RequestRejected(f"{name} is not owner-writable")
            # Balances are the only owner-writable containers.
            self.ledger.write_balance(container.owner, value, writer=player)
        except (RequestRejected, WritePermissionError, TypeError) as e:
            logger.info("Rejected write to %s from player %s: %s", name, player, e)
            return ActionResult(accepted=False, reason=str(e), game_over=self.turns.is_ended())
        return ActionResult(accepted=True, game_over=self.turns.is_ended())

    # ── Movement Flow ─────────────────────────────────────────────────

    def _complete_move(self, player):
        self._settling.pop(player, None)
        mover = self.movers[player]
        if mover.phase is not MovePhase.MOVING:
            return
        if self.turns.is_ended():
            mover.cancel()
            return

        landing = mover.complete_move()
        self.emit(Broadcast(BroadcastKind.LANDED, landing.to_dict()))
        if self._check_game_end():
            return
        self._apply_outcome(player, mover.after_landing(landing))

    def _apply_outcome(self, player, outcome):
        mover = self.movers[player]
        if outcome is Outcome.TURN_OVER:
            if self.turns.current_turn_player == player and not self.turns.is_ended():
                self.turns.end_turn()
        elif mover.phase is MovePhase.AWAITING_PATH_CHOICE:
            self._present(player)

    def _present(self, player):
        mover = self.movers[player]
        self.presenter.present(
            player, mover.offered,
            lambda index: self.handle_request(player, path_choice_request(index)),
        )

    def _decided_winner(self):
        winner = evaluate_game_end(self.movers)
        if winner is not None:
            return winner
        for player in sorted(self.movers):
            if self.ledger.has_account(player) and self.ledger.get_balance(player) < 0:
                return other_player(player)
        return None

    def _check_game_end(self):
        self.turns.check_for_game_end(self.movers)
        return self.turns.is_ended()

    # ── Timers ────────────────────────────────────────────────────────

    def _start_task(self, coro):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop: the owner drives timers through tick().
            coro.close()
            return None
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Engine task failed", exc_info=task.exception())

    async def _reveal_later(self):
        if await self.spinner.reveal_when_due():
            self.notify()

    async def _settle_later(self, player, delay):
        await asyncio.sleep(delay)
        if player in self._settling:
            self._serial(self._complete_move, player)
            self.notify()

    def tick(self, now=None):
        """Advance timers by hand (used when no event loop is running)."""
        now = self.clock() if now is None else now
        return self._serial(self._tick, now)

    def _tick(self, now):
        changed = self.spinner.poll(now)
        for player, due in sorted(self._settling.items()):
            if due <= now:
                self._complete_move(player)
                changed = True
        return changed

    async def wait_idle(self):
        """Wait for every pending timer task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self):
        for task in list(self._tasks):
            task.cancel()

    # ── Game End & Faults ─────────────────────────────────────────────

    def _on_game_end(self, winner):
        for mover in self.movers.values():
            mover.cancel()
        self._settling.clear()
        self.emit(Broadcast(BroadcastKind.GAME_ENDED, {"winner": winner}))

    def _on_bankrupt(self, player):
        if self.turns.is_ended() or not self.turns.is_started():
            logger.info("Ignoring bankruptcy of player %s outside play", player)
            return
        self.turns.bankrupt(player)

    def _on_fault(self, fault):
        self.resync()

    def _verify(self):
        faults = [check_spin_state(self.spinner.state, self.spinner.low, self.spinner.high)]
        faults += [check_path_state(self.graph, m.state) for m in self.movers.values()]
        faults = [f for f in faults if f is not None]
        for fault in faults:
            logger.error("Consistency fault: %s", fault)
        if faults:
            self.resync()
        return faults

    def resync(self):
        """Queue every container's current value again so peers can catch up."""
        self._flush_hub()
        for snapshot in self.hub.rebroadcast_all():
            logger.debug("Resync %s seq %d", snapshot.name, snapshot.seq)
        self._flush_hub()

    # ── Outbound ──────────────────────────────────────────────────────

    def emit(self, broadcast):
        # Container writes made so far go out before this event.
        self._flush_hub()
        self._outbox.append(broadcast)

    def _flush_hub(self):
        for snapshot in self.hub.drain():
            self._outbox.append(self._state_broadcast(snapshot))

    def _state_broadcast(self, snapshot):
        return Broadcast(BroadcastKind.STATE, self.hub.encode(snapshot))

    def drain_outbound(self):
        self._flush_hub()
        pending = self._outbox
        self._outbox = []
        return pending

    def full_state(self, player=None):
        broadcasts = [
            self._state_broadcast(Snapshot(c.name, c.seq, c.value)) for c in self.hub
        ]
        mover = self.movers.get(player)
        if mover is not None and mover.phase is MovePhase.AWAITING_PATH_CHOICE:
            broadcasts.append(Broadcast(
                BroadcastKind.PATH_CHOICE_OFFERED,
                {"player": player, "connections": [c.to_dict() for c in mover.offered]},
                target=player,
            ))
        if self.turns.is_ended():
            broadcasts.append(Broadcast(BroadcastKind.GAME_ENDED, {"winner": self.turns.winner}))
        return broadcasts

    # ── Views ─────────────────────────────────────────────────────────

    def get_player_view(self, player):
        turn = self.turns.state
        return {
            "game": "lifepath",
            "you": player,
            "turn": turn.to_dict(),
            "spin": self.spinner.state.to_dict(),
            "players": {
                number: {
                    "path": mover.state.to_dict(),
                    "phase": mover.phase.value,
                    "money": self.ledger.get_balance(number),
                }
                for number, mover in sorted(self.movers.items())
            },
            "your_turn": self.turns.is_turn_of(player),
        }

    def get_waiting_for(self):
        if not self.turns.state.in_progress:
            return []
        return [self.turns.current_turn_player]

    def get_valid_actions(self, player):
        if not self.turns.is_turn_of(player) or player not in self.movers:
            return []
        mover = self.movers[player]
        if mover.phase is MovePhase.AWAITING_PATH_CHOICE:
            return [
                {"kind": RequestKind.PATH_CHOICE.value, "connection_index": i,
                 "target": c.target_segment_name}
                for i, c in enumerate(mover.offered)
            ]
        if mover.phase is MovePhase.MOVING:
            return []

        actions = []
        if not self.spinner.state.spinning:
            actions.append({"kind": RequestKind.SPIN.value})
        if mover.can_move():
            actions.append({"kind": RequestKind.MOVE.value})
        actions.append({"kind": RequestKind.END_TURN.value})
        return actions

    def get_phase_info(self):
        phase = self.turns.phase
        turn = self.turns.state
        if turn.ended:
            description = "Game over - it's a tie!" if turn.winner == 0 else f"Player {turn.winner} won!"
        elif turn.started:
            description = f"Player {turn.current_turn_player}'s turn"
        else:
            description = f"Waiting for players... ({len(self.turns.connected)}/2)"
        return {
            "phase": phase.value,
            "current_player": turn.current_turn_player if turn.in_progress else None,
            "spin": self.spinner.phase.value,
            "description": description,
        }
