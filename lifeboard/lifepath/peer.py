"""
Peer side of a Life Path game.

A PeerClient keeps read-only mirrors of every replicated container, applies
the host's broadcasts in order and turns player intent into requests. It never
decides anything the host owns; the one thing it writes is its own balance,
crediting the landing reward each time it lands.
"""

import asyncio
import json
import logging

import websockets

from lifeboard.config import LANDING_REWARD, SPIN_MAX, SPIN_MIN
from lifeboard.errors import ProtocolError
from lifeboard.protocol import (
    BroadcastKind, end_game_request, end_turn_request, move_request, parse_broadcast,
    path_choice_request, spin_request,
)
from lifeboard.replicated import ReplicationHub, WritePermission
from lifeboard.lifepath.board import Connection
from lifeboard.lifepath.movement import check_path_state
from lifeboard.lifepath.spin import check_spin_state, display_number
from lifeboard.lifepath.state import (
    PLAYER_NUMBERS, SPIN_CONTAINER, TURN_CONTAINER, PlayerPathState, SpinState, TurnState,
    money_container, path_container, state_codec,
)


logger = logging.getLogger(__name__)


class PeerClient:

    def __init__(self, player, send, graph=None, landing_reward=LANDING_REWARD,
                 spin_min=SPIN_MIN, spin_max=SPIN_MAX, starting_segment=None):
        self.player = player
        self.send = send            # async callable taking one message dict
        self.graph = graph
        self.landing_reward = landing_reward
        self.spin_min = spin_min
        self.spin_max = spin_max

        if starting_segment is None:
            starting_segment = graph.starting_segment().name if graph is not None else ""

        self.hub = ReplicationHub(authoritative=False)
        encode, decode = state_codec(TurnState)
        self.hub.create(TURN_CONTAINER, TurnState(), encode=encode, decode=decode)
        encode, decode = state_codec(SpinState)
        self.hub.create(SPIN_CONTAINER, SpinState(), encode=encode, decode=decode)
        encode, decode = state_codec(PlayerPathState)
        for number in PLAYER_NUMBERS:
            self.hub.create(path_container(number), PlayerPathState(starting_segment, 0),
                            encode=encode, decode=decode)
            self.hub.create(money_container(number), 0,
                            permission=WritePermission.OWNER, owner=number)

        self.offered = ()
        self.landings = []
        self.winner = None
        self.faults = []
        self._waiters = []
        self._written_balance = None
        self._unconfirmed_writes = 0

    # ── Mirrored State ────────────────────────────────────────────────

    @property
    def turn(self):
        return self.hub[TURN_CONTAINER].value

    @property
    def spin_state(self):
        return self.hub[SPIN_CONTAINER].value

    def path(self, player=None):
        return self.hub[path_container(player or self.player)].value

    def balance(self, player=None):
        return self.hub[money_container(player or self.player)].value

    def is_my_turn(self):
        turn = self.turn
        return turn.in_progress and turn.current_turn_player == self.player

    def game_over(self):
        return self.winner is not None or self.turn.ended

    def display_number(self, now):
        return display_number(self.spin_state, now, low=self.spin_min, high=self.spin_max)

    # ── Incoming ──────────────────────────────────────────────────────

    async def receive(self, message):
        """Apply one message from the host."""
        if isinstance(message, (str, bytes)):
            message = json.loads(message)

        msg_type = message.get("type") if isinstance(message, dict) else None
        if msg_type not in {kind.value for kind in BroadcastKind}:
            if msg_type == "error":
                logger.warning("Host error: %s", message.get("message"))
            else:
                logger.debug("Ignoring %s message", msg_type)
            self._wake()
            return

        broadcast = parse_broadcast(message)
        payload = broadcast.payload

        if broadcast.kind is BroadcastKind.STATE:
            await self._apply_state(payload)

        elif broadcast.kind is BroadcastKind.PATH_CHOICE_OFFERED:
            if payload.get("player") == self.player:
                self.offered = tuple(
                    Connection(c["target"], int(c.get("entry", 0))) for c in payload.get("connections", ())
                )

        elif broadcast.kind is BroadcastKind.LANDED:
            self.landings.append(payload)
            if payload.get("player") == self.player:
                await self.credit(self.landing_reward)

        elif broadcast.kind is BroadcastKind.GAME_ENDED:
            self.winner = payload.get("winner")
            logger.info("Player %s sees the game end, winner %s", self.player, self.winner)

        self._wake()

    async def _apply_state(self, payload):
        try:
            snapshot = self.hub.decode(payload)
        except KeyError:
            logger.warning("Snapshot for unknown container %s ignored", payload.get("container"))
            return
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"Malformed state broadcast: {e}") from e

        own_money = self.hub[money_container(self.player)]
        seq_before = own_money.seq
        self.hub.apply(snapshot)
        if snapshot.name == own_money.name and own_money.seq > seq_before and self._unconfirmed_writes:
            self._unconfirmed_writes -= 1
        if snapshot.name == path_container(self.player):
            # Any move or branch closes a pending prompt.
            self.offered = ()

        fault = None
        if snapshot.name == SPIN_CONTAINER:
            fault = check_spin_state(snapshot.value, self.spin_min, self.spin_max)
        elif self.graph is not None and snapshot.name.startswith("path:"):
            fault = check_path_state(self.graph, snapshot.value)
        if fault is not None:
            await self.report_fault(fault)

    async def report_fault(self, fault):
        logger.error("Consistency fault on player %s: %s", self.player, fault)
        self.faults.append(fault)
        await self.send({"type": "get_state"})

    async def run(self, websocket):
        """Feed every message from ``websocket`` into ``receive`` until it closes."""
        async for raw in websocket:
            await self.receive(raw)

    # ── Outgoing ──────────────────────────────────────────────────────

    async def request(self, request):
        await self.send({"type": "request", "request": request.to_dict()})

    async def spin(self):
        await self.request(spin_request())

    async def move(self, steps):
        await self.request(move_request(steps))

    async def choose_path(self, connection_index):
        await self.request(path_choice_request(connection_index))

    async def end_turn(self):
        await self.request(end_turn_request())

    async def end_game(self, winner=0):
        await self.request(end_game_request(winner))

    async def credit(self, amount):
        """
        Add ``amount`` to this player's own balance through an owner write.

        Until the host echoes every earlier write back, the next credit builds
        on the last value written rather than the mirror, so back-to-back
        landings each count.
        """
        base = self._written_balance if self._unconfirmed_writes else self.balance()
        balance = base + amount
        self._written_balance = balance
        self._unconfirmed_writes += 1
        await self.send({"type": "write", "container": money_container(self.player), "value": balance})

    async def spin_and_move(self, timeout=5.0):
        """Spin, wait for the reveal, then move by the number shown."""
        spin = self.hub[SPIN_CONTAINER]
        seq = spin.seq
        await self.spin()
        await self.wait_for(lambda: spin.seq > seq and spin.value.complete, timeout)
        value = spin.value.final_value
        await self.move(value)
        return value

    # ── Waiting ───────────────────────────────────────────────────────

    async def wait_for(self, predicate, timeout=None):
        """Suspend until ``predicate()`` holds after some incoming message."""
        loop = asyncio.get_running_loop()

        async def wait():
            while not predicate():
                future = loop.create_future()
                self._waiters.append(future)
                await future

        await asyncio.wait_for(wait(), timeout)

    def _wake(self):
        waiters, self._waiters = self._waiters, []
        for future in waiters:
            if not future.done():
                future.set_result(None)


async def connect_peer(uri, token, player, play=None, graph=None, **kwargs):
    """
    Connect to a host, authenticate with ``token`` and run a PeerClient.

    ``play(peer)`` is awaited while messages are being received; without it
    the client just mirrors the game until the connection closes.
    """
    async with websockets.connect(uri) as websocket:
        async def send(message):
            await websocket.send(json.dumps(message))

        peer = PeerClient(player, send, graph=graph, **kwargs)
        await send({"type": "auth", "token": token})
        reader = asyncio.ensure_future(peer.run(websocket))
        try:
            if play is None:
                await reader
            else:
                await play(peer)
        finally:
            reader.cancel()
        return peer
