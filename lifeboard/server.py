"""
WebSocket host server for Life Path.

Handles rooms, player tokens and connections, and routes requests to the
room's authoritative engine. After every message the engine's outbox is
flushed to the connected players; engine timers (spin reveal, move settle)
ask for a flush through the engine notifier.
"""

import asyncio
import json
import logging
import secrets
import time
from dataclasses import dataclass, field

import websockets

from lifeboard.config import ServerConfig, parse_args
from lifeboard.errors import ConfigurationError, ProtocolError
from lifeboard.game_engine import GameEngine
from lifeboard.protocol import parse_request
from lifeboard.lifepath.board import BOARDS, load_board
from lifeboard.lifepath.engine import LifePathEngine
from lifeboard.lifepath.state import PLAYER_ONE, PLAYER_TWO


logger = logging.getLogger(__name__)


def generate_room_code():
    """Generate a short, human-friendly room code."""
    chars = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # no I/O/0/1 for clarity
    return "".join(secrets.choice(chars) for _ in range(5))


def generate_token():
    return secrets.token_urlsafe(24)


@dataclass
class Player:
    player_id: str
    name: str
    token: str
    number: int
    websocket: object = None
    connected: bool = False


@dataclass
class Room:
    code: str
    host_id: str
    engine: GameEngine
    players: dict = field(default_factory=dict)       # player_id -> Player
    created_at: float = field(default_factory=time.time)
    flush_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def player_list(self):
        return [
            {"player_id": p.player_id, "name": p.name, "number": p.number, "connected": p.connected}
            for p in self.players.values()
        ]

    def by_number(self, number):
        for player in self.players.values():
            if player.number == number:
                return player
        return None


class GameServer:
    """
    Manages rooms, player connections, and message routing. Game rules live
    in the engine; the server only moves messages.
    """

    def __init__(self, config=None, engine_factory=None):
        self.config = config or ServerConfig()
        self.engine_factory = engine_factory or (lambda: LifePathEngine.from_config(self.config))
        self.rooms: dict[str, Room] = {}               # code -> Room
        self.tokens: dict[str, tuple[str, str]] = {}    # token -> (room_code, player_id)

    # ── Room Management ──────────────────────────────────────────────

    def create_room(self, host_name):
        code = generate_room_code()
        while code in self.rooms:
            code = generate_room_code()

        engine = self.engine_factory()
        player_id = f"p_{generate_token()[:8]}"
        token = generate_token()
        host = Player(player_id=player_id, name=host_name, token=token, number=PLAYER_ONE)

        room = Room(code=code, host_id=player_id, engine=engine)
        room.players[player_id] = host
        engine.set_notifier(lambda: self._schedule_flush(room))

        self.rooms[code] = room
        self.tokens[token] = (code, player_id)
        logger.info("Room %s created by %s", code, host_name)

        return code, player_id, token

    def join_room(self, code, name):
        room = self.rooms.get(code)
        if room is None:
            raise ValueError(f"Room {code} not found")
        max_players = room.engine.player_count_range[1]
        if len(room.players) >= max_players:
            raise ValueError("Room is full")

        player_id = f"p_{generate_token()[:8]}"
        token = generate_token()
        player = Player(player_id=player_id, name=name, token=token, number=PLAYER_TWO)
        room.players[player_id] = player
        self.tokens[token] = (code, player_id)
        logger.info("%s joined room %s as player %d", name, code, player.number)

        return player_id, token

    # ── WebSocket Handler ────────────────────────────────────────────

    async def handle_connection(self, websocket):
        """Main handler for a single WebSocket connection."""
        room_code = None
        player_id = None

        try:
            async for raw in websocket:
                try:
                    msg = json.loads(raw)
                except json.JSONDecodeError:
                    await self._send(websocket, {"type": "error", "message": "Invalid JSON"})
                    continue
                if not isinstance(msg, dict):
                    await self._send(websocket, {"type": "error", "message": "Message must be an object"})
                    continue

                msg_type = msg.get("type")

                # ── Pre-auth messages ────────────────────────────
                if msg_type == "create":
                    await self._handle_create(websocket, msg)
                    continue

                if msg_type == "join":
                    await self._handle_join(websocket, msg)
                    continue

                if msg_type in ("auth", "reconnect"):
                    result = await self._handle_auth(websocket, msg)
                    if result:
                        room_code, player_id = result
                    continue

                # ── Authenticated messages ───────────────────────
                if not room_code or not player_id:
                    await self._send(websocket, {"type": "error", "message": "Not authenticated. Send 'auth' first."})
                    continue

                room = self.rooms.get(room_code)
                if not room:
                    await self._send(websocket, {"type": "error", "message": "Room no longer exists"})
                    continue

                player = room.players[player_id]

                if msg_type == "request":
                    await self._handle_request(room, player, msg.get("request"))

                elif msg_type == "write":
                    await self._handle_write(room, player, msg)

                elif msg_type == "get_state":
                    await self._send_full_state(room, player)

                elif msg_type == "chat":
                    await self._broadcast(room, {
                        "type": "chat",
                        "from": player.name,
                        "message": msg.get("message", ""),
                    })

                else:
                    await self._send(websocket, {"type": "error", "message": f"Unknown message type: {msg_type}"})

        except websockets.ConnectionClosed:
            logger.debug("Connection closed for %s in room %s", player_id, room_code)
        finally:
            if room_code and player_id:
                await self._handle_disconnect(room_code, player_id, websocket)

    # ── Message Handlers ─────────────────────────────────────────────

    async def _handle_create(self, websocket, msg):
        host_name = msg.get("name", "Host")
        code, player_id, token = self.create_room(host_name)
        await self._send(websocket, {
            "type": "created",
            "room_code": code,
            "player_id": player_id,
            "token": token,
            "player": PLAYER_ONE,
        })

    async def _handle_join(self, websocket, msg):
        code = str(msg.get("room_code", "")).upper()
        name = msg.get("name", "Player")
        try:
            player_id, token = self.join_room(code, name)
            await self._send(websocket, {
                "type": "joined",
                "room_code": code,
                "player_id": player_id,
                "token": token,
                "player": PLAYER_TWO,
            })
        except ValueError as e:
            await self._send(websocket, {"type": "error", "message": str(e)})

    async def _handle_auth(self, websocket, msg):
        """Authenticate with a token, bind this websocket and bring the player into the game."""
        token = msg.get("token")
        if not token or token not in self.tokens:
            await self._send(websocket, {"type": "error", "message": "Invalid token"})
            return None

        room_code, player_id = self.tokens[token]
        room = self.rooms.get(room_code)
        if not room or player_id not in room.players:
            await self._send(websocket, {"type": "error", "message": "Room or player not found"})
            return None

        player = room.players[player_id]
        player.websocket = websocket
        player.connected = True

        room.engine.connect(player.number)
        room.engine.spawn(player.number)

        await self._send(websocket, {
            "type": "authenticated",
            "room_code": room_code,
            "player_id": player_id,
            "player": player.number,
            "name": player.name,
            "is_host": player_id == room.host_id,
        })

        await self._broadcast(room, {
            "type": "lobby_update",
            "players": room.player_list,
        })

        await self._send_full_state(room, player)
        await self._flush(room)
        return room_code, player_id

    async def _handle_request(self, room, player, raw_request):
        try:
            request = parse_request(raw_request)
        except ProtocolError as e:
            await self._send(player.websocket, {"type": "error", "message": str(e)})
            return

        result = room.engine.handle_request(player.number, request)
        # Rejections are logged by the engine; peers just see no state change.
        if result.accepted and result.log:
            await self._broadcast(room, {"type": "game_log", "messages": result.log})
        await self._flush(room)

    async def _handle_write(self, room, player, msg):
        container = msg.get("container")
        if not isinstance(container, str) or "value" not in msg:
            await self._send(player.websocket, {"type": "error", "message": "Write needs 'container' and 'value'"})
            return
        room.engine.write_owned(player.number, container, msg["value"])
        await self._flush(room)

    async def _handle_disconnect(self, room_code, player_id, websocket):
        room = self.rooms.get(room_code)
        if not room or player_id not in room.players:
            return
        player = room.players[player_id]
        if player.websocket is not websocket:
            # Already reconnected on another socket.
            return
        player.connected = False
        player.websocket = None
        room.engine.disconnect(player.number)
        await self._broadcast(room, {
            "type": "lobby_update",
            "players": room.player_list,
            "reason": f"{player.name} disconnected",
        })
        await self._flush(room)

    # ── Broadcasting ─────────────────────────────────────────────────

    async def _send(self, websocket, data):
        try:
            await websocket.send(json.dumps(data))
        except websockets.ConnectionClosed:
            logger.debug("Dropped message to a closed connection: %s", data.get("type"))

    async def _broadcast(self, room, data):
        """Send the same message to all connected players in a room."""
        for player in room.players.values():
            if player.connected and player.websocket:
                await self._send(player.websocket, data)

    async def _flush(self, room):
        """Deliver the engine's queued broadcasts in order."""
        async with room.flush_lock:
            for broadcast in room.engine.drain_outbound():
                message = broadcast.to_message()
                if broadcast.target is None:
                    await self._broadcast(room, message)
                    continue
                target = room.by_number(broadcast.target)
                if target and target.connected and target.websocket:
                    await self._send(target.websocket, message)

    def _schedule_flush(self, room):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.create_task(self._flush(room))

    async def _send_full_state(self, room, player):
        """Send the current value of every container plus a personalized view."""
        if not player.websocket:
            return
        for broadcast in room.engine.full_state(player.number):
            await self._send(player.websocket, broadcast.to_message())

        waiting_for = room.engine.get_waiting_for()
        await self._send(player.websocket, {
            "type": "game_state",
            "state": room.engine.get_player_view(player.number),
            "phase_info": room.engine.get_phase_info(),
            "waiting_for": waiting_for,
            "valid_actions": room.engine.get_valid_actions(player.number),
            "your_turn": player.number in waiting_for,
        })


# ── Server Entry Point ───────────────────────────────────────────────

async def run_server(config=None):
    config = config or ServerConfig()
    # Fail before binding if the board is broken.
    graph, _ = load_board(config.board)
    server = GameServer(config)

    logger.info("Game server starting on ws://%s:%d", config.host, config.port)
    logger.info("Board %s: %d segments", config.board, len(graph))

    async with websockets.serve(server.handle_connection, config.host, config.port):
        logger.info("Server running. Ctrl+C to stop.")
        await asyncio.Future()  # run forever


def main(argv=None):
    try:
        config, args = parse_args(argv)
    except ConfigurationError as e:
        raise SystemExit(f"Configuration error: {e}") from e

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.list_boards:
        for name in sorted(BOARDS):
            print(name)
        return

    if args.describe_board:
        try:
            graph, _ = load_board(config.board)
        except ConfigurationError as e:
            raise SystemExit(f"Configuration error: {e}") from e
        print(graph.describe())
        return

    try:
        asyncio.run(run_server(config))
    except ConfigurationError as e:
        raise SystemExit(f"Configuration error: {e}") from e


if __name__ == "__main__":
    main()
