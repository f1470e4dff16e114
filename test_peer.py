"""
Tests for the peer client.

The peers talk to a real engine through an in-process loopback, so these
cover the whole request → host → broadcast → mirror path without sockets.
"""

import asyncio
from collections import deque

import pytest

from lifeboard.protocol import parse_request
from lifeboard.lifepath.board import Connection, build_board
from lifeboard.lifepath.engine import LifePathEngine
from lifeboard.lifepath.peer import PeerClient
from lifeboard.lifepath.tiles import NamedTileClassifier


# ── Helpers ───────────────────────────────────────────────────────────

class FixedRng:

    def __init__(self, *values):
        self.values = list(values)

    def randint(self, low, high):
        return self.values.pop(0)


class Loopback:
    """Routes peer messages into an engine and its broadcasts back to the peers."""

    def __init__(self, engine, graph):
        self.engine = engine
        self.peers = {number: PeerClient(number, self._sender(number), graph=graph) for number in (1, 2)}
        self.pending = deque()
        self.delivering = False
        self.tasks = set()
        engine.set_notifier(self._schedule_delivery)

    async def start(self):
        for number, peer in self.peers.items():
            self.engine.connect(number)
            self.engine.spawn(number)
        for number, peer in self.peers.items():
            for broadcast in self.engine.full_state(number):
                await peer.receive(broadcast.to_message())
        self.engine.drain_outbound()

    def _sender(self, number):
        async def send(message):
            if message["type"] == "request":
                self.engine.handle_request(number, parse_request(message["request"]))
            elif message["type"] == "write":
                self.engine.write_owned(number, message["container"], message["value"])
            elif message["type"] == "get_state":
                self.pending.extend(self.engine.full_state(number))
            await self.deliver()
        return send

    async def deliver(self):
        self.pending.extend(self.engine.drain_outbound())
        if self.delivering:
            return
        self.delivering = True
        try:
            while self.pending:
                broadcast = self.pending.popleft()
                for number, peer in self.peers.items():
                    if broadcast.target is None or broadcast.target == number:
                        await peer.receive(broadcast.to_message())
                self.pending.extend(self.engine.drain_outbound())
        finally:
            self.delivering = False

    def _schedule_delivery(self):
        task = asyncio.get_running_loop().create_task(self.deliver())
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)


def make_network(board="linear", spins=(), settle_delay=0.0):
    graph, tiles = build_board(board)
    engine = LifePathEngine(graph, NamedTileClassifier(tiles), rng=FixedRng(*spins),
                            spin_duration=0.01, settle_delay=settle_delay)
    return Loopback(engine, graph)


class Recorder:

    def __init__(self):
        self.sent = []

    async def __call__(self, message):
        self.sent.append(message)


def state_message(container, seq, value):
    return {"type": "state", "container": container, "seq": seq, "value": value}


# ══════════════════════════════════════════════════════════════════════
# Playing Through The Engine
# ══════════════════════════════════════════════════════════════════════

class TestPlaying:

    def test_mirrors_start_in_sync(self):
        async def scenario():
            net = make_network()
            await net.start()
            return net

        net = asyncio.run(scenario())
        for peer in net.peers.values():
            assert peer.turn.started
            assert peer.turn.current_turn_player == 1
            assert peer.balance(1) == 1000
            assert peer.path(2).current_segment_name == "Linear"
        assert net.peers[1].is_my_turn()
        assert not net.peers[2].is_my_turn()

    def test_early_peer_sees_late_joiner_starting_values(self):
        async def scenario():
            net = make_network()
            first = net.peers[1]
            net.engine.connect(1)
            net.engine.spawn(1)
            for broadcast in net.engine.full_state(1):
                await first.receive(broadcast.to_message())
            net.engine.drain_outbound()
            net.engine.connect(2)
            net.engine.spawn(2)
            await net.deliver()
            return first

        first = asyncio.run(scenario())
        assert first.balance(2) == 1000
        assert first.path(2).current_segment_name == "Linear"
        assert first.turn.started

    def test_spin_and_move_credits_landing_reward(self):
        async def scenario():
            net = make_network(spins=(4,))
            await net.start()
            peer = net.peers[1]
            value = await peer.spin_and_move(timeout=2)
            await peer.wait_for(lambda: peer.balance() == 1010, timeout=2)
            return net, value

        net, value = asyncio.run(scenario())
        assert value == 4
        one, two = net.peers[1], net.peers[2]
        assert one.path().current_segment_index == 4
        assert two.path(1).current_segment_index == 4
        assert two.balance(1) == 1010
        assert two.balance(2) == 1000
        assert two.turn.current_turn_player == 2
        assert [landing["index"] for landing in two.landings] == [4]

    def test_path_choice_offer_reaches_only_the_chooser(self):
        async def scenario():
            net = make_network("two_branch")
            await net.start()
            await net.peers[1].move(2)
            return net

        net = asyncio.run(scenario())
        assert net.peers[1].offered == (Connection("LeftPath", 0), Connection("RightPath", 0))
        assert net.peers[2].offered == ()

    def test_choose_path_clears_offer(self):
        async def scenario():
            net = make_network("two_branch")
            await net.start()
            await net.peers[1].move(2)
            await net.peers[1].choose_path(1)
            return net

        net = asyncio.run(scenario())
        peer = net.peers[1]
        assert peer.offered == ()
        assert peer.path().current_segment_name == "RightPath"
        assert peer.path().history == ("Start",)
        assert peer.turn.current_turn_player == 2

    def test_game_end_reaches_both_peers(self):
        async def scenario():
            net = make_network()
            await net.start()
            await net.peers[1].move(9)
            return net

        net = asyncio.run(scenario())
        for peer in net.peers.values():
            assert peer.winner == 1
            assert peer.game_over()

    def test_rejected_request_changes_nothing(self):
        async def scenario():
            net = make_network()
            await net.start()
            await net.peers[2].move(3)
            await net.peers[2].end_turn()
            return net

        net = asyncio.run(scenario())
        assert net.peers[2].path().current_segment_index == 0
        assert net.peers[1].turn.current_turn_player == 1

    def test_spin_and_move_times_out_when_rejected(self):
        async def scenario():
            net = make_network(spins=(4,))
            await net.start()
            with pytest.raises(asyncio.TimeoutError):
                await net.peers[2].spin_and_move(timeout=0.05)

        asyncio.run(scenario())


# ══════════════════════════════════════════════════════════════════════
# Mirror Handling
# ══════════════════════════════════════════════════════════════════════

class TestMirror:

    def make_peer(self):
        graph, _ = build_board("linear")
        recorder = Recorder()
        return PeerClient(1, recorder, graph=graph), recorder

    def test_stale_snapshot_ignored(self):
        async def scenario():
            peer, _ = self.make_peer()
            await peer.receive(state_message("money:2", 2, 900))
            await peer.receive(state_message("money:2", 1, 950))
            return peer

        assert asyncio.run(scenario()).balance(2) == 900

    def test_accepts_json_text(self):
        async def scenario():
            peer, _ = self.make_peer()
            await peer.receive('{"type": "game_ended", "winner": 0}')
            return peer

        peer = asyncio.run(scenario())
        assert peer.winner == 0
        assert peer.game_over()

    def test_out_of_range_spin_requests_full_state(self):
        async def scenario():
            peer, recorder = self.make_peer()
            await peer.receive(state_message(
                "spin", 3, {"spinning": False, "final_value": 42, "complete": True, "start_time": 0},
            ))
            return peer, recorder

        peer, recorder = asyncio.run(scenario())
        assert len(peer.faults) == 1
        assert recorder.sent == [{"type": "get_state"}]

    def test_path_outside_board_requests_full_state(self):
        async def scenario():
            peer, recorder = self.make_peer()
            await peer.receive(state_message("path:2", 1, {"segment": "Linear", "index": 12, "history": []}))
            return recorder

        assert asyncio.run(scenario()).sent == [{"type": "get_state"}]

    def test_other_players_landing_is_not_credited(self):
        async def scenario():
            peer, recorder = self.make_peer()
            await peer.receive({"type": "landed", "player": 2, "segment": "Linear", "index": 3})
            return peer, recorder

        peer, recorder = asyncio.run(scenario())
        assert recorder.sent == []
        assert len(peer.landings) == 1

    def test_own_landing_writes_balance(self):
        async def scenario():
            peer, recorder = self.make_peer()
            await peer.receive(state_message("money:1", 1, 1000))
            await peer.receive({"type": "landed", "player": 1, "segment": "Linear", "index": 3})
            return recorder

        assert asyncio.run(scenario()).sent == [{"type": "write", "container": "money:1", "value": 1010}]

    def test_landings_before_the_echo_both_count(self):
        async def scenario():
            peer, recorder = self.make_peer()
            await peer.receive(state_message("money:1", 1, 1000))
            await peer.receive({"type": "landed", "player": 1, "segment": "Linear", "index": 3})
            await peer.receive({"type": "landed", "player": 1, "segment": "Linear", "index": 5})
            await peer.receive(state_message("money:1", 2, 1010))
            await peer.receive(state_message("money:1", 3, 1020))
            await peer.receive({"type": "landed", "player": 1, "segment": "Linear", "index": 7})
            return recorder

        values = [m["value"] for m in asyncio.run(scenario()).sent]
        assert values == [1010, 1020, 1030]

    def test_lobby_messages_ignored(self):
        async def scenario():
            peer, recorder = self.make_peer()
            await peer.receive({"type": "game_log", "messages": ["hi"]})
            await peer.receive({"type": "error", "message": "nope"})
            await peer.receive(state_message("unknown", 1, 0))
            return peer, recorder

        peer, recorder = asyncio.run(scenario())
        assert recorder.sent == []
        assert peer.faults == []

    def test_requests_are_wrapped(self):
        async def scenario():
            peer, recorder = self.make_peer()
            await peer.spin()
            await peer.move(3)
            await peer.choose_path(1)
            await peer.end_turn()
            await peer.end_game()
            return recorder

        assert asyncio.run(scenario()).sent == [
            {"type": "request", "request": {"kind": "spin"}},
            {"type": "request", "request": {"kind": "move", "steps": 3}},
            {"type": "request", "request": {"kind": "path_choice", "connection_index": 1}},
            {"type": "request", "request": {"kind": "end_turn"}},
            {"type": "request", "request": {"kind": "end_game", "winner": 0}},
        ]
