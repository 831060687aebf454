"""Gateway tests: drive handlers with in-memory sockets."""

import asyncio
import json

from api.config import Settings
from api.gateway import Gateway
from api.protocol import DELIMITER, encode_frame
from api.registry import RoomRegistry
from game.rules import Phase, Role, Winner


class FakeWebSocket:
    """Records every frame the gateway sends."""

    def __init__(self, fail: bool = False):
        self.accepted = False
        self.sent: list[str] = []
        self.fail = fail

    async def accept(self):
        self.accepted = True

    async def send_text(self, text: str):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(text)

    def frames(self) -> list[tuple[str, dict]]:
        out = []
        for text in self.sent:
            if DELIMITER in text:
                name, _, raw = text.partition(DELIMITER)
                out.append((name, json.loads(raw)))
            else:
                obj = json.loads(text)
                out.append((obj["event"], obj["data"]))
        return out

    def events(self, name: str) -> list[dict]:
        return [data for event, data in self.frames() if event == name]

    def last(self, name: str) -> dict:
        found = self.events(name)
        assert found, f"no {name} frame in {[e for e, _ in self.frames()]}"
        return found[-1]


def _gateway(**overrides) -> Gateway:
    values = {"tick_seconds": 3600, "night_duration": 60, "day_duration": 120}
    values.update(overrides)
    settings = Settings(**values)
    return Gateway(RoomRegistry(settings), settings)


async def _send(gateway: Gateway, conn: str, event: str, data: dict | None = None):
    await gateway.handle_text(conn, encode_frame(event, data or {}))


async def _seat(gateway: Gateway, names, code="ABC123") -> dict[str, tuple[str, FakeWebSocket]]:
    seats = {}
    for i, name in enumerate(names):
        ws = FakeWebSocket()
        conn = await gateway.connect(ws)
        event = "create-room" if i == 0 else "join-room"
        await _send(gateway, conn, event, {"roomCode": code, "playerName": name})
        seats[name] = (conn, ws)
    return seats


async def _start(gateway: Gateway, names, code="ABC123"):
    seats = await _seat(gateway, names, code)
    creator_conn, _ = seats[names[0]]
    await _send(gateway, creator_conn, "start-game", {"roomCode": code})
    room = gateway.registry.get_room(code)
    assert room.phase == Phase.NIGHT
    return seats, room


# ── Connection and rooms ──────────────────────────────────────────────────────


def test_connect_sends_connected_and_online_count():
    async def scenario():
        gateway = _gateway()
        ws = FakeWebSocket()
        conn = await gateway.connect(ws)
        assert ws.accepted
        assert ws.last("connected") == {"connectionId": conn, "onlineCount": 1}
        assert ws.last("online-count-update") == {"onlineCount": 1}

        other = FakeWebSocket()
        other_conn = await gateway.connect(other)
        assert ws.last("online-count-update") == {"onlineCount": 2}
        await gateway.disconnect(other_conn)
        assert ws.last("online-count-update") == {"onlineCount": 1}

    asyncio.run(scenario())


def test_create_and_join_room():
    async def scenario():
        gateway = _gateway()
        seats = await _seat(gateway, ["Alice", "Bob"], code="abc123")
        _, alice_ws = seats["Alice"]
        _, bob_ws = seats["Bob"]

        joined = alice_ws.events("room-joined")[0]
        assert joined["isCreator"] is True
        assert joined["roomCode"] == "ABC123"
        assert joined["reconnected"] is False

        assert bob_ws.last("room-joined")["isCreator"] is False
        update = alice_ws.last("player-joined")
        assert update["playerName"] == "Bob"
        assert [p["name"] for p in update["players"]] == ["Alice", "Bob"]
        assert alice_ws.last("room-player-count-update") == {"roomCode": "ABC123", "playerCount": 2}

    asyncio.run(scenario())


def test_join_errors():
    async def scenario():
        gateway = _gateway()
        seats = await _seat(gateway, ["Alice"])
        conn, ws = seats["Alice"]

        stranger = FakeWebSocket()
        stranger_conn = await gateway.connect(stranger)
        await _send(gateway, stranger_conn, "join-room", {"roomCode": "NOPE00", "playerName": "Bob"})
        assert stranger.last("error") == {"message": "Room not found"}

        await _send(gateway, stranger_conn, "join-room", {"roomCode": "ABC123", "playerName": "Alice"})
        assert stranger.last("error") == {"message": "Name already taken in this room"}

        await _send(gateway, stranger_conn, "create-room", {"roomCode": "ABC123", "playerName": "Bob"})
        assert "already exists" in stranger.last("error")["message"]

        await _send(gateway, stranger_conn, "join-room", {"roomCode": "ABC123", "playerName": "<b>"})
        assert stranger.last("error") == {"message": "Invalid player name"}

        await _send(gateway, stranger_conn, "join-room", {"roomCode": "ABC123"})
        assert stranger.last("error") == {"message": "Room code and player name required"}

    asyncio.run(scenario())


def test_protocol_errors_reported_to_sender():
    async def scenario():
        gateway = _gateway()
        ws = FakeWebSocket()
        conn = await gateway.connect(ws)

        await gateway.handle_text(conn, "not a frame")
        assert ws.last("error") == {"message": "Malformed message"}

        await gateway.handle_text(conn, "dance@@@{}")
        assert ws.last("error") == {"message": "Unknown event: 'dance'"}

        await _send(gateway, conn, "chat-message", {"roomCode": "ABC123", "message": "hi", "chatType": "shout"})
        assert ws.last("error") == {"message": "Invalid payload for 'chat-message'"}

    asyncio.run(scenario())


def test_rooms_list_and_check_room():
    async def scenario():
        gateway = _gateway()
        await _seat(gateway, ["Alice", "Bob"])
        ws = FakeWebSocket()
        conn = await gateway.connect(ws)

        await _send(gateway, conn, "get-rooms")
        rooms = ws.last("rooms-list")["rooms"]
        assert rooms == [{
            "roomCode": "ABC123",
            "phase": "lobby",
            "playerCount": 2,
            "maxPlayers": 10,
            "canJoin": True,
        }]

        await _send(gateway, conn, "check-room", {"roomCode": "abc123"})
        status = ws.last("room-status")
        assert status["exists"] is True
        assert [p["name"] for p in status["players"]] == ["Alice", "Bob"]

        await _send(gateway, conn, "check-room", {"roomCode": "ZZZ999"})
        assert ws.last("room-status")["exists"] is False

    asyncio.run(scenario())


def test_lobby_leave_hands_creator_to_next_player():
    async def scenario():
        gateway = _gateway()
        seats = await _seat(gateway, ["Alice", "Bob", "Carol"])
        alice_conn, _ = seats["Alice"]
        _, bob_ws = seats["Bob"]

        await gateway.disconnect(alice_conn)
        left = bob_ws.last("player-left")
        assert left["playerName"] == "Alice"
        assert [p["name"] for p in left["players"]] == ["Bob", "Carol"]
        assert bob_ws.last("room-state")["isCreator"] is True

    asyncio.run(scenario())


def test_room_deleted_when_last_player_leaves():
    async def scenario():
        gateway = _gateway()
        seats = await _seat(gateway, ["Alice"])
        conn, _ = seats["Alice"]
        await gateway.disconnect(conn)
        assert gateway.registry.get_room("ABC123") is None

    asyncio.run(scenario())


# ── Game flow ─────────────────────────────────────────────────────────────────


def test_start_game_permissions():
    async def scenario():
        gateway = _gateway()
        seats = await _seat(gateway, ["Alice", "Bob"])
        alice_conn, alice_ws = seats["Alice"]
        bob_conn, bob_ws = seats["Bob"]

        await _send(gateway, bob_conn, "start-game", {"roomCode": "ABC123"})
        assert bob_ws.last("error") == {"message": "Only the room creator can start the game"}

        await _send(gateway, alice_conn, "start-game", {"roomCode": "ABC123"})
        assert alice_ws.last("error") == {"message": "At least 3 players are required to start"}
        assert gateway.registry.get_room("ABC123").phase == Phase.LOBBY

    asyncio.run(scenario())


def test_start_game_sends_private_roles():
    async def scenario():
        gateway = _gateway()
        names = ["Alice", "Bob", "Carol", "Dave", "Eve", "Frank"]
        seats, room = await _start(gateway, names)
        assert gateway.has_timer("ABC123")

        mafia = [p for p in room.players if p.role == Role.MAFIA]
        assert len(mafia) == 2
        for player in room.players:
            _, ws = seats[player.name]
            assigned = ws.last("role-assigned")
            assert assigned["role"] == player.role.value
            assert assigned["roleImage"].startswith("/images/")

            roster = {p["id"]: p for p in ws.last("game-started")["players"]}
            assert roster[player.id]["role"] == player.role.value
            for other in room.players:
                if other.id == player.id:
                    continue
                visible = player.role == Role.MAFIA and other.role == Role.MAFIA
                assert (roster[other.id]["role"] is not None) == visible

            assert ws.last("night-phase")["nightNumber"] == 1
            assert ws.last("moderator-message")["message"] == "Night falls. The Mafia awakens..."

        for player in mafia:
            _, ws = seats[player.name]
            teammates = ws.last("role-assigned")["mafiaTeammateIds"]
            assert teammates == [p.id for p in mafia if p.id != player.id]

        await gateway.close()

    asyncio.run(scenario())


def test_night_kill_to_parity_ends_game():
    async def scenario():
        gateway = _gateway()
        seats, room = await _start(gateway, ["Alice", "Bob", "Carol"])
        mafia = next(p for p in room.players if p.role == Role.MAFIA)
        victim = next(p for p in room.players if p.role != Role.MAFIA)
        mafia_conn, mafia_ws = seats[mafia.name]

        await _send(gateway, mafia_conn, "night-action", {
            "roomCode": "ABC123",
            "action": "kill",
            "target": victim.id,
        })
        assert mafia_ws.last("night-action-confirmed") == {"action": "kill", "target": victim.id}

        assert not victim.is_alive
        assert room.winner == Winner.MAFIA
        for _, ws in seats.values():
            assert ws.events("day-phase") == []
            assert ws.last("game-ended")["winner"] == "mafia"
            messages = [m["message"] for m in ws.events("moderator-message")]
            assert f"The sun rises, and {victim.name} was found dead." in messages
        assert not gateway.has_timer("ABC123")

    asyncio.run(scenario())


def test_full_game_citizens_win():
    async def scenario():
        gateway = _gateway()
        seats, room = await _start(gateway, ["Alice", "Bob", "Carol", "Dave"])
        mafia = next(p for p in room.players if p.role == Role.MAFIA)
        detective = next(p for p in room.players if p.role == Role.DETECTIVE)
        victim = next(p for p in room.players if p.role == Role.CITIZEN)

        det_conn, det_ws = seats[detective.name]
        await _send(gateway, det_conn, "night-action", {"roomCode": "ABC123", "target": mafia.id})
        result = det_ws.last("detective-result")
        assert result == {"targetId": mafia.id, "targetName": mafia.name, "isMafia": True}
        assert room.phase == Phase.NIGHT

        mafia_conn, _ = seats[mafia.name]
        await _send(gateway, mafia_conn, "night-action", {"roomCode": "ABC123", "target": victim.id})
        assert room.phase == Phase.DAY
        assert not victim.is_alive

        await _send(gateway, det_conn, "request-room-state", {"roomCode": "ABC123"})
        assert det_ws.last("room-state")["investigationResults"] == {mafia.id: True}

        survivor = next(p for p in room.get_alive_players() if p.role == Role.CITIZEN)
        await _send(gateway, mafia_conn, "vote", {"roomCode": "ABC123", "targetId": survivor.id})
        await _send(gateway, det_conn, "vote", {"roomCode": "ABC123", "targetId": mafia.id})
        survivor_conn, survivor_ws = seats[survivor.name]
        await _send(gateway, survivor_conn, "vote", {"roomCode": "ABC123", "targetId": mafia.id})

        cast = survivor_ws.events("vote-cast")
        assert len(cast) == 3
        assert cast[-1]["voterId"] == survivor.id

        assert room.winner == Winner.CITIZENS
        assert not mafia.is_alive
        ended = survivor_ws.last("game-ended")
        assert ended == {"winner": "citizens", "reason": "All Mafia members have been eliminated!"}
        assert not gateway.has_timer("ABC123")

    asyncio.run(scenario())


def test_rule_violations_are_silent():
    async def scenario():
        gateway = _gateway()
        seats, room = await _start(gateway, ["Alice", "Bob", "Carol"])
        citizen = next(p for p in room.players if p.role == Role.CITIZEN)
        conn, ws = seats[citizen.name]
        before = len(ws.sent)

        await _send(gateway, conn, "night-action", {"roomCode": "ABC123", "target": room.players[0].id})
        await _send(gateway, conn, "vote", {"roomCode": "ABC123", "targetId": room.players[0].id})
        assert len(ws.sent) == before
        await gateway.close()

    asyncio.run(scenario())


def test_mafia_chat_only_reaches_mafia():
    async def scenario():
        gateway = _gateway()
        seats, room = await _start(gateway, ["Alice", "Bob", "Carol", "Dave", "Eve", "Frank"])
        mafia = [p for p in room.players if p.role == Role.MAFIA]
        conn, _ = seats[mafia[0].name]

        await _send(gateway, conn, "chat-message", {"roomCode": "ABC123", "message": "  Dave  ", "chatType": "mafia"})
        for player in room.players:
            _, ws = seats[player.name]
            got = ws.events("chat-message")
            if player.role == Role.MAFIA:
                assert got[-1]["message"] == "Dave"
                assert got[-1]["chatType"] == "mafia"
            else:
                assert got == []

        await _send(gateway, conn, "chat-message", {"roomCode": "ABC123", "message": "hello town"})
        for _, ws in seats.values():
            assert all(m["chatType"] == "mafia" for m in ws.events("chat-message"))
        await gateway.close()

    asyncio.run(scenario())


def test_lobby_chat_broadcast():
    async def scenario():
        gateway = _gateway(max_chat_length=5)
        seats = await _seat(gateway, ["Alice", "Bob"])
        conn, _ = seats["Alice"]
        await _send(gateway, conn, "chat-message", {"roomCode": "ABC123", "message": "hello everyone"})
        _, bob_ws = seats["Bob"]
        assert bob_ws.last("chat-message")["message"] == "hello"

    asyncio.run(scenario())


def test_reconnect_mid_game():
    async def scenario():
        gateway = _gateway()
        seats, room = await _start(gateway, ["Alice", "Bob", "Carol"])
        bob = room.get_player_by_name("Bob")
        bob_conn, _ = seats["Bob"]
        _, alice_ws = seats["Alice"]

        await gateway.disconnect(bob_conn)
        assert bob.disconnected
        assert alice_ws.last("player-left")["playerId"] == bob.id

        ws = FakeWebSocket()
        conn = await gateway.connect(ws)
        await _send(gateway, conn, "join-room", {"roomCode": "abc123", "playerName": "Bob"})
        joined = ws.last("room-joined")
        assert joined["reconnected"] is True
        assert joined["playerId"] == bob.id
        assert ws.last("role-assigned")["role"] == bob.role.value
        state = ws.last("room-state")
        assert state["phase"] == "night"
        assert state["role"] == bob.role.value

        await _send(gateway, conn, "join-room", {"roomCode": "ABC123", "playerName": "Mallory"})
        assert ws.last("error") == {"message": "Could not join room. Game has already started."}
        assert bob.connection_id == conn
        await gateway.close()

    asyncio.run(scenario())


def test_last_connected_player_rejoins_running_game():
    async def scenario():
        gateway = _gateway()
        seats, room = await _start(gateway, ["Alice", "Bob", "Carol"])
        for name in ("Bob", "Carol", "Alice"):
            conn, _ = seats[name]
            await gateway.disconnect(conn)
        assert gateway.registry.get_room("ABC123") is room
        assert gateway.has_timer("ABC123")

        ws = FakeWebSocket()
        conn = await gateway.connect(ws)
        await _send(gateway, conn, "join-room", {"roomCode": "ABC123", "playerName": "Alice"})
        joined = ws.last("room-joined")
        assert joined["reconnected"] is True
        assert joined["playerId"] == room.get_player_by_name("Alice").id
        await gateway.close()

    asyncio.run(scenario())


def test_abandoned_game_closed_when_countdown_ends():
    async def scenario():
        gateway = _gateway(tick_seconds=0.01, night_duration=2)
        seats, room = await _start(gateway, ["Alice", "Bob", "Carol"])
        for conn, _ in seats.values():
            await gateway.disconnect(conn)
        for _ in range(100):
            if gateway.registry.get_room("ABC123") is None:
                break
            await asyncio.sleep(0.01)
        assert gateway.registry.get_room("ABC123") is None
        assert not gateway.has_timer("ABC123")
        assert room.phase == Phase.NIGHT

    asyncio.run(scenario())


def test_reconnecting_mafia_not_told_about_dead_teammates():
    async def scenario():
        gateway = _gateway()
        seats, room = await _start(gateway, ["Alice", "Bob", "Carol", "Dave", "Eve", "Frank"])
        first, second = [p for p in room.players if p.role == Role.MAFIA]
        second.is_alive = False

        conn, _ = seats[first.name]
        await gateway.disconnect(conn)
        ws = FakeWebSocket()
        conn = await gateway.connect(ws)
        await _send(gateway, conn, "join-room", {"roomCode": "ABC123", "playerName": first.name})
        assert ws.last("role-assigned")["mafiaTeammateIds"] == []
        roster = {p["id"]: p for p in ws.last("room-state")["players"]}
        assert roster[second.id]["role"] is None
        await gateway.close()

    asyncio.run(scenario())


def test_stranger_cannot_join_started_game():
    async def scenario():
        gateway = _gateway()
        await _start(gateway, ["Alice", "Bob", "Carol"])
        ws = FakeWebSocket()
        conn = await gateway.connect(ws)
        await _send(gateway, conn, "join-room", {"roomCode": "ABC123", "playerName": "Mallory"})
        assert ws.last("error") == {"message": "Could not join room. Game has already started."}
        await gateway.close()

    asyncio.run(scenario())


def test_timer_advances_phase():
    async def scenario():
        gateway = _gateway(tick_seconds=0.01, night_duration=2, day_duration=1000)
        seats, room = await _start(gateway, ["Alice", "Bob", "Carol"])
        for _ in range(100):
            if room.phase == Phase.DAY:
                break
            await asyncio.sleep(0.01)
        assert room.phase == Phase.DAY
        _, ws = seats["Alice"]
        assert [u["timeRemaining"] for u in ws.events("phase-update")][:2] == [1, 0]
        assert ws.last("day-phase")["deaths"] == []
        assert gateway.has_timer("ABC123")
        await gateway.close()
        assert not gateway.has_timer("ABC123")

    asyncio.run(scenario())


def test_failed_send_drops_socket():
    async def scenario():
        gateway = _gateway()
        ws = FakeWebSocket(fail=True)
        await gateway.connect(ws)
        assert gateway.connections.online_count == 0

    asyncio.run(scenario())


def test_json_outbound_framing():
    async def scenario():
        gateway = _gateway(outbound_framing="json")
        ws = FakeWebSocket()
        await gateway.connect(ws)
        assert json.loads(ws.sent[0])["event"] == "connected"

    asyncio.run(scenario())
