"""
WebSocket gateway: connection tracking, event dispatch, phase timers, fan-out.

Connection flow:
  1. Accept → assign an opaque connection id → private "connected" message
  2. Broadcast "online-count-update" to everyone
  3. Each text frame is decoded (api.protocol) and dispatched to one handler
  4. On close: leave the room (lobby seat removed, in-game seat kept for a
     rejoin by name) and broadcast presence

Phase timers: one asyncio task per room in night/day. Every tick decrements
the countdown and broadcasts "phase-update"; at zero the room advances through
game.engine.try_advance_phase, the same guarded call used when every player
has acted early, so a phase is never resolved twice.
"""

import asyncio
import logging
import random
import uuid
from typing import Any, Optional, assert_never

from pydantic import ValidationError

from game.engine import (
    all_alive_have_voted,
    all_night_actions_submitted,
    record_night_action,
    record_vote,
    start_game,
    tick,
    try_advance_phase,
)
from game.roles import role_image
from game.rules import MIN_PLAYERS, ROOM_CODE_ALPHABET, ROOM_CODE_LENGTH, Phase, Role
from game.state import Event, Player, Room

from api.config import Settings
from api.models import (
    ChatPayload,
    JoinRoomPayload,
    NightActionPayload,
    RoomPayload,
    VotePayload,
    mafia_teammate_ids,
    room_state_for,
    roster_for,
    valid_player_name,
)
from api.protocol import InboundEvent, ProtocolError, decode_frame, encode_frame
from api.registry import LeaveResult, RoomRegistry

logger = logging.getLogger(__name__)

ACTION_NAMES: dict[Role, str] = {
    Role.MAFIA: "eliminate",
    Role.DOCTOR: "protect",
    Role.DETECTIVE: "investigate",
}


def valid_room_code(code: str) -> bool:
    return len(code) == ROOM_CODE_LENGTH and all(ch in ROOM_CODE_ALPHABET for ch in code)


# ── Connection Manager ─────────────────────────────────────────────────────────


class ConnectionManager:
    """
    Tracks live sockets and which rooms each one listens to.
    Safe for the asyncio single-threaded event loop (no extra locking needed).
    """

    def __init__(self, framing: str = "delimited"):
        self._framing = framing
        self._sockets: dict[str, Any] = {}
        # {room_code: {connection_id}} and the reverse
        self._room_members: dict[str, set[str]] = {}
        self._connection_rooms: dict[str, set[str]] = {}

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def connect(self, ws) -> str:
        await ws.accept()
        connection_id = uuid.uuid4().hex
        self._sockets[connection_id] = ws
        self._connection_rooms[connection_id] = set()
        logger.debug("Connection %s opened (%d online)", connection_id, self.online_count)
        return connection_id

    def disconnect(self, connection_id: str) -> None:
        self._sockets.pop(connection_id, None)
        for code in self._connection_rooms.pop(connection_id, set()):
            self._discard_member(code, connection_id)

    def join(self, connection_id: str, room_code: str) -> None:
        if connection_id not in self._sockets:
            return
        self._room_members.setdefault(room_code, set()).add(connection_id)
        self._connection_rooms.setdefault(connection_id, set()).add(room_code)

    def leave(self, connection_id: str, room_code: str) -> None:
        self._connection_rooms.get(connection_id, set()).discard(room_code)
        self._discard_member(room_code, connection_id)

    def forget_room(self, room_code: str) -> None:
        for connection_id in self._room_members.pop(room_code, set()):
            self._connection_rooms.get(connection_id, set()).discard(room_code)

    def _discard_member(self, room_code: str, connection_id: str) -> None:
        members = self._room_members.get(room_code)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            self._room_members.pop(room_code, None)

    @property
    def online_count(self) -> int:
        return len(self._sockets)

    def members(self, room_code: str) -> set[str]:
        return set(self._room_members.get(room_code, set()))

    # ── Sending ────────────────────────────────────────────────────────────────

    async def send_to(self, connection_id: Optional[str], event: str, data: dict[str, Any]) -> None:
        """Send a private message to a single connection."""
        ws = self._sockets.get(connection_id) if connection_id else None
        if ws is None:
            return
        try:
            await ws.send_text(encode_frame(event, data, self._framing))
        except Exception as exc:
            logger.warning("send %s to %s failed: %s", event, connection_id, exc)
            self.disconnect(connection_id)

    async def broadcast_room(
        self,
        room_code: str,
        event: str,
        data: dict[str, Any],
        exclude: Optional[str] = None,
    ) -> None:
        """Broadcast one shared payload to every connection in a room."""
        for connection_id in self.members(room_code):
            if connection_id != exclude:
                await self.send_to(connection_id, event, data)

    async def broadcast_all(self, event: str, data: dict[str, Any]) -> None:
        for connection_id in list(self._sockets):
            await self.send_to(connection_id, event, data)


# ── Gateway ────────────────────────────────────────────────────────────────────


class Gateway:
    """Translates wire events into room operations and room changes into wire events."""

    def __init__(
        self,
        registry: RoomRegistry,
        settings: Settings,
        rng: Optional[random.Random] = None,
    ):
        self.registry = registry
        self.settings = settings
        self.connections = ConnectionManager(framing=settings.outbound_framing)
        self._rng = rng
        self._timers: dict[str, asyncio.Task] = {}

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def connect(self, ws) -> str:
        connection_id = await self.connections.connect(ws)
        logger.info("Player connected: %s", connection_id)
        await self.connections.send_to(connection_id, "connected", {
            "connectionId": connection_id,
            "onlineCount": self.connections.online_count,
        })
        await self._broadcast_online_count()
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        leave = self.registry.leave_room(connection_id)
        self.connections.disconnect(connection_id)
        logger.info("Player disconnected: %s", connection_id)
        if leave is not None:
            await self._after_leave(leave)
        await self._broadcast_online_count()

    async def close(self) -> None:
        """Cancel every phase timer (app shutdown)."""
        for task in list(self._timers.values()):
            task.cancel()
        self._timers.clear()

    def has_timer(self, room_code: str) -> bool:
        task = self._timers.get(room_code)
        return task is not None and not task.done()

    # ── Message dispatcher ─────────────────────────────────────────────────────

    async def handle_text(self, connection_id: str, text: str) -> None:
        try:
            event, data = decode_frame(text)
        except ProtocolError as exc:
            await self._error(connection_id, exc.message)
            return

        try:
            await self._dispatch(connection_id, event, data)
        except ValidationError:
            await self._error(connection_id, f"Invalid payload for '{event.value}'")
        except Exception:
            logger.exception("Unhandled error in handler (event=%s, connection=%s)", event.value, connection_id)
            await self._error(connection_id, "Internal server error")

    async def _dispatch(self, connection_id: str, event: InboundEvent, data: dict[str, Any]) -> None:
        match event:
            case InboundEvent.CREATE_ROOM:
                await self._on_create_room(connection_id, JoinRoomPayload.model_validate(data))
            case InboundEvent.JOIN_ROOM:
                await self._on_join_room(connection_id, JoinRoomPayload.model_validate(data))
            case InboundEvent.START_GAME:
                await self._on_start_game(connection_id, RoomPayload.model_validate(data))
            case InboundEvent.NIGHT_ACTION:
                await self._on_night_action(connection_id, NightActionPayload.model_validate(data))
            case InboundEvent.VOTE:
                await self._on_vote(connection_id, VotePayload.model_validate(data))
            case InboundEvent.CHAT_MESSAGE:
                await self._on_chat(connection_id, ChatPayload.model_validate(data))
            case InboundEvent.GET_ROOMS:
                await self._on_get_rooms(connection_id)
            case InboundEvent.CHECK_ROOM:
                await self._on_check_room(connection_id, RoomPayload.model_validate(data))
            case InboundEvent.REQUEST_ROOM_STATE:
                await self._on_request_room_state(connection_id, RoomPayload.model_validate(data))
            case _:
                assert_never(event)

    # ── Handlers: rooms ────────────────────────────────────────────────────────

    async def _on_create_room(self, connection_id: str, payload: JoinRoomPayload) -> None:
        if not payload.room_code or not payload.player_name:
            await self._error(connection_id, "Room code and player name required")
            return
        if not valid_room_code(payload.room_code):
            await self._error(connection_id, f"Room code must be {ROOM_CODE_LENGTH} letters or digits")
            return
        if not valid_player_name(payload.player_name):
            await self._error(connection_id, "Invalid player name")
            return
        if self.registry.get_room(payload.room_code) is not None:
            await self._error(connection_id, f"Room {payload.room_code} already exists")
            return

        await self._leave_current_room(connection_id, payload.room_code)
        room = self.registry.create_room(payload.room_code)
        if room is None:
            await self._error(connection_id, "Could not create room")
            return
        if not await self._join(connection_id, room, payload.player_name):
            self.registry.delete_room(room.code)

    async def _on_join_room(self, connection_id: str, payload: JoinRoomPayload) -> None:
        if not payload.room_code or not payload.player_name:
            await self._error(connection_id, "Room code and player name required")
            return
        if not valid_player_name(payload.player_name):
            await self._error(connection_id, "Invalid player name")
            return
        room = self.registry.get_room(payload.room_code)
        if room is None:
            await self._error(connection_id, "Room not found")
            return

        await self._leave_current_room(connection_id, room.code)
        # Leaving may have emptied and deleted the target room.
        room = self.registry.get_room(payload.room_code)
        if room is None:
            await self._error(connection_id, "Room not found")
            return
        await self._join(connection_id, room, payload.player_name)

    async def _join(self, connection_id: str, room: Room, name: str) -> bool:
        result = self.registry.join_room(connection_id, room.code, name)
        if result is None:
            await self._error(connection_id, self._join_refusal(room, name))
            return False

        player = result.player
        self.connections.join(connection_id, room.code)
        await self.connections.send_to(connection_id, "room-joined", {
            "isCreator": player.id == room.creator_id,
            "players": roster_for(room, player),
            "roomCode": room.code,
            "playerId": player.id,
            "reconnected": result.reconnected,
        })

        if room.phase != Phase.LOBBY:
            await self._send_role(room, player)
            await self.connections.send_to(connection_id, "room-state", room_state_for(room, player).wire())

        await self._broadcast_roster(room, "player-joined", {
            "playerId": player.id,
            "playerName": player.name,
        })
        await self._broadcast_room_count(room.code, len(room.players))
        return True

    @staticmethod
    def _join_refusal(room: Room, name: str) -> str:
        existing = room.get_player_by_name(name)
        if existing is not None and not existing.disconnected:
            return "Name already taken in this room"
        if room.phase != Phase.LOBBY:
            return "Could not join room. Game has already started."
        if len(room.players) >= room.max_players:
            return "Room is full"
        return "Could not join room"

    async def _leave_current_room(self, connection_id: str, target_code: str) -> None:
        current = self.registry.room_of(connection_id)
        if current is None or current.code == target_code:
            return
        leave = self.registry.leave_room(connection_id)
        if leave is not None:
            self.connections.leave(connection_id, leave.room_code)
            await self._after_leave(leave)

    async def _after_leave(self, leave: LeaveResult) -> None:
        if leave.room_deleted:
            self._cancel_timer(leave.room_code)
            self.connections.forget_room(leave.room_code)
            await self._broadcast_room_count(leave.room_code, 0)
            return

        room = self.registry.get_room(leave.room_code)
        if room is None:
            return
        if leave.player is not None:
            await self._broadcast_roster(room, "player-left", {
                "playerId": leave.player.id,
                "playerName": leave.player.name,
            })
            if leave.was_creator:
                new_creator = room.get_player(room.creator_id)
                if new_creator is not None:
                    await self.connections.send_to(
                        new_creator.connection_id,
                        "room-state",
                        room_state_for(room, new_creator).wire(),
                    )
        await self._broadcast_room_count(room.code, len(room.players))

    async def _on_get_rooms(self, connection_id: str) -> None:
        rooms = [r.wire() for r in self.registry.list_available_rooms()]
        await self.connections.send_to(connection_id, "rooms-list", {"rooms": rooms})

    async def _on_check_room(self, connection_id: str, payload: RoomPayload) -> None:
        if not payload.room_code:
            await self._error(connection_id, "Room code required")
            return
        info = self.registry.get_room_info(payload.room_code)
        if info is None:
            await self.connections.send_to(connection_id, "room-status", {
                "roomCode": payload.room_code,
                "exists": False,
                "message": "Room does not exist",
            })
            return
        await self.connections.send_to(connection_id, "room-status", info.wire())

    async def _on_request_room_state(self, connection_id: str, payload: RoomPayload) -> None:
        room = self.registry.get_room(payload.room_code)
        if room is None:
            await self._error(connection_id, "Room not found")
            return
        player = room.get_player_by_connection(connection_id)
        if player is None:
            await self._error(connection_id, "You are not in this room")
            return
        await self.connections.send_to(connection_id, "room-state", room_state_for(room, player).wire())

    # ── Handlers: game ─────────────────────────────────────────────────────────

    async def _on_start_game(self, connection_id: str, payload: RoomPayload) -> None:
        room = self.registry.get_room(payload.room_code)
        if room is None:
            await self._error(connection_id, "Room not found")
            return
        player = room.get_player_by_connection(connection_id)
        if player is None or player.id != room.creator_id:
            await self._error(connection_id, "Only the room creator can start the game")
            return
        if room.phase != Phase.LOBBY:
            await self._error(connection_id, "Game has already started")
            return
        if len(room.players) < MIN_PLAYERS:
            await self._error(connection_id, f"At least {MIN_PLAYERS} players are required to start")
            return

        mark = len(room.events)
        if not start_game(room, player.id, rng=self._rng):
            await self._error(connection_id, "Could not start the game")
            return
        logger.info("[%s] Game started with %d players", room.code, len(room.players))

        for p in room.connected_players():
            await self._send_role(room, p)
        await self._broadcast_roster(room, "game-started", {})
        await self._announce(room.code, room.events[mark:])
        await self._broadcast_roster(room, "night-phase", {
            "timeRemaining": room.time_remaining,
            "nightNumber": room.night_number,
        })
        self._start_timer(room.code)

    async def _on_night_action(self, connection_id: str, payload: NightActionPayload) -> None:
        room = self.registry.get_room(payload.room_code)
        if room is None:
            return
        player = room.get_player_by_connection(connection_id)
        if player is None:
            return
        if not record_night_action(room, player.id, payload.target):
            return

        await self.connections.send_to(connection_id, "night-action-confirmed", {
            "action": payload.action or ACTION_NAMES.get(player.role),
            "target": payload.target,
        })
        if player.role == Role.DETECTIVE:
            target = room.get_player(payload.target)
            if target is not None:
                await self.connections.send_to(connection_id, "detective-result", {
                    "targetId": target.id,
                    "targetName": target.name,
                    "isMafia": target.is_mafia,
                })

        if all_night_actions_submitted(room):
            await self._advance(room.code, Phase.NIGHT)

    async def _on_vote(self, connection_id: str, payload: VotePayload) -> None:
        room = self.registry.get_room(payload.room_code)
        if room is None:
            return
        player = room.get_player_by_connection(connection_id)
        if player is None:
            return
        if not record_vote(room, player.id, payload.target_id):
            return

        await self.connections.broadcast_room(room.code, "vote-cast", {
            "voterId": player.id,
            "targetId": payload.target_id,
            "votes": [{"id": p.id, "votes": p.vote_count} for p in room.players],
        })
        if all_alive_have_voted(room):
            await self._advance(room.code, Phase.DAY)

    async def _on_chat(self, connection_id: str, payload: ChatPayload) -> None:
        room = self.registry.get_room(payload.room_code)
        if room is None:
            return
        player = room.get_player_by_connection(connection_id)
        if player is None:
            return
        text = payload.message.strip()[: self.settings.max_chat_length]
        if not text:
            return

        message = {
            "playerId": player.id,
            "playerName": player.name,
            "message": text,
            "chatType": payload.chat_type,
        }
        if payload.chat_type == "mafia":
            if room.phase != Phase.NIGHT or not player.is_alive or not player.is_mafia:
                return
            for teammate in room.get_players_by_role(Role.MAFIA):
                await self.connections.send_to(teammate.connection_id, "chat-message", message)
            return

        if room.phase == Phase.NIGHT:
            return
        if room.phase == Phase.DAY and not player.is_alive and not room.is_finished:
            return
        await self.connections.broadcast_room(room.code, "chat-message", message)

    # ── Phase progression ──────────────────────────────────────────────────────

    async def _advance(self, room_code: str, expected_phase: Phase) -> None:
        room = self.registry.get_room(room_code)
        if room is None:
            self._cancel_timer(room_code)
            return
        outcome = try_advance_phase(room, expected_phase)
        if outcome is None:
            return
        logger.info(
            "[%s] Phase: %s → %s (round %d)",
            room_code,
            outcome.from_phase.value,
            outcome.to_phase.value,
            room.round,
        )

        await self._announce(room_code, outcome.events)

        if outcome.win is not None:
            self._cancel_timer(room_code)
            logger.info("[%s] Game over: %s", room_code, outcome.win.winner.value)
            await self.connections.broadcast_room(room_code, "game-ended", {
                "winner": outcome.win.winner.value,
                "reason": outcome.win.reason,
            })
            # Nobody left to see the result.
            if not room.connected_players():
                self.registry.delete_room(room_code)
                self.connections.forget_room(room_code)
            return

        if outcome.night_result is not None:
            await self._broadcast_roster(room, "day-phase", {
                "timeRemaining": room.time_remaining,
                "deaths": list(outcome.night_result.deaths),
            })

        if outcome.to_phase == Phase.NIGHT:
            await self._broadcast_roster(room, "night-phase", {
                "timeRemaining": room.time_remaining,
                "nightNumber": room.night_number,
            })
        self._start_timer(room_code)

    def _start_timer(self, room_code: str) -> None:
        """Replace the room's countdown task with a fresh one."""
        current = asyncio.current_task()
        existing = self._timers.pop(room_code, None)
        if existing is not None and existing is not current and not existing.done():
            existing.cancel()
        self._timers[room_code] = asyncio.create_task(self._run_timer(room_code))

    def _cancel_timer(self, room_code: str) -> None:
        task = self._timers.pop(room_code, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _run_timer(self, room_code: str) -> None:
        me = asyncio.current_task()
        try:
            while self._timers.get(room_code) is me:
                await asyncio.sleep(self.settings.tick_seconds)
                if self._timers.get(room_code) is not me:
                    return
                room = self.registry.get_room(room_code)
                if room is None or room.is_finished or room.phase == Phase.LOBBY:
                    self._timers.pop(room_code, None)
                    return

                expired = tick(room)
                await self.connections.broadcast_room(room_code, "phase-update", {
                    "phase": room.phase.value,
                    "timeRemaining": room.time_remaining,
                    "nightNumber": room.night_number,
                })
                if expired and not room.connected_players():
                    # Countdown ran out with every seat disconnected.
                    logger.info("[%s] Abandoned mid-game, closing room", room_code)
                    self._timers.pop(room_code, None)
                    self.registry.delete_room(room_code)
                    self.connections.forget_room(room_code)
                    await self._broadcast_room_count(room_code, 0)
                    return
                if expired:
                    await self._advance(room_code, room.phase)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[%s] Phase timer crashed", room_code)
            if self._timers.get(room_code) is me:
                self._timers.pop(room_code, None)

    # ── Fan-out helpers ────────────────────────────────────────────────────────

    async def _send_role(self, room: Room, player: Player) -> None:
        if player.role is None:
            return
        payload: dict[str, Any] = {
            "role": player.role.value,
            "roleImage": role_image(player.role),
        }
        if player.is_mafia:
            payload["mafiaTeammateIds"] = mafia_teammate_ids(room, player)
        await self.connections.send_to(player.connection_id, "role-assigned", payload)

    async def _broadcast_roster(self, room: Room, event: str, data: dict[str, Any]) -> None:
        """Send event to each seated player with a roster projected for that player."""
        for player in room.connected_players():
            payload = dict(data)
            payload["players"] = roster_for(room, player)
            await self.connections.send_to(player.connection_id, event, payload)

    async def _announce(self, room_code: str, events: list[Event]) -> None:
        for event in events:
            await self.connections.broadcast_room(room_code, "moderator-message", {
                "message": event.message,
                "timestamp": int(event.timestamp * 1000),
            })

    async def _broadcast_online_count(self) -> None:
        await self.connections.broadcast_all("online-count-update", {
            "onlineCount": self.connections.online_count,
        })

    async def _broadcast_room_count(self, room_code: str, player_count: int) -> None:
        await self.connections.broadcast_all("room-player-count-update", {
            "roomCode": room_code,
            "playerCount": player_count,
        })

    async def _error(self, connection_id: str, message: str) -> None:
        await self.connections.send_to(connection_id, "error", {"message": message})
