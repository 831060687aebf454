"""In-memory room registry: owns every Room and the connection -> room mapping."""

import logging
from dataclasses import dataclass
from typing import Optional

from game.engine import add_player, disconnect_player, reconnect_player_by_name, remove_player
from game.rules import Phase
from game.state import Player, Room

from api.config import Settings
from api.models import RoomInfo, RoomSummary, room_info, room_summary

logger = logging.getLogger(__name__)


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


@dataclass
class JoinResult:
    room: Room
    player: Player
    reconnected: bool = False


@dataclass
class LeaveResult:
    room_code: str
    player: Optional[Player]
    removed: bool  # True in the lobby, False when the seat was kept for a rejoin
    room_deleted: bool
    was_creator: bool = False


class RoomRegistry:
    """
    Room codes are stored upper-case; every lookup normalizes first.
    One connection is seated in at most one room at a time.
    """

    def __init__(self, settings: Settings):
        self._settings = settings
        self._rooms: dict[str, Room] = {}
        self._connection_rooms: dict[str, str] = {}

    # ── Rooms ──────────────────────────────────────────────────────────────────

    def create_room(self, code: str) -> Optional[Room]:
        """Create an empty lobby. Returns None if the code is blank or taken."""
        code = normalize_code(code)
        if not code or code in self._rooms:
            return None
        room = Room(
            code=code,
            night_duration=self._settings.night_duration,
            day_duration=self._settings.day_duration,
            skip_night_number=self._settings.skip_night_number,
            max_players=self._settings.max_players,
        )
        self._rooms[code] = room
        logger.info("[%s] Room created", code)
        return room

    def get_room(self, code: Optional[str]) -> Optional[Room]:
        return self._rooms.get(normalize_code(code))

    def delete_room(self, code: str) -> bool:
        code = normalize_code(code)
        room = self._rooms.pop(code, None)
        if room is None:
            return False
        for conn_id, room_code in list(self._connection_rooms.items()):
            if room_code == code:
                del self._connection_rooms[conn_id]
        logger.info("[%s] Room deleted", code)
        return True

    def list_available_rooms(self) -> list[RoomSummary]:
        return [room_summary(r) for r in self._rooms.values()]

    def get_room_info(self, code: str) -> Optional[RoomInfo]:
        room = self.get_room(code)
        if room is None:
            return None
        return room_info(room)

    # ── Seats ──────────────────────────────────────────────────────────────────

    def room_of(self, connection_id: str) -> Optional[Room]:
        code = self._connection_rooms.get(connection_id)
        return self._rooms.get(code) if code else None

    def join_room(self, connection_id: str, code: str, name: str) -> Optional[JoinResult]:
        """
        Seat a connection in a room.

        In the lobby a new player is added unless the name is already seated or
        the room is full. Once the game has started only a disconnected seat with
        the same name can be taken back. Returns None when the join is refused.
        """
        room = self.get_room(code)
        if room is None:
            return None

        current = room.get_player_by_connection(connection_id)
        if current is not None:
            if current.name != name:
                return None
            return JoinResult(room=room, player=current)

        previous = self.room_of(connection_id)
        if previous is not None and previous is not room:
            self.leave_room(connection_id)

        if room.phase == Phase.LOBBY:
            player = add_player(room, connection_id, name)
            reconnected = False
        else:
            player = reconnect_player_by_name(room, name, connection_id)
            reconnected = True
        if player is None:
            return None

        self._connection_rooms[connection_id] = room.code
        logger.info(
            "[%s] %s %s (%d players)",
            room.code,
            name,
            "reconnected" if reconnected else "joined",
            len(room.players),
        )
        return JoinResult(room=room, player=player, reconnected=reconnected)

    def leave_room(self, connection_id: str) -> Optional[LeaveResult]:
        """Detach a connection. Lobby seats are removed; in-game seats are kept as disconnected."""
        code = self._connection_rooms.pop(connection_id, None)
        if code is None:
            return None
        room = self._rooms.get(code)
        if room is None:
            return None

        player = room.get_player_by_connection(connection_id)
        removed = False
        was_creator = player is not None and player.id == room.creator_id
        if player is not None:
            if room.phase == Phase.LOBBY:
                remove_player(room, player.id)
                removed = True
            else:
                disconnect_player(room, connection_id)

        room_deleted = False
        # Seats of a running game stay for a rejoin by name; a finished game with
        # nobody watching is swept.
        if not room.players or (room.is_finished and not room.connected_players()):
            room_deleted = self.delete_room(code)
        return LeaveResult(
            room_code=code,
            player=player,
            removed=removed,
            room_deleted=room_deleted,
            was_creator=was_creator and removed,
        )
