"""Pydantic models for inbound payloads and per-recipient outbound views."""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from game.roles import role_image
from game.rules import Role
from game.state import Player, Room

# Validation constants (no magic numbers in validation)
MAX_PLAYER_NAME_LENGTH = 20


class CamelModel(BaseModel):
    """Base for wire models: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


# ── Inbound payloads ──────────────────────────────────────────────────────────


class RoomPayload(CamelModel):
    """Any payload that names a room."""

    room_code: str = ""

    @field_validator("room_code", mode="before")
    @classmethod
    def normalize_code(cls, v):
        if v is None:
            return ""
        if isinstance(v, (str, int)):
            return str(v).strip().upper()
        return v


class JoinRoomPayload(RoomPayload):
    """Body of create-room and join-room."""

    player_name: str = ""

    @field_validator("player_name", mode="before")
    @classmethod
    def strip_name(cls, v):
        if v is None:
            return ""
        return v.strip() if isinstance(v, str) else v


class NightActionPayload(RoomPayload):
    action: Optional[str] = None
    target: Optional[str] = None


class VotePayload(RoomPayload):
    """targetId null (or missing) is a skip vote."""

    target_id: Optional[str] = None


class ChatPayload(RoomPayload):
    message: str = ""
    chat_type: Literal["public", "mafia"] = "public"


def valid_player_name(name: str) -> bool:
    if not name or len(name) > MAX_PLAYER_NAME_LENGTH:
        return False
    # Avoid obvious HTML/script injection.
    if "<" in name or ">" in name:
        return False
    return all(ord(ch) >= 32 for ch in name)


# ── Outbound views ────────────────────────────────────────────────────────────


class PlayerPublic(CamelModel):
    """Player as shown to one recipient: role only when that recipient may see it."""

    id: str
    name: str
    is_alive: bool
    vote_count: int = 0
    disconnected: bool = False
    role: Optional[str] = Field(default=None, description="Own role, or a living mafia teammate's role for mafia viewers")


class RoomSummary(CamelModel):
    room_code: str
    phase: str
    player_count: int
    max_players: int
    can_join: bool


class RoomInfo(RoomSummary):
    exists: bool = True
    players: list[PlayerPublic] = Field(default_factory=list)


class RoomStateView(CamelModel):
    """Full snapshot for request-room-state and reconnects."""

    room_code: str
    is_creator: bool
    player_id: Optional[str] = None
    role: Optional[str] = None
    role_image: Optional[str] = None
    players: list[PlayerPublic]
    phase: str
    time_remaining: int
    round: int
    night_number: int
    winner: Optional[str] = None
    investigation_results: dict[str, bool] = Field(default_factory=dict)


def can_see_role(player: Player, viewer: Optional[Player]) -> bool:
    if viewer is None or player.role is None:
        return False
    if player.id == viewer.id:
        return True
    return viewer.is_mafia and player.is_mafia and player.is_alive


def player_public(player: Player, viewer: Optional[Player] = None) -> PlayerPublic:
    return PlayerPublic(
        id=player.id,
        name=player.name,
        is_alive=player.is_alive,
        vote_count=player.vote_count,
        disconnected=player.disconnected,
        role=player.role.value if can_see_role(player, viewer) else None,
    )


def roster_for(room: Room, viewer: Optional[Player] = None) -> list[dict]:
    """Roster projected for one recipient; never share one payload across recipients."""
    return [player_public(p, viewer).wire() for p in room.players]


def room_summary(room: Room) -> RoomSummary:
    return RoomSummary(
        room_code=room.code,
        phase=room.phase.value,
        player_count=len(room.players),
        max_players=room.max_players,
        can_join=room.can_join,
    )


def room_info(room: Room) -> RoomInfo:
    summary = room_summary(room)
    return RoomInfo(
        **summary.model_dump(),
        players=[player_public(p) for p in room.players],
    )


def room_state_for(room: Room, viewer: Optional[Player]) -> RoomStateView:
    investigations: dict[str, bool] = {}
    if viewer is not None and viewer.role == Role.DETECTIVE:
        investigations = dict(room.investigation_results.get(viewer.id, {}))
    return RoomStateView(
        room_code=room.code,
        is_creator=viewer is not None and viewer.id == room.creator_id,
        player_id=viewer.id if viewer else None,
        role=viewer.role.value if viewer and viewer.role else None,
        role_image=role_image(viewer.role) if viewer else None,
        players=[player_public(p, viewer) for p in room.players],
        phase=room.phase.value,
        time_remaining=room.time_remaining,
        round=room.round,
        night_number=room.night_number,
        winner=room.winner.value if room.winner else None,
        investigation_results=investigations,
    )


def mafia_teammate_ids(room: Room, viewer: Player) -> list[str]:
    if not viewer.is_mafia:
        return []
    return [p.id for p in room.players if p.is_mafia and p.is_alive and p.id != viewer.id]
