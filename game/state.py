"""Room state types for the Mafia room server."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from game.rules import Phase, Role, Winner


@dataclass
class Player:
    """A seat in a room. `id` is stable; `connection_id` changes on reconnect."""

    id: str
    name: str
    connection_id: Optional[str] = None
    role: Optional[Role] = None
    is_alive: bool = True
    vote_count: int = 0
    disconnected: bool = False

    @property
    def is_mafia(self) -> bool:
        return self.role == Role.MAFIA


class EventKind(str, Enum):
    """Type of narrative event."""

    GAME_START = "game_start"
    NIGHT_FALLS = "night_falls"
    QUIET_NIGHT = "quiet_night"
    NIGHT_KILL = "night_kill"
    NIGHT_PROTECT = "night_protect"
    NIGHT_NO_KILL = "night_no_kill"
    ELIMINATED = "eliminated"
    NO_MAJORITY = "no_majority"
    GAME_OVER = "game_over"


@dataclass
class Event:
    """A moderator announcement kept in the room history."""

    kind: EventKind
    round_index: int
    phase: Phase
    message: str
    target_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class NightAction:
    """One submitted night action."""

    player_id: str
    target_id: Optional[str]


@dataclass
class DetectiveResult:
    target_id: str
    target_name: str
    is_mafia: bool


@dataclass
class NightResult:
    """Outcome of night resolution; deaths are applied by the caller."""

    deaths: list[str] = field(default_factory=list)
    protected: Optional[str] = None
    detective_result: Optional[DetectiveResult] = None


@dataclass
class WinResult:
    winner: Winner
    reason: str


@dataclass
class PhaseOutcome:
    """What a single phase transition did."""

    from_phase: Phase
    to_phase: Phase
    night_result: Optional[NightResult] = None
    eliminated: Optional[Player] = None
    win: Optional[WinResult] = None
    events: list[Event] = field(default_factory=list)


@dataclass
class Room:
    """One game instance, identified by its room code."""

    code: str
    phase: Phase = Phase.LOBBY
    players: list[Player] = field(default_factory=list)
    creator_id: Optional[str] = None
    night_actions: dict[Role, list[NightAction]] = field(default_factory=dict)
    investigation_results: dict[str, dict[str, bool]] = field(default_factory=dict)
    day_votes: dict[str, str] = field(default_factory=dict)
    has_voted: set[str] = field(default_factory=set)
    round: int = 0
    night_number: int = 0
    time_remaining: int = 0
    night_duration: int = 60
    day_duration: int = 120
    skip_night_number: int = 2  # 0 disables the quiet night
    max_players: int = 10
    winner: Optional[Winner] = None
    win_reason: Optional[str] = None
    events: list[Event] = field(default_factory=list)

    @property
    def is_finished(self) -> bool:
        return self.winner is not None

    @property
    def is_skip_night(self) -> bool:
        return (
            self.phase == Phase.NIGHT
            and self.skip_night_number > 0
            and self.night_number == self.skip_night_number
        )

    @property
    def can_join(self) -> bool:
        return self.phase == Phase.LOBBY and len(self.players) < self.max_players

    def get_alive_players(self) -> list[Player]:
        """Return list of alive players."""
        return [p for p in self.players if p.is_alive]

    def get_player(self, player_id: Optional[str]) -> Optional[Player]:
        """Return player by id or None."""
        if not player_id:
            return None
        for p in self.players:
            if p.id == player_id:
                return p
        return None

    def get_player_by_connection(self, connection_id: Optional[str]) -> Optional[Player]:
        if not connection_id:
            return None
        for p in self.players:
            if p.connection_id == connection_id and not p.disconnected:
                return p
        return None

    def get_player_by_name(self, name: str) -> Optional[Player]:
        for p in self.players:
            if p.name == name:
                return p
        return None

    def get_players_by_role(self, role: Role) -> list[Player]:
        """Return alive players with the given role."""
        return [p for p in self.players if p.is_alive and p.role == role]

    def connected_players(self) -> list[Player]:
        return [p for p in self.players if not p.disconnected]
