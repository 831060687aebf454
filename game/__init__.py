"""Game rules and room state machine for the Mafia room server."""

from game.engine import (
    add_player,
    remove_player,
    disconnect_player,
    reconnect_player_by_name,
    start_game,
    record_night_action,
    all_night_actions_submitted,
    resolve_night,
    record_vote,
    all_alive_have_voted,
    get_most_voted_player,
    check_win,
    tick,
    try_advance_phase,
)
from game.roles import assign_roles, role_image
from game.rules import Role, Phase, Winner
from game.state import Room, Player, Event, NightAction, NightResult, PhaseOutcome, WinResult

__all__ = [
    "add_player",
    "remove_player",
    "disconnect_player",
    "reconnect_player_by_name",
    "start_game",
    "record_night_action",
    "all_night_actions_submitted",
    "resolve_night",
    "record_vote",
    "all_alive_have_voted",
    "get_most_voted_player",
    "check_win",
    "tick",
    "try_advance_phase",
    "assign_roles",
    "role_image",
    "Role",
    "Phase",
    "Winner",
    "Room",
    "Player",
    "Event",
    "NightAction",
    "NightResult",
    "PhaseOutcome",
    "WinResult",
]
