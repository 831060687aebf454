"""Game engine: room state transitions, no I/O.

Mutating functions work on the Room in place and report rule violations by
returning False/None; nothing here raises for a client mistake. Resolution
helpers (resolve_night, check_win) are pure.
"""

import random
import uuid
from collections.abc import Mapping, Sequence
from typing import Optional

from game.roles import assign_roles
from game.rules import MAX_ROOM_EVENTS, MIN_PLAYERS, NIGHT_ROLES, Phase, Role, Winner
from game.state import (
    DetectiveResult,
    Event,
    EventKind,
    NightAction,
    NightResult,
    PhaseOutcome,
    Player,
    Room,
    WinResult,
)


def _emit(room: Room, event: Event, outcome: Optional[PhaseOutcome] = None) -> None:
    """Append event to room history (mutates room)."""
    room.events.append(event)
    if len(room.events) > MAX_ROOM_EVENTS:
        room.events = room.events[-MAX_ROOM_EVENTS:]
    if outcome is not None:
        outcome.events.append(event)


def new_player_id() -> str:
    return uuid.uuid4().hex[:12]


# ── Roster ────────────────────────────────────────────────────────────────────


def add_player(room: Room, connection_id: str, name: str) -> Optional[Player]:
    """Seat a new player in a lobby. The first player seated becomes the creator."""
    if not room.can_join:
        return None
    if room.get_player_by_name(name) is not None:
        return None
    if room.get_player_by_connection(connection_id) is not None:
        return None

    player = Player(id=new_player_id(), name=name, connection_id=connection_id)
    room.players.append(player)
    if room.creator_id is None:
        room.creator_id = player.id
    return player


def remove_player(room: Room, player_id: str) -> Optional[Player]:
    """Drop a player from the roster (lobby only). A departing creator hands over to the next seat."""
    if room.phase != Phase.LOBBY:
        return None
    player = room.get_player(player_id)
    if player is None:
        return None

    room.players = [p for p in room.players if p.id != player_id]
    if room.creator_id == player_id:
        room.creator_id = room.players[0].id if room.players else None
    return player


def disconnect_player(room: Room, connection_id: str) -> Optional[Player]:
    """Keep the seat, role and votes; free the connection id for a later rejoin."""
    player = room.get_player_by_connection(connection_id)
    if player is None:
        return None
    player.disconnected = True
    player.connection_id = None
    return player


def reconnect_player_by_name(room: Room, name: str, connection_id: str) -> Optional[Player]:
    """Re-bind a disconnected seat with this display name to a new connection."""
    for p in room.players:
        if p.name == name and p.disconnected:
            p.connection_id = connection_id
            p.disconnected = False
            return p
    return None


# ── Game start and phase entry ────────────────────────────────────────────────


def start_game(room: Room, player_id: str, rng: Optional[random.Random] = None) -> bool:
    """Creator-only lobby -> night transition. Assigns roles in seat order."""
    if room.phase != Phase.LOBBY:
        return False
    if player_id is None or room.creator_id != player_id:
        return False
    if len(room.players) < MIN_PLAYERS:
        return False

    roles = assign_roles(len(room.players), rng=rng)
    for player, role in zip(room.players, roles):
        player.role = role
        player.is_alive = True
        player.vote_count = 0

    room.round = 1
    room.investigation_results = {}
    room.winner = None
    room.win_reason = None
    _emit(
        room,
        Event(
            kind=EventKind.GAME_START,
            round_index=room.round,
            phase=Phase.LOBBY,
            message=f"The game begins with {len(room.players)} players.",
        ),
    )
    _begin_night(room, first_night=True)
    return True


def _clear_votes(room: Room) -> None:
    room.day_votes = {}
    room.has_voted = set()
    for p in room.players:
        p.vote_count = 0


def _begin_night(room: Room, first_night: bool = False, outcome: Optional[PhaseOutcome] = None) -> None:
    room.phase = Phase.NIGHT
    room.night_actions = {}
    room.night_number = 1 if first_night else room.night_number + 1
    room.time_remaining = room.night_duration
    _clear_votes(room)

    if room.is_skip_night:
        message = f"Night {room.night_number} is quiet. Nobody may act tonight."
        kind = EventKind.QUIET_NIGHT
    else:
        message = "Night falls. The Mafia awakens..."
        kind = EventKind.NIGHT_FALLS
    _emit(room, Event(kind=kind, round_index=room.round, phase=Phase.NIGHT, message=message), outcome)


def _begin_day(room: Room) -> None:
    room.phase = Phase.DAY
    room.time_remaining = room.day_duration
    _clear_votes(room)


# ── Night actions ─────────────────────────────────────────────────────────────


def record_night_action(room: Room, player_id: str, target_id: Optional[str]) -> bool:
    """
    Record a night action for the acting player's own role.
    Mafia may change their target until resolution; detective and doctor act once.
    """
    if room.phase != Phase.NIGHT or room.is_finished or room.is_skip_night:
        return False

    player = room.get_player(player_id)
    if player is None or not player.is_alive or player.role not in NIGHT_ROLES:
        return False

    target = room.get_player(target_id)
    if target is None or not target.is_alive:
        return False
    if target.id == player.id and player.role != Role.DOCTOR:
        return False
    if player.role == Role.MAFIA and target.is_mafia:
        return False

    actions = room.night_actions.setdefault(player.role, [])
    existing = next((a for a in actions if a.player_id == player.id), None)
    if existing is not None:
        if player.role != Role.MAFIA:
            return False
        existing.target_id = target.id
        return True

    actions.append(NightAction(player_id=player.id, target_id=target.id))
    if player.role == Role.DETECTIVE:
        _remember_investigation(room, player.id, target)
    return True


def _remember_investigation(room: Room, detective_id: str, target: Player) -> None:
    room.investigation_results.setdefault(detective_id, {})[target.id] = target.is_mafia


def all_night_actions_submitted(room: Room) -> bool:
    """True when every living night role has acted (absent or dead roles count as done)."""
    if room.phase != Phase.NIGHT or room.is_skip_night:
        return False
    for role in NIGHT_ROLES:
        acted = {a.player_id for a in room.night_actions.get(role, [])}
        if any(p.id not in acted for p in room.get_players_by_role(role)):
            return False
    return True


def resolve_night(
    night_actions: Mapping[Role, Sequence[NightAction]],
    players: Sequence[Player],
) -> NightResult:
    """
    Resolve one night: unanimous mafia kill, doctor protection, detective check.
    Pure: does not flip is_alive; the caller applies result.deaths.
    """
    by_id = {p.id: p for p in players}
    result = NightResult()

    def _actions(role: Role) -> list[NightAction]:
        acting = []
        for action in night_actions.get(role, []):
            actor = by_id.get(action.player_id)
            if actor is not None and actor.is_alive and actor.role == role:
                acting.append(action)
        return acting

    kill_target: Optional[str] = None
    if any(p.is_alive and p.is_mafia for p in players):
        targets: set[str] = set()
        for action in _actions(Role.MAFIA):
            target = by_id.get(action.target_id)
            if target is None or (target.is_alive and target.is_mafia):
                continue
            targets.add(target.id)
        # Any disagreement among the mafia means no kill
        if len(targets) == 1:
            kill_target = next(iter(targets))

    doctor_actions = _actions(Role.DOCTOR)
    if kill_target and doctor_actions and doctor_actions[0].target_id == kill_target:
        result.protected = kill_target
        kill_target = None

    if kill_target:
        target = by_id.get(kill_target)
        if target is not None and target.is_alive:
            result.deaths.append(kill_target)

    detective_actions = _actions(Role.DETECTIVE)
    if detective_actions:
        checked = by_id.get(detective_actions[0].target_id)
        if checked is not None:
            result.detective_result = DetectiveResult(
                target_id=checked.id,
                target_name=checked.name,
                is_mafia=checked.is_mafia,
            )
    return result


# ── Day votes ─────────────────────────────────────────────────────────────────


def record_vote(room: Room, voter_id: str, target_id: Optional[str]) -> bool:
    """Record or change a day vote. target_id None is an explicit skip."""
    if room.phase != Phase.DAY or room.is_finished:
        return False

    voter = room.get_player(voter_id)
    if voter is None or not voter.is_alive:
        return False

    target: Optional[Player] = None
    if target_id is not None:
        target = room.get_player(target_id)
        if target is None or not target.is_alive:
            return False

    previous = room.day_votes.pop(voter.id, None)
    if previous is not None:
        previous_target = room.get_player(previous)
        if previous_target is not None:
            previous_target.vote_count = max(0, previous_target.vote_count - 1)

    room.has_voted.add(voter.id)
    if target is not None:
        room.day_votes[voter.id] = target.id
        target.vote_count += 1
    return True


def all_alive_have_voted(room: Room) -> bool:
    alive = room.get_alive_players()
    if room.phase != Phase.DAY or not alive:
        return False
    return all(p.id in room.has_voted for p in alive)


def get_most_voted_player(room: Room) -> Optional[str]:
    """Return the living player with strictly the most votes, or None on a tie or no votes."""
    candidates = [p for p in room.get_alive_players() if p.vote_count > 0]
    if not candidates:
        return None
    top = max(p.vote_count for p in candidates)
    leaders = [p for p in candidates if p.vote_count == top]
    if len(leaders) != 1:
        return None
    return leaders[0].id


# ── Win evaluation ────────────────────────────────────────────────────────────


def check_win(players: Sequence[Player]) -> Optional[WinResult]:
    """Return the game result, or None while the game continues."""
    alive = [p for p in players if p.is_alive]
    if not alive:
        return WinResult(winner=Winner.DRAW, reason="All players have been eliminated.")

    mafia_alive = sum(1 for p in alive if p.is_mafia)
    others_alive = len(alive) - mafia_alive

    if mafia_alive >= others_alive and others_alive > 0:
        return WinResult(winner=Winner.MAFIA, reason="The Mafia can no longer be outvoted!")
    if mafia_alive == 0 and others_alive > 0:
        return WinResult(winner=Winner.CITIZENS, reason="All Mafia members have been eliminated!")
    return None


# ── Phase progression ─────────────────────────────────────────────────────────


def tick(room: Room) -> bool:
    """Count down one second. True when the current phase has run out of time."""
    if room.phase == Phase.LOBBY or room.is_finished:
        return False
    if room.time_remaining > 0:
        room.time_remaining -= 1
    return room.time_remaining <= 0


def try_advance_phase(room: Room, expected_phase: Phase) -> Optional[PhaseOutcome]:
    """
    Run the transition out of expected_phase exactly once.

    Returns None when the room already left that phase, is still in the lobby,
    or has a winner, so timer expiry and early completion can both call it.
    """
    if room.is_finished or room.phase != expected_phase:
        return None
    if room.phase == Phase.NIGHT:
        return _end_night(room)
    if room.phase == Phase.DAY:
        return _end_day(room)
    return None


def _end_night(room: Room) -> PhaseOutcome:
    if room.is_skip_night:
        result = NightResult()
    else:
        result = resolve_night(room.night_actions, room.players)

    if result.detective_result is not None:
        detective_action = room.night_actions[Role.DETECTIVE][0]
        target = room.get_player(result.detective_result.target_id)
        if target is not None:
            _remember_investigation(room, detective_action.player_id, target)

    outcome = PhaseOutcome(from_phase=Phase.NIGHT, to_phase=Phase.DAY, night_result=result)
    for player_id in result.deaths:
        victim = room.get_player(player_id)
        if victim is None:
            continue
        victim.is_alive = False
        _emit(
            room,
            Event(
                kind=EventKind.NIGHT_KILL,
                round_index=room.round,
                phase=Phase.NIGHT,
                message=f"The sun rises, and {victim.name} was found dead.",
                target_id=victim.id,
            ),
            outcome,
        )

    if not result.deaths:
        saved = room.get_player(result.protected)
        if saved is not None:
            _emit(
                room,
                Event(
                    kind=EventKind.NIGHT_PROTECT,
                    round_index=room.round,
                    phase=Phase.NIGHT,
                    message=f"The sun rises. {saved.name} was protected by the Doctor.",
                    target_id=saved.id,
                ),
                outcome,
            )
        else:
            _emit(
                room,
                Event(
                    kind=EventKind.NIGHT_NO_KILL,
                    round_index=room.round,
                    phase=Phase.NIGHT,
                    message="The sun rises. No one was killed last night.",
                ),
                outcome,
            )

    room.night_actions = {}
    _begin_day(room)
    _finish_if_won(room, outcome)
    return outcome


def _end_day(room: Room) -> PhaseOutcome:
    outcome = PhaseOutcome(from_phase=Phase.DAY, to_phase=Phase.NIGHT)

    eliminated = room.get_player(get_most_voted_player(room))
    if eliminated is not None:
        eliminated.is_alive = False
        outcome.eliminated = eliminated
        _emit(
            room,
            Event(
                kind=EventKind.ELIMINATED,
                round_index=room.round,
                phase=Phase.DAY,
                message=f"{eliminated.name} has been eliminated by the town's vote.",
                target_id=eliminated.id,
            ),
            outcome,
        )
    else:
        _emit(
            room,
            Event(
                kind=EventKind.NO_MAJORITY,
                round_index=room.round,
                phase=Phase.DAY,
                message="The town could not agree on anyone to eliminate.",
            ),
            outcome,
        )

    _clear_votes(room)
    if _finish_if_won(room, outcome):
        outcome.to_phase = room.phase
        return outcome

    room.round += 1
    _begin_night(room, outcome=outcome)
    return outcome


def _finish_if_won(room: Room, outcome: PhaseOutcome) -> bool:
    win = check_win(room.players)
    if win is None:
        return False
    room.winner = win.winner
    room.win_reason = win.reason
    room.time_remaining = 0
    outcome.win = win
    _emit(
        room,
        Event(
            kind=EventKind.GAME_OVER,
            round_index=room.round,
            phase=room.phase,
            message=win.reason,
        ),
        outcome,
    )
    return True
