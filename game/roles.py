"""Role assignment: player count -> shuffled role list."""

import random
from typing import Optional

from game.rules import (
    DETECTIVE_MIN_PLAYERS,
    DOCTOR_MIN_PLAYERS,
    MIN_NON_MAFIA,
    MIN_PLAYERS,
    ROLE_IMAGES,
    Role,
)


def mafia_count(player_count: int) -> int:
    """About a third of the table, leaving at least MIN_NON_MAFIA other seats when possible."""
    count = max(1, player_count // 3)
    if player_count - count < MIN_NON_MAFIA:
        count = max(1, player_count - MIN_NON_MAFIA)
    return count


def assign_roles(player_count: int, rng: Optional[random.Random] = None) -> list[Role]:
    """
    Build the role list for a table of player_count and shuffle it.
    Position i of the result belongs to the i-th seated player.
    """
    if player_count < MIN_PLAYERS:
        raise ValueError(f"At least {MIN_PLAYERS} players required, got {player_count}")

    roles: list[Role] = [Role.MAFIA] * mafia_count(player_count)
    if player_count >= DETECTIVE_MIN_PLAYERS:
        roles.append(Role.DETECTIVE)
    if player_count >= DOCTOR_MIN_PLAYERS:
        roles.append(Role.DOCTOR)
    roles.extend([Role.CITIZEN] * (player_count - len(roles)))

    (rng or random.Random()).shuffle(roles)
    return roles


def role_image(role: Optional[Role]) -> Optional[str]:
    if role is None:
        return None
    return ROLE_IMAGES.get(role, ROLE_IMAGES[Role.CITIZEN])
