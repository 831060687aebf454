"""Game rules and constants for the Mafia room server."""

from enum import Enum


class Role(str, Enum):
    """Player roles in the game."""

    CITIZEN = "citizen"
    DETECTIVE = "detective"
    DOCTOR = "doctor"
    MAFIA = "mafia"


class Phase(str, Enum):
    """Current room phase."""

    LOBBY = "lobby"
    NIGHT = "night"
    DAY = "day"


class Winner(str, Enum):
    """Final result of a game."""

    MAFIA = "mafia"
    CITIZENS = "citizens"
    DRAW = "draw"


# Roles that act at night (resolution order: mafia kill, doctor protect, detective check)
NIGHT_ROLES = (Role.MAFIA, Role.DOCTOR, Role.DETECTIVE)

# Minimum players to start
MIN_PLAYERS = 3

# Player count thresholds for the special roles
DETECTIVE_MIN_PLAYERS = 4
DOCTOR_MIN_PLAYERS = 5

# Fewest non-mafia seats kept when choosing the mafia count
MIN_NON_MAFIA = 3

ROOM_CODE_LENGTH = 6
ROOM_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"

# Narrative history kept per room
MAX_ROOM_EVENTS = 200

ROLE_IMAGES = {
    Role.CITIZEN: "/images/citizen.jpg",
    Role.MAFIA: "/images/mafia.jpg",
    Role.DETECTIVE: "/images/officer.jpg",
    Role.DOCTOR: "/images/doctor.jpg",
}
