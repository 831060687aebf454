"""Wire framing for the game WebSocket.

Frames are UTF-8 text of the form ``event@@@{json}``. The ``@@@`` separator
survives proxies that rewrite other punctuation. A legacy client may instead
send one JSON object ``{"event": ..., "data": {...}}``.
"""

import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, ValidationError

DELIMITER = "@@@"


class InboundEvent(str, Enum):
    """Every event a client may send."""

    CREATE_ROOM = "create-room"
    JOIN_ROOM = "join-room"
    START_GAME = "start-game"
    NIGHT_ACTION = "night-action"
    VOTE = "vote"
    CHAT_MESSAGE = "chat-message"
    GET_ROOMS = "get-rooms"
    CHECK_ROOM = "check-room"
    REQUEST_ROOM_STATE = "request-room-state"


class ProtocolError(Exception):
    """A frame that cannot be decoded into a known event."""

    def __init__(self, message: str = "Malformed message"):
        super().__init__(message)
        self.message = message


class UnknownEventError(ProtocolError):
    def __init__(self, event: str):
        super().__init__(f"Unknown event: '{event}'")
        self.event = event


class LegacyFrame(BaseModel):
    event: str
    data: dict[str, Any] | None = None


def decode_frame(text: str) -> tuple[InboundEvent, dict[str, Any]]:
    """Split a text frame into (event, payload). Raises ProtocolError."""
    if not isinstance(text, str) or not text.strip():
        raise ProtocolError()

    if DELIMITER in text:
        name, _, raw = text.partition(DELIMITER)
        name = name.strip()
        raw = raw.strip()
        try:
            data = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            raise ProtocolError()
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ProtocolError()
    else:
        try:
            frame = LegacyFrame.model_validate_json(text)
        except ValidationError:
            raise ProtocolError()
        name = frame.event.strip()
        data = frame.data or {}

    if not name:
        raise ProtocolError()
    try:
        event = InboundEvent(name)
    except ValueError:
        raise UnknownEventError(name)
    return event, data


def encode_frame(event: str, data: dict[str, Any] | None = None, framing: str = "delimited") -> str:
    """Serialize an outbound event."""
    payload = data if data is not None else {}
    if framing == "json":
        return json.dumps({"event": event, "data": payload}, separators=(",", ":"))
    return event + DELIMITER + json.dumps(payload, separators=(",", ":"))
