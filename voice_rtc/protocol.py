"""Signaling protocol definitions for voice-rtc.

This module defines the message types exchanged between clients and the relay
over the signaling WebSocket. Every frame is a JSON object with a ``type``
field; the remaining fields depend on the type.

Message Types
-------------

### Membership (client → relay)

**voice-join**
    Fields: ``roomId``, ``userId``
    Purpose: Register the user in a room. The relay replies with
    ``voice-users`` and notifies the rest of the room with
    ``voice-user-joined``.

**voice-leave**
    Fields: ``roomId``, ``userId``
    Purpose: Unregister the user. The relay notifies the room with
    ``voice-user-left``.

### Membership (relay → client)

**voice-users**
    Fields: ``roomId``, ``users``
    Purpose: Roster reply to ``voice-join``. Never contains the joining user.

**voice-user-joined** / **voice-user-left**
    Fields: ``roomId``, ``userId``

### Addressed signaling (client → relay → client)

**voice-offer** / **voice-answer**
    Sent: ``{"type", "to", "from", "offer" | "answer"}``
    Delivered: ``{"type", "from", "offer" | "answer"}``
    Payload: session description ``{"type": "offer" | "answer", "sdp": "..."}``

**voice-ice-candidate**
    Sent: ``{"type", "to", "from", "candidate"}``
    Delivered: ``{"type", "from", "candidate"}``
    Payload: ``{"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}``

Message Flow Example
--------------------

1. u1 → relay: voice-join {roomId: r1, userId: u1}
2. relay → u1: voice-users {users: []}
3. u2 → relay: voice-join {roomId: r1, userId: u2}
4. relay → u2: voice-users {users: ["u1"]}
5. relay → u1: voice-user-joined {userId: u2}
6. u2 → relay → u1: voice-offer
7. u1 → relay → u2: voice-answer
8. both directions: voice-ice-candidate (zero or more, one per frame)
"""

import json
from typing import Any, Dict

from voice_rtc.exceptions import ProtocolError

# Membership messages
MSG_JOIN = "voice-join"
MSG_LEAVE = "voice-leave"
MSG_USERS = "voice-users"
MSG_USER_JOINED = "voice-user-joined"
MSG_USER_LEFT = "voice-user-left"

# Addressed signaling messages
MSG_OFFER = "voice-offer"
MSG_ANSWER = "voice-answer"
MSG_CANDIDATE = "voice-ice-candidate"

SIGNAL_TYPES = (MSG_OFFER, MSG_ANSWER, MSG_CANDIDATE)

# Payload field carried by each addressed signaling message
PAYLOAD_KEYS = {
    MSG_OFFER: "offer",
    MSG_ANSWER: "answer",
    MSG_CANDIDATE: "candidate",
}

# Fields a client must send for each message type
REQUIRED_FIELDS = {
    MSG_JOIN: ("roomId", "userId"),
    MSG_LEAVE: ("roomId", "userId"),
    MSG_OFFER: ("to", "from", "offer"),
    MSG_ANSWER: ("to", "from", "answer"),
    MSG_CANDIDATE: ("to", "from", "candidate"),
}


def encode_message(message: Dict[str, Any]) -> str:
    """Serialize a message dict to a JSON text frame.

    Examples:
        >>> encode_message({"type": MSG_USER_LEFT, "userId": "u2"})
        '{"type": "voice-user-left", "userId": "u2"}'
    """
    if "type" not in message:
        raise ProtocolError("Message has no type")
    return json.dumps(message)


def decode_message(raw) -> Dict[str, Any]:
    """Parse a JSON text frame into a message dict.

    Args:
        raw: Frame received from the WebSocket (``str`` or ``bytes``).

    Returns:
        The decoded message.

    Raises:
        ProtocolError: The frame is not a JSON object with a string ``type``.
    """
    try:
        message = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e

    if not isinstance(message, dict):
        raise ProtocolError("Message is not a JSON object")
    if not isinstance(message.get("type"), str):
        raise ProtocolError("Message has no type")
    return message


def validate_message(message: Dict[str, Any]) -> None:
    """Check that a decoded message carries the fields its type requires.

    Raises:
        ProtocolError: Unknown type, or a required field is missing or null.
    """
    msg_type = message["type"]
    required = REQUIRED_FIELDS.get(msg_type)
    if required is None:
        raise ProtocolError(f"Unknown message type: {msg_type}")

    missing = [name for name in required if message.get(name) is None]
    if missing:
        raise ProtocolError(f"{msg_type} missing field(s): {', '.join(missing)}")

    for name in ("roomId", "userId", "to", "from"):
        if name in required and not isinstance(message[name], str):
            raise ProtocolError(f"{msg_type} field {name} must be a string")


def signal_message(kind: str, to: str, sender: str, payload: Any) -> Dict[str, Any]:
    """Build an addressed signaling message as sent by a client."""
    return {"type": kind, "to": to, "from": sender, PAYLOAD_KEYS[kind]: payload}


def relayed_message(kind: str, sender: str, payload: Any) -> Dict[str, Any]:
    """Build an addressed signaling message as delivered by the relay."""
    return {"type": kind, "from": sender, PAYLOAD_KEYS[kind]: payload}
