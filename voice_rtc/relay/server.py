"""WebSocket relay for voice-rtc signaling.

The relay never touches media. It tracks room membership in a ``Registry``,
answers joins with the current roster, broadcasts membership changes, and
forwards addressed offers/answers/candidates to the session registered for
the target user id.

Usage:
    voice-rtc relay [--host HOST] [--port PORT]

Delivery order: every connected session has one outbound FIFO queue drained
by its own writer task. Handlers enqueue synchronously, so messages reach a
session in the order the relay produced them. In particular a joining
session's roster is enqueued before any ``voice-user-joined`` that a later
join could produce.
"""

import asyncio
import itertools
import logging
from typing import Any, Dict, Optional

from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from voice_rtc.exceptions import ProtocolError, UnaddressableTarget
from voice_rtc.protocol import (
    MSG_JOIN,
    MSG_LEAVE,
    MSG_USER_JOINED,
    MSG_USER_LEFT,
    MSG_USERS,
    PAYLOAD_KEYS,
    SIGNAL_TYPES,
    decode_message,
    encode_message,
    relayed_message,
    validate_message,
)
from voice_rtc.relay.registry import Registry

logger = logging.getLogger(__name__)

_session_ids = itertools.count(1)


class RelaySession:
    """Relay-side handle for one connected client.

    Attributes:
        session_id: Process-unique id used in logs.
        websocket: Underlying server connection.
        outbox: Encoded frames waiting to be written, in delivery order.
    """

    def __init__(self, websocket: ServerConnection):
        self.session_id = next(_session_ids)
        self.websocket = websocket
        self.outbox: asyncio.Queue = asyncio.Queue()

    def send(self, message: Dict[str, Any]) -> None:
        """Queue a message for delivery. Never blocks."""
        self.outbox.put_nowait(encode_message(message))

    async def drain(self) -> None:
        """Write queued frames until the sentinel ``None`` is queued."""
        while True:
            frame = await self.outbox.get()
            if frame is None:
                return
            try:
                await self.websocket.send(frame)
            except ConnectionClosed:
                logger.debug(f"Session {self.session_id} closed while writing")
                return

    def __repr__(self):
        return f"RelaySession({self.session_id})"


class Relay:
    """Routes signaling messages between sessions.

    The relay operations (``join``, ``leave``, ``relay``, ``disconnect``)
    work on any hashable session object with a non-blocking
    ``send(message: dict)``; ``handler`` adapts a WebSocket connection to that
    shape.
    """

    def __init__(self, registry: Optional[Registry] = None, path: Optional[str] = None):
        """Initialize the relay.

        Args:
            registry: Registry to use (a fresh one by default).
            path: If set, connections on any other request path are refused.
        """
        self.registry = registry if registry is not None else Registry()
        self.path = path

    # -------------------------------------------------------------------------
    # Relay operations
    # -------------------------------------------------------------------------

    def join(self, room_id: str, user_id: str, session):
        """Register ``user_id`` in ``room_id`` and announce it.

        The roster reply is queued to the joining session before the
        ``voice-user-joined`` broadcast, with no suspension point between the
        registry update and both sends. A repeated join by the same session
        only resends the roster.

        Returns:
            The roster sent to the joining session, or None if refused.
        """
        previous = self.registry.user_in(room_id, session)
        if previous == user_id:
            # Repeated join on the same session: resend the roster, announce nothing
            roster = [member for member in self.registry.members(room_id) if member != user_id]
            session.send({"type": MSG_USERS, "roomId": room_id, "users": roster})
            logger.debug(f"{user_id} re-joined {room_id} on the same session")
            return roster
        if previous is not None:
            self.leave(room_id, previous, session)

        roster = self.registry.join(room_id, user_id, session)
        if roster is None:
            return None

        session.send({"type": MSG_USERS, "roomId": room_id, "users": roster})
        self._broadcast(
            room_id,
            {"type": MSG_USER_JOINED, "roomId": room_id, "userId": user_id},
            exclude=user_id,
        )
        logger.info(f"{user_id} joined {room_id} ({len(roster)} other member(s))")
        return roster

    def leave(self, room_id: str, user_id: str, session) -> bool:
        """Unregister ``user_id`` from ``room_id`` and announce it.

        Idempotent: leaving a room the user is not in does nothing.
        """
        if not self.registry.leave(room_id, user_id, session):
            logger.debug(f"Ignoring leave of {user_id} from {room_id}: not a member")
            return False

        self._broadcast(room_id, {"type": MSG_USER_LEFT, "roomId": room_id, "userId": user_id})
        logger.info(f"{user_id} left {room_id}")
        return True

    def relay(self, kind: str, to: str, sender: str, payload: Any) -> bool:
        """Forward a signaling payload to the session registered for ``to``.

        Fire-and-forget: an unknown target is dropped without telling the
        sender, since it may have left mid-handshake.

        Returns:
            True if the message was queued for delivery.
        """
        target = self.registry.lookup(to)
        if target is None:
            logger.debug(f"Dropping {kind} from {sender}: {UnaddressableTarget(to)}")
            return False

        target.send(relayed_message(kind, sender, payload))
        logger.debug(f"Forwarded {kind} from {sender} to {to}")
        return True

    def disconnect(self, session) -> None:
        """Treat a lost session as a leave from every room it joined."""
        for room_id, user_id in self.registry.disconnect(session):
            self._broadcast(room_id, {"type": MSG_USER_LEFT, "roomId": room_id, "userId": user_id})
            logger.info(f"{user_id} disconnected from {room_id}")

    def _broadcast(self, room_id: str, message: Dict[str, Any], exclude: Optional[str] = None):
        for member in self.registry.members(room_id):
            if member == exclude:
                continue
            session = self.registry.lookup(member)
            if session is not None:
                session.send(message)

    # -------------------------------------------------------------------------
    # Message dispatch
    # -------------------------------------------------------------------------

    def handle_message(self, session, raw) -> None:
        """Decode one frame from ``session`` and apply it.

        Malformed frames, unknown types and messages about user ids the
        session does not own are logged and ignored.
        """
        try:
            message = decode_message(raw)
            validate_message(message)
        except ProtocolError as e:
            logger.warning(f"Ignoring malformed message from {session}: {e}")
            return

        msg_type = message["type"]

        if msg_type == MSG_JOIN:
            self.join(message["roomId"], message["userId"], session)

        elif msg_type == MSG_LEAVE:
            self.leave(message["roomId"], message["userId"], session)

        elif msg_type in SIGNAL_TYPES:
            sender = message["from"]
            if not self.registry.owns(session, sender):
                logger.warning(f"Ignoring {msg_type} from {session}: sender {sender} not registered by it")
                return
            self.relay(msg_type, message["to"], sender, message[PAYLOAD_KEYS[msg_type]])

    async def handler(self, websocket: ServerConnection) -> None:
        """Serve one WebSocket connection until it closes."""
        if self.path and websocket.request is not None and websocket.request.path != self.path:
            logger.warning(f"Refusing connection on path {websocket.request.path}")
            await websocket.close(code=1008, reason="unknown path")
            return

        session = RelaySession(websocket)
        writer = asyncio.create_task(session.drain())
        logger.info(f"Client connected: {session}")

        try:
            async for raw in websocket:
                self.handle_message(session, raw)
        except ConnectionClosed:
            logger.info(f"Connection closed: {session}")
        finally:
            self.disconnect(session)
            session.outbox.put_nowait(None)
            await writer
            logger.info(f"Client disconnected: {session}")

    async def serve(self, host: str, port: int) -> None:
        """Run the relay until cancelled."""
        async with serve(self.handler, host, port):
            logger.info(f"Voice relay running on ws://{host}:{port}{self.path or ''}")
            await asyncio.Future()  # Run forever

