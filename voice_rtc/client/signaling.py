"""Client end of the signaling WebSocket.

``SignalingChannel`` is the only reader of the socket: one background task
decodes frames and routes them by ``type`` to handlers registered with
``on()``. Handlers are plain callables and must not block.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from voice_rtc.exceptions import ChannelUnavailable, ProtocolError
from voice_rtc.protocol import decode_message, encode_message, signal_message

logger = logging.getLogger(__name__)


class SignalingChannel:
    """Persistent connection to the voice relay.

    Attributes:
        url: Relay WebSocket URL.
        user_id: Local user id, stamped as ``from`` on addressed signals.
        websocket: Open connection, or None.
    """

    def __init__(self, url: str, user_id: str, open_timeout: float = 10.0):
        self.url = url
        self.user_id = user_id
        self.open_timeout = open_timeout
        self.websocket: Optional[ClientConnection] = None
        self._handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {}
        self._reader: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self.websocket is not None

    def on(self, msg_type: str, handler: Callable[[Dict[str, Any]], None]) -> None:
        """Route inbound messages of ``msg_type`` to ``handler``."""
        self._handlers[msg_type] = handler

    async def connect(self) -> None:
        """Open the WebSocket and start the reader task.

        Raises:
            ChannelUnavailable: The relay cannot be reached.
        """
        try:
            self.websocket = await connect(self.url, open_timeout=self.open_timeout)
        except (OSError, TimeoutError, WebSocketException) as e:
            raise ChannelUnavailable(f"Cannot connect to relay at {self.url}: {e}") from e

        logger.info(f"Connected to relay {self.url}")
        self._reader = asyncio.create_task(self._read_loop())

    async def send(self, message: Dict[str, Any]) -> None:
        """Send one message.

        Raises:
            ChannelUnavailable: Not connected, or the connection is closed.
        """
        if self.websocket is None:
            raise ChannelUnavailable("Signaling channel is not connected")
        try:
            await self.websocket.send(encode_message(message))
        except ConnectionClosed as e:
            raise ChannelUnavailable(f"Signaling channel closed: {e}") from e

    async def send_signal(self, kind: str, to: str, payload: Any) -> None:
        """Send an addressed offer/answer/candidate. Fire-and-forget."""
        try:
            await self.send(signal_message(kind, to, self.user_id, payload))
        except ChannelUnavailable as e:
            logger.warning(f"Could not send {kind} to {to}: {e}")

    async def close(self) -> None:
        websocket, self.websocket = self.websocket, None
        if websocket is not None:
            await websocket.close()
        if self._reader is not None and self._reader is not asyncio.current_task():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        self._reader = None
        logger.info("Disconnected from relay")

    def dispatch(self, raw) -> None:
        """Decode one frame and call its handler."""
        try:
            message = decode_message(raw)
        except ProtocolError as e:
            logger.warning(f"Ignoring malformed message from relay: {e}")
            return

        handler = self._handlers.get(message["type"])
        if handler is None:
            logger.debug(f"Unhandled message type: {message['type']}")
            return

        try:
            handler(message)
        except Exception:
            logger.exception(f"Error handling {message['type']}")

    async def _read_loop(self) -> None:
        try:
            async for raw in self.websocket:
                self.dispatch(raw)
        except ConnectionClosed:
            logger.info("Relay connection closed")
