"""Local participation in a voice room.

Example:
    session = ClientSession(room_id="r1", user_id="u1", url="ws://localhost:8080")
    await session.start()
    session.mute(); session.unmute()
    await session.stop()
"""

import logging
import uuid
from typing import Callable, List, Optional

from voice_rtc.client.audio import AudioCapture, AudioSink
from voice_rtc.client.manager import PeerConnectionManager
from voice_rtc.client.signaling import SignalingChannel
from voice_rtc.client.transport import AiortcTransport, PeerTransport
from voice_rtc.config import get_config
from voice_rtc.exceptions import ChannelUnavailable
from voice_rtc.protocol import (
    MSG_ANSWER,
    MSG_CANDIDATE,
    MSG_JOIN,
    MSG_LEAVE,
    MSG_OFFER,
    MSG_USER_JOINED,
    MSG_USER_LEFT,
    MSG_USERS,
)

logger = logging.getLogger(__name__)


class ClientSession:
    """Owns the capture handle, mute flag and relay connection of one user.

    Attributes:
        room_id: Room to join.
        user_id: Our user id (random if not given).
        url: Relay WebSocket URL.
        ice_servers: STUN/TURN URLs for new links.
        started: True between a successful ``start()`` and ``stop()``.
        capture: Open ``AudioCapture`` while started.
        channel: Connected ``SignalingChannel`` while started.
        manager: ``PeerConnectionManager`` while started.
    """

    def __init__(
        self,
        room_id: str,
        user_id: Optional[str] = None,
        url: Optional[str] = None,
        ice_servers: Optional[List[str]] = None,
        capture_factory: Optional[Callable[[], AudioCapture]] = None,
        sink_factory: Optional[Callable[[str], AudioSink]] = None,
        transport_factory: Optional[Callable[[], PeerTransport]] = None,
        channel_factory: Optional[Callable[[str, str], SignalingChannel]] = None,
    ):
        config = get_config()
        self.room_id = room_id
        self.user_id = user_id or f"user-{uuid.uuid4().hex[:8]}"
        self.url = url if url is not None else config.get_websocket_url()
        self.ice_servers = ice_servers if ice_servers is not None else list(config.ice_servers)

        audio = config.audio
        self._capture_factory = capture_factory or (
            lambda: AudioCapture(audio.capture_device, audio.capture_format)
        )
        self._sink_factory = sink_factory or (
            lambda remote_user: AudioSink(audio.playback_device, audio.playback_format)
        )
        self._transport_factory = transport_factory or self._default_transport
        self._channel_factory = channel_factory or SignalingChannel

        self.started = False
        self.capture: Optional[AudioCapture] = None
        self.channel: Optional[SignalingChannel] = None
        self.manager: Optional[PeerConnectionManager] = None
        self._muted = True
        self._generation = 0

    def _default_transport(self) -> PeerTransport:
        local_track = self.capture.subscribe() if self.capture is not None else None
        return AiortcTransport(self.ice_servers, local_track=local_track)

    @property
    def muted(self) -> bool:
        return self._muted

    async def start(self) -> None:
        """Open the microphone, connect to the relay and join the room.

        A call while already started (or starting) returns immediately. If
        ``stop()`` runs while this call is connecting, whatever it acquired is
        released and it returns without joining.

        Raises:
            CaptureUnavailable: The microphone cannot be opened.
            ChannelUnavailable: The relay cannot be reached.
        """
        if self.started:
            return
        self.started = True
        self._generation += 1
        generation = self._generation

        capture = channel = manager = None
        try:
            capture = self.capture = self._capture_factory()
            capture.open()
            capture.muted = False
            self._muted = False

            channel = self.channel = self._channel_factory(self.url, self.user_id)
            manager = self.manager = PeerConnectionManager(
                self.user_id,
                channel.send_signal,
                self._transport_factory,
                self._sink_factory,
            )
            self._register_handlers(channel, manager)

            await channel.connect()
            if not self._is_current(generation):
                logger.info(f"Session stopped while connecting to {self.url}")
                await self._release(manager, capture, channel, send_leave=False)
                return

            await channel.send({"type": MSG_JOIN, "roomId": self.room_id, "userId": self.user_id})
        except BaseException:
            logger.error(f"Failed to start voice session in {self.room_id}")
            if self._is_current(generation):
                await self._teardown(send_leave=False)
            else:
                await self._release(manager, capture, channel, send_leave=False)
            raise

        if not self._is_current(generation):
            await self._release(manager, capture, channel, send_leave=True)
            return

        logger.info(f"Joined room {self.room_id} as {self.user_id}")

    async def stop(self) -> None:
        """Close every link, release the microphone, leave and disconnect.

        Afterwards the session can be started again.
        """
        if not self.started:
            return
        await self._teardown(send_leave=True)
        logger.info(f"Left room {self.room_id}")

    def _is_current(self, generation: int) -> bool:
        # False once stop() (and possibly a newer start()) has run
        return self.started and self._generation == generation

    async def _teardown(self, send_leave: bool) -> None:
        manager, self.manager = self.manager, None
        capture, self.capture = self.capture, None
        channel, self.channel = self.channel, None
        self._muted = True
        self.started = False

        await self._release(manager, capture, channel, send_leave)

    async def _release(
        self,
        manager: Optional[PeerConnectionManager],
        capture: Optional[AudioCapture],
        channel: Optional[SignalingChannel],
        send_leave: bool,
    ) -> None:
        if manager is not None:
            await manager.stop()
        if capture is not None:
            capture.close()
        if channel is not None:
            if send_leave and channel.connected:
                try:
                    await channel.send({"type": MSG_LEAVE, "roomId": self.room_id, "userId": self.user_id})
                except ChannelUnavailable as e:
                    logger.warning(f"Could not send leave: {e}")
            await channel.close()

    def mute(self) -> None:
        """Stop transmitting captured audio. Links are left untouched."""
        if self.capture is None:
            return
        self.capture.muted = True
        self._muted = True

    def unmute(self) -> None:
        """Resume transmitting captured audio."""
        if self.capture is None:
            return
        self.capture.muted = False
        self._muted = False

    def _register_handlers(self, channel: SignalingChannel, manager: PeerConnectionManager) -> None:
        def on_users(message):
            logger.debug(f"{MSG_USERS}: {message.get('users')}")
            manager.handle_roster(message.get("users") or [])

        def on_user_joined(message):
            manager.handle_user_joined(message["userId"])

        def on_user_left(message):
            manager.handle_user_left(message["userId"])

        def on_offer(message):
            manager.handle_offer(message["from"], message["offer"])

        def on_answer(message):
            manager.handle_answer(message["from"], message["answer"])

        def on_candidate(message):
            manager.handle_candidate(message["from"], message["candidate"])

        channel.on(MSG_USERS, on_users)
        channel.on(MSG_USER_JOINED, on_user_joined)
        channel.on(MSG_USER_LEFT, on_user_left)
        channel.on(MSG_OFFER, on_offer)
        channel.on(MSG_ANSWER, on_answer)
        channel.on(MSG_CANDIDATE, on_candidate)
