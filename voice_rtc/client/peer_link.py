"""Per-peer connection lifecycle for voice-rtc.

One ``PeerLink`` exists for each remote participant. It drives a
``PeerTransport`` through the offer/answer/candidate exchange and attaches the
remote audio to an ``AudioSink`` once a track arrives.

States::

    absent -> connecting(offer_sent | offer_received | answer_sent)
           -> connected -> closing -> closed

Every input is a named event processed in arrival order by one worker task
per link:

- ``initiate``: send an offer (initiator role).
- ``signal_received``: an offer, answer or candidate from the remote peer.
- ``transport_state_changed``: the transport's connection state moved.
- ``local_candidate`` / ``track``: emitted by the transport.
- ``peer_left`` / ``local_stop``: teardown.

Serializing events per link keeps a trickled candidate from overtaking the
offer it belongs to, while a slow handshake on one link never delays another
link or the signaling reader.

Any exception while handling an event closes this link only. It is logged as
a ``PeerNegotiationFailure`` and never propagates to the session.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from voice_rtc.client.audio import AudioSink
from voice_rtc.client.transport import TERMINAL_STATES, PeerTransport
from voice_rtc.exceptions import PeerNegotiationFailure
from voice_rtc.protocol import MSG_ANSWER, MSG_CANDIDATE, MSG_OFFER

logger = logging.getLogger(__name__)

# send(kind, to, payload)
SignalSender = Callable[[str, str, Any], Awaitable[None]]


class LinkState(str, Enum):
    ABSENT = "absent"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"
    CLOSED = "closed"


class HandshakePhase(str, Enum):
    OFFER_SENT = "offer_sent"
    OFFER_RECEIVED = "offer_received"
    ANSWER_SENT = "answer_sent"


class PeerLink:
    """Connection to one remote peer.

    Attributes:
        local_user: Our user id.
        remote_user: The peer's user id.
        transport: Transport driven by this link.
        sink: Where remote audio is played.
        state: Current ``LinkState``.
        phase: ``HandshakePhase`` while connecting, else None.
        initiator: True if this side sent the offer.
        close_reason: Why the link was closed, once closing.
    """

    def __init__(
        self,
        local_user: str,
        remote_user: str,
        transport: PeerTransport,
        send: SignalSender,
        sink: Optional[AudioSink] = None,
        on_closed: Optional[Callable[["PeerLink"], None]] = None,
    ):
        if local_user == remote_user:
            raise ValueError(f"Cannot link user {local_user} to itself")

        self.local_user = local_user
        self.remote_user = remote_user
        self.transport = transport
        self.sink = sink if sink is not None else AudioSink()
        self._send = send
        self._on_closed = on_closed

        self.state = LinkState.ABSENT
        self.phase: Optional[HandshakePhase] = None
        self.initiator = False
        self.close_reason: Optional[str] = None
        self._local_applied = False
        self._remote_applied = False

        self._events: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

        transport.on("icecandidate", lambda candidate: self.post("local_candidate", candidate))
        transport.on("connectionstatechange", lambda state: self.post("transport_state_changed", state))
        transport.on("track", lambda track: self.post("track", track))

    @property
    def key(self) -> frozenset:
        """Unordered (local, remote) pair identifying this link."""
        return frozenset((self.local_user, self.remote_user))

    @property
    def is_closed(self) -> bool:
        return self.state in (LinkState.CLOSING, LinkState.CLOSED)

    def __repr__(self):
        phase = f"/{self.phase.value}" if self.phase else ""
        return f"PeerLink({self.local_user}->{self.remote_user}, {self.state.value}{phase})"

    # -------------------------------------------------------------------------
    # Event intake
    # -------------------------------------------------------------------------

    def post(self, event: str, *args) -> None:
        """Queue a named event. Ignored once the link is closed."""
        if self.state is LinkState.CLOSED:
            logger.debug(f"{self}: dropping {event}, link closed")
            return
        self._events.put_nowait((event, args))
        if self._worker is None:
            self._worker = asyncio.ensure_future(self._run())

    def initiate(self) -> None:
        self.post("initiate")

    def signal_received(self, kind: str, payload: Any) -> None:
        self.post("signal_received", kind, payload)

    def transport_state_changed(self, state: str) -> None:
        self.post("transport_state_changed", state)

    def peer_left(self) -> None:
        self.post("peer_left")

    def local_stop(self) -> None:
        self.post("local_stop")

    async def wait_idle(self) -> None:
        """Wait until every queued event has been handled."""
        await self._events.join()

    async def stop(self) -> None:
        """Close now, abandoning any handshake step in flight."""
        if self.state is LinkState.CLOSED:
            return
        worker = self._worker
        if worker is not None and not worker.done() and worker is not asyncio.current_task():
            if self.state is LinkState.CLOSING:
                # A close is already under way in the worker
                await worker
                return
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        await self._close("local stop")

    async def _run(self) -> None:
        while self.state is not LinkState.CLOSED:
            event, args = await self._events.get()
            try:
                await getattr(self, f"_on_{event}")(*args)
            except Exception as e:
                failure = PeerNegotiationFailure(self.remote_user, f"{event} failed: {e}")
                logger.warning(f"Peer negotiation failure: {failure}")
                await self._close(str(failure))
            finally:
                self._events.task_done()

    # -------------------------------------------------------------------------
    # Event handlers
    # -------------------------------------------------------------------------

    async def _on_initiate(self) -> None:
        if self.state is not LinkState.ABSENT:
            logger.warning(f"{self}: initiate ignored")
            return

        self.initiator = True
        self.state = LinkState.CONNECTING
        offer = await self.transport.create_offer()
        await self.transport.set_local_description(offer)
        self._local_applied = True
        if self.is_closed:
            return

        logger.info(f"Sending offer to {self.remote_user}")
        await self._send(MSG_OFFER, self.remote_user, self.transport.local_description or offer)
        self.phase = HandshakePhase.OFFER_SENT

    async def _on_signal_received(self, kind: str, payload: Any) -> None:
        if self.is_closed:
            return

        if kind == MSG_OFFER:
            await self._handle_offer(payload)
        elif kind == MSG_ANSWER:
            await self._handle_answer(payload)
        elif kind == MSG_CANDIDATE:
            await self._handle_remote_candidate(payload)
        else:
            logger.warning(f"{self}: unknown signal {kind}")

    async def _handle_offer(self, offer: Any) -> None:
        if self.state is not LinkState.ABSENT:
            logger.warning(f"{self}: ignoring offer, handshake already started")
            return

        logger.info(f"Received offer from {self.remote_user}")
        self.state = LinkState.CONNECTING
        self.phase = HandshakePhase.OFFER_RECEIVED
        await self.transport.set_remote_description(offer)
        self._remote_applied = True
        answer = await self.transport.create_answer()
        await self.transport.set_local_description(answer)
        self._local_applied = True
        if self.is_closed:
            return

        await self._send(MSG_ANSWER, self.remote_user, self.transport.local_description or answer)
        self.phase = HandshakePhase.ANSWER_SENT
        logger.info(f"Sent answer to {self.remote_user}")
        self._check_connected()

    async def _handle_answer(self, answer: Any) -> None:
        if self.phase is not HandshakePhase.OFFER_SENT or self._remote_applied:
            logger.warning(f"{self}: ignoring unexpected answer")
            return

        logger.info(f"Received answer from {self.remote_user}")
        await self.transport.set_remote_description(answer)
        self._remote_applied = True
        self._check_connected()

    async def _handle_remote_candidate(self, candidate: Any) -> None:
        if self.state is LinkState.ABSENT:
            logger.debug(f"{self}: dropping candidate before offer")
            return
        await self.transport.add_candidate(candidate)

    async def _on_local_candidate(self, candidate: Any) -> None:
        if self.is_closed:
            return
        await self._send(MSG_CANDIDATE, self.remote_user, candidate)

    async def _on_transport_state_changed(self, state: str) -> None:
        logger.debug(f"{self}: transport state {state}")
        if state in TERMINAL_STATES:
            await self._close(f"transport {state}")
        elif state == "connected":
            self._check_connected()

    async def _on_track(self, track) -> None:
        if self.is_closed:
            return
        logger.info(f"Receiving audio from {self.remote_user}")
        await self.sink.attach(track)

    async def _on_peer_left(self) -> None:
        await self._close("peer left")

    async def _on_local_stop(self) -> None:
        await self._close("local stop")

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _check_connected(self) -> None:
        if (
            self.state is LinkState.CONNECTING
            and self._local_applied
            and self._remote_applied
            and self.transport.connection_state == "connected"
        ):
            self.state = LinkState.CONNECTED
            self.phase = None
            logger.info(f"Connected to {self.remote_user}")

    async def _close(self, reason: str) -> None:
        if self.is_closed:
            return

        self.state = LinkState.CLOSING
        self.close_reason = reason
        logger.info(f"Closing link to {self.remote_user}: {reason}")

        try:
            await self.sink.detach()
        except Exception as e:
            logger.warning(f"Failed to detach audio from {self.remote_user}: {e}")
        try:
            await self.transport.close()
        except Exception as e:
            logger.warning(f"Failed to close transport to {self.remote_user}: {e}")

        self.state = LinkState.CLOSED
        self.phase = None

        # Nothing queued behind the close will run
        while not self._events.empty():
            self._events.get_nowait()
            self._events.task_done()

        if self._on_closed is not None:
            self._on_closed(self)
