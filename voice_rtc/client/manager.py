"""Peer connection manager for the local voice session.

Role assignment: the later joiner initiates. A session sends an offer to
every peer in the roster it receives for its own join, and only answers
offers from peers that join after it (announced by ``voice-user-joined``).
Both ends apply the same rule, so each unordered pair has exactly one
initiator and offers never cross.

The handlers here are synchronous: they update the link table and post
events to links, which do the asynchronous work on their own tasks.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from voice_rtc.client.audio import AudioSink
from voice_rtc.client.peer_link import PeerLink, SignalSender
from voice_rtc.client.transport import PeerTransport
from voice_rtc.protocol import MSG_ANSWER, MSG_CANDIDATE, MSG_OFFER

logger = logging.getLogger(__name__)


class PeerConnectionManager:
    """Owns the PeerLinks of one local user.

    Attributes:
        local_user: Our user id.
        links: remote user id -> active PeerLink.
    """

    def __init__(
        self,
        local_user: str,
        send: SignalSender,
        transport_factory: Callable[[], PeerTransport],
        sink_factory: Optional[Callable[[str], AudioSink]] = None,
    ):
        """Initialize the manager.

        Args:
            local_user: Our user id.
            send: Coroutine sending an addressed signal ``(kind, to, payload)``.
            transport_factory: Builds a fresh transport for each new link.
            sink_factory: Builds the audio sink for a remote user id.
        """
        self.local_user = local_user
        self._send = send
        self._transport_factory = transport_factory
        self._sink_factory = sink_factory or (lambda remote_user: AudioSink())
        self.links: Dict[str, PeerLink] = {}
        # Discarded links whose close has not finished yet
        self._closing: Set[PeerLink] = set()

    def _create_link(self, remote_user: str) -> PeerLink:
        link = PeerLink(
            self.local_user,
            remote_user,
            self._transport_factory(),
            self._send,
            sink=self._sink_factory(remote_user),
            on_closed=self._forget,
        )
        self.links[remote_user] = link
        return link

    def _forget(self, link: PeerLink) -> None:
        self._closing.discard(link)
        # A newer link for the same peer may already have replaced this one
        if self.links.get(link.remote_user) is link:
            del self.links[link.remote_user]
            logger.debug(f"Removed {link}")

    def _discard(self, remote_user: str, reason: str) -> None:
        link = self.links.pop(remote_user, None)
        if link is not None:
            logger.info(f"Tearing down link to {remote_user}: {reason}")
            self._closing.add(link)
            link.peer_left()

    # -------------------------------------------------------------------------
    # Membership events
    # -------------------------------------------------------------------------

    def handle_roster(self, users: Iterable[str]) -> None:
        """Initiate toward every member already in the room at our join."""
        for user in users:
            if user == self.local_user or user in self.links:
                continue
            logger.info(f"Initiating connection to {user}")
            self._create_link(user).initiate()

    def handle_user_joined(self, user: str) -> None:
        """A peer joined after us; it will send the offer.

        A link still held for that id belongs to a previous session of the
        peer and is torn down, so the new offer starts a fresh link.
        """
        if user == self.local_user:
            return
        self._discard(user, "peer rejoined")
        logger.info(f"{user} joined, waiting for their offer")

    def handle_user_left(self, user: str) -> None:
        self._discard(user, "peer left")

    # -------------------------------------------------------------------------
    # Addressed signals
    # -------------------------------------------------------------------------

    def handle_offer(self, sender: str, offer: Any) -> None:
        if sender == self.local_user:
            return
        link = self.links.get(sender)
        if link is None:
            link = self._create_link(sender)
        link.signal_received(MSG_OFFER, offer)

    def handle_answer(self, sender: str, answer: Any) -> None:
        link = self.links.get(sender)
        if link is None:
            logger.debug(f"Dropping answer from {sender}: no link")
            return
        link.signal_received(MSG_ANSWER, answer)

    def handle_candidate(self, sender: str, candidate: Any) -> None:
        link = self.links.get(sender)
        if link is None:
            logger.debug(f"Dropping candidate from {sender}: no link")
            return
        link.signal_received(MSG_CANDIDATE, candidate)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def states(self) -> Dict[str, str]:
        """Return remote user id -> link state value, for status display."""
        return {user: link.state.value for user, link in self.links.items()}

    async def wait_idle(self) -> None:
        """Wait until every active link has handled its queued events."""
        await asyncio.gather(*(link.wait_idle() for link in list(self.links.values())))

    async def stop(self) -> List[PeerLink]:
        """Close every link, including discarded ones still closing.

        Returns the links that were closed.
        """
        links = list(self.links.values()) + list(self._closing)
        self.links.clear()
        self._closing.clear()
        await asyncio.gather(*(link.stop() for link in links))
        logger.info(f"Closed {len(links)} peer link(s)")
        return links
