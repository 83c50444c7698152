"""Peer transport capability used by ``PeerLink``.

A ``PeerTransport`` is the black-box connection to one remote peer. The
state machine only needs the capability set below; ``AiortcTransport`` backs
it with ``aiortc.RTCPeerConnection`` and tests substitute a fake.

Capabilities:
    create_offer() / create_answer() -> description dict
    set_local_description(description) / set_remote_description(description)
    add_candidate(candidate dict)
    connection_state
    close()

Events (pyee, same style as ``RTCPeerConnection.on(...)``):
    "icecandidate" (candidate dict): a local candidate to trickle to the peer
    "connectionstatechange" (state str)
    "track" (remote MediaStreamTrack)

Descriptions are ``{"type": "offer" | "answer", "sdp": str}`` and candidates
are ``{"candidate": "candidate:...", "sdpMid": str, "sdpMLineIndex": int}``,
the same shapes a browser client puts on the wire.
"""

import logging
from typing import Any, Dict, List, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp
from pyee.asyncio import AsyncIOEventEmitter

logger = logging.getLogger(__name__)

# Connection states after which a link is torn down
TERMINAL_STATES = ("failed", "disconnected", "closed")


class PeerTransport(AsyncIOEventEmitter):
    """Capability set a ``PeerLink`` drives. Subclasses implement the methods."""

    @property
    def connection_state(self) -> str:
        raise NotImplementedError

    async def create_offer(self) -> Dict[str, str]:
        raise NotImplementedError

    async def create_answer(self) -> Dict[str, str]:
        raise NotImplementedError

    async def set_local_description(self, description: Dict[str, str]) -> None:
        raise NotImplementedError

    async def set_remote_description(self, description: Dict[str, str]) -> None:
        raise NotImplementedError

    async def add_candidate(self, candidate: Dict[str, Any]) -> None:
        raise NotImplementedError

    @property
    def local_description(self) -> Optional[Dict[str, str]]:
        return None

    async def close(self) -> None:
        raise NotImplementedError


def description_to_dict(description: RTCSessionDescription) -> Dict[str, str]:
    return {"type": description.type, "sdp": description.sdp}


def parse_candidate(candidate: Dict[str, Any]):
    """Convert a wire candidate dict to an ``aiortc`` ``RTCIceCandidate``.

    Returns:
        The candidate, or None for an end-of-candidates marker (empty string).
    """
    sdp = candidate.get("candidate") or ""
    if sdp.startswith("candidate:"):
        sdp = sdp[len("candidate:"):]
    if not sdp:
        return None

    ice_candidate = candidate_from_sdp(sdp)
    ice_candidate.sdpMid = candidate.get("sdpMid")
    ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
    return ice_candidate


class AiortcTransport(PeerTransport):
    """``PeerTransport`` backed by ``aiortc.RTCPeerConnection``.

    aiortc gathers all local candidates inside ``setLocalDescription`` and
    embeds them in the SDP, so this transport never emits "icecandidate".
    Candidates trickled by browser peers are applied with ``add_candidate``.
    """

    def __init__(
        self,
        ice_servers: Optional[List[str]] = None,
        local_track: Optional[MediaStreamTrack] = None,
    ):
        """Create the underlying peer connection.

        Args:
            ice_servers: STUN/TURN URLs. None uses aiortc defaults, an empty list
                disables STUN and TURN (host candidates only).
            local_track: Captured audio to send. None makes the link receive-only.
        """
        super().__init__()

        if ice_servers is not None:
            config = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
            logger.debug(f"Creating RTCPeerConnection with {len(ice_servers)} ICE server(s)")
            self.pc = RTCPeerConnection(configuration=config)
        else:
            self.pc = RTCPeerConnection()

        if local_track is not None:
            self.pc.addTrack(local_track)
        else:
            self.pc.addTransceiver("audio", direction="recvonly")

        self.pc.on("connectionstatechange", self._on_connection_state_change)
        self.pc.on("track", self._on_track)

    def _on_connection_state_change(self):
        self.emit("connectionstatechange", self.pc.connectionState)

    def _on_track(self, track: MediaStreamTrack):
        if track.kind == "audio":
            self.emit("track", track)

    @property
    def connection_state(self) -> str:
        return self.pc.connectionState

    @property
    def local_description(self) -> Optional[Dict[str, str]]:
        if self.pc.localDescription is None:
            return None
        return description_to_dict(self.pc.localDescription)

    async def create_offer(self) -> Dict[str, str]:
        return description_to_dict(await self.pc.createOffer())

    async def create_answer(self) -> Dict[str, str]:
        return description_to_dict(await self.pc.createAnswer())

    async def set_local_description(self, description: Dict[str, str]) -> None:
        await self.pc.setLocalDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def set_remote_description(self, description: Dict[str, str]) -> None:
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def add_candidate(self, candidate: Dict[str, Any]) -> None:
        ice_candidate = parse_candidate(candidate)
        if ice_candidate is None:
            return
        await self.pc.addIceCandidate(ice_candidate)

    async def close(self) -> None:
        await self.pc.close()
