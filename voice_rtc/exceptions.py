"""Exception hierarchy for voice-rtc.

Session-level failures (``CaptureUnavailable``, ``ChannelUnavailable``) abort
``ClientSession.start()`` and reach the caller. Per-peer failures
(``PeerNegotiationFailure``) are contained inside a single ``PeerLink`` and
only ever logged.
"""


class VoiceRTCError(Exception):
    """Base class for all voice-rtc errors."""


class CaptureUnavailable(VoiceRTCError):
    """The local audio device could not be opened (missing device, permission denied)."""


class ChannelUnavailable(VoiceRTCError):
    """The signaling channel to the relay could not be established or was lost."""


class PeerNegotiationFailure(VoiceRTCError):
    """Offer/answer/candidate handling failed for one remote peer."""

    def __init__(self, peer_id: str, message: str):
        super().__init__(f"{peer_id}: {message}")
        self.peer_id = peer_id


class UnaddressableTarget(VoiceRTCError):
    """The relay has no session registered for the addressed user.

    Never raised across the wire; the relay drops the message silently.
    """

    def __init__(self, user_id: str):
        super().__init__(f"No session registered for user {user_id!r}")
        self.user_id = user_id


class ProtocolError(VoiceRTCError):
    """A signaling message could not be decoded or is missing required fields."""
