"""Shared fakes for voice-rtc tests.

- FakeTransport implements the PeerTransport capability set in memory.
- FakeSession is a relay-side session handle that records what it is sent.
- LoopbackChannel is a SignalingChannel wired straight into a Relay, so whole
  rooms of ClientSessions can run without sockets.
"""

import asyncio

import pytest

import voice_rtc.config
from voice_rtc.client.session import ClientSession
from voice_rtc.client.signaling import SignalingChannel
from voice_rtc.client.transport import PeerTransport
from voice_rtc.config import Config
from voice_rtc.exceptions import CaptureUnavailable, ChannelUnavailable
from voice_rtc.protocol import encode_message


# ── transport / audio fakes ──────────────────────────────────────────────────


class FakeTransport(PeerTransport):
    """In-memory transport.

    Reports "connected" as soon as both descriptions are applied (unless
    auto_connect is False). Any method named in ``fail_on`` raises.
    """

    def __init__(self, fail_on=(), auto_connect=True):
        super().__init__()
        self.fail_on = set(fail_on)
        self.auto_connect = auto_connect
        self.calls = []
        self.local = None
        self.remote = None
        self.candidates = []
        self.closed = False
        self.gate = None  # asyncio.Event that create_offer waits on, if set
        self._state = "new"

    def _call(self, name):
        self.calls.append(name)
        if name in self.fail_on:
            raise RuntimeError(f"{name} failed")

    @property
    def connection_state(self):
        return self._state

    @property
    def local_description(self):
        return self.local

    def set_state(self, state):
        if state == self._state:
            return
        self._state = state
        self.emit("connectionstatechange", state)

    def _maybe_connect(self):
        if self.auto_connect and self.local and self.remote:
            self.set_state("connected")

    async def create_offer(self):
        self._call("create_offer")
        if self.gate is not None:
            await self.gate.wait()
        return {"type": "offer", "sdp": "v=0 fake-offer"}

    async def create_answer(self):
        self._call("create_answer")
        return {"type": "answer", "sdp": "v=0 fake-answer"}

    async def set_local_description(self, description):
        self._call("set_local_description")
        self.local = description
        self._maybe_connect()

    async def set_remote_description(self, description):
        self._call("set_remote_description")
        self.remote = description
        self._maybe_connect()

    async def add_candidate(self, candidate):
        self._call("add_candidate")
        self.candidates.append(candidate)

    async def close(self):
        self._call("close")
        self.closed = True
        self.set_state("closed")


class FakeSink:
    def __init__(self):
        self.track = None
        self.attached_tracks = []
        self.detached = 0

    async def attach(self, track):
        self.track = track
        self.attached_tracks.append(track)

    async def detach(self):
        self.track = None
        self.detached += 1


class FakeCapture:
    def __init__(self, fail=False):
        self.fail = fail
        self.opened = False
        self.closed = False
        self.muted = True

    def open(self):
        if self.fail:
            raise CaptureUnavailable("permission denied")
        self.opened = True

    def subscribe(self):
        return None

    def close(self):
        self.closed = True


class RecordingSender:
    """Async ``send(kind, to, payload)`` that records calls."""

    def __init__(self):
        self.sent = []

    async def __call__(self, kind, to, payload):
        self.sent.append((kind, to, payload))

    def kinds(self):
        return [kind for kind, _, _ in self.sent]


# ── relay fakes ──────────────────────────────────────────────────────────────


class FakeSession:
    """Relay-side session handle that records delivered messages."""

    def __init__(self, name="session"):
        self.name = name
        self.received = []

    def send(self, message):
        self.received.append(message)

    def of_type(self, msg_type):
        return [m for m in self.received if m["type"] == msg_type]

    def __repr__(self):
        return f"FakeSession({self.name})"


class LoopbackSession(FakeSession):
    """Relay-side handle that hands messages straight to a LoopbackChannel."""

    def __init__(self, channel):
        super().__init__(channel.user_id)
        self.channel = channel

    def send(self, message):
        super().send(message)
        if self.channel.session is self:
            self.channel.dispatch(encode_message(message))


class LoopbackChannel(SignalingChannel):
    """SignalingChannel connected in-process to a Relay."""

    def __init__(self, relay, url, user_id, fail_connect=False, connect_gate=None):
        super().__init__(url, user_id)
        self.relay = relay
        self.fail_connect = fail_connect
        self.connect_gate = connect_gate
        self.session = None
        self.sent = []

    @property
    def connected(self):
        return self.session is not None

    async def connect(self):
        # Hold the handshake open until the test releases it
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if self.fail_connect:
            raise ChannelUnavailable(f"Cannot connect to relay at {self.url}")
        self.session = LoopbackSession(self)

    async def send(self, message):
        if self.session is None:
            raise ChannelUnavailable("Signaling channel is not connected")
        self.sent.append(message)
        self.relay.handle_message(self.session, encode_message(message))

    async def close(self):
        self.drop()

    def drop(self):
        """Lose the connection without a leave, as a crashed client would."""
        session, self.session = self.session, None
        if session is not None:
            self.relay.disconnect(session)

    def sent_of_type(self, msg_type):
        return [m for m in self.sent if m["type"] == msg_type]


class TransportFactory:
    """Hands out FakeTransports and remembers them in order."""

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.transports = []

    def __call__(self):
        transport = FakeTransport(**self.kwargs)
        self.transports.append(transport)
        return transport


def make_client(relay, room_id, user_id, transports=None, captures=None, channels=None, fail_connect=False, connect_gate=None):
    """Build a ClientSession wired to ``relay`` through a LoopbackChannel.

    Captures and channels the session creates are appended to ``captures``
    and ``channels`` when given. A ``connect_gate`` event keeps every
    connect() pending until it is set.
    """

    def capture_factory():
        capture = FakeCapture()
        if captures is not None:
            captures.append(capture)
        return capture

    def channel_factory(url, user):
        channel = LoopbackChannel(relay, url, user, fail_connect=fail_connect, connect_gate=connect_gate)
        if channels is not None:
            channels.append(channel)
        return channel

    return ClientSession(
        room_id,
        user_id,
        url="ws://relay.test:8080",
        capture_factory=capture_factory,
        sink_factory=lambda remote_user: FakeSink(),
        transport_factory=transports if transports is not None else TransportFactory(),
        channel_factory=channel_factory,
    )


async def settle(*managers, rounds=20):
    """Let queued link events (and the events they trigger) run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)
        for manager in managers:
            if manager is not None:
                await manager.wait_idle()


# ── fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def default_config(monkeypatch):
    """Use an unloaded Config so tests never read the user's config files."""
    config = Config()
    monkeypatch.setattr(voice_rtc.config, "_config", config)
    return config


@pytest.fixture
def sender():
    return RecordingSender()
