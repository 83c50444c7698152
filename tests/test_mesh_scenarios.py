"""End-to-end mesh behaviour: several ClientSessions sharing one in-process relay."""

import pytest

from conftest import TransportFactory, make_client, settle
from voice_rtc.client.peer_link import LinkState
from voice_rtc.protocol import MSG_ANSWER, MSG_CANDIDATE, MSG_JOIN, MSG_OFFER
from voice_rtc.relay.server import Relay


@pytest.fixture
def relay():
    return Relay()


async def settle_all(*sessions):
    await settle(*(session.manager for session in sessions))


def offers_sent(channel):
    return sorted(m["to"] for m in channel.sent_of_type(MSG_OFFER))


class TestTwoPeers:
    @pytest.mark.asyncio
    async def test_later_joiner_offers_and_both_connect(self, relay):
        ch1, ch2 = [], []
        u1 = make_client(relay, "r1", "u1", channels=ch1)
        u2 = make_client(relay, "r1", "u2", channels=ch2)

        await u1.start()
        await u2.start()
        await settle_all(u1, u2)

        assert offers_sent(ch1[0]) == []
        assert offers_sent(ch2[0]) == ["u1"]
        assert [m["to"] for m in ch1[0].sent_of_type(MSG_ANSWER)] == ["u2"]

        link_1 = u1.manager.links["u2"]
        link_2 = u2.manager.links["u1"]
        assert link_1.initiator is False and link_2.initiator is True
        assert link_1.state is LinkState.CONNECTED
        assert link_2.state is LinkState.CONNECTED

        await u2.stop()
        await settle_all(u1)
        assert u1.manager.links == {}
        assert link_1.state is LinkState.CLOSED
        await u1.stop()

    @pytest.mark.asyncio
    async def test_trickled_candidates_reach_the_peer(self, relay):
        t1, t2 = TransportFactory(), TransportFactory()
        u1 = make_client(relay, "r1", "u1", transports=t1)
        u2 = make_client(relay, "r1", "u2", transports=t2)
        await u1.start()
        await u2.start()
        await settle_all(u1, u2)

        candidate = {"candidate": "candidate:1 1 udp 2122260223 10.0.0.2 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}
        t2.transports[0].emit("icecandidate", candidate)
        await settle_all(u1, u2)

        assert t1.transports[0].candidates == [candidate]
        assert u2.channel.sent_of_type(MSG_CANDIDATE)[0]["to"] == "u1"
        await u1.stop()
        await u2.stop()


class TestThreePeers:
    @pytest.mark.asyncio
    async def test_each_pair_has_one_initiator(self, relay):
        channels = {name: [] for name in "ABC"}
        sessions = {name: make_client(relay, "room", name, channels=channels[name]) for name in "ABC"}

        for name in "ABC":
            await sessions[name].start()
            await settle_all(*sessions.values())

        assert offers_sent(channels["A"][0]) == []
        assert offers_sent(channels["B"][0]) == ["A"]
        assert offers_sent(channels["C"][0]) == ["A", "B"]

        for name, session in sessions.items():
            others = sorted(set("ABC") - {name})
            assert sorted(session.manager.links) == others
            assert set(session.manager.states().values()) == {"connected"}

        for a, b in (("A", "B"), ("A", "C"), ("B", "C")):
            initiators = [
                sessions[a].manager.links[b].initiator,
                sessions[b].manager.links[a].initiator,
            ]
            assert sorted(initiators) == [False, True]

        for session in sessions.values():
            await session.stop()

    @pytest.mark.asyncio
    async def test_dropped_peer_only_tears_down_its_links(self, relay):
        sessions = {name: make_client(relay, "room", name) for name in "ABC"}
        for name in "ABC":
            await sessions[name].start()
        await settle_all(*sessions.values())
        a_to_b = sessions["A"].manager.links["B"]

        # C's connection dies without a leave
        sessions["C"].channel.drop()
        await settle_all(sessions["A"], sessions["B"])

        assert sorted(sessions["A"].manager.links) == ["B"]
        assert sorted(sessions["B"].manager.links) == ["A"]
        assert sessions["A"].manager.links["B"] is a_to_b
        assert a_to_b.state is LinkState.CONNECTED
        assert relay.registry.members("room") == ["A", "B"]

        for session in sessions.values():
            await session.stop()

    @pytest.mark.asyncio
    async def test_rejoin_builds_a_fresh_link(self, relay):
        a = make_client(relay, "room", "A")
        b = make_client(relay, "room", "B")
        await a.start()
        await b.start()
        await settle_all(a, b)
        old_link = a.manager.links["B"]

        await b.stop()
        await settle_all(a)
        assert "B" not in a.manager.links
        assert old_link.state is LinkState.CLOSED

        await b.start()
        await settle_all(a, b)

        new_link = a.manager.links["B"]
        assert new_link is not old_link
        assert new_link.state is LinkState.CONNECTED
        assert new_link.initiator is False
        assert b.manager.links["A"].initiator is True

        await a.stop()
        await b.stop()

    @pytest.mark.asyncio
    async def test_repeated_join_keeps_existing_links(self, relay):
        a = make_client(relay, "room", "A")
        b = make_client(relay, "room", "B")
        await a.start()
        await b.start()
        await settle_all(a, b)
        link_a, link_b = a.manager.links["B"], b.manager.links["A"]

        await b.channel.send({"type": MSG_JOIN, "roomId": "room", "userId": "B"})
        await settle_all(a, b)

        assert a.manager.links["B"] is link_a
        assert b.manager.links["A"] is link_b
        assert link_a.state is LinkState.CONNECTED
        assert link_b.state is LinkState.CONNECTED
        assert offers_sent(b.channel) == ["A"]

        await a.stop()
        await b.stop()

    @pytest.mark.asyncio
    async def test_failed_negotiation_does_not_affect_other_links(self, relay):
        broken = TransportFactory(fail_on=["create_answer"])
        a = make_client(relay, "room", "A", transports=broken)
        b = make_client(relay, "room", "B")
        c = make_client(relay, "room", "C")
        await b.start()
        await a.start()
        await c.start()
        await settle_all(a, b, c)

        # A initiates toward B (works); C's offer to A fails on A's side
        assert a.manager.links["B"].state is LinkState.CONNECTED
        assert "C" not in a.manager.links
        assert b.manager.states() == {"A": "connected", "C": "connected"}

        for session in (a, b, c):
            await session.stop()
