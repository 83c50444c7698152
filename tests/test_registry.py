"""Tests for the relay's room/user registry."""

from conftest import FakeSession
from voice_rtc.relay.registry import Registry


class TestJoin:
    def test_first_member_gets_empty_roster(self):
        registry = Registry()
        assert registry.join("r1", "u1", FakeSession()) == []

    def test_roster_excludes_joining_user(self):
        registry = Registry()
        registry.join("r1", "u1", FakeSession())
        registry.join("r1", "u2", FakeSession())
        assert registry.join("r1", "u3", FakeSession()) == ["u1", "u2"]

    def test_rejoin_by_same_session_excludes_self(self):
        registry = Registry()
        s1 = FakeSession()
        registry.join("r1", "u1", s1)
        assert registry.join("r1", "u1", s1) == []
        assert registry.members("r1") == ["u1"]

    def test_user_id_held_by_other_session_is_refused(self):
        registry = Registry()
        s1, s2 = FakeSession("s1"), FakeSession("s2")
        registry.join("r1", "u1", s1)
        assert registry.join("r1", "u1", s2) is None
        assert registry.lookup("u1") is s1

    def test_lookup_returns_session(self):
        registry = Registry()
        s1 = FakeSession()
        registry.join("r1", "u1", s1)
        assert registry.lookup("u1") is s1
        assert registry.lookup("nobody") is None


class TestLeave:
    def test_leave_removes_member_and_mapping(self):
        registry = Registry()
        s1 = FakeSession()
        registry.join("r1", "u1", s1)
        assert registry.leave("r1", "u1", s1) is True
        assert registry.lookup("u1") is None
        assert registry.members("r1") == []

    def test_empty_room_is_deleted(self):
        registry = Registry()
        s1 = FakeSession()
        registry.join("r1", "u1", s1)
        registry.leave("r1", "u1", s1)
        assert "r1" not in registry.rooms

    def test_leave_is_idempotent(self):
        registry = Registry()
        s1 = FakeSession()
        registry.join("r1", "u1", s1)
        registry.leave("r1", "u1", s1)
        assert registry.leave("r1", "u1", s1) is False
        assert registry.leave("unknown-room", "u1", s1) is False

    def test_cannot_remove_entry_owned_by_another_session(self):
        registry = Registry()
        s1, s2 = FakeSession("s1"), FakeSession("s2")
        registry.join("r1", "u1", s1)
        assert registry.leave("r1", "u1", s2) is False
        assert registry.members("r1") == ["u1"]

    def test_mapping_kept_while_user_in_another_room(self):
        registry = Registry()
        s1 = FakeSession()
        registry.join("r1", "u1", s1)
        registry.join("r2", "u1", s1)
        registry.leave("r1", "u1", s1)
        assert registry.lookup("u1") is s1
        assert registry.members("r2") == ["u1"]


class TestDisconnect:
    def test_disconnect_removes_all_rooms(self):
        registry = Registry()
        s1, s2 = FakeSession("s1"), FakeSession("s2")
        registry.join("r1", "u1", s1)
        registry.join("r2", "u1", s1)
        registry.join("r1", "u2", s2)

        removed = registry.disconnect(s1)

        assert sorted(removed) == [("r1", "u1"), ("r2", "u1")]
        assert registry.members("r1") == ["u2"]
        assert "r2" not in registry.rooms
        assert registry.lookup("u1") is None
        assert s1 not in registry.memberships

    def test_disconnect_unknown_session_is_noop(self):
        registry = Registry()
        assert registry.disconnect(FakeSession()) == []

    def test_leave_then_join_from_new_session_is_fresh(self):
        registry = Registry()
        s1, s2, s3 = FakeSession("s1"), FakeSession("s2"), FakeSession("s3")
        registry.join("r1", "u1", s1)
        registry.join("r1", "u2", s2)
        registry.leave("r1", "u2", s2)

        assert registry.join("r1", "u2", s3) == ["u1"]
        assert registry.lookup("u2") is s3
        # The old session no longer owns anything
        assert registry.disconnect(s2) == []
        assert registry.members("r1") == ["u1", "u2"]
