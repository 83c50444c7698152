"""Room and user registry for the voice relay.

The registry maps room ids to their member user ids and user ids to the
session handle that registered them. It is owned by a single ``Relay`` and
only mutated from that relay's message handlers.

Single-writer-per-key: every entry belongs to the session that created it.
``join`` refuses a user id bound to another session, and ``leave`` only
removes entries owned by the calling session. A session's entries disappear
through its own ``leave`` calls or its own ``disconnect``.

All methods are synchronous. On the asyncio relay this means a mutation is
never observed half-applied by another session's handler.
"""

import logging
from typing import Any, Dict, Hashable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class Registry:
    """In-memory room/user registry.

    Attributes:
        rooms: room_id -> ordered member user ids (dict used as ordered set).
        sessions: user_id -> session handle.
        memberships: session handle -> {room_id: user_id} joined by that session.
    """

    def __init__(self):
        self.rooms: Dict[str, Dict[str, None]] = {}
        self.sessions: Dict[str, Any] = {}
        self.memberships: Dict[Hashable, Dict[str, str]] = {}

    def join(self, room_id: str, user_id: str, session) -> Optional[List[str]]:
        """Register ``user_id`` in ``room_id`` on behalf of ``session``.

        Args:
            room_id: Room to join. Created if it does not exist.
            user_id: User joining.
            session: Session handle that owns the user id.

        Returns:
            The room's members before this join, excluding ``user_id``, or
            None if the user id belongs to a different session.
        """
        owner = self.sessions.get(user_id)
        if owner is not None and owner is not session:
            logger.warning(f"User id {user_id} is held by another session, refusing join")
            return None

        members = self.rooms.setdefault(room_id, {})
        roster = [member for member in members if member != user_id]
        members[user_id] = None
        self.sessions[user_id] = session
        self.memberships.setdefault(session, {})[room_id] = user_id
        logger.debug(f"{user_id} joined {room_id} ({len(members)} member(s))")
        return roster

    def leave(self, room_id: str, user_id: str, session=None) -> bool:
        """Remove ``user_id`` from ``room_id``.

        Args:
            room_id: Room to leave.
            user_id: User leaving.
            session: If given, the entry is only removed when owned by it.

        Returns:
            True if the user was a member and has been removed.
        """
        owner = self.sessions.get(user_id)
        if session is not None and owner is not session:
            return False

        members = self.rooms.get(room_id)
        if members is None or user_id not in members:
            return False

        del members[user_id]
        if not members:
            del self.rooms[room_id]
            logger.debug(f"Room {room_id} is empty, removed")

        joined = self.memberships.get(owner)
        if joined is not None:
            joined.pop(room_id, None)
            if user_id not in joined.values():
                del self.sessions[user_id]
            if not joined:
                del self.memberships[owner]
        return True

    def disconnect(self, session) -> List[Tuple[str, str]]:
        """Drop every entry owned by ``session``.

        Returns:
            The (room_id, user_id) pairs that were removed.
        """
        removed = []
        for room_id, user_id in list(self.memberships.get(session, {}).items()):
            if self.leave(room_id, user_id, session):
                removed.append((room_id, user_id))
        self.memberships.pop(session, None)
        return removed

    def lookup(self, user_id: str):
        """Return the session registered for ``user_id``, or None."""
        return self.sessions.get(user_id)

    def members(self, room_id: str) -> List[str]:
        """Return the member user ids of ``room_id`` in join order."""
        return list(self.rooms.get(room_id, {}))

    def user_in(self, room_id: str, session) -> Optional[str]:
        """Return the user id ``session`` joined ``room_id`` with, if any."""
        return self.memberships.get(session, {}).get(room_id)

    def owns(self, session, user_id: str) -> bool:
        """Whether ``user_id`` is registered by ``session``."""
        return self.sessions.get(user_id) is session
