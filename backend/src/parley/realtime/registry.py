"""Live connection state: sessions per user and sessions per room."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from fastapi.websockets import WebSocket

from app.monitoring.metrics import realtime_connections

from .connection import safe_send_json
from .stores import Identity

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ClientSession:
    """One live WebSocket bound to one authenticated user."""

    websocket: WebSocket
    user: Identity
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def user_id(self) -> int:
        return self.user.id

    async def send(self, payload: dict[str, Any]) -> bool:
        return await safe_send_json(self.websocket, payload)


class ConnectionRegistry:
    """Bidirectional maps between users, sessions and rooms.

    Every mutation runs under a single :class:`asyncio.Lock` so that a
    disconnect and an overlapping reconnect of the same user cannot interleave.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._user_sessions: dict[int, set[ClientSession]] = defaultdict(set)
        self._room_members: dict[str, set[ClientSession]] = defaultdict(set)
        self._session_rooms: dict[ClientSession, set[str]] = {}

    async def add_session(self, session: ClientSession) -> bool:
        """Register *session*; returns ``True`` when it is the user's first one."""

        async with self._lock:
            if session in self._session_rooms:
                return False
            bucket = self._user_sessions[session.user_id]
            first = not bucket
            bucket.add(session)
            self._session_rooms[session] = set()
            realtime_connections.inc()
            return first

    async def remove_session(self, session: ClientSession) -> tuple[bool, set[str]] | None:
        """Forget *session* and its room memberships.

        Returns ``(was_last_session, rooms)`` or ``None`` when the session was
        already removed.
        """

        async with self._lock:
            rooms = self._session_rooms.pop(session, None)
            if rooms is None:
                return None
            for room in rooms:
                members = self._room_members.get(room)
                if members is None:
                    continue
                members.discard(session)
                if not members:
                    self._room_members.pop(room, None)
            bucket = self._user_sessions.get(session.user_id, set())
            bucket.discard(session)
            last = not bucket
            if last:
                self._user_sessions.pop(session.user_id, None)
            realtime_connections.dec()
            return last, rooms

    async def join(self, session: ClientSession, rooms: Iterable[str]) -> list[str]:
        """Subscribe a registered session to *rooms*; returns the newly joined ones."""

        joined: list[str] = []
        async with self._lock:
            memberships = self._session_rooms.get(session)
            if memberships is None:
                return joined
            for room in rooms:
                if room in memberships:
                    continue
                memberships.add(room)
                self._room_members[room].add(session)
                joined.append(room)
        return joined

    async def leave(self, session: ClientSession, room: str) -> bool:
        async with self._lock:
            memberships = self._session_rooms.get(session)
            if memberships is None or room not in memberships:
                return False
            memberships.discard(room)
            members = self._room_members.get(room)
            if members is not None:
                members.discard(session)
                if not members:
                    self._room_members.pop(room, None)
            return True

    def is_online(self, user_id: int) -> bool:
        return bool(self._user_sessions.get(user_id))

    def online_user_ids(self) -> set[int]:
        return {user_id for user_id, sessions in self._user_sessions.items() if sessions}

    def sessions_for_user(self, user_id: int) -> list[ClientSession]:
        return list(self._user_sessions.get(user_id, ()))

    def members(self, room: str) -> list[ClientSession]:
        return list(self._room_members.get(room, ()))

    def rooms_for(self, session: ClientSession) -> set[str]:
        return set(self._session_rooms.get(session, ()))

    def is_member(self, session: ClientSession, room: str) -> bool:
        return room in self._session_rooms.get(session, ())

    async def broadcast(
        self,
        room: str,
        payload: dict[str, Any],
        *,
        exclude: Iterable[ClientSession] | None = None,
    ) -> int:
        """Send *payload* to every local member of *room*; returns deliveries."""

        excluded = set(exclude or ())
        delivered = 0
        for session in self.members(room):
            if session in excluded:
                continue
            if await session.send(payload):
                delivered += 1
            else:
                logger.debug("Skipped closed session %s in %s", session.session_id, room)
        return delivered

    async def close(self) -> None:
        async with self._lock:
            count = len(self._session_rooms)
            self._user_sessions.clear()
            self._room_members.clear()
            self._session_rooms.clear()
        if count:
            realtime_connections.dec(count)
