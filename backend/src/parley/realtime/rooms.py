"""Room naming and subscription management."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Literal

from .registry import ClientSession, ConnectionRegistry

logger = logging.getLogger(__name__)


def personal_room(user_id: int) -> str:
    return f"user:{user_id}"


def conversation_room(conversation_id: int) -> str:
    return f"conversation:{conversation_id}"


class RoomMembershipManager:
    """Subscribe sessions to their personal room and conversation rooms.

    Callers verify participation before joining a conversation room; this
    class only maintains the subscriptions.
    """

    def __init__(self, registry: ConnectionRegistry) -> None:
        self._registry = registry

    async def join_personal_room(self, session: ClientSession, user_id: int) -> None:
        await self._registry.join(session, [personal_room(user_id)])

    async def join_conversation_rooms(
        self, session: ClientSession, conversation_ids: Iterable[int]
    ) -> list[str]:
        return await self._registry.join(
            session, [conversation_room(cid) for cid in conversation_ids]
        )

    async def leave_conversation_room(self, session: ClientSession, conversation_id: int) -> bool:
        return await self._registry.leave(session, conversation_room(conversation_id))

    def is_subscribed(self, session: ClientSession, conversation_id: int) -> bool:
        return self._registry.is_member(session, conversation_room(conversation_id))

    async def join_user_sessions(self, user_id: int, conversation_id: int) -> int:
        """Subscribe every live session of *user_id* to a conversation room."""

        joined = 0
        for session in self._registry.sessions_for_user(user_id):
            if await self._registry.join(session, [conversation_room(conversation_id)]):
                joined += 1
        if joined:
            logger.debug("Joined %s sessions of user %s to conversation %s", joined, user_id, conversation_id)
        return joined

    async def leave_user_sessions(self, user_id: int, conversation_id: int) -> int:
        left = 0
        for session in self._registry.sessions_for_user(user_id):
            if await self._registry.leave(session, conversation_room(conversation_id)):
                left += 1
        return left

    async def apply_membership(
        self, action: Literal["join", "leave"], user_id: int, conversation_id: int
    ) -> int:
        """Apply a membership change announced by another node to local sessions."""

        if action == "join":
            return await self.join_user_sessions(user_id, conversation_id)
        return await self.leave_user_sessions(user_id, conversation_id)
