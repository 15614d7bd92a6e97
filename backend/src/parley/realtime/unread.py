"""Per-participant unread counters."""

from __future__ import annotations

from .stores import ConversationStore


class UnreadBookkeeper:
    """Keeps the unread counters in step with deliveries and reads.

    Counters are stored on the participant rows; the increment happens in the
    same store transaction as the last-message update.
    """

    def __init__(self, conversations: ConversationStore) -> None:
        self._conversations = conversations

    async def message_delivered(
        self, conversation_id: int, message_id: int, sender_id: int | None
    ) -> list[int]:
        return await self._conversations.record_delivery(conversation_id, message_id, sender_id)

    async def conversation_read(self, conversation_id: int, user_id: int) -> int:
        await self._conversations.reset_unread(conversation_id, user_id)
        return 0
