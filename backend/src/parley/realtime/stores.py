"""Store contracts consumed by the realtime relay.

The relay never talks to a database directly. The application wires in
implementations of these protocols (see ``app.services.stores``) and the
tests use in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol


@dataclass(frozen=True, slots=True)
class Identity:
    """Authenticated user as seen by the relay."""

    id: int
    login: str
    display_name: str | None = None

    @property
    def name(self) -> str:
        return self.display_name or self.login


@dataclass(frozen=True, slots=True)
class ConversationRef:
    """Minimal conversation snapshot used for authorization."""

    id: int
    kind: str
    participant_ids: frozenset[int] = field(default_factory=frozenset)
    is_active: bool = True

    def has_participant(self, user_id: int) -> bool:
        return user_id in self.participant_ids


@dataclass(frozen=True, slots=True)
class NewMessage:
    """Fields required to persist a message."""

    conversation_id: int
    sender_id: int | None
    content: str
    message_type: str = "text"
    media_url: str | None = None
    file_name: str | None = None
    file_size: int | None = None
    file_type: str | None = None
    reply_to_id: int | None = None


class UserStore(Protocol):
    async def find_by_id(self, user_id: int) -> Identity | None:
        """Return the user or ``None`` when it does not exist."""

    async def set_online(self, user_id: int, online: bool, at: datetime) -> None:
        """Persist the presence flag and last-seen timestamp."""


class ConversationStore(Protocol):
    async def find_by_id(self, conversation_id: int) -> ConversationRef | None:
        """Return the conversation or ``None``."""

    async def is_participant(self, conversation_id: int, user_id: int) -> bool:
        """Check current participation in an active conversation."""

    async def list_ids_for_user(self, user_id: int) -> list[int]:
        """Return ids of the active conversations the user belongs to."""

    async def set_last_message(self, conversation_id: int, message_id: int) -> None:
        """Move the last-message pointer."""

    async def increment_unread(self, conversation_id: int, user_id: int) -> None:
        """Increment one participant's unread counter."""

    async def record_delivery(
        self, conversation_id: int, message_id: int, sender_id: int | None
    ) -> list[int]:
        """Set the last-message pointer and bump every non-sender counter atomically.

        Returns the ids of the participants whose counter was incremented.
        """

    async def reset_unread(self, conversation_id: int, user_id: int) -> None:
        """Set a participant's unread counter to zero."""


class MessageStore(Protocol):
    async def create(self, message: NewMessage) -> dict[str, Any]:
        """Persist a message and return its hydrated JSON representation."""

    async def find_in_conversation(
        self, conversation_id: int, message_id: int
    ) -> dict[str, Any] | None:
        """Return a message of the conversation or ``None``."""

    async def mark_read(self, message_id: int, user_id: int) -> bool:
        """Add a read receipt; ``False`` when it already existed."""

    async def mark_conversation_read(self, conversation_id: int, user_id: int) -> list[int]:
        """Add receipts to every unread message and return their ids."""


class CredentialVerifier(Protocol):
    def verify(self, token: str) -> str:
        """Return the subject of a valid token or raise ``AuthenticationFailure``."""
