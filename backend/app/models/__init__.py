"""Database models package."""

from .base import Base
from .chat import (
    Conversation,
    ConversationParticipant,
    Message,
    MessageReceipt,
    User,
    direct_key,
)
from .enums import ConversationKind, MessageType

__all__ = [
    "Base",
    "User",
    "Conversation",
    "ConversationParticipant",
    "Message",
    "MessageReceipt",
    "ConversationKind",
    "MessageType",
    "direct_key",
]
