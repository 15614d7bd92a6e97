from __future__ import annotations

from enum import Enum


class ConversationKind(str, Enum):
    """Whether a conversation is a one-to-one thread or a named group."""

    DIRECT = "direct"
    GROUP = "group"


class MessageType(str, Enum):
    """Content type of a message body."""

    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    AUDIO = "audio"
    VIDEO = "video"
