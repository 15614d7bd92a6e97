"""Pydantic schemas for API payloads."""

from .auth import LoginRequest, Token, UserCreate, UserRead
from .chats import (
    ConversationCreate,
    ConversationRead,
    MarkReadRequest,
    MarkReadResult,
    MessageCreate,
    MessageRead,
    MessageUpdate,
    ParticipantRead,
    ReadReceipt,
)
from .users import PasswordChange, PublicUser, UserProfileUpdate

__all__ = [
    "ConversationCreate",
    "ConversationRead",
    "LoginRequest",
    "MarkReadRequest",
    "MarkReadResult",
    "MessageCreate",
    "MessageRead",
    "MessageUpdate",
    "ParticipantRead",
    "PasswordChange",
    "PublicUser",
    "ReadReceipt",
    "Token",
    "UserCreate",
    "UserProfileUpdate",
    "UserRead",
]
