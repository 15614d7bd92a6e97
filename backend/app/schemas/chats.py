"""Schemas for conversations and messages."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, constr, model_validator

from app.models.enums import ConversationKind, MessageType
from app.schemas.users import PublicUser


class ReadReceipt(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    read_at: datetime


class MessageRead(BaseModel):
    """Message with its sender hydrated for display."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    conversation_id: int
    sender_id: int | None = None
    sender: PublicUser | None = None
    content: str
    message_type: MessageType = MessageType.TEXT
    media_url: str | None = None
    file_name: str | None = None
    file_size: int | None = None
    file_type: str | None = None
    reply_to_id: int | None = None
    is_edited: bool = False
    edited_at: datetime | None = None
    is_deleted: bool = False
    created_at: datetime
    read_by: list[ReadReceipt] = Field(default_factory=list)


class ParticipantRead(BaseModel):
    user: PublicUser
    joined_at: datetime


class ConversationRead(BaseModel):
    """Conversation as seen by one participant."""

    id: int
    kind: ConversationKind
    title: str | None = None
    creator_id: int | None = None
    is_active: bool = True
    participants: list[ParticipantRead] = Field(default_factory=list)
    last_message: MessageRead | None = None
    last_message_at: datetime | None = None
    unread_count: int = 0
    created_at: datetime


class ConversationCreate(BaseModel):
    """Direct chats take exactly one other participant; groups need a title."""

    participant_ids: list[int] = Field(..., min_length=1, max_length=256)
    is_group: bool = False
    title: constr(strip_whitespace=True, min_length=1, max_length=128) | None = None

    @model_validator(mode="after")
    def check_shape(self) -> "ConversationCreate":
        if self.is_group and not self.title:
            raise ValueError("Group conversations require a title")
        if not self.is_group and len(set(self.participant_ids)) != 1:
            raise ValueError("Direct conversations take exactly one other participant")
        return self


class MessageCreate(BaseModel):
    content: str = Field(default="", max_length=4000)
    message_type: MessageType = MessageType.TEXT
    media_url: str | None = Field(default=None, max_length=2048)
    file_name: str | None = Field(default=None, max_length=255)
    file_size: int | None = Field(default=None, ge=0)
    file_type: str | None = Field(default=None, max_length=128)
    reply_to_id: int | None = None

    @model_validator(mode="after")
    def require_body(self) -> "MessageCreate":
        self.content = self.content.strip()
        if self.message_type == MessageType.TEXT and not self.content:
            raise ValueError("Message cannot be empty")
        if self.message_type != MessageType.TEXT and not self.media_url:
            raise ValueError("Media messages require media_url")
        return self


class MessageUpdate(BaseModel):
    content: constr(strip_whitespace=True, min_length=1, max_length=4000)


class MarkReadRequest(BaseModel):
    message_id: int | None = Field(default=None, gt=0)


class MarkReadResult(BaseModel):
    conversation_id: int
    message_ids: list[int] = Field(default_factory=list)
    unread_count: int = 0
