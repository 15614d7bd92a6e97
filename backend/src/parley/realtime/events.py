"""Inbound and outbound realtime event shapes."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from .errors import ValidationFailure

MessageKind = Literal["text", "image", "file", "audio", "video"]

DEFAULT_MAX_CONTENT_LENGTH = 4000


def _conversation_field() -> Any:
    return Field(validation_alias=AliasChoices("conversation_id", "conversationId", "chatId"), gt=0)


class InboundEvent(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class AuthenticateEvent(InboundEvent):
    type: Literal["authenticate"]
    token: str = Field(min_length=1)


class JoinConversationEvent(InboundEvent):
    type: Literal["join_conversation"]
    conversation_id: int = _conversation_field()


class LeaveConversationEvent(InboundEvent):
    type: Literal["leave_conversation"]
    conversation_id: int = _conversation_field()


class SendMessageEvent(InboundEvent):
    type: Literal["send_message"]
    conversation_id: int = _conversation_field()
    content: str = ""
    message_type: MessageKind = Field(
        default="text", validation_alias=AliasChoices("message_type", "messageType")
    )
    media_url: str | None = Field(
        default=None, validation_alias=AliasChoices("media_url", "mediaUrl"), max_length=2048
    )
    file_name: str | None = Field(
        default=None, validation_alias=AliasChoices("file_name", "fileName"), max_length=255
    )
    file_size: int | None = Field(
        default=None, validation_alias=AliasChoices("file_size", "fileSize"), ge=0
    )
    file_type: str | None = Field(
        default=None, validation_alias=AliasChoices("file_type", "fileType"), max_length=128
    )
    reply_to: int | None = Field(
        default=None, validation_alias=AliasChoices("reply_to", "replyTo", "reply_to_id")
    )

    @field_validator("content")
    @classmethod
    def strip_content(cls, value: str, info: ValidationInfo) -> str:
        value = value.strip()
        limit = (info.context or {}).get("max_content_length", DEFAULT_MAX_CONTENT_LENGTH)
        if len(value) > limit:
            raise ValueError("Message is too long")
        return value

    @model_validator(mode="after")
    def require_body(self) -> "SendMessageEvent":
        if self.message_type == "text" and not self.content:
            raise ValueError("Text messages require content")
        if self.message_type != "text" and not self.media_url:
            raise ValueError("Media messages require media_url")
        return self


class TypingEvent(InboundEvent):
    type: Literal["typing"]
    conversation_id: int = _conversation_field()
    is_typing: bool = Field(default=True, validation_alias=AliasChoices("is_typing", "isTyping"))


class MarkReadEvent(InboundEvent):
    type: Literal["mark_read"]
    conversation_id: int = _conversation_field()
    message_id: int | None = Field(
        default=None, validation_alias=AliasChoices("message_id", "messageId"), gt=0
    )


class PingEvent(InboundEvent):
    type: Literal["ping"]


Inbound = Annotated[
    Union[
        AuthenticateEvent,
        JoinConversationEvent,
        LeaveConversationEvent,
        SendMessageEvent,
        TypingEvent,
        MarkReadEvent,
        PingEvent,
    ],
    Field(discriminator="type"),
]

_inbound_adapter: TypeAdapter[Inbound] = TypeAdapter(Inbound)


def peek_event_type(raw: Any) -> str | None:
    """Best effort extraction of the ``type`` tag for error reporting."""

    if isinstance(raw, dict):
        value = raw.get("type")
        return value if isinstance(value, str) else None
    return None


def parse_inbound(
    raw: str | bytes | dict[str, Any], *, max_content_length: int | None = None
) -> InboundEvent:
    """Decode a client frame into its tagged event model.

    ``max_content_length`` overrides the default limit on message content.

    Raises :class:`ValidationFailure` for malformed JSON, non-object frames and
    payloads that do not match any known event.
    """

    if isinstance(raw, (str, bytes, bytearray)):
        try:
            raw = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValidationFailure("Invalid JSON payload") from exc
    if not isinstance(raw, dict):
        raise ValidationFailure()
    try:
        context = {"max_content_length": max_content_length} if max_content_length else None
        return _inbound_adapter.validate_python(raw, context=context)
    except ValidationError as exc:
        raise ValidationFailure(event=peek_event_type(raw)) from exc


# ---------------------------------------------------------------------------
# Outbound events
# ---------------------------------------------------------------------------


class OutboundEvent(BaseModel):
    event_type: ClassVar[str] = "event"

    def to_payload(self) -> dict[str, Any]:
        return {"type": self.event_type, **self.model_dump(mode="json")}


class Ready(OutboundEvent):
    event_type: ClassVar[str] = "ready"
    session_id: str
    user_id: int
    conversation_ids: list[int]


class NewMessagePayload(OutboundEvent):
    event_type: ClassVar[str] = "new_message"
    conversation_id: int
    message: dict[str, Any]


class UserTyping(OutboundEvent):
    event_type: ClassVar[str] = "user_typing"
    conversation_id: int
    user_id: int
    display_name: str
    is_typing: bool


class MessagesRead(OutboundEvent):
    event_type: ClassVar[str] = "messages_read"
    conversation_id: int
    reader_id: int
    message_id: int | None = None
    message_ids: list[int] = Field(default_factory=list)
    read_at: datetime


class UserOnline(OutboundEvent):
    event_type: ClassVar[str] = "user_online"
    user_id: int
    display_name: str


class UserOffline(OutboundEvent):
    event_type: ClassVar[str] = "user_offline"
    user_id: int
    last_seen: datetime


class ConversationCreated(OutboundEvent):
    event_type: ClassVar[str] = "conversation_created"
    conversation: dict[str, Any]


class MessageUpdated(OutboundEvent):
    event_type: ClassVar[str] = "message_updated"
    conversation_id: int
    message: dict[str, Any]


class MessageDeleted(OutboundEvent):
    event_type: ClassVar[str] = "message_deleted"
    conversation_id: int
    message_id: int
    deleted_by: int | None = None


class ParticipantLeft(OutboundEvent):
    event_type: ClassVar[str] = "participant_left"
    conversation_id: int
    user_id: int


class Pong(OutboundEvent):
    event_type: ClassVar[str] = "pong"


class ErrorEvent(OutboundEvent):
    event_type: ClassVar[str] = "error"
    event: str | None = None
    reason: str
    detail: str


__all__ = [
    "AuthenticateEvent",
    "ConversationCreated",
    "ErrorEvent",
    "InboundEvent",
    "JoinConversationEvent",
    "LeaveConversationEvent",
    "MarkReadEvent",
    "MessageDeleted",
    "MessageUpdated",
    "MessagesRead",
    "NewMessagePayload",
    "OutboundEvent",
    "ParticipantLeft",
    "PingEvent",
    "Pong",
    "Ready",
    "SendMessageEvent",
    "TypingEvent",
    "UserOffline",
    "UserOnline",
    "UserTyping",
    "parse_inbound",
    "peek_event_type",
]
