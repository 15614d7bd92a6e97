"""Conversation and message queries shared by the REST API and the realtime stores."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session, selectinload

from app.models import (
    Conversation,
    ConversationKind,
    ConversationParticipant,
    Message,
    MessageReceipt,
    User,
    direct_key,
)
from app.schemas import ConversationRead, MessageRead, ParticipantRead, PublicUser, ReadReceipt


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _message_options():
    return (selectinload(Message.sender), selectinload(Message.receipts))


def _conversation_options():
    return (selectinload(Conversation.participants).selectinload(ConversationParticipant.user),)


def serialize_public_user(user: User) -> PublicUser:
    return PublicUser.model_validate(user)


def serialize_message(message: Message) -> MessageRead:
    deleted = message.is_deleted
    return MessageRead(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        sender=serialize_public_user(message.sender) if message.sender is not None else None,
        content="" if deleted else message.content,
        message_type=message.message_type,
        media_url=None if deleted else message.media_url,
        file_name=None if deleted else message.file_name,
        file_size=None if deleted else message.file_size,
        file_type=None if deleted else message.file_type,
        reply_to_id=message.reply_to_id,
        is_edited=message.is_edited,
        edited_at=message.edited_at,
        is_deleted=deleted,
        created_at=message.created_at,
        read_by=[
            ReadReceipt(user_id=receipt.user_id, read_at=receipt.read_at)
            for receipt in message.receipts
        ],
    )


def load_message(db: Session, message_id: int, conversation_id: int | None = None) -> Message | None:
    stmt = select(Message).where(Message.id == message_id).options(*_message_options())
    if conversation_id is not None:
        stmt = stmt.where(Message.conversation_id == conversation_id)
    return db.execute(stmt).scalar_one_or_none()


def load_conversation(db: Session, conversation_id: int) -> Conversation | None:
    stmt = (
        select(Conversation)
        .where(Conversation.id == conversation_id)
        .options(*_conversation_options())
    )
    return db.execute(stmt).scalar_one_or_none()


def get_membership(db: Session, conversation_id: int, user_id: int) -> ConversationParticipant | None:
    stmt = select(ConversationParticipant).where(
        ConversationParticipant.conversation_id == conversation_id,
        ConversationParticipant.user_id == user_id,
    )
    return db.execute(stmt).scalar_one_or_none()


def serialize_conversation(conversation: Conversation, viewer_id: int, db: Session) -> ConversationRead:
    membership = next(
        (p for p in conversation.participants if p.user_id == viewer_id),
        None,
    )
    last_message = None
    if conversation.last_message_id is not None:
        last_message = load_message(db, conversation.last_message_id, conversation.id)
    return ConversationRead(
        id=conversation.id,
        kind=conversation.kind,
        title=conversation.title,
        creator_id=conversation.creator_id,
        is_active=conversation.is_active,
        participants=[
            ParticipantRead(user=serialize_public_user(p.user), joined_at=p.joined_at)
            for p in conversation.participants
        ],
        last_message=serialize_message(last_message) if last_message is not None else None,
        last_message_at=conversation.last_message_at,
        unread_count=membership.unread_count if membership is not None else 0,
        created_at=conversation.created_at,
    )


def find_direct_conversation(db: Session, user_id: int, other_id: int) -> Conversation | None:
    stmt = (
        select(Conversation)
        .where(Conversation.direct_key == direct_key(user_id, other_id))
        .options(*_conversation_options())
    )
    return db.execute(stmt).scalar_one_or_none()


def find_or_create_direct(db: Session, user_id: int, other_id: int) -> tuple[Conversation, bool]:
    """Return the direct conversation of the pair, creating it when missing.

    The normalized pair key is unique, so a concurrent creator loses on the
    constraint and the caller retries the lookup.
    """

    conversation = find_direct_conversation(db, user_id, other_id)
    if conversation is not None:
        if not conversation.is_active:
            conversation.is_active = True
            db.flush()
        return conversation, False

    low, high = sorted((user_id, other_id))
    conversation = Conversation(
        kind=ConversationKind.DIRECT,
        direct_key=direct_key(low, high),
        creator_id=user_id,
    )
    conversation.participants = [
        ConversationParticipant(user_id=low),
        ConversationParticipant(user_id=high),
    ]
    db.add(conversation)
    db.flush()
    return conversation, True


def create_group(db: Session, creator_id: int, member_ids: list[int], title: str) -> Conversation:
    conversation = Conversation(
        kind=ConversationKind.GROUP,
        title=title,
        creator_id=creator_id,
    )
    conversation.participants = [
        ConversationParticipant(user_id=user_id) for user_id in sorted({creator_id, *member_ids})
    ]
    db.add(conversation)
    db.flush()
    return conversation


def list_user_conversations(
    db: Session, user_id: int, *, limit: int, offset: int = 0
) -> list[Conversation]:
    stmt = (
        select(Conversation)
        .join(ConversationParticipant, ConversationParticipant.conversation_id == Conversation.id)
        .where(ConversationParticipant.user_id == user_id, Conversation.is_active.is_(True))
        .order_by(
            Conversation.last_message_at.is_(None),
            Conversation.last_message_at.desc(),
            Conversation.id.desc(),
        )
        .offset(offset)
        .limit(limit)
        .options(*_conversation_options())
    )
    return list(db.execute(stmt).scalars().unique().all())


def list_messages(
    db: Session, conversation_id: int, *, limit: int, before_id: int | None = None
) -> list[Message]:
    """Newest-first page of non-deleted messages."""

    stmt = (
        select(Message)
        .where(Message.conversation_id == conversation_id, Message.is_deleted.is_(False))
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(limit)
        .options(*_message_options())
    )
    if before_id is not None:
        anchor = db.get(Message, before_id)
        if anchor is not None and anchor.conversation_id == conversation_id:
            stmt = stmt.where(
                or_(
                    Message.created_at < anchor.created_at,
                    and_(Message.created_at == anchor.created_at, Message.id < anchor.id),
                )
            )
    return list(db.execute(stmt).scalars().all())


def search_messages(db: Session, conversation_id: int, query: str, *, limit: int) -> list[Message]:
    pattern = f"%{query.lower()}%"
    stmt = (
        select(Message)
        .where(
            Message.conversation_id == conversation_id,
            Message.is_deleted.is_(False),
            func.lower(Message.content).like(pattern),
        )
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(limit)
        .options(*_message_options())
    )
    return list(db.execute(stmt).scalars().all())


def unread_messages_query(conversation_id: int, user_id: int):
    """Non-deleted messages of the conversation without a receipt from *user_id*."""

    read = select(MessageReceipt.message_id).where(MessageReceipt.user_id == user_id)
    return select(Message.id).where(
        Message.conversation_id == conversation_id,
        Message.is_deleted.is_(False),
        Message.id.not_in(read),
    )
