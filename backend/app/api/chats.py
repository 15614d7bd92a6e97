"""Conversation and message endpoints.

Writes that other participants must see go through the realtime relay so REST
and WebSocket clients share one pipeline.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.api.deps import get_current_user, get_event_relay
from app.config import get_settings
from app.database import get_db
from app.models import Conversation, ConversationKind, ConversationParticipant, User
from app.schemas import (
    ConversationCreate,
    ConversationRead,
    MarkReadRequest,
    MarkReadResult,
    MessageCreate,
    MessageRead,
    MessageUpdate,
)
from app.services.chats import (
    create_group,
    find_direct_conversation,
    find_or_create_direct,
    get_membership,
    list_messages,
    list_user_conversations,
    load_conversation,
    load_message,
    search_messages,
    serialize_conversation,
    serialize_message,
    utcnow,
)
from parley.realtime.errors import (
    AuthorizationFailure,
    PersistenceFailure,
    RelayError,
    ValidationFailure,
)
from parley.realtime.relay import EventRelay, read_conversation, send_message
from parley.realtime.stores import Identity, NewMessage

router = APIRouter(prefix="/chats", tags=["chats"])

settings = get_settings()

logger = logging.getLogger(__name__)


def _identity(user: User) -> Identity:
    return Identity(id=user.id, login=user.login, display_name=user.display_name)


def _http_error(exc: RelayError) -> HTTPException:
    if isinstance(exc, AuthorizationFailure):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.detail)
    if isinstance(exc, ValidationFailure):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.detail)
    if isinstance(exc, PersistenceFailure):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.detail)
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=exc.detail)


def _require_participant(db: Session, conversation_id: int, user_id: int) -> Conversation:
    conversation = load_conversation(db, conversation_id)
    if (
        conversation is None
        or not conversation.is_active
        or get_membership(db, conversation_id, user_id) is None
    ):
        raise _http_error(AuthorizationFailure())
    return conversation


@router.get("", response_model=list[ConversationRead])
async def list_conversations(
    limit: int | None = Query(None, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[ConversationRead]:
    conversations = list_user_conversations(
        db, current_user.id, limit=limit or settings.chat_list_default_limit, offset=offset
    )
    return [serialize_conversation(c, current_user.id, db) for c in conversations]


@router.post("", response_model=ConversationRead, status_code=status.HTTP_201_CREATED)
async def create_conversation(
    payload: ConversationCreate,
    response: Response,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    relay: EventRelay = Depends(get_event_relay),
) -> ConversationRead:
    """Create a group, or find-or-create the direct conversation with one user."""

    participant_ids = {pid for pid in payload.participant_ids if pid != current_user.id}
    if not participant_ids:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="At least one other participant is required")

    existing_ids = set(db.execute(select(User.id).where(User.id.in_(participant_ids))).scalars())
    if existing_ids != participant_ids:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Some users were not found")

    if not payload.is_group:
        other_id = next(iter(participant_ids))
        try:
            conversation, created = find_or_create_direct(db, current_user.id, other_id)
            db.commit()
        except IntegrityError:
            # lost the race on the unique pair key; the winner's row is ours
            db.rollback()
            conversation = find_direct_conversation(db, current_user.id, other_id)
            if conversation is None:
                raise
            created = False
        if not created:
            response.status_code = status.HTTP_200_OK
    else:
        conversation = create_group(db, current_user.id, sorted(participant_ids), payload.title or "")
        db.commit()
        created = True

    conversation = load_conversation(db, conversation.id)
    snapshot = serialize_conversation(conversation, current_user.id, db)
    if created:
        members = [p.user_id for p in conversation.participants]
        await relay.announce_conversation(snapshot.model_dump(mode="json"), members)
        logger.info("User %s created %s conversation %s", current_user.id, conversation.kind.value, conversation.id)
    return snapshot


@router.get("/{conversation_id}", response_model=ConversationRead)
async def get_conversation(
    conversation_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ConversationRead:
    conversation = _require_participant(db, conversation_id, current_user.id)
    return serialize_conversation(conversation, current_user.id, db)


@router.post("/{conversation_id}/leave", status_code=status.HTTP_204_NO_CONTENT)
async def leave_conversation(
    conversation_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    relay: EventRelay = Depends(get_event_relay),
) -> Response:
    conversation = _require_participant(db, conversation_id, current_user.id)
    if conversation.kind != ConversationKind.GROUP:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only group conversations can be left")

    membership = get_membership(db, conversation_id, current_user.id)
    db.delete(membership)
    db.flush()
    remaining = db.execute(
        select(func.count(ConversationParticipant.id)).where(
            ConversationParticipant.conversation_id == conversation_id
        )
    ).scalar_one()
    if remaining == 0:
        conversation.is_active = False
    db.commit()
    await relay.remove_participant(conversation_id, current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{conversation_id}/messages", response_model=list[MessageRead])
async def get_messages(
    conversation_id: int,
    limit: int | None = Query(None, ge=1),
    before: int | None = Query(None, ge=1, description="Return messages older than this id"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[MessageRead]:
    _require_participant(db, conversation_id, current_user.id)
    page_size = min(limit or settings.chat_history_default_limit, settings.chat_history_max_limit)
    messages = list_messages(db, conversation_id, limit=page_size, before_id=before)
    return [serialize_message(message) for message in messages]


@router.get("/{conversation_id}/messages/search", response_model=list[MessageRead])
async def search_conversation_messages(
    conversation_id: int,
    q: str = Query(..., min_length=1, max_length=200),
    limit: int | None = Query(None, ge=1),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[MessageRead]:
    _require_participant(db, conversation_id, current_user.id)
    page_size = min(limit or settings.chat_history_default_limit, settings.chat_history_max_limit)
    return [serialize_message(m) for m in search_messages(db, conversation_id, q.strip(), limit=page_size)]


@router.post(
    "/{conversation_id}/messages",
    response_model=MessageRead,
    status_code=status.HTTP_201_CREATED,
)
async def post_message(
    conversation_id: int,
    payload: MessageCreate,
    current_user: User = Depends(get_current_user),
    relay: EventRelay = Depends(get_event_relay),
) -> MessageRead:
    if len(payload.content) > settings.chat_message_max_length:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message is too long")
    draft = NewMessage(
        conversation_id=conversation_id,
        sender_id=current_user.id,
        content=payload.content,
        message_type=payload.message_type.value,
        media_url=payload.media_url,
        file_name=payload.file_name,
        file_size=payload.file_size,
        file_type=payload.file_type,
        reply_to_id=payload.reply_to_id,
    )
    try:
        message = await send_message(relay.context, _identity(current_user), draft)
    except RelayError as exc:
        raise _http_error(exc) from exc
    return MessageRead.model_validate(message)


@router.put("/{conversation_id}/read", response_model=MarkReadResult)
async def mark_conversation_read(
    conversation_id: int,
    payload: MarkReadRequest | None = Body(default=None),
    current_user: User = Depends(get_current_user),
    relay: EventRelay = Depends(get_event_relay),
) -> MarkReadResult:
    last_seen = payload.message_id if payload is not None else None
    try:
        event, remaining = await read_conversation(
            relay.context, _identity(current_user), conversation_id, message_id=last_seen
        )
    except RelayError as exc:
        raise _http_error(exc) from exc
    return MarkReadResult(
        conversation_id=conversation_id,
        message_ids=event.message_ids,
        unread_count=remaining,
    )


@router.patch("/{conversation_id}/messages/{message_id}", response_model=MessageRead)
async def edit_message(
    conversation_id: int,
    message_id: int,
    payload: MessageUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    relay: EventRelay = Depends(get_event_relay),
) -> MessageRead:
    _require_participant(db, conversation_id, current_user.id)
    message = load_message(db, message_id, conversation_id)
    if message is None or message.is_deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    if message.sender_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the sender can edit a message")
    if len(payload.content) > settings.chat_message_max_length:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message is too long")

    message.content = payload.content
    message.is_edited = True
    message.edited_at = utcnow()
    db.commit()

    serialized = serialize_message(load_message(db, message_id, conversation_id))
    await relay.publish_message_updated(conversation_id, serialized.model_dump(mode="json"))
    return serialized


@router.delete("/{conversation_id}/messages/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_message(
    conversation_id: int,
    message_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    relay: EventRelay = Depends(get_event_relay),
) -> Response:
    _require_participant(db, conversation_id, current_user.id)
    message = load_message(db, message_id, conversation_id)
    if message is None or message.is_deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    if message.sender_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the sender can delete a message")

    message.is_deleted = True
    message.deleted_at = utcnow()
    message.deleted_by_id = current_user.id
    db.commit()

    await relay.publish_message_deleted(conversation_id, message_id, current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
