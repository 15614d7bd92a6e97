"""SQLAlchemy implementations of the realtime store protocols.

Every call opens its own short-lived session and commits before returning.
Database errors surface as :class:`PersistenceFailure`.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import and_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.models import Conversation, ConversationParticipant, Message, MessageReceipt, MessageType, User
from app.services.chats import load_message, serialize_message, unread_messages_query, utcnow
from parley.realtime.errors import PersistenceFailure
from parley.realtime.stores import ConversationRef, Identity, NewMessage

logger = logging.getLogger(__name__)


class _SqlStore:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Store operation %s failed: %s", operation, exc.__class__.__name__)
            raise PersistenceFailure() from exc
        finally:
            db.close()


class SqlUserStore(_SqlStore):
    async def find_by_id(self, user_id: int) -> Identity | None:
        with self._session("find_user") as db:
            user = db.get(User, user_id)
            if user is None:
                return None
            return Identity(id=user.id, login=user.login, display_name=user.display_name)

    async def set_online(self, user_id: int, online: bool, at: datetime) -> None:
        with self._session("set_online") as db:
            db.execute(
                update(User)
                .where(User.id == user_id)
                .values(is_online=online, last_seen_at=at)
            )
            db.commit()


class SqlConversationStore(_SqlStore):
    async def find_by_id(self, conversation_id: int) -> ConversationRef | None:
        with self._session("find_conversation") as db:
            conversation = db.get(Conversation, conversation_id)
            if conversation is None:
                return None
            participant_ids = db.execute(
                select(ConversationParticipant.user_id).where(
                    ConversationParticipant.conversation_id == conversation_id
                )
            ).scalars()
            return ConversationRef(
                id=conversation.id,
                kind=conversation.kind.value,
                participant_ids=frozenset(participant_ids),
                is_active=conversation.is_active,
            )

    async def is_participant(self, conversation_id: int, user_id: int) -> bool:
        with self._session("is_participant") as db:
            stmt = (
                select(ConversationParticipant.id)
                .join(Conversation, Conversation.id == ConversationParticipant.conversation_id)
                .where(
                    ConversationParticipant.conversation_id == conversation_id,
                    ConversationParticipant.user_id == user_id,
                    Conversation.is_active.is_(True),
                )
            )
            return db.execute(stmt).first() is not None

    async def list_ids_for_user(self, user_id: int) -> list[int]:
        with self._session("list_conversations") as db:
            stmt = (
                select(ConversationParticipant.conversation_id)
                .join(Conversation, Conversation.id == ConversationParticipant.conversation_id)
                .where(ConversationParticipant.user_id == user_id, Conversation.is_active.is_(True))
                .order_by(ConversationParticipant.conversation_id)
            )
            return list(db.execute(stmt).scalars().all())

    async def set_last_message(self, conversation_id: int, message_id: int) -> None:
        with self._session("set_last_message") as db:
            self._move_pointer(db, conversation_id, message_id)
            db.commit()

    async def increment_unread(self, conversation_id: int, user_id: int) -> None:
        with self._session("increment_unread") as db:
            db.execute(
                update(ConversationParticipant)
                .where(
                    ConversationParticipant.conversation_id == conversation_id,
                    ConversationParticipant.user_id == user_id,
                )
                .values(unread_count=ConversationParticipant.unread_count + 1)
            )
            db.commit()

    async def record_delivery(
        self, conversation_id: int, message_id: int, sender_id: int | None
    ) -> list[int]:
        with self._session("record_delivery") as db:
            self._move_pointer(db, conversation_id, message_id)
            condition = ConversationParticipant.conversation_id == conversation_id
            if sender_id is not None:
                condition = and_(condition, ConversationParticipant.user_id != sender_id)
            db.execute(
                update(ConversationParticipant)
                .where(condition)
                .values(unread_count=ConversationParticipant.unread_count + 1)
            )
            recipients = list(
                db.execute(select(ConversationParticipant.user_id).where(condition)).scalars()
            )
            db.commit()
            return recipients

    async def reset_unread(self, conversation_id: int, user_id: int) -> None:
        with self._session("reset_unread") as db:
            db.execute(
                update(ConversationParticipant)
                .where(
                    ConversationParticipant.conversation_id == conversation_id,
                    ConversationParticipant.user_id == user_id,
                )
                .values(unread_count=0)
            )
            db.commit()

    @staticmethod
    def _move_pointer(db: Session, conversation_id: int, message_id: int) -> None:
        created_at = db.execute(
            select(Message.created_at).where(Message.id == message_id)
        ).scalar_one_or_none()
        db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(last_message_id=message_id, last_message_at=created_at or utcnow())
        )


class SqlMessageStore(_SqlStore):
    async def create(self, message: NewMessage) -> dict[str, Any]:
        with self._session("create_message") as db:
            row = Message(
                conversation_id=message.conversation_id,
                sender_id=message.sender_id,
                content=message.content,
                message_type=MessageType(message.message_type),
                media_url=message.media_url,
                file_name=message.file_name,
                file_size=message.file_size,
                file_type=message.file_type,
                reply_to_id=message.reply_to_id,
                created_at=utcnow(),
            )
            db.add(row)
            db.commit()
            stored = load_message(db, row.id)
            return serialize_message(stored).model_dump(mode="json")

    async def find_in_conversation(
        self, conversation_id: int, message_id: int
    ) -> dict[str, Any] | None:
        with self._session("find_message") as db:
            message = load_message(db, message_id, conversation_id)
            if message is None or message.is_deleted:
                return None
            return serialize_message(message).model_dump(mode="json")

    async def mark_read(self, message_id: int, user_id: int) -> bool:
        with self._session("mark_read") as db:
            exists = db.execute(
                select(MessageReceipt.id).where(
                    MessageReceipt.message_id == message_id,
                    MessageReceipt.user_id == user_id,
                )
            ).first()
            if exists is not None:
                return False
            db.add(MessageReceipt(message_id=message_id, user_id=user_id, read_at=utcnow()))
            db.commit()
            return True

    async def mark_conversation_read(self, conversation_id: int, user_id: int) -> list[int]:
        with self._session("mark_conversation_read") as db:
            stmt = unread_messages_query(conversation_id, user_id).order_by(
                Message.created_at, Message.id
            )
            message_ids = list(db.execute(stmt).scalars().all())
            now = utcnow()
            db.add_all(
                MessageReceipt(message_id=message_id, user_id=user_id, read_at=now)
                for message_id in message_ids
            )
            db.commit()
            return message_ids
