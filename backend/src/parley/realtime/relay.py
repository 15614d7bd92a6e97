"""Inbound event handling: validate, authorize, persist, broadcast."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from fastapi.websockets import WebSocket

from app.monitoring.metrics import realtime_events_total, realtime_rejected_events_total

from .auth import ConnectionAuthenticator
from .broadcast import RoomBroadcaster
from .errors import (
    AuthorizationFailure,
    NotFoundFailure,
    PersistenceFailure,
    RelayError,
    ValidationFailure,
)
from .events import (
    DEFAULT_MAX_CONTENT_LENGTH,
    ConversationCreated,
    ErrorEvent,
    InboundEvent,
    JoinConversationEvent,
    LeaveConversationEvent,
    MarkReadEvent,
    MessageDeleted,
    MessagesRead,
    MessageUpdated,
    NewMessagePayload,
    ParticipantLeft,
    Pong,
    Ready,
    SendMessageEvent,
    TypingEvent,
    UserOffline,
    UserOnline,
    UserTyping,
    parse_inbound,
)
from .presence import PresenceTracker, utcnow
from .registry import ClientSession
from .rooms import RoomMembershipManager, conversation_room, personal_room
from .stores import ConversationStore, Identity, MessageStore, NewMessage, UserStore
from .unread import UnreadBookkeeper

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RelayContext:
    """Services shared by every event handler."""

    authenticator: ConnectionAuthenticator
    presence: PresenceTracker
    rooms: RoomMembershipManager
    broadcaster: RoomBroadcaster
    unread: UnreadBookkeeper
    users: UserStore
    conversations: ConversationStore
    messages: MessageStore
    max_content_length: int = DEFAULT_MAX_CONTENT_LENGTH


Handler = Callable[[Any, ClientSession, RelayContext], Awaitable[None]]


# ---------------------------------------------------------------------------
# Pipelines shared with the REST API
# ---------------------------------------------------------------------------


async def require_participant(ctx: RelayContext, conversation_id: int, user_id: int) -> None:
    """Authorize against the store; the room table is never consulted here."""

    conversation = await ctx.conversations.find_by_id(conversation_id)
    if conversation is None or not conversation.is_active:
        raise NotFoundFailure(f"conversation {conversation_id} does not exist")
    if not await ctx.conversations.is_participant(conversation_id, user_id):
        raise AuthorizationFailure()


async def send_message(ctx: RelayContext, sender: Identity, draft: NewMessage) -> dict[str, Any]:
    """Persist a message, update counters and broadcast it to the conversation room."""

    await require_participant(ctx, draft.conversation_id, sender.id)
    if draft.reply_to_id is not None:
        target = await ctx.messages.find_in_conversation(draft.conversation_id, draft.reply_to_id)
        if target is None:
            raise ValidationFailure("Reply target does not exist")

    message = await ctx.messages.create(draft)
    await ctx.unread.message_delivered(draft.conversation_id, message["id"], sender.id)

    event = NewMessagePayload(conversation_id=draft.conversation_id, message=message)
    await ctx.broadcaster.broadcast(conversation_room(draft.conversation_id), event.to_payload())
    return message


async def read_conversation(
    ctx: RelayContext,
    reader: Identity,
    conversation_id: int,
    *,
    message_id: int | None = None,
) -> tuple[MessagesRead, int]:
    """Add read receipts to every unread message, reset the counter and announce the read.

    ``message_id`` is the last message the client has seen; it is echoed on the
    broadcast and does not bound the read.

    Returns the broadcast event and the reader's remaining unread count.
    """

    await require_participant(ctx, conversation_id, reader.id)
    marked = await ctx.messages.mark_conversation_read(conversation_id, reader.id)
    remaining = await ctx.unread.conversation_read(conversation_id, reader.id)
    event = MessagesRead(
        conversation_id=conversation_id,
        reader_id=reader.id,
        message_id=message_id,
        message_ids=marked,
        read_at=utcnow(),
    )
    await ctx.broadcaster.broadcast(conversation_room(conversation_id), event.to_payload())
    return event, remaining


# ---------------------------------------------------------------------------
# Event handlers
# ---------------------------------------------------------------------------


async def handle_authenticate(event: InboundEvent, session: ClientSession, ctx: RelayContext) -> None:
    raise ValidationFailure("Session is already authenticated", event="authenticate")


async def handle_join(event: JoinConversationEvent, session: ClientSession, ctx: RelayContext) -> None:
    await require_participant(ctx, event.conversation_id, session.user_id)
    await ctx.rooms.join_conversation_rooms(session, [event.conversation_id])


async def handle_leave(event: LeaveConversationEvent, session: ClientSession, ctx: RelayContext) -> None:
    await ctx.rooms.leave_conversation_room(session, event.conversation_id)


async def handle_send(event: SendMessageEvent, session: ClientSession, ctx: RelayContext) -> None:
    draft = NewMessage(
        conversation_id=event.conversation_id,
        sender_id=session.user_id,
        content=event.content,
        message_type=event.message_type,
        media_url=event.media_url,
        file_name=event.file_name,
        file_size=event.file_size,
        file_type=event.file_type,
        reply_to_id=event.reply_to,
    )
    await send_message(ctx, session.user, draft)


async def handle_typing(event: TypingEvent, session: ClientSession, ctx: RelayContext) -> None:
    # typing is the one event authorized by room membership
    if not ctx.rooms.is_subscribed(session, event.conversation_id):
        raise AuthorizationFailure()
    payload = UserTyping(
        conversation_id=event.conversation_id,
        user_id=session.user_id,
        display_name=session.user.name,
        is_typing=event.is_typing,
    ).to_payload()
    await ctx.broadcaster.broadcast(
        conversation_room(event.conversation_id), payload, exclude=[session]
    )


async def handle_mark_read(event: MarkReadEvent, session: ClientSession, ctx: RelayContext) -> None:
    await read_conversation(ctx, session.user, event.conversation_id, message_id=event.message_id)


async def handle_ping(event: InboundEvent, session: ClientSession, ctx: RelayContext) -> None:
    await session.send(Pong().to_payload())


DISPATCH_TABLE: Mapping[str, Handler] = {
    "authenticate": handle_authenticate,
    "join_conversation": handle_join,
    "leave_conversation": handle_leave,
    "send_message": handle_send,
    "typing": handle_typing,
    "mark_read": handle_mark_read,
    "ping": handle_ping,
}


# ---------------------------------------------------------------------------
# Relay
# ---------------------------------------------------------------------------


class EventRelay:
    """Session lifecycle and per-event dispatch for the WebSocket gateway."""

    def __init__(self, ctx: RelayContext, handlers: Mapping[str, Handler] | None = None) -> None:
        self._ctx = ctx
        self._handlers = dict(DISPATCH_TABLE if handlers is None else handlers)
        ctx.broadcaster.on_membership(ctx.rooms.apply_membership)

    @property
    def context(self) -> RelayContext:
        return self._ctx

    async def authenticate(self, token: str | None) -> Identity:
        return await self._ctx.authenticator.authenticate(token)

    async def open_session(self, websocket: WebSocket, user: Identity) -> ClientSession:
        """Register a session, subscribe it to its rooms and greet it.

        The conversation list is loaded before anything is registered, so a
        store failure leaves no presence entry behind.
        """

        conversation_ids = await self._ctx.conversations.list_ids_for_user(user.id)
        session = ClientSession(websocket=websocket, user=user)
        first = await self._ctx.presence.register(session)
        await self._ctx.rooms.join_personal_room(session, user.id)
        await self._ctx.rooms.join_conversation_rooms(session, conversation_ids)
        await session.send(
            Ready(
                session_id=session.session_id,
                user_id=user.id,
                conversation_ids=conversation_ids,
            ).to_payload()
        )
        if first:
            payload = UserOnline(user_id=user.id, display_name=user.name).to_payload()
            for conversation_id in conversation_ids:
                await self._ctx.broadcaster.broadcast(
                    conversation_room(conversation_id), payload, exclude=[session]
                )
        logger.info("User %s connected (session %s)", user.id, session.session_id)
        return session

    async def dispatch(self, session: ClientSession, raw: str | bytes | dict[str, Any]) -> None:
        """Process one inbound frame; failures are reported to the sender only."""

        event_type: str | None = None
        try:
            event = parse_inbound(raw, max_content_length=self._ctx.max_content_length)
            event_type = event.type
            handler = self._handlers.get(event_type)
            if handler is None:
                raise ValidationFailure("Unsupported event type", event=event_type)
            realtime_events_total.labels(event_type, "in").inc()
            await handler(event, session, self._ctx)
        except RelayError as exc:
            await self._reject(session, event_type or exc.event, exc)
        except Exception:
            logger.exception(
                "Unhandled error while processing %s for user %s", event_type, session.user_id
            )
            await self._reject(session, event_type, PersistenceFailure())

    async def close_session(self, session: ClientSession) -> None:
        """Tear a session down; safe to call more than once."""

        departure = await self._ctx.presence.unregister(session)
        if departure is None:
            return
        logger.info("User %s disconnected (session %s)", session.user_id, session.session_id)
        if not departure.last_session:
            return
        payload = UserOffline(user_id=session.user_id, last_seen=departure.at).to_payload()
        for room in sorted(departure.rooms):
            if room.startswith("conversation:"):
                await self._ctx.broadcaster.broadcast(room, payload)

    async def _reject(self, session: ClientSession, event_type: str | None, exc: RelayError) -> None:
        realtime_rejected_events_total.labels(event_type or "unknown", exc.reason).inc()
        if isinstance(exc, NotFoundFailure):
            logger.debug("Rejected %s from user %s: %s", event_type, session.user_id, exc.internal_detail)
        else:
            logger.debug("Rejected %s from user %s: %s", event_type, session.user_id, exc.reason)
        await session.send(
            ErrorEvent(event=event_type, reason=exc.reason, detail=exc.detail).to_payload()
        )

    # ------------------------------------------------------------------
    # Server-initiated notifications (REST API)
    # ------------------------------------------------------------------
    async def announce_conversation(
        self, conversation: dict[str, Any], participant_ids: Iterable[int]
    ) -> None:
        """Join live sessions of the participants on every node and notify their personal rooms."""

        conversation_id = int(conversation["id"])
        payload = ConversationCreated(conversation=conversation).to_payload()
        for user_id in sorted(set(participant_ids)):
            await self._ctx.rooms.join_user_sessions(user_id, conversation_id)
            await self._ctx.broadcaster.publish_membership("join", user_id, conversation_id)
            await self._ctx.broadcaster.broadcast(personal_room(user_id), payload)

    async def publish_message_updated(self, conversation_id: int, message: dict[str, Any]) -> None:
        payload = MessageUpdated(conversation_id=conversation_id, message=message).to_payload()
        await self._ctx.broadcaster.broadcast(conversation_room(conversation_id), payload)

    async def publish_message_deleted(
        self, conversation_id: int, message_id: int, deleted_by: int | None
    ) -> None:
        payload = MessageDeleted(
            conversation_id=conversation_id, message_id=message_id, deleted_by=deleted_by
        ).to_payload()
        await self._ctx.broadcaster.broadcast(conversation_room(conversation_id), payload)

    async def remove_participant(self, conversation_id: int, user_id: int) -> None:
        """Unsubscribe every session of a departed participant, on every node, and tell the others."""

        await self._ctx.rooms.leave_user_sessions(user_id, conversation_id)
        await self._ctx.broadcaster.publish_membership("leave", user_id, conversation_id)
        payload = ParticipantLeft(conversation_id=conversation_id, user_id=user_id).to_payload()
        await self._ctx.broadcaster.broadcast(conversation_room(conversation_id), payload)
        await self._ctx.broadcaster.broadcast(personal_room(user_id), payload)

    def is_online(self, user_id: int) -> bool:
        return self._ctx.presence.is_online(user_id)


__all__ = [
    "DISPATCH_TABLE",
    "EventRelay",
    "RelayContext",
    "read_conversation",
    "require_participant",
    "send_message",
]
