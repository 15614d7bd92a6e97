"""In-memory stores and sockets for exercising the relay without a database."""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fastapi.websockets import WebSocketState

from parley.realtime.auth import ConnectionAuthenticator, JWTCredentialVerifier
from parley.realtime.broadcast import RoomBroadcaster
from parley.realtime.errors import PersistenceFailure
from parley.realtime.presence import ClusterPresence, PresenceTracker
from parley.realtime.registry import ConnectionRegistry
from parley.realtime.relay import EventRelay, RelayContext
from parley.realtime.rooms import RoomMembershipManager
from parley.realtime.stores import ConversationRef, Identity, NewMessage
from parley.realtime.transport import RedisPubSubTransport
from parley.realtime.unread import UnreadBookkeeper

SECRET = "relay-test-secret"


class FakeWebSocket:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.application_state = WebSocketState.CONNECTED

    async def send_json(self, data: dict[str, Any]) -> None:
        self.sent.append(data)

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [message for message in self.sent if message.get("type") == event_type]

    def clear(self) -> None:
        self.sent.clear()


class FakeUserStore:
    def __init__(self, *users: Identity) -> None:
        self.users = {user.id: user for user in users}
        self.presence_writes: list[tuple[int, bool]] = []
        self.fail_writes = False
        self.fail_lookups = False
        self.write_delay = 0.0

    async def find_by_id(self, user_id: int) -> Identity | None:
        if self.fail_lookups:
            raise PersistenceFailure()
        return self.users.get(user_id)

    async def set_online(self, user_id: int, online: bool, at: datetime) -> None:
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        if self.fail_writes:
            raise RuntimeError("database is gone")
        self.presence_writes.append((user_id, online))


@dataclass
class _Conversation:
    kind: str
    participants: set[int]
    active: bool = True
    last_message_id: int | None = None


@dataclass
class FakeMessageStore:
    messages: list[dict[str, Any]] = field(default_factory=list)
    receipts: set[tuple[int, int]] = field(default_factory=set)
    fail_create: Exception | None = None
    create_calls: int = 0

    def __post_init__(self) -> None:
        self._ids = itertools.count(1)

    async def create(self, message: NewMessage) -> dict[str, Any]:
        self.create_calls += 1
        await asyncio.sleep(0)
        if self.fail_create is not None:
            raise self.fail_create
        stored = {
            "id": next(self._ids),
            "conversation_id": message.conversation_id,
            "sender_id": message.sender_id,
            "content": message.content,
            "message_type": message.message_type,
            "media_url": message.media_url,
            "reply_to_id": message.reply_to_id,
            "is_deleted": False,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        self.messages.append(stored)
        return dict(stored)

    async def find_in_conversation(self, conversation_id: int, message_id: int) -> dict[str, Any] | None:
        for message in self.messages:
            if message["id"] == message_id and message["conversation_id"] == conversation_id:
                return None if message["is_deleted"] else dict(message)
        return None

    async def mark_read(self, message_id: int, user_id: int) -> bool:
        if (message_id, user_id) in self.receipts:
            return False
        self.receipts.add((message_id, user_id))
        return True

    async def mark_conversation_read(self, conversation_id: int, user_id: int) -> list[int]:
        marked = []
        for message in self.unread(conversation_id, user_id, include_own=True):
            self.receipts.add((message["id"], user_id))
            marked.append(message["id"])
        return marked

    def unread(self, conversation_id: int, user_id: int, *, include_own: bool = False) -> list[dict[str, Any]]:
        return [
            message
            for message in self.messages
            if message["conversation_id"] == conversation_id
            and not message["is_deleted"]
            and (message["id"], user_id) not in self.receipts
            and (include_own or message["sender_id"] != user_id)
        ]

    def in_conversation(self, conversation_id: int) -> list[dict[str, Any]]:
        return [m for m in self.messages if m["conversation_id"] == conversation_id]


class FakeConversationStore:
    def __init__(self) -> None:
        self.conversations: dict[int, _Conversation] = {}
        self.unread: dict[tuple[int, int], int] = {}
        self.fail_delivery = False

    def add(self, conversation_id: int, *participants: int, kind: str = "direct", active: bool = True) -> None:
        self.conversations[conversation_id] = _Conversation(kind, set(participants), active)
        for user_id in participants:
            self.unread[(conversation_id, user_id)] = 0

    async def find_by_id(self, conversation_id: int) -> ConversationRef | None:
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            return None
        return ConversationRef(
            id=conversation_id,
            kind=conversation.kind,
            participant_ids=frozenset(conversation.participants),
            is_active=conversation.active,
        )

    async def is_participant(self, conversation_id: int, user_id: int) -> bool:
        conversation = self.conversations.get(conversation_id)
        return conversation is not None and conversation.active and user_id in conversation.participants

    async def list_ids_for_user(self, user_id: int) -> list[int]:
        return sorted(
            cid for cid, c in self.conversations.items() if c.active and user_id in c.participants
        )

    async def set_last_message(self, conversation_id: int, message_id: int) -> None:
        self.conversations[conversation_id].last_message_id = message_id

    async def increment_unread(self, conversation_id: int, user_id: int) -> None:
        self.unread[(conversation_id, user_id)] += 1

    async def record_delivery(
        self, conversation_id: int, message_id: int, sender_id: int | None
    ) -> list[int]:
        if self.fail_delivery:
            raise PersistenceFailure()
        await self.set_last_message(conversation_id, message_id)
        recipients = sorted(
            uid for uid in self.conversations[conversation_id].participants if uid != sender_id
        )
        for user_id in recipients:
            await self.increment_unread(conversation_id, user_id)
        return recipients

    async def reset_unread(self, conversation_id: int, user_id: int) -> None:
        self.unread[(conversation_id, user_id)] = 0


@dataclass
class RelayHarness:
    relay: EventRelay
    registry: ConnectionRegistry
    presence: PresenceTracker
    broadcaster: RoomBroadcaster
    users: FakeUserStore
    conversations: FakeConversationStore
    messages: FakeMessageStore

    async def connect(self, user: Identity):
        websocket = FakeWebSocket()
        session = await self.relay.open_session(websocket, user)
        return session, websocket


def build_harness(
    *users: Identity,
    transport: RedisPubSubTransport | None = None,
    node_id: str = "test-node",
) -> RelayHarness:
    """Wire a relay over fresh in-memory stores; *transport* links it to other nodes."""

    user_store = FakeUserStore(*users)
    messages = FakeMessageStore()
    conversations = FakeConversationStore()
    registry = ConnectionRegistry()
    cluster = ClusterPresence(transport) if transport is not None else None
    presence = PresenceTracker(registry, user_store, cluster)
    broadcaster = RoomBroadcaster(registry, transport, node_id=node_id)
    ctx = RelayContext(
        authenticator=ConnectionAuthenticator(JWTCredentialVerifier(SECRET), user_store),
        presence=presence,
        rooms=RoomMembershipManager(registry),
        broadcaster=broadcaster,
        unread=UnreadBookkeeper(conversations),
        users=user_store,
        conversations=conversations,
        messages=messages,
    )
    return RelayHarness(
        relay=EventRelay(ctx),
        registry=registry,
        presence=presence,
        broadcaster=broadcaster,
        users=user_store,
        conversations=conversations,
        messages=messages,
    )
