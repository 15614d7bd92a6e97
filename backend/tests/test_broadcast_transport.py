"""Cross-node room fan-out over the Redis pub/sub transport."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

import pytest

from app.monitoring.metrics import realtime_publish_errors_total, realtime_transport_restarts_total
from parley.realtime.broadcast import RoomBroadcaster
from parley.realtime.presence import ClusterPresence
from parley.realtime.registry import ClientSession, ConnectionRegistry
from parley.realtime.stores import Identity
from parley.realtime.transport import (
    BrokerConfig,
    RedisPubSubTransport,
    TransportUnavailableError,
)
from realtime_fakes import FakeWebSocket, RelayHarness, build_harness

pytestmark = pytest.mark.anyio


class FakePubSub:
    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._channels: set[str] = set()

    async def subscribe(self, channel: str) -> None:
        if not self._redis.online:
            raise ConnectionError("offline")
        self._channels.add(channel)
        self._redis.server.register(channel, self)

    async def unsubscribe(self, channel: str) -> None:
        if channel in self._channels:
            self._redis.server.unregister(channel, self)
            self._channels.discard(channel)

    async def close(self) -> None:
        for channel in list(self._channels):
            await self.unsubscribe(channel)

    async def listen(self):
        while True:
            message = await self._queue.get()
            if message is None:
                break
            yield message

    def push(self, message: dict[str, Any] | None) -> None:
        self._queue.put_nowait(message)


class FakeServer:
    """Channel table shared by every client, like one Redis instance."""

    def __init__(self) -> None:
        self._pubsubs: dict[str, set[FakePubSub]] = {}
        self.counters: dict[str, int] = {}

    def register(self, channel: str, pubsub: FakePubSub) -> None:
        self._pubsubs.setdefault(channel, set()).add(pubsub)

    def unregister(self, channel: str, pubsub: FakePubSub) -> None:
        self._pubsubs.get(channel, set()).discard(pubsub)

    def deliver(self, channel: str, payload: str) -> None:
        for pubsub in list(self._pubsubs.get(channel, set())):
            pubsub.push({"type": "message", "data": payload})


class FakeRedis:
    def __init__(self, server: FakeServer) -> None:
        self.server = server
        self.online = True
        self._pubsubs: list[FakePubSub] = []

    async def ping(self) -> None:
        if not self.online:
            raise ConnectionError("offline")

    async def publish(self, channel: str, payload: str) -> None:
        if not self.online:
            raise ConnectionError("offline")
        self.server.deliver(channel, payload)

    async def incrby(self, key: str, amount: int) -> int:
        if not self.online:
            raise ConnectionError("offline")
        self.server.counters[key] = self.server.counters.get(key, 0) + amount
        return self.server.counters[key]

    async def expire(self, key: str, seconds: int) -> bool:
        return key in self.server.counters

    async def delete(self, key: str) -> int:
        return 1 if self.server.counters.pop(key, None) is not None else 0

    def pubsub(self) -> FakePubSub:
        pubsub = FakePubSub(self)
        self._pubsubs.append(pubsub)
        return pubsub

    async def close(self) -> None:
        self.fail()

    def fail(self) -> None:
        self.online = False
        for pubsub in self._pubsubs:
            pubsub.push(None)


class FakeRedisFactory:
    def __init__(self) -> None:
        self.server = FakeServer()
        self.instances: list[FakeRedis] = []

    def from_url(self, *_args: Any, **_kwargs: Any) -> FakeRedis:
        client = FakeRedis(self.server)
        self.instances.append(client)
        return client


@pytest.fixture()
def factory(monkeypatch) -> FakeRedisFactory:
    factory = FakeRedisFactory()
    monkeypatch.setattr(
        "parley.realtime.transport.redis_asyncio",
        SimpleNamespace(from_url=factory.from_url),
    )
    monkeypatch.setattr("parley.realtime.transport._RECOVERY_BASE_DELAY", 0.01)
    monkeypatch.setattr("parley.realtime.transport._RECOVERY_MAX_DELAY", 0.05)
    return factory


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0.01)


async def _node(node_id: str) -> tuple[RoomBroadcaster, RedisPubSubTransport, ConnectionRegistry]:
    registry = ConnectionRegistry()
    transport = RedisPubSubTransport(
        BrokerConfig(redis_url="redis://fake", prefix="test.realtime", node_id=node_id)
    )
    await transport.start()
    broadcaster = RoomBroadcaster(registry, transport, node_id=node_id)
    await broadcaster.start()
    return broadcaster, transport, registry


async def _member(registry: ConnectionRegistry, user: Identity, room: str) -> ClientSession:
    session = ClientSession(websocket=FakeWebSocket(), user=user)
    await registry.add_session(session)
    await registry.join(session, [room])
    return session


async def test_room_events_reach_other_nodes_once(factory):
    left, left_transport, left_registry = await _node("left")
    right, right_transport, right_registry = await _node("right")
    alice = await _member(left_registry, Identity(1, "alice"), "conversation:1")
    bob = await _member(right_registry, Identity(2, "bob"), "conversation:1")

    delivered = await left.broadcast("conversation:1", {"type": "new_message", "n": 1})
    await _settle()

    assert delivered == 1
    assert alice.websocket.sent == [{"type": "new_message", "n": 1}]
    assert bob.websocket.sent == [{"type": "new_message", "n": 1}]

    for broadcaster, transport in ((left, left_transport), (right, right_transport)):
        await broadcaster.stop()
        await transport.stop()


async def test_remote_envelope_honours_excluded_sessions(factory):
    right, right_transport, right_registry = await _node("right")
    muted = await _member(right_registry, Identity(1, "alice"), "conversation:1")
    reader = await _member(right_registry, Identity(2, "bob"), "conversation:1")

    await right._handle_remote(
        {
            "origin": "left",
            "room": "conversation:1",
            "payload": {"type": "user_typing"},
            "exclude_sessions": [muted.session_id],
        }
    )
    await right._handle_remote({"origin": "right", "room": "conversation:1", "payload": {"type": "echo"}})

    assert muted.websocket.sent == []
    assert reader.websocket.sent == [{"type": "user_typing"}]

    await right.stop()
    await right_transport.stop()


async def test_broadcast_stays_local_when_backend_is_down(factory):
    registry = ConnectionRegistry()
    transport = RedisPubSubTransport(BrokerConfig(redis_url="redis://fake", node_id="solo"))
    await transport.start()
    broadcaster = RoomBroadcaster(registry, transport, node_id="solo")
    await broadcaster.start()
    session = await _member(registry, Identity(1, "alice"), "user:1")
    before = realtime_publish_errors_total.value("unavailable")

    factory.instances[0].online = False
    delivered = await broadcaster.broadcast("user:1", {"type": "pong"})

    assert delivered == 1
    assert session.websocket.sent == [{"type": "pong"}]
    assert realtime_publish_errors_total.value("unavailable") == before + 1

    await broadcaster.stop()
    await transport.stop()


async def test_start_fails_when_backend_unreachable(factory, monkeypatch):
    def offline_client(*_args: Any, **_kwargs: Any) -> FakeRedis:
        client = factory.from_url()
        client.online = False
        return client

    monkeypatch.setattr(
        "parley.realtime.transport.redis_asyncio",
        SimpleNamespace(from_url=offline_client),
    )
    transport = RedisPubSubTransport(BrokerConfig(redis_url="redis://fake"))

    with pytest.raises(TransportUnavailableError):
        await transport.start()
    assert not transport.connected


async def test_redis_transport_recovers_after_disconnect(factory):
    transport = RedisPubSubTransport(BrokerConfig(redis_url="redis://fake"))
    await transport.start()
    restarts_before = realtime_transport_restarts_total.value("publish_failed")

    received: list[dict[str, Any]] = []
    received_event = asyncio.Event()

    async def handler(payload: dict[str, Any]) -> None:
        received.append(payload)
        received_event.set()

    subscription = await transport.subscribe("rooms", handler)

    await transport.publish("rooms", {"value": 1})
    await asyncio.wait_for(received_event.wait(), timeout=1.0)
    received_event.clear()
    received.clear()

    factory.instances[0].fail()

    with pytest.raises(TransportUnavailableError):
        await transport.publish("rooms", {"value": 2})

    async def wait_for_instances(expected: int) -> None:
        for _ in range(50):
            if len(factory.instances) >= expected:
                return
            await asyncio.sleep(0.02)
        raise AssertionError("Redis client was not recreated")

    await wait_for_instances(2)

    async def publish_with_retry(payload: dict[str, Any]) -> None:
        for _ in range(20):
            try:
                await transport.publish("rooms", payload)
                return
            except TransportUnavailableError:
                await asyncio.sleep(0.05)
        raise AssertionError("Redis transport did not recover in time")

    await publish_with_retry({"value": 3})
    await asyncio.wait_for(received_event.wait(), timeout=1.5)

    assert received == [{"value": 3}]
    assert realtime_transport_restarts_total.value("publish_failed") >= restarts_before + 1

    await subscription.close()
    await transport.stop()


ALICE = Identity(1, "alice", "Alice")
BOB = Identity(2, "bob", "Bob")
CAROL = Identity(3, "carol", "Carol")


async def _relay_node(node_id: str, *users: Identity) -> tuple[RelayHarness, RedisPubSubTransport]:
    transport = RedisPubSubTransport(
        BrokerConfig(redis_url="redis://fake", prefix="test.realtime", node_id=node_id)
    )
    await transport.start()
    harness = build_harness(*users, transport=transport, node_id=node_id)
    await harness.broadcaster.start()
    return harness, transport


async def _shutdown(*nodes: tuple[RelayHarness, RedisPubSubTransport]) -> None:
    for harness, transport in nodes:
        await harness.broadcaster.stop()
        await transport.stop()
        await harness.presence.drain()


async def test_group_membership_changes_reach_other_nodes(factory):
    left, left_transport = await _relay_node("left", ALICE, BOB, CAROL)
    right, right_transport = await _relay_node("right", ALICE, BOB, CAROL)
    for node in (left, right):
        node.conversations.add(7, ALICE.id, BOB.id, kind="group")
    alice, _ = await left.connect(ALICE)
    bob, bob_ws = await right.connect(BOB)
    carol, carol_ws = await right.connect(CAROL)
    await _settle()

    for node in (left, right):
        node.conversations.conversations[7].participants.add(CAROL.id)
    await left.relay.announce_conversation({"id": 7, "kind": "group"}, [CAROL.id])
    await _settle()

    assert right.registry.is_member(carol, "conversation:7")
    assert carol_ws.of_type("conversation_created") == [
        {"type": "conversation_created", "conversation": {"id": 7, "kind": "group"}}
    ]

    for node in (left, right):
        node.conversations.conversations[7].participants.discard(BOB.id)
    await left.relay.remove_participant(7, BOB.id)
    await _settle()

    assert not right.registry.is_member(bob, "conversation:7")
    assert bob_ws.of_type("participant_left") == [
        {"type": "participant_left", "conversation_id": 7, "user_id": BOB.id}
    ]

    bob_ws.clear()
    await left.relay.dispatch(alice, {"type": "send_message", "conversation_id": 7, "content": "after leave"})
    await _settle()

    assert bob_ws.of_type("new_message") == []
    assert [m["message"]["content"] for m in carol_ws.of_type("new_message")] == ["after leave"]

    await _shutdown((left, left_transport), (right, right_transport))


async def test_user_stays_online_while_another_node_holds_a_session(factory):
    left, left_transport = await _relay_node("left", ALICE, BOB)
    right, right_transport = await _relay_node("right", ALICE, BOB)
    for node in (left, right):
        node.conversations.add(10, ALICE.id, BOB.id)
    _, bob_ws = await left.connect(BOB)
    on_left, _ = await left.connect(ALICE)
    on_right, _ = await right.connect(ALICE)
    await _settle()

    assert len(bob_ws.of_type("user_online")) == 1

    await left.relay.close_session(on_left)
    await _settle()
    await left.presence.drain()

    assert bob_ws.of_type("user_offline") == []
    assert left.users.presence_writes == [(BOB.id, True), (ALICE.id, True)]

    await right.relay.close_session(on_right)
    await _settle()
    await right.presence.drain()

    assert [e["user_id"] for e in bob_ws.of_type("user_offline")] == [ALICE.id]
    assert right.users.presence_writes == [(ALICE.id, False)]

    await _shutdown((left, left_transport), (right, right_transport))


async def test_cluster_presence_falls_back_when_backend_is_down(factory):
    transport = RedisPubSubTransport(BrokerConfig(redis_url="redis://fake"))
    cluster = ClusterPresence(transport)

    assert await cluster.session_opened(ALICE.id) is None

    await transport.start()
    assert await cluster.session_opened(ALICE.id) is True
    assert await cluster.session_opened(ALICE.id) is False
    assert await cluster.session_closed(ALICE.id) is False
    assert await cluster.session_closed(ALICE.id) is True

    factory.server.counters.clear()
    assert await cluster.session_closed(ALICE.id) is True
    assert factory.server.counters == {}

    await transport.stop()
