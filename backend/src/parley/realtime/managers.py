"""Process-wide realtime services and their lifecycle."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from .auth import ConnectionAuthenticator
from .broadcast import RoomBroadcaster
from .events import DEFAULT_MAX_CONTENT_LENGTH
from .presence import ClusterPresence, PresenceTracker
from .registry import ConnectionRegistry
from .relay import EventRelay, RelayContext
from .rooms import RoomMembershipManager
from .stores import ConversationStore, CredentialVerifier, MessageStore, UserStore
from .transport import BrokerConfig, RedisPubSubTransport, TransportUnavailableError
from .unread import UnreadBookkeeper

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RealtimeServices:
    registry: ConnectionRegistry
    presence: PresenceTracker
    broadcaster: RoomBroadcaster
    relay: EventRelay
    transport: RedisPubSubTransport | None = None


_services: RealtimeServices | None = None


def configure_realtime(
    *,
    verifier: CredentialVerifier,
    users: UserStore,
    conversations: ConversationStore,
    messages: MessageStore,
    redis_url: str | None = None,
    namespace: str = "parley.realtime",
    node_id: str | None = None,
    max_message_length: int = DEFAULT_MAX_CONTENT_LENGTH,
) -> RealtimeServices:
    """Build the registry, relay and optional transport for this process.

    Replaces any previously configured services; call :func:`shutdown_realtime`
    first when reconfiguring a running application.
    """

    global _services

    node_id = node_id or uuid.uuid4().hex
    registry = ConnectionRegistry()
    transport = (
        RedisPubSubTransport(BrokerConfig(redis_url=redis_url, prefix=namespace, node_id=node_id))
        if redis_url
        else None
    )
    presence = PresenceTracker(registry, users, ClusterPresence(transport) if transport else None)
    broadcaster = RoomBroadcaster(registry, transport, node_id=node_id)
    ctx = RelayContext(
        authenticator=ConnectionAuthenticator(verifier, users),
        presence=presence,
        rooms=RoomMembershipManager(registry),
        broadcaster=broadcaster,
        unread=UnreadBookkeeper(conversations),
        users=users,
        conversations=conversations,
        messages=messages,
        max_content_length=max_message_length,
    )
    _services = RealtimeServices(
        registry=registry,
        presence=presence,
        broadcaster=broadcaster,
        relay=EventRelay(ctx),
        transport=transport,
    )
    return _services


def is_configured() -> bool:
    return _services is not None


def get_services() -> RealtimeServices:
    if _services is None:
        raise RuntimeError("Realtime services are not configured")
    return _services


def get_relay() -> EventRelay:
    return get_services().relay


def get_registry() -> ConnectionRegistry:
    return get_services().registry


async def startup_realtime() -> None:
    services = get_services()
    if services.transport is None:
        logger.info("Realtime running in single-node mode")
        return
    try:
        await services.transport.start()
    except TransportUnavailableError:
        logger.warning(
            "Realtime backend unavailable during startup; continuing without cross-node sync",
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )
        return
    await services.broadcaster.start()


async def shutdown_realtime() -> None:
    global _services

    services = _services
    if services is None:
        return
    await services.broadcaster.stop()
    if services.transport is not None:
        await services.transport.stop()
    await services.presence.drain()
    await services.registry.close()
    _services = None


__all__ = [
    "RealtimeServices",
    "configure_realtime",
    "get_registry",
    "get_relay",
    "get_services",
    "is_configured",
    "shutdown_realtime",
    "startup_realtime",
]
