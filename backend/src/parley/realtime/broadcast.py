"""Room fan-out across local sessions and, optionally, other nodes."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Literal

from app.monitoring.metrics import realtime_events_total, realtime_publish_errors_total

from .registry import ClientSession, ConnectionRegistry
from .transport import ROOMS_TOPIC, RedisPubSubTransport, Subscription, TransportUnavailableError

logger = logging.getLogger(__name__)

MembershipAction = Literal["join", "leave"]
MembershipHandler = Callable[[MembershipAction, int, int], Awaitable[Any]]


class RoomBroadcaster:
    """Deliver room events to local members and mirror them to peer nodes."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        transport: RedisPubSubTransport | None = None,
        *,
        node_id: str,
    ) -> None:
        self._registry = registry
        self._transport = transport
        self._node_id = node_id
        self._subscription: Subscription | None = None
        self._publish_warning_logged = False
        self._membership_handler: MembershipHandler | None = None

    @property
    def node_id(self) -> str:
        return self._node_id

    async def start(self) -> None:
        if self._transport is None or not self._transport.connected:
            return
        try:
            self._subscription = await self._transport.subscribe(ROOMS_TOPIC, self._handle_remote)
        except TransportUnavailableError:
            logger.warning(
                "Realtime backend unavailable; room events limited to this instance",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            self._subscription = None

    async def stop(self) -> None:
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None

    async def broadcast(
        self,
        room: str,
        payload: dict[str, Any],
        *,
        exclude: Iterable[ClientSession] | None = None,
    ) -> int:
        excluded = list(exclude or ())
        delivered = await self._registry.broadcast(room, payload, exclude=excluded)
        realtime_events_total.labels(payload.get("type", "unknown"), "out").inc()
        await self._publish(
            {
                "origin": self._node_id,
                "room": room,
                "payload": payload,
                "exclude_sessions": [session.session_id for session in excluded],
            }
        )
        return delivered

    def on_membership(self, handler: MembershipHandler) -> None:
        """Apply membership changes announced by other nodes with *handler*."""

        self._membership_handler = handler

    async def publish_membership(
        self, action: MembershipAction, user_id: int, conversation_id: int
    ) -> None:
        """Ask peer nodes to subscribe or unsubscribe their sessions of *user_id*.

        Envelopes share the room channel, so peers apply the change before any
        room event published after it.
        """

        await self._publish(
            {
                "origin": self._node_id,
                "membership": {
                    "action": action,
                    "user_id": user_id,
                    "conversation_id": conversation_id,
                },
            }
        )

    async def _publish(self, envelope: dict[str, Any]) -> None:
        if self._transport is None or self._subscription is None:
            return
        try:
            await self._transport.publish(ROOMS_TOPIC, envelope)
        except TransportUnavailableError:
            if not self._publish_warning_logged:
                logger.warning(
                    "Realtime backend unavailable while broadcasting to %s; operating in local-only mode",
                    envelope.get("room", "membership"),
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                self._publish_warning_logged = True
            realtime_publish_errors_total.labels("unavailable").inc()
        except Exception:
            realtime_publish_errors_total.labels("error").inc()
            logger.exception("Unexpected error while publishing to %s", envelope.get("room", "membership"))
        else:
            self._publish_warning_logged = False

    async def _handle_remote(self, message: dict[str, Any]) -> None:
        if message.get("origin") == self._node_id:
            return
        membership = message.get("membership")
        if isinstance(membership, dict):
            await self._apply_membership(membership)
            return
        room = message.get("room")
        payload = message.get("payload")
        if not isinstance(room, str) or not isinstance(payload, dict):
            return
        excluded_ids = set(message.get("exclude_sessions") or ())
        excluded = [s for s in self._registry.members(room) if s.session_id in excluded_ids]
        await self._registry.broadcast(room, payload, exclude=excluded)
        realtime_events_total.labels(payload.get("type", "unknown"), "in").inc()

    async def _apply_membership(self, membership: dict[str, Any]) -> None:
        action = membership.get("action")
        user_id = membership.get("user_id")
        conversation_id = membership.get("conversation_id")
        if action not in ("join", "leave") or not isinstance(user_id, int) or not isinstance(conversation_id, int):
            logger.warning("Discarded malformed membership envelope: %s", membership)
            return
        if self._membership_handler is None:
            return
        await self._membership_handler(action, user_id, conversation_id)
