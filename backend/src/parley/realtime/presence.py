"""Online/offline tracking on top of the connection registry."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial

from app.monitoring.metrics import presence_write_failures_total

from .registry import ClientSession, ConnectionRegistry
from .stores import UserStore
from .transport import RedisPubSubTransport, TransportUnavailableError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class Departure:
    """Outcome of unregistering a session."""

    user_id: int
    last_session: bool
    rooms: set[str]
    at: datetime


class ClusterPresence:
    """Live session counts per user shared by every node through Redis.

    A session is the user's first when the shared count reaches one and the
    last when it drops to zero. Both methods return ``None`` while the backend
    is unreachable so callers fall back to this node's own view. Keys expire
    after a day so counts left behind by a crashed node do not pin a user
    online forever.
    """

    KEY_TTL_SECONDS = 24 * 60 * 60

    def __init__(self, transport: RedisPubSubTransport) -> None:
        self._transport = transport

    @staticmethod
    def _key(user_id: int) -> str:
        return f"presence.sessions.{user_id}"

    async def session_opened(self, user_id: int) -> bool | None:
        try:
            count = await self._transport.adjust_counter(
                self._key(user_id), 1, ttl_seconds=self.KEY_TTL_SECONDS
            )
        except TransportUnavailableError:
            return None
        return count == 1

    async def session_closed(self, user_id: int) -> bool | None:
        try:
            count = await self._transport.adjust_counter(
                self._key(user_id), -1, ttl_seconds=self.KEY_TTL_SECONDS
            )
            if count < 0:
                # expired or drifted key
                await self._transport.delete_counter(self._key(user_id))
        except TransportUnavailableError:
            return None
        return count <= 0


class PresenceTracker:
    """Register sessions and persist presence transitions in the background.

    Writes for the same user are chained so that an offline write can never
    overtake the online write of an overlapping reconnect. Failed writes are
    logged and dropped.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        users: UserStore,
        cluster: ClusterPresence | None = None,
    ) -> None:
        self._registry = registry
        self._users = users
        self._cluster = cluster
        self._tasks: set[asyncio.Task[None]] = set()
        self._tails: dict[int, asyncio.Task[None]] = {}

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    async def register(self, session: ClientSession) -> bool:
        first = await self._registry.add_session(session)
        if self._cluster is not None:
            shared = await self._cluster.session_opened(session.user_id)
            if shared is not None:
                first = shared
        if first:
            self._schedule_write(session.user_id, True, utcnow())
        return first

    async def unregister(self, session: ClientSession) -> Departure | None:
        result = await self._registry.remove_session(session)
        if result is None:
            return None
        last, rooms = result
        if self._cluster is not None:
            shared = await self._cluster.session_closed(session.user_id)
            if shared is not None:
                last = shared
        at = utcnow()
        if last:
            self._schedule_write(session.user_id, False, at)
        return Departure(session.user_id, last, rooms, at)

    def is_online(self, user_id: int) -> bool:
        return self._registry.is_online(user_id)

    def _schedule_write(self, user_id: int, online: bool, at: datetime) -> None:
        previous = self._tails.get(user_id)
        task = asyncio.create_task(
            self._write(user_id, online, at, previous),
            name=f"presence-{user_id}-{'online' if online else 'offline'}",
        )
        self._tails[user_id] = task
        self._tasks.add(task)
        task.add_done_callback(partial(self._forget, user_id))

    async def _write(
        self,
        user_id: int,
        online: bool,
        at: datetime,
        previous: asyncio.Task[None] | None,
    ) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        try:
            await self._users.set_online(user_id, online, at)
        except Exception:
            state = "online" if online else "offline"
            presence_write_failures_total.labels(state).inc()
            logger.exception("Failed to persist %s presence for user %s", state, user_id)

    def _forget(self, user_id: int, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if self._tails.get(user_id) is task:
            self._tails.pop(user_id, None)

    async def drain(self) -> None:
        """Wait for pending presence writes."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
