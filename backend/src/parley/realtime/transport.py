"""Redis pub/sub transport used for cross-node room fan-out."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import redis.asyncio as redis_asyncio
from redis.exceptions import RedisError

from app.monitoring.metrics import realtime_transport_restarts_total

logger = logging.getLogger(__name__)

_REDIS_ERRORS: tuple[type[BaseException], ...] = (
    RedisError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)

_RECOVERY_BASE_DELAY = 0.5
_RECOVERY_MAX_DELAY = 30.0

ROOMS_TOPIC = "rooms"

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]


class TransportUnavailableError(RuntimeError):
    """Raised when the broker is not configured or cannot be reached."""


@dataclass(slots=True)
class BrokerConfig:
    redis_url: str | None
    prefix: str = "parley.realtime"
    node_id: str | None = None


class Subscription:
    """Handle returned by :meth:`RedisPubSubTransport.subscribe`."""

    def __init__(self, channel: str, cleanup: Callable[[], Awaitable[None]]) -> None:
        self._channel = channel
        self._cleanup = cleanup

    @property
    def channel(self) -> str:
        return self._channel

    async def close(self) -> None:
        await self._cleanup()


@dataclass(slots=True)
class _ChannelReader:
    channel: str
    handler: MessageHandler
    task: asyncio.Task[Any] | None = None
    pubsub: Any | None = None
    active: bool = True
    pausing: bool = False


class RedisPubSubTransport:
    """JSON pub/sub over Redis with automatic reconnection.

    When a reader dies or a publish fails the transport reconnects in the
    background with exponential backoff and reattaches every active reader.
    """

    def __init__(self, config: BrokerConfig) -> None:
        self._config = config
        self._redis: Any | None = None
        self._readers: list[_ChannelReader] = []
        self._recovery_lock = asyncio.Lock()
        self._recovery_task: asyncio.Task[Any] | None = None

    @property
    def node_id(self) -> str | None:
        return self._config.node_id

    @property
    def connected(self) -> bool:
        return self._redis is not None

    async def start(self) -> None:
        if not self._config.redis_url or self._redis is not None:
            return
        client = redis_asyncio.from_url(
            self._config.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        try:
            await client.ping()
        except _REDIS_ERRORS + (OSError,) as exc:
            with contextlib.suppress(Exception):
                await client.close()
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        self._redis = client

    async def stop(self) -> None:
        for reader in list(self._readers):
            await self._close_reader(reader)
        if self._recovery_task is not None:
            self._recovery_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._recovery_task
            self._recovery_task = None
        if self._redis is not None:
            with contextlib.suppress(Exception):
                await self._redis.close()
            self._redis = None

    def channel_name(self, topic: str) -> str:
        prefix = self._config.prefix.rstrip(".")
        return f"{prefix}.{topic}" if prefix else topic

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not connected")
        channel = self.channel_name(topic)
        try:
            await self._redis.publish(channel, json.dumps(payload))
        except _REDIS_ERRORS as exc:
            self._schedule_recovery("publish_failed")
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        logger.debug("Published realtime payload", extra={"channel": channel})

    async def adjust_counter(self, name: str, delta: int, *, ttl_seconds: int | None = None) -> int:
        """Atomically add *delta* to a shared counter and return the new value."""

        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not connected")
        key = self.channel_name(name)
        try:
            value = await self._redis.incrby(key, delta)
            if ttl_seconds:
                await self._redis.expire(key, ttl_seconds)
        except _REDIS_ERRORS as exc:
            self._schedule_recovery("counter_failed")
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        return int(value)

    async def delete_counter(self, name: str) -> None:
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not connected")
        try:
            await self._redis.delete(self.channel_name(name))
        except _REDIS_ERRORS as exc:
            self._schedule_recovery("counter_failed")
            raise TransportUnavailableError("Redis backend is unavailable") from exc

    async def subscribe(self, topic: str, handler: MessageHandler) -> Subscription:
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not connected")
        reader = _ChannelReader(channel=self.channel_name(topic), handler=handler)
        self._readers.append(reader)
        try:
            await self._attach(reader)
        except TransportUnavailableError:
            await self._close_reader(reader)
            self._schedule_recovery("subscribe_failed")
            raise

        async def cleanup() -> None:
            await self._close_reader(reader)

        return Subscription(reader.channel, cleanup)

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------
    async def _attach(self, reader: _ChannelReader) -> None:
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not connected")
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(reader.channel)
        except _REDIS_ERRORS as exc:
            with contextlib.suppress(Exception):
                await pubsub.close()
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        reader.pubsub = pubsub
        reader.task = asyncio.create_task(
            self._read(reader, pubsub), name=f"realtime-redis-{reader.channel}"
        )
        reader.task.add_done_callback(lambda task: self._on_reader_done(reader, task))

    async def _read(self, reader: _ChannelReader, pubsub: Any) -> None:
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                raw = message.get("data")
                if not isinstance(raw, str):
                    continue
                try:
                    payload = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Discarded malformed realtime payload", extra={"channel": reader.channel})
                    continue
                if not isinstance(payload, dict):
                    continue
                try:
                    await reader.handler(payload)
                except Exception:
                    logger.exception("Realtime handler failed", extra={"channel": reader.channel})
        finally:
            with contextlib.suppress(Exception):
                await pubsub.unsubscribe(reader.channel)
            with contextlib.suppress(Exception):
                await pubsub.close()

    def _on_reader_done(self, reader: _ChannelReader, task: asyncio.Task[Any]) -> None:
        if reader.task is task:
            reader.task = None
            reader.pubsub = None
        if not reader.active or reader.pausing or task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "Redis reader stopped with an error; scheduling recovery",
                exc_info=exc,
                extra={"channel": reader.channel},
            )
        else:
            logger.warning("Redis reader exited; scheduling recovery", extra={"channel": reader.channel})
        self._schedule_recovery("reader_stopped")

    async def _pause(self, reader: _ChannelReader) -> None:
        reader.pausing = True
        task = reader.task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        reader.task = None
        reader.pubsub = None
        reader.pausing = False

    async def _close_reader(self, reader: _ChannelReader) -> None:
        reader.active = False
        await self._pause(reader)
        if reader in self._readers:
            self._readers.remove(reader)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------
    def _schedule_recovery(self, reason: str) -> None:
        if not self._config.redis_url:
            return
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        logger.info("Scheduling Redis realtime recovery", extra={"reason": reason})
        self._recovery_task = asyncio.create_task(
            self._recover(reason), name="realtime-redis-recovery"
        )

    async def _recover(self, reason: str) -> None:
        attempt = 0
        while True:
            await asyncio.sleep(min(_RECOVERY_BASE_DELAY * (2**attempt), _RECOVERY_MAX_DELAY))
            try:
                await self._reconnect()
            except Exception:
                attempt += 1
                logger.warning(
                    "Redis realtime recovery attempt %s failed",
                    attempt,
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                continue
            break
        realtime_transport_restarts_total.labels(reason).inc()
        logger.info("Redis realtime backend recovered", extra={"reason": reason})
        self._recovery_task = None

    async def _reconnect(self) -> None:
        async with self._recovery_lock:
            for reader in list(self._readers):
                await self._pause(reader)
            if self._redis is not None:
                with contextlib.suppress(Exception):
                    await self._redis.close()
                self._redis = None
            await self.start()
            for reader in [r for r in self._readers if r.active]:
                await self._attach(reader)


__all__ = [
    "BrokerConfig",
    "MessageHandler",
    "ROOMS_TOPIC",
    "RedisPubSubTransport",
    "Subscription",
    "TransportUnavailableError",
]
