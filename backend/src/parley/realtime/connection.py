"""Low level WebSocket helpers shared by the gateway and the registry."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, TypeVar

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Send *data* unless the socket is gone; returns whether it was written."""

    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
    except (WebSocketDisconnect, RuntimeError) as exc:
        logger.debug("Failed to send websocket message: %s", exc)
        return False
    return True


async def receive_frame(websocket: WebSocket) -> str | bytes:
    """Receive one data frame, text or binary.

    Binary frames are handed on as bytes and validated like text frames.
    """

    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
    text = message.get("text")
    if text is not None:
        return text
    return message.get("bytes") or b""


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    ping_payload: dict[str, Any] | None = None,
) -> AsyncIterator[T]:
    """Yield frames from *receiver*, probing the peer with pings while it is idle.

    The iterator ends when the peer disconnects or a ping can no longer be
    delivered.
    """

    ping_payload = ping_payload or {"type": "ping"}
    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    last_activity = time.monotonic()
    last_ping: float | None = None

    while True:
        try:
            if timeout > 0:
                message = await asyncio.wait_for(receiver(), timeout=timeout)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break
            now = time.monotonic()
            due = interval <= 0 or (
                now - last_activity >= interval
                and (last_ping is None or now - last_ping >= interval)
            )
            if due:
                if not await safe_send_json(websocket, ping_payload):
                    break
                last_ping = now
            continue
        except (RuntimeError, WebSocketDisconnect):
            break
        last_activity = time.monotonic()
        last_ping = None
        yield message
