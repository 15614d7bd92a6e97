"""WebSocket gateway for the real-time chat relay."""

from __future__ import annotations

import asyncio
import logging
from functools import partial

from fastapi import APIRouter, WebSocket, status
from fastapi.websockets import WebSocketDisconnect, WebSocketState

from app.config import get_settings
from parley.realtime import AuthenticationFailure, RelayError, get_relay
from parley.realtime.connection import iter_keepalive_messages, receive_frame, safe_send_json
from parley.realtime.events import AuthenticateEvent, ErrorEvent, parse_inbound
from parley.realtime.relay import EventRelay
from parley.realtime.stores import Identity

router = APIRouter(prefix="/ws", tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)


def _handshake_token(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    return token or None


async def _reject(websocket: WebSocket, exc: RelayError, *, event: str | None = None) -> None:
    if websocket.application_state == WebSocketState.CONNECTED:
        await safe_send_json(
            websocket,
            ErrorEvent(event=event, reason=exc.reason, detail=exc.detail).to_payload(),
        )
    try:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=exc.detail)
    except RuntimeError:
        logger.debug("Socket already closed while rejecting handshake")


async def _await_authenticate_frame(websocket: WebSocket, relay: EventRelay) -> Identity:
    timeout = float(settings.websocket_handshake_timeout_seconds or 0) or None
    try:
        raw = await asyncio.wait_for(receive_frame(websocket), timeout=timeout)
    except asyncio.TimeoutError:
        raise AuthenticationFailure("Authentication timed out", event="authenticate") from None
    event = parse_inbound(raw)
    if not isinstance(event, AuthenticateEvent):
        raise AuthenticationFailure("Authenticate first", event=event.type)
    return await relay.authenticate(event.token)


@router.websocket("")
async def websocket_gateway(websocket: WebSocket) -> None:
    """Authenticate the socket, then relay conversation events until it drops.

    The credential is taken from the ``token`` query parameter or an
    ``Authorization: Bearer`` header. Without one the socket is accepted and
    the first frame must be ``{"type": "authenticate", "token": ...}``.
    """

    relay = get_relay()
    token = _handshake_token(websocket)

    if token is not None:
        try:
            user = await relay.authenticate(token)
        except AuthenticationFailure as exc:
            await _reject(websocket, exc)
            return
        await websocket.accept()
    else:
        await websocket.accept()
        try:
            user = await _await_authenticate_frame(websocket, relay)
        except WebSocketDisconnect:
            return
        except RelayError as exc:
            await _reject(websocket, exc, event=exc.event or "authenticate")
            return

    try:
        session = await relay.open_session(websocket, user)
    except RelayError as exc:
        logger.warning("Could not open session for user %s: %s", user.id, exc.reason)
        await safe_send_json(
            websocket, ErrorEvent(event=None, reason=exc.reason, detail=exc.detail).to_payload()
        )
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    try:
        async for raw_message in iter_keepalive_messages(
            websocket,
            partial(receive_frame, websocket),
            timeout_seconds=settings.websocket_keepalive_timeout_seconds,
            ping_interval_seconds=settings.websocket_ping_interval_seconds,
        ):
            if not raw_message:
                continue
            await relay.dispatch(session, raw_message)
    finally:
        await relay.close_session(session)
