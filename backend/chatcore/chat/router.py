"""Messaging router providing the WebSocket endpoint and presence lookup.

This module provides:
    - WebSocket /ws: Real-time messaging channel for one authenticated user
    - GET /presence/online: Online users snapshot

The WebSocket protocol supports:
    - Token authentication at handshake (query ``token`` or Bearer header)
    - Presence snapshot on connect, user_online / user_offline deltas
    - Sending messages with ack correlation
    - Read receipts (single id or batch)
    - Keepalive ping / pong and idle timeout

Protocol Frames (client → server):
    - send_message: {receiverId, content, messageType, attachments, projectId}
    - mark_as_read: {messageId} or {messageIds: [...]}
    - get_online_users: {}
    - ping: {}

Every frame is ``{"event", "data", "ackId"?}``. A request carrying an
``ackId`` is answered on the same connection with an ``ack`` frame.
"""
import asyncio
import json
import logging
from typing import Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PayloadError

from chatcore.auth.dependencies import extract_bearer, get_current_user
from chatcore.auth.service import AuthenticatedUser
from chatcore.config import get_config
from chatcore.errors import AuthError, MessagingError, ValidationError

from .dispatcher import dispatcher
from .manager import Connection, manager
from .receipts import tracker
from .schemas import ClientEvent, MarkReadRequest, SendMessageRequest, ServerEvent, frame

logger = logging.getLogger(__name__)

router = APIRouter()

# Application close codes (4000-4999 are free for private use)
WS_CLOSE_AUTH_FAILED = 4001
WS_CLOSE_IDLE_TIMEOUT = 4008

Handler = Callable[[Connection, dict, Optional[str]], Awaitable[None]]


def _first_error(e: PayloadError) -> str:
    errors = e.errors()
    if not errors:
        return "Invalid payload"
    loc = ".".join(str(p) for p in errors[0].get("loc", ()))
    return f"{loc}: {errors[0].get('msg')}" if loc else errors[0].get("msg", "Invalid payload")


# =============================================================================
# Event handlers
# =============================================================================


async def _reply_send_failure(
    connection: Connection, error: MessagingError, ack_id: Optional[str]
) -> None:
    """Report a failed send to the originating connection only."""
    payload = error.to_payload()
    if ack_id is not None:
        await connection.send(frame(ServerEvent.ACK, {"success": False, **payload}, ack_id))
    await connection.send(frame(ServerEvent.MESSAGE_ERROR, {**payload, "ackId": ack_id}))


async def handle_send_message(connection: Connection, data: dict, ack_id: Optional[str]) -> None:
    try:
        request = SendMessageRequest.model_validate(data)
    except PayloadError as e:
        await _reply_send_failure(connection, ValidationError(_first_error(e)), ack_id)
        return

    try:
        message = await dispatcher.send(connection.user, request, origin=connection)
    except MessagingError as e:
        logger.warning(f"[WS] Send from {connection.user_id} rejected: {e.code} {e}")
        await _reply_send_failure(connection, e, ack_id)
        return
    except Exception:
        logger.exception(f"[WS] Send from {connection.user_id} failed")
        await _reply_send_failure(
            connection, MessagingError("Internal server error", code="internal_error"), ack_id
        )
        return

    wire = message.to_wire()
    if ack_id is not None:
        await connection.send(frame(ServerEvent.ACK, {"success": True, "message": wire}, ack_id))
    else:
        await connection.send(frame(ServerEvent.MESSAGE_SENT, wire))


async def handle_mark_as_read(connection: Connection, data: dict, ack_id: Optional[str]) -> None:
    try:
        ids = MarkReadRequest.model_validate(data).ids()
    except PayloadError as e:
        raise ValidationError(_first_error(e))
    if not ids:
        raise ValidationError("messageId is required")

    if len(ids) == 1:
        receipts = [await tracker.mark_read(connection.user_id, ids[0])]
    else:
        receipts = await tracker.mark_many(connection.user_id, ids)

    if ack_id is not None:
        await connection.send(frame(
            ServerEvent.ACK,
            {"success": True, "receipts": [r.model_dump(mode="json") for r in receipts]},
            ack_id,
        ))


def _ack_field(ack_id: Optional[str]) -> dict:
    return {"ackId": ack_id} if ack_id is not None else {}


async def handle_get_online_users(connection: Connection, data: dict, ack_id: Optional[str]) -> None:
    await connection.send({**manager.snapshot_frame(connection.user_id), **_ack_field(ack_id)})


async def handle_ping(connection: Connection, data: dict, ack_id: Optional[str]) -> None:
    await connection.send(frame(ServerEvent.PONG, {}, ack_id))


EVENT_HANDLERS: Dict[str, Handler] = {
    ClientEvent.SEND_MESSAGE.value: handle_send_message,
    ClientEvent.MARK_AS_READ.value: handle_mark_as_read,
    ClientEvent.GET_ONLINE_USERS.value: handle_get_online_users,
    ClientEvent.PING.value: handle_ping,
}


async def handle_frame(connection: Connection, raw: str) -> None:
    """Decode one client frame and route it to its handler.

    Failures are reported to this connection as an ``error`` frame; the
    connection stays open.
    """
    try:
        message = json.loads(raw)
    except json.JSONDecodeError:
        await connection.send(frame(ServerEvent.ERROR, {"error": "Malformed JSON", "code": "bad_frame"}))
        return
    if not isinstance(message, dict):
        await connection.send(frame(ServerEvent.ERROR, {"error": "Frame must be an object", "code": "bad_frame"}))
        return

    event = message.get("event")
    ack_id = message.get("ackId")
    data = message.get("data") or {}
    logger.debug("[WS] %s received: event=%s", connection.user_id, event)

    handler = EVENT_HANDLERS.get(event) if isinstance(event, str) else None
    if handler is None:
        await connection.send(frame(
            ServerEvent.ERROR,
            {"error": f"Unknown event: {event}", "code": "unknown_event"},
            ack_id,
        ))
        return
    if not isinstance(data, dict):
        await connection.send(frame(
            ServerEvent.ERROR, ValidationError("data must be an object").to_payload(), ack_id
        ))
        return

    try:
        await handler(connection, data, ack_id)
    except MessagingError as e:
        logger.info(f"[WS] {event} from {connection.user_id} failed: {e.code} {e}")
        await connection.send(frame(ServerEvent.ERROR, e.to_payload(), ack_id))
    except Exception:
        logger.exception(f"[WS] {event} from {connection.user_id} raised")
        await connection.send(frame(
            ServerEvent.ERROR, {"error": "Internal server error", "code": "internal_error"}, ack_id
        ))


# =============================================================================
# Endpoints
# =============================================================================


@router.websocket("/ws")
async def websocket_messaging_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer token (handshake auth.token)"),
) -> None:
    """WebSocket endpoint for one user's messaging channel.

    Protocol Flow:
        1. Client connects with a token → Server verifies it
           (failure: close 4001 before accept)
        2. Server sends: {event: "online_users", data: {userIds, version}}
           → Others receive user_online if this is the user's first connection
        3. Client sends events until it disconnects or idles out (close 4008)
        4. On disconnect → Others receive user_offline if it was the last connection

    Args:
        websocket: The WebSocket connection.
        token: Token from the query string; the Authorization header is
            used when absent.
    """
    token = token or extract_bearer(websocket.headers.get("authorization"))
    try:
        user = manager.authenticate(token)
    except AuthError as e:
        logger.warning(f"[WS] Rejected handshake: {e}")
        await websocket.close(code=WS_CLOSE_AUTH_FAILED, reason=e.message)
        return

    connection = await manager.connect(websocket, user)
    idle_timeout = get_config().presence.idle_timeout_seconds

    try:
        while True:
            try:
                if idle_timeout > 0:
                    message = await asyncio.wait_for(websocket.receive(), timeout=idle_timeout)
                else:
                    message = await websocket.receive()
            except asyncio.TimeoutError:
                logger.info(f"[WS] Connection {connection.id} idle for {idle_timeout}s, closing")
                await websocket.close(code=WS_CLOSE_IDLE_TIMEOUT)
                break

            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            if message.get("text") is None:
                await connection.send(frame(
                    ServerEvent.ERROR,
                    {"error": "Only text frames are supported", "code": "bad_frame"},
                ))
                continue
            await handle_frame(connection, message["text"])
    except WebSocketDisconnect:
        logger.info(f"[WS] Connection {connection.id} for {user.id} disconnected")
    finally:
        await manager.disconnect(connection)


@router.get("/presence/online")
async def get_online_users(user: AuthenticatedUser = Depends(get_current_user)) -> dict:
    """Online users visible to the caller, with the registry version."""
    snapshot = manager.snapshot(user.id)
    return {"success": True, "data": {"userIds": snapshot.user_ids, "version": snapshot.version}}
