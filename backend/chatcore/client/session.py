"""WebSocket messaging client.

Drives one socket connection for a signed-in user and keeps a
:class:`ConversationProjector` in sync with what the server pushes.

Sends are optimistic: the provisional message is in the thread before the
frame leaves. Each send carries an ``ackId``; the matching ``ack`` frame
confirms or rejects it. A rejection, a ``message_error``, an ack timeout
and a transport failure all end in the same rollback, and the failure is
kept in :attr:`MessagingClient.failures` for a manual retry. Nothing is
retried automatically.

While connected the client sends a ``ping`` every ``keepalive_interval``
seconds so the server idle timeout only closes sockets that are really gone.

Usage:
    client = MessagingClient("ws://localhost:8000/ws", token, user_id, api=api)
    await client.connect()
    await client.open_conversation("u-42")
    await client.send_text("u-42", "Hi")
"""
import asyncio
import inspect
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol
from urllib.parse import urlencode

import websockets

from chatcore.chat.schemas import (
    ClientEvent,
    Message,
    MessageType,
    ReadReceipt,
    SendMessageRequest,
    ServerEvent,
    frame,
)
from chatcore.errors import (
    AuthError,
    ForbiddenError,
    MessagingError,
    NotFoundError,
    PersistenceError,
    SendTimeoutError,
    ValidationError,
)

from .api import MessagesApi
from .conversations import ConversationProjector
from .reconciliation import OptimisticThread

logger = logging.getLogger(__name__)

_ERROR_CODES = {
    cls.code: cls
    for cls in (AuthError, ValidationError, ForbiddenError, PersistenceError, NotFoundError)
}


def error_from_payload(data: dict) -> MessagingError:
    """Rebuild a typed error from an ``{error, code}`` payload."""
    code = data.get("code") or MessagingError.code
    error_cls = _ERROR_CODES.get(code, MessagingError)
    return error_cls(data.get("error") or "Send failed", code=code)


class Transport(Protocol):
    """What the client needs from a socket; a websockets connection fits."""

    async def send(self, data: str) -> None:
        ...

    async def recv(self) -> str:
        ...

    async def close(self) -> None:
        ...


@dataclass
class SendFailure:
    """A send that was rolled back, kept for a manual retry."""
    request: SendMessageRequest
    error: MessagingError
    temp_id: str


class MessagingClient:
    """Socket session plus projected conversation state for one user."""

    def __init__(
        self,
        url: str,
        token: str,
        user_id: str,
        *,
        api: Optional[MessagesApi] = None,
        ack_timeout: float = 10.0,
        auto_mark_read: bool = True,
        keepalive_interval: Optional[float] = 30.0,
    ) -> None:
        self.url = url
        self.token = token
        self.user_id = user_id
        self.api = api
        self.ack_timeout = ack_timeout
        self.auto_mark_read = auto_mark_read
        self.keepalive_interval = keepalive_interval

        self.projector = ConversationProjector(user_id)
        self.failures: List[SendFailure] = []

        self._transport: Optional[Transport] = None
        self._reader: Optional[asyncio.Task] = None
        self._keepalive: Optional[asyncio.Task] = None
        self._acks: Dict[str, asyncio.Future] = {}
        self._listeners: Dict[str, List[Callable[[dict], Any]]] = {}

    # =========================================================================
    # Connection
    # =========================================================================

    @property
    def connected(self) -> bool:
        return self._transport is not None

    async def connect(self, transport: Optional[Transport] = None) -> None:
        """Open the socket and start reading frames.

        Call again after a disconnect to reconnect; the server sends a fresh
        presence snapshot on every connect.
        """
        if self._transport is not None:
            await self.close()
        if transport is None:
            transport = await websockets.connect(f"{self.url}?{urlencode({'token': self.token})}")
        self._transport = transport
        self._reader = asyncio.create_task(self._read_loop(transport))
        if self.keepalive_interval and self.keepalive_interval > 0:
            self._keepalive = asyncio.create_task(self._keepalive_loop(transport))
        logger.info(f"Connected as {self.user_id}")

    async def close(self) -> None:
        transport, self._transport = self._transport, None
        if self._keepalive is not None:
            self._keepalive.cancel()
            try:
                await self._keepalive
            except asyncio.CancelledError:
                pass
            self._keepalive = None
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        if transport is not None:
            await transport.close()
        self._fail_pending_acks(MessagingError("Connection closed", code="transport_error"))

    def on(self, event: str, callback: Callable[[dict], Any]) -> None:
        """Register a callback for a server event (or ``send_failed``)."""
        self._listeners.setdefault(event, []).append(callback)

    async def _emit(self, event: str, data: dict) -> None:
        for callback in self._listeners.get(event, []):
            try:
                result = callback(data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Listener for {event} failed")

    async def _send_frame(self, event: ClientEvent, data: dict, ack_id: Optional[str] = None) -> None:
        if self._transport is None:
            raise MessagingError("Not connected", code="transport_error")
        await self._transport.send(json.dumps(frame(event, data, ack_id)))

    def _fail_pending_acks(self, error: MessagingError) -> None:
        acks, self._acks = self._acks, {}
        for future in acks.values():
            if not future.done():
                future.set_exception(error)

    async def _keepalive_loop(self, transport: Transport) -> None:
        """Ping every ``keepalive_interval`` so the server idle timer never fires."""
        while True:
            await asyncio.sleep(self.keepalive_interval)
            # Ends once this transport is replaced or lost
            if self._transport is not transport:
                return
            try:
                await transport.send(json.dumps(frame(ClientEvent.PING, {})))
            except websockets.ConnectionClosed as e:
                logger.info(f"Keepalive stopped: {e}")
                return
            except OSError as e:
                logger.warning(f"Keepalive ping failed: {e}")
                return

    async def _read_loop(self, transport: Transport) -> None:
        try:
            while True:
                raw = await transport.recv()
                try:
                    payload = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning(f"Dropping malformed frame: {raw[:50]!r}")
                    continue
                try:
                    await self._dispatch(payload)
                except (MessagingError, ValueError) as e:
                    logger.warning(f"Could not handle {payload.get('event')!r} frame: {e}")
        except websockets.ConnectionClosed as e:
            logger.info(f"Connection closed: {e}")
        except Exception:
            logger.exception("Reader failed")
        if self._transport is transport:
            self._transport = None
        self._fail_pending_acks(MessagingError("Connection lost", code="transport_error"))

    # =========================================================================
    # Incoming frames
    # =========================================================================

    async def _dispatch(self, payload: dict) -> None:
        event = payload.get("event")
        data = payload.get("data") or {}

        if event == ServerEvent.ACK.value:
            future = self._acks.get(payload.get("ackId"))
            if future is not None and not future.done():
                future.set_result(data)
            return

        if event == ServerEvent.RECEIVE_MESSAGE.value:
            message = Message.model_validate(data)
            self.projector.apply_message(message)
            if self.auto_mark_read and self.projector.visible_unread(message):
                await self.mark_read(message.senderId, [message.id])
        elif event == ServerEvent.MESSAGE_SENT.value:
            message = Message.model_validate(data)
            self.projector.thread(message.receiverId).confirm_by_content(message)
            self.projector.apply_message(message)
        elif event == ServerEvent.MESSAGE_ERROR.value:
            future = self._acks.get(data.get("ackId"))
            if future is not None and not future.done():
                future.set_result({"success": False, **data})
        elif event == ServerEvent.MESSAGE_READ.value:
            receipt = ReadReceipt.model_validate(data)
            self.projector.apply_read_receipt(receipt.messageId, receipt.readAt)
        elif event == ServerEvent.ONLINE_USERS.value:
            self.projector.apply_snapshot(data.get("userIds", []), int(data.get("version", 0)))
        elif event in (ServerEvent.USER_ONLINE.value, ServerEvent.USER_OFFLINE.value):
            self.projector.apply_presence(
                data.get("userId"),
                event == ServerEvent.USER_ONLINE.value,
                int(data.get("version", 0)),
            )
        elif event == ServerEvent.ERROR.value:
            logger.warning(f"Server error: {data.get('code')} {data.get('error')}")

        await self._emit(event, data)

    # =========================================================================
    # Sending
    # =========================================================================

    async def send(self, request: SendMessageRequest) -> Message:
        """Send optimistically and wait for the outcome.

        Returns:
            The canonical message, which has replaced the provisional one.

        Raises:
            MessagingError: The send failed; the provisional message has
                been removed and the failure recorded for retry.
        """
        request = request.model_copy(update={"senderId": self.user_id})
        thread = self.projector.thread(request.receiverId)
        provisional = thread.begin(request)

        try:
            if self.connected:
                data = await self._send_via_socket(request)
                if not data.get("success"):
                    raise error_from_payload(data)
                message = Message.model_validate(data["message"])
            elif self.api is not None:
                message = await self.api.send(request)
            else:
                raise MessagingError("Not connected", code="transport_error")
        except MessagingError as e:
            await self._rollback(thread, provisional.id, request, e)
            raise
        except Exception as e:
            error = MessagingError(f"Send failed: {e}", code="transport_error")
            await self._rollback(thread, provisional.id, request, error)
            raise error from e

        thread.confirm(provisional.id, message)
        self.projector.apply_message(message)
        return message

    async def _send_via_socket(self, request: SendMessageRequest) -> dict:
        ack_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._acks[ack_id] = future
        try:
            await self._send_frame(
                ClientEvent.SEND_MESSAGE, request.model_dump(mode="json", exclude_none=True), ack_id
            )
            return await asyncio.wait_for(future, timeout=self.ack_timeout)
        except asyncio.TimeoutError:
            raise SendTimeoutError(f"No acknowledgement within {self.ack_timeout}s")
        finally:
            self._acks.pop(ack_id, None)

    async def _rollback(
        self,
        thread: OptimisticThread,
        temp_id: str,
        request: SendMessageRequest,
        error: MessagingError,
    ) -> None:
        thread.rollback(temp_id)
        self.failures.append(SendFailure(request=request, error=error, temp_id=temp_id))
        logger.warning(f"Send to {request.receiverId} failed: {error.code} {error}")
        await self._emit("send_failed", {"request": request, "error": error})

    async def retry(self, failure: SendFailure) -> Message:
        """Re-send a failed request as a new attempt."""
        if failure in self.failures:
            self.failures.remove(failure)
        return await self.send(failure.request)

    async def send_text(self, receiver_id: str, content: str, project_id: Optional[str] = None) -> Message:
        return await self.send(SendMessageRequest(
            receiverId=receiver_id, content=content, messageType=MessageType.TEXT, projectId=project_id,
        ))

    async def send_file(self, receiver_id: str, urls: List[str], project_id: Optional[str] = None) -> Message:
        return await self.send(SendMessageRequest(
            receiverId=receiver_id, messageType=MessageType.FILE, attachments=list(urls), projectId=project_id,
        ))

    async def send_proposal(self, receiver_id: str, project_id: str, summary: str = "") -> Message:
        """Propose a project: ``attachments[0]`` carries the project id."""
        return await self.send(SendMessageRequest(
            receiverId=receiver_id,
            content=summary,
            messageType=MessageType.PROPOSAL,
            attachments=[project_id],
            projectId=project_id,
        ))

    # =========================================================================
    # Conversations and reading
    # =========================================================================

    async def refresh_conversations(self) -> None:
        if self.api is None:
            raise MessagingError("No REST client configured")
        self.projector.load(await self.api.conversations())

    async def open_conversation(self, counterparty: str, project_id: Optional[str] = None) -> List[Message]:
        """Show a thread and mark its unread incoming messages read."""
        history = None
        if self.api is not None:
            history = await self.api.thread(counterparty, project_id=project_id)
        unread = self.projector.open(counterparty, history)
        if unread and self.auto_mark_read:
            await self.mark_read(counterparty, unread)
        return self.projector.thread(counterparty).messages

    async def mark_read(self, counterparty: str, message_ids: List[str]) -> None:
        """Mark messages read locally and on the server (one batched frame)."""
        if not message_ids:
            return
        self.projector.mark_read_local(counterparty, message_ids)
        if self.connected:
            await self._send_frame(ClientEvent.MARK_AS_READ, {"messageIds": list(message_ids)})
        elif self.api is not None:
            for message_id in message_ids:
                await self.api.mark_read(message_id)

    async def request_online_users(self) -> None:
        await self._send_frame(ClientEvent.GET_ONLINE_USERS, {})
