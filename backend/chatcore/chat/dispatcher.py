"""Message dispatcher: validate, persist, then deliver.

A send is accepted only after the message store has committed it. The
receiver gets ``receive_message`` on every open connection; the sender's
other connections get ``message_sent`` so all tabs converge on the same
thread. The originating connection is answered by the caller (ack or
``message_sent``), never from here.

Ordering:
    Sends between the same (sender, receiver) pair are serialized from
    persist through delivery, so every receiver connection observes them
    in the order the store assigned.
"""
import asyncio
import logging
import weakref
from typing import Optional, Tuple

from chatcore.auth.service import AuthenticatedUser
from chatcore.config import get_config
from chatcore.errors import ForbiddenError, ValidationError
from chatcore.storage.service import MessageStore

from .manager import Connection, ConnectionManager, manager
from .schemas import Message, SendMessageRequest, ServerEvent, fields_from_body, frame

logger = logging.getLogger(__name__)


class MessageDispatcher:
    """Routes a send request from one user to another."""

    def __init__(self, connections: ConnectionManager) -> None:
        self.connections = connections
        self._pair_locks: "weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, sender_id: str, receiver_id: str) -> asyncio.Lock:
        key = (sender_id, receiver_id)
        lock = self._pair_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._pair_locks[key] = lock
        return lock

    def validate(self, sender: AuthenticatedUser, request: SendMessageRequest) -> tuple:
        """Check a request and return the normalized (type, content, attachments).

        Raises:
            ForbiddenError: ``senderId`` names someone other than ``sender``.
            ValidationError: Malformed body, self-addressed, or too long.
        """
        if request.senderId is not None and request.senderId != sender.id:
            raise ForbiddenError("senderId does not match the authenticated user")
        if request.receiverId == sender.id:
            raise ValidationError("Cannot send a message to yourself")

        max_length = get_config().chat.max_content_length
        if len(request.content or "") > max_length:
            raise ValidationError(f"Message content exceeds {max_length} characters")

        return fields_from_body(request.to_body())

    async def send(
        self,
        sender: AuthenticatedUser,
        request: SendMessageRequest,
        origin: Optional[Connection] = None,
    ) -> Message:
        """Persist and deliver a message.

        Args:
            sender: Identity of the authenticated sender.
            request: The flat send payload.
            origin: Connection the request came in on, if any. It is
                excluded from the sender echo.

        Returns:
            The persisted message with its canonical id.

        Raises:
            ForbiddenError / ValidationError: Nothing persisted, nothing delivered.
            PersistenceError: The store rejected the write; nothing delivered.
        """
        message_type, content, attachments = self.validate(sender, request)

        async with self._lock_for(sender.id, request.receiverId):
            message = MessageStore.get_instance().create_message(
                sender_id=sender.id,
                receiver_id=request.receiverId,
                message_type=message_type,
                content=content,
                attachments=attachments,
                project_id=request.projectId,
            )
            payload = message.to_wire()

            delivered = await self.connections.send_to_user(
                message.receiverId, frame(ServerEvent.RECEIVE_MESSAGE, payload)
            )
            if get_config().chat.echo_to_sender_tabs:
                await self.connections.send_to_user(
                    sender.id, frame(ServerEvent.MESSAGE_SENT, payload), exclude=origin
                )

        preview = content[:50] + "..." if len(content) > 50 else content
        logger.info(
            f"[Dispatch] {message.id} {sender.id} -> {message.receiverId} "
            f"type={message_type.value} delivered={delivered} preview={preview!r}"
        )
        return message


# Global dispatcher bound to the shared connection manager
dispatcher = MessageDispatcher(manager)
