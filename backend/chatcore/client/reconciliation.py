"""Optimistic thread state for one conversation.

A send shows up in the thread immediately as a provisional message with a
``temp-`` id. Each provisional entry is recorded in a small transaction
log; the send then settles one of two ways:

    confirm(temp_id, message)   replace the entry in place with the
                                canonical message
    rollback(temp_id)           remove the entry

Whatever the failure (error ack, ``message_error``, timeout, transport
error) the same ``rollback`` runs. Once a send has settled its temp id is
gone from the thread.

Key features:
    - Confirmation replaces only the matching provisional entry, never
      every provisional entry in the thread
    - A failure removes only the failed entry and keeps everything else
    - Incoming messages are de-duplicated by id
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from chatcore.chat.schemas import Message, SendMessageRequest, new_temp_id

logger = logging.getLogger(__name__)


@dataclass
class PendingSend:
    """Transaction log entry for a send that has not settled."""
    temp_id: str
    request: SendMessageRequest
    started_at: float = field(default_factory=time.monotonic)


class OptimisticThread:
    """Visible thread between ``self_id`` and ``counterparty_id``."""

    def __init__(self, self_id: str, counterparty_id: str, messages: Optional[List[Message]] = None):
        self.self_id = self_id
        self.counterparty_id = counterparty_id
        self._messages: List[Message] = []
        self._pending: Dict[str, PendingSend] = {}
        if messages:
            self.load(messages)

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    @property
    def pending_ids(self) -> List[str]:
        return list(self._pending)

    def has_pending(self) -> bool:
        return bool(self._pending)

    def belongs(self, message: Message) -> bool:
        return {message.senderId, message.receiverId} == {self.self_id, self.counterparty_id}

    def _index_of(self, message_id: str) -> int:
        for i, m in enumerate(self._messages):
            if m.id == message_id:
                return i
        return -1

    # =========================================================================
    # Transactions
    # =========================================================================

    def begin(self, request: SendMessageRequest) -> Message:
        """Append a provisional message for ``request`` and log it."""
        provisional = Message(
            id=new_temp_id(),
            senderId=self.self_id,
            receiverId=request.receiverId,
            content=request.content,
            messageType=request.messageType,
            attachments=list(request.attachments),
            projectId=request.projectId,
        )
        self._messages.append(provisional)
        self._pending[provisional.id] = PendingSend(provisional.id, request)
        return provisional

    def confirm(self, temp_id: str, message: Message) -> bool:
        """Replace a provisional entry with its canonical message.

        If the canonical message is already in the thread (it arrived on
        another path first) the provisional entry is dropped instead.

        Returns:
            False if ``temp_id`` was not pending (already settled).
        """
        if self._pending.pop(temp_id, None) is None:
            return False

        index = self._index_of(temp_id)
        if self._index_of(message.id) >= 0:
            if index >= 0:
                del self._messages[index]
        elif index >= 0:
            self._messages[index] = message
        else:
            self._messages.append(message)
        return True

    def confirm_by_content(self, message: Message) -> Optional[str]:
        """Settle the oldest pending send that matches ``message``.

        Used for ``message_sent`` frames, which carry no ack id.

        Returns:
            The temp id that was confirmed, or None if nothing matched.
        """
        for temp_id, pending in self._pending.items():
            request = pending.request
            if (
                request.receiverId == message.receiverId
                and request.messageType == message.messageType
                and request.content == message.content
                and list(request.attachments) == list(message.attachments)
            ):
                self.confirm(temp_id, message)
                return temp_id
        return None

    def rollback(self, temp_id: str) -> Optional[Message]:
        """Remove a provisional entry. Idempotent.

        Returns:
            The removed provisional message, or None if it was already gone.
        """
        self._pending.pop(temp_id, None)
        index = self._index_of(temp_id)
        if index < 0:
            return None
        removed = self._messages.pop(index)
        logger.debug(f"Rolled back provisional message {temp_id}")
        return removed

    def request_for(self, temp_id: str) -> Optional[SendMessageRequest]:
        """The original request of a pending send (for a manual retry)."""
        pending = self._pending.get(temp_id)
        return pending.request if pending else None

    # =========================================================================
    # Incoming
    # =========================================================================

    def receive(self, message: Message) -> bool:
        """Append a canonical message unless it is already present.

        Returns:
            True if the message was added.
        """
        if message.is_provisional or not self.belongs(message):
            return False
        if self._index_of(message.id) >= 0:
            return False
        self._messages.append(message)
        return True

    def load(self, history: List[Message]) -> None:
        """Replace canonical history; unsettled provisional entries stay at the end."""
        provisional = [m for m in self._messages if m.id in self._pending]
        seen = set()
        self._messages = []
        for message in history:
            if message.id not in seen and self.belongs(message):
                seen.add(message.id)
                self._messages.append(message)
        self._messages.extend(provisional)

    def mark_read(self, message_id: str, read_at: Optional[datetime] = None) -> bool:
        """Set ``isRead`` on a message in this thread.

        Returns:
            True if the flag changed.
        """
        index = self._index_of(message_id)
        if index < 0 or self._messages[index].isRead:
            return False
        self._messages[index] = self._messages[index].model_copy(
            update={"isRead": True, "readAt": read_at}
        )
        return True

    def unread_incoming(self) -> List[str]:
        """Ids of unread messages addressed to ``self_id``, oldest first."""
        return [
            m.id for m in self._messages
            if m.receiverId == self.self_id and not m.isRead and not m.is_provisional
        ]
