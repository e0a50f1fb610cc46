"""Read receipts.

Marking a message read is idempotent: the flag flips once, and only the
call that flips it notifies the original sender with ``message_read``.
Only the receiver of a message may mark it read.
"""
import logging
from typing import List

from chatcore.errors import NotFoundError
from chatcore.storage.service import MessageStore

from .manager import ConnectionManager, manager
from .schemas import ReadReceipt, ServerEvent, frame

logger = logging.getLogger(__name__)


class ReadReceiptTracker:
    def __init__(self, connections: ConnectionManager) -> None:
        self.connections = connections

    async def mark_read(self, reader_id: str, message_id: str) -> ReadReceipt:
        """Mark one message read on behalf of its receiver.

        Raises:
            NotFoundError: Unknown message, or not addressed to ``reader_id``.
            PersistenceError: The store failed.
        """
        message, changed = MessageStore.get_instance().mark_read(message_id, reader_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")

        receipt = ReadReceipt(messageId=message.id, readAt=message.readAt)
        if changed:
            await self.connections.send_to_user(
                message.senderId,
                frame(ServerEvent.MESSAGE_READ, receipt.model_dump(mode="json")),
            )
            logger.debug(f"[Receipts] {message.id} read by {reader_id}")
        return receipt

    async def mark_many(self, reader_id: str, message_ids: List[str]) -> List[ReadReceipt]:
        """Mark a batch; ids that are unknown or foreign are skipped."""
        receipts = []
        for message_id in message_ids:
            try:
                receipts.append(await self.mark_read(reader_id, message_id))
            except NotFoundError:
                logger.debug(f"[Receipts] Skipping {message_id} for {reader_id}")
        return receipts


tracker = ReadReceiptTracker(manager)
