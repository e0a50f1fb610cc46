"""Two-phase attachment flow: upload, then send exactly once.

    pending = await pipeline.upload("invoice.pdf", data, "application/pdf")
    # user picks a project, or none
    message = await pipeline.send(pending, receiver_id="u-42", project_id="p-7")

The upload is a plain HTTP request, unrelated to the socket. The resulting
URL is held as a :class:`PendingAttachment` until it is sent; sending
consumes it, and a consumed attachment cannot be sent again.
"""
import logging
from dataclasses import dataclass, field
from typing import Awaitable, List, Optional, Protocol

from chatcore.chat.schemas import Message
from chatcore.errors import AttachmentConsumedError

from .api import MessagesApi

logger = logging.getLogger(__name__)


class FileSender(Protocol):
    def send_file(
        self, receiver_id: str, urls: List[str], project_id: Optional[str] = None
    ) -> Awaitable[Message]:
        ...


@dataclass
class PendingAttachment:
    """An uploaded file's URL awaiting its single send."""
    file_url: str
    filename: str
    mime_type: str
    size_bytes: int
    _consumed: bool = field(default=False, repr=False)

    @property
    def consumed(self) -> bool:
        return self._consumed

    def consume(self) -> str:
        """Take the URL for a send.

        Raises:
            AttachmentConsumedError: If it was already sent or discarded.
        """
        if self._consumed:
            raise AttachmentConsumedError(f"Attachment {self.filename} was already used")
        self._consumed = True
        return self.file_url


class AttachmentPipeline:
    """Uploads files and turns each upload into at most one file message."""

    def __init__(self, api: MessagesApi, sender: FileSender) -> None:
        self.api = api
        self.sender = sender
        self.pending: Optional[PendingAttachment] = None

    async def upload(self, filename: str, content: bytes, mime_type: str) -> PendingAttachment:
        """Upload a file; the result replaces any attachment still pending.

        Raises:
            UploadError: The upload failed. Nothing is pending afterwards.
        """
        if self.pending is not None:
            self.discard()
        file_url = await self.api.upload(filename, content, mime_type)
        self.pending = PendingAttachment(
            file_url=file_url,
            filename=filename,
            mime_type=mime_type,
            size_bytes=len(content),
        )
        logger.debug(f"Attachment pending: {filename} -> {file_url}")
        return self.pending

    async def send(
        self,
        receiver_id: str,
        project_id: Optional[str] = None,
        attachment: Optional[PendingAttachment] = None,
    ) -> Message:
        """Send a pending attachment as a ``file`` message.

        The attachment is consumed before the send is issued, so a failed
        send does not make it reusable; upload again to retry.

        Raises:
            AttachmentConsumedError: Nothing pending, or already used.
        """
        attachment = attachment or self.pending
        if attachment is None:
            raise AttachmentConsumedError("No pending attachment")
        file_url = attachment.consume()
        if attachment is self.pending:
            self.pending = None
        return await self.sender.send_file(receiver_id, [file_url], project_id=project_id)

    def discard(self) -> None:
        """Drop the pending attachment without sending it."""
        if self.pending is not None and not self.pending.consumed:
            self.pending.consume()
        self.pending = None
