"""Python client for the messaging service.

- MessagingClient: socket session with optimistic sends and ack correlation
- ConversationProjector: conversation list, unread counts, presence
- OptimisticThread: one thread with its provisional-entry transaction log
- AttachmentPipeline / PendingAttachment: upload then send exactly once
- MessagesApi: REST calls over httpx
"""
from .api import MessagesApi
from .attachments import AttachmentPipeline, PendingAttachment
from .conversations import ConversationProjector
from .reconciliation import OptimisticThread
from .session import MessagingClient, SendFailure

__all__ = [
    "AttachmentPipeline",
    "ConversationProjector",
    "MessagesApi",
    "MessagingClient",
    "OptimisticThread",
    "PendingAttachment",
    "SendFailure",
]
