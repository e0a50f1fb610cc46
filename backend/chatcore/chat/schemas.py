"""Wire and domain models for chat messages.

On the wire a message keeps the flat shape clients already speak
(``content`` + ``messageType`` + ``attachments``). Inside the core each
message type is handled through a typed body:

    TextBody      the text
    FileBody      the uploaded file URLs
    SystemBody    a reference payload and an optional note
    ProposalBody  the referenced project and an optional summary

so nothing downstream has to sniff ``attachments[0]`` to know what it holds.
"""
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from chatcore.errors import ValidationError

# Prefix for client-side provisional ids; the server never issues these.
TEMP_ID_PREFIX = "temp-"


class MessageType(str, Enum):
    """Type of chat message.

    Attributes:
        TEXT: Regular text message.
        FILE: One or more uploaded files (attachments hold URLs).
        SYSTEM: Platform notice; attachments[0] holds a reference id.
        PROPOSAL: Project proposal; attachments[0] holds the project id.
    """
    TEXT = "text"
    FILE = "file"
    SYSTEM = "system"
    PROPOSAL = "proposal"


# =============================================================================
# Typed bodies
# =============================================================================


class TextBody(BaseModel):
    kind: Literal["text"] = "text"
    text: str = Field(..., min_length=1)


class FileBody(BaseModel):
    kind: Literal["file"] = "file"
    urls: List[str] = Field(..., min_length=1)


class SystemBody(BaseModel):
    kind: Literal["system"] = "system"
    reference: str = Field(..., min_length=1)
    note: str = ""


class ProposalBody(BaseModel):
    kind: Literal["proposal"] = "proposal"
    projectRef: str = Field(..., min_length=1)
    summary: str = ""


MessageBody = Annotated[
    Union[TextBody, FileBody, SystemBody, ProposalBody],
    Field(discriminator="kind"),
]


def body_from_fields(
    message_type: MessageType,
    content: str,
    attachments: List[str],
) -> Union[TextBody, FileBody, SystemBody, ProposalBody]:
    """Build the typed body for a flat (content, type, attachments) triple.

    Raises:
        ValidationError: If the fields do not form a well-formed message of
            that type.
    """
    content = content or ""
    attachments = [a for a in (attachments or []) if a]

    if message_type == MessageType.TEXT:
        if not content.strip():
            raise ValidationError("Text messages require non-empty content")
        if attachments:
            raise ValidationError("Text messages cannot carry attachments")
        return TextBody(text=content)

    if message_type == MessageType.FILE:
        if not attachments:
            raise ValidationError("File messages require at least one attachment")
        if content.strip():
            raise ValidationError("File messages cannot carry text content")
        return FileBody(urls=attachments)

    if len(attachments) != 1:
        raise ValidationError(
            f"{message_type.value} messages require exactly one reference in attachments"
        )
    if message_type == MessageType.SYSTEM:
        return SystemBody(reference=attachments[0], note=content)
    return ProposalBody(projectRef=attachments[0], summary=content)


def fields_from_body(body: Union[TextBody, FileBody, SystemBody, ProposalBody]) -> tuple:
    """Inverse of :func:`body_from_fields`: (type, content, attachments)."""
    if isinstance(body, TextBody):
        return MessageType.TEXT, body.text, []
    if isinstance(body, FileBody):
        return MessageType.FILE, "", list(body.urls)
    if isinstance(body, SystemBody):
        return MessageType.SYSTEM, body.note, [body.reference]
    return MessageType.PROPOSAL, body.summary, [body.projectRef]


# =============================================================================
# Messages
# =============================================================================


class Message(BaseModel):
    """A persisted (or, client-side, provisional) chat message.

    Messages are immutable after creation except for ``isRead``/``readAt``,
    which flip once when the receiver reads the message.
    """
    id: str = Field(..., description="Server-assigned id, or temp-* while provisional")
    content: str = Field(default="", description="Text content (may be empty)")
    senderId: str = Field(..., description="User ID of the sender")
    receiverId: str = Field(..., description="User ID of the receiver")
    messageType: MessageType = Field(default=MessageType.TEXT)
    attachments: List[str] = Field(default_factory=list)
    projectId: Optional[str] = Field(default=None, description="Project context")
    isRead: bool = False
    readAt: Optional[datetime] = None
    createdAt: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_provisional(self) -> bool:
        return self.id.startswith(TEMP_ID_PREFIX)

    @property
    def body(self) -> Union[TextBody, FileBody, SystemBody, ProposalBody]:
        return body_from_fields(self.messageType, self.content, self.attachments)

    def counterparty(self, self_id: str) -> str:
        """The other participant from ``self_id``'s point of view."""
        return self.receiverId if self.senderId == self_id else self.senderId

    def preview(self, limit: int = 80) -> str:
        """Short text for conversation lists."""
        if self.messageType == MessageType.TEXT:
            text = self.content
        elif self.messageType == MessageType.FILE:
            text = "Attachment" if len(self.attachments) == 1 else f"{len(self.attachments)} attachments"
        elif self.messageType == MessageType.PROPOSAL:
            text = self.content or "Project proposal"
        else:
            text = self.content or "System notice"
        return text if len(text) <= limit else text[: limit - 1] + "…"

    def to_wire(self) -> dict:
        return self.model_dump(mode="json")


def new_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


class SendMessageRequest(BaseModel):
    """Payload of a ``send_message`` request.

    Clients send the flat shape; :meth:`to_body` validates it into a typed
    body. ``senderId`` is optional on REST (the token decides) but must
    match the connection's user when given.
    """
    senderId: Optional[str] = None
    receiverId: str = Field(..., min_length=1)
    content: str = ""
    messageType: MessageType = MessageType.TEXT
    attachments: List[str] = Field(default_factory=list)
    projectId: Optional[str] = None

    def to_body(self) -> Union[TextBody, FileBody, SystemBody, ProposalBody]:
        return body_from_fields(self.messageType, self.content, self.attachments)


class MarkReadRequest(BaseModel):
    """Payload of ``mark_as_read``: a single id or a batch."""
    messageId: Optional[str] = None
    messageIds: List[str] = Field(default_factory=list)

    def ids(self) -> List[str]:
        ids = list(self.messageIds)
        if self.messageId:
            ids.insert(0, self.messageId)
        # de-duplicate, keep order
        return list(dict.fromkeys(i for i in ids if i))


# =============================================================================
# Conversations
# =============================================================================


class Conversation(BaseModel):
    """Derived thread between the caller and one counterparty."""
    userId: str = Field(..., description="Counterparty user ID")
    name: str = ""
    email: str = ""
    avatar: Optional[str] = None
    role: Optional[str] = None
    lastMessage: Optional[str] = None
    lastMessageType: Optional[MessageType] = None
    lastMessageAt: Optional[datetime] = None
    unreadCount: int = 0
    online: bool = False


class ReadReceipt(BaseModel):
    messageId: str
    readAt: datetime


# =============================================================================
# Socket frames
# =============================================================================


class ServerEvent(str, Enum):
    RECEIVE_MESSAGE = "receive_message"
    MESSAGE_SENT = "message_sent"
    MESSAGE_ERROR = "message_error"
    MESSAGE_READ = "message_read"
    USER_ONLINE = "user_online"
    USER_OFFLINE = "user_offline"
    ONLINE_USERS = "online_users"
    ACK = "ack"
    PONG = "pong"
    ERROR = "error"


class ClientEvent(str, Enum):
    SEND_MESSAGE = "send_message"
    MARK_AS_READ = "mark_as_read"
    GET_ONLINE_USERS = "get_online_users"
    PING = "ping"


def frame(event: str, data: Optional[dict] = None, ack_id: Optional[str] = None) -> dict:
    """Build a socket frame ``{"event", "data"[, "ackId"]}``."""
    payload = {"event": event.value if isinstance(event, Enum) else event, "data": data or {}}
    if ack_id is not None:
        payload["ackId"] = ack_id
    return payload
