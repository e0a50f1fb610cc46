"""Error taxonomy for the messaging core.

Every failure a client can observe maps to one of these classes. The
WebSocket handler turns them into ``message_error`` / ``error`` frames for
the originating connection only; REST routes turn them into HTTP errors.

    MessagingError
    ├── AuthError               bad or expired token, connection refused
    ├── ValidationError         malformed send payload, nothing persisted
    │   ├── ForbiddenError      senderId does not match the connection
    │   └── AttachmentConsumedError
    ├── PersistenceError        storage collaborator failure
    ├── NotFoundError           unknown or foreign message
    ├── UploadError             attachment upload failure
    └── SendTimeoutError        client gave up waiting for an ack
"""
from typing import Optional


class MessagingError(Exception):
    """Base class for all messaging core errors.

    Attributes:
        code: Stable machine-readable identifier sent over the wire.
        status_code: HTTP status used when the error surfaces over REST.
    """

    code = "messaging_error"
    status_code = 500

    def __init__(self, message: str = "", *, code: Optional[str] = None) -> None:
        super().__init__(message or self.__class__.__name__)
        if code:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)

    def to_payload(self) -> dict:
        return {"error": self.message, "code": self.code}


class AuthError(MessagingError):
    code = "auth_error"
    status_code = 401


class ValidationError(MessagingError):
    code = "validation_error"
    status_code = 400


class ForbiddenError(ValidationError):
    code = "forbidden"
    status_code = 403


class AttachmentConsumedError(ValidationError):
    code = "attachment_consumed"


class PersistenceError(MessagingError):
    code = "persistence_error"
    status_code = 500


class NotFoundError(MessagingError):
    code = "not_found"
    status_code = 404


class UploadError(MessagingError):
    code = "upload_error"
    status_code = 400


class SendTimeoutError(MessagingError):
    code = "timeout"
    status_code = 504
