"""httpx client for the messaging REST endpoints.

Usage:
    async with MessagesApi("https://chat.example.com", token) as api:
        conversations = await api.conversations()
        thread = await api.thread("u-42", project_id="p-7")
        url = await api.upload("invoice.pdf", data, "application/pdf")
"""
import logging
from typing import List, Optional, Type
from urllib.parse import urljoin

import httpx

from chatcore.chat.schemas import Conversation, Message, ReadReceipt, SendMessageRequest
from chatcore.errors import (
    AuthError,
    ForbiddenError,
    MessagingError,
    NotFoundError,
    PersistenceError,
    UploadError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_STATUS_ERRORS = {
    400: ValidationError,
    401: AuthError,
    403: ForbiddenError,
    404: NotFoundError,
}


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("error") or body)
    return str(body)


class MessagesApi:
    """Bearer-authenticated REST calls used by the messaging client."""

    def __init__(
        self,
        base_url: str,
        token: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self) -> "MessagesApi":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"}

    async def _request(
        self,
        method: str,
        path: str,
        default_error: Type[MessagingError] = MessagingError,
        **kwargs,
    ) -> dict:
        try:
            response = await self._client.request(
                method, f"{self.base_url}{path}", headers=self._headers, **kwargs
            )
        except httpx.HTTPError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise default_error(f"Request failed: {e}") from e

        if response.is_error:
            error_cls = _STATUS_ERRORS.get(response.status_code, default_error)
            if default_error is UploadError and response.status_code != 401:
                error_cls = UploadError
            raise error_cls(_detail(response))
        return response.json()

    def resolve_attachment_url(self, url: str) -> str:
        """Absolute URL for an attachment; relative paths resolve against the API base."""
        if url.startswith(("http://", "https://")):
            return url
        return urljoin(self.base_url + "/", url.lstrip("/"))

    async def conversations(self) -> List[Conversation]:
        body = await self._request("GET", "/messages/conversations")
        return [Conversation.model_validate(c) for c in body.get("data", [])]

    async def thread(self, other_user_id: str, project_id: Optional[str] = None) -> List[Message]:
        params = {"otherUserId": other_user_id}
        if project_id:
            params["projectId"] = project_id
        body = await self._request("GET", "/messages", params=params)
        return [Message.model_validate(m) for m in body.get("data", [])]

    async def mark_read(self, message_id: str) -> ReadReceipt:
        body = await self._request("PUT", f"/messages/{message_id}/read")
        return ReadReceipt.model_validate(body["data"])

    async def send(self, request: SendMessageRequest) -> Message:
        """HTTP fallback for sends when no socket is open."""
        body = await self._request(
            "POST",
            "/messages/send",
            default_error=PersistenceError,
            json=request.model_dump(mode="json", exclude_none=True),
        )
        return Message.model_validate(body["data"])

    async def upload(self, filename: str, content: bytes, mime_type: str) -> str:
        """Upload an attachment and return its absolute ``fileUrl``.

        Raises:
            UploadError: Any failure; no message is created.
        """
        body = await self._request(
            "POST",
            "/messages/upload",
            default_error=UploadError,
            files={"file": (filename, content, mime_type)},
        )
        if not body.get("success") or not body.get("fileUrl"):
            raise UploadError("Upload response did not include a fileUrl")
        return self.resolve_attachment_url(body["fileUrl"])
