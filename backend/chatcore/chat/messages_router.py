"""REST endpoints for conversations, thread history and read marks.

This module provides:
    - GET /messages/conversations: Conversation list for the caller
    - GET /messages?otherUserId=: Thread history, optionally per project
    - PUT /messages/{message_id}/read: Durable read mark
    - POST /messages/send: HTTP fallback for sends without an open socket

All routes require ``Authorization: Bearer <token>``. Responses use the
envelope ``{"success": true, "data": ...}``.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from chatcore.auth.dependencies import get_current_user
from chatcore.auth.service import AuthenticatedUser
from chatcore.config import get_config
from chatcore.errors import MessagingError
from chatcore.storage.service import MessageStore

from .dispatcher import dispatcher
from .manager import manager
from .receipts import tracker
from .schemas import SendMessageRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["messages"])


def _http_error(e: MessagingError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


@router.get("/conversations")
async def list_conversations(user: AuthenticatedUser = Depends(get_current_user)) -> dict:
    """Conversations of the caller, most recent first, with live presence."""
    try:
        conversations = MessageStore.get_instance().list_conversations(user.id)
    except MessagingError as e:
        raise _http_error(e)

    data = []
    for conversation in conversations:
        conversation.online = manager.is_online(conversation.userId)
        data.append(conversation.model_dump(mode="json"))
    return {"success": True, "data": data}


@router.get("")
async def get_thread(
    otherUserId: str = Query(..., min_length=1, description="Counterparty user ID"),
    projectId: Optional[str] = Query(None, description="Only messages about this project"),
    limit: Optional[int] = Query(None, ge=1, description="Most recent N messages"),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict:
    """Messages between the caller and ``otherUserId``, oldest first.

    Example:
        GET /messages?otherUserId=u-42
        GET /messages?otherUserId=u-42&projectId=p-7
    """
    page_limit = get_config().chat.thread_page_limit
    limit = min(limit or page_limit, page_limit)
    try:
        messages = MessageStore.get_instance().get_thread(
            user.id, otherUserId, project_id=projectId, limit=limit
        )
    except MessagingError as e:
        raise _http_error(e)
    return {"success": True, "data": [m.to_wire() for m in messages]}


@router.put("/{message_id}/read")
async def mark_message_read(
    message_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict:
    """Mark a message read; notifies the sender once, whichever path wins."""
    try:
        receipt = await tracker.mark_read(user.id, message_id)
    except MessagingError as e:
        raise _http_error(e)
    return {"success": True, "data": receipt.model_dump(mode="json")}


@router.post("/send")
async def send_message(
    request: SendMessageRequest,
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict:
    """Send without a socket. Delivery to open connections is identical."""
    try:
        MessageStore.get_instance().remember_user(
            user.id, user.name, user.email, user.avatar, user.role.value
        )
        message = await dispatcher.send(user, request)
    except MessagingError as e:
        logger.warning(f"[Dispatch] HTTP send from {user.id} rejected: {e.code} {e}")
        raise _http_error(e)
    return {"success": True, "data": message.to_wire()}
