"""Client-side projection of messages into conversations.

Keeps one :class:`OptimisticThread` per counterparty plus the summary a
conversation list needs: last message preview, unread count and presence.

Unread counts follow the server definition: messages addressed to this
user, from that counterparty, not yet read. A message id is counted once
however many times it is seen (push, history reload, another tab's echo).

Presence:
    The ``online_users`` snapshot is authoritative at connect time; deltas
    are authoritative after it. Deltas that arrive before the snapshot are
    buffered and replayed afterwards, and a delta is applied only if its
    version is newer than both the snapshot and the last delta seen for
    that user.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Tuple

from chatcore.chat.schemas import Conversation, Message

from .reconciliation import OptimisticThread

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _as_utc(value: Optional[datetime]) -> datetime:
    """Comparable UTC instant; naive values are taken as UTC."""
    if value is None:
        return _EPOCH
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ConversationProjector:
    """All conversations of one signed-in user."""

    def __init__(self, self_id: str) -> None:
        self.self_id = self_id
        self.active_counterparty: Optional[str] = None
        self._conversations: Dict[str, Conversation] = {}
        self._threads: Dict[str, OptimisticThread] = {}
        self._counted_unread: Dict[str, Set[str]] = {}

        self._online: Set[str] = set()
        self._snapshot_version: Optional[int] = None
        self._user_versions: Dict[str, int] = {}
        self._early_deltas: List[Tuple[str, bool, int]] = []

    # =========================================================================
    # Conversations
    # =========================================================================

    def load(self, conversations: List[Conversation]) -> None:
        """Seed summaries from ``GET /messages/conversations``."""
        for conversation in conversations:
            self._conversations[conversation.userId] = conversation.model_copy()
            if conversation.online:
                self._online.add(conversation.userId)
            else:
                self._online.discard(conversation.userId)

    def _conversation(self, counterparty: str) -> Conversation:
        if counterparty not in self._conversations:
            self._conversations[counterparty] = Conversation(userId=counterparty)
        return self._conversations[counterparty]

    def thread(self, counterparty: str) -> OptimisticThread:
        if counterparty not in self._threads:
            self._threads[counterparty] = OptimisticThread(self.self_id, counterparty)
        return self._threads[counterparty]

    def get(self, counterparty: str) -> Optional[Conversation]:
        conversation = self._conversations.get(counterparty)
        if conversation is None:
            return None
        return conversation.model_copy(update={"online": counterparty in self._online})

    def conversations(self) -> List[Conversation]:
        """Summaries, most recent activity first."""
        items = [self.get(cp) for cp in self._conversations]
        return sorted(items, key=lambda c: _as_utc(c.lastMessageAt), reverse=True)

    def unread_total(self) -> int:
        return sum(c.unreadCount for c in self._conversations.values())

    def _touch(self, conversation: Conversation, message: Message) -> None:
        if _as_utc(message.createdAt) >= _as_utc(conversation.lastMessageAt):
            conversation.lastMessage = message.preview()
            conversation.lastMessageType = message.messageType
            conversation.lastMessageAt = message.createdAt

    def _count_unread(self, counterparty: str, message: Message) -> None:
        if message.receiverId != self.self_id or message.isRead:
            return
        counted = self._counted_unread.setdefault(counterparty, set())
        if message.id not in counted:
            counted.add(message.id)
            self._conversation(counterparty).unreadCount += 1

    def apply_message(self, message: Message) -> bool:
        """Fold a canonical message (pushed or confirmed) into the projection.

        Returns:
            True if the message was new to its thread.
        """
        counterparty = message.counterparty(self.self_id)
        added = self.thread(counterparty).receive(message)
        conversation = self._conversation(counterparty)
        self._touch(conversation, message)
        if added:
            self._count_unread(counterparty, message)
        return added

    # =========================================================================
    # Reading
    # =========================================================================

    def open(self, counterparty: str, history: Optional[List[Message]] = None) -> List[str]:
        """Make ``counterparty`` the visible thread.

        Args:
            counterparty: User whose thread is opened.
            history: Thread history from the server, if freshly fetched. It
                becomes the authoritative source for the unread count.

        Returns:
            Ids of unread incoming messages now visible; the caller marks
            them read.
        """
        self.active_counterparty = counterparty
        thread = self.thread(counterparty)
        conversation = self._conversation(counterparty)
        if history is not None:
            thread.load(history)
            unread = thread.unread_incoming()
            self._counted_unread[counterparty] = set(unread)
            conversation.unreadCount = len(unread)
            if thread.messages:
                self._touch(conversation, thread.messages[-1])
        return thread.unread_incoming()

    def close(self) -> None:
        self.active_counterparty = None

    def visible_unread(self, message: Message) -> bool:
        """True if ``message`` is unread, incoming, and in the open thread."""
        return (
            self.active_counterparty is not None
            and message.senderId == self.active_counterparty
            and message.receiverId == self.self_id
            and not message.isRead
        )

    def mark_read_local(self, counterparty: str, message_ids: List[str]) -> int:
        """Apply a local read mark; returns how many messages flipped."""
        thread = self.thread(counterparty)
        counted = self._counted_unread.setdefault(counterparty, set())
        conversation = self._conversation(counterparty)
        flipped = 0
        incoming = set(thread.unread_incoming())
        for message_id in message_ids:
            changed = thread.mark_read(message_id)
            # Uncounted ids are part of the server-seeded unreadCount.
            if message_id in counted or (changed and message_id in incoming):
                counted.discard(message_id)
                conversation.unreadCount = max(0, conversation.unreadCount - 1)
            if changed:
                flipped += 1
        return flipped

    def apply_read_receipt(self, message_id: str, read_at: Optional[datetime] = None) -> bool:
        """Apply a ``message_read`` for a message this user sent."""
        for thread in self._threads.values():
            if thread.mark_read(message_id, read_at):
                return True
        return False

    # =========================================================================
    # Presence
    # =========================================================================

    def is_online(self, user_id: str) -> bool:
        return user_id in self._online

    @property
    def presence_version(self) -> Optional[int]:
        return self._snapshot_version

    def apply_snapshot(self, user_ids: List[str], version: int) -> None:
        """Replace presence with an ``online_users`` snapshot."""
        self._online = set(user_ids)
        self._snapshot_version = version
        self._user_versions = {}
        early, self._early_deltas = self._early_deltas, []
        for user_id, online, delta_version in early:
            self.apply_presence(user_id, online, delta_version)

    def apply_presence(self, user_id: str, online: bool, version: int) -> bool:
        """Apply a ``user_online`` / ``user_offline`` delta.

        Returns:
            True if presence state changed as a result.
        """
        if self._snapshot_version is None:
            self._early_deltas.append((user_id, online, version))
            return False

        floor = max(self._snapshot_version, self._user_versions.get(user_id, -1))
        if version <= floor:
            logger.debug(f"Ignoring stale presence for {user_id} (v{version} <= v{floor})")
            return False

        self._user_versions[user_id] = version
        was_online = user_id in self._online
        if online:
            self._online.add(user_id)
        else:
            self._online.discard(user_id)
        return was_online != online
