"""DuckDB-based message store.

This is the storage collaborator the messaging core reads from and writes
to. It owns messages and a small profile cache of the users seen in
verified tokens; conversations are derived from messages on demand.

Database Schema:
    messages table:
        - seq: Creation order (sequence), defines thread order
        - id: Public message id, "msg-" + zero-padded seq (sorts in creation order)
        - sender_id / receiver_id: Participants
        - message_type: text, file, system, proposal
        - content: Text (may be empty)
        - attachments: VARCHAR[] of URLs or a reference id
        - project_id: Optional project context
        - is_read / read_at: Set once by the read-receipt tracker
        - created_at: UTC timestamp

    user_profiles table:
        - id, name, email, avatar, role, updated_at

Thread Safety:
    A DuckDB connection must not be used from two threads at once, so every
    statement runs under an instance lock. Statements are short; nothing
    holds the lock across an await.

Usage:
    store = MessageStore.get_instance()
    message = store.create_message(sender_id, receiver_id, MessageType.TEXT, "Hi", [])
    conversations = store.list_conversations(user_id)
"""
import logging
import threading
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import duckdb

from chatcore.chat.schemas import Conversation, Message, MessageType
from chatcore.config import get_config
from chatcore.errors import PersistenceError

logger = logging.getLogger(__name__)

_MESSAGE_COLUMNS = """
    id, sender_id, receiver_id, message_type, content, attachments,
    project_id, is_read, read_at, created_at
"""


def message_id_for(seq: int) -> str:
    """Public id for a sequence number; zero padded so ids sort in creation order."""
    return f"msg-{seq:016d}"


def _utcnow() -> datetime:
    # DuckDB TIMESTAMP is naive; everything stored is UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _row_to_message(row: tuple) -> Message:
    return Message(
        id=row[0],
        senderId=row[1],
        receiverId=row[2],
        messageType=MessageType(row[3]),
        content=row[4] or "",
        attachments=list(row[5] or []),
        projectId=row[6],
        isRead=bool(row[7]),
        readAt=_as_utc(row[8]),
        createdAt=_as_utc(row[9]),
    )


class MessageStore:
    """Singleton store for messages in DuckDB.

    Attributes:
        _instance: Singleton instance of the store.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["MessageStore"] = None
    _db_path: str = "messages.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Initialize the store and create the schema if needed.

        Args:
            db_path: Path to DuckDB file, or ":memory:".
        """
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.RLock()
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "MessageStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
                Defaults to ``storage.db_path`` from the config.
        """
        if cls._instance is None:
            if db_path is None:
                db_path = get_config().storage.db_path
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the connection and drop the singleton (for testing)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _execute(self, query: str, params=None):
        """Run a statement and return the cursor, wrapping driver errors."""
        with self._lock:
            try:
                return self._get_connection().execute(query, params or [])
            except duckdb.Error as e:
                logger.error(f"[Store] Query failed: {e}")
                raise PersistenceError(f"Storage failure: {e}") from e

    def _initialize_db(self) -> None:
        """Create tables, sequence and indexes (idempotent)."""
        self._execute("CREATE SEQUENCE IF NOT EXISTS messages_seq START 1")
        self._execute("""
            CREATE TABLE IF NOT EXISTS messages (
                seq BIGINT DEFAULT nextval('messages_seq') PRIMARY KEY,
                id VARCHAR NOT NULL UNIQUE,
                sender_id VARCHAR NOT NULL,
                receiver_id VARCHAR NOT NULL,
                message_type VARCHAR NOT NULL,
                content VARCHAR NOT NULL,
                attachments VARCHAR[] NOT NULL,
                project_id VARCHAR,
                is_read BOOLEAN NOT NULL DEFAULT FALSE,
                read_at TIMESTAMP,
                created_at TIMESTAMP NOT NULL
            )
        """)
        self._execute(
            "CREATE INDEX IF NOT EXISTS idx_messages_pair ON messages(sender_id, receiver_id)"
        )
        self._execute("""
            CREATE TABLE IF NOT EXISTS user_profiles (
                id VARCHAR PRIMARY KEY,
                name VARCHAR NOT NULL,
                email VARCHAR NOT NULL,
                avatar VARCHAR,
                role VARCHAR NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """)

    # =========================================================================
    # Messages
    # =========================================================================

    def create_message(
        self,
        sender_id: str,
        receiver_id: str,
        message_type: MessageType,
        content: str,
        attachments: List[str],
        project_id: Optional[str] = None,
    ) -> Message:
        """Persist a new message and return it with its canonical id.

        Raises:
            PersistenceError: If the write fails. Nothing is stored then.
        """
        with self._lock:
            seq = self._execute("SELECT nextval('messages_seq')").fetchone()[0]
            row = self._execute(
                f"""
                INSERT INTO messages
                    (seq, id, sender_id, receiver_id, message_type, content, attachments,
                     project_id, is_read, read_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, FALSE, NULL, ?)
                RETURNING {_MESSAGE_COLUMNS}
                """,
                [
                    seq,
                    message_id_for(seq),
                    sender_id,
                    receiver_id,
                    MessageType(message_type).value,
                    content or "",
                    list(attachments or []),
                    project_id,
                    _utcnow(),
                ],
            ).fetchone()
        return _row_to_message(row)

    def get_message(self, message_id: str) -> Optional[Message]:
        row = self._execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?",
            [message_id],
        ).fetchone()
        return _row_to_message(row) if row else None

    def mark_read(self, message_id: str, reader_id: str) -> Tuple[Optional[Message], bool]:
        """Flip ``is_read`` false→true for a message addressed to ``reader_id``.

        Returns:
            Tuple of (message, changed):
            - message: The message after the update, None if it does not
              exist or is not addressed to the reader.
            - changed: True only for the call that performed the transition.
        """
        with self._lock:
            row = self._execute(
                f"""
                UPDATE messages SET is_read = TRUE, read_at = ?
                WHERE id = ? AND receiver_id = ? AND NOT is_read
                RETURNING {_MESSAGE_COLUMNS}
                """,
                [_utcnow(), message_id, reader_id],
            ).fetchone()
            if row:
                return _row_to_message(row), True

            message = self.get_message(message_id)
            if message is None or message.receiverId != reader_id:
                return None, False
            return message, False

    def get_thread(
        self,
        user_id: str,
        other_user_id: str,
        project_id: Optional[str] = None,
        limit: int = 500,
    ) -> List[Message]:
        """Messages exchanged between two users, oldest first."""
        params = {"user": user_id, "other": other_user_id}
        project_filter = ""
        if project_id is not None:
            project_filter = "AND project_id = $project"
            params["project"] = project_id

        query = f"""
            SELECT {_MESSAGE_COLUMNS} FROM (
                SELECT * FROM messages
                WHERE ((sender_id = $user AND receiver_id = $other)
                    OR (sender_id = $other AND receiver_id = $user))
                  {project_filter}
                ORDER BY seq DESC
                LIMIT {int(limit)}
            ) ORDER BY seq ASC
        """
        rows = self._execute(query, params).fetchall()
        return [_row_to_message(r) for r in rows]

    def unread_count(self, user_id: str, other_user_id: str) -> int:
        """Messages from ``other_user_id`` to ``user_id`` not yet read."""
        return self._execute(
            """
            SELECT count(*) FROM messages
            WHERE receiver_id = ? AND sender_id = ? AND NOT is_read
            """,
            [user_id, other_user_id],
        ).fetchone()[0]

    def counterparties(self, user_id: str) -> List[str]:
        """Every user that has exchanged at least one message with ``user_id``."""
        rows = self._execute(
            """
            SELECT DISTINCT CASE WHEN sender_id = $user THEN receiver_id ELSE sender_id END
            FROM messages
            WHERE sender_id = $user OR receiver_id = $user
            """,
            {"user": user_id},
        ).fetchall()
        return [r[0] for r in rows]

    def list_conversations(self, user_id: str) -> List[Conversation]:
        """One entry per counterparty, most recent activity first.

        ``online`` is left False; presence is not the store's concern.
        """
        rows = self._execute(
            f"""
            WITH mine AS (
                SELECT *,
                    CASE WHEN sender_id = $user THEN receiver_id ELSE sender_id END AS counterparty
                FROM messages
                WHERE sender_id = $user OR receiver_id = $user
            ), ranked AS (
                SELECT *,
                    row_number() OVER (PARTITION BY counterparty ORDER BY seq DESC) AS rn,
                    sum(CASE WHEN receiver_id = $user AND NOT is_read THEN 1 ELSE 0 END)
                        OVER (PARTITION BY counterparty) AS unread
                FROM mine
            )
            SELECT r.counterparty, r.unread, p.name, p.email, p.avatar, p.role,
                   {", ".join("r." + c.strip() for c in _MESSAGE_COLUMNS.split(","))}
            FROM ranked r
            LEFT JOIN user_profiles p ON p.id = r.counterparty
            WHERE r.rn = 1
            ORDER BY r.seq DESC
            """,
            {"user": user_id},
        ).fetchall()

        conversations = []
        for row in rows:
            last = _row_to_message(row[6:])
            conversations.append(Conversation(
                userId=row[0],
                unreadCount=int(row[1] or 0),
                name=row[2] or "",
                email=row[3] or "",
                avatar=row[4],
                role=row[5],
                lastMessage=last.preview(),
                lastMessageType=last.messageType,
                lastMessageAt=last.createdAt,
            ))
        return conversations

    # =========================================================================
    # Profiles
    # =========================================================================

    def remember_user(
        self,
        user_id: str,
        name: str = "",
        email: str = "",
        avatar: Optional[str] = None,
        role: str = "customer",
    ) -> None:
        """Cache the profile claims of a verified token."""
        self._execute(
            """
            INSERT INTO user_profiles (id, name, email, avatar, role, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                name = excluded.name,
                email = excluded.email,
                avatar = excluded.avatar,
                role = excluded.role,
                updated_at = excluded.updated_at
            """,
            [user_id, name or "", email or "", avatar, role, _utcnow()],
        )

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
