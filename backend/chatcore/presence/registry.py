"""Process-wide presence registry.

Maps each user id to the set of connections that user currently has open.
It is the only cross-connection mutable state in the messaging core; all
mutation goes through :meth:`PresenceRegistry.add` and
:meth:`PresenceRegistry.remove`.

A user is *online* while at least one connection is registered. Every
online/offline transition bumps a version counter. Presence events and
snapshots carry that version so a client can tell whether a delta it
receives is older or newer than the snapshot it was given on connect.

Thread Safety:
    All methods take a single ``threading.Lock``. Critical sections are a
    few dict operations and never await, so the lock is safe to take from
    the event loop and from test threads alike.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Generic, Hashable, List, Optional, Set, TypeVar

logger = logging.getLogger(__name__)

C = TypeVar("C", bound=Hashable)


@dataclass(frozen=True)
class PresenceChange:
    """Result of an add/remove.

    Attributes:
        user_id: Whose connection set changed.
        transitioned: True if the user went offline→online (add) or
            online→offline (remove).
        version: Registry version after the change.
        connection_count: Connections the user has after the change.
    """
    user_id: str
    transitioned: bool
    version: int
    connection_count: int


@dataclass(frozen=True)
class PresenceSnapshot:
    user_ids: List[str]
    version: int


class PresenceRegistry(Generic[C]):
    """Concurrency-safe map of user id → open connection handles."""

    def __init__(self) -> None:
        self._connections: Dict[str, Set[C]] = {}
        self._version = 0
        self._lock = threading.Lock()

    def add(self, user_id: str, connection: C) -> PresenceChange:
        """Register a connection. Re-adding the same handle is a no-op."""
        with self._lock:
            conns = self._connections.setdefault(user_id, set())
            was_online = bool(conns)
            conns.add(connection)
            transitioned = not was_online
            if transitioned:
                self._version += 1
            change = PresenceChange(user_id, transitioned, self._version, len(conns))

        if transitioned:
            logger.info(f"[Presence] {user_id} online (v{change.version})")
        else:
            logger.debug(f"[Presence] {user_id} opened connection #{change.connection_count}")
        return change

    def remove(self, user_id: str, connection: C) -> Optional[PresenceChange]:
        """Deregister a connection.

        Returns:
            The change, or None if the connection was not registered
            (already removed by another path).
        """
        with self._lock:
            conns = self._connections.get(user_id)
            if not conns or connection not in conns:
                return None
            conns.discard(connection)
            transitioned = not conns
            if transitioned:
                del self._connections[user_id]
                self._version += 1
            change = PresenceChange(user_id, transitioned, self._version, len(conns))

        if transitioned:
            logger.info(f"[Presence] {user_id} offline (v{change.version})")
        return change

    def is_online(self, user_id: str) -> bool:
        with self._lock:
            return bool(self._connections.get(user_id))

    def snapshot(self) -> PresenceSnapshot:
        """Online user ids and the version they were read at."""
        with self._lock:
            return PresenceSnapshot(sorted(self._connections), self._version)

    def connections_for(self, user_id: str) -> List[C]:
        """Copy of the user's open connections (empty when offline)."""
        with self._lock:
            return list(self._connections.get(user_id, ()))

    def all_connections(self) -> List[C]:
        with self._lock:
            return [c for conns in self._connections.values() for c in conns]

    @property
    def version(self) -> int:
        with self._lock:
            return self._version

    def clear(self) -> None:
        """Forget every connection (tests, shutdown)."""
        with self._lock:
            self._connections.clear()
