"""WebSocket connection manager for per-user messaging channels.

This module owns the lifecycle of every open socket: it authenticates the
handshake token, registers the connection in the presence registry,
announces presence changes, and delivers frames to all connections of a
user.

Key features:
    - One user may hold many simultaneous connections (tabs, devices)
    - user_online is sent only on the first connection, user_offline only
      when the last one closes
    - online_users snapshot delivered to every new connection
    - Versioned presence frames so clients can order snapshot vs. deltas
    - Concurrent delivery with asyncio.gather()
    - Automatic dead connection cleanup

Thread Safety:
    Presence state lives in :class:`PresenceRegistry`, which is lock
    protected. The manager itself keeps no other shared mutable state.
"""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from fastapi import WebSocket

from chatcore.auth.service import AuthenticatedUser, get_verifier
from chatcore.config import get_config
from chatcore.errors import MessagingError
from chatcore.presence.registry import PresenceRegistry, PresenceSnapshot
from chatcore.storage.service import MessageStore

from .schemas import ServerEvent, frame

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Connection:
    """One open socket, bound to exactly one user for its lifetime.

    Attributes:
        user: Identity verified at handshake.
        websocket: The underlying transport.
        id: Server-side connection id (for logs).
        connected_at: Unix timestamp of the handshake.
    """
    user: AuthenticatedUser
    websocket: WebSocket
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    connected_at: float = field(default_factory=time.time)

    @property
    def user_id(self) -> str:
        return self.user.id

    async def send(self, payload: dict) -> bool:
        """Send a frame to this connection with error handling.

        Returns:
            True if successful, False if the connection failed or did not
            accept the frame within ``chat.send_timeout_seconds``.
        """
        timeout = get_config().chat.send_timeout_seconds
        try:
            await asyncio.wait_for(self.websocket.send_json(payload), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"[WS] Connection {self.id} for {self.user_id} timed out after {timeout}s")
            return False
        except Exception as e:
            logger.debug(f"Failed to send to connection {self.id}: {e}")
            return False


class ConnectionManager:
    """Tracks open connections and fans frames out to them.

    Note:
        This is a singleton-style global instance. All WebSocket handlers
        share the same ConnectionManager so presence is consistent.
    """

    def __init__(self, registry: Optional[PresenceRegistry] = None) -> None:
        self.registry: PresenceRegistry[Connection] = registry or PresenceRegistry()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def authenticate(self, token: Optional[str]) -> AuthenticatedUser:
        """Validate a handshake token.

        Raises:
            AuthError: If the token is missing or invalid.
        """
        return get_verifier().verify(token)

    async def connect(self, websocket: WebSocket, user: AuthenticatedUser) -> Connection:
        """Accept a socket, register it and exchange presence.

        The new connection receives the online_users snapshot; if this is
        the user's first connection everyone else in scope receives
        user_online.
        """
        await websocket.accept()
        connection = Connection(user=user, websocket=websocket)
        change = self.registry.add(user.id, connection)

        try:
            MessageStore.get_instance().remember_user(
                user.id, user.name, user.email, user.avatar, user.role.value
            )
        except MessagingError as e:
            logger.warning(f"[WS] Could not cache profile for {user.id}: {e}")

        await connection.send(self.snapshot_frame(user.id))

        if change.transitioned:
            await self._broadcast_presence(
                ServerEvent.USER_ONLINE, user.id, change.version, exclude=connection
            )
        logger.info(
            f"[WS] Connection {connection.id} registered for {user.id} "
            f"({change.connection_count} open)"
        )
        return connection

    async def disconnect(self, connection: Connection) -> None:
        """Deregister a connection; announce offline if it was the last one.

        Safe to call more than once for the same connection.
        """
        change = self.registry.remove(connection.user_id, connection)
        if change is None:
            return
        logger.info(
            f"[WS] Connection {connection.id} closed for {connection.user_id} "
            f"({change.connection_count} left)"
        )
        if change.transitioned:
            await self._broadcast_presence(
                ServerEvent.USER_OFFLINE, connection.user_id, change.version
            )

    # =========================================================================
    # Presence
    # =========================================================================

    def is_online(self, user_id: str) -> bool:
        return self.registry.is_online(user_id)

    def snapshot(self, for_user_id: Optional[str] = None) -> PresenceSnapshot:
        """Online users visible to ``for_user_id`` under the configured scope."""
        snapshot = self.registry.snapshot()
        if for_user_id is None or get_config().presence.broadcast_scope == "all":
            return snapshot
        try:
            visible = set(MessageStore.get_instance().counterparties(for_user_id))
        except MessagingError as e:
            logger.warning(f"[Presence] Could not resolve snapshot for {for_user_id}: {e}")
            visible = set()
        return PresenceSnapshot(
            [u for u in snapshot.user_ids if u in visible], snapshot.version
        )

    def snapshot_frame(self, for_user_id: Optional[str] = None) -> dict:
        snapshot = self.snapshot(for_user_id)
        return frame(
            ServerEvent.ONLINE_USERS,
            {"userIds": snapshot.user_ids, "version": snapshot.version},
        )

    def _presence_audience(self, user_id: str) -> List[Connection]:
        if get_config().presence.broadcast_scope == "all":
            return self.registry.all_connections()
        try:
            counterparties = MessageStore.get_instance().counterparties(user_id)
        except MessagingError as e:
            logger.warning(f"[Presence] Could not resolve audience for {user_id}: {e}")
            return []
        audience = []
        for other in counterparties:
            audience.extend(self.registry.connections_for(other))
        return audience

    async def _broadcast_presence(
        self,
        event: ServerEvent,
        user_id: str,
        version: int,
        exclude: Optional[Connection] = None,
    ) -> None:
        connections = [
            c for c in self._presence_audience(user_id)
            if c is not exclude and c.user_id != user_id
        ]
        await self._deliver(connections, frame(event, {"userId": user_id, "version": version}))

    # =========================================================================
    # Delivery
    # =========================================================================

    async def send_to_user(
        self,
        user_id: str,
        payload: dict,
        exclude: Optional[Connection] = None,
    ) -> int:
        """Deliver a frame to every open connection of a user.

        Returns:
            Number of connections the frame reached (0 when offline).
        """
        connections = [c for c in self.registry.connections_for(user_id) if c is not exclude]
        return await self._deliver(connections, payload)

    async def _deliver(self, connections: Iterable[Connection], payload: dict) -> int:
        """Send to all connections concurrently, dropping the ones that fail."""
        connections = list(connections)
        if not connections:
            return 0

        results = await asyncio.gather(
            *[conn.send(payload) for conn in connections],
            return_exceptions=True
        )

        failed_connections = [
            conn for conn, success in zip(connections, results)
            if success is not True
        ]
        for conn in failed_connections:
            logger.debug(f"Removed dead connection {conn.id} for {conn.user_id}")
            await self.disconnect(conn)
        return len(connections) - len(failed_connections)

    def get_connection_count(self, user_id: Optional[str] = None) -> int:
        if user_id is None:
            return len(self.registry.all_connections())
        return len(self.registry.connections_for(user_id))


# Global singleton instance used by all WebSocket handlers
manager = ConnectionManager()
