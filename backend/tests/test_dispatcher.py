"""Tests for MessageDispatcher and ReadReceiptTracker with fake sockets."""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chatcore.auth.service import AuthenticatedUser
from chatcore.chat.dispatcher import MessageDispatcher
from chatcore.chat.manager import Connection, ConnectionManager
from chatcore.chat.receipts import ReadReceiptTracker
from chatcore.chat.schemas import MessageType, SendMessageRequest
from chatcore.config import ChatSettings, set_config
from chatcore.errors import ForbiddenError, NotFoundError, PersistenceError, ValidationError
from chatcore.storage.service import MessageStore

from conftest import make_config


def fake_connection(user_id: str) -> Connection:
    websocket = MagicMock()
    websocket.send_json = AsyncMock()
    return Connection(user=AuthenticatedUser(id=user_id), websocket=websocket)


def sent_frames(connection: Connection) -> list:
    return [c.args[0] for c in connection.websocket.send_json.call_args_list]


@pytest.fixture
def connections():
    return ConnectionManager()


@pytest.fixture
def dispatcher(connections):
    return MessageDispatcher(connections)


def register(connections: ConnectionManager, user_id: str) -> Connection:
    conn = fake_connection(user_id)
    connections.registry.add(user_id, conn)
    return conn


ALICE = AuthenticatedUser(id="alice")


class TestDispatch:
    @pytest.mark.asyncio
    async def test_delivers_to_every_receiver_connection(self, dispatcher, connections):
        bob1 = register(connections, "bob")
        bob2 = register(connections, "bob")

        message = await dispatcher.send(ALICE, SendMessageRequest(receiverId="bob", content="Hello"))

        for conn in (bob1, bob2):
            frames = sent_frames(conn)
            assert len(frames) == 1
            assert frames[0]["event"] == "receive_message"
            assert frames[0]["data"]["id"] == message.id

    @pytest.mark.asyncio
    async def test_offline_receiver_still_persists(self, dispatcher, store):
        message = await dispatcher.send(ALICE, SendMessageRequest(receiverId="bob", content="Hi"))
        assert store.get_message(message.id).content == "Hi"

    @pytest.mark.asyncio
    async def test_echo_skips_origin(self, dispatcher, connections):
        origin = register(connections, "alice")
        other_tab = register(connections, "alice")

        await dispatcher.send(ALICE, SendMessageRequest(receiverId="bob", content="Hi"), origin=origin)

        assert sent_frames(origin) == []
        assert [f["event"] for f in sent_frames(other_tab)] == ["message_sent"]

    @pytest.mark.asyncio
    async def test_echo_can_be_disabled(self, dispatcher, connections, tmp_path):
        set_config(make_config(tmp_path, chat=ChatSettings(echo_to_sender_tabs=False)))
        origin = register(connections, "alice")
        other_tab = register(connections, "alice")

        await dispatcher.send(ALICE, SendMessageRequest(receiverId="bob", content="Hi"), origin=origin)

        assert sent_frames(other_tab) == []

    @pytest.mark.asyncio
    async def test_persistence_failure_delivers_nothing(self, dispatcher, connections):
        bob = register(connections, "bob")
        with patch.object(MessageStore, "create_message", side_effect=PersistenceError("down")):
            with pytest.raises(PersistenceError):
                await dispatcher.send(ALICE, SendMessageRequest(receiverId="bob", content="Hi"))
        assert sent_frames(bob) == []

    @pytest.mark.asyncio
    async def test_spoofed_sender_is_forbidden(self, dispatcher):
        with pytest.raises(ForbiddenError):
            await dispatcher.send(
                ALICE, SendMessageRequest(senderId="mallory", receiverId="bob", content="Hi")
            )

    @pytest.mark.asyncio
    async def test_content_length_limit(self, dispatcher, tmp_path):
        set_config(make_config(tmp_path, chat=ChatSettings(max_content_length=5)))
        with pytest.raises(ValidationError):
            await dispatcher.send(ALICE, SendMessageRequest(receiverId="bob", content="toolong"))

    @pytest.mark.asyncio
    async def test_proposal_keeps_project_reference(self, dispatcher):
        message = await dispatcher.send(ALICE, SendMessageRequest(
            receiverId="bob",
            messageType=MessageType.PROPOSAL,
            attachments=["project-9"],
            projectId="project-9",
        ))
        assert message.messageType == MessageType.PROPOSAL
        assert message.attachments == ["project-9"]
        assert message.body.projectRef == "project-9"

    @pytest.mark.asyncio
    async def test_concurrent_sends_keep_pair_order(self, dispatcher, connections, store):
        bob = register(connections, "bob")

        await asyncio.gather(*[
            dispatcher.send(ALICE, SendMessageRequest(receiverId="bob", content=f"m{i}"))
            for i in range(20)
        ])

        delivered = [f["data"]["id"] for f in sent_frames(bob)]
        persisted = [m.id for m in store.get_thread("alice", "bob")]
        assert delivered == persisted

    @pytest.mark.asyncio
    async def test_failed_connection_is_dropped(self, dispatcher, connections):
        dead = register(connections, "bob")
        dead.websocket.send_json.side_effect = RuntimeError("socket gone")
        live = register(connections, "bob")

        await dispatcher.send(ALICE, SendMessageRequest(receiverId="bob", content="Hi"))

        assert connections.registry.connections_for("bob") == [live]

    @pytest.mark.asyncio
    async def test_stuck_connection_does_not_block_the_pair(self, dispatcher, connections, tmp_path):
        set_config(make_config(tmp_path, chat=ChatSettings(send_timeout_seconds=0.05)))
        stuck = register(connections, "bob")

        async def never_drains(payload):
            await asyncio.sleep(10)

        stuck.websocket.send_json = AsyncMock(side_effect=never_drains)
        live = register(connections, "bob")

        first = await asyncio.wait_for(
            dispatcher.send(ALICE, SendMessageRequest(receiverId="bob", content="one")), timeout=2
        )
        second = await asyncio.wait_for(
            dispatcher.send(ALICE, SendMessageRequest(receiverId="bob", content="two")), timeout=2
        )

        assert connections.registry.connections_for("bob") == [live]
        assert [f["data"]["id"] for f in sent_frames(live)] == [first.id, second.id]


class TestReadReceiptTracker:
    @pytest.mark.asyncio
    async def test_mark_read_notifies_sender_once(self, connections, store):
        tracker = ReadReceiptTracker(connections)
        alice = register(connections, "alice")
        message = store.create_message("alice", "bob", MessageType.TEXT, "Hi", [])

        first = await tracker.mark_read("bob", message.id)
        second = await tracker.mark_read("bob", message.id)

        assert first.readAt == second.readAt
        frames = sent_frames(alice)
        assert len(frames) == 1
        assert frames[0]["event"] == "message_read"
        assert frames[0]["data"]["messageId"] == message.id

    @pytest.mark.asyncio
    async def test_only_receiver_may_mark(self, connections, store):
        tracker = ReadReceiptTracker(connections)
        message = store.create_message("alice", "bob", MessageType.TEXT, "Hi", [])

        with pytest.raises(NotFoundError):
            await tracker.mark_read("alice", message.id)
        with pytest.raises(NotFoundError):
            await tracker.mark_read("bob", "no-such-id")
        assert store.get_message(message.id).isRead is False

    @pytest.mark.asyncio
    async def test_mark_many_skips_unknown(self, connections, store):
        tracker = ReadReceiptTracker(connections)
        ids = [store.create_message("alice", "bob", MessageType.TEXT, f"m{i}", []).id for i in range(3)]

        receipts = await tracker.mark_many("bob", ids[:2] + ["missing"] + ids[2:])

        assert [r.messageId for r in receipts] == ids
        assert store.unread_count("bob", "alice") == 0
