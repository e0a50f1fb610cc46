"""Tests for the DuckDB message store."""
import pytest

from chatcore.chat.schemas import MessageType
from chatcore.errors import PersistenceError
from chatcore.storage.service import MessageStore


@pytest.fixture
def store():
    """A store of its own, independent of the app singleton."""
    s = MessageStore(":memory:")
    yield s
    s.close()


def test_create_and_get_message(store):
    message = store.create_message("alice", "bob", MessageType.TEXT, "Hi", [], project_id="p1")

    assert message.id
    assert message.senderId == "alice"
    assert message.receiverId == "bob"
    assert message.projectId == "p1"
    assert message.isRead is False
    assert message.createdAt.tzinfo is not None
    assert store.get_message(message.id) == message


def test_get_unknown_message(store):
    assert store.get_message("missing") is None


def test_mark_read_transitions_once(store):
    message = store.create_message("alice", "bob", MessageType.TEXT, "Hi", [])

    updated, changed = store.mark_read(message.id, "bob")
    assert changed is True
    assert updated.isRead is True
    assert updated.readAt is not None

    again, changed_again = store.mark_read(message.id, "bob")
    assert changed_again is False
    assert again.readAt == updated.readAt


def test_mark_read_by_non_receiver(store):
    message = store.create_message("alice", "bob", MessageType.TEXT, "Hi", [])

    assert store.mark_read(message.id, "alice") == (None, False)
    assert store.mark_read("missing", "bob") == (None, False)
    assert store.get_message(message.id).isRead is False


def test_thread_is_ordered_and_scoped_to_pair(store):
    store.create_message("alice", "bob", MessageType.TEXT, "1", [])
    store.create_message("bob", "alice", MessageType.TEXT, "2", [])
    store.create_message("alice", "carol", MessageType.TEXT, "other", [])
    store.create_message("alice", "bob", MessageType.TEXT, "3", [])

    assert [m.content for m in store.get_thread("alice", "bob")] == ["1", "2", "3"]
    assert [m.content for m in store.get_thread("bob", "alice")] == ["1", "2", "3"]


def test_thread_project_filter_and_limit(store):
    store.create_message("alice", "bob", MessageType.TEXT, "general", [])
    store.create_message("alice", "bob", MessageType.TEXT, "p1-a", [], project_id="p1")
    store.create_message("alice", "bob", MessageType.TEXT, "p1-b", [], project_id="p1")

    assert [m.content for m in store.get_thread("alice", "bob", project_id="p1")] == ["p1-a", "p1-b"]
    # limit keeps the most recent, still oldest first
    assert [m.content for m in store.get_thread("alice", "bob", limit=2)] == ["p1-a", "p1-b"]


def test_attachments_round_trip(store):
    message = store.create_message(
        "alice", "bob", MessageType.FILE, "", ["http://x/files/download/1", "http://x/files/download/2"]
    )
    assert store.get_message(message.id).attachments == [
        "http://x/files/download/1",
        "http://x/files/download/2",
    ]


def test_unread_count_tracks_reads(store):
    ids = [store.create_message("alice", "bob", MessageType.TEXT, f"m{i}", []).id for i in range(3)]
    store.create_message("bob", "alice", MessageType.TEXT, "reply", [])

    assert store.unread_count("bob", "alice") == 3
    assert store.unread_count("alice", "bob") == 1

    store.mark_read(ids[0], "bob")
    assert store.unread_count("bob", "alice") == 2


def test_counterparties(store):
    store.create_message("alice", "bob", MessageType.TEXT, "a", [])
    store.create_message("carol", "alice", MessageType.TEXT, "b", [])
    store.create_message("bob", "carol", MessageType.TEXT, "c", [])

    assert sorted(store.counterparties("alice")) == ["bob", "carol"]


def test_list_conversations(store):
    store.remember_user("bob", "Bob B", "bob@example.com", None, "provider")
    store.create_message("bob", "alice", MessageType.TEXT, "older", [])
    store.create_message("carol", "alice", MessageType.TEXT, "from carol", [])
    store.create_message("bob", "alice", MessageType.FILE, "", ["http://x/f"])

    conversations = store.list_conversations("alice")

    assert [c.userId for c in conversations] == ["bob", "carol"]
    bob = conversations[0]
    assert bob.name == "Bob B"
    assert bob.role == "provider"
    assert bob.unreadCount == 2
    assert bob.lastMessage == "Attachment"
    assert bob.lastMessageType == MessageType.FILE
    assert conversations[1].name == ""


def test_remember_user_updates_profile(store):
    store.remember_user("bob", "Bob", "b@x", None, "customer")
    store.remember_user("bob", "Robert", "b@x", "http://a/png", "provider")
    store.create_message("alice", "bob", MessageType.TEXT, "hi", [])

    conversation = store.list_conversations("alice")[0]
    assert conversation.name == "Robert"
    assert conversation.avatar == "http://a/png"


def test_driver_errors_become_persistence_errors(store):
    with pytest.raises(PersistenceError):
        store._execute("SELECT * FROM no_such_table")


def test_ids_sort_in_creation_order(store):
    ids = [store.create_message("alice", "bob", MessageType.TEXT, f"m{i}", []).id for i in range(30)]

    assert len(set(ids)) == 30
    assert ids == sorted(ids)
    assert [m.id for m in store.get_thread("alice", "bob")] == ids
