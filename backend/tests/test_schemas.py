"""Tests for message bodies and frame helpers."""
import pytest

from chatcore.chat.schemas import (
    FileBody,
    MarkReadRequest,
    Message,
    MessageType,
    ProposalBody,
    SendMessageRequest,
    ServerEvent,
    SystemBody,
    TEMP_ID_PREFIX,
    TextBody,
    body_from_fields,
    fields_from_body,
    frame,
    new_temp_id,
)
from chatcore.errors import ValidationError


class TestBodies:
    def test_text(self):
        assert body_from_fields(MessageType.TEXT, "Hello", []) == TextBody(text="Hello")

    def test_file(self):
        body = body_from_fields(MessageType.FILE, "", ["http://x/1", "", "http://x/2"])
        assert body == FileBody(urls=["http://x/1", "http://x/2"])

    def test_system_and_proposal_use_single_reference(self):
        assert body_from_fields(MessageType.SYSTEM, "note", ["ref-1"]) == SystemBody(reference="ref-1", note="note")
        assert body_from_fields(MessageType.PROPOSAL, "", ["p-1"]) == ProposalBody(projectRef="p-1")

    @pytest.mark.parametrize("message_type,content,attachments", [
        (MessageType.TEXT, "", []),
        (MessageType.TEXT, "   ", []),
        (MessageType.TEXT, "hi", ["http://x/1"]),
        (MessageType.FILE, "", []),
        (MessageType.FILE, "caption", ["http://x/1"]),
        (MessageType.PROPOSAL, "", []),
        (MessageType.SYSTEM, "", ["a", "b"]),
    ])
    def test_malformed(self, message_type, content, attachments):
        with pytest.raises(ValidationError):
            body_from_fields(message_type, content, attachments)

    def test_fields_from_body_inverts(self):
        assert fields_from_body(ProposalBody(projectRef="p-1", summary="Deck")) == (
            MessageType.PROPOSAL, "Deck", ["p-1"]
        )
        assert fields_from_body(FileBody(urls=["u"])) == (MessageType.FILE, "", ["u"])

    def test_request_to_body(self):
        request = SendMessageRequest(receiverId="bob", messageType="file", attachments=["u"])
        assert request.to_body() == FileBody(urls=["u"])


class TestMessage:
    def test_provisional_and_counterparty(self):
        message = Message(id=new_temp_id(), senderId="alice", receiverId="bob", content="x")

        assert message.id.startswith(TEMP_ID_PREFIX)
        assert message.is_provisional
        assert message.counterparty("alice") == "bob"
        assert message.counterparty("bob") == "alice"
        assert not Message(id="m-1", senderId="a", receiverId="b", content="x").is_provisional

    def test_temp_ids_are_unique(self):
        assert len({new_temp_id() for _ in range(50)}) == 50

    def test_preview(self):
        base = dict(id="m", senderId="a", receiverId="b")
        assert Message(content="Hi", **base).preview() == "Hi"
        assert Message(content="x" * 100, **base).preview(limit=10) == "x" * 9 + "…"
        assert Message(messageType="file", attachments=["u"], **base).preview() == "Attachment"
        assert Message(messageType="file", attachments=["u", "v"], **base).preview() == "2 attachments"
        assert Message(messageType="proposal", attachments=["p"], **base).preview() == "Project proposal"

    def test_wire_shape(self):
        wire = Message(id="m", senderId="a", receiverId="b", content="Hi").to_wire()
        assert wire["messageType"] == "text"
        assert wire["readAt"] is None
        assert isinstance(wire["createdAt"], str)


def test_mark_read_ids_dedupe_in_order():
    request = MarkReadRequest(messageId="b", messageIds=["a", "b", "", "c", "a"])
    assert request.ids() == ["b", "a", "c"]
    assert MarkReadRequest().ids() == []


def test_frame():
    assert frame(ServerEvent.PONG) == {"event": "pong", "data": {}}
    assert frame("ack", {"success": True}, ack_id="1") == {
        "event": "ack",
        "data": {"success": True},
        "ackId": "1",
    }
