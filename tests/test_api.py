"""
Tests for the local HTTP adapter.

Tests cover:
- Health probes
- Conversation create, list, filter and delete
- Sending text and media messages, replies
- Soft and hard message deletion
- Marking a conversation read
- Error mapping for unknown ids and invalid input
- Metrics exposure
"""

import base64

import pytest
from fastapi.testclient import TestClient

from chatstore.main import app


@pytest.fixture(scope="function")
def client():
    """Create test client; the lifespan opens a fresh in-memory store per test."""
    with TestClient(app) as test_client:
        yield test_client


def create_conversation(client, name: str) -> dict:
    """Helper to create a conversation through the API."""
    response = client.post("/conversations", json={"contact_name": name})
    assert response.status_code == 201
    return response.json()


def send_message(client, conversation_id: str, content: str, **extra) -> dict:
    """Helper to send a text message through the API."""
    response = client.post(
        f"/conversations/{conversation_id}/messages",
        json={"content": content, **extra},
    )
    assert response.status_code == 201
    return response.json()


class TestHealth:
    """Test health probes."""

    def test_live(self, client):
        response = client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"


class TestConversations:
    """Test conversation routes."""

    def test_create(self, client):
        data = create_conversation(client, "Ada Lovelace")

        assert data["contact_name"] == "Ada Lovelace"
        assert data["initials"] == "AL"
        assert data["preview"] == "No messages yet"
        assert data["unread_count"] == 0
        assert data["message_count"] == 0

    def test_create_trims_name(self, client):
        assert create_conversation(client, "  Grace Hopper ")["contact_name"] == "Grace Hopper"

    def test_blank_name_rejected(self, client):
        response = client.post("/conversations", json={"contact_name": "   "})

        assert response.status_code == 422
        assert client.get("/conversations").json()["total"] == 0

    def test_missing_name_rejected(self, client):
        response = client.post("/conversations", json={})
        assert response.status_code == 422

    def test_list_newest_activity_first(self, client):
        first = create_conversation(client, "First")
        create_conversation(client, "Second")
        send_message(client, first["id"], "bump")

        data = client.get("/conversations").json()

        assert [c["contact_name"] for c in data["data"]] == ["First", "Second"]
        assert data["total"] == 2
        assert data["data"][0]["preview"] == "bump"

    def test_version_advances(self, client):
        before = client.get("/conversations").json()["version"]
        create_conversation(client, "Versioned")
        after = client.get("/conversations").json()["version"]

        assert after == before + 1

    def test_filter(self, client):
        alice = create_conversation(client, "Alice Johnson")
        send_message(client, alice["id"], "Want to grab lunch?")
        create_conversation(client, "Bob Smith")

        response = client.get("/conversations", params={"q": "lunch"})

        assert [c["contact_name"] for c in response.json()["data"]] == ["Alice Johnson"]

    def test_delete(self, client):
        conversation = create_conversation(client, "Doomed")
        message = send_message(client, conversation["id"], "gone soon")

        response = client.delete(f"/conversations/{conversation['id']}")

        assert response.status_code == 204
        assert client.get("/conversations").json()["total"] == 0
        assert client.delete(f"/messages/{message['id']}").status_code == 404

    def test_delete_unknown(self, client):
        response = client.delete("/conversations/missing")

        assert response.status_code == 404
        assert "missing" in response.json()["detail"]


class TestMessages:
    """Test message routes."""

    def test_send_and_list(self, client):
        conversation = create_conversation(client, "Chat")
        send_message(client, conversation["id"], "one")
        send_message(client, conversation["id"], "two", sender=1)

        response = client.get(f"/conversations/{conversation['id']}/messages")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert [m["content"] for m in data["data"]] == ["one", "two"]
        assert data["data"][0]["sender_name"] == "Me"
        assert data["data"][0]["status_name"] == "Sent"
        assert data["data"][1]["sender_name"] == "Chat"
        assert data["data"][1]["status_name"] == "Delivered"

    def test_blank_content_rejected(self, client):
        conversation = create_conversation(client, "Chat")
        response = client.post(
            f"/conversations/{conversation['id']}/messages",
            json={"content": ""},
        )
        assert response.status_code == 422

    def test_send_to_unknown_conversation(self, client):
        response = client.post("/conversations/missing/messages", json={"content": "hi"})
        assert response.status_code == 404

    def test_reply_preview(self, client):
        conversation = create_conversation(client, "Ada Lovelace")
        hi = send_message(client, conversation["id"], "hi")

        hello = send_message(client, conversation["id"], "hello", sender=1, reply_to_id=hi["id"])

        assert hello["reply_to_id"] == hi["id"]
        assert hello["reply_preview"] == {"available": True, "sender_name": "Me", "content": "hi"}

    def test_reply_across_conversations_rejected(self, client):
        first = create_conversation(client, "First")
        second = create_conversation(client, "Second")
        target = send_message(client, first["id"], "elsewhere")

        response = client.post(
            f"/conversations/{second['id']}/messages",
            json={"content": "re", "reply_to_id": target["id"]},
        )

        assert response.status_code == 404

    def test_send_succeeds_when_conversation_deleted_right_after(self, client):
        """A saved message is reported as created even if its conversation is gone by response time."""
        store = client.app.state.store
        conversation = create_conversation(client, "Short Lived")
        target = send_message(client, conversation["id"], "first")

        def delete_on_goodbye(snapshot):
            for c in snapshot.conversations:
                if any(m.content == "goodbye" for m in c.messages):
                    store.delete_conversation(c.id)

        with store.subscribe(delete_on_goodbye):
            response = client.post(
                f"/conversations/{conversation['id']}/messages",
                json={"content": "goodbye", "reply_to_id": target["id"]},
            )

        assert response.status_code == 201
        data = response.json()
        assert data["content"] == "goodbye"
        assert data["sender_name"] == "Me"
        assert data["reply_preview"] is None
        assert client.get("/conversations").json()["total"] == 0

    def test_send_media(self, client):
        conversation = create_conversation(client, "Media")

        response = client.post(
            f"/conversations/{conversation['id']}/media",
            json={"payload": base64.b64encode(b"\x89PNG").decode(), "media_kind": 1},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["content"] == "📷 Image"
        assert data["has_media"] is True
        assert data["media_kind"] == 1

    def test_media_with_text_kind_rejected(self, client):
        conversation = create_conversation(client, "Media")

        response = client.post(
            f"/conversations/{conversation['id']}/media",
            json={"payload": base64.b64encode(b"data").decode(), "media_kind": 0},
        )

        assert response.status_code == 422


class TestDeleteMessage:
    """Test DELETE /messages/{id}."""

    def test_soft_delete_by_default(self, client):
        conversation = create_conversation(client, "Soft")
        message = send_message(client, conversation["id"], "secret")

        assert client.delete(f"/messages/{message['id']}").status_code == 204

        data = client.get(f"/conversations/{conversation['id']}/messages").json()["data"]
        assert data[0]["is_removed"] is True
        assert data[0]["content"] is None
        listing = client.get("/conversations").json()["data"][0]
        assert listing["preview"] == "This message was deleted"

    def test_hard_delete_orphans_replies(self, client):
        conversation = create_conversation(client, "Hard")
        target = send_message(client, conversation["id"], "target")
        reply = send_message(client, conversation["id"], "reply", reply_to_id=target["id"])

        response = client.delete(f"/messages/{target['id']}", params={"hard": "true"})

        assert response.status_code == 204
        data = client.get(f"/conversations/{conversation['id']}/messages").json()["data"]
        assert [m["id"] for m in data] == [reply["id"]]
        assert data[0]["reply_to_id"] is None
        assert data[0]["reply_preview"]["available"] is False

    def test_unknown_message(self, client):
        assert client.delete("/messages/missing").status_code == 404
        assert client.delete("/messages/missing", params={"hard": "true"}).status_code == 404


class TestMarkRead:
    """Test POST /conversations/{id}/read."""

    def test_marks_counterpart_messages(self, client):
        conversation = create_conversation(client, "Unread")
        send_message(client, conversation["id"], "mine")
        send_message(client, conversation["id"], "one", sender=1)
        send_message(client, conversation["id"], "two", sender=1)
        assert client.get("/conversations").json()["data"][0]["unread_count"] == 2

        response = client.post(f"/conversations/{conversation['id']}/read")

        assert response.status_code == 200
        assert response.json()["marked"] == 2
        assert client.get("/conversations").json()["data"][0]["unread_count"] == 0

    def test_nothing_to_mark(self, client):
        conversation = create_conversation(client, "Quiet")
        version = client.get("/conversations").json()["version"]

        response = client.post(f"/conversations/{conversation['id']}/read")

        assert response.json()["marked"] == 0
        assert client.get("/conversations").json()["version"] == version

    def test_unknown_conversation(self, client):
        assert client.post("/conversations/missing/read").status_code == 404


class TestMetrics:
    """Test the metrics endpoint."""

    def test_exposes_store_and_http_metrics(self, client):
        create_conversation(client, "Counted")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "store_operations_total" in response.text
        assert "http_requests_total" in response.text
