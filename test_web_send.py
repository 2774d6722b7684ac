"""
Tests for the POST /messages/send endpoint.

Tests cover:
- A web send logs one pending message and queues one outbound entry
- Missing/empty fields are rejected before any write (422)
- Unknown users (404) and phones that do not belong to the user (422)
- Default target address from CHANNEL_ADDRESS
"""

from conftest import CHANNEL_ADDRESS, DIRECTORY


class TestWebSendCreates:

    def test_send_logs_message_and_queues_outbound(self, client, web_send):
        """user-u sends "Hola" to the channel address."""
        data = web_send("Hola")

        assert data["status"] == "ok"
        message = data["message"]
        assert message["conversationKey"] == "+560000001"
        assert message["senderRole"] == "user"
        assert message["senderId"] == "user-u"
        assert message["text"] == "Hola"
        assert message["status"] == "pending_to_channel"

        outbound = data["outbound"]
        assert outbound["originPhone"] == "+560000001"
        assert outbound["originUserId"] == "user-u"
        assert outbound["targetChannelAddress"] == CHANNEL_ADDRESS
        assert outbound["text"] == "Hola"
        assert outbound["messageId"] == message["id"]
        assert outbound["claimedAt"] is None

    def test_send_appears_in_conversation(self, client, web_send):
        sent = web_send("Hola")

        response = client.get("/conversations/+560000001/messages")

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert [m["id"] for m in body["data"]] == [sent["message"]["id"]]

    def test_exactly_one_message_and_one_outbound(self, client, web_send):
        web_send("Hola")

        stats = client.get("/stats").json()
        assert stats["total_messages"] == 1
        assert stats["messages_per_status"] == {"pending_to_channel": 1}
        assert stats["outbound_pending"] == 1
        assert stats["outbound_claimed"] == 0

    def test_target_defaults_to_channel_address(self, client):
        response = client.post(
            "/messages/send",
            json={"text": "Hola", "originUserId": "user-u", "originPhone": DIRECTORY["user-u"]},
        )

        assert response.status_code == 200
        assert response.json()["outbound"]["targetChannelAddress"] == CHANNEL_ADDRESS

    def test_sends_from_two_users_use_separate_threads(self, client, web_send):
        web_send("Hola", user_id="user-u")
        web_send("Buenas", user_id="user-v")

        u = client.get("/conversations/+560000001/messages").json()
        v = client.get("/conversations/+560000002/messages").json()
        assert [m["text"] for m in u["data"]] == ["Hola"]
        assert [m["text"] for m in v["data"]] == ["Buenas"]


class TestWebSendRejected:

    def assert_nothing_written(self, client):
        stats = client.get("/stats").json()
        assert stats["total_messages"] == 0
        assert stats["outbound_pending"] == 0

    def test_missing_fields_listed(self, client):
        response = client.post("/messages/send", json={"targetChannelAddress": CHANNEL_ADDRESS})

        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "validation_error"
        for field in ("text", "originUserId", "originPhone"):
            assert field in body["detail"]
        self.assert_nothing_written(client)

    def test_blank_text_rejected(self, client):
        response = client.post(
            "/messages/send",
            json={
                "targetChannelAddress": CHANNEL_ADDRESS,
                "text": "   ",
                "originUserId": "user-u",
                "originPhone": DIRECTORY["user-u"],
            },
        )

        assert response.status_code == 422
        assert "text" in response.json()["detail"]
        self.assert_nothing_written(client)

    def test_invalid_json(self, client):
        response = client.post(
            "/messages/send",
            content="{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 422
        self.assert_nothing_written(client)

    def test_unknown_user_is_not_found(self, client):
        response = client.post(
            "/messages/send",
            json={
                "targetChannelAddress": CHANNEL_ADDRESS,
                "text": "Hola",
                "originUserId": "ghost",
                "originPhone": "+560000009",
            },
        )

        assert response.status_code == 404
        assert response.json()["code"] == "identity_not_found"
        self.assert_nothing_written(client)

    def test_phone_of_another_user_rejected(self, client):
        response = client.post(
            "/messages/send",
            json={
                "targetChannelAddress": CHANNEL_ADDRESS,
                "text": "Hola",
                "originUserId": "user-u",
                "originPhone": DIRECTORY["user-v"],
            },
        )

        assert response.status_code == 422
        assert "originPhone" in response.json()["detail"]
        self.assert_nothing_written(client)
