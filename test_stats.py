"""
Tests for the read-side and operational endpoints.

Tests cover:
- GET /stats: totals, per-status counts, queue progress
- GET /conversations and /conversations/{key}/messages?limit
- Health probes
- GET /metrics exposition
"""

from conftest import CHANNEL_ADDRESS


class TestStats:
    """Test stats endpoint."""

    def test_empty_database_stats(self, client):
        """Test GET /stats with no messages returns zeros."""
        response = client.get("/stats")

        assert response.status_code == 200
        assert response.json() == {
            "total_messages": 0,
            "conversations_count": 0,
            "messages_per_status": {},
            "outbound_pending": 0,
            "outbound_claimed": 0,
        }

    def test_stats_response_includes_request_id_header(self, client):
        response = client.get("/stats")

        assert response.status_code == 200
        assert "x-request-id" in response.headers

    def test_counts_per_status(self, client, web_send, signed_post):
        first = web_send("Hola")
        web_send("Otra")
        web_send("Buenas", user_id="user-v")
        signed_post("/bot/replies", {"userId": "user-u", "text": "Gracias"})
        signed_post(f"/outbound/{first['outbound']['id']}/claim")
        signed_post(f"/outbound/{first['outbound']['id']}/ack", {"delivered": False})

        data = client.get("/stats").json()

        assert data["total_messages"] == 4
        assert data["conversations_count"] == 2
        assert data["messages_per_status"] == {
            "pending_to_channel": 2,
            "delivered_to_user": 1,
            "failed": 1,
        }
        assert data["outbound_pending"] == 2
        assert data["outbound_claimed"] == 1


class TestConversations:

    def test_list_most_recent_first(self, client, web_send):
        web_send("Hola", user_id="user-u")
        web_send("Buenas", user_id="user-v")

        data = client.get("/conversations").json()["data"]

        assert [c["conversationKey"] for c in data] == ["+560000002", "+560000001"]
        assert all(c["messageCount"] == 1 for c in data)
        assert all(c["lastMessageAt"] for c in data)

    def test_unknown_conversation_is_empty(self, client):
        response = client.get("/conversations/+560000077/messages")

        assert response.status_code == 200
        assert response.json() == {"conversationKey": "+560000077", "data": [], "total": 0}

    def test_limit_keeps_newest(self, client, web_send):
        for text in ("uno", "dos", "tres"):
            web_send(text)

        body = client.get("/conversations/+560000001/messages", params={"limit": 2}).json()

        assert [m["text"] for m in body["data"]] == ["dos", "tres"]
        assert body["total"] == 3

    def test_limit_out_of_range(self, client):
        assert client.get("/conversations/+560000001/messages", params={"limit": 0}).status_code == 422


class TestHealth:

    def test_live(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"


class TestMetrics:

    def test_exposes_bridge_counters(self, client, web_send, signed_post):
        web_send("Hola")
        signed_post("/outbound/claim", {"targetChannelAddress": CHANNEL_ADDRESS})

        response = client.get("/metrics")

        assert response.status_code == 200
        body = response.text
        assert "http_requests_total" in body
        assert 'ingest_requests_total{endpoint="web_send",result="created"}' in body
        assert 'outbound_claims_total{result="claimed"}' in body
        assert "live_sessions" in body

    def test_http_metrics_labelled_by_route_template(self, client, web_send, signed_post):
        outbound_id = web_send("Hola")["outbound"]["id"]
        signed_post(f"/outbound/{outbound_id}/claim")
        client.get("/conversations/+560000001/messages")

        body = client.get("/metrics").text

        assert 'path="/outbound/{outbound_id}/claim"' in body
        assert 'path="/conversations/{conversation_key}/messages"' in body
        assert outbound_id not in body
        assert "+560000001" not in body
