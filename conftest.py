"""
Pytest configuration and shared fixtures.

Environment defaults are set here before any chatbridge import so settings
are read with test values; a real environment (e.g. from .env.test) wins.
"""

import json
import os

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_chatbridge.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("CHANNEL_ADDRESS", "+569999999")
# Fan-out must stay in-process under test
os.environ.pop("FANOUT_URL", None)

# Clear settings cache before any app imports to ensure test env vars are used
from chatbridge.config import get_settings  # noqa: E402
get_settings.cache_clear()

from fastapi.testclient import TestClient  # noqa: E402

from chatbridge.deps import get_resolver  # noqa: E402
from chatbridge.identity import StaticIdentityResolver  # noqa: E402
from chatbridge.main import app  # noqa: E402
from chatbridge.storage import Base, engine  # noqa: E402
from chatbridge.utils import sign_body  # noqa: E402


TEST_WEBHOOK_SECRET = os.environ["WEBHOOK_SECRET"]
CHANNEL_ADDRESS = os.environ["CHANNEL_ADDRESS"]

# user id -> phone known to the account directory
DIRECTORY = {
    "user-u": "+560000001",
    "user-v": "+560000002",
}


@pytest.fixture
def resolver():
    return StaticIdentityResolver(DIRECTORY)


@pytest.fixture(scope="function")
def client(resolver):
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)
    app.dependency_overrides[get_resolver] = lambda: resolver

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def signed_post(client):
    """POST helper that signs the raw body the way the external agent does."""
    def _post(path: str, payload=None, headers: dict | None = None, secret: str = TEST_WEBHOOK_SECRET):
        body = json.dumps(payload).encode("utf-8") if payload is not None else b""
        all_headers = {
            "Content-Type": "application/json",
            "X-Signature": sign_body(body, secret),
        }
        all_headers.update(headers or {})
        return client.post(path, content=body, headers=all_headers)
    return _post


@pytest.fixture
def web_send(client):
    """Send a message from the web as a directory user."""
    def _send(text: str = "Hola", user_id: str = "user-u"):
        response = client.post(
            "/messages/send",
            json={
                "targetChannelAddress": CHANNEL_ADDRESS,
                "text": text,
                "originUserId": user_id,
                "originPhone": DIRECTORY[user_id],
            },
        )
        assert response.status_code == 200, response.text
        return response.json()
    return _send
