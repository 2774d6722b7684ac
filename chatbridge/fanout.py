"""
Real-time fan-out of new messages to live web sessions.

Each user id owns one room; a WebSocket session joins its user's room on
connect. Notifications are best-effort: a room with no sessions drops the
message and the conversation fetch endpoint is the recovery path.

The ingesting process may not be the one holding the connection, so
notifications go through a ``Notifier``:
- LocalNotifier pushes straight into this process's RoomRegistry
- HttpNotifier posts a signed control call to /internal/fanout on the
  process that holds the connections
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx
from fastapi import WebSocket

from chatbridge.errors import DeliveryBestEffortFailure
from chatbridge.metrics import live_sessions, record_fanout_outcome
from chatbridge.schemas import FanoutRequest, Message
from chatbridge.utils import sign_body

logger = logging.getLogger(__name__)

FANOUT_PATH = "/internal/fanout"

MESSAGE_CREATED = "message.created"
MESSAGE_UPDATED = "message.updated"


def message_event(message: Message, event: str = MESSAGE_CREATED) -> dict:
    """Envelope pushed to live sessions."""
    return {
        "type": event,
        "data": message.model_dump(mode="json", by_alias=True),
    }


class RoomRegistry:
    """User id -> live WebSocket sessions. Used from a single event loop."""

    def __init__(self):
        self._rooms: dict[str, set[WebSocket]] = {}

    def join(self, user_id: str, websocket: WebSocket) -> None:
        room = self._rooms.setdefault(user_id, set())
        if websocket not in room:
            room.add(websocket)
            live_sessions.inc()
        logger.info(f"Session joined room user-{user_id} ({len(room)} live)")

    def leave(self, user_id: str, websocket: WebSocket) -> None:
        room = self._rooms.get(user_id)
        if not room or websocket not in room:
            return
        room.discard(websocket)
        live_sessions.dec()
        if not room:
            del self._rooms[user_id]
        logger.info(f"Session left room user-{user_id}")

    def session_count(self, user_id: str) -> int:
        return len(self._rooms.get(user_id, ()))

    async def broadcast(self, user_id: str, payload: dict) -> int:
        """Send ``payload`` to every session in the room; returns how many received it."""
        delivered = 0
        for websocket in list(self._rooms.get(user_id, ())):
            try:
                await websocket.send_json(payload)
                delivered += 1
            except Exception as e:
                # A session that cannot be written to is gone
                logger.warning(f"Dropping dead session in room user-{user_id}: {e}")
                self.leave(user_id, websocket)
        return delivered


class Notifier(ABC):

    @abstractmethod
    async def notify(self, user_id: str, message: Message, event: str = MESSAGE_CREATED) -> int:
        """
        Push ``message`` to the live sessions of ``user_id``.

        Returns the number of sessions reached. Raises
        DeliveryBestEffortFailure when no session received it.
        """


class LocalNotifier(Notifier):

    def __init__(self, rooms: RoomRegistry, timeout: float = 2.0):
        self.rooms = rooms
        self.timeout = timeout

    async def notify(self, user_id: str, message: Message, event: str = MESSAGE_CREATED) -> int:
        try:
            delivered = await asyncio.wait_for(
                self.rooms.broadcast(user_id, message_event(message, event)),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise DeliveryBestEffortFailure(user_id, "timed out") from None
        if delivered == 0:
            raise DeliveryBestEffortFailure(user_id, "no live session")
        return delivered


class HttpNotifier(Notifier):
    """Forward notifications to the process holding the live connections."""

    def __init__(
        self,
        base_url: str,
        secret: str,
        timeout: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.secret = secret
        self.timeout = timeout
        self._transport = transport

    async def notify(self, user_id: str, message: Message, event: str = MESSAGE_CREATED) -> int:
        payload = FanoutRequest(user_id=user_id, message=message, event=event)
        body = payload.model_dump_json(by_alias=True).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-Signature": sign_body(body, self.secret),
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(FANOUT_PATH, content=body, headers=headers)
        except httpx.HTTPError as e:
            raise DeliveryBestEffortFailure(user_id, f"control call failed: {str(e)[:200]}") from e

        if response.status_code != 200:
            raise DeliveryBestEffortFailure(
                user_id, f"control call answered {response.status_code}"
            )
        delivered = response.json().get("delivered", 0)
        if not delivered:
            raise DeliveryBestEffortFailure(user_id, "no live session")
        return delivered


async def notify_best_effort(
    notifier: Notifier,
    user_id: str,
    message: Message,
    event: str = MESSAGE_CREATED,
) -> int:
    """
    Notify and absorb every failure.

    The message is already persisted when this runs, so a failed push is
    logged and counted, never raised.
    """
    try:
        delivered = await notifier.notify(user_id, message, event)
    except DeliveryBestEffortFailure as e:
        logger.warning(f"Real-time delivery skipped: {e.message}")
        record_fanout_outcome("undelivered")
        return 0
    except Exception:
        logger.exception(f"Real-time delivery to user {user_id} crashed")
        record_fanout_outcome("error")
        return 0
    logger.info(f"Message {message.id} pushed to {delivered} session(s) of user {user_id}")
    record_fanout_outcome("delivered")
    return delivered
