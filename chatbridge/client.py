"""
Web-side view of one conversation, with optimistic sends.

A send is rendered immediately as a local entry (temporary id
``local-<n>``, status pending_to_channel). When the authoritative message
arrives, either in the send response or as a real-time event, the local
entry is replaced by it. Client and server ids come from different spaces,
so the match is made on intent: same conversation, same origin user, same
text, oldest outstanding local sequence first. Authoritative ids are
de-duplicated, so a send confirmed by both paths renders once.
"""

import itertools
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from chatbridge.errors import BridgeError
from chatbridge.fanout import MESSAGE_CREATED, MESSAGE_UPDATED
from chatbridge.schemas import Message, MessageStatus, SenderRole
from chatbridge.utils import utc_now_iso

logger = logging.getLogger(__name__)


class SendFailed(BridgeError):
    """
    The server refused or never answered a send.

    ``text`` is the input to restore, or None when a real-time echo showed
    the server logged the message anyway.
    """

    code = "send_failed"

    def __init__(self, text: Optional[str], detail: str):
        super().__init__(f"send failed: {detail}")
        self.text = text
        self.detail = detail


@dataclass
class PendingSend:
    local_seq: int
    message: Message

    @property
    def temp_id(self) -> str:
        return self.message.id

    @property
    def text(self) -> str:
        return self.message.text


class ConversationView:
    """Rendered entries of one conversation as seen by ``user_id``."""

    def __init__(self, conversation_key: str, user_id: str):
        self.conversation_key = conversation_key
        self.user_id = user_id
        self._confirmed: dict[str, Message] = {}
        self._pending: dict[str, PendingSend] = {}
        self._local_seq = itertools.count(1)

    @property
    def messages(self) -> list[Message]:
        """Authoritative entries in log order, then outstanding sends in the order they were made."""
        confirmed = sorted(self._confirmed.values(), key=lambda m: (m.created_at, m.seq))
        pending = sorted(self._pending.values(), key=lambda p: p.local_seq)
        return confirmed + [p.message for p in pending]

    @property
    def pending(self) -> list[PendingSend]:
        return sorted(self._pending.values(), key=lambda p: p.local_seq)

    def begin_send(self, text: str) -> PendingSend:
        local_seq = next(self._local_seq)
        optimistic = Message(
            id=f"local-{local_seq}",
            seq=0,
            conversation_key=self.conversation_key,
            sender_role=SenderRole.USER,
            sender_id=self.user_id,
            text=text,
            status=MessageStatus.PENDING_TO_CHANNEL,
            created_at=utc_now_iso(),
        )
        pending = PendingSend(local_seq=local_seq, message=optimistic)
        self._pending[pending.temp_id] = pending
        return pending

    def confirm(self, pending: PendingSend, message: Message) -> None:
        """Server answered the send; swap the local entry for ``message``."""
        if self._pending.pop(pending.temp_id, None) is None:
            # Already matched by a real-time echo
            logger.debug(f"{pending.temp_id} was already reconciled")
        self._remember(message)

    def fail(self, pending: PendingSend) -> Optional[str]:
        """
        Drop the local entry of a failed send and return the text to put back in the input.

        Returns None if an echo already replaced the entry: the message is in
        the log, so restoring the text would lead to a duplicate resend.
        """
        if self._pending.pop(pending.temp_id, None) is None:
            logger.info(f"{pending.temp_id} failed after the server logged it, nothing to restore")
            return None
        return pending.text

    def apply_remote(self, message: Message, event: str = MESSAGE_CREATED) -> None:
        """Merge a message pushed on the live session."""
        if message.conversation_key != self.conversation_key:
            return
        if message.id in self._confirmed:
            self._remember(message)
            return
        if event == MESSAGE_CREATED:
            match = self._match_pending(message)
            if match is not None:
                del self._pending[match.temp_id]
        self._remember(message)

    def load(self, messages: list[Message]) -> None:
        """Replace authoritative entries with a fetched history. Outstanding sends stay."""
        self._confirmed = {}
        for message in messages:
            if message.conversation_key == self.conversation_key:
                self._confirmed[message.id] = message

    def _match_pending(self, message: Message) -> Optional[PendingSend]:
        if message.sender_role != SenderRole.USER or message.sender_id != self.user_id:
            return None
        for pending in self.pending:
            if pending.text == message.text:
                return pending
        return None

    def _remember(self, message: Message) -> None:
        known = self._confirmed.get(message.id)
        # A late created event must not roll a status back
        if known is not None and known.status != MessageStatus.PENDING_TO_CHANNEL:
            if message.status == MessageStatus.PENDING_TO_CHANNEL:
                return
        self._confirmed[message.id] = message


def _error_detail(response: httpx.Response) -> str:
    try:
        return str(response.json().get("detail", response.text))
    except ValueError:
        return response.text or response.reason_phrase


class BridgeClient:
    """Web user's client: optimistic sends against the bridge API plus history fetch."""

    def __init__(
        self,
        user_id: str,
        phone: str,
        base_url: str = "",
        channel_address: Optional[str] = None,
        http: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ):
        self.user_id = user_id
        self.phone = phone
        self.channel_address = channel_address
        self.view = ConversationView(conversation_key=phone, user_id=user_id)
        self._http = http or httpx.Client(base_url=base_url, timeout=timeout)

    def refresh(self) -> list[Message]:
        response = self._http.get(f"/conversations/{self.phone}/messages")
        response.raise_for_status()
        messages = [Message.model_validate(m) for m in response.json()["data"]]
        self.view.load(messages)
        return self.view.messages

    def send(self, text: str) -> Message:
        pending = self.view.begin_send(text)
        body = {
            "text": text,
            "originUserId": self.user_id,
            "originPhone": self.phone,
        }
        if self.channel_address:
            body["targetChannelAddress"] = self.channel_address
        try:
            response = self._http.post("/messages/send", json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            restored = self.view.fail(pending)
            detail = _error_detail(e.response)
            logger.warning(f"Send rejected: {detail}")
            raise SendFailed(restored, detail) from e
        except httpx.HTTPError as e:
            restored = self.view.fail(pending)
            logger.warning(f"Send did not reach the server: {e}")
            raise SendFailed(restored, str(e)) from e

        message = Message.model_validate(response.json()["message"])
        self.view.confirm(pending, message)
        return message

    def handle_event(self, event: dict) -> None:
        """Apply one frame received on the live session."""
        kind = event.get("type")
        if kind not in (MESSAGE_CREATED, MESSAGE_UPDATED):
            return
        self.view.apply_remote(Message.model_validate(event["data"]), kind)
