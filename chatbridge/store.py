"""
Storage abstraction for the conversation log and the outbound queue.

``BridgeStore`` is the only way the rest of the bridge touches shared
state. Two implementations exist: ``InMemoryBridgeStore`` here (tests and
single-process development) and ``SqlBridgeStore`` in ``sql_store.py``.

Every mutation is one of the atomic operations below:
- append_message: channel-originated entry (bot reply)
- append_user_message: user-originated entry plus its outbound entry
- transition_status: forward-only status change
- claim_outbound / claim_pending: claim-and-mark, at most one claimant
"""

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Iterator, Optional
from uuid import uuid4

from chatbridge.errors import ConcurrencyConflict, MessageNotFound, ValidationError
from chatbridge.schemas import (
    ConversationSummary,
    Message,
    MessageStatus,
    PendingOutboundMessage,
    SenderRole,
)
from chatbridge.utils import require_non_empty, utc_now_iso

logger = logging.getLogger(__name__)


# =============================================================================
# Status State Machine
# =============================================================================

ALLOWED_TRANSITIONS: dict[MessageStatus, frozenset] = {
    MessageStatus.PENDING_TO_CHANNEL: frozenset(
        {MessageStatus.DELIVERED_TO_USER, MessageStatus.FAILED}
    ),
}

INITIAL_STATUSES: dict[SenderRole, frozenset] = {
    SenderRole.USER: frozenset({MessageStatus.PENDING_TO_CHANNEL}),
    SenderRole.BOT: frozenset({MessageStatus.DELIVERED_TO_USER, MessageStatus.DELIVERED_TO_WEB}),
}


def check_transition(current, new) -> None:
    """Raise ConcurrencyConflict unless ``current -> new`` is a legal forward move."""
    current = MessageStatus(current)
    new = MessageStatus(new)
    if new not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise ConcurrencyConflict(
            f"illegal status transition {current.value} -> {new.value}"
        )


def check_channel_append(sender_role, sender_id: str, text: str, initial_status) -> None:
    """Validate a channel-originated append before any mutation."""
    require_non_empty(senderId=sender_id, text=text)
    role = SenderRole(sender_role)
    status = MessageStatus(initial_status)
    if status == MessageStatus.PENDING_TO_CHANNEL:
        raise ValidationError(
            "user-originated messages must be appended together with their outbound entry",
            fields=["status"],
        )
    if status not in INITIAL_STATUSES[role]:
        raise ValidationError(
            f"{status.value} is not a valid initial status for a {role.value} message",
            fields=["status"],
        )


def next_created_at(last_created_at: Optional[str]) -> str:
    """Server time, clamped so created_at never goes backwards within one conversation."""
    now = utc_now_iso()
    if last_created_at and now < last_created_at:
        return last_created_at
    return now


def new_id() -> str:
    return str(uuid4())


class KeyedLocks:
    """
    One lock per conversation key.

    Serializes writers to the same key inside this process; the SQL store
    additionally locks the conversation row for writers in other processes.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield


# =============================================================================
# Interface
# =============================================================================

class BridgeStore(ABC):
    """Append/read/claim operations over the conversation log and outbound queue."""

    @abstractmethod
    def append_message(
        self,
        conversation_key: str,
        sender_role: SenderRole,
        sender_id: str,
        text: str,
        initial_status: MessageStatus,
    ) -> Message:
        """Append a channel-originated message. User-originated ones go through append_user_message."""

    @abstractmethod
    def append_user_message(
        self,
        conversation_key: str,
        origin_user_id: str,
        text: str,
        target_channel_address: str,
    ) -> tuple[Message, PendingOutboundMessage]:
        """
        Append a user-originated message and enqueue it for the external agent.

        Both halves persist or neither does. ``conversation_key`` is the web
        user's own phone, which the agent also receives as ``originPhone``.
        """

    @abstractmethod
    def list_messages(self, conversation_key: str, limit: Optional[int] = None) -> list[Message]:
        """Thread ordered by (created_at, seq). With ``limit``, only the newest entries, still oldest first."""

    @abstractmethod
    def count_messages(self, conversation_key: str) -> int:
        ...

    @abstractmethod
    def get_message(self, message_id: str) -> Message:
        ...

    @abstractmethod
    def transition_status(self, message_id: str, new_status: MessageStatus) -> Message:
        ...

    @abstractmethod
    def get_outbound(self, outbound_id: str) -> PendingOutboundMessage:
        ...

    @abstractmethod
    def claim_outbound(self, outbound_id: str, claimant: Optional[str] = None) -> PendingOutboundMessage:
        """Claim one entry. A second claimant gets ConcurrencyConflict."""

    @abstractmethod
    def claim_pending(
        self,
        target_channel_address: str,
        claimant: Optional[str] = None,
        limit: int = 50,
    ) -> list[PendingOutboundMessage]:
        """Claim up to ``limit`` unclaimed entries for one target, oldest first."""

    @abstractmethod
    def list_conversations(self) -> list[ConversationSummary]:
        ...

    @abstractmethod
    def stats(self) -> dict:
        ...


# =============================================================================
# In-memory Implementation
# =============================================================================

class InMemoryBridgeStore(BridgeStore):
    """
    Process-local store.

    Appends and transitions hold the conversation lock. Every change to the
    shared dicts, and every read that iterates them, also holds the state
    lock, which is always taken inside a conversation lock and never around
    one. Readers get copies.
    """

    def __init__(self):
        self._locks = KeyedLocks()
        self._state_lock = threading.Lock()
        self._seq = itertools.count(1)
        self._threads: dict[str, list[Message]] = {}
        self._messages: dict[str, Message] = {}
        self._outbound: dict[str, PendingOutboundMessage] = {}
        self._last_created_at: dict[str, str] = {}

    def _new_message(self, conversation_key, sender_role, sender_id, text, status) -> Message:
        return Message(
            id=new_id(),
            seq=next(self._seq),
            conversation_key=conversation_key,
            sender_role=SenderRole(sender_role),
            sender_id=sender_id,
            text=text,
            status=MessageStatus(status),
            created_at=next_created_at(self._last_created_at.get(conversation_key)),
        )

    @staticmethod
    def _new_outbound(message: Message, origin_user_id: str, target_channel_address: str) -> PendingOutboundMessage:
        return PendingOutboundMessage(
            id=new_id(),
            message_id=message.id,
            target_channel_address=target_channel_address,
            origin_user_id=origin_user_id,
            origin_phone=message.conversation_key,
            text=message.text,
            created_at=message.created_at,
        )

    def _commit_message(self, message: Message) -> None:
        self._threads.setdefault(message.conversation_key, []).append(message)
        self._messages[message.id] = message
        self._last_created_at[message.conversation_key] = message.created_at

    def append_message(self, conversation_key, sender_role, sender_id, text, initial_status) -> Message:
        require_non_empty(conversationKey=conversation_key)
        check_channel_append(sender_role, sender_id, text, initial_status)
        with self._locks.hold(conversation_key):
            message = self._new_message(conversation_key, sender_role, sender_id, text, initial_status)
            with self._state_lock:
                self._commit_message(message)
        logger.debug(f"Appended message {message.id} to {conversation_key}")
        return message.model_copy()

    def append_user_message(self, conversation_key, origin_user_id, text, target_channel_address):
        require_non_empty(
            targetChannelAddress=target_channel_address,
            originUserId=origin_user_id,
            originPhone=conversation_key,
            text=text,
        )
        with self._locks.hold(conversation_key):
            # Build both halves before touching shared state
            message = self._new_message(
                conversation_key, SenderRole.USER, origin_user_id, text, MessageStatus.PENDING_TO_CHANNEL
            )
            outbound = self._new_outbound(message, origin_user_id, target_channel_address)
            with self._state_lock:
                self._commit_message(message)
                self._outbound[outbound.id] = outbound
        logger.debug(f"Appended message {message.id} with outbound {outbound.id}")
        return message.model_copy(), outbound.model_copy()

    def list_messages(self, conversation_key, limit=None) -> list[Message]:
        with self._locks.hold(conversation_key):
            thread = list(self._threads.get(conversation_key, []))
        thread.sort(key=lambda m: (m.created_at, m.seq))
        if limit is not None:
            thread = thread[-limit:] if limit > 0 else []
        return [m.model_copy() for m in thread]

    def count_messages(self, conversation_key) -> int:
        with self._state_lock:
            return len(self._threads.get(conversation_key, []))

    def get_message(self, message_id) -> Message:
        message = self._messages.get(message_id)
        if message is None:
            raise MessageNotFound(message_id)
        return message.model_copy()

    def transition_status(self, message_id, new_status) -> Message:
        message = self._messages.get(message_id)
        if message is None:
            raise MessageNotFound(message_id)
        with self._locks.hold(message.conversation_key):
            check_transition(message.status, new_status)
            message.status = MessageStatus(new_status).value
        logger.debug(f"Message {message_id} moved to {message.status}")
        return message.model_copy()

    def get_outbound(self, outbound_id) -> PendingOutboundMessage:
        entry = self._outbound.get(outbound_id)
        if entry is None:
            raise MessageNotFound(outbound_id, kind="outbound entry")
        return entry.model_copy()

    def claim_outbound(self, outbound_id, claimant=None) -> PendingOutboundMessage:
        with self._state_lock:
            entry = self._outbound.get(outbound_id)
            if entry is None:
                raise MessageNotFound(outbound_id, kind="outbound entry")
            if entry.claimed_at is not None:
                raise ConcurrencyConflict(f"outbound entry already claimed: {outbound_id}")
            entry.claimed_at = utc_now_iso()
            entry.claimed_by = claimant
            return entry.model_copy()

    def claim_pending(self, target_channel_address, claimant=None, limit=50):
        claimed = []
        with self._state_lock:
            unclaimed = sorted(
                (
                    e for e in self._outbound.values()
                    if e.target_channel_address == target_channel_address and e.claimed_at is None
                ),
                key=lambda e: (e.created_at, self._messages[e.message_id].seq),
            )
            now = utc_now_iso()
            for entry in unclaimed[:limit]:
                entry.claimed_at = now
                entry.claimed_by = claimant
                claimed.append(entry.model_copy())
        return claimed

    def list_conversations(self) -> list[ConversationSummary]:
        with self._state_lock:
            summaries = [
                ConversationSummary(
                    conversation_key=key,
                    message_count=len(thread),
                    last_message_at=self._last_created_at.get(key),
                )
                for key, thread in self._threads.items()
            ]
        summaries.sort(key=lambda s: s.last_message_at or "", reverse=True)
        return summaries

    def stats(self) -> dict:
        with self._state_lock:
            statuses = [message.status for message in self._messages.values()]
            outbound_total = len(self._outbound)
            claimed = sum(1 for e in self._outbound.values() if e.claimed_at is not None)
            conversations_count = len(self._threads)
        per_status: dict[str, int] = {}
        for status in statuses:
            per_status[status] = per_status.get(status, 0) + 1
        return {
            "total_messages": len(statuses),
            "conversations_count": conversations_count,
            "messages_per_status": per_status,
            "outbound_pending": outbound_total - claimed,
            "outbound_claimed": claimed,
        }
