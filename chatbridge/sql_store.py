"""
Durable BridgeStore backed by SQLAlchemy.

Each operation runs in its own transaction. Appends lock the conversation
row (SELECT ... FOR UPDATE where the backend supports it) on top of the
process-local KeyedLocks; claims are conditional UPDATEs so a claim is
decided by the database, never by a read followed by a write.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from chatbridge.errors import ConcurrencyConflict, MessageNotFound
from chatbridge.models import ChatMessage, Conversation, OutboundEntry
from chatbridge.schemas import (
    ConversationSummary,
    Message,
    MessageStatus,
    PendingOutboundMessage,
    SenderRole,
)
from chatbridge.storage import SessionLocal
from chatbridge.store import (
    BridgeStore,
    KeyedLocks,
    check_channel_append,
    check_transition,
    new_id,
    next_created_at,
)
from chatbridge.utils import require_non_empty, utc_now_iso

logger = logging.getLogger(__name__)


def _to_message(row: ChatMessage) -> Message:
    return Message(
        id=row.id,
        seq=row.seq,
        conversation_key=row.conversation_key,
        sender_role=row.sender_role,
        sender_id=row.sender_id,
        text=row.text,
        status=row.status,
        created_at=row.created_at,
    )


def _to_outbound(row: OutboundEntry) -> PendingOutboundMessage:
    return PendingOutboundMessage(
        id=row.id,
        message_id=row.message_id,
        target_channel_address=row.target_channel_address,
        origin_user_id=row.origin_user_id,
        origin_phone=row.origin_phone,
        text=row.text,
        created_at=row.created_at,
        claimed_at=row.claimed_at,
        claimed_by=row.claimed_by,
    )


class SqlBridgeStore(BridgeStore):

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory
        self._locks = KeyedLocks()

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # =========================================================================
    # Appends
    # =========================================================================

    def _lock_conversation(self, session: Session, conversation_key: str) -> Conversation:
        conversation = session.get(Conversation, conversation_key, with_for_update=True)
        if conversation is None:
            conversation = Conversation(
                conversation_key=conversation_key,
                message_count=0,
                last_created_at=None,
            )
            session.add(conversation)
            session.flush()
        return conversation

    def _insert_message(
        self,
        session: Session,
        conversation: Conversation,
        sender_role: SenderRole,
        sender_id: str,
        text: str,
        status: MessageStatus,
    ) -> ChatMessage:
        row = ChatMessage(
            id=new_id(),
            conversation_key=conversation.conversation_key,
            sender_role=SenderRole(sender_role).value,
            sender_id=sender_id,
            text=text,
            status=MessageStatus(status).value,
            created_at=next_created_at(conversation.last_created_at),
        )
        session.add(row)
        session.flush()  # assigns seq
        conversation.message_count = (conversation.message_count or 0) + 1
        conversation.last_created_at = row.created_at
        return row

    @staticmethod
    def _new_outbound(row: ChatMessage, origin_user_id: str, target_channel_address: str) -> OutboundEntry:
        return OutboundEntry(
            id=new_id(),
            message_id=row.id,
            target_channel_address=target_channel_address,
            origin_user_id=origin_user_id,
            origin_phone=row.conversation_key,
            text=row.text,
            created_at=row.created_at,
        )

    def append_message(self, conversation_key, sender_role, sender_id, text, initial_status) -> Message:
        require_non_empty(conversationKey=conversation_key)
        check_channel_append(sender_role, sender_id, text, initial_status)
        try:
            with self._locks.hold(conversation_key), self._transaction() as session:
                conversation = self._lock_conversation(session, conversation_key)
                row = self._insert_message(
                    session, conversation, sender_role, sender_id, text, initial_status
                )
                message = _to_message(row)
        except IntegrityError as e:
            logger.warning(f"Append to {conversation_key} lost a race: {e}")
            raise ConcurrencyConflict(
                f"conversation {conversation_key} was modified concurrently, retry"
            ) from e
        logger.info(f"Appended message {message.id} to conversation {conversation_key}")
        return message

    def append_user_message(self, conversation_key, origin_user_id, text, target_channel_address):
        require_non_empty(
            targetChannelAddress=target_channel_address,
            originUserId=origin_user_id,
            originPhone=conversation_key,
            text=text,
        )
        try:
            with self._locks.hold(conversation_key), self._transaction() as session:
                conversation = self._lock_conversation(session, conversation_key)
                row = self._insert_message(
                    session,
                    conversation,
                    SenderRole.USER,
                    origin_user_id,
                    text,
                    MessageStatus.PENDING_TO_CHANNEL,
                )
                entry = self._new_outbound(row, origin_user_id, target_channel_address)
                session.add(entry)
                session.flush()
                message = _to_message(row)
                outbound = _to_outbound(entry)
        except IntegrityError as e:
            logger.warning(f"User append to {conversation_key} lost a race: {e}")
            raise ConcurrencyConflict(
                f"conversation {conversation_key} was modified concurrently, retry"
            ) from e
        logger.info(
            f"Appended message {message.id} to conversation {conversation_key}, "
            f"queued outbound {outbound.id} for {target_channel_address}"
        )
        return message, outbound

    # =========================================================================
    # Reads
    # =========================================================================

    def list_messages(self, conversation_key, limit=None) -> list[Message]:
        query = select(ChatMessage).where(ChatMessage.conversation_key == conversation_key)
        with self._session_factory() as session:
            if limit is None:
                query = query.order_by(ChatMessage.created_at.asc(), ChatMessage.seq.asc())
                return [_to_message(row) for row in session.execute(query).scalars()]
            # Newest first from the database, flipped back to chronological order
            query = query.order_by(ChatMessage.created_at.desc(), ChatMessage.seq.desc()).limit(limit)
            rows = list(session.execute(query).scalars())
            return [_to_message(row) for row in reversed(rows)]

    def count_messages(self, conversation_key) -> int:
        with self._session_factory() as session:
            count = session.execute(
                select(func.count(ChatMessage.seq)).where(ChatMessage.conversation_key == conversation_key)
            ).scalar()
        return count or 0

    def get_message(self, message_id) -> Message:
        with self._session_factory() as session:
            row = session.execute(
                select(ChatMessage).where(ChatMessage.id == message_id)
            ).scalar_one_or_none()
            if row is None:
                raise MessageNotFound(message_id)
            return _to_message(row)

    def get_outbound(self, outbound_id) -> PendingOutboundMessage:
        with self._session_factory() as session:
            row = session.get(OutboundEntry, outbound_id)
            if row is None:
                raise MessageNotFound(outbound_id, kind="outbound entry")
            return _to_outbound(row)

    def list_conversations(self) -> list[ConversationSummary]:
        with self._session_factory() as session:
            rows = session.execute(
                select(Conversation).order_by(Conversation.last_created_at.desc())
            ).scalars()
            return [
                ConversationSummary(
                    conversation_key=row.conversation_key,
                    message_count=row.message_count,
                    last_message_at=row.last_created_at,
                )
                for row in rows
            ]

    def stats(self) -> dict:
        with self._session_factory() as session:
            per_status = {
                status: count
                for status, count in session.execute(
                    select(ChatMessage.status, func.count(ChatMessage.seq)).group_by(ChatMessage.status)
                )
            }
            conversations_count = session.execute(
                select(func.count(Conversation.conversation_key))
            ).scalar() or 0
            outbound_total = session.execute(select(func.count(OutboundEntry.id))).scalar() or 0
            outbound_claimed = session.execute(
                select(func.count(OutboundEntry.id)).where(OutboundEntry.claimed_at.is_not(None))
            ).scalar() or 0
        return {
            "total_messages": sum(per_status.values()),
            "conversations_count": conversations_count,
            "messages_per_status": per_status,
            "outbound_pending": outbound_total - outbound_claimed,
            "outbound_claimed": outbound_claimed,
        }

    # =========================================================================
    # Status Transitions and Claims
    # =========================================================================

    def transition_status(self, message_id, new_status) -> Message:
        new_status = MessageStatus(new_status)
        with self._transaction() as session:
            row = session.execute(
                select(ChatMessage).where(ChatMessage.id == message_id)
            ).scalar_one_or_none()
            if row is None:
                raise MessageNotFound(message_id)
            current = row.status
            check_transition(current, new_status)
            result = session.execute(
                update(ChatMessage)
                .where(ChatMessage.id == message_id, ChatMessage.status == current)
                .values(status=new_status.value)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConcurrencyConflict(f"message {message_id} changed status concurrently")
            message = _to_message(row).model_copy(update={"status": new_status.value})
        logger.info(f"Message {message_id} moved {current} -> {new_status.value}")
        return message

    def _claim_row(self, session: Session, outbound_id: str, claimant: Optional[str], now: str) -> bool:
        result = session.execute(
            update(OutboundEntry)
            .where(OutboundEntry.id == outbound_id, OutboundEntry.claimed_at.is_(None))
            .values(claimed_at=now, claimed_by=claimant)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def claim_outbound(self, outbound_id, claimant=None) -> PendingOutboundMessage:
        with self._transaction() as session:
            if not self._claim_row(session, outbound_id, claimant, utc_now_iso()):
                if session.get(OutboundEntry, outbound_id) is None:
                    raise MessageNotFound(outbound_id, kind="outbound entry")
                raise ConcurrencyConflict(f"outbound entry already claimed: {outbound_id}")
            row = session.get(OutboundEntry, outbound_id, populate_existing=True)
            outbound = _to_outbound(row)
        logger.info(f"Outbound {outbound_id} claimed by {claimant or 'anonymous agent'}")
        return outbound

    def _unclaimed_ids(self, session: Session, target_channel_address: str, skip: set, limit: int) -> list[str]:
        query = (
            select(OutboundEntry.id)
            .join(ChatMessage, ChatMessage.id == OutboundEntry.message_id)
            .where(
                OutboundEntry.target_channel_address == target_channel_address,
                OutboundEntry.claimed_at.is_(None),
            )
            .order_by(OutboundEntry.created_at.asc(), ChatMessage.seq.asc())
            .limit(limit)
            # Rows locked by another claimant are skipped; SQLite renders no FOR UPDATE
            .with_for_update(skip_locked=True, of=OutboundEntry)
        )
        if skip:
            query = query.where(OutboundEntry.id.not_in(skip))
        return list(session.execute(query).scalars())

    def claim_pending(self, target_channel_address, claimant=None, limit=50):
        claimed_ids: list[str] = []
        tried: set[str] = set()
        with self._transaction() as session:
            now = utc_now_iso()
            while len(claimed_ids) < limit:
                candidates = self._unclaimed_ids(
                    session, target_channel_address, tried, limit - len(claimed_ids)
                )
                if not candidates:
                    break
                tried.update(candidates)
                # Entries taken by a concurrent claimant since the select are skipped and replaced
                claimed_ids.extend(
                    oid for oid in candidates if self._claim_row(session, oid, claimant, now)
                )
            if not claimed_ids:
                return []
            rows = session.execute(
                select(OutboundEntry)
                .join(ChatMessage, ChatMessage.id == OutboundEntry.message_id)
                .where(OutboundEntry.id.in_(claimed_ids))
                .order_by(OutboundEntry.created_at.asc(), ChatMessage.seq.asc())
                .execution_options(populate_existing=True)
            ).scalars()
            claimed = [_to_outbound(row) for row in rows]
        logger.info(f"Claimed {len(claimed)} outbound entries for {target_channel_address}")
        return claimed
