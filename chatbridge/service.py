"""
Inbound ingestion: every write path into the bridge.

- web_send: a web user's message, logged and queued for the external agent
- ingest_bot_reply / ingest_channel_inbound: replies from the external
  agent, logged as already delivered and pushed to the user's live sessions
- claim_* / acknowledge: the agent's side of the outbound queue

Identity resolution always happens before the store is touched, so no
conversation lock is held while the resolver is consulted.
"""

import logging
from typing import Optional

from chatbridge.errors import ConcurrencyConflict, ValidationError
from chatbridge.fanout import MESSAGE_UPDATED, Notifier, notify_best_effort
from chatbridge.identity import IdentityResolver
from chatbridge.schemas import (
    BOT_SENDER_ID,
    Message,
    MessageStatus,
    PendingOutboundMessage,
    SenderRole,
)
from chatbridge.store import BridgeStore
from chatbridge.utils import require_non_empty

logger = logging.getLogger(__name__)


class BridgeService:

    def __init__(
        self,
        store: BridgeStore,
        resolver: IdentityResolver,
        notifier: Notifier,
        channel_address: str = "",
        claim_batch_limit: int = 50,
    ):
        self.store = store
        self.resolver = resolver
        self.notifier = notifier
        self.channel_address = channel_address
        self.claim_batch_limit = claim_batch_limit

    # =========================================================================
    # Web Send
    # =========================================================================

    async def web_send(
        self,
        origin_user_id: Optional[str],
        origin_phone: Optional[str],
        text: Optional[str],
        target_channel_address: Optional[str] = None,
    ) -> tuple[Message, PendingOutboundMessage, int]:
        """
        Log a web user's message and queue it for the external agent.

        ``origin_phone`` must be the phone the directory holds for
        ``origin_user_id``; it becomes the conversation key and the address
        the agent routes its reply to.
        """
        target = target_channel_address or self.channel_address
        require_non_empty(
            targetChannelAddress=target,
            text=text,
            originUserId=origin_user_id,
            originPhone=origin_phone,
        )

        registered_phone = self.resolver.resolve_user_phone(origin_user_id)
        if registered_phone != origin_phone:
            logger.warning(f"User {origin_user_id} sent from an unregistered phone")
            raise ValidationError(
                "originPhone does not match the phone registered for originUserId",
                fields=["originPhone"],
            )

        message, outbound = self.store.append_user_message(
            conversation_key=origin_phone,
            origin_user_id=origin_user_id,
            text=text,
            target_channel_address=target,
        )
        # Keeps the sender's other open sessions in sync
        notified = await notify_best_effort(self.notifier, origin_user_id, message)
        return message, outbound, notified

    # =========================================================================
    # Channel Replies
    # =========================================================================

    async def ingest_bot_reply(
        self,
        user_id: Optional[str],
        text: Optional[str],
        status: MessageStatus = MessageStatus.DELIVERED_TO_USER,
    ) -> tuple[Message, int]:
        """Log a bot reply addressed by user id and push it to that user's sessions."""
        require_non_empty(userId=user_id, text=text)
        phone = self.resolver.resolve_user_phone(user_id)
        return await self._append_reply(user_id, phone, text, status)

    async def ingest_channel_inbound(
        self,
        phone: Optional[str],
        text: Optional[str],
        status: MessageStatus = MessageStatus.DELIVERED_TO_USER,
    ) -> tuple[Message, int]:
        """Log a bot reply addressed by the user's phone."""
        require_non_empty(phone=phone, text=text)
        user_id = self.resolver.resolve_user_by_phone(phone)
        return await self._append_reply(user_id, phone, text, status)

    async def _append_reply(self, user_id, phone, text, status) -> tuple[Message, int]:
        message = self.store.append_message(
            conversation_key=phone,
            sender_role=SenderRole.BOT,
            sender_id=BOT_SENDER_ID,
            text=text,
            initial_status=status,
        )
        notified = await notify_best_effort(self.notifier, user_id, message)
        return message, notified

    # =========================================================================
    # Outbound Queue (agent side)
    # =========================================================================

    def claim_pending(
        self,
        target_channel_address: str,
        claimant: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[PendingOutboundMessage]:
        require_non_empty(targetChannelAddress=target_channel_address)
        limit = min(limit or self.claim_batch_limit, self.claim_batch_limit)
        return self.store.claim_pending(target_channel_address, claimant=claimant, limit=limit)

    def claim_one(self, outbound_id: str, claimant: Optional[str] = None) -> PendingOutboundMessage:
        return self.store.claim_outbound(outbound_id, claimant=claimant)

    async def acknowledge(
        self,
        outbound_id: str,
        delivered: bool,
        reason: Optional[str] = None,
    ) -> Message:
        """
        Record the agent's forwarding outcome for a claimed entry.

        delivered=True moves the message to delivered_to_user, otherwise to
        failed. The owner's live sessions get a message.updated event.
        """
        entry = self.store.get_outbound(outbound_id)
        if entry.claimed_at is None:
            raise ConcurrencyConflict(
                f"outbound entry {outbound_id} must be claimed before it is acknowledged"
            )
        new_status = MessageStatus.DELIVERED_TO_USER if delivered else MessageStatus.FAILED
        message = self.store.transition_status(entry.message_id, new_status)
        if not delivered:
            logger.warning(f"Outbound {outbound_id} failed permanently: {reason or 'no reason given'}")
        await notify_best_effort(self.notifier, entry.origin_user_id, message, MESSAGE_UPDATED)
        return message

    # =========================================================================
    # Reads
    # =========================================================================

    def conversation(self, conversation_key: str, limit: Optional[int] = None) -> tuple[list[Message], int]:
        require_non_empty(conversationKey=conversation_key)
        messages = self.store.list_messages(conversation_key, limit=limit)
        total = self.store.count_messages(conversation_key) if limit is not None else len(messages)
        return messages, total
