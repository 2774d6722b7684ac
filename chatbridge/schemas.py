"""
Pydantic schemas for request/response validation.

This module contains:
- Enums shared by the storage layer and the API
- Domain records returned by the stores (Message, PendingOutboundMessage)
- Request models for incoming data validation
- Response models for API responses
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Enums
# =============================================================================

class SenderRole(str, Enum):
    USER = "user"
    BOT = "bot"


class MessageStatus(str, Enum):
    PENDING_TO_CHANNEL = "pending_to_channel"
    DELIVERED_TO_USER = "delivered_to_user"
    DELIVERED_TO_WEB = "delivered_to_web"
    FAILED = "failed"


# senderId recorded on every bot-authored message
BOT_SENDER_ID = "bot-system"


# =============================================================================
# Domain Records
# =============================================================================

class Message(BaseModel):
    """
    One entry of a conversation log.

    Only ``status`` ever changes after creation. ``seq`` is the insertion
    sequence used to break ``created_at`` ties.
    """
    model_config = ConfigDict(
        populate_by_name=True,
        from_attributes=True,
        use_enum_values=True,
    )

    id: str = Field(..., description="Opaque unique identifier")
    seq: int = Field(..., ge=0, description="Insertion sequence")
    conversation_key: str = Field(..., alias="conversationKey", serialization_alias="conversationKey")
    sender_role: SenderRole = Field(..., alias="senderRole", serialization_alias="senderRole")
    sender_id: str = Field(..., alias="senderId", serialization_alias="senderId")
    text: str = Field(..., min_length=1)
    status: MessageStatus
    created_at: str = Field(
        ...,
        alias="createdAt",
        serialization_alias="createdAt",
        description="ISO-8601 UTC timestamp, set once",
    )


class PendingOutboundMessage(BaseModel):
    """A user-authored message waiting to be claimed by the external agent."""
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: str
    message_id: str = Field(..., alias="messageId", serialization_alias="messageId")
    target_channel_address: str = Field(
        ..., alias="targetChannelAddress", serialization_alias="targetChannelAddress"
    )
    origin_user_id: str = Field(..., alias="originUserId", serialization_alias="originUserId")
    origin_phone: str = Field(..., alias="originPhone", serialization_alias="originPhone")
    text: str
    created_at: str = Field(..., alias="createdAt", serialization_alias="createdAt")
    claimed_at: Optional[str] = Field(None, alias="claimedAt", serialization_alias="claimedAt")
    claimed_by: Optional[str] = Field(None, alias="claimedBy", serialization_alias="claimedBy")


class ConversationSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    conversation_key: str = Field(..., alias="conversationKey", serialization_alias="conversationKey")
    message_count: int = Field(..., ge=0, alias="messageCount", serialization_alias="messageCount")
    last_message_at: Optional[str] = Field(
        None, alias="lastMessageAt", serialization_alias="lastMessageAt"
    )


# =============================================================================
# Pydantic Request Models
# =============================================================================

def _strip_required(value: Optional[str]) -> Optional[str]:
    # Blank strings are treated as missing so they fail the required check
    if isinstance(value, str) and not value.strip():
        return None
    return value


class WebSendRequest(BaseModel):
    """
    Body of a message typed by a web user.

    Fields are optional at the schema level so the service can report every
    missing field at once; ``targetChannelAddress`` falls back to the
    configured CHANNEL_ADDRESS.
    """
    model_config = ConfigDict(populate_by_name=True)

    target_channel_address: Optional[str] = Field(None, alias="targetChannelAddress")
    text: Optional[str] = Field(None, max_length=4096)
    origin_user_id: Optional[str] = Field(None, alias="originUserId")
    origin_phone: Optional[str] = Field(None, alias="originPhone")

    @field_validator("target_channel_address", "text", "origin_user_id", "origin_phone", mode="before")
    @classmethod
    def blank_is_missing(cls, v):
        return _strip_required(v)


class BotReplyRequest(BaseModel):
    """Reply produced by the external agent, addressed by platform user id."""
    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={"examples": [{"userId": "u-1", "text": "Gracias"}]},
    )

    user_id: Optional[str] = Field(None, alias="userId")
    text: Optional[str] = Field(None, max_length=4096)

    @field_validator("user_id", "text", mode="before")
    @classmethod
    def blank_is_missing(cls, v):
        return _strip_required(v)


class ChannelInboundRequest(BaseModel):
    """Reply produced by the external agent, addressed by the user's phone."""
    model_config = ConfigDict(populate_by_name=True)

    phone: Optional[str] = None
    text: Optional[str] = Field(None, max_length=4096)

    @field_validator("phone", "text", mode="before")
    @classmethod
    def blank_is_missing(cls, v):
        return _strip_required(v)


class ClaimBatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_channel_address: str = Field(..., min_length=1, alias="targetChannelAddress")
    limit: Optional[int] = Field(None, ge=1, le=500)


class AckRequest(BaseModel):
    """Outcome reported by the agent after forwarding a claimed entry."""
    delivered: bool
    reason: Optional[str] = Field(None, max_length=1024)


class FanoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., min_length=1, alias="userId")
    message: Message
    event: str = Field(default="message.created", pattern=r"^message\.(created|updated)$")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")
    code: Optional[str] = Field(None, description="Machine-readable error code")


class WebSendResponse(BaseModel):
    status: str = Field(default="ok")
    outbound: PendingOutboundMessage
    message: Message
    notified: int = Field(0, ge=0, description="Other live sessions of the sender that were updated")


class IngestResponse(BaseModel):
    status: str = Field(default="ok")
    message: Message
    notified: int = Field(0, ge=0, description="Live sessions that received the message")


class ClaimBatchResponse(BaseModel):
    messages: list[PendingOutboundMessage] = Field(default_factory=list)


class FanoutResponse(BaseModel):
    delivered: int = Field(..., ge=0)


class ConversationResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_key: str = Field(..., alias="conversationKey", serialization_alias="conversationKey")
    data: list[Message] = Field(default_factory=list)
    total: int = Field(..., ge=0, description="Messages in the whole conversation")


class ConversationsListResponse(BaseModel):
    data: list[ConversationSummary] = Field(default_factory=list)


class StatsResponse(BaseModel):
    """
    Response model for GET /stats endpoint.

    - total_messages: count of all logged messages
    - conversations_count: number of distinct conversation keys
    - messages_per_status: count per message status
    - outbound_pending / outbound_claimed: queue progress
    """
    total_messages: int = Field(..., ge=0)
    conversations_count: int = Field(..., ge=0)
    messages_per_status: dict[str, int] = Field(default_factory=dict)
    outbound_pending: int = Field(..., ge=0)
    outbound_claimed: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


# =============================================================================
# WebSocket Envelopes
# =============================================================================

class WsInbound(BaseModel):
    """Client -> Server."""

    type: str  # ping
    data: dict[str, Any] = {}


class WsOutbound(BaseModel):
    """Server -> Client."""

    type: str  # room.joined | message.created | message.updated | pong | error
    data: dict[str, Any] = {}
