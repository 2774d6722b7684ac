"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Column, Index, Integer, String, Text

from chatbridge.storage import Base


class Conversation(Base):
    """
    One row per conversation key.

    Appends lock this row so writers to the same key are serialized;
    last_created_at keeps created_at non-decreasing within the key.
    """
    __tablename__ = "conversations"

    conversation_key = Column(String, primary_key=True)
    message_count = Column(Integer, nullable=False, default=0)
    last_created_at = Column(String, nullable=True)  # ISO-8601 UTC


class ChatMessage(Base):
    """
    Table: messages
    Primary Key: seq (insertion sequence, breaks created_at ties)
    """
    __tablename__ = "messages"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, nullable=False, unique=True, index=True)
    conversation_key = Column(String, nullable=False)
    sender_role = Column(String, nullable=False)
    sender_id = Column(String, nullable=False)
    text = Column(Text, nullable=False)
    status = Column(String, nullable=False, index=True)
    created_at = Column(String, nullable=False)

    __table_args__ = (
        Index("idx_messages_conversation_order", "conversation_key", "created_at", "seq"),
    )


class OutboundEntry(Base):
    """
    Table: outbound_messages

    Claimed entries stay in the table; claimed_at marks progress.
    """
    __tablename__ = "outbound_messages"

    id = Column(String, primary_key=True)
    message_id = Column(String, nullable=False, unique=True)
    target_channel_address = Column(String, nullable=False)
    origin_user_id = Column(String, nullable=False)
    origin_phone = Column(String, nullable=False)
    text = Column(Text, nullable=False)
    created_at = Column(String, nullable=False)
    claimed_at = Column(String, nullable=True)
    claimed_by = Column(String, nullable=True)

    __table_args__ = (
        Index("idx_outbound_unclaimed", "target_channel_address", "claimed_at", "created_at"),
    )


class DirectoryEntry(Base):
    """User id <-> phone mapping owned by the account directory."""
    __tablename__ = "user_directory"

    user_id = Column(String, primary_key=True)
    phone_number = Column(String, nullable=True, unique=True, index=True)
