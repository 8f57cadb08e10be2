"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For the immutable entity models handed to callers, see schemas.py.
"""

from sqlalchemy import Boolean, Column, ForeignKey, Integer, LargeBinary, String, Text

from chatstore.storage import Base


class ConversationRecord(Base):
    """
    Stored conversation.

    Table: conversations
    Primary Key: id
    """
    __tablename__ = "conversations"

    id = Column(String, primary_key=True, index=True)
    contact_name = Column(String, nullable=False)
    created_at = Column(String, nullable=False)  # ISO-8601 UTC string
    last_activity_at = Column(String, nullable=False, index=True)
    seq = Column(Integer, nullable=False, unique=True)


class MessageRecord(Base):
    """
    Stored message.

    Table: messages
    Primary Key: id
    sender/status/media_kind hold the integer values of their enums.
    reply_to_id is a plain column, not a foreign key: replies outlive their
    targets; when the target is hard deleted reply_to_id is reset to NULL
    and reply_orphaned is set.
    """
    __tablename__ = "messages"

    id = Column(String, primary_key=True, index=True)
    conversation_id = Column(
        String,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    ts = Column(String, nullable=False, index=True)  # ISO-8601 UTC string
    seq = Column(Integer, nullable=False, unique=True)
    sender = Column(Integer, nullable=False)
    status = Column(Integer, nullable=False)
    media_kind = Column(Integer, nullable=False, default=0)
    content = Column(Text, nullable=True)
    media_payload = Column(LargeBinary, nullable=True)
    is_removed = Column(Boolean, nullable=False, default=False)
    reply_to_id = Column(String, nullable=True, index=True)
    reply_orphaned = Column(Boolean, nullable=False, default=False)
