"""
Pydantic schemas for the entity model and the HTTP adapter.

This module contains:
- Enumerations for sender, delivery status and media kind
- Frozen entity models handed out by the store (Conversation, Message, Snapshot)
- Request/response models for the local HTTP adapter
"""

from datetime import datetime
from enum import IntEnum
from typing import Optional

from pydantic import Base64Bytes, BaseModel, ConfigDict, Field


# =============================================================================
# Enumerations
# =============================================================================

class Sender(IntEnum):
    """Who sent a message within the conversation."""
    SELF = 0
    COUNTERPART = 1


class MessageStatus(IntEnum):
    """
    Delivery lifecycle of a message.

    Values are ordered; a message's status only ever moves forward.
    """
    SENT = 0
    DELIVERED = 1
    READ = 2


class MediaKind(IntEnum):
    """Content type of a message."""
    TEXT = 0
    IMAGE = 1
    VIDEO = 2


MEDIA_CAPTIONS = {
    MediaKind.IMAGE: "📷 Image",
    MediaKind.VIDEO: "🎥 Video",
}


# =============================================================================
# Entity Models
# =============================================================================

class Message(BaseModel):
    """
    A single message inside a conversation.

    Instances are immutable; changes go through the store's write API, which
    hands back a new instance.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    conversation_id: str
    timestamp: datetime
    seq: int
    sender: Sender
    status: MessageStatus
    media_kind: MediaKind = MediaKind.TEXT
    content: Optional[str] = None
    media_payload: Optional[bytes] = None
    is_removed: bool = False
    reply_to_id: Optional[str] = None
    # Set when the reply target was hard deleted and reply_to_id was cleared
    reply_orphaned: bool = False

    def sort_key(self) -> tuple:
        return (self.timestamp, self.seq)


class Conversation(BaseModel):
    """
    A named thread of messages with one counterpart.

    `messages` is always in chronological order (timestamp, then seq).
    """
    model_config = ConfigDict(frozen=True)

    id: str
    contact_name: str
    created_at: datetime
    last_activity_at: datetime
    seq: int
    messages: tuple[Message, ...] = ()

    def find_message(self, message_id: Optional[str]) -> Optional[Message]:
        if message_id is None:
            return None
        for message in self.messages:
            if message.id == message_id:
                return message
        return None


class Snapshot(BaseModel):
    """The full ordered conversation list at one committed version."""
    model_config = ConfigDict(frozen=True)

    version: int
    conversations: tuple[Conversation, ...] = ()


class ReplyPreview(BaseModel):
    """Quoted reference to the message a reply points at."""
    model_config = ConfigDict(frozen=True)

    available: bool = True
    sender: Optional[Sender] = None
    sender_name: Optional[str] = None
    content: Optional[str] = None


# =============================================================================
# Pydantic Request Models
# =============================================================================

class CreateConversationRequest(BaseModel):
    """Body for POST /conversations."""
    contact_name: str = Field(
        ...,
        max_length=256,
        description="Display name of the counterpart"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [{"contact_name": "Ada Lovelace"}]
        }
    }


class SendMessageRequest(BaseModel):
    """Body for POST /conversations/{id}/messages."""
    content: str = Field(
        ...,
        max_length=4096,
        description="Message text"
    )
    sender: Sender = Field(
        default=Sender.SELF,
        description="0 for the local user, 1 for the counterpart"
    )
    reply_to_id: Optional[str] = Field(
        None,
        description="Message in the same conversation this one replies to"
    )


class SendMediaRequest(BaseModel):
    """Body for POST /conversations/{id}/media."""
    payload: Base64Bytes = Field(
        ...,
        description="Base64-encoded attachment"
    )
    media_kind: MediaKind = Field(
        ...,
        description="1 for image, 2 for video"
    )
    reply_to_id: Optional[str] = Field(
        None,
        description="Message in the same conversation this one replies to"
    )


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class ReplyPreviewResponse(BaseModel):
    """Quoted reply target as rendered for a client."""
    available: bool
    sender_name: Optional[str] = None
    content: Optional[str] = None


class MessageResponse(BaseModel):
    """
    Response model for a single message.
    The binary attachment is not inlined; `has_media` tells whether one exists.
    """
    id: str = Field(..., description="Message identifier")
    conversation_id: str = Field(..., description="Owning conversation")
    timestamp: datetime = Field(..., description="Creation time (UTC)")
    sender: Sender
    sender_name: str = Field(..., description="'Me' or the contact name")
    status: MessageStatus
    status_name: str = Field(..., description="Sent, Delivered or Read")
    media_kind: MediaKind
    content: Optional[str] = Field(None, description="Text or media caption")
    has_media: bool = False
    is_removed: bool = False
    reply_to_id: Optional[str] = None
    reply_preview: Optional[ReplyPreviewResponse] = None


class MessagesListResponse(BaseModel):
    """Chronological messages of one conversation."""
    conversation_id: str
    data: list[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class ConversationResponse(BaseModel):
    """
    Response model for one row of the conversation list.

    Contains the derived fields a list view renders: initials, preview text
    and unread count.
    """
    id: str
    contact_name: str
    initials: str
    created_at: datetime
    last_activity_at: datetime
    preview: str
    unread_count: int = Field(..., ge=0)
    message_count: int = Field(..., ge=0)


class ConversationsListResponse(BaseModel):
    """Ordered conversation list, newest activity first."""
    version: int = Field(..., ge=0, description="Snapshot version")
    data: list[ConversationResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class MarkReadResponse(BaseModel):
    """Result of POST /conversations/{id}/read."""
    marked: int = Field(..., ge=0, description="Messages moved to Read")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
