"""
Local conversation store.

Owns conversation and message records, keeps them ordered and consistent,
and broadcasts the ordered conversation list to subscribers on every change.
"""

from chatstore.errors import InvalidArgument, NotFound, StorageFailure, StoreError
from chatstore.schemas import (
    Conversation,
    MediaKind,
    Message,
    MessageStatus,
    ReplyPreview,
    Sender,
    Snapshot,
)
from chatstore.store import ConversationStore

__all__ = [
    "Conversation",
    "ConversationStore",
    "InvalidArgument",
    "MediaKind",
    "Message",
    "MessageStatus",
    "NotFound",
    "ReplyPreview",
    "Sender",
    "Snapshot",
    "StorageFailure",
    "StoreError",
]
