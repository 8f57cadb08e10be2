"""
Read projections over the entity model.

Pure functions used by presentation code to render conversation lists and
message bubbles. None of them touch the store.
"""

from typing import Iterable, Optional

from chatstore.config import settings
from chatstore.schemas import (
    Conversation,
    Message,
    MessageStatus,
    ReplyPreview,
    Sender,
)

NO_MESSAGES_TEXT = "No messages yet"
MESSAGE_REMOVED_TEXT = "This message was deleted"
NO_CONTENT_TEXT = "No content"
SELF_DISPLAY_NAME = "Me"

# Rendered when a reply's target was hard deleted or soft deleted
REPLY_UNAVAILABLE = ReplyPreview(available=False, content="Original message unavailable")

_STATUS_NAMES = {
    MessageStatus.SENT: "Sent",
    MessageStatus.DELIVERED: "Delivered",
    MessageStatus.READ: "Read",
}


def chronological_messages(conversation: Conversation) -> list[Message]:
    """Messages oldest first; equal timestamps keep creation order."""
    return sorted(conversation.messages, key=Message.sort_key)


def unread_count(conversation: Conversation) -> int:
    return sum(
        1
        for message in conversation.messages
        if message.sender == Sender.COUNTERPART and message.status != MessageStatus.READ
    )


def preview_text(conversation: Conversation) -> str:
    """Text shown under the contact name in the conversation list."""
    messages = chronological_messages(conversation)
    if not messages:
        return NO_MESSAGES_TEXT
    latest = messages[-1]
    if latest.is_removed:
        return MESSAGE_REMOVED_TEXT
    return latest.content or NO_CONTENT_TEXT


def initials(contact_name: str) -> str:
    """
    Avatar initials: first letter of each of the first two words.

    >>> initials("Bob Charlie Smith")
    'BC'
    """
    tokens = contact_name.split()
    return "".join(token[0] for token in tokens[:2]).upper()


def sender_display_name(message: Message, conversation: Optional[Conversation] = None) -> str:
    if message.sender == Sender.SELF:
        return SELF_DISPLAY_NAME
    if conversation is not None:
        return conversation.contact_name
    return "Contact"


def status_display_name(status: MessageStatus) -> str:
    return _STATUS_NAMES[MessageStatus(status)]


def resolved_reply_preview(message: Message, conversation: Conversation) -> Optional[ReplyPreview]:
    """
    Resolve the quoted message a reply points at.

    Returns None when the message is not a reply, REPLY_UNAVAILABLE when the
    target no longer exists in the conversation or was soft deleted.
    """
    if message.reply_to_id is None:
        return REPLY_UNAVAILABLE if message.reply_orphaned else None
    target = conversation.find_message(message.reply_to_id)
    if target is None or target.is_removed:
        return REPLY_UNAVAILABLE
    return ReplyPreview(
        available=True,
        sender=target.sender,
        sender_name=sender_display_name(target, conversation),
        content=target.content,
    )


def reply_chain(
    message: Message,
    conversation: Conversation,
    max_depth: Optional[int] = None,
) -> list[Message]:
    """
    Walk reply targets starting from `message`'s target.

    Stops at the first missing target, at a message already visited, or
    after max_depth hops (settings.REPLY_CHAIN_MAX_DEPTH by default).
    """
    if max_depth is None:
        max_depth = settings.REPLY_CHAIN_MAX_DEPTH
    chain = []
    seen = {message.id}
    current = message
    while current.reply_to_id is not None and len(chain) < max_depth:
        target = conversation.find_message(current.reply_to_id)
        if target is None or target.id in seen:
            break
        chain.append(target)
        seen.add(target.id)
        current = target
    return chain


def filter_conversations(conversations: Iterable[Conversation], search_text: str) -> list[Conversation]:
    """Case-insensitive match on contact name or preview text; keeps order."""
    needle = search_text.strip().casefold()
    if not needle:
        return list(conversations)
    return [
        conversation
        for conversation in conversations
        if needle in conversation.contact_name.casefold()
        or needle in preview_text(conversation).casefold()
    ]
