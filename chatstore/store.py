"""
The conversation store engine.

ConversationStore is the single authoritative holder of conversation and
message state for the process. Every write runs under one re-entrant lock:
it validates against the in-memory state, writes the change to the database
in one transaction, and only after the commit succeeds swaps the in-memory
records and publishes a new Snapshot. Reads never take the lock; they read
only the published state, which a write replaces in a single assignment
after every change is in place.

In memory the records are kept as an arena:

    _heads     conversation id -> Conversation (without messages)
    _arena     conversation id -> set of owned message ids
    _messages  message id -> Message
    _replies   target message id -> ids of messages replying to it
    _views     conversation id -> Conversation with its sorted messages

The working dicts above are only touched under the lock. Readers see the
_PublishedState built from them by _advance.
"""

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterable, NamedTuple, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from chatstore.config import settings
from chatstore.errors import InvalidArgument, NotFound, StorageFailure
from chatstore.metrics import record_store_operation
from chatstore.notifier import ChangeNotifier, SnapshotCallback, Subscription
from chatstore.schemas import (
    MEDIA_CAPTIONS,
    Conversation,
    MediaKind,
    Message,
    MessageStatus,
    Sender,
    Snapshot,
)
from chatstore.storage import (
    clear_reply_targets,
    create_db_engine,
    delete_conversation_rows,
    delete_message_row,
    init_db,
    insert_conversation,
    insert_message,
    load_all,
    make_session_factory,
    mark_messages_read,
    update_last_activity,
    update_message_row,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
MessageMutator = Callable[[Message], Message]

# Fields update_message may never change
_IMMUTABLE_MESSAGE_FIELDS = (
    "id",
    "conversation_id",
    "timestamp",
    "seq",
    "sender",
    "media_kind",
    "reply_to_id",
    "reply_orphaned",
)


class _PublishedState(NamedTuple):
    """Everything lock-free readers see, replaced as one object per commit."""
    snapshot: Snapshot
    views: dict[str, Conversation]
    messages: dict[str, Message]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def conversation_order_key(conversation: Conversation) -> tuple:
    """Sort key for the conversation list; use with reverse=True."""
    return (conversation.last_activity_at, conversation.seq)


class ConversationStore:
    """
    Owns all conversations and messages and notifies subscribers on change.

    Args:
        database_url: SQLAlchemy URL; defaults to settings.DATABASE_URL
        engine: An existing engine to use instead of creating one
        clock: Returns the current time as a timezone-aware datetime
        notifier: Notifier to publish snapshots through
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        *,
        engine: Optional[Engine] = None,
        clock: Optional[Clock] = None,
        notifier: Optional[ChangeNotifier] = None,
    ):
        self._owns_engine = engine is None
        self._engine = engine or create_db_engine(database_url or settings.DATABASE_URL)
        self._session_factory = make_session_factory(self._engine)
        self._clock = clock or utc_now
        self._notifier = notifier or ChangeNotifier()
        self._lock = threading.RLock()

        self._heads: dict[str, Conversation] = {}
        self._arena: dict[str, set[str]] = {}
        self._messages: dict[str, Message] = {}
        self._replies: dict[str, set[str]] = {}
        self._views: dict[str, Conversation] = {}
        self._conversation_seq = 1
        self._message_seq = 1
        self._version = 0
        self._published = _PublishedState(Snapshot(version=0), {}, {})

        init_db(self._engine)
        self._load()

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def notifier(self) -> ChangeNotifier:
        return self._notifier

    def close(self) -> None:
        if self._owns_engine:
            self._engine.dispose()

    # =========================================================================
    # Loading
    # =========================================================================

    def _load(self) -> None:
        with self._session_factory() as db:
            conversations, messages = load_all(db)

        with self._lock:
            for conversation in conversations:
                self._heads[conversation.id] = conversation
                self._arena[conversation.id] = set()
                self._conversation_seq = max(self._conversation_seq, conversation.seq + 1)

            for message in messages:
                self._messages[message.id] = message
                self._arena[message.conversation_id].add(message.id)
                self._message_seq = max(self._message_seq, message.seq + 1)

            for message in messages:
                target = self._messages.get(message.reply_to_id) if message.reply_to_id else None
                if target is not None and target.conversation_id == message.conversation_id:
                    self._replies.setdefault(target.id, set()).add(message.id)
                elif message.reply_to_id is not None:
                    logger.warning(f"Dropping dangling reply target on load: {message.id} -> {message.reply_to_id}")
                    self._messages[message.id] = message.model_copy(update={"reply_to_id": None, "reply_orphaned": True})

            self._publish_state(self._heads.keys())

    # =========================================================================
    # Read access
    # =========================================================================

    @property
    def snapshot(self) -> Snapshot:
        """The latest committed snapshot."""
        return self._published.snapshot

    def list_conversations(self) -> list[Conversation]:
        """All conversations, most recent activity first."""
        return list(self._published.snapshot.conversations)

    def get_conversation(self, conversation_id: str) -> Conversation:
        conversation = self._published.views.get(conversation_id)
        if conversation is None:
            raise NotFound("conversation", conversation_id)
        return conversation

    def get_message(self, message_id: str) -> Message:
        message = self._published.messages.get(message_id)
        if message is None:
            raise NotFound("message", message_id)
        return message

    def list_messages(self, conversation_id: str) -> list[Message]:
        """Messages of one conversation, oldest first."""
        return list(self.get_conversation(conversation_id).messages)

    def subscribe(self, callback: SnapshotCallback) -> Subscription:
        """
        Register a snapshot callback.

        The callback receives the current snapshot right away and then one
        snapshot per committed mutation (possibly coalesced).
        """
        with self._lock:
            subscription = self._notifier.register(callback)
            current = self._published.snapshot
        subscription.offer(current)
        return subscription

    # =========================================================================
    # Write API
    # =========================================================================

    def create_conversation(self, contact_name: str) -> Conversation:
        """
        Create an empty conversation.

        The name is stripped of surrounding whitespace; a blank name raises
        InvalidArgument.
        """
        with self._recorded("create_conversation"):
            name = (contact_name or "").strip()
            if not name:
                raise InvalidArgument("contact_name must not be blank")

            with self._lock:
                now = self._clock()
                conversation = Conversation(
                    id=uuid.uuid4().hex,
                    contact_name=name,
                    created_at=now,
                    last_activity_at=now,
                    seq=self._conversation_seq,
                )
                logger.info(f"Creating conversation: id={conversation.id}, contact={name}")

                with self._transaction("create_conversation") as db:
                    insert_conversation(db, conversation)

                self._conversation_seq += 1
                self._heads[conversation.id] = conversation
                self._arena[conversation.id] = set()
                snapshot = self._advance(touched=[conversation.id])

        self._notifier.publish(snapshot)
        return conversation

    def send_message(
        self,
        content: str,
        conversation_id: str,
        sender: Sender = Sender.SELF,
        reply_to_id: Optional[str] = None,
    ) -> Message:
        """
        Append a text message to a conversation.

        Messages from SELF start as SENT, messages from COUNTERPART as
        DELIVERED. Raises NotFound for an unknown conversation or a reply
        target that is not in the same conversation.
        """
        with self._recorded("send_message"):
            if content is None or not content.strip():
                raise InvalidArgument("content must not be blank")
            try:
                sender = Sender(sender)
            except ValueError:
                raise InvalidArgument(f"unknown sender: {sender!r}")

            status = MessageStatus.SENT if sender == Sender.SELF else MessageStatus.DELIVERED
            return self._append(
                "send_message",
                conversation_id,
                reply_to_id,
                sender=sender,
                status=status,
                media_kind=MediaKind.TEXT,
                content=content,
                media_payload=None,
            )

    def send_media(
        self,
        payload: bytes,
        media_kind: MediaKind,
        conversation_id: str,
        reply_to_id: Optional[str] = None,
    ) -> Message:
        """Append an image or video message sent by SELF."""
        with self._recorded("send_media"):
            try:
                media_kind = MediaKind(media_kind)
            except ValueError:
                raise InvalidArgument(f"unknown media kind: {media_kind!r}")
            if media_kind not in MEDIA_CAPTIONS:
                raise InvalidArgument("send_media requires an image or video kind")
            if not payload:
                raise InvalidArgument("media payload must not be empty")

            return self._append(
                "send_media",
                conversation_id,
                reply_to_id,
                sender=Sender.SELF,
                status=MessageStatus.SENT,
                media_kind=media_kind,
                content=MEDIA_CAPTIONS[media_kind],
                media_payload=bytes(payload),
            )

    def update_message(self, message_id: str, mutator: MessageMutator) -> Message:
        """
        Apply a targeted change to one message.

        `mutator` receives the current message and returns the changed copy.
        Only status, content, media_payload and is_removed may change; status
        never moves backwards and a removed message carries no content. Every
        successful call notifies subscribers, even if nothing that affects
        ordering changed.
        """
        with self._recorded("update_message"):
            return self._update("update_message", message_id, mutator)

    def soft_delete_message(self, message_id: str) -> Message:
        """Hide a message's content while keeping its slot and reply links."""
        with self._recorded("soft_delete_message"):
            return self._update(
                "soft_delete_message",
                message_id,
                lambda m: m.model_copy(update={"is_removed": True, "content": None, "media_payload": None}),
            )

    def hard_delete_message(self, message_id: str) -> None:
        """
        Remove a message record.

        Replies that pointed at it lose their target, and the owning
        conversation's last activity falls back to the newest remaining
        message or to its creation time.
        """
        with self._recorded("hard_delete_message"):
            with self._lock:
                message = self._require_message(message_id)
                conversation_id = message.conversation_id
                orphans = set(self._replies.get(message_id, ()))
                last_activity = self._latest_activity(conversation_id, excluding={message_id})
                logger.info(f"Hard deleting message: id={message_id}, orphaned replies={len(orphans)}")

                with self._transaction("hard_delete_message") as db:
                    clear_reply_targets(db, [message_id])
                    delete_message_row(db, message_id)
                    update_last_activity(db, conversation_id, last_activity)

                self._discard_message(message)
                touched = {conversation_id} | self._detach_replies(orphans)
                self._heads[conversation_id] = self._heads[conversation_id].model_copy(
                    update={"last_activity_at": last_activity}
                )
                snapshot = self._advance(touched=touched)

        self._notifier.publish(snapshot)

    def delete_conversation(self, conversation_id: str) -> None:
        """Remove a conversation together with all of its messages."""
        with self._recorded("delete_conversation"):
            with self._lock:
                self._require_conversation(conversation_id)
                owned = set(self._arena[conversation_id])
                outside = {
                    reply_id
                    for target_id in owned
                    for reply_id in self._replies.get(target_id, ())
                    if reply_id not in owned
                }
                logger.info(f"Deleting conversation: id={conversation_id}, messages={len(owned)}")

                with self._transaction("delete_conversation") as db:
                    clear_reply_targets(db, owned)
                    removed = delete_conversation_rows(db, conversation_id)
                logger.debug(f"Removed {removed} message rows for {conversation_id}")

                for message_id in owned:
                    self._discard_message(self._messages[message_id])
                del self._arena[conversation_id]
                del self._heads[conversation_id]
                touched = self._detach_replies(outside)
                snapshot = self._advance(touched=touched, removed=[conversation_id])

        self._notifier.publish(snapshot)

    def mark_read(self, conversation_id: str) -> int:
        """
        Mark every unread counterpart message in a conversation as READ.

        Returns the number of messages changed. When nothing qualifies no
        write happens and no snapshot is published.
        """
        with self._recorded("mark_read"):
            with self._lock:
                self._require_conversation(conversation_id)
                unread = [
                    self._messages[message_id]
                    for message_id in self._arena[conversation_id]
                    if self._messages[message_id].sender == Sender.COUNTERPART
                    and self._messages[message_id].status != MessageStatus.READ
                ]
                if not unread:
                    logger.debug(f"mark_read: nothing unread in {conversation_id}")
                    return 0

                logger.info(f"Marking {len(unread)} messages read in {conversation_id}")
                with self._transaction("mark_read") as db:
                    mark_messages_read(db, [m.id for m in unread])

                for message in unread:
                    self._messages[message.id] = message.model_copy(update={"status": MessageStatus.READ})
                snapshot = self._advance(touched=[conversation_id])

        self._notifier.publish(snapshot)
        return len(unread)

    # =========================================================================
    # Internals
    # =========================================================================

    @contextmanager
    def _recorded(self, operation: str):
        try:
            yield
        except NotFound:
            record_store_operation(operation, "not_found")
            raise
        except InvalidArgument:
            record_store_operation(operation, "invalid_argument")
            raise
        except StorageFailure:
            record_store_operation(operation, "storage_failure")
            raise
        record_store_operation(operation, "ok")

    @contextmanager
    def _transaction(self, operation: str):
        """Run database work in one transaction, mapping failures to StorageFailure."""
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"{operation}: database write failed, rolled back: {e}")
            raise StorageFailure(f"{operation} could not be saved") from e
        finally:
            db.close()

    def _require_conversation(self, conversation_id: str) -> Conversation:
        conversation = self._heads.get(conversation_id)
        if conversation is None:
            logger.info(f"Conversation not found: {conversation_id}")
            raise NotFound("conversation", conversation_id)
        return conversation

    def _require_message(self, message_id: str) -> Message:
        message = self._messages.get(message_id)
        if message is None:
            logger.info(f"Message not found: {message_id}")
            raise NotFound("message", message_id)
        return message

    def _require_reply_target(self, conversation_id: str, reply_to_id: Optional[str]) -> None:
        if reply_to_id is None:
            return
        target = self._messages.get(reply_to_id)
        if target is None or target.conversation_id != conversation_id:
            logger.info(f"Reply target {reply_to_id} not found in conversation {conversation_id}")
            raise NotFound("reply target", reply_to_id)

    def _latest_activity(self, conversation_id: str, excluding: Iterable[str] = ()) -> datetime:
        excluded = set(excluding)
        timestamps = [
            self._messages[message_id].timestamp
            for message_id in self._arena[conversation_id]
            if message_id not in excluded
        ]
        if not timestamps:
            return self._heads[conversation_id].created_at
        return max(timestamps)

    def _append(self, operation: str, conversation_id: str, reply_to_id: Optional[str], **fields) -> Message:
        with self._lock:
            self._require_conversation(conversation_id)
            self._require_reply_target(conversation_id, reply_to_id)

            message = Message(
                id=uuid.uuid4().hex,
                conversation_id=conversation_id,
                timestamp=self._clock(),
                seq=self._message_seq,
                reply_to_id=reply_to_id,
                **fields,
            )
            last_activity = message.timestamp
            if self._arena[conversation_id]:
                last_activity = max(last_activity, self._latest_activity(conversation_id))
            logger.info(
                f"{operation}: id={message.id}, conversation={conversation_id}, "
                f"sender={message.sender.name}, kind={message.media_kind.name}"
            )
            logger.debug(f"Message details: reply_to={reply_to_id}, ts={message.timestamp.isoformat()}")

            with self._transaction(operation) as db:
                insert_message(db, message)
                update_last_activity(db, conversation_id, last_activity)

            self._message_seq += 1
            self._messages[message.id] = message
            self._arena[conversation_id].add(message.id)
            if reply_to_id is not None:
                self._replies.setdefault(reply_to_id, set()).add(message.id)
            self._heads[conversation_id] = self._heads[conversation_id].model_copy(
                update={"last_activity_at": last_activity}
            )
            snapshot = self._advance(touched=[conversation_id])

        self._notifier.publish(snapshot)
        return message

    def _update(self, operation: str, message_id: str, mutator: MessageMutator) -> Message:
        with self._lock:
            current = self._require_message(message_id)
            updated = mutator(current)
            self._validate_update(current, updated)
            updated = updated.model_copy(update={"status": MessageStatus(updated.status)})
            logger.info(f"{operation}: id={message_id}, status={updated.status.name}, removed={updated.is_removed}")

            with self._transaction(operation) as db:
                update_message_row(db, updated)

            self._messages[message_id] = updated
            snapshot = self._advance(touched=[current.conversation_id])

        self._notifier.publish(snapshot)
        return updated

    @staticmethod
    def _validate_update(current: Message, updated: Message) -> None:
        if not isinstance(updated, Message):
            raise InvalidArgument("mutator must return a Message")
        for field in _IMMUTABLE_MESSAGE_FIELDS:
            if getattr(updated, field) != getattr(current, field):
                raise InvalidArgument(f"message field '{field}' cannot be changed")
        try:
            status = MessageStatus(updated.status)
        except ValueError:
            raise InvalidArgument(f"unknown status: {updated.status!r}")
        if status < current.status:
            raise InvalidArgument(f"status cannot move from {current.status.name} to {status.name}")
        if updated.is_removed and (updated.content is not None or updated.media_payload is not None):
            raise InvalidArgument("a removed message must not keep content or media")
        if updated.media_kind == MediaKind.TEXT and updated.media_payload is not None:
            raise InvalidArgument("a text message cannot carry a media payload")
        if not updated.is_removed and current.is_removed:
            raise InvalidArgument("a removed message cannot be restored")

    def _discard_message(self, message: Message) -> None:
        """Drop a message from the in-memory arena and reply index."""
        del self._messages[message.id]
        arena = self._arena.get(message.conversation_id)
        if arena is not None:
            arena.discard(message.id)
        if message.reply_to_id is not None:
            siblings = self._replies.get(message.reply_to_id)
            if siblings is not None:
                siblings.discard(message.id)
                if not siblings:
                    del self._replies[message.reply_to_id]
        self._replies.pop(message.id, None)

    def _detach_replies(self, reply_ids: Iterable[str]) -> set[str]:
        """Clear reply_to_id on the given messages and mark them orphaned; return their conversations."""
        touched = set()
        for reply_id in reply_ids:
            reply = self._messages.get(reply_id)
            if reply is None:
                continue
            self._messages[reply_id] = reply.model_copy(update={"reply_to_id": None, "reply_orphaned": True})
            touched.add(reply.conversation_id)
        return touched

    def _rebuild(self, touched: Iterable[str], removed: Iterable[str] = ()) -> None:
        """Replace the working views of changed conversations with fresh copies."""
        views = dict(self._views)
        for conversation_id in removed:
            views.pop(conversation_id, None)
        for conversation_id in touched:
            head = self._heads.get(conversation_id)
            if head is None:
                continue
            messages = sorted(
                (self._messages[message_id] for message_id in self._arena[conversation_id]),
                key=Message.sort_key,
            )
            views[conversation_id] = head.model_copy(update={"messages": tuple(messages)})
        self._views = views

    def _publish_state(self, touched: Iterable[str], removed: Iterable[str] = ()) -> Snapshot:
        self._rebuild(touched, removed)
        snapshot = Snapshot(
            version=self._version,
            conversations=tuple(sorted(self._views.values(), key=conversation_order_key, reverse=True)),
        )
        self._published = _PublishedState(snapshot, self._views, dict(self._messages))
        return snapshot

    def _advance(self, touched: Iterable[str] = (), removed: Iterable[str] = ()) -> Snapshot:
        """Bump the version and publish the state after a commit."""
        self._version += 1
        snapshot = self._publish_state(touched, removed)
        logger.debug(f"Snapshot version {self._version}: {len(snapshot.conversations)} conversations")
        return snapshot
