import logging
from datetime import datetime, timezone
from typing import Iterable, Tuple

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.pool import StaticPool

from chatstore.schemas import Conversation, MediaKind, Message, MessageStatus, Sender

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# Base class for SQLAlchemy models
Base = declarative_base()


def create_db_engine(database_url: str) -> Engine:
    """
    Create a SQLAlchemy engine for the given URL.

    SQLite connections are shared across threads (the store serializes
    writes itself). In-memory databases use a single static connection so
    every session sees the same data.
    """
    url = make_url(database_url)
    kwargs = {"echo": False}
    if url.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False}
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool

    engine = create_engine(database_url, **kwargs)

    if url.get_backend_name() == "sqlite":
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory bound to the engine."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine) -> None:
    """
    Initialize the database by creating all tables.
    Called when a store is opened.
    """
    logger.debug(f"Initializing database with URL: {engine.url!r}")
    try:
        # Import models to register them with Base.metadata
        from chatstore.models import ConversationRecord, MessageRecord  # noqa: F401

        logger.debug("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health(engine: Engine) -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and both tables exist, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            logger.debug("Database connectivity OK")

            if conn.dialect.name == "sqlite":
                result = conn.execute(text(
                    "SELECT COUNT(*) FROM sqlite_master WHERE type='table' "
                    "AND name IN ('conversations', 'messages')"
                )).scalar()
                if result != 2:
                    logger.error("Database schema not applied: store tables not found")
                    return False
                logger.debug("Store tables found, schema is applied")
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Conversions
# =============================================================================

def format_timestamp(value: datetime) -> str:
    """Render a datetime as an ISO-8601 UTC string with microseconds."""
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def message_from_record(record) -> Message:
    return Message(
        id=record.id,
        conversation_id=record.conversation_id,
        timestamp=parse_timestamp(record.ts),
        seq=record.seq,
        sender=Sender(record.sender),
        status=MessageStatus(record.status),
        media_kind=MediaKind(record.media_kind),
        content=record.content,
        media_payload=record.media_payload,
        is_removed=bool(record.is_removed),
        reply_to_id=record.reply_to_id,
        reply_orphaned=bool(record.reply_orphaned),
    )


def conversation_from_record(record) -> Conversation:
    return Conversation(
        id=record.id,
        contact_name=record.contact_name,
        created_at=parse_timestamp(record.created_at),
        last_activity_at=parse_timestamp(record.last_activity_at),
        seq=record.seq,
    )


# =============================================================================
# Conversation / Message Repository Functions
#
# None of these commit. The store runs each operation inside a single
# transaction and commits (or rolls back) once.
# =============================================================================

def load_all(db: Session) -> Tuple[list, list]:
    """
    Load every stored conversation and message.

    Returns:
        Tuple of (conversations, messages) as entity models
    """
    from chatstore.models import ConversationRecord, MessageRecord

    logger.info("Loading stored conversations and messages")
    conversations = [
        conversation_from_record(r)
        for r in db.query(ConversationRecord).order_by(ConversationRecord.seq.asc()).all()
    ]
    messages = [
        message_from_record(r)
        for r in db.query(MessageRecord).order_by(MessageRecord.seq.asc()).all()
    ]
    logger.info(f"Loaded {len(conversations)} conversations, {len(messages)} messages")
    return conversations, messages


def insert_conversation(db: Session, conversation: Conversation) -> None:
    from chatstore.models import ConversationRecord

    logger.debug(f"Inserting conversation row: {conversation.id}")
    db.add(ConversationRecord(
        id=conversation.id,
        contact_name=conversation.contact_name,
        created_at=format_timestamp(conversation.created_at),
        last_activity_at=format_timestamp(conversation.last_activity_at),
        seq=conversation.seq,
    ))
    db.flush()


def insert_message(db: Session, message: Message) -> None:
    from chatstore.models import MessageRecord

    logger.debug(f"Inserting message row: {message.id} in {message.conversation_id}")
    db.add(MessageRecord(
        id=message.id,
        conversation_id=message.conversation_id,
        ts=format_timestamp(message.timestamp),
        seq=message.seq,
        sender=int(message.sender),
        status=int(message.status),
        media_kind=int(message.media_kind),
        content=message.content,
        media_payload=message.media_payload,
        is_removed=message.is_removed,
        reply_to_id=message.reply_to_id,
        reply_orphaned=message.reply_orphaned,
    ))
    db.flush()


def update_message_row(db: Session, message: Message) -> None:
    """Write the mutable fields of a message back to its row."""
    from chatstore.models import MessageRecord

    logger.debug(f"Updating message row: {message.id}")
    db.query(MessageRecord).filter(MessageRecord.id == message.id).update(
        {
            MessageRecord.status: int(message.status),
            MessageRecord.content: message.content,
            MessageRecord.media_payload: message.media_payload,
            MessageRecord.is_removed: message.is_removed,
        },
        synchronize_session=False,
    )


def mark_messages_read(db: Session, message_ids: Iterable[str]) -> None:
    from chatstore.models import MessageRecord

    ids = list(message_ids)
    logger.debug(f"Marking {len(ids)} message rows as read")
    db.query(MessageRecord).filter(MessageRecord.id.in_(ids)).update(
        {MessageRecord.status: int(MessageStatus.READ)},
        synchronize_session=False,
    )


def update_last_activity(db: Session, conversation_id: str, value: datetime) -> None:
    from chatstore.models import ConversationRecord

    db.query(ConversationRecord).filter(ConversationRecord.id == conversation_id).update(
        {ConversationRecord.last_activity_at: format_timestamp(value)},
        synchronize_session=False,
    )


def clear_reply_targets(db: Session, target_ids: Iterable[str]) -> None:
    """Detach every message pointing at one of target_ids and mark it orphaned."""
    from chatstore.models import MessageRecord

    ids = list(target_ids)
    if not ids:
        return
    db.query(MessageRecord).filter(MessageRecord.reply_to_id.in_(ids)).update(
        {MessageRecord.reply_to_id: None, MessageRecord.reply_orphaned: True},
        synchronize_session=False,
    )


def delete_message_row(db: Session, message_id: str) -> None:
    from chatstore.models import MessageRecord

    logger.debug(f"Deleting message row: {message_id}")
    db.query(MessageRecord).filter(MessageRecord.id == message_id).delete(
        synchronize_session=False
    )


def delete_conversation_rows(db: Session, conversation_id: str) -> int:
    """
    Delete a conversation row and all of its message rows.

    Returns:
        Number of message rows removed
    """
    from chatstore.models import ConversationRecord, MessageRecord

    logger.debug(f"Deleting conversation rows: {conversation_id}")
    removed = db.query(MessageRecord).filter(
        MessageRecord.conversation_id == conversation_id
    ).delete(synchronize_session=False)
    db.query(ConversationRecord).filter(ConversationRecord.id == conversation_id).delete(
        synchronize_session=False
    )
    return removed
