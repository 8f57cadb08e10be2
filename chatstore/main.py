import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import FastAPI, Response, Request, Depends, status, Query
from fastapi.responses import JSONResponse

from chatstore.auto_reply import AutoReplyScheduler
from chatstore.config import settings
from chatstore.errors import InvalidArgument, NotFound, StorageFailure
from chatstore.logging_utils import setup_logging, RequestLoggingMiddleware
from chatstore.metrics import get_metrics, get_metrics_content_type
from chatstore.projections import (
    chronological_messages,
    filter_conversations,
    initials,
    preview_text,
    resolved_reply_preview,
    sender_display_name,
    status_display_name,
    unread_count,
)
from chatstore.schemas import (
    Conversation,
    ConversationResponse,
    ConversationsListResponse,
    CreateConversationRequest,
    ErrorResponse,
    HealthResponse,
    MarkReadResponse,
    Message,
    MessageResponse,
    MessagesListResponse,
    ReplyPreviewResponse,
    Sender,
    SendMediaRequest,
    SendMessageRequest,
)
from chatstore.seed import seed_sample_data
from chatstore.storage import check_db_health
from chatstore.store import ConversationStore


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: open the store, optionally seed it and start auto-replies
    - Shutdown: cancel pending auto-replies and release the database
    """
    store = ConversationStore(settings.DATABASE_URL)
    app.state.store = store
    app.state.auto_reply = AutoReplyScheduler(store) if settings.AUTO_REPLY_ENABLED else None

    if settings.SEED_SAMPLE_DATA and not store.list_conversations():
        seed_sample_data(store)

    yield

    if app.state.auto_reply is not None:
        app.state.auto_reply.cancel_all()
    store.close()


app = FastAPI(
    title="Conversation Store API",
    description="Local HTTP access to the conversation store",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


StoreDep = Annotated[ConversationStore, Depends(get_store)]


# =============================================================================
# Error Mapping
# =============================================================================

@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(InvalidArgument)
async def invalid_argument_handler(request: Request, exc: InvalidArgument) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": str(exc)})


@app.exception_handler(StorageFailure)
async def storage_failure_handler(request: Request, exc: StorageFailure) -> JSONResponse:
    logger.error(f"Storage failure: {exc}")
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})


# =============================================================================
# Response Builders
# =============================================================================

def to_conversation_response(conversation: Conversation) -> ConversationResponse:
    return ConversationResponse(
        id=conversation.id,
        contact_name=conversation.contact_name,
        initials=initials(conversation.contact_name),
        created_at=conversation.created_at,
        last_activity_at=conversation.last_activity_at,
        preview=preview_text(conversation),
        unread_count=unread_count(conversation),
        message_count=len(conversation.messages),
    )


def to_message_response(message: Message, conversation: Optional[Conversation]) -> MessageResponse:
    """
    Build the client view of a message.

    Without its conversation (deleted right after the send) the sender name
    falls back to a generic label and no reply preview is attached.
    """
    preview = resolved_reply_preview(message, conversation) if conversation is not None else None
    return MessageResponse(
        id=message.id,
        conversation_id=message.conversation_id,
        timestamp=message.timestamp,
        sender=message.sender,
        sender_name=sender_display_name(message, conversation),
        status=message.status,
        status_name=status_display_name(message.status),
        media_kind=message.media_kind,
        content=message.content,
        has_media=message.media_payload is not None,
        is_removed=message.is_removed,
        reply_to_id=message.reply_to_id,
        reply_preview=ReplyPreviewResponse(
            available=preview.available,
            sender_name=preview.sender_name,
            content=preview.content,
        ) if preview is not None else None,
    )


def current_conversation(store: ConversationStore, conversation_id: str) -> Optional[Conversation]:
    """The conversation as of the latest snapshot, or None if it is gone."""
    for conversation in store.snapshot.conversations:
        if conversation.id == conversation_id:
            return conversation
    return None


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
def health_ready(response: Response, store: StoreDep) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the database is reachable and
    the store tables exist, otherwise 503.
    """
    if not check_db_health(store.engine):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Conversation Routes
# =============================================================================

@app.get("/conversations", response_model=ConversationsListResponse)
def list_conversations(
    store: StoreDep,
    q: Annotated[str | None, Query(description="Case-insensitive filter on name or preview")] = None,
) -> ConversationsListResponse:
    """
    List conversations, most recent activity first.

    Ties on activity time are broken by creation order, newest first.
    """
    snapshot = store.snapshot
    conversations = list(snapshot.conversations)
    if q:
        conversations = filter_conversations(conversations, q)

    logger.info(f"GET /conversations: version={snapshot.version}, returned {len(conversations)}")
    return ConversationsListResponse(
        version=snapshot.version,
        data=[to_conversation_response(c) for c in conversations],
        total=len(conversations),
    )


@app.post(
    "/conversations",
    response_model=ConversationResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"model": ErrorResponse, "description": "Blank contact name"}},
)
def create_conversation(body: CreateConversationRequest, store: StoreDep) -> ConversationResponse:
    conversation = store.create_conversation(body.contact_name)
    return to_conversation_response(conversation)


@app.delete(
    "/conversations/{conversation_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
def delete_conversation(conversation_id: str, store: StoreDep) -> Response:
    """Delete a conversation and all of its messages."""
    store.delete_conversation(conversation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post(
    "/conversations/{conversation_id}/read",
    response_model=MarkReadResponse,
    responses={404: {"model": ErrorResponse}},
)
def mark_read(conversation_id: str, store: StoreDep) -> MarkReadResponse:
    return MarkReadResponse(marked=store.mark_read(conversation_id))


# =============================================================================
# Message Routes
# =============================================================================

@app.get(
    "/conversations/{conversation_id}/messages",
    response_model=MessagesListResponse,
    responses={404: {"model": ErrorResponse}},
)
def list_messages(conversation_id: str, store: StoreDep) -> MessagesListResponse:
    """Messages of one conversation, oldest first."""
    conversation = store.get_conversation(conversation_id)
    data = [to_message_response(m, conversation) for m in chronological_messages(conversation)]
    return MessagesListResponse(conversation_id=conversation_id, data=data, total=len(data))


@app.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        404: {"model": ErrorResponse, "description": "Unknown conversation or reply target"},
        422: {"description": "Validation error"},
    },
)
def send_message(
    conversation_id: str,
    body: SendMessageRequest,
    request: Request,
    store: StoreDep,
) -> MessageResponse:
    """
    Send a text message.

    When auto-replies are enabled, a message from the local user schedules
    a simulated reply from the counterpart.
    """
    message = store.send_message(
        body.content,
        conversation_id,
        sender=body.sender,
        reply_to_id=body.reply_to_id,
    )

    scheduler = request.app.state.auto_reply
    if scheduler is not None and message.sender == Sender.SELF:
        scheduler.schedule(conversation_id)

    return to_message_response(message, current_conversation(store, conversation_id))


@app.post(
    "/conversations/{conversation_id}/media",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}},
)
def send_media(conversation_id: str, body: SendMediaRequest, store: StoreDep) -> MessageResponse:
    message = store.send_media(
        body.payload,
        body.media_kind,
        conversation_id,
        reply_to_id=body.reply_to_id,
    )
    return to_message_response(message, current_conversation(store, conversation_id))


@app.delete(
    "/messages/{message_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
def delete_message(
    message_id: str,
    store: StoreDep,
    hard: Annotated[bool, Query(description="Remove the record instead of hiding its content")] = False,
) -> Response:
    """
    Delete a message.

    By default the message is soft deleted: it keeps its place in the
    history and replies render it as removed. With hard=true the record
    is removed.
    """
    if hard:
        store.hard_delete_message(message_id)
    else:
        store.soft_delete_message(message_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
