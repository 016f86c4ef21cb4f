import logging
from contextlib import asynccontextmanager
from typing import Annotated, List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Query, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from messenger.authz import ensure_participant
from messenger.config import settings
from messenger.conversations import add_participant, create_conversation, list_for_user
from messenger.crypto import MessageCrypto, NoopMessageCrypto
from messenger.errors import MessengerError, UnauthorizedError, UnavailableError
from messenger.events import event_page_for
from messenger.fanout import FanoutDispatcher
from messenger.logging_utils import setup_logging, RequestLoggingMiddleware, log_send_data
from messenger.messages import message_page_for, send_message, to_view
from messenger.metrics import get_metrics, get_metrics_content_type
from messenger.models import User
from messenger.pagination import clamp_limit
from messenger.realtime import router as realtime_router
from messenger.schemas import (
    ConversationCreateRequest,
    ConversationResponse,
    ConversationSummaryResponse,
    ErrorResponse,
    EventEnvelope,
    EventPageResponse,
    HealthResponse,
    MessagePageResponse,
    MessageResponse,
    MessageSendRequest,
    ParticipantAddRequest,
    UserCreateRequest,
    UserResponse,
)
from messenger.sessions import SessionRegistry
from messenger.storage import SessionLocal, check_db_health, create_user, get_db, get_user, init_db


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    yield


app = FastAPI(
    title="Messenger Core",
    description="Conversations, idempotent message writes, and real-time event fanout",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)

# Process-local delivery state; the registry is the only shared mutable structure
app.state.sessions = SessionRegistry(settings.REGISTRY_SHARDS)
app.state.crypto = NoopMessageCrypto()
app.state.dispatcher = FanoutDispatcher(SessionLocal, app.state.sessions)

app.include_router(realtime_router)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Validation error"},
    401: {"model": ErrorResponse, "description": "Missing or unknown principal"},
    403: {"model": ErrorResponse, "description": "Not a participant"},
    404: {"model": ErrorResponse, "description": "Conversation or user not found"},
}


# =============================================================================
# Error Handlers
# =============================================================================

@app.exception_handler(MessengerError)
async def messenger_error_handler(request: Request, exc: MessengerError) -> JSONResponse:
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        {"kind": "validation", "detail": jsonable_encoder(exc.errors())},
        status_code=status.HTTP_400_BAD_REQUEST,
    )


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error(f"Storage failure on {request.method} {request.url.path}: {exc}")
    error = UnavailableError("Storage unavailable")
    return JSONResponse(error.to_dict(), status_code=error.status_code)


# =============================================================================
# Dependencies
# =============================================================================

def current_user_id(
    x_user_id: Annotated[Optional[int], Header(alias="X-User-Id")] = None,
    db: Session = Depends(get_db),
) -> int:
    """
    Authenticated principal, as forwarded by the upstream auth layer.
    """
    if x_user_id is None:
        raise UnauthorizedError("Missing X-User-Id header")
    if db.get(User, x_user_id) is None:
        raise UnauthorizedError(f"Unknown user: {x_user_id}")
    return x_user_id


def get_crypto(request: Request) -> MessageCrypto:
    return request.app.state.crypto


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live(request: Request) -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    Reports the number of open push channels held by this process.
    """
    return HealthResponse(status="ok", sessions=request.app.state.sessions.count())


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the schema
    is applied, 503 otherwise.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# User Routes
# =============================================================================

@app.post("/api/v1/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED,
          responses={409: {"model": ErrorResponse, "description": "Username taken"}})
async def create_user_route(data: UserCreateRequest, db: Session = Depends(get_db)) -> UserResponse:
    user = create_user(db, data.username, data.display_name)
    return UserResponse.model_validate(user)


@app.get("/api/v1/users/{user_id}", response_model=UserResponse, responses=ERROR_RESPONSES)
async def get_user_route(user_id: int, db: Session = Depends(get_db)) -> UserResponse:
    return UserResponse.model_validate(get_user(db, user_id))


# =============================================================================
# Conversation Routes
# =============================================================================

@app.post("/api/v1/conversations", response_model=ConversationResponse,
          status_code=status.HTTP_201_CREATED, responses=ERROR_RESPONSES)
async def create_conversation_route(
    data: ConversationCreateRequest,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
) -> ConversationResponse:
    """
    Create a DIRECT (exactly 2 participant ids) or GROUP (at least 1; the first
    is the owner) conversation.
    """
    logger.info(f"POST /conversations: type={data.type.value}, participants={data.participant_ids}, by={user_id}")
    conversation = create_conversation(db, data.type, data.participant_ids, data.name)
    return ConversationResponse.from_conversation(conversation)


@app.get("/api/v1/conversations", response_model=List[ConversationSummaryResponse])
async def list_conversations_route(
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
) -> List[ConversationSummaryResponse]:
    """Conversations the caller belongs to, ordered by id."""
    return [
        ConversationSummaryResponse(id=s.id, type=s.type, name=s.name, participants=s.participants)
        for s in list_for_user(db, user_id)
    ]


@app.post(
    "/api/v1/conversations/{conversation_id}/participants",
    response_model=ConversationResponse,
    responses={**ERROR_RESPONSES, 409: {"model": ErrorResponse, "description": "Group is full"}},
)
async def add_participant_route(
    conversation_id: int,
    data: ParticipantAddRequest,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
) -> ConversationResponse:
    """Add a member. Re-adding an existing member returns the conversation unchanged."""
    ensure_participant(db, conversation_id, user_id)
    conversation = add_participant(db, conversation_id, data.user_id, data.role)
    return ConversationResponse.from_conversation(conversation)


# =============================================================================
# Message Routes
# =============================================================================

@app.post(
    "/api/v1/conversations/{conversation_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def send_message_route(
    conversation_id: int,
    data: MessageSendRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    user_id: int = Depends(current_user_id),
    crypto: MessageCrypto = Depends(get_crypto),
    db: Session = Depends(get_db),
) -> MessageResponse:
    """
    Send a message.

    - The caller must participate in the conversation
    - Idempotent: repeating an idempotency key returns the original message and
      delivers nothing new
    - Fanout runs after the message is committed and cannot fail this request
    """
    message, created = send_message(db, crypto, conversation_id, user_id, data.body, data.idempotency_key)
    view = to_view(message, crypto)

    if created:
        background_tasks.add_task(request.app.state.dispatcher.emit, conversation_id, "message", view)

    result = "created" if created else "duplicate"
    logger.info(f"Message send processed: id={message.id}, result={result}")
    log_send_data(request=request, message_id=message.id, dup=not created, result=result)

    return MessageResponse.model_validate({**view, "status": result})


@app.get(
    "/api/v1/conversations/{conversation_id}/messages",
    response_model=MessagePageResponse,
    responses=ERROR_RESPONSES,
)
async def list_messages_route(
    conversation_id: int,
    cursor: Annotated[Optional[int], Query(description="Id of the last message already seen")] = None,
    limit: Annotated[Optional[int], Query(description="Page size (default 50, capped at 100)")] = None,
    user_id: int = Depends(current_user_id),
    crypto: MessageCrypto = Depends(get_crypto),
    db: Session = Depends(get_db),
) -> MessagePageResponse:
    """
    Forward-only message history, oldest first.

    nextCursor is set when the page is full and null when it is short.
    """
    page_size = clamp_limit(limit)
    page = message_page_for(db, crypto, conversation_id, user_id, cursor, page_size)
    logger.debug(f"GET messages: conversation={conversation_id}, cursor={cursor}, returned={len(page.items)}")
    return MessagePageResponse(
        items=[MessageResponse.model_validate(view) for view in page.items],
        next_cursor=page.next_cursor,
    )


@app.get(
    "/api/v1/conversations/{conversation_id}/events",
    response_model=EventPageResponse,
    responses=ERROR_RESPONSES,
)
async def list_events_route(
    conversation_id: int,
    cursor: Annotated[Optional[int], Query(description="Last eventId already seen")] = None,
    limit: Annotated[Optional[int], Query(description="Page size (default 50, capped at 100)")] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
) -> EventPageResponse:
    """Catch up on events missed while the push channel was closed."""
    page = event_page_for(db, conversation_id, user_id, cursor, clamp_limit(limit))
    return EventPageResponse(
        items=[EventEnvelope.model_validate(envelope) for envelope in page.items],
        next_cursor=page.next_cursor,
    )


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics(request: Request) -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(request.app.state.sessions.count()),
        media_type=get_metrics_content_type()
    )
