import logging
from contextlib import asynccontextmanager
from typing import Annotated, Literal, Optional

from fastapi import APIRouter, FastAPI, Response, Request, Depends, Header, status, Query
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.config import settings
from app.storage import init_db, check_db_health, get_db
from app.logging_utils import setup_logging, RequestLoggingMiddleware, log_chat_data
from app.utils import verify_hmac_signature
from app.metrics import record_chat_operation, get_metrics, get_metrics_content_type
from app.chat import ChatService
from app.errors import (
    ChatError,
    ForbiddenError,
    NotFoundError,
    SchemaError,
    StorageTimeoutError,
    UnauthorizedError,
    ValidationError,
)
from app.identity import IdentityResolver
from app.rooms import CHAPTER_ROOM, GROUP_ROOM, ROOM_KINDS, RoomKind
from app.scheduler import ScheduledPostsWorker, publish_scheduled_posts
from app.security import decode_user_id, parse_bearer
from app.schemas import (
    ChatStatsResponse,
    ErrorResponse,
    HealthResponse,
    MessageCreate,
    MessageEnvelope,
    MessageResponse,
    MessagesPageResponse,
    PublishedPostResponse,
    PublishResponse,
    RoomSummaryResponse,
    StatusResponse,
)


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


scheduled_posts_worker = ScheduledPostsWorker(
    interval_seconds=settings.SCHEDULED_POSTS_INTERVAL_SECONDS,
    initial_delay_seconds=settings.SCHEDULED_POSTS_INITIAL_DELAY_SECONDS,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize collaborator tables, start the scheduled posts worker if enabled
    - Shutdown: Stop the worker
    """
    # Startup
    init_db()
    if settings.SCHEDULED_POSTS_WORKER_ENABLED:
        await scheduled_posts_worker.start()
    yield
    # Shutdown
    await scheduled_posts_worker.stop()


app = FastAPI(
    title="Chapter Chat API",
    description="Membership-gated chapter and secret-group chat with cursor pagination",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)

identity = IdentityResolver()
chat_services = {name: ChatService(room, identity=identity) for name, room in ROOM_KINDS.items()}

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid content"},
    401: {"model": ErrorResponse, "description": "Missing or invalid bearer token"},
    403: {"model": ErrorResponse, "description": "Not a member of the room"},
    500: {"model": ErrorResponse, "description": "Storage failure"},
    504: {"model": ErrorResponse, "description": "Storage deadline exceeded"},
}


# =============================================================================
# Error handling
# =============================================================================

def _result_label(exc: ChatError) -> str:
    if isinstance(exc, ValidationError):
        return "validation_error"
    if isinstance(exc, UnauthorizedError):
        return "unauthorized"
    if isinstance(exc, ForbiddenError):
        return "forbidden"
    if isinstance(exc, NotFoundError):
        return "not_found"
    if isinstance(exc, StorageTimeoutError):
        return "timeout"
    if isinstance(exc, SchemaError):
        return "schema_error"
    return "storage_error"


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    """
    Render chat errors as {"detail": ...}.

    4xx errors carry their precise message; 5xx errors return a generic
    message while the full cause is logged.
    """
    result = _result_label(exc)
    chat_data = getattr(request.state, "chat_log_data", None)
    if chat_data:
        record_chat_operation(chat_data["room_kind"], chat_data["operation"], result)
        log_chat_data(request, chat_data["room_kind"], chat_data["operation"], result=result)

    if exc.status_code >= 500:
        logger.error(
            f"{request.method} {request.url.path} failed: {exc.message}",
            exc_info=(type(exc), exc, exc.__traceback__),
        )
    else:
        logger.log(exc.log_level, f"{request.method} {request.url.path} rejected: {exc.message}")

    return JSONResponse(status_code=exc.status_code, content={"detail": exc.public_message})


# =============================================================================
# Authentication
# =============================================================================

def get_current_user_id(request: Request) -> int:
    """Resolve the requesting user from the bearer token."""
    token = parse_bearer(request.headers)
    if not token:
        raise UnauthorizedError("Missing bearer token")
    return decode_user_id(token, secret=settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


CurrentUser = Annotated[int, Depends(get_current_user_id)]


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    Used by orchestrators to determine if the app needs to be restarted.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the
    collaborator schema (users, rooms, memberships) is applied.

    Otherwise returns 503 (Service Unavailable).
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Chat Routes
# =============================================================================

def build_room_router(room: RoomKind, prefix: str) -> APIRouter:
    """Routes for one room kind; chapter and group chat share this shape."""
    router = APIRouter(prefix=prefix, tags=[f"{room.name} chat"])
    service = chat_services[room.name]

    @router.post(
        "/{room_id}/messages",
        response_model=MessageEnvelope,
        responses={**ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Room or sender not found"}},
    )
    def post_message(
        room_id: int,
        body: MessageCreate,
        request: Request,
        user_id: CurrentUser,
        db: Session = Depends(get_db),
    ) -> MessageEnvelope:
        """
        Append a message to the room's history.

        The requester must be a member of the room. Content is trimmed and
        must be 1-4000 characters.
        """
        log_chat_data(request, room.name, "post", room_id=room_id)
        message = service.post_message(db, room_id, user_id, body.content)

        record_chat_operation(room.name, "post", "ok")
        log_chat_data(request, room.name, "post", message_id=message.id, result="ok")
        return MessageEnvelope(message=MessageResponse.from_message(message))

    @router.get(
        "/{room_id}/messages",
        response_model=MessagesPageResponse,
        responses=ERROR_RESPONSES,
    )
    def list_messages(
        room_id: int,
        request: Request,
        user_id: CurrentUser,
        limit: Annotated[Optional[int], Query(description="Page size, clamped to 1-100")] = None,
        cursor: Annotated[Optional[str], Query(description="Opaque nextCursor from a previous page")] = None,
        db: Session = Depends(get_db),
    ) -> MessagesPageResponse:
        """
        Page backwards through the room's history.

        Messages come back oldest first. Pass nextCursor back as ``cursor``
        to fetch older messages; nextCursor is null once history is exhausted.
        A malformed or unknown cursor serves the newest page.
        """
        log_chat_data(request, room.name, "list", room_id=room_id)
        page = service.list_messages(db, room_id, user_id, limit=limit, cursor=cursor)

        record_chat_operation(room.name, "list", "ok")
        log_chat_data(request, room.name, "list", result="ok")
        return MessagesPageResponse(
            messages=[MessageResponse.from_message(m) for m in page.messages],
            next_cursor=page.next_cursor,
            has_more=page.has_more,
        )

    @router.get(
        "/{room_id}/messages/summary",
        response_model=RoomSummaryResponse,
        responses=ERROR_RESPONSES,
    )
    def room_summary(
        room_id: int,
        request: Request,
        user_id: CurrentUser,
        db: Session = Depends(get_db),
    ) -> RoomSummaryResponse:
        """Message count and time of the newest message in the room."""
        log_chat_data(request, room.name, "summary", room_id=room_id)
        summary = service.room_summary(db, room_id, user_id)

        record_chat_operation(room.name, "summary", "ok")
        log_chat_data(request, room.name, "summary", result="ok")
        return RoomSummaryResponse(
            room_id=summary.room_id,
            message_count=summary.message_count,
            last_activity=summary.last_activity,
        )

    @router.delete(
        "/{room_id}/messages/{message_id}",
        response_model=StatusResponse,
        responses={**ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Message not found"}},
    )
    def delete_message(
        room_id: int,
        message_id: int,
        request: Request,
        user_id: CurrentUser,
        db: Session = Depends(get_db),
    ) -> StatusResponse:
        """Delete a message. Only its sender or an administrator may do this."""
        log_chat_data(request, room.name, "delete", room_id=room_id, message_id=message_id)
        service.delete_message(db, room_id, message_id, user_id)

        record_chat_operation(room.name, "delete", "ok")
        log_chat_data(request, room.name, "delete", result="ok")
        return StatusResponse(status="ok")

    return router


app.include_router(build_room_router(CHAPTER_ROOM, "/chapters"))
app.include_router(build_room_router(GROUP_ROOM, "/groups"))


# =============================================================================
# Admin Routes
# =============================================================================

@app.get(
    "/admin/chat/stats",
    response_model=ChatStatsResponse,
    responses=ERROR_RESPONSES,
)
def chat_statistics(
    request: Request,
    user_id: CurrentUser,
    room_kind: Annotated[Literal["chapter", "group"], Query(description="Which chat surface")] = "chapter",
    days: Annotated[int, Query(ge=1, le=365, description="Look-back window in days")] = 30,
    db: Session = Depends(get_db),
) -> ChatStatsResponse:
    """
    Message-level analytics for administrators.

    Response:
        - total_messages, active_rooms, senders_count
        - messages_per_room / messages_per_sender: top 10 by count (descending)
        - first_message_ts / last_message_ts (null if no messages)
        - avg_message_length
    """
    log_chat_data(request, room_kind, "stats")
    if not identity.is_admin(db, user_id):
        raise ForbiddenError("Administrator privilege required")

    stats = chat_services[room_kind].room_stats(db, days=days)
    logger.info(f"GET /admin/chat/stats: {stats['total_messages']} {room_kind} messages in {days} days")

    record_chat_operation(room_kind, "stats", "ok")
    return ChatStatsResponse(days=days, **stats)


# =============================================================================
# Scheduled Posts Route
# =============================================================================

@app.post(
    "/posts/publish-scheduled",
    response_model=PublishResponse,
    responses={401: {"model": ErrorResponse, "description": "Invalid signature"}},
)
async def publish_scheduled(
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
    db: Session = Depends(get_db),
) -> PublishResponse:
    """
    Publish every scheduled post that is due. Safe to call repeatedly
    (e.g. from cron); a post is only ever published once.

    Headers:
        - X-Signature: hex HMAC-SHA256 of the raw body using PUBLISHER_SECRET
    """
    raw_body = await request.body()

    if not x_signature or not verify_hmac_signature(raw_body, x_signature, settings.PUBLISHER_SECRET):
        logger.error("Invalid or missing X-Signature on publish trigger")
        raise UnauthorizedError("invalid signature")

    published = await run_in_threadpool(publish_scheduled_posts, db)
    return PublishResponse(
        published=len(published),
        posts=[PublishedPostResponse(id=p.id, published_at=p.published_at) for p in published],
    )


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Returns metrics in Prometheus text exposition format including:
    - http_requests_total: Total HTTP requests by method, path, status
    - chat_operations_total: Chat outcomes by room kind, operation, result
    - scheduled_posts_published_total: Posts promoted by the publisher
    - request_latency_seconds: Request latency histogram
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
