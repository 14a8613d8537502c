import json
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError as PydanticValidationError

from chatlog.config import settings
from chatlog.conversations import ConversationAggregator
from chatlog.demo_data import seed_demo_data
from chatlog.exceptions import register_exception_handlers
from chatlog.ingestion import IngestionPipeline
from chatlog.logging_utils import RequestLoggingMiddleware, log_ingestion_data, setup_logging
from chatlog.metrics import get_metrics, get_metrics_content_type
from chatlog.realtime import RealtimeHub
from chatlog.schemas import (
    ControlMessage,
    ConversationInfoResponse,
    ConversationResponse,
    ErrorResponse,
    HealthResponse,
    MarkReadResponse,
    MessageResponse,
    SendMessageRequest,
    SendMessageResponse,
    StatsResponse,
    WebhookResponse,
)
from chatlog.storage import MessageStore, build_store


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: build the message store, the realtime hub and the pipeline
    - Shutdown: nothing to release; viewers are dropped with their sockets
    """
    store = build_store(settings)
    if settings.SEED_DEMO_DATA:
        seed_demo_data(store)

    hub = RealtimeHub()
    app.state.store = store
    app.state.hub = hub
    app.state.pipeline = IngestionPipeline(store, hub)
    app.state.aggregator = ConversationAggregator(store)
    yield


app = FastAPI(
    title="Chatlog API",
    description="Webhook-driven message log with a conversation API and realtime viewer updates",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)
register_exception_handlers(app)


# =============================================================================
# Dependencies
# =============================================================================

def get_store(request: Request) -> MessageStore:
    return request.app.state.store


def get_pipeline(request: Request) -> IngestionPipeline:
    return request.app.state.pipeline


def get_aggregator(request: Request) -> ConversationAggregator:
    return request.app.state.aggregator


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response, store: MessageStore = Depends(get_store)) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the message store is reachable and
    its schema is applied. Otherwise returns 503 (Service Unavailable).
    """
    if not store.is_ready():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Message store not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Route
# =============================================================================

@app.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={
        422: {"description": "Body is not JSON"},
        500: {"model": ErrorResponse, "description": "Storage unavailable, retry the batch"},
    }
)
async def webhook(
    request: Request,
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> WebhookResponse:
    """
    Ingest a webhook payload or a JSON array of payloads.

    - Message events are stored exactly once (duplicate ids are no-ops)
    - Status events move a message's status forward, never backward
    - Malformed payloads are logged and skipped; the rest of the batch continues
    """
    raw_body = await request.body()
    logger.debug(f"Request body size: {len(raw_body)} bytes")

    try:
        body = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error(f"Invalid JSON: {e}")
        log_ingestion_data(request, {"result": "validation_error"})
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid JSON: {str(e)}"
        )

    payloads = body if isinstance(body, list) else [body]
    report = await pipeline.ingest_batch(payloads)
    log_ingestion_data(request, report.as_dict())

    return WebhookResponse(status="ok", **report.as_dict())


# =============================================================================
# Conversation Routes
# =============================================================================

@app.get("/api/conversations", response_model=list[ConversationResponse])
async def list_conversations(
    aggregator: ConversationAggregator = Depends(get_aggregator),
) -> list[ConversationResponse]:
    """
    All conversations, most recent activity first.
    """
    conversations = aggregator.list_conversations()
    logger.info(f"GET /api/conversations: returned {len(conversations)} conversations")
    return [ConversationResponse.from_domain(c) for c in conversations]


@app.get("/api/conversations/{counterparty_id}/messages", response_model=list[MessageResponse])
async def list_conversation_messages(
    counterparty_id: str,
    aggregator: ConversationAggregator = Depends(get_aggregator),
) -> list[MessageResponse]:
    """
    Messages of one conversation ordered by timestamp ascending.
    Unknown conversations yield an empty list.
    """
    messages = aggregator.get_messages(counterparty_id)
    return [MessageResponse.from_domain(m) for m in messages]


@app.get(
    "/api/conversations/{counterparty_id}/info",
    response_model=ConversationInfoResponse,
    responses={404: {"description": "Conversation not found"}},
)
async def conversation_info(
    counterparty_id: str,
    aggregator: ConversationAggregator = Depends(get_aggregator),
) -> ConversationInfoResponse:
    conversation = aggregator.get_conversation_info(counterparty_id)
    return ConversationInfoResponse(
        id=conversation.counterparty_id,
        display_name=conversation.display_name,
        phone_number=conversation.phone_number,
    )


@app.post(
    "/api/conversations/{counterparty_id}/messages",
    response_model=SendMessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Empty message body"},
        404: {"description": "Conversation not found"},
    },
)
async def send_message(
    counterparty_id: str,
    request_body: SendMessageRequest,
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> SendMessageResponse:
    """
    Create an outgoing message and push it to the conversation's viewers.
    """
    message = await pipeline.send_message(counterparty_id, request_body.body)
    return SendMessageResponse(success=True, message=MessageResponse.from_domain(message))


@app.put("/api/conversations/{counterparty_id}/mark-read", response_model=MarkReadResponse)
async def mark_read(
    counterparty_id: str,
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> MarkReadResponse:
    """
    Mark every incoming message of a conversation as read.
    Viewers are only notified when something actually changed.
    """
    updated = await pipeline.mark_read(counterparty_id)
    return MarkReadResponse(success=True, updated=updated)


# =============================================================================
# Stats Route
# =============================================================================

@app.get("/stats", response_model=StatsResponse)
async def get_statistics(
    aggregator: ConversationAggregator = Depends(get_aggregator),
) -> StatsResponse:
    """
    Message-level analytics: totals, status distribution, busiest conversations,
    and the first and last message timestamps.
    """
    return StatsResponse(**aggregator.get_stats())


# =============================================================================
# Realtime Route
# =============================================================================

@app.websocket("/ws")
async def realtime(websocket: WebSocket) -> None:
    """
    Realtime viewer connection.

    Control frames:
        {"action": "join", "conversation_id": "..."}
        {"action": "join", "conversation_ids": ["...", "..."]}
        {"action": "leave", "conversation_id": "..."}

    Each join/leave is acknowledged with {"event": "subscriptions", "conversation_ids": [...]}.
    """
    hub: RealtimeHub = websocket.app.state.hub
    await websocket.accept()
    viewer_id = hub.connect(websocket)

    try:
        while True:
            frame = await websocket.receive_text()
            try:
                control = ControlMessage.model_validate_json(frame)
            except PydanticValidationError as e:
                logger.warning(f"Ignoring invalid control frame from {viewer_id}: {e}")
                continue

            if control.action == "join":
                current = hub.subscribe(viewer_id, control.targets())
            elif control.action == "leave":
                for conversation_id in control.targets():
                    hub.unsubscribe(viewer_id, conversation_id)
                current = hub.subscriptions(viewer_id)
            else:
                logger.warning(f"Unknown control action '{control.action}' from {viewer_id}")
                continue

            await websocket.send_json({"event": "subscriptions", "conversation_ids": sorted(current)})
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(viewer_id)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
