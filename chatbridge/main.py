import logging
from contextlib import asynccontextmanager, contextmanager
from typing import Annotated, Iterator, Optional

from fastapi import (
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse
from pydantic import ValidationError as SchemaValidationError

from chatbridge.config import settings
from chatbridge.deps import get_rooms, get_service, get_store
from chatbridge.errors import (
    BridgeError,
    ConcurrencyConflict,
    IdentityNotFound,
    MessageNotFound,
    ValidationError,
)
from chatbridge.fanout import FANOUT_PATH, RoomRegistry, message_event
from chatbridge.logging_utils import setup_logging, RequestLoggingMiddleware, log_ingest_data
from chatbridge.metrics import (
    get_metrics,
    get_metrics_content_type,
    record_claim_outcome,
    record_fanout_outcome,
    record_ingest_outcome,
)
from chatbridge.schemas import (
    AckRequest,
    BotReplyRequest,
    ChannelInboundRequest,
    ClaimBatchRequest,
    ClaimBatchResponse,
    ConversationResponse,
    ConversationsListResponse,
    ErrorResponse,
    FanoutRequest,
    FanoutResponse,
    HealthResponse,
    IngestResponse,
    Message,
    PendingOutboundMessage,
    StatsResponse,
    WebSendRequest,
    WebSendResponse,
    WsInbound,
    WsOutbound,
)
from chatbridge.service import BridgeService
from chatbridge.storage import init_db, check_db_health
from chatbridge.store import BridgeStore
from chatbridge.utils import verify_hmac_signature


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
    title="Chat Bridge API",
    description="Bridges web platform users and an external messaging channel bot",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Error Handling
# =============================================================================

ERROR_STATUS = (
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (IdentityNotFound, status.HTTP_404_NOT_FOUND),
    (MessageNotFound, status.HTTP_404_NOT_FOUND),
    (ConcurrencyConflict, status.HTTP_409_CONFLICT),
)

INGEST_RESULTS = (
    (ValidationError, "validation_error"),
    (IdentityNotFound, "identity_not_found"),
    (ConcurrencyConflict, "conflict"),
)


@app.exception_handler(BridgeError)
async def bridge_error_handler(request: Request, exc: BridgeError) -> JSONResponse:
    status_code = next(
        (code for cls, code in ERROR_STATUS if isinstance(exc, cls)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(detail=exc.message, code=exc.code).model_dump(),
    )


ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Invalid signature"},
    404: {"model": ErrorResponse, "description": "Identity or message not found"},
    409: {"model": ErrorResponse, "description": "Illegal transition or lost claim"},
    422: {"model": ErrorResponse, "description": "Validation error"},
}


def _reject(request: Request, endpoint: Optional[str], result: str, status_code: int, detail: str):
    if endpoint:
        record_ingest_outcome(endpoint, result)
    log_ingest_data(request=request, result=result)
    raise HTTPException(status_code=status_code, detail=detail)


async def _read_signed_body(request: Request, x_signature: Optional[str], endpoint: Optional[str] = None) -> bytes:
    """Raw body of an agent call, after checking its X-Signature HMAC."""
    raw_body = await request.body()
    if not x_signature or not verify_hmac_signature(raw_body, x_signature, settings.WEBHOOK_SECRET):
        logger.error(f"Rejected unsigned or mis-signed call to {request.url.path}")
        _reject(request, endpoint, "invalid_signature", status.HTTP_401_UNAUTHORIZED, "invalid signature")
    return raw_body


def _parse(model, raw_body: bytes, request: Request, endpoint: Optional[str] = None):
    try:
        return model.model_validate_json(raw_body)
    except SchemaValidationError as e:
        logger.error(f"Validation error: {e}")
        _reject(request, endpoint, "validation_error", status.HTTP_422_UNPROCESSABLE_ENTITY, str(e))


@contextmanager
def _track_ingest(request: Request, endpoint: str) -> Iterator[None]:
    """Count and log the outcome of an ingestion call; errors keep propagating."""
    try:
        yield
    except BridgeError as e:
        result = next((r for cls, r in INGEST_RESULTS if isinstance(e, cls)), "error")
        record_ingest_outcome(endpoint, result)
        log_ingest_data(request=request, result=result)
        logger.warning(f"{endpoint} rejected: {e.message}")
        raise


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. WEBHOOK_SECRET is set (non-empty)
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.WEBHOOK_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="WEBHOOK_SECRET not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Ingestion Routes
# =============================================================================

@app.post("/messages/send", response_model=WebSendResponse, responses=ERROR_RESPONSES)
async def web_send(
    request: Request,
    service: BridgeService = Depends(get_service),
) -> WebSendResponse:
    """
    Message typed by an authenticated web user.

    Logs the message as pending_to_channel and queues it for the external
    agent in one unit of work, then syncs the sender's other sessions.
    """
    payload = _parse(WebSendRequest, await request.body(), request, "web_send")
    with _track_ingest(request, "web_send"):
        message, outbound, notified = await service.web_send(
            origin_user_id=payload.origin_user_id,
            origin_phone=payload.origin_phone,
            text=payload.text,
            target_channel_address=payload.target_channel_address,
        )
    record_ingest_outcome("web_send", "created")
    log_ingest_data(request, message.id, message.conversation_key, "created")
    return WebSendResponse(outbound=outbound, message=message, notified=notified)


@app.post("/bot/replies", response_model=IngestResponse, responses=ERROR_RESPONSES)
async def bot_reply(
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
    service: BridgeService = Depends(get_service),
) -> IngestResponse:
    """
    Reply from the external agent addressed by platform user id.

    Headers:
        - X-Signature: hex HMAC-SHA256 of raw body using WEBHOOK_SECRET
    """
    raw_body = await _read_signed_body(request, x_signature, "bot_reply")
    payload = _parse(BotReplyRequest, raw_body, request, "bot_reply")
    with _track_ingest(request, "bot_reply"):
        message, notified = await service.ingest_bot_reply(payload.user_id, payload.text)
    record_ingest_outcome("bot_reply", "created")
    log_ingest_data(request, message.id, message.conversation_key, "created")
    return IngestResponse(message=message, notified=notified)


@app.post("/channel/inbound", response_model=IngestResponse, responses=ERROR_RESPONSES)
async def channel_inbound(
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
    service: BridgeService = Depends(get_service),
) -> IngestResponse:
    """Reply from the external agent addressed by the user's phone."""
    raw_body = await _read_signed_body(request, x_signature, "channel_inbound")
    payload = _parse(ChannelInboundRequest, raw_body, request, "channel_inbound")
    with _track_ingest(request, "channel_inbound"):
        message, notified = await service.ingest_channel_inbound(payload.phone, payload.text)
    record_ingest_outcome("channel_inbound", "created")
    log_ingest_data(request, message.id, message.conversation_key, "created")
    return IngestResponse(message=message, notified=notified)


# =============================================================================
# Outbound Queue Routes (polled by the external agent)
# =============================================================================

@app.post("/outbound/claim", response_model=ClaimBatchResponse, responses=ERROR_RESPONSES)
async def claim_pending(
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
    x_agent_id: Annotated[str | None, Header(alias="X-Agent-Id")] = None,
    service: BridgeService = Depends(get_service),
) -> ClaimBatchResponse:
    """
    Hand out unclaimed entries for one target address and mark them claimed.

    Each entry is returned to at most one caller.
    """
    raw_body = await _read_signed_body(request, x_signature)
    payload = _parse(ClaimBatchRequest, raw_body, request)
    claimed = service.claim_pending(
        payload.target_channel_address, claimant=x_agent_id, limit=payload.limit
    )
    if claimed:
        record_claim_outcome("claimed", len(claimed))
        logger.info(f"Delivering {len(claimed)} queued messages to agent {x_agent_id or '-'}")
    else:
        record_claim_outcome("empty")
    return ClaimBatchResponse(messages=claimed)


@app.post("/outbound/{outbound_id}/claim", response_model=PendingOutboundMessage, responses=ERROR_RESPONSES)
async def claim_one(
    outbound_id: str,
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
    x_agent_id: Annotated[str | None, Header(alias="X-Agent-Id")] = None,
    service: BridgeService = Depends(get_service),
) -> PendingOutboundMessage:
    """Claim a single entry; 409 if another claimant already holds it."""
    await _read_signed_body(request, x_signature)
    try:
        claimed = service.claim_one(outbound_id, claimant=x_agent_id)
    except ConcurrencyConflict:
        record_claim_outcome("already_claimed")
        raise
    except MessageNotFound:
        record_claim_outcome("not_found")
        raise
    record_claim_outcome("claimed")
    return claimed


@app.post("/outbound/{outbound_id}/ack", response_model=Message, responses=ERROR_RESPONSES)
async def acknowledge(
    outbound_id: str,
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
    service: BridgeService = Depends(get_service),
) -> Message:
    """Forwarding outcome of a claimed entry: delivered_to_user or failed."""
    raw_body = await _read_signed_body(request, x_signature)
    payload = _parse(AckRequest, raw_body, request)
    return await service.acknowledge(outbound_id, payload.delivered, payload.reason)


# =============================================================================
# Fan-out Control Route
# =============================================================================

@app.post(FANOUT_PATH, response_model=FanoutResponse, responses=ERROR_RESPONSES)
async def fanout_control(
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
    rooms: RoomRegistry = Depends(get_rooms),
) -> FanoutResponse:
    """
    Push a message to the live sessions held by this process.

    Called by ingesting processes that do not hold the user's connection.
    Zero deliveries is a normal answer, not an error.
    """
    raw_body = await _read_signed_body(request, x_signature)
    payload = _parse(FanoutRequest, raw_body, request)
    delivered = await rooms.broadcast(payload.user_id, message_event(payload.message, payload.event))
    record_fanout_outcome("delivered" if delivered else "undelivered")
    return FanoutResponse(delivered=delivered)


# =============================================================================
# Conversation Routes
# =============================================================================

@app.get("/conversations", response_model=ConversationsListResponse)
async def list_conversations(store: BridgeStore = Depends(get_store)) -> ConversationsListResponse:
    """Conversation keys with message counts, most recently active first."""
    return ConversationsListResponse(data=store.list_conversations())


@app.get("/conversations/{conversation_key}/messages", response_model=ConversationResponse)
async def get_conversation(
    conversation_key: str,
    limit: Annotated[int | None, Query(ge=1, le=1000, description="Only the most recent N messages")] = None,
    service: BridgeService = Depends(get_service),
) -> ConversationResponse:
    """
    Full thread ordered by createdAt (ties by insertion sequence).

    Used for the initial page load and by clients that missed real-time
    events. With ``limit`` only the newest messages are returned, still in
    chronological order.
    """
    messages, total = service.conversation(conversation_key, limit=limit)
    logger.debug(f"Conversation {conversation_key}: returned {len(messages)} of {total}")
    return ConversationResponse(conversation_key=conversation_key, data=messages, total=total)


# =============================================================================
# Stats and Metrics Routes
# =============================================================================

@app.get("/stats", response_model=StatsResponse)
async def get_statistics(store: BridgeStore = Depends(get_store)) -> StatsResponse:
    """Message and queue counts."""
    return StatsResponse(**store.stats())


@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


# =============================================================================
# Real-time Sessions
# =============================================================================

@app.websocket("/ws/{user_id}")
async def live_session(
    websocket: WebSocket,
    user_id: str,
    rooms: RoomRegistry = Depends(get_rooms),
):
    """
    Live session of one web user.

    Joins the user's room on connect and confirms with ``room.joined``;
    afterwards the server pushes message.created / message.updated events.
    """
    await websocket.accept()
    rooms.join(user_id, websocket)
    try:
        await websocket.send_json(WsOutbound(type="room.joined", data={"userId": user_id}).model_dump())
        while True:
            raw = await websocket.receive_text()
            try:
                inbound = WsInbound.model_validate_json(raw)
            except SchemaValidationError:
                await websocket.send_json(
                    WsOutbound(type="error", data={"detail": "malformed frame"}).model_dump()
                )
                continue
            if inbound.type == "ping":
                await websocket.send_json(WsOutbound(type="pong").model_dump())
            else:
                await websocket.send_json(
                    WsOutbound(type="error", data={"detail": f"unsupported type: {inbound.type}"}).model_dump()
                )
    except WebSocketDisconnect:
        logger.debug(f"Session of user {user_id} disconnected")
    finally:
        rooms.leave(user_id, websocket)
