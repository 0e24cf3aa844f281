import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import FastAPI, HTTPException, Query, Request, Response, WebSocket, WebSocketDisconnect, status

from relay.bus import create_bus
from relay.config import settings
from relay.connections import ConnectionRegistry
from relay.gateway import ChatGateway
from relay.logging_utils import setup_logging, RequestLoggingMiddleware, sid_ctx
from relay.metrics import get_metrics, get_metrics_content_type
from relay.schemas import HealthResponse, HistoryItem, MessagesListResponse
from relay.storage import MessageLog, init_db, check_db_health


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, build the gateway and start the broadcast bus
    - Shutdown: stop the bus listener and pending notices
    """
    init_db()
    gateway = ChatGateway(
        log=MessageLog(),
        bus=create_bus(settings.BROADCAST_URL, settings.BROADCAST_CHANNEL),
        registry=ConnectionRegistry(recovery_window=settings.RECOVERY_WINDOW_SECONDS),
        variant=settings.CONTENT_VARIANT,
        page_size=settings.HISTORY_PAGE_SIZE,
        count_settle_delay=settings.COUNT_SETTLE_DELAY_MS / 1000,
    )
    await gateway.start()
    app.state.gateway = gateway
    logger.info(f"Chat gateway started (variant={settings.CONTENT_VARIANT}, bus={settings.BROADCAST_URL})")
    yield
    await gateway.close()


app = FastAPI(
    title="Relay",
    description="Real-time chat gateway with a durable, idempotent message log",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


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
async def health_ready(request: Request, response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and schema is applied
    2. The broadcast bus answers a ping

    Otherwise returns 503 (Service Unavailable).
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    if not await request.app.state.gateway.bus.ping():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Broadcast bus not reachable"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Chat WebSocket
# =============================================================================

def parse_offset(raw: Optional[str]) -> int:
    """Read the client's serverOffset, falling back to 0."""
    try:
        offset = int(raw)
    except (TypeError, ValueError):
        return 0
    return max(offset, 0)


@app.websocket("/ws")
async def chat_socket(
    websocket: WebSocket,
    serverOffset: Optional[str] = None,
    sid: Optional[str] = None,
) -> None:
    """
    Real-time chat connection.

    Query Parameters:
        - serverOffset: highest message id the client has rendered; anything
          but a non-negative integer counts as 0
        - sid: session id from a previous `alias assigned`, to resume it

    Frames are handled one at a time, so a connection never has two
    submissions in flight.
    """
    await websocket.accept()
    gateway: ChatGateway = websocket.app.state.gateway

    token = sid_ctx.set(None)
    session = await gateway.connect(websocket, server_offset=parse_offset(serverOffset), sid=sid)
    try:
        while True:
            raw = await websocket.receive_text()
            await gateway.handle_frame(session, raw)
    except WebSocketDisconnect:
        pass
    finally:
        await gateway.disconnect(session)
        sid_ctx.reset(token)


# =============================================================================
# Messages Route
# =============================================================================

@app.get("/messages", response_model=MessagesListResponse)
async def list_messages(
    request: Request,
    before: Annotated[Optional[int], Query(ge=1, description="Return messages with id below this")] = None,
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of messages to return")] = 10,
) -> MessagesListResponse:
    """
    Read-only page of history, oldest first.

    Same window as the `load history` socket event, for clients that
    fetch history over HTTP.
    """
    gateway: ChatGateway = request.app.state.gateway
    try:
        items = await gateway.paginator.page(before, limit + 1)
    except Exception as e:
        logger.error(f"GET /messages failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Message log unavailable"
        )

    # The extra row only tells whether an older page exists
    has_more = len(items) > limit
    if has_more:
        items = items[1:]

    logger.info(f"GET /messages: returned {len(items)} messages (before={before}, limit={limit})")
    return MessagesListResponse(
        data=[HistoryItem(id=message_id, payload=payload) for message_id, payload in items],
        has_more=has_more,
    )


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
