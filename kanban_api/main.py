"""FastAPI application entry point."""

import asyncio
import json
import logging
import traceback
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import TimeoutError as SQLAlchemyTimeoutError

from .config import settings
from .exceptions import KanbanError
from .routers import (
    admin_portal_router,
    boards_router,
    columns_router,
    instance_portal_router,
    tasks_router,
)
from .services.auth_service import decode_access_token
from .services.event_publisher import (
    LocalEventPublisher,
    create_event_publisher,
    get_event_publisher,
    set_event_publisher,
)
from .services.tenant_service import tenant_registry, tenant_resolver
from .websocket import manager

# Configure logging to show errors
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# WebSocket connection configuration
RECEIVE_TIMEOUT = 45  # Seconds without a client frame before probing
SERVER_PING_INTERVAL = 30
RATE_LIMIT_MESSAGES = 100  # Max frames per window
RATE_LIMIT_WINDOW = 10  # Seconds


async def start_event_publisher() -> None:
    """Start the configured transport, falling back to in-process delivery."""
    publisher = create_event_publisher()
    logger.info(f"Starting {publisher.name} event transport...")
    try:
        await publisher.start()
    except Exception as e:
        if settings.redis_required:
            logger.error(f"Event transport failed and REDIS_REQUIRED=true: {e}")
            raise RuntimeError(
                f"Event transport is required for multi-worker deployment but failed: {e}"
            )
        logger.warning(
            f"{publisher.name} event transport unavailable, "
            f"running in single-worker mode: {e}"
        )
        publisher = LocalEventPublisher()
    set_event_publisher(publisher)
    logger.info(f"Event transport ready: {publisher.name}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown tasks."""
    await start_event_publisher()

    if not settings.multi_tenant:
        logger.info("Single-tenant mode, opening default database...")
        try:
            await tenant_registry.get_or_create(None)
        except KanbanError as e:
            logger.warning(f"Default database not ready yet: {e.detail}")

    yield

    logger.info("Stopping event transport...")
    await get_event_publisher().stop()

    logger.info(f"Closing {len(tenant_registry.cached_tenants())} tenant databases...")
    await tenant_registry.close_all()


# Create FastAPI application
app = FastAPI(
    title="Kanban API",
    description="Multi-tenant kanban backend with real-time board updates",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(KanbanError)
async def kanban_error_handler(request: Request, exc: KanbanError):
    """Translate domain errors into JSON responses."""
    headers = None
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        headers = {"Retry-After": str(retry_after)}
    if exc.status_code >= 500:
        logger.warning(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=headers,
    )


# Database pool exhaustion handler - return 503 so clients can retry
@app.exception_handler(SQLAlchemyTimeoutError)
async def db_pool_exhausted_handler(request: Request, exc: SQLAlchemyTimeoutError):
    """Handle database connection pool exhaustion with 503 Service Unavailable."""
    logger.warning(f"Database pool exhausted on {request.method} {request.url}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Service temporarily unavailable. Please retry."},
        headers={"Retry-After": "5"},
    )


# Global exception handler to log errors
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Log all unhandled exceptions with full traceback."""
    logger.error(
        f"Unhandled {type(exc).__name__} on {request.method} {request.url}: {exc}\n"
        f"{traceback.format_exc()}"
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# Include API routers
app.include_router(boards_router)
app.include_router(columns_router)
app.include_router(tasks_router)
app.include_router(instance_portal_router)
app.include_router(admin_portal_router)


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring. Skips tenant and instance checks."""
    return {
        "status": "healthy",
        "mode": "multi-tenant" if settings.multi_tenant else "single-tenant",
        "database": {
            "backend": settings.db_backend,
            "cached_tenants": len(tenant_registry.cached_tenants()),
        },
        "events": await get_event_publisher().health_check(),
        "websocket": {
            "connections": manager.total_connections,
            "rooms": manager.total_rooms,
            "subscribed_tenants": len(manager.subscribed_tenants),
        },
    }


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
    """
    WebSocket endpoint for real-time board updates.

    The tenant is resolved from the host exactly like HTTP requests.
    Authentication is done via query parameter since browsers cannot set
    headers on the WebSocket handshake.

    Usage:
        wss://acme.ezkan.cloud/ws?token=<jwt_token>
    """
    if not token:
        await websocket.close(code=4001, reason="Authentication required")
        return

    principal = decode_access_token(token)
    if principal is None:
        logger.debug("WebSocket connection with invalid token")
        await websocket.close(code=4001, reason="Invalid token")
        return

    try:
        await tenant_resolver.resolve(websocket)
    except KanbanError as e:
        logger.warning(f"WebSocket tenant resolution failed: {e.detail}")
        # 1013: try again later
        await websocket.close(code=1013 if e.status_code == 503 else 4400, reason=e.detail)
        return
    tenant_id = websocket.state.tenant_id

    connection = await manager.connect(websocket, principal.user_id, tenant_id)
    if connection is None:
        return

    message_timestamps: list[float] = []
    loop = asyncio.get_running_loop()

    async def server_ping_task():
        """Send periodic pings so proxies keep the connection open."""
        try:
            while True:
                await asyncio.sleep(SERVER_PING_INTERVAL)
                try:
                    await websocket.send_json({"type": "ping", "data": {}})
                except Exception:
                    break
        except asyncio.CancelledError:
            pass

    ping_task = asyncio.create_task(server_ping_task())

    try:
        while True:
            try:
                raw_message = await asyncio.wait_for(
                    websocket.receive_text(),
                    timeout=RECEIVE_TIMEOUT,
                )
            except asyncio.TimeoutError:
                try:
                    await websocket.send_json({"type": "ping", "data": {}})
                    raw_message = await asyncio.wait_for(websocket.receive_text(), timeout=10)
                except (asyncio.TimeoutError, Exception):
                    logger.info(f"Connection timeout for user: {principal.user_id}")
                    break

            now = loop.time()
            message_timestamps[:] = [t for t in message_timestamps if now - t < RATE_LIMIT_WINDOW]
            if len(message_timestamps) >= RATE_LIMIT_MESSAGES:
                await websocket.send_json({
                    "type": "error",
                    "data": {"error": "RATE_LIMIT", "message": "Too many messages, slow down"},
                })
                continue
            message_timestamps.append(now)

            if len(raw_message) > settings.ws_max_message_size:
                await websocket.send_json({
                    "type": "error",
                    "data": {
                        "error": "MESSAGE_TOO_LARGE",
                        "message": f"Message exceeds maximum size of {settings.ws_max_message_size} bytes",
                    },
                })
                continue

            try:
                data = json.loads(raw_message)
            except json.JSONDecodeError:
                await websocket.send_json({
                    "type": "error",
                    "data": {"error": "INVALID_JSON", "message": "Invalid JSON format"},
                })
                continue

            if isinstance(data, dict):
                await manager.handle_message(connection, data)

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnect for user: {principal.user_id}")
    except Exception as e:
        logger.error(f"WebSocket exception for user {principal.user_id}: {e}")
    finally:
        ping_task.cancel()
        try:
            await ping_task
        except asyncio.CancelledError:
            pass
        await manager.disconnect(websocket)
