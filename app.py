from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.middleware.base import BaseHTTPMiddleware
from contextlib import asynccontextmanager
from routers.rooms import rooms_router, health_router, client_ip
from backend import get_backend
from schemas.signals import ClientFrame
from constants import CORS_ORIGINS, GLOBAL_RATE_LIMIT, GLOBAL_RATE_WINDOW_SECONDS, LOG_FILE, LOG_LEVEL
import asyncio
import json
import math
import uuid
from logging_config import get_logger, setup_logging

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(server: FastAPI):
    backend = get_backend()
    logger.info("Application startup, starting room sweep")
    backend.start()
    yield
    logger.info("Application shutdown")
    await backend.stop()


class GlobalRateLimitMiddleware(BaseHTTPMiddleware):
    """Per-IP cap on plain HTTP request volume. Websocket frames are policed by the router."""

    async def dispatch(self, request: Request, call_next):
        ip = client_ip(request)
        limiter = get_backend().limiter
        key = (ip, "global")
        if not limiter.allow(key, GLOBAL_RATE_WINDOW_SECONDS, GLOBAL_RATE_LIMIT):
            logger.warning(f"Global rate limit exceeded for {ip} on {request.method} {request.url.path}")
            retry_after = math.ceil(limiter.retry_after(key, GLOBAL_RATE_WINDOW_SECONDS))
            return JSONResponse(
                status_code=429,
                content={"error": "Too many requests from this IP, try again later."},
                headers={"Retry-After": str(max(retry_after, 1))},
            )
        return await call_next(request)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error on {request.method} {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=400, content={"error": "Invalid request"})


app = FastAPI(title="Broadcast room signaling", lifespan=lifespan)

app.add_middleware(GlobalRateLimitMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(RequestValidationError, validation_exception_handler)

app.include_router(rooms_router)
app.include_router(health_router)

logger.info("FastAPI application initialized")


class WebSocketConnection:
    """Adapts a FastAPI websocket to the router's connection interface."""

    def __init__(self, websocket: WebSocket, connection_id: str, ip: str):
        self.websocket = websocket
        self.id = connection_id
        self.ip = ip
        self.closed = False
        self._send_lock = asyncio.Lock()

    async def send(self, event: str, data, request_id=None) -> None:
        frame = {"event": event, "data": data}
        if request_id is not None:
            frame["id"] = request_id
        async with self._send_lock:
            if self.closed:
                return
            await self.websocket.send_text(json.dumps(frame))

    async def close(self, code: int = 1008, reason: str = "") -> None:
        async with self._send_lock:
            if self.closed:
                return
            self.closed = True
            await self.websocket.close(code=code, reason=reason)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Session channel for join, relay and chat frames.

    Frames are JSON objects ``{"event": ..., "id": ..., "data": {...}}``. Each
    request gets an ``ack`` frame carrying the same ``id``. Frames from one
    connection are handled in arrival order.
    """
    ip = websocket.client.host if websocket.client else "unknown"
    connection_id = uuid.uuid4().hex
    await websocket.accept()
    logger.info(f"WebSocket connection {connection_id} accepted from {ip}")

    conn = WebSocketConnection(websocket, connection_id, ip)
    router = get_backend().router
    router.register(conn)

    try:
        await conn.send("connected", {"id": connection_id})
        message_count = 0
        while not conn.closed:
            try:
                raw = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info(f"WebSocket disconnected normally for connection {connection_id}")
                break
            message_count += 1
            logger.debug(f"Received frame #{message_count} from connection {connection_id}")

            try:
                frame = ClientFrame.model_validate_json(raw)
            except PydanticValidationError:
                logger.debug(f"Malformed frame from connection {connection_id}")
                await conn.send("server-error", {"message": "Malformed frame"})
                continue

            await router.handle(conn, frame.event, frame.data, frame.id)
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
    finally:
        # the server may cancel this task once the client is gone; the departure must still complete
        await asyncio.shield(router.disconnect(conn))
        if not conn.closed:
            try:
                await conn.close(code=1000)
            except Exception as e:
                logger.debug(f"Error closing WebSocket: {e}")
