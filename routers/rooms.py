from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from typing import Optional

from backend import get_backend
from constants import ROOM_CREATE_RATE_LIMIT, ROOM_CREATE_RATE_WINDOW_SECONDS
from errors import RoomServiceError
from schemas.rooms import CreateRoomRequest, CreateRoomResponse, ErrorResponse, HealthResponse
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])
health_router = APIRouter(tags=["health"])


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


@rooms_router.post(
    "/{room_id}",
    response_model=CreateRoomResponse,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
)
async def create_room(room_id: str, request: Request, room: Optional[CreateRoomRequest] = None):
    # Body: { "password": "..." }
    # Response 200: { "success": true, "roomId": "abc" }
    ip = client_ip(request)
    logger.info(f"Room creation request for {room_id} from {ip}")
    backend = get_backend()

    try:
        backend.limiter.check(
            (ip, "create"),
            ROOM_CREATE_RATE_WINDOW_SECONDS,
            ROOM_CREATE_RATE_LIMIT,
            "Too many create requests from this IP, try again later.",
        )
        await backend.registry.create_room(room_id, room.password if room else None)
    except RoomServiceError as e:
        logger.warning(f"Room creation failed for {room_id} from {ip}: {e.message}")
        return JSONResponse(status_code=e.status_code, content=e.to_body())

    logger.info(f"Room {room_id} created successfully for {ip}")
    return CreateRoomResponse(roomId=room_id)


@health_router.get("/health", response_model=HealthResponse)
async def health():
    stats = get_backend().registry.stats()
    return HealthResponse(status="ok", **stats)
