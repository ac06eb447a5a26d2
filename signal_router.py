"""Routing of session messages between room members.

Every caller-initiated message gets exactly one ``ack`` frame back, success or
failure, within ``ack_timeout`` seconds. Relay payloads are forwarded as-is;
the router only checks that the sender is a member and that an explicit
target is in the same room.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Protocol, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from constants import (
    ACK_TIMEOUT_SECONDS,
    CHAT_RATE_LIMIT,
    CHAT_RATE_WINDOW_SECONDS,
    JOIN_RATE_LIMIT,
    JOIN_RATE_WINDOW_SECONDS,
    MAX_CHAT_LENGTH,
)
from errors import (
    AuthError,
    CapacityError,
    InternalError,
    RateLimitError,
    RoomServiceError,
    ValidationError,
)
from logging_config import get_logger
from rate_limiter import SlidingWindowLimiter
from registry import RoomRegistry
from sanitize import sanitize_message
from schemas.signals import ChatPayload, JoinPayload, RelayPayload

logger = get_logger(__name__)

RequestId = Optional[Union[int, str]]

# failures after which the server drops the session, as a wrong password does
_SESSION_ENDING = (AuthError, CapacityError, InternalError)


class Connection(Protocol):
    id: str
    ip: str

    async def send(self, event: str, data: Any, request_id: RequestId = None) -> None: ...

    async def close(self, code: int = 1008, reason: str = "") -> None: ...


class SignalRouter:
    def __init__(
        self,
        registry: RoomRegistry,
        limiter: SlidingWindowLimiter,
        *,
        wall_clock: Callable[[], float] = time.time,
        ack_timeout: float = ACK_TIMEOUT_SECONDS,
        join_rate_limit: int = JOIN_RATE_LIMIT,
        join_rate_window: float = JOIN_RATE_WINDOW_SECONDS,
        chat_rate_limit: int = CHAT_RATE_LIMIT,
        chat_rate_window: float = CHAT_RATE_WINDOW_SECONDS,
        max_chat_length: int = MAX_CHAT_LENGTH,
    ):
        self.registry = registry
        self.limiter = limiter
        self._wall_clock = wall_clock
        self.ack_timeout = ack_timeout
        self.join_rate_limit = join_rate_limit
        self.join_rate_window = join_rate_window
        self.chat_rate_limit = chat_rate_limit
        self.chat_rate_window = chat_rate_window
        self.max_chat_length = max_chat_length
        self._connections: Dict[str, Connection] = {}
        self._handlers: Dict[str, Callable[[Connection, Any], Awaitable[dict]]] = {
            "join": self.join,
            "relay": self.relay,
            "signal": self.relay,
            "chat": self.chat,
        }

    def register(self, conn: Connection) -> None:
        self._connections[conn.id] = conn
        logger.debug(f"Registered connection {conn.id} from {conn.ip} ({len(self._connections)} connected)")

    def connection_count(self) -> int:
        return len(self._connections)

    async def handle(self, conn: Connection, event: str, data: Any, request_id: RequestId = None) -> dict:
        """Run one client request and send its ack."""
        handler = self._handlers.get(event)
        out_of_band = None
        close_after = False
        try:
            if handler is None:
                raise ValidationError(f"Unknown event: {str(event)[:32]}")
            ack = await asyncio.wait_for(handler(conn, data), timeout=self.ack_timeout)
        except asyncio.TimeoutError:
            logger.error(f"Timed out handling {event} from connection {conn.id}")
            ack = InternalError("Request timed out").to_ack()
            out_of_band = ack["error"]
        except RoomServiceError as e:
            ack = e.to_ack()
            if not isinstance(e, ValidationError):
                out_of_band = e.message
            close_after = event == "join" and isinstance(e, _SESSION_ENDING)
        except Exception as e:
            logger.error(f"Error handling {event} from connection {conn.id}: {e}", exc_info=True)
            ack = InternalError().to_ack()
            out_of_band = ack["error"]

        await self._notify(conn, "ack", ack, request_id)
        if out_of_band:
            await self._notify(conn, "server-error", {"message": out_of_band})
        if close_after:
            logger.info(f"Closing connection {conn.id} after failed join: {ack['error']}")
            try:
                await conn.close(code=1008, reason=ack["error"])
            except Exception as e:
                logger.debug(f"Error closing connection {conn.id}: {e}")
        return ack

    def _parse(self, model: type, data: Any) -> BaseModel:
        try:
            return model.model_validate(data if data is not None else {})
        except PydanticValidationError as e:
            logger.debug(f"Rejected malformed {model.__name__}: {e.errors()}")
            raise ValidationError("Invalid request") from e

    async def join(self, conn: Connection, data: Any) -> dict:
        payload = self._parse(JoinPayload, data)
        self.limiter.check(
            (conn.ip, "join"),
            self.join_rate_window,
            self.join_rate_limit,
            "Too many join attempts from this IP, try again later.",
        )
        await self.registry.join(
            payload.room_id,
            payload.password,
            connection_id=conn.id,
            ip=conn.ip,
            display_name=payload.display_name,
        )
        room = self.registry.get_room(payload.room_id)
        others = [cid for cid in room.members if cid != conn.id] if room else []
        await self._deliver(others, "peer-joined", {"peerId": conn.id})
        return {"ok": True, "roomId": payload.room_id}

    async def relay(self, conn: Connection, data: Any) -> dict:
        payload = self._parse(RelayPayload, data)
        room = self.registry.get_room(payload.room_id)
        if room is None or conn.id not in room.members:
            raise ValidationError("Not in room")

        if payload.target and payload.target != conn.id and payload.target in room.members:
            recipients = [payload.target]
        else:
            recipients = [cid for cid in room.members if cid != conn.id]

        logger.debug(f"Relaying setup data from {conn.id} to {len(recipients)} peer(s) in room {payload.room_id}")
        await self._deliver(recipients, "signal", {"from": conn.id, "data": payload.data})
        return {"ok": True, "delivered": len(recipients)}

    async def chat(self, conn: Connection, data: Any) -> dict:
        payload = self._parse(ChatPayload, data)
        if not self.registry.is_member(payload.room_id, conn.id):
            raise ValidationError("Not in room")

        allowed = await self.registry.allow_chat(
            payload.room_id, conn.id, self.chat_rate_window, self.chat_rate_limit
        )
        if not allowed:
            if not self.registry.is_member(payload.room_id, conn.id):
                raise ValidationError("Not in room")
            logger.warning(f"Chat rate limit hit by {conn.id} in room {payload.room_id}")
            raise RateLimitError("Too many messages, slow down")

        clean = sanitize_message(payload.message, self.max_chat_length)
        if not clean:
            raise ValidationError("Empty or invalid message")

        room = self.registry.get_room(payload.room_id)
        member = room.members.get(conn.id) if room else None
        if member is None:
            raise ValidationError("Not in room")

        message = {
            "from": conn.id,
            "name": member.display_name,
            "message": clean,
            "time": int(self._wall_clock() * 1000),
        }
        if payload.target and payload.target in room.members:
            await self._deliver([payload.target], "chat", message)
            return {"ok": True, "private": True}

        # sender included so its UI shows the canonical text
        await self._deliver(list(room.members), "chat", message)
        return {"ok": True, "private": False}

    async def disconnect(self, conn: Connection) -> None:
        self._connections.pop(conn.id, None)
        for room_id in self.registry.rooms_of(conn.id):
            member = await self.registry.leave(room_id, conn.id)
            if member is None:
                continue
            room = self.registry.get_room(room_id)
            if room is not None:
                await self._deliver(list(room.members), "peer-left", {"peerId": conn.id})
        logger.info(f"Connection {conn.id} from {conn.ip} disconnected ({len(self._connections)} connected)")

    async def _notify(self, conn: Connection, event: str, data: Any, request_id: RequestId = None) -> None:
        try:
            await conn.send(event, data, request_id)
        except Exception as e:
            logger.debug(f"Could not send {event} to connection {conn.id}: {e}")

    async def _deliver(self, connection_ids: Iterable[str], event: str, data: Any) -> None:
        targets = [self._connections[cid] for cid in connection_ids if cid in self._connections]
        if not targets:
            return
        results = await asyncio.gather(*(c.send(event, data) for c in targets), return_exceptions=True)
        for conn, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(f"Error sending {event} to connection {conn.id}: {result}")
