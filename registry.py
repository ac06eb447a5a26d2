"""In-memory room registry.

Rooms live only in process memory. Each room carries its own ``asyncio.Lock``
so that joins (which await a slow password check), leaves and chat window
updates on one room are serialized while other rooms proceed untouched.

Empty rooms are not destroyed straight away. Leaving the last member arms a
grace deadline so a participant that drops for a moment can rejoin; a grace
timer and a periodic sweep both collect rooms whose deadline has passed.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from auth import AuthGate
from constants import (
    MAX_CONNECTIONS_PER_IP,
    MAX_NAME_LENGTH,
    ROOM_GRACE_SECONDS,
    ROOM_SWEEP_INTERVAL_SECONDS,
)
from errors import (
    AlreadyJoinedError,
    AuthError,
    CapacityError,
    InternalError,
    RoomExistsError,
    ValidationError,
)
from logging_config import get_logger
from rate_limiter import SlidingWindowLimiter
from sanitize import sanitize_display_name

logger = get_logger(__name__)


@dataclass
class Member:
    connection_id: str
    ip: str
    display_name: str
    joined_at: float


@dataclass(eq=False)
class Room:
    room_id: str
    password_hash: str
    created_at: float
    chat_limiter: SlidingWindowLimiter
    destroy_at: Optional[float] = None
    members: Dict[str, Member] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    grace_handle: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    @property
    def is_empty(self) -> bool:
        return not self.members

    def count_from_ip(self, ip: str) -> int:
        return sum(1 for m in self.members.values() if m.ip == ip)


class RoomRegistry:
    def __init__(
        self,
        auth: Optional[AuthGate] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        grace_seconds: float = ROOM_GRACE_SECONDS,
        sweep_interval_seconds: float = ROOM_SWEEP_INTERVAL_SECONDS,
        max_connections_per_ip: int = MAX_CONNECTIONS_PER_IP,
        max_name_length: int = MAX_NAME_LENGTH,
    ):
        self.auth = auth or AuthGate()
        self._clock = clock
        self.grace_seconds = grace_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.max_connections_per_ip = max_connections_per_ip
        self.max_name_length = max_name_length
        self._rooms: Dict[str, Room] = {}
        self._sweep_task: Optional[asyncio.Task] = None
        logger.info(
            f"Initializing RoomRegistry (grace={grace_seconds}s, sweep every {sweep_interval_seconds}s, "
            f"max {max_connections_per_ip} connections per IP)"
        )

    def get_room(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def is_member(self, room_id: str, connection_id: str) -> bool:
        room = self._rooms.get(room_id)
        return room is not None and connection_id in room.members

    def rooms_of(self, connection_id: str) -> List[str]:
        """Rooms whose membership index contains ``connection_id``."""
        return [room_id for room_id, room in self._rooms.items() if connection_id in room.members]

    def stats(self) -> dict:
        return {
            "rooms": len(self._rooms),
            "memberships": sum(len(r.members) for r in self._rooms.values()),
        }

    def _check_replaceable(self, room_id: str) -> None:
        existing = self._rooms.get(room_id)
        if existing is None:
            return
        if existing.members or existing.lock.locked():
            raise RoomExistsError()
        if existing.destroy_at is None or self._clock() < existing.destroy_at:
            raise RoomExistsError()

    async def create_room(self, room_id: str, password) -> Room:
        if not isinstance(room_id, str) or not room_id.strip():
            raise ValidationError("Room ID required")
        if not isinstance(password, str) or not password:
            raise ValidationError("Password required")

        self._check_replaceable(room_id)
        try:
            password_hash = await self.auth.hash(password)
        except Exception as e:
            logger.error(f"Hashing failed for room {room_id}: {e}", exc_info=True)
            raise InternalError() from e

        # the room table may have changed while hashing
        self._check_replaceable(room_id)
        stale = self._rooms.get(room_id)
        if stale is not None:
            logger.info(f"Replacing stale empty room {room_id}")
            self._destroy(stale, reason="recreated")

        room = Room(
            room_id=room_id,
            password_hash=password_hash,
            created_at=self._clock(),
            chat_limiter=SlidingWindowLimiter(clock=self._clock),
        )
        self._rooms[room_id] = room
        # nobody is in it yet, so the grace clock starts now
        self._arm_destruction(room)
        logger.info(f"Room {room_id} created")
        return room

    async def join(
        self,
        room_id: str,
        password,
        connection_id: str,
        ip: str,
        display_name=None,
    ) -> Member:
        room = self._rooms.get(room_id)
        if room is None:
            # same cost as a wrong password, so probing names reveals nothing
            await self.auth.reject(password)
            logger.warning(f"Join rejected: room {room_id} not found (connection {connection_id})")
            raise AuthError()

        async with room.lock:
            if connection_id in room.members:
                raise AlreadyJoinedError()

            try:
                valid = await self.auth.verify(password, room.password_hash)
            except Exception as e:
                logger.error(f"Password check failed for room {room_id}: {e}", exc_info=True)
                raise InternalError() from e

            if not valid:
                logger.warning(f"Join rejected: invalid password for room {room_id} from {ip}")
                raise AuthError()

            if self._rooms.get(room_id) is not room:
                logger.warning(f"Join rejected: room {room_id} was destroyed during verification")
                raise AuthError()

            if room.count_from_ip(ip) >= self.max_connections_per_ip:
                logger.warning(f"Join rejected: {ip} already holds {self.max_connections_per_ip} memberships in {room_id}")
                raise CapacityError()

            name = sanitize_display_name(display_name, self.max_name_length) or connection_id[: self.max_name_length]
            member = Member(connection_id=connection_id, ip=ip, display_name=name, joined_at=self._clock())
            room.members[connection_id] = member
            self._cancel_destruction(room)

        logger.info(f"Connection {connection_id} ({name}) joined room {room_id} ({len(room.members)} members)")
        return member

    async def leave(self, room_id: str, connection_id: str) -> Optional[Member]:
        room = self._rooms.get(room_id)
        if room is None:
            return None

        async with room.lock:
            member = room.members.pop(connection_id, None)
            room.chat_limiter.forget(connection_id)
            if member is not None and room.is_empty:
                self._arm_destruction(room)

        if member is not None:
            logger.info(f"Connection {connection_id} left room {room_id} ({len(room.members)} members)")
        return member

    async def allow_chat(self, room_id: str, connection_id: str, window_seconds: float, max_count: int) -> bool:
        room = self._rooms.get(room_id)
        if room is None:
            return False
        async with room.lock:
            if connection_id not in room.members:
                return False
            return room.chat_limiter.allow(connection_id, window_seconds, max_count)

    def _arm_destruction(self, room: Room) -> None:
        room.destroy_at = self._clock() + self.grace_seconds
        if room.grace_handle is not None:
            room.grace_handle.cancel()
            room.grace_handle = None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop: the sweep will collect it
            return
        room.grace_handle = loop.call_later(self.grace_seconds, self._on_grace_elapsed, room)
        logger.debug(f"Room {room.room_id} is empty, destruction armed in {self.grace_seconds}s")

    def _cancel_destruction(self, room: Room) -> None:
        if room.destroy_at is not None:
            logger.debug(f"Pending destruction of room {room.room_id} cancelled")
        room.destroy_at = None
        if room.grace_handle is not None:
            room.grace_handle.cancel()
            room.grace_handle = None

    def _on_grace_elapsed(self, room: Room) -> None:
        room.grace_handle = None
        if self._rooms.get(room.room_id) is not room:
            return
        if room.members or room.destroy_at is None or room.lock.locked():
            return
        self._destroy(room, reason="grace period elapsed")

    def _destroy(self, room: Room, reason: str) -> None:
        if room.grace_handle is not None:
            room.grace_handle.cancel()
            room.grace_handle = None
        if self._rooms.get(room.room_id) is room:
            del self._rooms[room.room_id]
        logger.info(f"Room {room.room_id} cleaned up ({reason})")

    def sweep(self) -> List[str]:
        """Destroy rooms that are empty, idle and past their deadline."""
        now = self._clock()
        destroyed = []
        for room_id, room in list(self._rooms.items()):
            if room.members or room.lock.locked():
                continue
            if room.destroy_at is None:
                room.destroy_at = now + self.grace_seconds
                continue
            if now >= room.destroy_at:
                self._destroy(room, reason="sweep")
                destroyed.append(room_id)
        if destroyed:
            logger.info(f"Sweep removed {len(destroyed)} room(s): {destroyed}")
        return destroyed

    async def _sweep_loop(self, on_sweep: Optional[Callable[[], None]]) -> None:
        logger.info("Starting room sweep task")
        try:
            while True:
                await asyncio.sleep(self.sweep_interval_seconds)
                try:
                    self.sweep()
                    if on_sweep is not None:
                        on_sweep()
                except Exception as e:
                    logger.error(f"Room sweep failed: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.info("Room sweep task cancelled")
            raise

    def start(self, on_sweep: Optional[Callable[[], None]] = None) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(on_sweep))

    async def stop(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for room in self._rooms.values():
            if room.grace_handle is not None:
                room.grace_handle.cancel()
                room.grace_handle = None
