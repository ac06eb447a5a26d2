"""Websocket client for the session channel, plus HTTP room creation.

Requests are paired with their ``ack`` frames by id and always resolve to an
ack dict: the server's, or a local failure when the ack does not arrive in
time or the connection drops. Server-initiated events are handed to
registered handlers one at a time, in arrival order, from a dispatcher task
separate from the socket reader, so a handler may itself await a request.
"""

import asyncio
import itertools
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx
import websockets
from websockets.exceptions import ConnectionClosed

from constants import ACK_TIMEOUT_SECONDS
from logging_config import get_logger

logger = get_logger(__name__)

EventHandler = Callable[[Any], Awaitable[None]]

CONNECTION_ERROR = "connection_error"


def local_failure(message: str) -> dict:
    return {"ok": False, "error": message, "code": CONNECTION_ERROR}


def websocket_url(base_url: str) -> str:
    base = base_url.rstrip("/")
    ws_base = base.replace("http://", "ws://", 1).replace("https://", "wss://", 1)
    return f"{ws_base}/ws"


class SignalingClient:
    def __init__(
        self,
        base_url: str,
        *,
        ack_timeout: float = ACK_TIMEOUT_SECONDS,
        connect: Callable[..., Awaitable[Any]] = websockets.connect,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.ws_url = websocket_url(self.base_url)
        self.ack_timeout = ack_timeout
        self._connect = connect
        self._http_transport = http_transport
        self._ws = None
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._events: asyncio.Queue = asyncio.Queue()
        self._reader: Optional[asyncio.Task] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._connected = asyncio.Event()
        self.connection_id: Optional[str] = None
        self.room_id: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._connected.is_set()

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    async def create_room(self, room_id: str, password: str) -> dict:
        """POST the room creation request. Returns the JSON body as sent by the server."""
        async with httpx.AsyncClient(
            base_url=self.base_url, transport=self._http_transport, timeout=self.ack_timeout
        ) as http:
            response = await http.post(f"/rooms/{quote(room_id, safe='')}", json={"password": password})
        try:
            body = response.json()
        except ValueError:
            body = {"error": response.text or f"HTTP {response.status_code}"}
        if response.is_success:
            logger.info(f"Room {room_id} created")
        else:
            logger.warning(f"Room creation for {room_id} failed ({response.status_code}): {body.get('error')}")
        return body

    async def connect(self) -> str:
        logger.info(f"Connecting to {self.ws_url}")
        self._ws = await self._connect(self.ws_url)
        self._reader = asyncio.create_task(self._read_loop())
        self._dispatcher = asyncio.create_task(self._dispatch_loop())
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=self.ack_timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise ConnectionError("Server did not confirm the session")
        return self.connection_id

    async def request(self, event: str, data: dict, timeout: Optional[float] = None) -> dict:
        if self._ws is None:
            return local_failure("Not connected")

        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._ws.send(json.dumps({"event": event, "id": request_id, "data": data}))
            return await asyncio.wait_for(future, timeout=timeout or self.ack_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"No ack for {event} #{request_id} within {timeout or self.ack_timeout}s")
            return local_failure("Request timed out")
        except ConnectionClosed:
            return local_failure("Connection closed")
        finally:
            self._pending.pop(request_id, None)

    async def join(self, room_id: str, password: str, display_name: Optional[str] = None) -> dict:
        payload = {"roomId": room_id, "password": password}
        if display_name:
            payload["displayName"] = display_name
        ack = await self.request("join", payload)
        if ack.get("ok"):
            self.room_id = room_id
        return ack

    async def relay(self, data: dict, target: Optional[str] = None) -> dict:
        payload = {"roomId": self.room_id, "data": data}
        if target:
            payload["target"] = target
        return await self.request("relay", payload)

    async def chat(self, message: str, target: Optional[str] = None) -> dict:
        payload = {"roomId": self.room_id, "message": message}
        if target:
            payload["target"] = target
        return await self.request("chat", payload)

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Error closing websocket: {e}")
        for task in (self._reader, self._dispatcher):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
        self._fail_pending("Connection closed")
        self._connected.clear()

    def _fail_pending(self, message: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_result(local_failure(message))

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    frame = json.loads(raw)
                except (TypeError, ValueError):
                    logger.warning("Ignoring malformed frame from server")
                    continue
                self._on_frame(frame)
        except ConnectionClosed as e:
            logger.info(f"Session channel closed: {e}")
        finally:
            self._fail_pending("Connection closed")
            self._connected.clear()
            await self._events.put(("disconnect", {}))

    def _on_frame(self, frame: dict) -> None:
        event = frame.get("event")
        data = frame.get("data")
        if event == "ack":
            future = self._pending.get(frame.get("id"))
            if future is not None and not future.done():
                future.set_result(data if isinstance(data, dict) else local_failure("Malformed ack"))
            return
        if event == "connected":
            self.connection_id = (data or {}).get("id")
            self._connected.set()
            logger.info(f"Session confirmed as {self.connection_id}")
            return
        self._events.put_nowait((event, data))

    async def _dispatch_loop(self) -> None:
        while True:
            event, data = await self._events.get()
            for handler in self._handlers.get(event, []):
                try:
                    await handler(data)
                except Exception as e:
                    logger.error(f"Error in {event} handler: {e}", exc_info=True)
            if event == "disconnect":
                return
