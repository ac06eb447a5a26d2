from typing import Any, Awaitable, Callable, Optional

from client.media import LinkFactory
from client.peer_sessions import PeerSessionManager, Role
from client.reconnect import ReconnectSupervisor
from client.signaling import SignalingClient
from constants import RECONNECT_INTERVAL_SECONDS, RECONNECT_MAX_ATTEMPTS
from logging_config import get_logger

logger = get_logger(__name__)


class BroadcastSession:
    """One participant's presence in one room.

    Routes server events into the peer session manager and, for viewers,
    rejoins through a fresh session channel when the media link is lost.
    """

    def __init__(
        self,
        base_url: str,
        room_id: str,
        password: str,
        role: Role,
        link_factory: LinkFactory,
        *,
        display_name: Optional[str] = None,
        client_factory: Callable[[str], SignalingClient] = SignalingClient,
        reconnect_interval: float = RECONNECT_INTERVAL_SECONDS,
        reconnect_attempts: int = RECONNECT_MAX_ATTEMPTS,
        on_chat: Optional[Callable[[dict], Awaitable[None]]] = None,
        on_error: Optional[Callable[[str], Awaitable[None]]] = None,
        on_gave_up: Optional[Callable[[str], Awaitable[None]]] = None,
    ):
        self.base_url = base_url
        self.room_id = room_id
        self.password = password
        self.role = Role(role)
        self.display_name = display_name
        self._client_factory = client_factory
        self.on_chat = on_chat
        self.on_error = on_error
        self.on_gave_up = on_gave_up
        self.client: Optional[SignalingClient] = None
        self._closing = False
        self.manager = PeerSessionManager(
            self.role, link_factory, self._relay, on_link_state=self._on_link_state
        )
        self.supervisor = ReconnectSupervisor(
            self.rejoin,
            role=self.role,
            interval=reconnect_interval,
            max_attempts=reconnect_attempts,
            on_exhausted=self._reconnect_exhausted,
            on_auth_failed=self._reconnect_auth_failed,
        )

    async def create_room(self) -> dict:
        client = self._client_factory(self.base_url)
        return await client.create_room(self.room_id, self.password)

    async def start(self) -> dict:
        ack = await self._open_and_join()
        self.supervisor.record_join_result(ack)
        return ack

    async def rejoin(self) -> dict:
        """Drop every link and the old channel, then join again."""
        await self.manager.close_all()
        if self.client is not None:
            await self.client.close()
            self.client = None
        return await self._open_and_join()

    async def _open_and_join(self) -> dict:
        client = self._client_factory(self.base_url)
        client.on("peer-joined", self._peer_joined)
        client.on("peer-left", self._peer_left)
        client.on("signal", self._signal)
        client.on("chat", self._chat)
        client.on("server-error", self._server_error)
        self.client = client
        await client.connect()
        ack = await client.join(self.room_id, self.password, self.display_name)
        if ack.get("ok"):
            logger.info(f"Joined room {self.room_id} as {self.role.value} ({client.connection_id})")
        else:
            logger.warning(f"Join of room {self.room_id} failed: {ack.get('error')}")
        return ack

    async def send_chat(self, message: str, target: Optional[str] = None) -> dict:
        if self.client is None:
            return {"ok": False, "error": "Not connected"}
        return await self.client.chat(message, target)

    async def close(self) -> None:
        self._closing = True
        self.supervisor.cancel()
        await self.manager.close_all()
        if self.client is not None:
            await self.client.close()
            self.client = None

    async def _relay(self, data: dict, target: Optional[str]) -> Any:
        if self.client is None:
            logger.debug("Dropping setup data: no session channel")
            return None
        return await self.client.relay(data, target)

    async def _on_link_state(self, peer_id: str, state: str) -> None:
        if self._closing:
            return
        await self.supervisor.on_link_state(peer_id, state)

    async def _peer_joined(self, data: dict) -> None:
        peer_id = (data or {}).get("peerId")
        if peer_id:
            await self.manager.on_peer_joined(peer_id)

    async def _peer_left(self, data: dict) -> None:
        peer_id = (data or {}).get("peerId")
        if peer_id:
            await self.manager.on_peer_left(peer_id)

    async def _signal(self, data: dict) -> None:
        if isinstance(data, dict) and data.get("from"):
            await self.manager.on_signal(data["from"], data.get("data"))

    async def _chat(self, data: dict) -> None:
        if self.on_chat is not None:
            await self.on_chat(data)

    async def _server_error(self, data: dict) -> None:
        message = (data or {}).get("message", "")
        logger.warning(f"Server error: {message}")
        if self.on_error is not None:
            await self.on_error(message)

    async def _reconnect_exhausted(self) -> None:
        if self.on_gave_up is not None:
            await self.on_gave_up("exhausted")

    async def _reconnect_auth_failed(self) -> None:
        if self.on_gave_up is not None:
            await self.on_gave_up("auth_failed")
