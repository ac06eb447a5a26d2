from auth import AuthGate
from constants import (
    CHAT_RATE_WINDOW_SECONDS,
    GLOBAL_RATE_WINDOW_SECONDS,
    JOIN_RATE_WINDOW_SECONDS,
    ROOM_CREATE_RATE_WINDOW_SECONDS,
)
from logging_config import get_logger
from rate_limiter import SlidingWindowLimiter
from registry import RoomRegistry
from signal_router import SignalRouter

logger = get_logger(__name__)


class InMemoryBackend:
    """Process-wide room state: registry, rate limiter and router.

    Everything is ephemeral. A restart starts from an empty registry.
    """

    def __init__(self, registry: RoomRegistry = None, limiter: SlidingWindowLimiter = None, **router_options):
        self.limiter = limiter or SlidingWindowLimiter()
        self.registry = registry or RoomRegistry(AuthGate())
        self.router = SignalRouter(self.registry, self.limiter, **router_options)
        logger.info("Initializing InMemoryBackend")

    def housekeeping(self) -> None:
        """Drop rate-limit windows that can no longer affect a decision."""
        longest = max(
            GLOBAL_RATE_WINDOW_SECONDS,
            ROOM_CREATE_RATE_WINDOW_SECONDS,
            JOIN_RATE_WINDOW_SECONDS,
            CHAT_RATE_WINDOW_SECONDS,
        )
        purged = self.limiter.purge_idle(longest)
        if purged:
            logger.debug(f"Purged {purged} idle rate limit window(s)")

    def start(self) -> None:
        self.registry.start(on_sweep=self.housekeeping)

    async def stop(self) -> None:
        await self.registry.stop()


backend = InMemoryBackend()


def reset_backend(new_backend: InMemoryBackend = None) -> InMemoryBackend:
    """Swap the process-wide backend, e.g. between tests."""
    global backend
    backend = new_backend or InMemoryBackend()
    return backend


def get_backend() -> InMemoryBackend:
    return backend
