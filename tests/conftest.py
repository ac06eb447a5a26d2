import os

# Set test environment variables before any project module reads them
os.environ.update(
    {
        "PASSWORD_HASH_ITERATIONS": "1000",
        "LOG_LEVEL": "DEBUG",
    }
)

import pytest  # noqa: E402

from auth import AuthGate  # noqa: E402
from rate_limiter import SlidingWindowLimiter  # noqa: E402
from registry import RoomRegistry  # noqa: E402
from signal_router import SignalRouter  # noqa: E402


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeConnection:
    def __init__(self, connection_id: str, ip: str = "10.0.0.1"):
        self.id = connection_id
        self.ip = ip
        self.sent = []
        self.closed = False
        self.close_reason = None

    async def send(self, event, data, request_id=None):
        if self.closed:
            raise RuntimeError("connection closed")
        self.sent.append((event, data, request_id))

    async def close(self, code=1008, reason=""):
        self.closed = True
        self.close_reason = reason

    def events(self, name):
        return [data for event, data, _ in self.sent if event == name]

    def acks(self):
        return self.events("ack")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def auth_gate():
    return AuthGate(iterations=1000)


@pytest.fixture
def registry(auth_gate, clock):
    return RoomRegistry(auth_gate, clock=clock, grace_seconds=120, max_connections_per_ip=5)


@pytest.fixture
def limiter(clock):
    return SlidingWindowLimiter(clock=clock)


@pytest.fixture
def router(registry, limiter):
    return SignalRouter(
        registry,
        limiter,
        wall_clock=lambda: 1_700_000_000.0,
        chat_rate_limit=10,
        chat_rate_window=10,
        join_rate_limit=50,
    )


@pytest.fixture
def connect(router):
    """Register a fake connection with the router."""

    def _connect(connection_id: str, ip: str = "10.0.0.1") -> FakeConnection:
        conn = FakeConnection(connection_id, ip)
        router.register(conn)
        return conn

    return _connect
