"""Bounded reconnection for viewers whose media link drops.

A run is identified by a generation number. Every attempt checks the
generation before acting and again after its join completes, so an attempt
that finishes after the run was cancelled or replaced never changes state.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from client.media import LOST_STATES
from client.peer_sessions import Role
from constants import RECONNECT_INTERVAL_SECONDS, RECONNECT_MAX_ATTEMPTS
from errors import TERMINAL_CODES
from logging_config import get_logger

logger = get_logger(__name__)

JoinAttempt = Callable[[], Awaitable[dict]]


class ReconnectOutcome(str, Enum):
    IDLE = "idle"
    RETRYING = "retrying"
    SUCCESS = "success"
    AUTH_FAILED = "auth_failed"
    EXHAUSTED = "exhausted"


@dataclass
class ReconnectState:
    attempts: int = 0
    generation: int = 0
    outcome: ReconnectOutcome = ReconnectOutcome.IDLE
    auth_failed: bool = False

    @property
    def retrying(self) -> bool:
        return self.outcome is ReconnectOutcome.RETRYING


def is_auth_failure(ack: Any) -> bool:
    return isinstance(ack, dict) and not ack.get("ok") and ack.get("code") in TERMINAL_CODES


class ReconnectSupervisor:
    def __init__(
        self,
        join: JoinAttempt,
        *,
        role: Role = Role.VIEWER,
        interval: float = RECONNECT_INTERVAL_SECONDS,
        max_attempts: int = RECONNECT_MAX_ATTEMPTS,
        on_exhausted: Optional[Callable[[], Awaitable[None]]] = None,
        on_auth_failed: Optional[Callable[[], Awaitable[None]]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._join = join
        self.role = Role(role)
        self.interval = interval
        self.max_attempts = max_attempts
        self.on_exhausted = on_exhausted
        self.on_auth_failed = on_auth_failed
        self._sleep = sleep
        self._clock = clock
        self.state = ReconnectState()
        self._task: Optional[asyncio.Task] = None

    @property
    def outcome(self) -> ReconnectOutcome:
        return self.state.outcome

    def record_join_result(self, ack: dict) -> None:
        """Feed the result of a join made outside the supervisor."""
        if is_auth_failure(ack):
            self.state.auth_failed = True
            logger.warning("Join failed authentication; automatic reconnection disabled")

    async def on_link_state(self, peer_id: str, state: str) -> bool:
        """Start a run if a viewer's link was lost. Returns True when one started."""
        if self.role is not Role.VIEWER or state not in LOST_STATES:
            return False
        if self.state.auth_failed:
            logger.info(f"Link to {peer_id} is {state}; not reconnecting after authentication failure")
            return False
        if self.state.retrying:
            return False
        logger.info(f"Link to {peer_id} is {state}; starting reconnection")
        self.start()
        return True

    def start(self) -> int:
        self._cancel_task()
        self.state.generation += 1
        self.state.attempts = 0
        self.state.outcome = ReconnectOutcome.RETRYING
        generation = self.state.generation
        self._task = asyncio.create_task(self._run(generation))
        return generation

    def cancel(self) -> None:
        """Supersede the current run immediately."""
        self.state.generation += 1
        self._cancel_task()
        if self.state.retrying:
            self.state.outcome = ReconnectOutcome.IDLE

    def _cancel_task(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _current(self, generation: int) -> bool:
        return generation == self.state.generation and self.state.retrying

    async def _run(self, generation: int) -> None:
        # attempt k is due at started + k * interval however long earlier attempts took
        started = self._clock()
        while self.state.attempts < self.max_attempts:
            due = started + (self.state.attempts + 1) * self.interval
            await self._sleep(max(0.0, due - self._clock()))
            if not self._current(generation):
                return

            self.state.attempts += 1
            attempt = self.state.attempts
            logger.info(f"Reconnect attempt {attempt}/{self.max_attempts} (generation {generation})")
            try:
                ack = await self._join()
            except Exception as e:
                logger.warning(f"Reconnect attempt {attempt} failed: {e}")
                ack = {"ok": False, "error": str(e)}

            if not self._current(generation):
                logger.debug(f"Discarding result of superseded reconnect attempt (generation {generation})")
                return

            if isinstance(ack, dict) and ack.get("ok"):
                self.state.outcome = ReconnectOutcome.SUCCESS
                logger.info(f"Reconnected after {attempt} attempt(s)")
                return

            if is_auth_failure(ack):
                self.state.auth_failed = True
                self.state.outcome = ReconnectOutcome.AUTH_FAILED
                logger.warning("Reconnect stopped: authentication failed")
                if self.on_auth_failed is not None:
                    await self.on_auth_failed()
                return

            logger.info(f"Reconnect attempt {attempt} rejected: {ack.get('error') if isinstance(ack, dict) else ack}")

        if self._current(generation):
            self.state.outcome = ReconnectOutcome.EXHAUSTED
            logger.warning(f"Reconnect gave up after {self.max_attempts} attempts")
            if self.on_exhausted is not None:
                await self.on_exhausted()

    async def wait(self) -> None:
        """Wait for the current run, if any, to finish."""
        task = self._task
        if task is not None:
            await asyncio.wait([task])
