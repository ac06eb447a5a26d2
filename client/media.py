"""Interface to the external real-time media stack.

The client core never produces or parses session descriptions or candidates
itself. It drives an object implementing :class:`MediaLink` (one per remote
peer) and treats every description and candidate as an opaque dict.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

Description = dict
Candidate = dict

# connection states after which a viewer tries to get back into the room
LOST_STATES = frozenset({"disconnected", "failed", "closed"})


@dataclass
class LinkCallbacks:
    on_candidate: Callable[[Candidate], Awaitable[None]]
    on_state_change: Callable[[str], Awaitable[None]]


class MediaLink(Protocol):
    async def create_offer(self) -> Description: ...

    async def create_answer(self) -> Description: ...

    async def set_local_description(self, description: Description) -> None: ...

    async def set_remote_description(self, description: Description) -> None: ...

    async def add_candidate(self, candidate: Candidate) -> None: ...

    def add_track(self, track: Any) -> None: ...

    def remove_track(self, track: Any) -> None: ...

    def replace_track(self, old: Any, new: Any) -> bool:
        """Swap the outgoing track in place. False when the link cannot."""
        ...

    async def close(self) -> None: ...


LinkFactory = Callable[[str, LinkCallbacks], MediaLink]


def description_type(description: Optional[Description]) -> Optional[str]:
    if not isinstance(description, dict):
        return None
    value = description.get("type")
    return value if isinstance(value, str) else None
