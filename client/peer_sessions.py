"""Per-peer negotiation bookkeeping for a broadcast client.

A client keeps one :class:`PeerLink` per remote participant. The host always
makes the first offer toward each viewer that joins; viewers only answer. With
only one side ever offering there is no glare to resolve. Both sides wait in
``AWAITING_REMOTE_DESCRIPTION``: the host after sending its offer, a viewer
from the moment its link exists until the offer arrives.

Candidates can outrun the description they belong to. Until a link's remote
description is set, incoming candidates wait in the link's FIFO queue and are
applied in arrival order, exactly once, as soon as it is.
"""

import asyncio
import functools
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from client.media import Candidate, LinkCallbacks, LinkFactory, MediaLink, description_type
from logging_config import get_logger

logger = get_logger(__name__)

Relay = Callable[[dict, Optional[str]], Awaitable[Any]]
LinkStateListener = Callable[[str, str], Awaitable[None]]


class Role(str, Enum):
    HOST = "host"
    VIEWER = "viewer"


class NegotiationRole(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class LinkState(str, Enum):
    IDLE = "idle"
    AWAITING_REMOTE_DESCRIPTION = "awaiting_remote_description"
    STABLE = "stable"
    CLOSED = "closed"


@dataclass(eq=False)
class PeerLink:
    peer_id: str
    link: MediaLink
    role: NegotiationRole
    state: LinkState = LinkState.IDLE
    remote_description_set: bool = False
    pending_candidates: Deque[Candidate] = field(default_factory=deque)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def closed(self) -> bool:
        return self.state is LinkState.CLOSED


class PeerSessionManager:
    def __init__(
        self,
        role: Role,
        link_factory: LinkFactory,
        relay: Relay,
        *,
        on_link_state: Optional[LinkStateListener] = None,
    ):
        self.role = Role(role)
        self._link_factory = link_factory
        self._relay = relay
        self.on_link_state = on_link_state
        self.links: Dict[str, PeerLink] = {}
        self.local_tracks: List[Any] = []

    @property
    def negotiation_role(self) -> NegotiationRole:
        return NegotiationRole.INITIATOR if self.role is Role.HOST else NegotiationRole.RESPONDER

    def get(self, peer_id: str) -> Optional[PeerLink]:
        return self.links.get(peer_id)

    def add_local_track(self, track: Any) -> None:
        """Register a track for links created from now on."""
        self.local_tracks.append(track)

    async def _create_link(self, peer_id: str) -> PeerLink:
        previous = self.links.pop(peer_id, None)
        if previous is not None:
            logger.info(f"Replacing existing link to peer {peer_id}")
            await self._release(previous)

        callbacks = LinkCallbacks(
            on_candidate=functools.partial(self._send_candidate, peer_id),
            on_state_change=functools.partial(self._link_state_changed, peer_id),
        )
        link = self._link_factory(peer_id, callbacks)
        for track in self.local_tracks:
            link.add_track(track)

        peer = PeerLink(peer_id=peer_id, link=link, role=self.negotiation_role)
        if peer.role is NegotiationRole.RESPONDER:
            # a responder has nothing to send until the offer arrives
            peer.state = LinkState.AWAITING_REMOTE_DESCRIPTION
        self.links[peer_id] = peer
        logger.debug(f"Created {peer.role.value} link to peer {peer_id}")
        return peer

    async def _release(self, peer: PeerLink) -> None:
        peer.state = LinkState.CLOSED
        dropped = len(peer.pending_candidates)
        peer.pending_candidates.clear()
        if dropped:
            logger.debug(f"Discarded {dropped} queued candidate(s) for peer {peer.peer_id}")
        try:
            await peer.link.close()
        except Exception as e:
            logger.warning(f"Error closing link to peer {peer.peer_id}: {e}")

    async def on_peer_joined(self, peer_id: str) -> Optional[PeerLink]:
        if self.role is not Role.HOST:
            logger.debug(f"Peer {peer_id} joined; viewers wait for the host's offer")
            return None

        peer = await self._create_link(peer_id)
        async with peer.lock:
            offer = await peer.link.create_offer()
            await peer.link.set_local_description(offer)
            if peer.closed:
                return peer
            peer.state = LinkState.AWAITING_REMOTE_DESCRIPTION
            await self._relay({"sdp": offer}, peer_id)
        logger.info(f"Sent offer to peer {peer_id}")
        return peer

    async def on_signal(self, from_id: str, data: Any) -> None:
        if not isinstance(data, dict):
            logger.warning(f"Ignoring non-object setup data from {from_id}")
            return

        peer = self.links.get(from_id)
        if peer is None:
            peer = await self._create_link(from_id)

        async with peer.lock:
            if peer.closed:
                return
            if data.get("sdp"):
                await self._apply_description(peer, data["sdp"])
            elif data.get("candidate") is not None:
                await self._apply_or_queue(peer, data["candidate"])
            else:
                logger.debug(f"Ignoring setup data without sdp or candidate from {from_id}")

    async def _apply_description(self, peer: PeerLink, description: dict) -> None:
        kind = description_type(description)
        if kind == "offer":
            if peer.role is NegotiationRole.INITIATOR:
                logger.warning(f"Ignoring offer from {peer.peer_id}: this side only initiates")
                return
            await peer.link.set_remote_description(description)
            peer.remote_description_set = True
            await self._flush(peer)
            answer = await peer.link.create_answer()
            await peer.link.set_local_description(answer)
            if peer.closed:
                return
            peer.state = LinkState.STABLE
            await self._relay({"sdp": answer}, peer.peer_id)
            logger.info(f"Answered offer from peer {peer.peer_id}")
        elif kind == "answer":
            if peer.role is NegotiationRole.RESPONDER or peer.state is not LinkState.AWAITING_REMOTE_DESCRIPTION:
                logger.warning(f"Ignoring unexpected answer from {peer.peer_id} in state {peer.state.value}")
                return
            await peer.link.set_remote_description(description)
            peer.remote_description_set = True
            peer.state = LinkState.STABLE
            await self._flush(peer)
            logger.info(f"Link to peer {peer.peer_id} is stable")
        else:
            logger.warning(f"Ignoring description of type {kind!r} from {peer.peer_id}")

    async def _apply_or_queue(self, peer: PeerLink, candidate: Candidate) -> None:
        if not peer.remote_description_set:
            peer.pending_candidates.append(candidate)
            logger.debug(f"Queued candidate for {peer.peer_id} ({len(peer.pending_candidates)} pending)")
            return
        await self._add_candidate(peer, candidate)

    async def _flush(self, peer: PeerLink) -> None:
        while peer.pending_candidates and not peer.closed:
            await self._add_candidate(peer, peer.pending_candidates.popleft())

    async def _add_candidate(self, peer: PeerLink, candidate: Candidate) -> None:
        try:
            await peer.link.add_candidate(candidate)
        except Exception as e:
            # a later renegotiation may supersede it
            logger.warning(f"Error adding candidate for peer {peer.peer_id}: {e}")

    async def _send_candidate(self, peer_id: str, candidate: Candidate) -> None:
        peer = self.links.get(peer_id)
        if peer is None or peer.closed:
            return
        await self._relay({"candidate": candidate}, peer_id)

    async def _link_state_changed(self, peer_id: str, state: str) -> None:
        peer = self.links.get(peer_id)
        if peer is None or peer.closed:
            # links we released ourselves report nothing further
            logger.debug(f"Ignoring state {state} of released link to {peer_id}")
            return
        logger.info(f"Link to peer {peer_id} is {state}")
        if self.on_link_state is not None:
            await self.on_link_state(peer_id, state)

    def replace_local_track(self, old: Any, new: Any) -> None:
        """Swap a local track on every link without renegotiating."""
        if old in self.local_tracks:
            self.local_tracks = [new if t is old else t for t in self.local_tracks]
        else:
            self.local_tracks.append(new)

        for peer in list(self.links.values()):
            if peer.closed:
                continue
            if not peer.link.replace_track(old, new):
                logger.debug(f"In-place track replacement unsupported for {peer.peer_id}, re-adding")
                if old is not None:
                    peer.link.remove_track(old)
                peer.link.add_track(new)

    async def on_peer_left(self, peer_id: str) -> None:
        peer = self.links.pop(peer_id, None)
        if peer is None:
            return
        await self._release(peer)
        logger.info(f"Closed link to departed peer {peer_id}")

    async def close_all(self) -> None:
        peers = list(self.links.values())
        self.links.clear()
        for peer in peers:
            await self._release(peer)
