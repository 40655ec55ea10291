"""
Full-mesh topology: one PeerLink (and one SignalingOrchestrator) per remote
participant, created on join and torn down on leave.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional

from ...core.config import CallSettings
from ...core.errors import CapacityError, SignalingError
from ...schemas.call import Participant
from ...schemas.signaling import ParticipantJoined
from ..media.transport import TransportFactory
from ..signaling.link import PeerLink, PeerState, should_offer
from ..signaling.orchestrator import PeerLinkListener, SendFunc, SignalingOrchestrator

logger = logging.getLogger(__name__)


class MeshTopologyManager(PeerLinkListener):
    """
    Owns every PeerLink of the local participant.

    The manager is the listener of all its orchestrators and forwards their
    notifications to the listeners registered with add_listener().

    Args:
        local: The local participant (host flag decides negotiation roles)
        transport_factory: Creates one PeerTransport per remote peer
        send: Coroutine function sending one signaling message
        settings: Call settings (participant cap, early-message limit)
    """

    def __init__(
        self,
        local: Participant,
        transport_factory: TransportFactory,
        send: SendFunc,
        settings: Optional[CallSettings] = None,
    ):
        self.local = local
        self.settings = settings or CallSettings()
        self._factory = transport_factory
        self._send = send

        self.links: Dict[str, PeerLink] = {}
        self._orchestrators: Dict[str, SignalingOrchestrator] = {}
        self._listeners: List[PeerLinkListener] = []
        # Peer messages that arrived before the sender's join
        self._early: Dict[str, list] = {}
        # peer id -> monotonic time of departure
        self._departed: Dict[str, float] = {}
        self._halted: List[SignalingOrchestrator] = []
        self.closed = False

    def add_listener(self, listener: PeerLinkListener):
        self._listeners.append(listener)

    @property
    def participant_count(self) -> int:
        """Participants in the call, self included."""
        return len(self.links) + 1

    def link(self, peer_id: str) -> Optional[PeerLink]:
        return self.links.get(peer_id)

    def orchestrator(self, peer_id: str) -> Optional[SignalingOrchestrator]:
        return self._orchestrators.get(peer_id)

    def active_links(self) -> List[PeerLink]:
        return [link for link in self.links.values() if not link.is_closed]

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def handle_joined(self, message: ParticipantJoined) -> Optional[PeerLink]:
        """
        Create the link for a newly announced participant.

        Raises:
            CapacityError: if the participant would push the call over its cap
        """
        if self.closed or message.id == self.local.user_id:
            return None

        participant = Participant(
            user_id=message.id,
            display_name=message.name,
            peer_address=message.address,
            is_host=message.is_host,
        )

        existing = self.links.get(message.id)
        if existing is not None:
            if existing.participant.peer_address == participant.peer_address:
                logger.info(f"[Mesh] Duplicate join for {message.id} ignored")
                return existing
            logger.info(
                f"[Mesh] {message.id} re-joined from {participant.peer_address}, replacing link"
            )
            await self._remove(message.id)
        elif self.participant_count + 1 > self.settings.max_participants:
            raise CapacityError(
                f"Cannot add {message.id}: call is capped at {self.settings.max_participants}",
                peer_id=message.id,
            )

        initiator = should_offer(
            self.local.is_host, participant.is_host, observed_join=not message.existing
        )
        link = PeerLink(peer_id=message.id, participant=participant, is_initiator=initiator)
        orchestrator = SignalingOrchestrator(
            link,
            self.local.user_id,
            self._factory,
            self._send,
            listener=self,
            settings=self.settings,
        )
        self.links[message.id] = link
        self._orchestrators[message.id] = orchestrator
        self._departed.pop(message.id, None)

        logger.info(
            f"[Mesh] ➕ {participant.display_name} ({message.id}) joined, "
            f"{self.participant_count} in call"
        )
        self._emit("on_link_added", link)
        orchestrator.start()

        early = self._early.pop(message.id, [])
        if early:
            logger.info(f"[Mesh] Replaying {len(early)} early message(s) from {message.id}")
        for buffered in early:
            orchestrator.deliver(buffered)
        return link

    async def handle_left(self, peer_id: str):
        self._early.pop(peer_id, None)
        if await self._remove(peer_id):
            self._departed[peer_id] = time.monotonic()
            logger.info(f"[Mesh] ➖ {peer_id} left, {self.participant_count} in call")

    async def _remove(self, peer_id: str) -> bool:
        orchestrator = self._orchestrators.pop(peer_id, None)
        link = self.links.pop(peer_id, None)
        if orchestrator is None or link is None:
            return False
        orchestrator.cancel()
        self._emit("on_link_removed", link)
        await orchestrator.close()
        return True

    def halt(self):
        """
        Mark every link CLOSED and cancel its worker and timers without
        awaiting anything. Connections stay open until close_all().
        """
        if self.closed:
            return
        self.closed = True
        self._halted = list(self._orchestrators.values())
        links = list(self.links.values())

        for orchestrator in self._halted:
            orchestrator.cancel()
        for link in links:
            self._emit("on_link_removed", link)

        self._orchestrators.clear()
        self.links.clear()
        self._early.clear()
        self._departed.clear()

    async def close_all(self):
        """
        Close every link in one pass: all links are marked CLOSED and their
        workers and timers cancelled before any connection is closed.
        """
        self.halt()
        orchestrators, self._halted = self._halted, []
        await asyncio.gather(*(o.close() for o in orchestrators))
        logger.info(f"[Mesh] Closed {len(orchestrators)} link(s)")

    # ------------------------------------------------------------------
    # Peer signals
    # ------------------------------------------------------------------

    def route(self, message):
        """
        Hand an offer, answer or candidate to its sender's orchestrator.

        Raises:
            SignalingError: message addressed to someone else, without a sender,
                from a recently departed peer, or the early buffer is full
        """
        if self.closed:
            return
        target = getattr(message, "to", None)
        if target and target != self.local.user_id:
            raise SignalingError(f"'{message.type}' addressed to {target}, not to us")

        sender = getattr(message, "from_id", None)
        if not sender:
            raise SignalingError(f"'{message.type}' has no sender")

        orchestrator = self._orchestrators.get(sender)
        if orchestrator is not None:
            orchestrator.deliver(message)
            return

        self._expire_departed()
        if sender in self._departed:
            raise SignalingError(f"'{message.type}' from {sender}, who already left", peer_id=sender)

        # At most one unknown sender per seat the call can have
        seats = max(self.settings.max_participants - 1, 1)
        if sender not in self._early and len(self._early) >= seats:
            raise SignalingError(
                f"Too many unknown senders, '{message.type}' from {sender} dropped", peer_id=sender
            )

        buffered = self._early.setdefault(sender, [])
        if len(buffered) >= self.settings.early_message_limit:
            raise SignalingError(
                f"Early-message buffer for {sender} is full, '{message.type}' dropped",
                peer_id=sender,
            )
        buffered.append(message)
        logger.debug(f"[Mesh] Held '{message.type}' from unknown peer {sender}")

    def _expire_departed(self):
        cutoff = time.monotonic() - self.settings.departed_ttl_seconds
        for peer_id in [p for p, left_at in self._departed.items() if left_at <= cutoff]:
            del self._departed[peer_id]

    def request_restart(self, peer_id: str):
        orchestrator = self._orchestrators.get(peer_id)
        if orchestrator is not None:
            orchestrator.restart()

    async def drain(self):
        """Wait until every link has handled its queued events."""
        await asyncio.gather(*(o.drain() for o in list(self._orchestrators.values())))

    # ------------------------------------------------------------------
    # Orchestrator notifications
    # ------------------------------------------------------------------

    def on_state_change(self, link: PeerLink, old: PeerState, new: PeerState):
        self._emit("on_state_change", link, old, new)

    def on_remote_track(self, link: PeerLink, track):
        self._emit("on_remote_track", link, track)

    def on_connection_created(self, link: PeerLink):
        self._emit("on_connection_created", link)

    def on_signaling_error(self, link: PeerLink, error: SignalingError):
        self._emit("on_signaling_error", link, error)

    def _emit(self, name: str, *args):
        for listener in list(self._listeners):
            try:
                getattr(listener, name)(*args)
            except Exception as e:
                logger.error(f"[Mesh] {type(listener).__name__}.{name} failed: {e}")
