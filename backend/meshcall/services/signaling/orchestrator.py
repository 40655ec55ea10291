"""
Per-peer negotiation state machine.

Each remote participant gets one SignalingOrchestrator. Inbound signaling
messages, transport callbacks, reconnection restarts and timer expiries are all
posted as LinkEvents onto the orchestrator's queue and handled one at a time by
a single worker task, so a peer's events are applied strictly in arrival order
and a slow negotiation never blocks another peer.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from ...core.config import CallSettings
from ...core.errors import SignalingError
from ...schemas.signaling import (
    AnswerMessage,
    CandidateMessage,
    IceCandidatePayload,
    OfferMessage,
    SessionDescription,
)
from ..media.transport import PeerTransport, TransportFactory, TransportState
from .link import PeerLink, PeerState

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    START_OFFER = "start_offer"
    REMOTE_OFFER = "remote_offer"
    REMOTE_ANSWER = "remote_answer"
    REMOTE_CANDIDATE = "remote_candidate"
    LOCAL_CANDIDATE = "local_candidate"
    TRANSPORT_STATE = "transport_state"
    TRACK = "track"
    RESTART = "restart"
    GRACE_EXPIRED = "grace_expired"


@dataclass
class LinkEvent:
    kind: EventKind
    payload: object = None
    # Connection generation the event belongs to; None means "current"
    generation: Optional[int] = None


class PeerLinkListener:
    """Observer of one or more orchestrators. Handlers must not block."""

    def on_state_change(self, link: PeerLink, old: PeerState, new: PeerState):
        pass

    def on_remote_track(self, link: PeerLink, track):
        pass

    def on_connection_created(self, link: PeerLink):
        pass

    def on_signaling_error(self, link: PeerLink, error: SignalingError):
        pass

    def on_link_added(self, link: PeerLink):
        pass

    def on_link_removed(self, link: PeerLink):
        pass


SendFunc = Callable[[object], Awaitable[None]]


class SignalingOrchestrator:
    """
    Drives offer/answer/ICE exchange for one PeerLink.

    Args:
        link: The link this orchestrator owns
        local_id: Identity of the local participant, stamped on outgoing messages
        transport_factory: Creates a fresh PeerTransport for a peer id
        send: Coroutine function delivering one outbound signaling message
        listener: Receives state changes and remote tracks
        settings: Call settings (grace window)
    """

    def __init__(
        self,
        link: PeerLink,
        local_id: str,
        transport_factory: TransportFactory,
        send: SendFunc,
        listener: Optional[PeerLinkListener] = None,
        settings: Optional[CallSettings] = None,
    ):
        self.link = link
        self.local_id = local_id
        self.settings = settings or CallSettings()
        self._factory = transport_factory
        self._send = send
        self._listener = listener or PeerLinkListener()

        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._grace_task: Optional[asyncio.Task] = None
        self._generation = 0

    @property
    def peer_id(self) -> str:
        return self.link.peer_id

    @property
    def generation(self) -> int:
        return self._generation

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Create the first connection and start the worker."""
        self._create_connection()
        self._worker = asyncio.create_task(self._run(), name=f"peer-{self.peer_id}")
        if self.link.is_initiator:
            self.post(LinkEvent(EventKind.START_OFFER))
        logger.info(
            f"[Signaling] 🔗 Link to {self.peer_id} started "
            f"({'initiator' if self.link.is_initiator else 'answerer'})"
        )

    def post(self, event: LinkEvent):
        if self.link.is_closed:
            return
        self._queue.put_nowait(event)

    def deliver(self, message):
        """Post an inbound offer, answer or candidate message."""
        if isinstance(message, OfferMessage):
            self.post(LinkEvent(EventKind.REMOTE_OFFER, message.payload))
        elif isinstance(message, AnswerMessage):
            self.post(LinkEvent(EventKind.REMOTE_ANSWER, message.payload))
        elif isinstance(message, CandidateMessage):
            self.post(LinkEvent(EventKind.REMOTE_CANDIDATE, message.payload))
        else:
            raise SignalingError(
                f"'{getattr(message, 'type', '?')}' is not a peer signal", peer_id=self.peer_id
            )

    def restart(self):
        self.post(LinkEvent(EventKind.RESTART))

    async def drain(self):
        """Wait until every queued event has been handled."""
        await self._queue.join()

    def cancel(self):
        """
        Mark the link CLOSED and stop all activity without awaiting anything.

        In-flight negotiation is cancelled at its next suspension point. The
        connection itself is closed by close().
        """
        old = self.link.state
        self.link.state = PeerState.CLOSED
        self._cancel_grace()
        if self._worker and not self._worker.done():
            self._worker.cancel()
        self.link.candidate_queue.clear()
        if old != PeerState.CLOSED:
            logger.info(f"[Signaling] {self.peer_id}: {old.value} -> closed")
            self._notify_state(old, PeerState.CLOSED)

    async def close(self):
        self.cancel()
        await self._close_transport(self.link.connection)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def _run(self):
        while True:
            event = await self._queue.get()
            try:
                await self._handle(event)
            except SignalingError as e:
                logger.warning(f"[Signaling] Dropped {event.kind.value} from {self.peer_id}: {e}")
                self._listener.on_signaling_error(self.link, e)
            except Exception as e:
                logger.error(
                    f"[Signaling] ❌ {event.kind.value} failed for {self.peer_id}: {e}"
                )
                self._fail()
            finally:
                self._queue.task_done()

    async def _handle(self, event: LinkEvent):
        if self.link.is_closed:
            return
        if event.generation is not None and event.generation != self._generation:
            logger.debug(
                f"[Signaling] Stale {event.kind.value} for {self.peer_id} "
                f"(generation {event.generation}, current {self._generation})"
            )
            return

        handler = {
            EventKind.START_OFFER: self._on_start_offer,
            EventKind.REMOTE_OFFER: self._on_remote_offer,
            EventKind.REMOTE_ANSWER: self._on_remote_answer,
            EventKind.REMOTE_CANDIDATE: self._on_remote_candidate,
            EventKind.LOCAL_CANDIDATE: self._on_local_candidate,
            EventKind.TRANSPORT_STATE: self._on_transport_state,
            EventKind.TRACK: self._on_track,
            EventKind.RESTART: self._on_restart,
            EventKind.GRACE_EXPIRED: self._on_grace_expired,
        }[event.kind]
        await handler(event.payload)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _on_start_offer(self, _):
        if self.link.state != PeerState.IDLE:
            logger.debug(f"[Signaling] Offer to {self.peer_id} skipped in {self.link.state.value}")
            return
        await self._send_offer()

    async def _on_remote_offer(self, description: SessionDescription):
        state = self.link.state

        if self.link.is_initiator:
            if state != PeerState.IDLE:
                raise SignalingError(
                    f"Glare: offer received while {state.value}", peer_id=self.peer_id
                )
        elif state == PeerState.OFFER_PENDING:
            raise SignalingError("Offer received while our own offer is pending", peer_id=self.peer_id)
        elif state == PeerState.FAILED and self.link.terminal_notified:
            raise SignalingError("Offer received after reconnection gave up", peer_id=self.peer_id)
        elif state != PeerState.IDLE:
            # Renegotiation or restart driven by the initiator
            logger.info(f"[Signaling] 🔄 Fresh offer from {self.peer_id} while {state.value}")
            await self._reset_connection()

        await self._send_answer(description)

    async def _on_remote_answer(self, description: SessionDescription):
        if self.link.state != PeerState.OFFER_PENDING:
            raise SignalingError(
                f"Answer received while {self.link.state.value}", peer_id=self.peer_id
            )
        await self.link.connection.set_remote_description(description)
        await self._flush_candidates()
        self._transition(PeerState.ANSWER_PENDING)

    async def _on_remote_candidate(self, candidate: Optional[IceCandidatePayload]):
        if candidate is None:
            logger.debug(f"[ICE] End of candidates from {self.peer_id}")
            return

        queue = self.link.candidate_queue
        if queue.is_duplicate(candidate):
            logger.debug(f"[ICE] Duplicate candidate from {self.peer_id} discarded")
            return

        if not self.link.connection.remote_description_set:
            queue.push(candidate)
            logger.debug(f"[ICE] Queued candidate from {self.peer_id} ({len(queue)} pending)")
            return

        queue.mark_seen(candidate)
        await self._apply_candidate(candidate)

    async def _on_local_candidate(self, candidate: Optional[IceCandidatePayload]):
        await self._send(CandidateMessage(from_id=self.local_id, to=self.peer_id, payload=candidate))

    async def _on_transport_state(self, state: TransportState):
        current = self.link.state

        if state == TransportState.CONNECTED:
            self._cancel_grace()
            self._transition(PeerState.CONNECTED)
        elif state == TransportState.DISCONNECTED:
            if current == PeerState.CONNECTED:
                self._transition(PeerState.DEGRADED)
                self._start_grace()
        elif state in (TransportState.FAILED, TransportState.CLOSED):
            if current != PeerState.FAILED:
                logger.warning(f"[Signaling] Transport to {self.peer_id} {state.value}")
                self._fail()

    async def _on_track(self, track):
        self.link.remote_tracks.append(track)
        logger.info(f"[Signaling] 📡 Remote {getattr(track, 'kind', '?')} track from {self.peer_id}")
        self._listener.on_remote_track(self.link, track)

    async def _on_restart(self, _):
        if self.link.state != PeerState.FAILED:
            logger.debug(f"[Signaling] Restart of {self.peer_id} skipped in {self.link.state.value}")
            return

        await self._reset_connection()
        if self.link.is_initiator:
            await self._send_offer()
        else:
            # Wait for the initiator's fresh offer
            self._transition(PeerState.IDLE)

    async def _on_grace_expired(self, _):
        if self.link.state == PeerState.DEGRADED:
            logger.warning(f"[Signaling] {self.peer_id} did not recover within the grace window")
            self._fail()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _send_offer(self):
        transport = self.link.connection
        offer = await transport.create_offer()
        await transport.set_local_description(offer)
        await self._send(
            OfferMessage(
                from_id=self.local_id,
                to=self.peer_id,
                payload=transport.local_description or offer,
            )
        )
        self._transition(PeerState.OFFER_PENDING)

    async def _send_answer(self, offer: SessionDescription):
        transport = self.link.connection
        await transport.set_remote_description(offer)
        await self._flush_candidates()
        answer = await transport.create_answer()
        await transport.set_local_description(answer)
        await self._send(
            AnswerMessage(
                from_id=self.local_id,
                to=self.peer_id,
                payload=transport.local_description or answer,
            )
        )
        self._transition(PeerState.ANSWER_PENDING)

    async def _flush_candidates(self):
        pending = self.link.candidate_queue.drain()
        if pending:
            logger.debug(f"[ICE] Applying {len(pending)} queued candidate(s) for {self.peer_id}")
        for candidate in pending:
            await self._apply_candidate(candidate)

    async def _apply_candidate(self, candidate: IceCandidatePayload):
        try:
            await self.link.connection.add_ice_candidate(candidate)
        except Exception as e:
            # A bad candidate must not take the link down
            logger.warning(f"[ICE] Malformed candidate from {self.peer_id} discarded: {e}")

    def _create_connection(self) -> PeerTransport:
        self._generation += 1
        generation = self._generation
        transport = self._factory(self.peer_id)

        transport.on_ice_candidate = lambda c: self.post(
            LinkEvent(EventKind.LOCAL_CANDIDATE, c, generation)
        )
        transport.on_track = lambda t: self.post(LinkEvent(EventKind.TRACK, t, generation))
        transport.on_state_change = lambda s: self.post(
            LinkEvent(EventKind.TRANSPORT_STATE, s, generation)
        )

        self.link.connection = transport
        self.link.candidate_queue.reset()
        self.link.remote_tracks = []
        self._listener.on_connection_created(self.link)
        return transport

    async def _reset_connection(self):
        """Discard the current connection and create a fresh one."""
        self._cancel_grace()
        old = self.link.connection
        self._create_connection()
        await self._close_transport(old)

    async def _close_transport(self, transport: Optional[PeerTransport]):
        if transport is None:
            return
        try:
            await transport.close()
        except Exception as e:
            logger.error(f"[Signaling] Error closing connection to {self.peer_id}: {e}")

    def _fail(self):
        self._cancel_grace()
        self._transition(PeerState.FAILED)

    def _transition(self, new: PeerState):
        old = self.link.state
        if old == new or old == PeerState.CLOSED:
            return
        self.link.state = new
        logger.info(f"[Signaling] {self.peer_id}: {old.value} -> {new.value}")
        self._notify_state(old, new)

    def _notify_state(self, old: PeerState, new: PeerState):
        try:
            self._listener.on_state_change(self.link, old, new)
        except Exception as e:
            logger.error(f"[Signaling] State listener failed for {self.peer_id}: {e}")

    def _start_grace(self):
        self._cancel_grace()
        generation = self._generation

        async def expire():
            await asyncio.sleep(self.settings.degraded_grace_seconds)
            self.post(LinkEvent(EventKind.GRACE_EXPIRED, None, generation))

        self._grace_task = asyncio.create_task(expire())

    def _cancel_grace(self):
        if self._grace_task and not self._grace_task.done():
            self._grace_task.cancel()
        self._grace_task = None
