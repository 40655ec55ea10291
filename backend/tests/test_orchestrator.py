import asyncio

import pytest

from fakes import FakeTransportFactory, wait_until
from meshcall.core.config import CallSettings
from meshcall.schemas.call import Participant
from meshcall.schemas.signaling import (
    AnswerMessage,
    CandidateMessage,
    IceCandidatePayload,
    OfferMessage,
    SessionDescription,
)
from meshcall.services.media.transport import TransportState
from meshcall.services.signaling.link import PeerLink, PeerState, should_offer
from meshcall.services.signaling.orchestrator import PeerLinkListener, SignalingOrchestrator


class RecordingListener(PeerLinkListener):
    def __init__(self):
        self.transitions = []
        self.errors = []
        self.tracks = []

    def on_state_change(self, link, old, new):
        self.transitions.append((old, new))

    def on_signaling_error(self, link, error):
        self.errors.append(error)

    def on_remote_track(self, link, track):
        self.tracks.append(track)


def make_link(peer_id: str, initiator: bool) -> PeerLink:
    return PeerLink(
        peer_id=peer_id,
        participant=Participant(user_id=peer_id, display_name=peer_id.title()),
        is_initiator=initiator,
    )


def make_single(initiator: bool, settings=None, auto_connect=True):
    factory = FakeTransportFactory(auto_connect=auto_connect)
    listener = RecordingListener()
    sent = []

    async def send(message):
        sent.append(message)

    orchestrator = SignalingOrchestrator(
        make_link("remote", initiator),
        "local",
        factory,
        send,
        listener=listener,
        settings=settings or CallSettings(),
    )
    return orchestrator, factory, listener, sent


def offer(sdp="remote-offer"):
    return OfferMessage(from_id="remote", to="local", payload=SessionDescription(type="offer", sdp=sdp))


def answer(sdp="remote-answer"):
    return AnswerMessage(from_id="remote", to="local", payload=SessionDescription(type="answer", sdp=sdp))


def ice(n: int) -> CandidateMessage:
    return CandidateMessage(
        from_id="remote",
        to="local",
        payload=IceCandidatePayload(candidate=f"candidate:{n} 1 udp 1 10.0.0.{n} 9 typ host", sdp_mid="0"),
    )


def test_should_offer_is_antisymmetric():
    for local_host in (True, False):
        for remote_host in (True, False):
            for observed in (True, False):
                mine = should_offer(local_host, remote_host, observed)
                theirs = should_offer(remote_host, local_host, not observed)
                assert mine != theirs


def test_host_always_offers():
    assert should_offer(True, False, observed_join=False)
    assert not should_offer(False, True, observed_join=True)


@pytest.mark.asyncio
async def test_offer_answer_exchange_reaches_connected():
    factory = FakeTransportFactory()
    alice_events, bob_events = RecordingListener(), RecordingListener()
    peers = {}

    async def alice_send(message):
        peers["bob"].deliver(message)

    async def bob_send(message):
        peers["alice"].deliver(message)

    peers["alice"] = SignalingOrchestrator(
        make_link("bob", True), "alice", factory, alice_send, listener=alice_events
    )
    peers["bob"] = SignalingOrchestrator(
        make_link("alice", False), "bob", factory, bob_send, listener=bob_events
    )
    peers["bob"].start()
    peers["alice"].start()

    await wait_until(
        lambda: peers["alice"].link.state == PeerState.CONNECTED
        and peers["bob"].link.state == PeerState.CONNECTED
    )

    assert alice_events.transitions == [
        (PeerState.IDLE, PeerState.OFFER_PENDING),
        (PeerState.OFFER_PENDING, PeerState.ANSWER_PENDING),
        (PeerState.ANSWER_PENDING, PeerState.CONNECTED),
    ]
    assert bob_events.transitions == [
        (PeerState.IDLE, PeerState.ANSWER_PENDING),
        (PeerState.ANSWER_PENDING, PeerState.CONNECTED),
    ]
    # Only the initiator created an offer
    assert factory.latest("bob").offers_created == 1
    assert factory.latest("alice").offers_created == 0

    for orchestrator in peers.values():
        await orchestrator.close()


@pytest.mark.asyncio
async def test_early_candidates_applied_in_order_exactly_once():
    orchestrator, factory, _, sent = make_single(initiator=False, auto_connect=False)
    orchestrator.start()

    for message in (ice(1), ice(2), ice(1), ice(3)):
        orchestrator.deliver(message)
    await orchestrator.drain()

    transport = factory.latest("remote")
    assert transport.applied_candidates == []
    assert len(orchestrator.link.candidate_queue) == 3

    orchestrator.deliver(offer())
    await orchestrator.drain()

    assert [c.candidate for c in transport.applied_candidates] == [
        ice(n).payload.candidate for n in (1, 2, 3)
    ]
    assert len(orchestrator.link.candidate_queue) == 0
    assert isinstance(sent[-1], AnswerMessage)

    # Late candidates go straight through; repeats are ignored
    orchestrator.deliver(ice(2))
    orchestrator.deliver(ice(4))
    await orchestrator.drain()
    assert [c.candidate for c in transport.applied_candidates][-1] == ice(4).payload.candidate
    assert len(transport.applied_candidates) == 4

    await orchestrator.close()


@pytest.mark.asyncio
async def test_malformed_and_end_of_candidates_do_not_affect_link():
    orchestrator, factory, listener, _ = make_single(initiator=False)
    orchestrator.start()
    orchestrator.deliver(offer())
    await orchestrator.drain()
    assert orchestrator.link.state == PeerState.CONNECTED

    orchestrator.deliver(
        CandidateMessage(
            from_id="remote",
            payload=IceCandidatePayload(candidate="candidate:malformed", sdp_mid="0"),
        )
    )
    orchestrator.deliver(CandidateMessage(from_id="remote", payload=None))
    await orchestrator.drain()

    assert orchestrator.link.state == PeerState.CONNECTED
    assert factory.latest("remote").applied_candidates == []

    await orchestrator.close()


@pytest.mark.asyncio
async def test_offer_received_by_pending_initiator_is_glare():
    orchestrator, _, listener, sent = make_single(initiator=True)
    orchestrator.start()
    await orchestrator.drain()
    assert orchestrator.link.state == PeerState.OFFER_PENDING
    assert isinstance(sent[0], OfferMessage)
    assert sent[0].to == "remote"

    orchestrator.deliver(offer())
    await orchestrator.drain()

    assert orchestrator.link.state == PeerState.OFFER_PENDING
    assert len(listener.errors) == 1

    await orchestrator.close()


@pytest.mark.asyncio
async def test_unexpected_answer_is_dropped():
    orchestrator, _, listener, _ = make_single(initiator=False)
    orchestrator.start()
    orchestrator.deliver(answer())
    await orchestrator.drain()

    assert orchestrator.link.state == PeerState.IDLE
    assert len(listener.errors) == 1

    await orchestrator.close()


@pytest.mark.asyncio
async def test_failure_applying_remote_description_fails_link():
    orchestrator, factory, _, _ = make_single(initiator=False)
    orchestrator.start()
    factory.latest("remote").fail_remote_description = True

    orchestrator.deliver(offer())
    await orchestrator.drain()

    assert orchestrator.link.state == PeerState.FAILED
    await orchestrator.close()


@pytest.mark.asyncio
async def test_degraded_recovers_within_grace_window():
    orchestrator, factory, listener, _ = make_single(
        initiator=False, settings=CallSettings(degraded_grace_seconds=0.2)
    )
    orchestrator.start()
    orchestrator.deliver(offer())
    await orchestrator.drain()

    transport = factory.latest("remote")
    transport.emit_state(TransportState.DISCONNECTED)
    await orchestrator.drain()
    assert orchestrator.link.state == PeerState.DEGRADED

    transport.emit_state(TransportState.CONNECTED)
    await orchestrator.drain()
    assert orchestrator.link.state == PeerState.CONNECTED

    await asyncio.sleep(0.3)
    assert orchestrator.link.state == PeerState.CONNECTED
    # No renegotiation while degraded
    assert transport.answers_created == 1

    await orchestrator.close()


@pytest.mark.asyncio
async def test_degraded_past_grace_window_fails():
    orchestrator, factory, _, _ = make_single(
        initiator=False, settings=CallSettings(degraded_grace_seconds=0.05)
    )
    orchestrator.start()
    orchestrator.deliver(offer())
    await orchestrator.drain()

    factory.latest("remote").emit_state(TransportState.DISCONNECTED)
    await wait_until(lambda: orchestrator.link.state == PeerState.FAILED)

    await orchestrator.close()


@pytest.mark.asyncio
async def test_initiator_restart_uses_fresh_connection():
    orchestrator, factory, _, sent = make_single(initiator=True)
    orchestrator.start()
    await orchestrator.drain()
    first = factory.latest("remote")

    first.emit_state(TransportState.FAILED)
    await orchestrator.drain()
    assert orchestrator.link.state == PeerState.FAILED

    orchestrator.restart()
    await orchestrator.drain()

    second = factory.latest("remote")
    assert second is not first
    assert first.closed
    assert second.offers_created == 1
    assert orchestrator.link.state == PeerState.OFFER_PENDING
    assert [type(m) for m in sent] == [OfferMessage, OfferMessage]

    # Events from the discarded connection are ignored
    first.emit_state(TransportState.CONNECTED)
    await orchestrator.drain()
    assert orchestrator.link.state == PeerState.OFFER_PENDING

    await orchestrator.close()


@pytest.mark.asyncio
async def test_answerer_restart_waits_for_fresh_offer():
    orchestrator, factory, _, sent = make_single(initiator=False)
    orchestrator.start()
    orchestrator.deliver(offer())
    await orchestrator.drain()

    factory.latest("remote").emit_state(TransportState.FAILED)
    await orchestrator.drain()
    orchestrator.restart()
    await orchestrator.drain()

    assert orchestrator.link.state == PeerState.IDLE
    assert len(factory.created["remote"]) == 2

    orchestrator.deliver(offer("second-offer"))
    await orchestrator.drain()
    assert orchestrator.link.state == PeerState.CONNECTED
    assert factory.latest("remote").remote.sdp == "second-offer"

    await orchestrator.close()


@pytest.mark.asyncio
async def test_offer_while_failed_resets_and_answers():
    orchestrator, factory, _, sent = make_single(initiator=False)
    orchestrator.start()
    orchestrator.deliver(offer())
    await orchestrator.drain()
    first = factory.latest("remote")

    first.emit_state(TransportState.FAILED)
    orchestrator.deliver(offer("restart-offer"))
    await orchestrator.drain()

    assert first.closed
    assert factory.latest("remote") is not first
    assert orchestrator.link.state == PeerState.CONNECTED
    assert [type(m) for m in sent] == [AnswerMessage, AnswerMessage]

    await orchestrator.close()


@pytest.mark.asyncio
async def test_renegotiation_offer_while_connected_is_answered():
    orchestrator, factory, _, sent = make_single(initiator=False)
    orchestrator.start()
    orchestrator.deliver(offer())
    await orchestrator.drain()

    orchestrator.deliver(offer("renegotiate"))
    await orchestrator.drain()

    assert len(factory.created["remote"]) == 2
    assert orchestrator.link.state == PeerState.CONNECTED
    assert len(sent) == 2

    await orchestrator.close()


@pytest.mark.asyncio
async def test_local_candidates_and_tracks_are_forwarded():
    orchestrator, factory, listener, sent = make_single(initiator=False, auto_connect=False)
    orchestrator.start()
    transport = factory.latest("remote")

    payload = IceCandidatePayload(candidate="candidate:9 1 udp 1 10.0.0.9 9 typ host", sdp_mid="0")
    transport.emit_candidate(payload)
    track = object()
    transport.emit_track(track)
    await orchestrator.drain()

    assert isinstance(sent[0], CandidateMessage)
    assert sent[0].to == "remote"
    assert sent[0].from_id == "local"
    assert sent[0].payload == payload
    assert listener.tracks == [track]
    assert orchestrator.link.remote_tracks == [track]

    await orchestrator.close()


@pytest.mark.asyncio
async def test_closed_link_accepts_nothing():
    orchestrator, factory, listener, sent = make_single(initiator=True, auto_connect=False)
    orchestrator.start()
    await orchestrator.drain()

    await orchestrator.close()
    assert orchestrator.link.state == PeerState.CLOSED
    assert factory.latest("remote").closed

    orchestrator.deliver(answer())
    orchestrator.restart()
    factory.latest("remote").emit_state(TransportState.CONNECTED)
    await asyncio.sleep(0.05)

    assert orchestrator.link.state == PeerState.CLOSED
    assert listener.transitions[-1] == (PeerState.OFFER_PENDING, PeerState.CLOSED)
    assert len(sent) == 1
