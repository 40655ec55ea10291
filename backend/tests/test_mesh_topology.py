import pytest

from fakes import FakeTransportFactory, wait_until
from meshcall.core.config import CallSettings
from meshcall.core.errors import CapacityError, SignalingError
from meshcall.schemas.call import Participant
from meshcall.schemas.signaling import (
    AnswerMessage,
    CandidateMessage,
    IceCandidatePayload,
    OfferMessage,
    ParticipantJoined,
    SessionDescription,
)
from meshcall.services.media.transport import TransportState
from meshcall.services.mesh.topology import MeshTopologyManager
from meshcall.services.signaling.link import PeerState
from meshcall.services.signaling.orchestrator import PeerLinkListener


class LinkEvents(PeerLinkListener):
    def __init__(self):
        self.added = []
        self.removed = []

    def on_link_added(self, link):
        self.added.append(link.peer_id)

    def on_link_removed(self, link):
        self.removed.append(link.peer_id)


def make_mesh(local_id="me", is_host=False, settings=None, auto_connect=True):
    factory = FakeTransportFactory(auto_connect=auto_connect)
    sent = []

    async def send(message):
        sent.append(message)

    mesh = MeshTopologyManager(
        Participant(user_id=local_id, display_name="Me", is_host=is_host),
        factory,
        send,
        settings=settings or CallSettings(),
    )
    events = LinkEvents()
    mesh.add_listener(events)
    return mesh, factory, sent, events


def joined(peer_id, address=None, is_host=False, existing=False):
    return ParticipantJoined(
        id=peer_id, name=peer_id.title(), address=address or f"conn-{peer_id}", is_host=is_host, existing=existing
    )


def offer_from(peer_id):
    return OfferMessage(
        from_id=peer_id, to="me", payload=SessionDescription(type="offer", sdp=f"offer-{peer_id}")
    )


@pytest.mark.asyncio
async def test_links_track_participants():
    mesh, factory, _, events = make_mesh()

    await mesh.handle_joined(joined("alice", existing=True))
    await mesh.handle_joined(joined("bob", existing=True))
    assert mesh.participant_count == 3
    assert set(mesh.links) == {"alice", "bob"}
    assert events.added == ["alice", "bob"]

    await mesh.handle_left("alice")
    assert set(mesh.links) == {"bob"}
    assert mesh.participant_count == 2
    assert events.removed == ["alice"]
    assert factory.latest("alice").closed

    await mesh.close_all()


@pytest.mark.asyncio
async def test_own_join_is_ignored():
    mesh, _, _, _ = make_mesh()
    assert await mesh.handle_joined(joined("me")) is None
    assert mesh.links == {}


@pytest.mark.asyncio
async def test_roles_follow_join_order_and_host():
    mesh, _, sent, _ = make_mesh()

    roster_entry = await mesh.handle_joined(joined("early", existing=True))
    newcomer = await mesh.handle_joined(joined("late", existing=False))
    host = await mesh.handle_joined(joined("host", is_host=True, existing=False))
    await mesh.drain()

    assert not roster_entry.is_initiator
    assert newcomer.is_initiator
    assert not host.is_initiator
    assert [m.to for m in sent if isinstance(m, OfferMessage)] == ["late"]

    await mesh.close_all()


@pytest.mark.asyncio
async def test_local_host_offers_to_everyone():
    mesh, _, sent, _ = make_mesh(is_host=True)
    await mesh.handle_joined(joined("alice", existing=False))
    await mesh.handle_joined(joined("bob", existing=False))
    await mesh.drain()

    assert sorted(m.to for m in sent if isinstance(m, OfferMessage)) == ["alice", "bob"]
    await mesh.close_all()


@pytest.mark.asyncio
async def test_capacity_is_enforced():
    mesh, _, _, _ = make_mesh(settings=CallSettings(max_participants=3))
    await mesh.handle_joined(joined("alice"))
    await mesh.handle_joined(joined("bob"))

    with pytest.raises(CapacityError) as excinfo:
        await mesh.handle_joined(joined("carol"))

    assert excinfo.value.code == "ROOM_FULL"
    assert excinfo.value.peer_id == "carol"
    assert "carol" not in mesh.links
    assert mesh.participant_count == 3

    await mesh.close_all()


@pytest.mark.asyncio
async def test_duplicate_join_same_address_is_ignored():
    mesh, factory, _, events = make_mesh()
    first = await mesh.handle_joined(joined("alice", address="conn-1"))
    again = await mesh.handle_joined(joined("alice", address="conn-1"))

    assert again is first
    assert len(factory.created["alice"]) == 1
    assert events.added == ["alice"]

    await mesh.close_all()


@pytest.mark.asyncio
async def test_join_from_new_address_replaces_link():
    mesh, factory, _, events = make_mesh(settings=CallSettings(max_participants=2))
    first = await mesh.handle_joined(joined("alice", address="conn-1"))
    second = await mesh.handle_joined(joined("alice", address="conn-2"))

    assert second is not first
    assert first.is_closed
    assert factory.created["alice"][0].closed
    assert mesh.link("alice").participant.peer_address == "conn-2"
    assert events.removed == ["alice"]
    assert mesh.participant_count == 2

    await mesh.close_all()


@pytest.mark.asyncio
async def test_early_messages_are_replayed_in_order():
    mesh, factory, sent, _ = make_mesh(auto_connect=False)
    candidate = CandidateMessage(
        from_id="alice",
        to="me",
        payload=IceCandidatePayload(candidate="candidate:1 1 udp 1 10.0.0.1 9 typ host", sdp_mid="0"),
    )

    mesh.route(candidate)
    mesh.route(offer_from("alice"))
    assert mesh.links == {}

    await mesh.handle_joined(joined("alice", existing=True))
    await mesh.drain()

    transport = factory.latest("alice")
    assert transport.remote.sdp == "offer-alice"
    assert transport.applied_candidates == [candidate.payload]
    assert isinstance(sent[-1], AnswerMessage)

    await mesh.close_all()


@pytest.mark.asyncio
async def test_early_buffer_is_bounded():
    mesh, _, _, _ = make_mesh(settings=CallSettings(early_message_limit=2))
    mesh.route(offer_from("ghost"))
    mesh.route(offer_from("ghost"))

    with pytest.raises(SignalingError):
        mesh.route(offer_from("ghost"))


@pytest.mark.asyncio
async def test_messages_from_departed_peer_are_rejected():
    mesh, _, _, _ = make_mesh()
    await mesh.handle_joined(joined("alice"))
    await mesh.handle_left("alice")

    with pytest.raises(SignalingError):
        mesh.route(offer_from("alice"))

    # A fresh join clears the departed mark
    await mesh.handle_joined(joined("alice"))
    mesh.route(offer_from("alice"))
    await mesh.close_all()


@pytest.mark.asyncio
async def test_misrouted_messages_are_rejected():
    mesh, _, _, _ = make_mesh()

    with pytest.raises(SignalingError):
        mesh.route(
            OfferMessage(from_id="alice", to="someone-else", payload=SessionDescription(type="offer", sdp="x"))
        )
    with pytest.raises(SignalingError):
        mesh.route(OfferMessage(to="me", payload=SessionDescription(type="offer", sdp="x")))


@pytest.mark.asyncio
async def test_close_all_closes_every_link():
    mesh, factory, _, events = make_mesh()
    links = [await mesh.handle_joined(joined(peer, existing=False)) for peer in ("a", "b", "c")]
    await mesh.drain()

    await mesh.close_all()

    assert all(link.state == PeerState.CLOSED for link in links)
    assert all(factory.latest(peer).closed for peer in ("a", "b", "c"))
    assert sorted(events.removed) == ["a", "b", "c"]
    assert mesh.links == {}

    # Nothing is accepted once closed
    assert await mesh.handle_joined(joined("d")) is None
    mesh.route(offer_from("d"))


@pytest.mark.asyncio
async def test_request_restart_renegotiates_failed_link():
    mesh, factory, sent, _ = make_mesh(is_host=True)
    link = await mesh.handle_joined(joined("alice"))
    await mesh.drain()

    factory.latest("alice").emit_state(TransportState.FAILED)
    await wait_until(lambda: link.state == PeerState.FAILED)

    mesh.request_restart("alice")
    await mesh.drain()

    assert len(factory.created["alice"]) == 2
    assert link.state == PeerState.OFFER_PENDING
    assert len([m for m in sent if isinstance(m, OfferMessage)]) == 2

    await mesh.close_all()


@pytest.mark.asyncio
async def test_departed_mark_expires():
    mesh, _, _, _ = make_mesh(settings=CallSettings(departed_ttl_seconds=0.0))
    await mesh.handle_joined(joined("alice"))
    await mesh.handle_left("alice")

    # Held as an early message again instead of being refused
    mesh.route(offer_from("alice"))
    assert "alice" not in mesh.links


@pytest.mark.asyncio
async def test_unknown_senders_are_capped():
    mesh, _, _, _ = make_mesh(settings=CallSettings(max_participants=3))
    mesh.route(offer_from("ghost-1"))
    mesh.route(offer_from("ghost-2"))
    # A known unknown sender may still add to its own buffer
    mesh.route(offer_from("ghost-1"))

    with pytest.raises(SignalingError):
        mesh.route(offer_from("ghost-3"))


@pytest.mark.asyncio
async def test_halt_stops_links_but_keeps_connections_open():
    mesh, factory, _, events = make_mesh()
    link = await mesh.handle_joined(joined("alice", existing=False))
    await mesh.drain()

    mesh.halt()

    assert link.state == PeerState.CLOSED
    assert events.removed == ["alice"]
    assert not factory.latest("alice").closed

    # A late transport failure is ignored
    factory.latest("alice").emit_state(TransportState.FAILED)
    await mesh.close_all()

    assert link.state == PeerState.CLOSED
    assert factory.latest("alice").closed
    assert len(factory.created["alice"]) == 1
