import pytest

from meshcall.core.errors import CapacityError, SignalingError
from meshcall.schemas.call import Participant
from meshcall.services.signaling.channel import InMemorySignalingHub
from meshcall.services.signaling.rooms import RoomRegistry


class Inbox:
    def __init__(self):
        self.frames = []

    async def __call__(self, data: dict):
        self.frames.append(data)

    def types(self):
        return [f["type"] for f in self.frames]


def offer(to=None, sender="spoofed"):
    data = {"type": "signal:offer", "from": sender, "payload": {"type": "offer", "sdp": "v=0"}}
    if to:
        data["to"] = to
    return data


@pytest.mark.asyncio
async def test_first_member_is_host_and_roster_is_exchanged():
    rooms = RoomRegistry()
    ann, ben = Inbox(), Inbox()

    first = await rooms.join("r1", "ann", "Ann", ann, address="a1")
    second = await rooms.join("r1", "ben", "Ben", ben, address="b1")

    assert first.is_host and not second.is_host
    assert ben.frames == [
        {"type": "participant:joined", "id": "ann", "name": "Ann", "address": "a1", "is_host": True, "existing": True}
    ]
    assert ann.frames == [
        {"type": "participant:joined", "id": "ben", "name": "Ben", "address": "b1", "is_host": False, "existing": False}
    ]
    assert [m.id for m in rooms.roster("r1")] == ["ann", "ben"]


@pytest.mark.asyncio
async def test_admitted_runs_before_roster():
    rooms = RoomRegistry()
    await rooms.join("r1", "ann", "Ann", Inbox())
    order = []

    async def deliver(data):
        order.append(data["type"])

    async def admitted(member):
        order.append("welcome")

    await rooms.join("r1", "ben", "Ben", deliver, admitted=admitted)
    assert order == ["welcome", "participant:joined"]


@pytest.mark.asyncio
async def test_full_room_rejects_newcomer():
    rooms = RoomRegistry(max_participants=2)
    await rooms.join("r1", "ann", "Ann", Inbox())
    await rooms.join("r1", "ben", "Ben", Inbox())

    with pytest.raises(CapacityError):
        await rooms.join("r1", "cat", "Cat", Inbox())
    assert len(rooms.roster("r1")) == 2


@pytest.mark.asyncio
async def test_rejoin_same_address_ignored_other_address_replaces():
    rooms = RoomRegistry(max_participants=2)
    ann, ben_old, ben_new = Inbox(), Inbox(), Inbox()
    await rooms.join("r1", "ann", "Ann", ann, address="a1")
    await rooms.join("r1", "ben", "Ben", ben_old, address="b1")

    await rooms.join("r1", "ben", "Ben", ben_old, address="b1")
    assert ann.types() == ["participant:joined"]

    await rooms.join("r1", "ben", "Ben", ben_new, address="b2")
    assert ann.types() == ["participant:joined", "participant:joined"]
    assert ann.frames[-1]["address"] == "b2"

    # The stale connection going away does not remove the new entry
    await rooms.leave("r1", "ben", address="b1")
    assert [m.address for m in rooms.roster("r1")] == ["a1", "b2"]


@pytest.mark.asyncio
async def test_leave_is_announced_and_empty_room_dropped():
    rooms = RoomRegistry()
    ann = Inbox()
    await rooms.join("r1", "ann", "Ann", ann)
    await rooms.join("r1", "ben", "Ben", Inbox())

    await rooms.leave("r1", "ben")
    assert ann.frames[-1] == {"type": "participant:left", "id": "ben"}

    await rooms.leave("r1", "ann")
    assert rooms.rooms() == []


@pytest.mark.asyncio
async def test_relay_addressed_and_broadcast():
    rooms = RoomRegistry()
    ann, ben, cat = Inbox(), Inbox(), Inbox()
    for member_id, inbox in (("ann", ann), ("ben", ben), ("cat", cat)):
        await rooms.join("r1", member_id, member_id.title(), inbox)
    for inbox in (ann, ben, cat):
        inbox.frames.clear()

    await rooms.relay("r1", "ann", offer(to="ben"))
    assert ben.frames[0]["from"] == "ann"
    assert cat.frames == []
    assert ann.frames == []

    await rooms.relay(
        "r1", "ann", {"type": "transcript:fragment", "speaker_label": "Ann", "text": "hi", "produced_at_ms": 1}
    )
    assert ben.types()[-1] == cat.types()[-1] == "transcript:fragment"
    assert ann.frames == []


@pytest.mark.asyncio
async def test_relay_rejections():
    rooms = RoomRegistry()
    await rooms.join("r1", "ann", "Ann", Inbox())

    with pytest.raises(SignalingError):
        await rooms.relay("r1", "ann", offer(to="nobody"))
    with pytest.raises(SignalingError):
        await rooms.relay("r1", "ann", {"type": "participant:left", "id": "ann"})
    with pytest.raises(SignalingError):
        await rooms.relay("r1", "stranger", offer())
    with pytest.raises(SignalingError):
        await rooms.relay("r1", "ann", "{broken")


@pytest.mark.asyncio
async def test_failed_delivery_does_not_stop_relay():
    rooms = RoomRegistry()
    ben = Inbox()

    async def broken(data):
        raise RuntimeError("socket gone")

    await rooms.join("r1", "ann", "Ann", Inbox())
    await rooms.join("r1", "zed", "Zed", broken)
    await rooms.join("r1", "ben", "Ben", ben)

    await rooms.relay("r1", "ann", {"type": "participant:media", "is_muted": True})
    assert ben.types()[-1] == "participant:media"


@pytest.mark.asyncio
async def test_in_memory_channel_round_trip():
    hub = InMemorySignalingHub(max_participants=2)
    ann_channel, ben_channel = hub.channel("a1"), hub.channel("b1")

    ann = await ann_channel.join("r1", Participant(user_id="ann", display_name="Ann"))
    ben = await ben_channel.join("r1", Participant(user_id="ben", display_name="Ben"))
    assert ann.is_host and not ben.is_host
    assert ben.peer_address == "b1"

    assert (await ann_channel.receive())["id"] == "ben"
    assert (await ben_channel.receive())["id"] == "ann"

    with pytest.raises(CapacityError):
        await hub.channel().join("r1", Participant(user_id="cat", display_name="Cat"))

    await ben_channel.leave()
    assert await ben_channel.receive() is None
    assert (await ann_channel.receive()) == {"type": "participant:left", "id": "ben"}

    with pytest.raises(SignalingError):
        await ben_channel.send(ann)


@pytest.mark.asyncio
async def test_replaced_connection_cannot_relay():
    rooms = RoomRegistry()
    ann, ben = Inbox(), Inbox()
    await rooms.join("r1", "ann", "Ann", ann, address="a1")
    await rooms.join("r1", "ben", "Ben", ben, address="b1")
    await rooms.join("r1", "ann", "Ann", Inbox(), address="a2")
    ben.frames.clear()

    with pytest.raises(SignalingError):
        await rooms.relay("r1", "ann", offer(to="ben"), address="a1")
    assert ben.frames == []

    await rooms.relay("r1", "ann", offer(to="ben"), address="a2")
    assert ben.frames[0]["from"] == "ann"
