"""
Server side of the per-room signaling channel.

The registry tracks who is in which room, tells a newcomer who is already
there, announces joins and leaves, and relays peer messages. It never looks
inside offers, answers or candidates.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from ...core.config import MAX_PARTICIPANTS
from ...core.errors import CapacityError, SignalingError
from ...schemas.signaling import (
    MEMBERSHIP_TYPES,
    ParticipantJoined,
    ParticipantLeft,
    dump_signal,
    parse_signal,
)

logger = logging.getLogger(__name__)

Deliver = Callable[[dict], Awaitable[None]]


@dataclass
class RoomMember:
    id: str
    name: str
    address: Optional[str]
    is_host: bool
    deliver: Deliver

    def announcement(self, existing: bool) -> dict:
        return dump_signal(
            ParticipantJoined(
                id=self.id,
                name=self.name,
                address=self.address,
                is_host=self.is_host,
                existing=existing,
            )
        )


class RoomRegistry:
    """
    In-process room membership and message relay.

    The first member of a room is its host. Host status is not handed over
    when the host leaves.
    """

    def __init__(self, max_participants: int = MAX_PARTICIPANTS):
        self.max_participants = max_participants
        self._rooms: Dict[str, Dict[str, RoomMember]] = {}
        self._lock = asyncio.Lock()

    def roster(self, room_id: str) -> List[RoomMember]:
        return list(self._rooms.get(room_id, {}).values())

    def rooms(self) -> List[str]:
        return list(self._rooms)

    async def join(
        self,
        room_id: str,
        member_id: str,
        name: str,
        deliver: Deliver,
        address: Optional[str] = None,
        admitted: Optional[Callable[[RoomMember], Awaitable[None]]] = None,
    ) -> RoomMember:
        """
        Add a member and exchange announcements.

        A second join with the same id replaces the earlier entry when it comes
        from a different address and is ignored when it comes from the same one.
        `admitted` runs before the roster is delivered to the newcomer.

        Raises:
            CapacityError: if the room is full
        """
        async with self._lock:
            members = self._rooms.setdefault(room_id, {})
            previous = members.get(member_id)

            if previous is not None and previous.address == address:
                logger.info(f"[Rooms] {member_id} re-joined {room_id} from the same address, ignored")
                return previous

            if previous is None and len(members) >= self.max_participants:
                if not members:
                    del self._rooms[room_id]
                raise CapacityError(
                    f"Room {room_id} is full ({self.max_participants} participants)"
                )

            is_host = previous.is_host if previous is not None else not members
            member = RoomMember(
                id=member_id, name=name, address=address, is_host=is_host, deliver=deliver
            )
            others = [m for m in members.values() if m.id != member_id]
            members[member_id] = member

        logger.info(
            f"[Rooms] 👋 {name} ({member_id}) joined {room_id}"
            f"{' as host' if is_host else ''} ({len(others) + 1} present)"
        )
        if admitted:
            await admitted(member)
        for other in others:
            await self._deliver(member, other.announcement(existing=True))
        for other in others:
            await self._deliver(other, member.announcement(existing=False))
        return member

    async def leave(self, room_id: str, member_id: str, address: Optional[str] = None):
        """Remove a member. With `address`, only the entry from that address is removed."""
        async with self._lock:
            members = self._rooms.get(room_id, {})
            member = members.get(member_id)
            if member is None or (address is not None and member.address != address):
                return
            del members[member_id]
            remaining = list(members.values())
            if not members:
                self._rooms.pop(room_id, None)

        logger.info(f"[Rooms] {member_id} left {room_id} ({len(remaining)} remaining)")
        notice = dump_signal(ParticipantLeft(id=member_id))
        for other in remaining:
            await self._deliver(other, notice)

    async def relay(self, room_id: str, sender_id: str, raw, address: Optional[str] = None) -> None:
        """
        Forward one client message. Addressed messages go to their target only,
        the rest to everyone else in the room. `from` is always the sender.

        With `address`, the sender must be the entry joined from that address;
        a connection replaced by a re-join can no longer speak for the member.

        Raises:
            SignalingError: unknown or replaced sender, malformed message,
                membership message, or unknown target
        """
        members = self._rooms.get(room_id, {})
        sender = members.get(sender_id)
        if sender is None:
            raise SignalingError(f"{sender_id} is not in room {room_id}", peer_id=sender_id)
        if address is not None and sender.address != address:
            raise SignalingError(
                f"Connection {address} of {sender_id} was replaced by a newer join",
                peer_id=sender_id,
            )

        message = parse_signal(raw)
        if message.type in MEMBERSHIP_TYPES:
            raise SignalingError(f"Clients may not send '{message.type}'", peer_id=sender_id)

        data = dump_signal(message.model_copy(update={"from_id": sender_id}))
        target_id = getattr(message, "to", None)

        if target_id:
            target = members.get(target_id)
            if target is None:
                raise SignalingError(
                    f"'{message.type}' addressed to {target_id}, who is not in {room_id}",
                    peer_id=target_id,
                )
            await self._deliver(target, data)
            return

        for member in list(members.values()):
            if member.id != sender_id:
                await self._deliver(member, data)

    async def _deliver(self, member: RoomMember, data: dict):
        try:
            await member.deliver(data)
        except Exception as e:
            logger.warning(f"[Rooms] Delivery of '{data.get('type')}' to {member.id} failed: {e}")
