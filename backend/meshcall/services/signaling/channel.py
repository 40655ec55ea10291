"""
Client side of the per-room signaling channel.

A channel delivers outbound messages to the room relay and yields inbound
frames as they arrive. Frames are returned undecoded beyond JSON; validation
happens in the coordinator's receive loop.
"""

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Optional
from urllib.parse import urlencode

import websockets
from pydantic import BaseModel

from ...core.config import MAX_PARTICIPANTS
from ...core.errors import CapacityError, SignalingError
from ...schemas.call import Participant
from ...schemas.signaling import dump_signal
from .rooms import RoomRegistry

logger = logging.getLogger(__name__)


class SignalingChannel(ABC):
    @abstractmethod
    async def join(self, room_id: str, participant: Participant) -> Participant:
        """
        Enter a room.

        Returns:
            The participant as admitted by the room (host flag and address set)

        Raises:
            CapacityError: if the room is full
        """

    @abstractmethod
    async def send(self, message: BaseModel):
        """Send one message to the room relay."""

    @abstractmethod
    async def receive(self) -> Optional[Any]:
        """Next inbound frame, or None once the channel is closed."""

    @abstractmethod
    async def leave(self):
        """Leave the room and close the channel. Safe to call twice."""


class InMemorySignalingHub:
    """Rooms shared by every channel created from this hub, within one process."""

    def __init__(self, max_participants: int = MAX_PARTICIPANTS, registry: Optional[RoomRegistry] = None):
        self.registry = registry or RoomRegistry(max_participants=max_participants)

    def channel(self, address: Optional[str] = None) -> "InMemorySignalingChannel":
        return InMemorySignalingChannel(self.registry, address=address)


class InMemorySignalingChannel(SignalingChannel):
    def __init__(self, registry: RoomRegistry, address: Optional[str] = None):
        self.registry = registry
        self.address = address or uuid.uuid4().hex
        self.room_id: Optional[str] = None
        self.member_id: Optional[str] = None
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._closed = False

    async def _deliver(self, data: dict):
        if not self._closed:
            self._inbox.put_nowait(data)

    async def join(self, room_id: str, participant: Participant) -> Participant:
        member = await self.registry.join(
            room_id,
            participant.user_id,
            participant.display_name,
            self._deliver,
            address=self.address,
        )
        self.room_id = room_id
        self.member_id = participant.user_id
        return participant.model_copy(update={"is_host": member.is_host, "peer_address": self.address})

    async def send(self, message: BaseModel):
        if self._closed or self.room_id is None:
            raise SignalingError("Signaling channel is not open")
        await self.registry.relay(
            self.room_id, self.member_id, dump_signal(message), address=self.address
        )

    async def receive(self) -> Optional[Any]:
        if self._closed and self._inbox.empty():
            return None
        return await self._inbox.get()

    async def leave(self):
        if self._closed:
            return
        self._closed = True
        if self.room_id is not None:
            await self.registry.leave(self.room_id, self.member_id, address=self.address)
        self._inbox.put_nowait(None)


class WebSocketSignalingChannel(SignalingChannel):
    """
    Channel to a remote relay at `{base_url}/ws/rooms/{room_id}`.

    The relay answers the connection with a `room:welcome` frame (host flag)
    or a `room:error` frame (e.g. ROOM_FULL) before anything else.
    """

    def __init__(self, base_url: str, address: Optional[str] = None):
        self.base_url = base_url.rstrip("/")
        self.address = address or uuid.uuid4().hex
        self._ws = None

    async def join(self, room_id: str, participant: Participant) -> Participant:
        query = urlencode(
            {"id": participant.user_id, "name": participant.display_name, "address": self.address}
        )
        url = f"{self.base_url}/ws/rooms/{room_id}?{query}"
        self._ws = await websockets.connect(url)
        logger.info(f"[Signaling] 🔌 Connected to {url}")

        first = json.loads(await self._ws.recv())
        if first.get("type") == "room:error":
            await self._ws.close()
            self._ws = None
            if first.get("code") == CapacityError.code:
                raise CapacityError(first.get("message", f"Room {room_id} is full"))
            raise SignalingError(first.get("message", "Join rejected"))
        if first.get("type") != "room:welcome":
            raise SignalingError(f"Expected room:welcome, got '{first.get('type')}'")

        return participant.model_copy(
            update={"is_host": bool(first.get("is_host")), "peer_address": self.address}
        )

    async def send(self, message: BaseModel):
        if self._ws is None:
            raise SignalingError("Signaling channel is not open")
        try:
            await self._ws.send(json.dumps(dump_signal(message)))
        except websockets.exceptions.ConnectionClosed as e:
            raise SignalingError(f"Signaling connection closed: {e}") from e

    async def receive(self) -> Optional[Any]:
        while self._ws is not None:
            try:
                raw = await self._ws.recv()
            except websockets.exceptions.ConnectionClosed:
                logger.info("[Signaling] Connection closed by relay")
                return None
            try:
                data = json.loads(raw)
            except ValueError:
                # Let the receive loop reject it
                return raw
            if isinstance(data, dict) and str(data.get("type", "")).startswith("room:"):
                logger.warning(f"[Signaling] Relay notice: {data}")
                continue
            return data
        return None

    async def leave(self):
        if self._ws is not None:
            ws, self._ws = self._ws, None
            await ws.close()
