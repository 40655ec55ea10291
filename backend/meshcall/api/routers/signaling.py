from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from typing import Optional
import logging
import uuid

from ...core.errors import CapacityError, SignalingError
from ...services.signaling.rooms import RoomMember, RoomRegistry

router = APIRouter()
logger = logging.getLogger(__name__)

# Rooms of this server process
registry = RoomRegistry()


def get_registry() -> RoomRegistry:
    return registry


@router.websocket("/ws/rooms/{room_id}")
async def websocket_room(
    websocket: WebSocket,
    room_id: str,
    member_id: str = Query(..., alias="id"),
    name: Optional[str] = None,
    address: Optional[str] = None,
    rooms: RoomRegistry = Depends(get_registry),
):
    """
    Signaling relay for one room member.

    The first frame is `room:welcome` (with the host flag) or `room:error`
    (then the socket is closed). After that the member receives membership
    announcements and relayed peer messages, and every frame it sends is
    relayed to the room.
    """
    await websocket.accept()
    address = address or uuid.uuid4().hex

    async def deliver(data: dict):
        await websocket.send_json(data)

    async def welcome(member: RoomMember):
        await websocket.send_json(
            {"type": "room:welcome", "room_id": room_id, "id": member.id, "is_host": member.is_host}
        )

    try:
        await rooms.join(room_id, member_id, name or member_id, deliver, address=address, admitted=welcome)
    except CapacityError as e:
        logger.warning(f"[Relay] Join of {member_id} to {room_id} rejected: {e.message}")
        await websocket.send_json({"type": "room:error", **e.to_dict()})
        await websocket.close()
        return

    try:
        while True:
            text = await websocket.receive_text()
            try:
                await rooms.relay(room_id, member_id, text, address=address)
            except SignalingError as e:
                logger.warning(f"[Relay] Dropped message from {member_id} in {room_id}: {e.message}")
                await websocket.send_json({"type": "room:error", **e.to_dict()})
    except WebSocketDisconnect:
        logger.info(f"[Relay] {member_id} disconnected from {room_id}")
    except Exception as e:
        logger.error(f"[Relay] Error in receiver loop for {member_id} in {room_id}: {e}")
    finally:
        await rooms.leave(room_id, member_id, address=address)


@router.get("/api/rooms/{room_id}")
async def get_room(room_id: str, rooms: RoomRegistry = Depends(get_registry)):
    """Current members of a room."""
    return {
        "room_id": room_id,
        "participants": [
            {"id": m.id, "name": m.name, "is_host": m.is_host} for m in rooms.roster(room_id)
        ],
    }
