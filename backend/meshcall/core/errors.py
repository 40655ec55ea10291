"""Error taxonomy of the call coordinator."""

from typing import Optional


class CallError(Exception):
    """Base class for every error the coordinator raises or surfaces."""

    code = "CALL_ERROR"

    def __init__(self, message: str, peer_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.peer_id = peer_id

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "peer_id": self.peer_id}


class CapacityError(CallError):
    """Join rejected because the room is at its participant cap."""

    code = "ROOM_FULL"


class SignalingError(CallError):
    """Malformed or out-of-order signaling message."""

    code = "SIGNALING_ERROR"


class PeerConnectionError(CallError):
    """ICE/transport failure on one peer link."""

    code = "CONNECTION_FAILED"


class MediaError(CallError):
    """No usable local media tracks."""

    code = "MEDIA_UNAVAILABLE"


class RecordingError(CallError):
    """Finished recording could not be handed to storage."""

    code = "RECORDING_UPLOAD_FAILED"
