"""
Signaling message schemas.

Every message exchanged over a room channel is one variant of SignalMessage,
tagged by its `type` field. Anything that does not validate is rejected at the
channel boundary with a SignalingError.
"""

import json
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from ..core.errors import SignalingError


class SessionDescription(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["offer", "answer"]
    sdp: str


class IceCandidatePayload(BaseModel):
    # Browser clients send camelCase keys
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    candidate: str
    sdp_mid: Optional[str] = Field(default=None, alias="sdpMid")
    sdp_m_line_index: Optional[int] = Field(default=None, alias="sdpMLineIndex")

    @field_validator("candidate")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("empty candidate line")
        return value

    def key(self) -> tuple:
        return (self.candidate.strip(), self.sdp_mid, self.sdp_m_line_index)


class _RoutedMessage(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_id: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None


class ParticipantJoined(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["participant:joined"] = "participant:joined"
    id: str
    name: str
    address: Optional[str] = None
    is_host: bool = False
    # True when the entry is part of the roster sent to a newcomer
    existing: bool = False


class ParticipantLeft(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["participant:left"] = "participant:left"
    id: str


class OfferMessage(_RoutedMessage):
    type: Literal["signal:offer"] = "signal:offer"
    payload: SessionDescription

    @field_validator("payload")
    @classmethod
    def _is_offer(cls, value: SessionDescription) -> SessionDescription:
        if value.type != "offer":
            raise ValueError("offer message must carry an offer description")
        return value


class AnswerMessage(_RoutedMessage):
    type: Literal["signal:answer"] = "signal:answer"
    payload: SessionDescription

    @field_validator("payload")
    @classmethod
    def _is_answer(cls, value: SessionDescription) -> SessionDescription:
        if value.type != "answer":
            raise ValueError("answer message must carry an answer description")
        return value


class CandidateMessage(_RoutedMessage):
    type: Literal["signal:candidate"] = "signal:candidate"
    payload: Optional[IceCandidatePayload] = None  # None = end of candidates


class TranscriptFragmentMessage(_RoutedMessage):
    type: Literal["transcript:fragment"] = "transcript:fragment"
    speaker_id: Optional[str] = None
    speaker_label: str
    text: str
    produced_at_ms: int


class MediaStateMessage(_RoutedMessage):
    type: Literal["participant:media"] = "participant:media"
    is_muted: bool = False
    is_video_off: bool = False


SignalMessage = Annotated[
    Union[
        ParticipantJoined,
        ParticipantLeft,
        OfferMessage,
        AnswerMessage,
        CandidateMessage,
        TranscriptFragmentMessage,
        MediaStateMessage,
    ],
    Field(discriminator="type"),
]

PEER_SIGNAL_TYPES = ("signal:offer", "signal:answer", "signal:candidate")
MEMBERSHIP_TYPES = ("participant:joined", "participant:left")

_signal_adapter = TypeAdapter(SignalMessage)


def parse_signal(raw: Any) -> SignalMessage:
    """
    Validate one inbound message.

    Args:
        raw: Decoded JSON object, or the JSON text itself

    Raises:
        SignalingError: if the message is not valid JSON or matches no variant
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise SignalingError(f"Signaling frame is not JSON: {e}") from e

    if not isinstance(raw, dict):
        raise SignalingError(f"Signaling frame must be an object, got {type(raw).__name__}")

    try:
        return _signal_adapter.validate_python(raw)
    except ValidationError as e:
        raise SignalingError(
            f"Rejected '{raw.get('type', '?')}' message ({e.error_count()} validation error(s))"
        ) from e


def dump_signal(message: BaseModel) -> dict:
    """Serialize a message for the wire (aliases applied, empty routing omitted)."""
    data = message.model_dump(by_alias=True, exclude_none=True)
    if isinstance(message, CandidateMessage) and message.payload is None:
        data["payload"] = None
    return data
