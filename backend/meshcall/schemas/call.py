from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class Participant(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    display_name: str
    peer_address: Optional[str] = None  # e.g. relay connection id
    is_host: bool = False
    is_muted: bool = False
    is_video_off: bool = False


class QualityPreset(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    width: int
    height: int
    frame_rate: int


DEFAULT_PRESET = QualityPreset(name="default", width=1280, height=720, frame_rate=30)
MEDIUM_PRESET = QualityPreset(name="medium", width=640, height=480, frame_rate=30)
LOW_PRESET = QualityPreset(name="low", width=480, height=360, frame_rate=24)


class HealthRating(str, Enum):
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class HealthSample(BaseModel):
    """One statistics sample of a peer connection."""

    model_config = ConfigDict(frozen=True)

    loss_ratio: float
    jitter_ms: float
    rating: HealthRating
    # Cumulative counters, kept to compute the next interval's loss ratio
    packets_lost: int = 0
    packets_received: int = 0
    taken_at: float = 0.0


class TranscriptSegment(BaseModel):
    model_config = ConfigDict(frozen=True)

    speaker_id: Optional[str] = None
    speaker_label: str
    text: str
    produced_at_ms: int


class InterimUtterance(BaseModel):
    """Live "speaking now" text of the local user. Never committed."""

    model_config = ConfigDict(frozen=True)

    speaker_id: Optional[str] = None
    text: str
    updated_at_ms: int


class RecordingStatus(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    FINALIZING = "finalizing"
