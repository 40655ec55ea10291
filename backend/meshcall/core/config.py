"""
Runtime configuration for the call coordinator.

Values are read from the environment (a local .env is honoured) and collected
into CallSettings so components and tests can override individual thresholds.
"""

import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

load_dotenv()

# Mesh
MAX_PARTICIPANTS = int(os.getenv("MESH_MAX_PARTICIPANTS", "8"))
EARLY_MESSAGE_LIMIT = int(os.getenv("EARLY_MESSAGE_LIMIT", "32"))
# Messages from a departed peer are refused for this long
DEPARTED_TTL_SECONDS = float(os.getenv("DEPARTED_TTL_SECONDS", "60.0"))

# Reconnection
RECONNECT_MAX_ATTEMPTS = int(os.getenv("RECONNECT_MAX_ATTEMPTS", "3"))
RECONNECT_DELAY_SECONDS = float(os.getenv("RECONNECT_DELAY_SECONDS", "2.0"))
DEGRADED_GRACE_SECONDS = float(os.getenv("DEGRADED_GRACE_SECONDS", "10.0"))

# Adaptive quality
QUALITY_SAMPLE_INTERVAL_SECONDS = float(
    os.getenv("QUALITY_SAMPLE_INTERVAL_SECONDS", "5.0")
)

# Dominant speaker (energy on a 0-255 scale)
SPEAKER_SAMPLE_INTERVAL_MS = int(os.getenv("SPEAKER_SAMPLE_INTERVAL_MS", "200"))
SPEAKER_ENERGY_THRESHOLD = float(os.getenv("SPEAKER_ENERGY_THRESHOLD", "30"))

# Transcript
TRANSCRIPT_DEDUP_WINDOW_MS = int(os.getenv("TRANSCRIPT_DEDUP_WINDOW_MS", "10000"))

# Recording
RECORDING_TIMESLICE_SECONDS = float(os.getenv("RECORDING_TIMESLICE_SECONDS", "1.0"))

# Public STUN servers used when ICE_STUN_SERVERS is not set
DEFAULT_STUN_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
]
ICE_STUN_SERVERS = [
    url.strip()
    for url in os.getenv("ICE_STUN_SERVERS", ",".join(DEFAULT_STUN_SERVERS)).split(",")
    if url.strip()
]


@dataclass
class CallSettings:
    """Tunable parameters of a call. Defaults come from the environment."""

    max_participants: int = MAX_PARTICIPANTS
    early_message_limit: int = EARLY_MESSAGE_LIMIT
    departed_ttl_seconds: float = DEPARTED_TTL_SECONDS

    reconnect_max_attempts: int = RECONNECT_MAX_ATTEMPTS
    reconnect_delay_seconds: float = RECONNECT_DELAY_SECONDS
    degraded_grace_seconds: float = DEGRADED_GRACE_SECONDS

    quality_sample_interval_seconds: float = QUALITY_SAMPLE_INTERVAL_SECONDS
    poor_loss_ratio: float = 0.05
    fair_loss_ratio: float = 0.02
    poor_jitter_ms: float = 50.0
    fair_jitter_ms: float = 20.0

    speaker_sample_interval_ms: int = SPEAKER_SAMPLE_INTERVAL_MS
    speaker_energy_threshold: float = SPEAKER_ENERGY_THRESHOLD

    transcript_dedup_window_ms: int = TRANSCRIPT_DEDUP_WINDOW_MS

    recording_timeslice_seconds: float = RECORDING_TIMESLICE_SECONDS

    ice_servers: List[str] = field(default_factory=lambda: list(ICE_STUN_SERVERS))
