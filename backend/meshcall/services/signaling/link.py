"""
Per-peer connection record and the negotiation role rule.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from ...schemas.call import DEFAULT_PRESET, HealthSample, Participant, QualityPreset
from .candidate_queue import CandidateQueue

if TYPE_CHECKING:
    from ..media.transport import PeerTransport


class PeerState(str, Enum):
    IDLE = "idle"
    OFFER_PENDING = "offer_pending"
    ANSWER_PENDING = "answer_pending"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    FAILED = "failed"
    CLOSED = "closed"


# States in which media is (or recently was) flowing
LIVE_STATES = (PeerState.CONNECTED, PeerState.DEGRADED)


def should_offer(local_is_host: bool, remote_is_host: bool, observed_join: bool) -> bool:
    """
    Decide once which side of a pair creates the offer.

    If exactly one side is the host, the host offers. Otherwise the side that
    observed the other's join (the earlier member) offers. Both sides evaluate
    this with mirrored arguments and always reach opposite answers.

    Args:
        local_is_host: Whether the local participant hosts the room
        remote_is_host: Whether the remote participant hosts the room
        observed_join: True when the remote joined after us (live join event),
            False when we learned about it from the roster on our own join
    """
    if local_is_host != remote_is_host:
        return local_is_host
    return observed_join


@dataclass
class PeerLink:
    """Everything the local side keeps about one remote participant."""

    peer_id: str
    participant: Participant
    is_initiator: bool
    state: PeerState = PeerState.IDLE
    candidate_queue: CandidateQueue = None
    reconnect_attempts: int = 0
    quality_level: QualityPreset = DEFAULT_PRESET
    last_health_sample: Optional[HealthSample] = None
    connection: Optional["PeerTransport"] = None
    remote_tracks: List = field(default_factory=list)
    # Set once the terminal connection failure has been reported
    terminal_notified: bool = False

    def __post_init__(self):
        if self.candidate_queue is None:
            self.candidate_queue = CandidateQueue(self.peer_id)

    @property
    def is_closed(self) -> bool:
        return self.state == PeerState.CLOSED
