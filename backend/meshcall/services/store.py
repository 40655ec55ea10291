"""
Shared call state.

CallStore holds one immutable CallSnapshot. Every writer builds a new snapshot
and swaps it in under a lock, so readers never see a half-applied update and
can keep a snapshot around as long as they like.
"""

import bisect
import logging
from dataclasses import dataclass, replace
from threading import Lock
from typing import Callable, List, Optional, Tuple

from ..schemas.call import InterimUtterance, Participant, TranscriptSegment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallSnapshot:
    participants: Tuple[Participant, ...] = ()
    transcript: Tuple[TranscriptSegment, ...] = ()
    interim: Optional[InterimUtterance] = None
    dominant_speaker: Optional[str] = None

    def participant(self, user_id: str) -> Optional[Participant]:
        for participant in self.participants:
            if participant.user_id == user_id:
                return participant
        return None


Subscriber = Callable[[CallSnapshot], None]


class CallStore:
    def __init__(self):
        self._snapshot = CallSnapshot()
        self._lock = Lock()
        self._subscribers: List[Subscriber] = []

    @property
    def snapshot(self) -> CallSnapshot:
        return self._snapshot

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback invoked with every new snapshot. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _update(self, compute: Callable[[CallSnapshot], Optional[dict]]) -> CallSnapshot:
        """Apply one write: `compute` maps the current snapshot to field changes (or None)."""
        with self._lock:
            changes = compute(self._snapshot)
            if not changes:
                return self._snapshot
            self._snapshot = replace(self._snapshot, **changes)
            snapshot = self._snapshot
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"[Store] Subscriber failed: {e}")
        return snapshot

    # Participants

    def upsert_participant(self, participant: Participant):
        def compute(s: CallSnapshot):
            others = tuple(p for p in s.participants if p.user_id != participant.user_id)
            return {"participants": others + (participant,)}

        self._update(compute)

    def update_participant(self, user_id: str, **changes) -> Optional[Participant]:
        def compute(s: CallSnapshot):
            current = s.participant(user_id)
            if current is None:
                return None
            updated = current.model_copy(update=changes)
            return {
                "participants": tuple(
                    updated if p.user_id == user_id else p for p in s.participants
                )
            }

        return self._update(compute).participant(user_id)

    def remove_participant(self, user_id: str):
        def compute(s: CallSnapshot):
            changes = {"participants": tuple(p for p in s.participants if p.user_id != user_id)}
            if s.dominant_speaker == user_id:
                changes["dominant_speaker"] = None
            return changes

        self._update(compute)

    # Transcript

    def insert_segment(self, segment: TranscriptSegment):
        """Insert in timestamp order; equal timestamps keep insertion order."""

        def compute(s: CallSnapshot):
            keys = [existing.produced_at_ms for existing in s.transcript]
            index = bisect.bisect_right(keys, segment.produced_at_ms)
            return {"transcript": s.transcript[:index] + (segment,) + s.transcript[index:]}

        self._update(compute)

    def set_interim(self, interim: Optional[InterimUtterance]):
        self._update(lambda s: None if s.interim == interim else {"interim": interim})

    # Dominant speaker

    def set_dominant_speaker(self, peer_id: Optional[str]):
        self._update(
            lambda s: None if s.dominant_speaker == peer_id else {"dominant_speaker": peer_id}
        )

    def reset(self):
        self._update(
            lambda s: {"participants": (), "transcript": (), "interim": None, "dominant_speaker": None}
        )
