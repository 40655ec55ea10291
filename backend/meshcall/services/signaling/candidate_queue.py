"""
Per-peer buffer for ICE candidates that arrive before a remote description.
"""

import logging
from typing import List, Set

from ...schemas.signaling import IceCandidatePayload

logger = logging.getLogger(__name__)


class CandidateQueue:
    """
    Ordered buffer of not-yet-applicable ICE candidates for one connection.

    Also remembers every candidate seen on the current connection (queued or
    applied) so a repeated candidate is never applied twice.
    """

    def __init__(self, peer_id: str):
        self.peer_id = peer_id
        self._pending: List[IceCandidatePayload] = []
        self._seen: Set[tuple] = set()

    def is_duplicate(self, candidate: IceCandidatePayload) -> bool:
        return candidate.key() in self._seen

    def mark_seen(self, candidate: IceCandidatePayload):
        self._seen.add(candidate.key())

    def push(self, candidate: IceCandidatePayload) -> bool:
        """
        Queue a candidate in receipt order.

        Returns:
            False if the candidate was already seen and was discarded
        """
        if self.is_duplicate(candidate):
            logger.debug(f"[ICE] Duplicate candidate for {self.peer_id} discarded")
            return False
        self._seen.add(candidate.key())
        self._pending.append(candidate)
        return True

    def drain(self) -> List[IceCandidatePayload]:
        """Return queued candidates in receipt order and empty the queue."""
        drained = self._pending
        self._pending = []
        return drained

    def clear(self):
        """Discard queued candidates (participant left or call ended)."""
        if self._pending:
            logger.debug(
                f"[ICE] Discarding {len(self._pending)} queued candidate(s) for {self.peer_id}"
            )
        self._pending = []

    def reset(self):
        """Forget everything; used when the underlying connection is recreated."""
        self._pending = []
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._pending)
