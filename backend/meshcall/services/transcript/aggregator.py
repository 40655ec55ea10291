"""
Live transcript aggregation.

Local speech arrives from the speech engine as interim and final fragments.
Remote participants broadcast their own final fragments over the signaling
channel, so the same sentence can reach us more than once (echo through our
microphone, re-broadcasts after a reconnect). Final fragments are therefore
checked against the committed transcript before they are inserted.
"""

import logging
import time
from typing import Callable, Optional

from ...core.config import CallSettings
from ...schemas.call import InterimUtterance, Participant, TranscriptSegment
from ...schemas.signaling import TranscriptFragmentMessage
from ..store import CallStore

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


def normalize_text(text: str) -> str:
    return text.strip().lower()


def same_speaker(a: TranscriptSegment, b: TranscriptSegment) -> bool:
    """Equal ids when both segments carry one, otherwise equal labels."""
    if a.speaker_id and b.speaker_id:
        return a.speaker_id == b.speaker_id
    return a.speaker_label.strip() == b.speaker_label.strip()


class TranscriptAggregator:
    """
    Merges local and remote fragments into the store's ordered transcript.

    Args:
        store: Shared call store holding the transcript and interim slot
        local: The local participant (id and display name label local text)
        settings: Call settings (dedup window)
        broadcast: Called with every committed local segment, to share it with the room
    """

    def __init__(
        self,
        store: CallStore,
        local: Participant,
        settings: Optional[CallSettings] = None,
        broadcast: Optional[Callable[[TranscriptSegment], None]] = None,
    ):
        self.store = store
        self.local = local
        self.settings = settings or CallSettings()
        self.broadcast = broadcast
        self.muted = local.is_muted

    def set_muted(self, muted: bool):
        self.muted = muted
        if muted:
            self.store.set_interim(None)

    def handle_local_fragment(
        self, text: str, is_final: bool, produced_at_ms: Optional[int] = None
    ) -> Optional[TranscriptSegment]:
        """
        Accept one fragment from the local speech engine.

        Returns:
            The committed segment, or None if nothing was committed
        """
        if self.muted:
            logger.debug("[Transcript] Local fragment ignored while muted")
            return None

        text = text.strip()
        if not text:
            return None
        timestamp = produced_at_ms if produced_at_ms is not None else now_ms()

        if not is_final:
            self.store.set_interim(
                InterimUtterance(speaker_id=self.local.user_id, text=text, updated_at_ms=timestamp)
            )
            return None

        # The final replaces whatever was shown as interim
        self.store.set_interim(None)
        segment = TranscriptSegment(
            speaker_id=self.local.user_id,
            speaker_label=self.local.display_name,
            text=text,
            produced_at_ms=timestamp,
        )
        if not self._commit(segment):
            return None

        if self.broadcast:
            try:
                self.broadcast(segment)
            except Exception as e:
                logger.error(f"[Transcript] Broadcast of local segment failed: {e}")
        return segment

    def handle_remote_fragment(self, message: TranscriptFragmentMessage) -> Optional[TranscriptSegment]:
        """Accept a final fragment broadcast by another participant."""
        text = message.text.strip()
        if not text:
            return None

        speaker_id = message.speaker_id or message.from_id
        label = message.speaker_label
        if speaker_id and speaker_id == self.local.user_id:
            label = self.local.display_name

        segment = TranscriptSegment(
            speaker_id=speaker_id,
            speaker_label=label,
            text=text,
            produced_at_ms=message.produced_at_ms,
        )
        if not self._commit(segment):
            return None

        interim = self.store.snapshot.interim
        if interim is not None and interim.speaker_id == speaker_id:
            self.store.set_interim(None)
        return segment

    def on_recognition_restart(self):
        self.store.set_interim(None)

    def is_duplicate(self, segment: TranscriptSegment) -> bool:
        window = self.settings.transcript_dedup_window_ms
        text = normalize_text(segment.text)
        for existing in self.store.snapshot.transcript:
            if (
                same_speaker(existing, segment)
                and normalize_text(existing.text) == text
                and abs(existing.produced_at_ms - segment.produced_at_ms) < window
            ):
                return True
        return False

    def _commit(self, segment: TranscriptSegment) -> bool:
        if self.is_duplicate(segment):
            logger.debug(f"[Transcript] Duplicate from {segment.speaker_label} discarded")
            return False
        self.store.insert_segment(segment)
        logger.info(f"[Transcript] 📝 {segment.speaker_label}: {segment.text}")
        return True

    def export_text(self) -> str:
        """Render the committed transcript as "Label: text" lines."""
        return "\n".join(
            f"{segment.speaker_label}: {segment.text}" for segment in self.store.snapshot.transcript
        )
