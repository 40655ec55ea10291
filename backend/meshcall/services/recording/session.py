"""
Recording session lifecycle: IDLE -> RECORDING -> FINALIZING -> IDLE.
"""

import logging
import time
from typing import List, Optional

from ...core.errors import MediaError, RecordingError
from ...schemas.call import RecordingStatus
from ..media.local import is_live
from ..storage import RecordingStorage
from .backend import RecorderBackend

logger = logging.getLogger(__name__)


class RecordingSessionManager:
    """
    One recording session per call.

    Tracks live at start are mixed into one source; tracks that appear later
    are not added. Chunks are buffered in memory and concatenated into a single
    artifact on stop, which is handed to storage exactly once.

    Args:
        call_id: Call the recordings belong to
        backend: Produces chunks from tracks
        storage: Receives the finished artifact
    """

    def __init__(self, call_id: str, backend: RecorderBackend, storage: RecordingStorage):
        self.call_id = call_id
        self.backend = backend
        self.storage = storage

        self.status = RecordingStatus.IDLE
        self.chunks: List[bytes] = []
        self.artifact_id: Optional[str] = None
        self.started_at: Optional[float] = None

    @property
    def is_recording(self) -> bool:
        return self.status == RecordingStatus.RECORDING

    async def start(self, tracks: List) -> bool:
        """
        Start recording the given tracks.

        Returns:
            bool: True if a session was started, False if one is already running

        Raises:
            MediaError: if none of the tracks is live, or the backend cannot start
        """
        if self.status != RecordingStatus.IDLE:
            logger.info(f"Recording already {self.status.value} for call {self.call_id}")
            return False

        live = [track for track in tracks if is_live(track)]
        if not live:
            raise MediaError("Cannot record: no live local or remote track")

        self.status = RecordingStatus.RECORDING
        self.chunks = []
        self.started_at = time.time()
        self.artifact_id = (
            f"recording-{self.call_id}-{int(self.started_at * 1000)}.{self.backend.extension}"
        )

        try:
            await self.backend.start(live, self._on_chunk)
        except Exception as e:
            self.status = RecordingStatus.IDLE
            self.artifact_id = None
            raise MediaError(f"Recorder failed to start: {e}") from e

        logger.info(f"🎙️ Recording started for call {self.call_id} ({len(live)} track(s))")
        return True

    def _on_chunk(self, data: bytes):
        if data and self.status != RecordingStatus.IDLE:
            self.chunks.append(data)

    async def stop(self) -> Optional[str]:
        """
        Finalize and upload the current session.

        The session is back in IDLE when this returns, whatever the outcome.

        Returns:
            The stored artifact id, or None if nothing was recorded

        Raises:
            RecordingError: if storage rejected the artifact
        """
        if not await self.stop_capture():
            return None
        return await self.finalize()

    async def stop_capture(self) -> bool:
        """
        Stop the recorder and collect its last chunks, leaving the session in
        FINALIZING until finalize() uploads it.

        Returns:
            bool: True if a capture now waits for finalize()
        """
        if self.status != RecordingStatus.RECORDING:
            return False

        self.status = RecordingStatus.FINALIZING
        try:
            await self.backend.stop()
        except Exception as e:
            logger.error(f"Recorder stop failed for call {self.call_id}: {e}")
        return True

    async def finalize(self) -> Optional[str]:
        """
        Upload a stopped capture. See stop() for the outcome.

        Raises:
            RecordingError: if storage rejected the artifact
        """
        if self.status != RecordingStatus.FINALIZING:
            return None

        artifact_id = self.artifact_id
        try:
            artifact = b"".join(self.chunks)
            if not artifact:
                logger.warning(f"Recording for call {self.call_id} is empty, nothing to upload")
                return None

            try:
                stored = await self.storage.upload_recording(
                    self.call_id, artifact_id, artifact, self.backend.content_type
                )
            except Exception as e:
                raise RecordingError(f"Upload of {artifact_id} failed: {e}") from e
            if not stored:
                raise RecordingError(f"Upload of {artifact_id} failed")

            logger.info(f"✅ Recording {artifact_id} stored ({len(artifact)} bytes)")
            return artifact_id
        finally:
            self.chunks = []
            self.artifact_id = None
            self.started_at = None
            self.status = RecordingStatus.IDLE
