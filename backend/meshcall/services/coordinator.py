"""
Call coordinator.

Wires one participant's signaling channel, media, speech engine and recorder
into the mesh, transcript, speaker and recording components, and owns the call
lifecycle (join, mute, record, leave).
"""

import asyncio
import logging
from typing import Callable, List, Optional, Set

from ..core.config import CallSettings
from ..core.errors import CallError, CapacityError, MediaError, RecordingError, SignalingError
from ..schemas.call import Participant, TranscriptSegment
from ..schemas.signaling import (
    PEER_SIGNAL_TYPES,
    MediaStateMessage,
    ParticipantJoined,
    ParticipantLeft,
    TranscriptFragmentMessage,
    parse_signal,
)
from .audio.speaker import DominantSpeakerTracker
from .media.local import LocalMedia
from .media.transport import TransportFactory, aiortc_transport_factory
from .mesh.quality import AdaptiveQualityController
from .mesh.reconnection import ReconnectionController
from .mesh.topology import MeshTopologyManager
from .recording.backend import AiortcRecorderBackend, RecorderBackend
from .recording.session import RecordingSessionManager
from .signaling.channel import SignalingChannel
from .signaling.link import LIVE_STATES, PeerLink
from .signaling.orchestrator import PeerLinkListener
from .storage import RecordingStorage, get_recording_storage
from .store import CallStore
from .transcript.aggregator import TranscriptAggregator
from .transcript.speech import SpeechEngine

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[CallError], None]


class CallCoordinator(PeerLinkListener):
    """
    One participant's side of a call.

    Args:
        call_id: Room / call identifier
        participant: The local participant
        channel: Signaling channel to the room relay
        local_media: Local capture tracks
        transport_factory: Creates peer connections (aiortc when omitted)
        speech_engine: Local speech recognizer, optional
        recorder_backend: Recording backend (aiortc MediaRecorder when omitted)
        storage: Recording storage (chosen by STORAGE_TYPE when omitted)
        settings: Call settings
        store: Shared call store
    """

    def __init__(
        self,
        call_id: str,
        participant: Participant,
        channel: SignalingChannel,
        local_media: LocalMedia,
        transport_factory: Optional[TransportFactory] = None,
        speech_engine: Optional[SpeechEngine] = None,
        recorder_backend: Optional[RecorderBackend] = None,
        storage: Optional[RecordingStorage] = None,
        settings: Optional[CallSettings] = None,
        store: Optional[CallStore] = None,
    ):
        self.call_id = call_id
        self.participant = participant
        self.channel = channel
        self.local_media = local_media
        self.settings = settings or CallSettings()
        self.transport_factory = transport_factory or aiortc_transport_factory(
            local_media, self.settings.ice_servers
        )
        self.speech_engine = speech_engine
        self.store = store or CallStore()

        self.recording = RecordingSessionManager(
            call_id,
            recorder_backend or AiortcRecorderBackend(self.settings.recording_timeslice_seconds),
            storage or get_recording_storage(),
        )
        self.speaker = DominantSpeakerTracker(self.store, self.settings)
        self.quality = AdaptiveQualityController(local_media, self.settings)

        # Created on join, once the room has admitted us
        self.mesh: Optional[MeshTopologyManager] = None
        self.reconnection: Optional[ReconnectionController] = None
        self.transcript: Optional[TranscriptAggregator] = None

        self.surfaced_errors: List[CallError] = []
        self._error_callbacks: List[ErrorCallback] = []
        self._receive_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self.joined = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def join(self) -> Participant:
        """
        Enter the call.

        Raises:
            MediaError: no live local track
            CapacityError: the room is full
        """
        if self.joined:
            return self.participant
        if not self.local_media.has_live_tracks():
            raise MediaError("Cannot join: no live local audio or video track")

        self.participant = await self.channel.join(self.call_id, self.participant)
        self.store.upsert_participant(self.participant)

        self.mesh = MeshTopologyManager(
            self.participant, self.transport_factory, self._send, self.settings
        )
        self.reconnection = ReconnectionController(
            self.mesh.request_restart, self._on_terminal_failure, self.settings
        )
        self.mesh.add_listener(self.reconnection)
        self.mesh.add_listener(self.quality)
        self.mesh.add_listener(self)

        self.transcript = TranscriptAggregator(
            self.store, self.participant, self.settings, broadcast=self._broadcast_segment
        )
        self.quality.on_participant_count(self.mesh.participant_count)

        if self.speech_engine:
            self.speech_engine.on_fragment = self._on_speech_fragment
            self.speech_engine.on_restart = self.transcript.on_recognition_restart
            if not self.participant.is_muted:
                await self.speech_engine.start()

        self.speaker.start()
        self._receive_task = asyncio.create_task(self._receive_loop())
        self.joined = True

        logger.info(
            f"[Call] ✅ {self.participant.display_name} joined {self.call_id}"
            f"{' as host' if self.participant.is_host else ''}"
        )
        return self.participant

    async def leave(self):
        """
        Leave the call: stop recording, close every link, release media.

        Inbound signaling, reconnection timers and every negotiation stop
        before the first await. The running recording is uploaded last, and
        an upload failure is surfaced, not raised.
        """
        if not self.joined:
            return
        self.joined = False

        if self._receive_task:
            self._receive_task.cancel()
            self._receive_task = None
        self.reconnection.cancel_all()
        self.quality.stop_all()
        self.mesh.halt()

        await self.recording.stop_capture()
        await self.mesh.close_all()
        await self.speaker.stop()

        if self.speech_engine:
            await self.speech_engine.stop()

        for task in list(self._background):
            task.cancel()

        try:
            await self.channel.leave()
        except Exception as e:
            logger.error(f"[Call] Error leaving signaling channel: {e}")

        self.local_media.release()
        logger.info(f"[Call] 👋 {self.participant.display_name} left {self.call_id}")

        try:
            await self.recording.finalize()
        except RecordingError as e:
            self._surface(e)

    # ------------------------------------------------------------------
    # Local controls
    # ------------------------------------------------------------------

    async def set_muted(self, muted: bool):
        if muted == self.participant.is_muted:
            return
        self.participant = self.participant.model_copy(update={"is_muted": muted})
        self.store.update_participant(self.participant.user_id, is_muted=muted)

        if self.transcript:
            self.transcript.set_muted(muted)
        if self.speech_engine and self.joined:
            if muted:
                await self.speech_engine.stop()
            else:
                await self.speech_engine.start()

        await self._announce_media_state()

    async def toggle_mute(self) -> bool:
        await self.set_muted(not self.participant.is_muted)
        return self.participant.is_muted

    async def set_video_off(self, video_off: bool):
        if video_off == self.participant.is_video_off:
            return
        self.participant = self.participant.model_copy(update={"is_video_off": video_off})
        self.store.update_participant(self.participant.user_id, is_video_off=video_off)
        await self._announce_media_state()

    async def start_recording(self) -> bool:
        """
        Record every live local and remote track.

        Raises:
            MediaError: no live track to record
        """
        tracks = list(self.local_media.live_tracks())
        if self.mesh:
            for link in self.mesh.active_links():
                if link.state in LIVE_STATES:
                    tracks.extend(link.remote_tracks)
        return await self.recording.start(tracks)

    async def stop_recording(self) -> Optional[str]:
        """
        Raises:
            RecordingError: the artifact could not be stored (also surfaced)
        """
        try:
            return await self.recording.stop()
        except RecordingError as e:
            self._surface(e)
            raise

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    def on_error(self, callback: ErrorCallback):
        self._error_callbacks.append(callback)

    def _surface(self, error: CallError):
        self.surfaced_errors.append(error)
        logger.error(f"[Call] {error.code}: {error.message}")
        for callback in list(self._error_callbacks):
            try:
                callback(error)
            except Exception as e:
                logger.error(f"[Call] Error callback failed: {e}")

    def _on_terminal_failure(self, link: PeerLink, error: CallError):
        self._surface(error)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _receive_loop(self):
        while True:
            raw = await self.channel.receive()
            if raw is None:
                logger.info("[Call] Signaling channel closed")
                break
            try:
                await self._dispatch(parse_signal(raw))
            except CapacityError as e:
                self._surface(e)
            except SignalingError as e:
                logger.warning(f"[Call] Dropped signaling message: {e}")
            except Exception as e:
                logger.error(f"[Call] Error handling signaling message: {e}")

    async def _dispatch(self, message):
        if isinstance(message, ParticipantJoined):
            link = await self.mesh.handle_joined(message)
            if link is not None:
                self.store.upsert_participant(link.participant)
        elif isinstance(message, ParticipantLeft):
            await self.mesh.handle_left(message.id)
            self.store.remove_participant(message.id)
        elif message.type in PEER_SIGNAL_TYPES:
            self.mesh.route(message)
        elif isinstance(message, TranscriptFragmentMessage):
            self.transcript.handle_remote_fragment(message)
        elif isinstance(message, MediaStateMessage):
            if message.from_id:
                self.store.update_participant(
                    message.from_id, is_muted=message.is_muted, is_video_off=message.is_video_off
                )

    def _on_speech_fragment(self, text: str, is_final: bool):
        if self.transcript:
            self.transcript.handle_local_fragment(text, is_final)

    # ------------------------------------------------------------------
    # Mesh notifications
    # ------------------------------------------------------------------

    def on_link_added(self, link: PeerLink):
        self.quality.on_participant_count(self.mesh.participant_count)

    def on_link_removed(self, link: PeerLink):
        self.speaker.detach(link.peer_id)
        if not self.mesh.closed:
            self.quality.on_participant_count(self.mesh.participant_count)

    def on_remote_track(self, link: PeerLink, track):
        if getattr(track, "kind", None) == "audio":
            self.speaker.attach_track(link.peer_id, track)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _send(self, message):
        await self.channel.send(message)

    async def _announce_media_state(self):
        if not self.joined:
            return
        try:
            await self._send(
                MediaStateMessage(
                    from_id=self.participant.user_id,
                    is_muted=self.participant.is_muted,
                    is_video_off=self.participant.is_video_off,
                )
            )
        except SignalingError as e:
            logger.warning(f"[Call] Media state not announced: {e}")

    def _broadcast_segment(self, segment: TranscriptSegment):
        message = TranscriptFragmentMessage(
            from_id=self.participant.user_id,
            speaker_id=segment.speaker_id,
            speaker_label=segment.speaker_label,
            text=segment.text,
            produced_at_ms=segment.produced_at_ms,
        )
        self._spawn(self._send(message), "transcript broadcast")

    def _spawn(self, coro, what: str):
        task = asyncio.create_task(coro)
        self._background.add(task)

        def done(t: asyncio.Task):
            self._background.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.warning(f"[Call] {what} failed: {t.exception()}")

        task.add_done_callback(done)
