"""
Dominant speaker detection based on audio energy.

Energy is measured the way a browser AnalyserNode reports it: the last
`fft_size` samples are windowed and transformed, bin magnitudes are converted to
decibels, mapped from [min_db, max_db] onto 0-255 and averaged. That keeps the
threshold comparable with levels reported by browser participants.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional

import numpy as np
from aiortc.mediastreams import MediaStreamError

from ...core.config import CallSettings
from ..media.local import get_media_relay
from ..store import CallStore

logger = logging.getLogger(__name__)

LevelSource = Callable[[], Optional[float]]


def byte_frequency_average(
    samples: np.ndarray,
    fft_size: int = 256,
    min_db: float = -100.0,
    max_db: float = -30.0,
) -> float:
    """
    Average byte-scaled frequency magnitude of an audio buffer.

    Args:
        samples: Mono PCM samples (int16 or float in [-1, 1])
        fft_size: FFT length; only the most recent fft_size samples are used
        min_db: Level mapped to 0
        max_db: Level mapped to 255

    Returns:
        Energy on a 0-255 scale (0.0 for silence or an empty buffer)
    """
    samples = np.asarray(samples)
    if samples.size == 0:
        return 0.0

    if samples.dtype == np.int16:
        audio = samples.astype(np.float32) / 32768.0
    else:
        audio = samples.astype(np.float32)

    frame = audio[-fft_size:]
    if frame.size < fft_size:
        frame = np.concatenate([np.zeros(fft_size - frame.size, dtype=np.float32), frame])

    spectrum = np.fft.rfft(frame * np.blackman(fft_size))[: fft_size // 2]
    magnitude = np.abs(spectrum) / fft_size

    with np.errstate(divide="ignore"):
        decibels = 20.0 * np.log10(magnitude)

    scaled = (decibels - min_db) * (255.0 / (max_db - min_db))
    scaled = np.clip(np.nan_to_num(scaled, nan=0.0, neginf=0.0), 0.0, 255.0)
    return float(np.mean(np.floor(scaled)))


class TrackLevelMeter:
    """
    Consumes an aiortc audio track and keeps its most recent samples.

    Args:
        track: Remote audio track
        fft_size: Number of samples kept for level computation
        on_ended: Called once when the track ends
        subscribe: Read through the shared MediaRelay so other consumers
            (playback, recording) keep receiving frames
    """

    def __init__(
        self,
        track,
        fft_size: int = 256,
        on_ended: Optional[Callable[[], None]] = None,
        subscribe: bool = True,
    ):
        self.track = get_media_relay().subscribe(track) if subscribe else track
        self.fft_size = fft_size
        self.on_ended = on_ended
        self._samples = np.zeros(0, dtype=np.float32)
        self._task: Optional[asyncio.Task] = None

    def start(self):
        self._task = asyncio.create_task(self._consume())

    def stop(self):
        if self._task and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()
        self._task = None

    def level(self) -> float:
        return byte_frequency_average(self._samples, self.fft_size)

    def feed(self, frame):
        """Keep the tail of one av.AudioFrame, downmixed to mono."""
        pcm = frame.to_ndarray()
        channels = len(frame.layout.channels)
        if frame.format.is_planar:
            mono = pcm.astype(np.float32).mean(axis=0)
        else:
            mono = pcm.reshape(-1, channels).astype(np.float32).mean(axis=1)
        if pcm.dtype == np.int16:
            mono = mono / 32768.0
        self._samples = mono[-self.fft_size:]

    async def _consume(self):
        try:
            while True:
                frame = await self.track.recv()
                self.feed(frame)
        except MediaStreamError:
            logger.debug("[Speaker] Audio track ended")
        finally:
            if self.on_ended:
                self.on_ended()


class DominantSpeakerTracker:
    """
    Samples every attached remote audio stream and publishes the dominant speaker.

    A stream whose level exceeds the threshold becomes dominant unless it
    already is; within one tick, streams are visited in attach order so the
    most recent qualifying sample wins.
    """

    def __init__(self, store: CallStore, settings: Optional[CallSettings] = None):
        self.store = store
        self.settings = settings or CallSettings()
        self._sources: Dict[str, LevelSource] = {}
        self._meters: Dict[str, TrackLevelMeter] = {}
        self._task: Optional[asyncio.Task] = None

    @property
    def dominant_speaker(self) -> Optional[str]:
        return self.store.snapshot.dominant_speaker

    def attach(self, peer_id: str, level_source: LevelSource):
        self._sources[peer_id] = level_source

    def attach_track(self, peer_id: str, track) -> TrackLevelMeter:
        """Meter a remote audio track and attach it as the peer's level source."""
        self._stop_meter(peer_id)
        meter = TrackLevelMeter(track)
        meter.on_ended = lambda: self._on_meter_ended(peer_id, meter)
        self._meters[peer_id] = meter
        self.attach(peer_id, meter.level)
        meter.start()
        return meter

    def detach(self, peer_id: str):
        """Forget a peer's samples; clears the dominant speaker if it was that peer."""
        self._stop_meter(peer_id)
        self._sources.pop(peer_id, None)
        if self.store.snapshot.dominant_speaker == peer_id:
            self.store.set_dominant_speaker(None)

    def sample_once(self) -> Optional[str]:
        threshold = self.settings.speaker_energy_threshold
        for peer_id, source in list(self._sources.items()):
            try:
                level = source()
            except Exception as e:
                logger.warning(f"[Speaker] Level read failed for {peer_id}: {e}")
                continue
            if level is None or level <= threshold:
                continue
            if self.store.snapshot.dominant_speaker != peer_id:
                logger.debug(f"[Speaker] 🗣️ Dominant speaker -> {peer_id} (level={level:.0f})")
                self.store.set_dominant_speaker(peer_id)
        return self.store.snapshot.dominant_speaker

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for peer_id in list(self._meters):
            self._stop_meter(peer_id)

    async def _loop(self):
        interval = self.settings.speaker_sample_interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            self.sample_once()

    def _on_meter_ended(self, peer_id: str, meter: TrackLevelMeter):
        if self._meters.get(peer_id) is meter:
            self.detach(peer_id)

    def _stop_meter(self, peer_id: str):
        meter = self._meters.pop(peer_id, None)
        if meter:
            meter.stop()
