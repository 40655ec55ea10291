"""
Local capture tracks and preset-constrained video.

LocalMedia owns the camera/microphone tracks of this participant. Every peer
connection gets its own relay subscription, so one slow consumer never stalls
the others and closing a connection never stops the capture device.
"""

import logging
from typing import List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay

from ...core.errors import MediaError
from ...schemas.call import DEFAULT_PRESET, QualityPreset

logger = logging.getLogger(__name__)

_relay: Optional[MediaRelay] = None


def get_media_relay() -> MediaRelay:
    """Get or create the process-wide MediaRelay."""
    global _relay
    if _relay is None:
        _relay = MediaRelay()
    return _relay


def is_live(track) -> bool:
    return track is not None and getattr(track, "readyState", "ended") == "live"


def fit_within(width: int, height: int, preset: QualityPreset) -> tuple:
    """Scale (width, height) down to fit the preset, keeping aspect ratio."""
    if width <= preset.width and height <= preset.height:
        return width, height
    scale = min(preset.width / width, preset.height / height)
    # Encoders want even dimensions
    return max(2, int(width * scale) // 2 * 2), max(2, int(height * scale) // 2 * 2)


class PresetVideoTrack(MediaStreamTrack):
    """
    Video track that caps resolution and frame rate of its source.

    The preset can change while frames are flowing; the next frame picks it up.
    """

    kind = "video"

    def __init__(self, source: MediaStreamTrack, preset: Optional[QualityPreset] = None):
        super().__init__()
        self.source = source
        self.preset = preset
        self._last_emitted: Optional[float] = None

    def apply_preset(self, preset: Optional[QualityPreset]):
        self.preset = preset

    async def recv(self):
        while True:
            frame = await self.source.recv()
            preset = self.preset
            if preset is None:
                return frame

            # Drop frames arriving faster than the preset allows
            if frame.time is not None and preset.frame_rate > 0:
                if (
                    self._last_emitted is not None
                    and frame.time - self._last_emitted < 1.0 / preset.frame_rate
                ):
                    continue
                self._last_emitted = frame.time

            width, height = fit_within(frame.width, frame.height, preset)
            if (width, height) == (frame.width, frame.height):
                return frame

            scaled = frame.reformat(width=width, height=height)
            scaled.pts = frame.pts
            scaled.time_base = frame.time_base
            return scaled


class LocalMedia:
    """
    Microphone and camera tracks of the local participant.

    Args:
        audio: Local audio track, if any
        video: Local video track, if any
    """

    def __init__(
        self,
        audio: Optional[MediaStreamTrack] = None,
        video: Optional[MediaStreamTrack] = None,
    ):
        self.audio = audio
        self.video = video
        self.preset = DEFAULT_PRESET
        self._video_out = PresetVideoTrack(video, self.preset) if video is not None else None
        self._player: Optional[MediaPlayer] = None

    @classmethod
    def from_devices(
        cls,
        source: str,
        format: Optional[str] = None,
        options: Optional[dict] = None,
    ) -> "LocalMedia":
        """
        Open a capture device (or a media file) with aiortc's MediaPlayer.

        Args:
            source: Device or file, e.g. "/dev/video0" or "default:none"
            format: ffmpeg input format, e.g. "v4l2", "avfoundation", "pulse"
            options: ffmpeg input options, e.g. {"video_size": "1280x720"}

        Raises:
            MediaError: if the source yields neither audio nor video
        """
        try:
            player = MediaPlayer(source, format=format, options=options or {})
        except Exception as e:
            raise MediaError(f"Cannot open media source '{source}': {e}") from e

        if player.audio is None and player.video is None:
            raise MediaError(f"Media source '{source}' has no audio or video")

        media = cls(audio=player.audio, video=player.video)
        media._player = player
        logger.info(
            f"[Media] 🎥 Opened {source} (audio={player.audio is not None}, "
            f"video={player.video is not None})"
        )
        return media

    @property
    def tracks(self) -> List[MediaStreamTrack]:
        return [t for t in (self.audio, self.video) if t is not None]

    def live_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self.tracks if is_live(t)]

    def has_live_tracks(self) -> bool:
        return bool(self.live_tracks())

    def subscribe_tracks(self) -> List[MediaStreamTrack]:
        """Fresh relay subscriptions for one new peer connection."""
        relay = get_media_relay()
        subscribed = []
        if is_live(self.audio):
            subscribed.append(relay.subscribe(self.audio))
        if is_live(self.video):
            subscribed.append(relay.subscribe(self._video_out))
        return subscribed

    def apply_preset(self, preset: QualityPreset):
        """Constrain outgoing video for every connection at once."""
        if preset == self.preset:
            return
        logger.info(
            f"[Media] Outgoing video preset {self.preset.name} -> {preset.name} "
            f"({preset.width}x{preset.height}@{preset.frame_rate})"
        )
        self.preset = preset
        if self._video_out is not None:
            self._video_out.apply_preset(preset)

    def release(self):
        """Stop capture. Safe to call more than once."""
        for track in self.tracks:
            if is_live(track):
                track.stop()
        if self._video_out is not None:
            self._video_out.stop()
        self._player = None
        logger.info("[Media] Local tracks released")
