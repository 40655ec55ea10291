"""
Media transport contract and its aiortc implementation.

The coordinator talks to a peer connection only through PeerTransport. Callbacks
(on_ice_candidate, on_track, on_state_change) are plain callables that must not
block; the orchestrator turns each call into an event on the peer's queue.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from ...schemas.call import QualityPreset
from ...schemas.signaling import IceCandidatePayload, SessionDescription
from .local import LocalMedia, PresetVideoTrack

logger = logging.getLogger(__name__)

# Default RTP clock rates (Opus, VP8/H.264) until a codec is negotiated
RTP_CLOCK_RATES = {"audio": 48000, "video": 90000}


class TransportState(str, Enum):
    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass
class TransportStats:
    """Cumulative inbound RTP counters of one connection."""

    packets_lost: int = 0
    packets_received: int = 0
    jitter_ms: float = 0.0


class PeerTransport(ABC):
    """One media connection to one remote peer."""

    def __init__(self):
        self.on_ice_candidate: Optional[Callable[[Optional[IceCandidatePayload]], None]] = None
        self.on_track: Optional[Callable[[object], None]] = None
        self.on_state_change: Optional[Callable[[TransportState], None]] = None

    @property
    @abstractmethod
    def remote_description_set(self) -> bool: ...

    @property
    @abstractmethod
    def local_description(self) -> Optional[SessionDescription]: ...

    @abstractmethod
    async def create_offer(self) -> SessionDescription: ...

    @abstractmethod
    async def create_answer(self) -> SessionDescription: ...

    @abstractmethod
    async def set_local_description(self, description: SessionDescription): ...

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription): ...

    @abstractmethod
    async def add_ice_candidate(self, candidate: IceCandidatePayload): ...

    @abstractmethod
    async def get_stats(self) -> TransportStats: ...

    @abstractmethod
    def apply_remote_preset(self, preset: QualityPreset): ...

    @abstractmethod
    async def close(self): ...

    def _emit_state(self, state: TransportState):
        if self.on_state_change:
            self.on_state_change(state)

    def _emit_track(self, track):
        if self.on_track:
            self.on_track(track)

    def _emit_candidate(self, candidate: Optional[IceCandidatePayload]):
        if self.on_ice_candidate:
            self.on_ice_candidate(candidate)


TransportFactory = Callable[[str], PeerTransport]


class AiortcPeerTransport(PeerTransport):
    """
    PeerTransport backed by an aiortc RTCPeerConnection.

    aiortc gathers ICE candidates while applying the local description and embeds
    them in the SDP, so this transport never emits trickle candidates; it still
    accepts trickled candidates from browser peers.
    """

    def __init__(self, local_tracks: List, ice_servers: List[str]):
        super().__init__()
        config = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
        self._pc = RTCPeerConnection(configuration=config)
        self._remote_video: List[PresetVideoTrack] = []
        self._remote_preset: Optional[QualityPreset] = None

        for track in local_tracks:
            self._pc.addTrack(track)

        @self._pc.on("connectionstatechange")
        async def on_connectionstatechange():
            self._on_connection_state(self._pc.connectionState)

        @self._pc.on("track")
        def on_track(track):
            if track.kind == "video":
                track = PresetVideoTrack(track, self._remote_preset)
                self._remote_video.append(track)
            self._emit_track(track)

    @property
    def remote_description_set(self) -> bool:
        return self._pc.remoteDescription is not None

    @property
    def local_description(self) -> Optional[SessionDescription]:
        description = self._pc.localDescription
        if description is None:
            return None
        return SessionDescription(type=description.type, sdp=description.sdp)

    async def create_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        return SessionDescription(type=offer.type, sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return SessionDescription(type=answer.type, sdp=answer.sdp)

    async def set_local_description(self, description: SessionDescription):
        await self._pc.setLocalDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def set_remote_description(self, description: SessionDescription):
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def add_ice_candidate(self, candidate: IceCandidatePayload):
        line = candidate.candidate.strip()
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        ice = candidate_from_sdp(line)
        ice.sdpMid = candidate.sdp_mid
        ice.sdpMLineIndex = candidate.sdp_m_line_index
        await self._pc.addIceCandidate(ice)

    async def get_stats(self) -> TransportStats:
        report = await self._pc.getStats()
        stats = TransportStats()
        jitters = []
        clock_rates = self._clock_rates()
        for entry in report.values():
            if getattr(entry, "type", None) != "inbound-rtp":
                continue
            stats.packets_lost += max(0, int(getattr(entry, "packetsLost", 0) or 0))
            stats.packets_received += int(getattr(entry, "packetsReceived", 0) or 0)
            jitter = getattr(entry, "jitter", None)
            clock_rate = clock_rates.get(getattr(entry, "kind", None))
            if jitter is not None and clock_rate:
                # aiortc reports jitter in RTP timestamp units
                jitters.append(float(jitter) / clock_rate * 1000.0)
        if jitters:
            stats.jitter_ms = max(jitters)
        return stats

    def _clock_rates(self) -> Dict[str, int]:
        rates = dict(RTP_CLOCK_RATES)
        for transceiver in self._pc.getTransceivers():
            codecs = getattr(transceiver, "_codecs", None)
            if codecs:
                rates[transceiver.kind] = codecs[0].clockRate
        return rates

    def _on_connection_state(self, state: str):
        logger.debug(f"[WebRTC] connectionState={state}")
        try:
            self._emit_state(TransportState(state))
        except ValueError:
            logger.warning(f"[WebRTC] Unknown connection state '{state}'")

    def apply_remote_preset(self, preset: QualityPreset):
        self._remote_preset = preset
        for track in self._remote_video:
            track.apply_preset(preset)

    async def close(self):
        await self._pc.close()


def aiortc_transport_factory(local_media: LocalMedia, ice_servers: List[str]) -> TransportFactory:
    """Build a factory creating one aiortc connection per remote peer."""

    def factory(peer_id: str) -> PeerTransport:
        logger.info(f"[WebRTC] 🚀 Creating RTCPeerConnection for {peer_id}")
        return AiortcPeerTransport(local_media.subscribe_tracks(), ice_servers)

    return factory
