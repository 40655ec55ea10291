"""
Adaptive media quality.

Two independent mechanisms:
- the outgoing video preset follows the number of participants in the call
- each connected link is sampled periodically; a link whose health is rated
  poor has its incoming feed downgraded to the LOW preset, once
"""

import asyncio
import logging
import time
from typing import Dict, Optional

from ...core.config import CallSettings
from ...schemas.call import (
    DEFAULT_PRESET,
    LOW_PRESET,
    MEDIUM_PRESET,
    HealthRating,
    HealthSample,
    QualityPreset,
)
from ..signaling.link import PeerLink, PeerState
from ..signaling.orchestrator import PeerLinkListener

logger = logging.getLogger(__name__)


def preset_for_participants(count: int) -> QualityPreset:
    """
    Base preset for a call of `count` participants, self included.

    Returns:
        LOW for 7 or more, MEDIUM for 4 to 6, DEFAULT otherwise
    """
    if count >= 7:
        return LOW_PRESET
    if count >= 4:
        return MEDIUM_PRESET
    return DEFAULT_PRESET


def classify_health(
    loss_ratio: float, jitter_ms: float, settings: Optional[CallSettings] = None
) -> HealthRating:
    settings = settings or CallSettings()
    if loss_ratio > settings.poor_loss_ratio or jitter_ms > settings.poor_jitter_ms:
        return HealthRating.POOR
    if loss_ratio > settings.fair_loss_ratio or jitter_ms > settings.fair_jitter_ms:
        return HealthRating.FAIR
    return HealthRating.GOOD


class AdaptiveQualityController(PeerLinkListener):
    """
    Applies participant-count presets to local video and downgrades unhealthy
    remote feeds.

    Args:
        local_media: Object with apply_preset(preset), usually LocalMedia
        settings: Call settings (sampling interval, health thresholds)
    """

    def __init__(self, local_media, settings: Optional[CallSettings] = None):
        self.local_media = local_media
        self.settings = settings or CallSettings()
        self.base_preset: Optional[QualityPreset] = None
        self._samplers: Dict[str, asyncio.Task] = {}

    def on_participant_count(self, count: int) -> QualityPreset:
        preset = preset_for_participants(count)
        if preset != self.base_preset:
            logger.info(f"[Quality] {count} participant(s) -> {preset.name} preset")
            self.base_preset = preset
            self.local_media.apply_preset(preset)
        return preset

    def on_state_change(self, link: PeerLink, old: PeerState, new: PeerState):
        if new == PeerState.CONNECTED:
            self.watch(link)
        elif new in (PeerState.FAILED, PeerState.CLOSED):
            self.unwatch(link.peer_id)

    def on_connection_created(self, link: PeerLink):
        # Counters restart with a new connection
        link.last_health_sample = None
        if link.quality_level == LOW_PRESET:
            link.connection.apply_remote_preset(LOW_PRESET)

    def on_link_removed(self, link: PeerLink):
        self.unwatch(link.peer_id)

    def watch(self, link: PeerLink):
        if link.peer_id in self._samplers:
            return
        self._samplers[link.peer_id] = asyncio.create_task(self._sample_loop(link))

    def unwatch(self, peer_id: str):
        task = self._samplers.pop(peer_id, None)
        if task and not task.done():
            task.cancel()

    def stop_all(self):
        for peer_id in list(self._samplers):
            self.unwatch(peer_id)

    async def sample(self, link: PeerLink) -> Optional[HealthSample]:
        """
        Take one health sample of a connected link.

        Loss is measured over the interval since the previous sample, from the
        transport's cumulative counters.

        Returns:
            The new sample, or None if the link is not connected
        """
        if link.state != PeerState.CONNECTED or link.connection is None:
            return None

        stats = await link.connection.get_stats()
        previous = link.last_health_sample

        lost = stats.packets_lost
        received = stats.packets_received
        if previous is not None:
            lost -= previous.packets_lost
            received -= previous.packets_received
            if lost < 0 or received < 0:
                # Counters went backwards: treat as a fresh baseline
                lost, received = stats.packets_lost, stats.packets_received

        total = lost + received
        loss_ratio = lost / total if total > 0 else 0.0
        rating = classify_health(loss_ratio, stats.jitter_ms, self.settings)

        sample = HealthSample(
            loss_ratio=loss_ratio,
            jitter_ms=stats.jitter_ms,
            rating=rating,
            packets_lost=stats.packets_lost,
            packets_received=stats.packets_received,
            taken_at=time.time(),
        )
        link.last_health_sample = sample

        if rating == HealthRating.POOR and link.quality_level != LOW_PRESET:
            logger.warning(
                f"[Quality] ⚠️ Poor link to {link.peer_id} "
                f"(loss={loss_ratio:.1%}, jitter={stats.jitter_ms:.0f}ms), downgrading feed"
            )
            link.quality_level = LOW_PRESET
            link.connection.apply_remote_preset(LOW_PRESET)

        return sample

    async def _sample_loop(self, link: PeerLink):
        while not link.is_closed:
            await asyncio.sleep(self.settings.quality_sample_interval_seconds)
            try:
                await self.sample(link)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"[Quality] Stats sampling failed for {link.peer_id}: {e}")
