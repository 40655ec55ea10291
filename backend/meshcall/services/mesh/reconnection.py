"""
Bounded reconnection of failed peer links.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional

from ...core.config import CallSettings
from ...core.errors import PeerConnectionError
from ..signaling.link import PeerLink, PeerState
from ..signaling.orchestrator import PeerLinkListener

logger = logging.getLogger(__name__)


class ReconnectionController(PeerLinkListener):
    """
    Restarts FAILED links after a fixed delay, at most `reconnect_max_attempts`
    times in a row.

    Once the attempts are used up the link stays FAILED and a single
    PeerConnectionError is handed to `on_terminal_failure`.

    Args:
        restart: Called with a peer id when its restart delay has elapsed
        on_terminal_failure: Called once per peer when reconnection gives up
        settings: Call settings (attempt limit, delay)
    """

    def __init__(
        self,
        restart: Callable[[str], None],
        on_terminal_failure: Callable[[PeerLink, PeerConnectionError], None],
        settings: Optional[CallSettings] = None,
    ):
        self._restart = restart
        self._on_terminal_failure = on_terminal_failure
        self.settings = settings or CallSettings()
        self._timers: Dict[str, asyncio.Task] = {}

    def on_state_change(self, link: PeerLink, old: PeerState, new: PeerState):
        if new == PeerState.CONNECTED and link.reconnect_attempts:
            logger.info(
                f"[Reconnect] ✅ {link.peer_id} recovered after "
                f"{link.reconnect_attempts} attempt(s)"
            )
            link.reconnect_attempts = 0

        if new == PeerState.FAILED:
            self._handle_failure(link)
        else:
            # Left FAILED by other means, or closed
            self.cancel(link.peer_id)

    def _handle_failure(self, link: PeerLink):
        self.cancel(link.peer_id)

        if link.reconnect_attempts >= self.settings.reconnect_max_attempts:
            if link.terminal_notified:
                return
            link.terminal_notified = True
            error = PeerConnectionError(
                f"Connection to {link.peer_id} failed after "
                f"{link.reconnect_attempts} reconnection attempt(s)",
                peer_id=link.peer_id,
            )
            logger.error(f"[Reconnect] ❌ {error.message}")
            self._on_terminal_failure(link, error)
            return

        link.reconnect_attempts += 1
        logger.warning(
            f"[Reconnect] {link.peer_id} failed, attempt {link.reconnect_attempts}/"
            f"{self.settings.reconnect_max_attempts} in {self.settings.reconnect_delay_seconds}s"
        )
        self._timers[link.peer_id] = asyncio.create_task(self._restart_later(link))

    async def _restart_later(self, link: PeerLink):
        await asyncio.sleep(self.settings.reconnect_delay_seconds)
        self._timers.pop(link.peer_id, None)
        if link.state == PeerState.FAILED:
            self._restart(link.peer_id)

    def on_link_removed(self, link: PeerLink):
        self.cancel(link.peer_id)

    def has_pending(self, peer_id: str) -> bool:
        return peer_id in self._timers

    def cancel(self, peer_id: str):
        task = self._timers.pop(peer_id, None)
        if task and not task.done():
            task.cancel()

    def cancel_all(self):
        for peer_id in list(self._timers):
            self.cancel(peer_id)
