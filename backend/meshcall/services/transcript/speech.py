"""
Speech-to-text engine contract.

The coordinator only starts and stops the engine; recognized text comes back
through the on_fragment callback as (text, is_final) pairs.
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional


class SpeechEngine(ABC):
    def __init__(self):
        self.on_fragment: Optional[Callable[[str, bool], None]] = None
        # Called when recognition restarts after a pause or error
        self.on_restart: Optional[Callable[[], None]] = None

    @abstractmethod
    async def start(self):
        """Begin recognizing the local microphone."""

    @abstractmethod
    async def stop(self):
        """Stop recognizing. No fragment is emitted after this returns."""

    def emit(self, text: str, is_final: bool):
        if self.on_fragment:
            self.on_fragment(text, is_final)

    def emit_restart(self):
        if self.on_restart:
            self.on_restart()
