"""
Recorder backends: turn a set of live tracks into a stream of binary chunks.
"""

import asyncio
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

import aiofiles
from aiortc.contrib.media import MediaRecorder

from ..media.local import get_media_relay

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[bytes], None]


class RecorderBackend(ABC):
    extension = "bin"
    content_type = "application/octet-stream"

    @abstractmethod
    async def start(self, tracks: List, on_chunk: ChunkCallback):
        """Start mixing `tracks` into one stream, emitting chunks to on_chunk."""

    @abstractmethod
    async def stop(self):
        """Stop recording. Every remaining chunk is emitted before this returns."""


class AiortcRecorderBackend(RecorderBackend):
    """
    Records with aiortc's MediaRecorder into an MPEG-TS file and tails the file
    into chunks every `timeslice_seconds`.

    MPEG-TS is a streamable container, so every chunk boundary is valid and
    concatenating the chunks reproduces the file.
    """

    extension = "ts"
    content_type = "video/mp2t"

    def __init__(self, timeslice_seconds: float = 1.0, directory: Optional[str] = None):
        self.timeslice_seconds = timeslice_seconds
        self.directory = directory
        self._recorder: Optional[MediaRecorder] = None
        self._path: Optional[str] = None
        self._offset = 0
        self._on_chunk: Optional[ChunkCallback] = None
        self._tail_task: Optional[asyncio.Task] = None

    async def start(self, tracks: List, on_chunk: ChunkCallback):
        fd, self._path = tempfile.mkstemp(suffix=f".{self.extension}", dir=self.directory)
        os.close(fd)
        self._offset = 0
        self._on_chunk = on_chunk

        self._recorder = MediaRecorder(self._path, format="mpegts")
        relay = get_media_relay()
        for track in tracks:
            self._recorder.addTrack(relay.subscribe(track))
        await self._recorder.start()

        self._tail_task = asyncio.create_task(self._tail())
        logger.info(f"🎙️ Recording {len(tracks)} track(s) to {self._path}")

    async def stop(self):
        if self._tail_task:
            self._tail_task.cancel()
            try:
                await self._tail_task
            except asyncio.CancelledError:
                pass
            self._tail_task = None

        try:
            if self._recorder:
                await self._recorder.stop()
            await self._read_new()
        finally:
            self._recorder = None
            if self._path and os.path.exists(self._path):
                os.remove(self._path)
            self._path = None

    async def _tail(self):
        while True:
            await asyncio.sleep(self.timeslice_seconds)
            await self._read_new()

    async def _read_new(self):
        if not self._path:
            return
        async with aiofiles.open(self._path, "rb") as f:
            await f.seek(self._offset)
            data = await f.read()
        if data:
            self._offset += len(data)
            self._on_chunk(data)
