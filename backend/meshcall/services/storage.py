"""
Recording Storage Module

Hands finished call recordings to their destination: either the call server's
upload endpoint over HTTP, or the local filesystem.
"""

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import aiofiles
import httpx

logger = logging.getLogger(__name__)

# Configuration
STORAGE_TYPE = os.getenv("STORAGE_TYPE", "local").lower()  # 'local' or 'http'
RECORDING_STORAGE_PATH = os.getenv("RECORDING_STORAGE_PATH", "./data/recordings")
RECORDING_UPLOAD_URL = os.getenv("RECORDING_UPLOAD_URL", "http://localhost:5167")
RECORDING_UPLOAD_TOKEN = os.getenv("RECORDING_UPLOAD_TOKEN")


class RecordingStorage(ABC):
    """Destination for one finished artifact per recording session."""

    @abstractmethod
    async def upload_recording(
        self, call_id: str, artifact_id: str, data: bytes, content_type: str
    ) -> bool:
        """
        Store one artifact.

        Returns:
            bool: True if the artifact was stored
        """


class HttpRecordingStorage(RecordingStorage):
    """
    Uploads recordings as multipart form data to
    `{base_url}/api/calls/{call_id}/recording` (form field "recording").

    Args:
        base_url: Call server base URL
        token: Optional bearer token
        timeout: Request timeout in seconds
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: str = RECORDING_UPLOAD_URL,
        token: Optional[str] = RECORDING_UPLOAD_TOKEN,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.transport = transport

    async def upload_recording(
        self, call_id: str, artifact_id: str, data: bytes, content_type: str
    ) -> bool:
        url = f"{self.base_url}/api/calls/{call_id}/recording"
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        files = {"recording": (artifact_id, data, content_type)}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, files=files, headers=headers)
                response.raise_for_status()
            logger.info(f"✅ Uploaded {artifact_id} ({len(data)} bytes) to {url}")
            return True
        except httpx.HTTPStatusError as e:
            logger.error(
                f"❌ Recording upload rejected: HTTP {e.response.status_code} {e.response.text[:200]}"
            )
            return False
        except httpx.HTTPError as e:
            logger.error(f"❌ Recording upload failed: {e}")
            return False


class LocalRecordingStorage(RecordingStorage):
    """Writes recordings to `{base_path}/{call_id}/{artifact_id}`."""

    def __init__(self, base_path: str = RECORDING_STORAGE_PATH):
        self.base_path = Path(base_path)

    def path_for(self, call_id: str, artifact_id: str) -> Path:
        # Only the final path component of either id is used
        return self.base_path / Path(call_id).name / Path(artifact_id).name

    async def upload_recording(
        self, call_id: str, artifact_id: str, data: bytes, content_type: str
    ) -> bool:
        try:
            dest_path = self.path_for(call_id, artifact_id)
            dest_path.parent.mkdir(parents=True, exist_ok=True)

            async with aiofiles.open(dest_path, "wb") as f:
                await f.write(data)

            logger.info(f"✅ Saved recording locally: {dest_path} ({len(data)} bytes)")
            return True
        except Exception as e:
            logger.error(f"Local save bytes failed: {e}")
            return False


def get_recording_storage() -> RecordingStorage:
    """Storage selected by STORAGE_TYPE."""
    if STORAGE_TYPE == "http":
        return HttpRecordingStorage()
    return LocalRecordingStorage()
