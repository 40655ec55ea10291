from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
import logging
import time

from ...services.storage import LocalRecordingStorage

router = APIRouter()
logger = logging.getLogger(__name__)

MAX_RECORDING_BYTES = 2 * 1024 * 1024 * 1024  # 2GB


def get_storage() -> LocalRecordingStorage:
    return LocalRecordingStorage()


@router.post("/api/calls/{call_id}/recording")
async def upload_call_recording(
    call_id: str,
    recording: UploadFile = File(...),
    storage: LocalRecordingStorage = Depends(get_storage),
):
    """
    Accept the finished recording of a call session.
    """
    artifact_id = recording.filename or f"recording-{call_id}-{int(time.time() * 1000)}.bin"

    data = bytearray()
    while content := await recording.read(1024 * 1024):  # 1MB chunks
        data.extend(content)
        if len(data) > MAX_RECORDING_BYTES:
            raise HTTPException(status_code=413, detail="Recording too large")

    if not data:
        raise HTTPException(status_code=400, detail="Empty recording")

    stored = await storage.upload_recording(
        call_id, artifact_id, bytes(data), recording.content_type or "application/octet-stream"
    )
    if not stored:
        raise HTTPException(status_code=500, detail="Failed to store recording")

    path = storage.path_for(call_id, artifact_id)
    logger.info(f"📼 Recording for call {call_id} stored at {path}")
    return {
        "call_id": call_id,
        "artifact_id": path.name,
        "size": len(data),
        "status": "stored",
    }
