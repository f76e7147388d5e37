# api/files.py
import uuid
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Request, UploadFile
from pydantic import BaseModel, ConfigDict

from api.security import require_session
from common.errors import InvalidRequest, PayloadTooLarge
from common.logging_setup import get_logger

log = get_logger("api.files")

router = APIRouter(prefix="/api", tags=["files"])

COPY_CHUNK = 1024 * 1024


class FileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    session_id: str
    message_id: Optional[int] = None
    filename: str
    mime_type: str
    size_bytes: int
    created_at: datetime


def _save(upload: UploadFile, dest: Path, limit: int) -> int:
    size = 0
    try:
        with open(dest, "wb") as out:
            while True:
                block = upload.file.read(COPY_CHUNK)
                if not block:
                    break
                size += len(block)
                if size > limit:
                    raise PayloadTooLarge(f"{upload.filename} exceeds {limit} bytes", limit=limit)
                out.write(block)
    except BaseException:
        dest.unlink(missing_ok=True)
        raise
    return size


@router.post("/upload", response_model=List[FileOut])
def upload_files(
    request: Request,
    files: List[UploadFile] = File(...),
    session_id: str = Depends(require_session),
):
    settings = request.app.state.settings
    store = request.app.state.store
    if not files:
        raise InvalidRequest("No files uploaded")

    target = Path(settings.upload_dir) / session_id
    target.mkdir(parents=True, exist_ok=True)

    saved = []
    for upload in files:
        name = Path(upload.filename or "upload").name or "upload"
        file_id = str(uuid.uuid4())
        dest = target / f"{file_id}{Path(name).suffix}"
        size = _save(upload, dest, settings.max_upload_bytes)
        mime = upload.content_type or "application/octet-stream"
        saved.append(store.add_file(session_id, name, mime, size, str(dest), file_id=file_id))
        log.info("Stored upload %s (%s, %d bytes) for session %s", name, mime, size, session_id)
    return saved
