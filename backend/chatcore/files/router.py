"""FastAPI router for attachment upload and download."""
import logging

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse

from chatcore.auth.dependencies import get_current_user
from chatcore.auth.service import AuthenticatedUser
from chatcore.config import get_config
from chatcore.errors import UploadError

from .schemas import FileUploadResponse
from .service import FileStorageService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["files"])

_UPLOAD_STATUS = {"file_too_large": 413, "storage_failed": 500}


def get_download_url(request: Request, file_id: str) -> str:
    """Absolute download URL, based on ``uploads.public_base_url`` when set."""
    base_url = get_config().uploads.public_base_url or str(request.base_url)
    return f"{base_url.rstrip('/')}/files/download/{file_id}"


@router.post("/messages/upload", response_model=FileUploadResponse)
async def upload_file(
    request: Request,
    file: UploadFile = File(...),
    user: AuthenticatedUser = Depends(get_current_user),
):
    """Upload an attachment for a file message.

    The returned ``fileUrl`` goes into the ``attachments`` of a ``file``
    message (or into a pending attachment on the client).

    Raises:
        HTTPException 413: If the file exceeds the size limit
        HTTPException 400: If the file is empty
        HTTPException 500: If the file cannot be stored
    """
    content = await file.read()
    mime_type = file.content_type or "application/octet-stream"

    try:
        metadata = await FileStorageService.get_instance().save_file(
            user_id=user.id,
            filename=file.filename or "unnamed",
            content=content,
            mime_type=mime_type,
        )
    except UploadError as e:
        raise HTTPException(status_code=_UPLOAD_STATUS.get(e.code, 400), detail=e.message)

    logger.info(
        f"File uploaded: {metadata.original_filename} "
        f"({metadata.size_bytes} bytes) by {user.id}"
    )
    return FileUploadResponse(
        fileUrl=get_download_url(request, metadata.id),
        id=metadata.id,
        original_filename=metadata.original_filename,
        file_type=metadata.file_type,
        mime_type=metadata.mime_type,
        size_bytes=metadata.size_bytes,
    )


@router.get("/files/download/{file_id}")
async def download_file(file_id: str):
    """Download an attachment by ID.

    Attachment URLs are embedded in messages and opened directly by
    browsers, so this route takes no token; file ids are unguessable UUIDs.
    """
    service = FileStorageService.get_instance()

    metadata = service.get_file(file_id)
    if not metadata:
        raise HTTPException(status_code=404, detail="File not found")

    file_path = service.get_file_path(file_id)
    if not file_path:
        raise HTTPException(status_code=404, detail="File not found on disk")

    return FileResponse(
        path=file_path,
        filename=metadata.original_filename,
        media_type=metadata.mime_type,
    )
