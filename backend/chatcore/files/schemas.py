"""Pydantic schemas for attachment uploads.

- FileMetadata: File information stored in DuckDB
- FileUploadResponse: Body of POST /messages/upload
- FileType: Category derived from the MIME type
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List

from pydantic import BaseModel, Field


class FileType(str, Enum):
    """Supported file type categories.

    Files are categorized by MIME type:
    - IMAGE: JPEG, PNG, GIF, WebP, SVG
    - PDF: PDF documents
    - AUDIO: MP3, WAV, OGG, M4A, FLAC
    - DOCUMENT: Word, Excel, plain text, CSV
    - OTHER: Everything else
    """
    IMAGE = "image"
    PDF = "pdf"
    AUDIO = "audio"
    DOCUMENT = "document"
    OTHER = "other"


class FileMetadata(BaseModel):
    """Metadata for an uploaded attachment.

    ``stored_filename`` is the UUID-based name on disk; ``original_filename``
    is kept for display and for the download's Content-Disposition.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Unique file ID")
    user_id: str = Field(..., description="User ID who uploaded the file")
    original_filename: str = Field(..., description="Original filename")
    stored_filename: str = Field(..., description="Filename on disk (UUID-based)")
    file_type: FileType = Field(..., description="File type category")
    mime_type: str = Field(..., description="MIME type of the file")
    size_bytes: int = Field(..., description="File size in bytes")
    uploaded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class FileUploadResponse(BaseModel):
    """Response after a successful upload.

    ``fileUrl`` is the value to put in a file message's ``attachments``.
    """
    success: bool = True
    fileUrl: str = Field(..., description="URL to download the file")
    id: str
    original_filename: str
    file_type: FileType
    mime_type: str
    size_bytes: int


ALLOWED_MIME_TYPES: Dict[FileType, List[str]] = {
    FileType.IMAGE: [
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/svg+xml",
    ],
    FileType.PDF: [
        "application/pdf",
    ],
    FileType.AUDIO: [
        "audio/mpeg",
        "audio/mp3",
        "audio/wav",
        "audio/ogg",
        "audio/mp4",
        "audio/x-m4a",
        "audio/flac",
    ],
    FileType.DOCUMENT: [
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "text/plain",
        "text/csv",
    ],
}


def get_file_type(mime_type: str) -> FileType:
    """Categorize a MIME type; parameters such as ``; charset=`` are ignored.

    Examples:
        >>> get_file_type("image/png")
        <FileType.IMAGE: 'image'>
        >>> get_file_type("text/plain; charset=utf-8")
        <FileType.DOCUMENT: 'document'>
        >>> get_file_type("application/zip")
        <FileType.OTHER: 'other'>
    """
    base = (mime_type or "").split(";", 1)[0].strip().lower()
    for file_type, mime_types in ALLOWED_MIME_TYPES.items():
        if base in mime_types:
            return file_type
    return FileType.OTHER
