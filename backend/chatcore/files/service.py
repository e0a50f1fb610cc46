"""Attachment storage service.

Handles file storage on disk and metadata tracking in DuckDB.
Files are stored in: {upload_dir}/{user_id}/{uuid}{ext}
"""
import logging
import re
import uuid
from datetime import timezone
from pathlib import Path
from typing import Optional

import duckdb

from chatcore.config import get_config
from chatcore.errors import UploadError

from .schemas import FileMetadata, FileType, get_file_type

logger = logging.getLogger(__name__)

_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class FileStorageService:
    """Singleton service for attachment uploads."""

    _instance: Optional["FileStorageService"] = None
    _upload_dir: str = "uploads"
    _db_path: str = "file_metadata.duckdb"

    def __init__(
        self,
        upload_dir: Optional[str] = None,
        db_path: Optional[str] = None,
        max_file_bytes: Optional[int] = None,
    ):
        if upload_dir:
            self._upload_dir = upload_dir
        if db_path:
            self._db_path = db_path
        self.max_file_bytes = max_file_bytes or get_config().uploads.max_file_bytes

        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        Path(self._upload_dir).mkdir(parents=True, exist_ok=True)
        self._initialize_db()

    @classmethod
    def get_instance(
        cls,
        upload_dir: Optional[str] = None,
        db_path: Optional[str] = None,
    ) -> "FileStorageService":
        """Get or create the singleton instance (paths default to the config)."""
        if cls._instance is None:
            uploads = get_config().uploads
            cls._instance = cls(upload_dir or uploads.upload_dir, db_path or uploads.db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        if cls._instance and cls._instance._connection:
            cls._instance._connection.close()
        cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS file_metadata (
                id VARCHAR PRIMARY KEY,
                user_id VARCHAR NOT NULL,
                original_filename VARCHAR NOT NULL,
                stored_filename VARCHAR NOT NULL,
                file_type VARCHAR NOT NULL,
                mime_type VARCHAR NOT NULL,
                size_bytes BIGINT NOT NULL,
                uploaded_at TIMESTAMP NOT NULL
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_file_user_id ON file_metadata(user_id)")

    def _get_user_dir(self, user_id: str) -> Path:
        # User ids come from tokens; never let one escape the upload dir.
        safe_name = _UNSAFE_PATH_CHARS.sub("_", user_id).lstrip(".") or "_"
        return Path(self._upload_dir) / safe_name

    async def save_file(
        self,
        user_id: str,
        filename: str,
        content: bytes,
        mime_type: str,
    ) -> FileMetadata:
        """Save an uploaded file to disk and record its metadata.

        Args:
            user_id: Uploader (from the verified token)
            filename: Original filename
            content: File content as bytes
            mime_type: MIME type reported by the client

        Returns:
            FileMetadata for the stored file

        Raises:
            UploadError: If the file is empty, too large, or cannot be stored
        """
        size_bytes = len(content)
        if size_bytes == 0:
            raise UploadError("File is empty", code="file_empty")
        if size_bytes > self.max_file_bytes:
            raise UploadError(
                f"File size ({size_bytes} bytes) exceeds limit ({self.max_file_bytes} bytes)",
                code="file_too_large",
            )

        file_id = str(uuid.uuid4())
        ext = Path(filename).suffix.lower()
        if not re.fullmatch(r"\.[a-z0-9]{1,10}", ext):
            ext = ""
        metadata = FileMetadata(
            id=file_id,
            user_id=user_id,
            original_filename=Path(filename).name or "unnamed",
            stored_filename=f"{file_id}{ext}",
            file_type=get_file_type(mime_type),
            mime_type=mime_type,
            size_bytes=size_bytes,
        )

        user_dir = self._get_user_dir(user_id)
        file_path = user_dir / metadata.stored_filename
        try:
            user_dir.mkdir(parents=True, exist_ok=True)
            file_path.write_bytes(content)
            self._get_connection().execute(
                """
                INSERT INTO file_metadata
                (id, user_id, original_filename, stored_filename,
                 file_type, mime_type, size_bytes, uploaded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    metadata.id,
                    metadata.user_id,
                    metadata.original_filename,
                    metadata.stored_filename,
                    metadata.file_type.value,
                    metadata.mime_type,
                    metadata.size_bytes,
                    metadata.uploaded_at.replace(tzinfo=None),
                ],
            )
        except (OSError, duckdb.Error) as e:
            file_path.unlink(missing_ok=True)
            logger.error(f"Failed to store upload {filename} for {user_id}: {e}")
            raise UploadError(f"Could not store file: {e}", code="storage_failed") from e

        logger.info(f"Saved file: {file_path} ({size_bytes} bytes, {metadata.file_type.value})")
        return metadata

    def get_file(self, file_id: str) -> Optional[FileMetadata]:
        """Get file metadata by ID."""
        row = self._get_connection().execute(
            """
            SELECT id, user_id, original_filename, stored_filename,
                   file_type, mime_type, size_bytes, uploaded_at
            FROM file_metadata
            WHERE id = ?
            """,
            [file_id],
        ).fetchone()
        if not row:
            return None

        return FileMetadata(
            id=row[0],
            user_id=row[1],
            original_filename=row[2],
            stored_filename=row[3],
            file_type=FileType(row[4]),
            mime_type=row[5],
            size_bytes=row[6],
            uploaded_at=row[7].replace(tzinfo=timezone.utc),
        )

    def get_file_path(self, file_id: str) -> Optional[Path]:
        """Path on disk for a file ID, or None if it is gone."""
        metadata = self.get_file(file_id)
        if not metadata:
            return None

        file_path = self._get_user_dir(metadata.user_id) / metadata.stored_filename
        if not file_path.exists():
            return None
        return file_path
