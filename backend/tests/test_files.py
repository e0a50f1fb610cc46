"""Tests for attachment upload and download."""
import pytest

from chatcore.config import UploadSettings, set_config
from chatcore.errors import UploadError
from chatcore.files.schemas import FileType, get_file_type
from chatcore.files.service import FileStorageService

from conftest import make_config


class TestFileType:
    @pytest.mark.parametrize("mime,expected", [
        ("image/png", FileType.IMAGE),
        ("application/pdf", FileType.PDF),
        ("audio/mpeg", FileType.AUDIO),
        ("text/plain; charset=utf-8", FileType.DOCUMENT),
        ("application/zip", FileType.OTHER),
        ("", FileType.OTHER),
    ])
    def test_categories(self, mime, expected):
        assert get_file_type(mime) == expected


class TestFileStorageService:
    @pytest.mark.asyncio
    async def test_save_and_lookup(self, tmp_path):
        service = FileStorageService(str(tmp_path), ":memory:")
        metadata = await service.save_file("alice", "invoice.pdf", b"%PDF-1.4", "application/pdf")

        assert metadata.file_type == FileType.PDF
        assert metadata.stored_filename.endswith(".pdf")
        assert service.get_file(metadata.id).original_filename == "invoice.pdf"
        path = service.get_file_path(metadata.id)
        assert path.parent == tmp_path / "alice"
        assert path.read_bytes() == b"%PDF-1.4"

    @pytest.mark.asyncio
    async def test_rejects_empty_and_oversized(self, tmp_path):
        service = FileStorageService(str(tmp_path), ":memory:", max_file_bytes=4)

        with pytest.raises(UploadError) as empty:
            await service.save_file("alice", "a.txt", b"", "text/plain")
        assert empty.value.code == "file_empty"

        with pytest.raises(UploadError) as too_big:
            await service.save_file("alice", "a.txt", b"12345", "text/plain")
        assert too_big.value.code == "file_too_large"

    @pytest.mark.asyncio
    async def test_user_id_cannot_escape_upload_dir(self, tmp_path):
        service = FileStorageService(str(tmp_path / "uploads"), ":memory:")
        metadata = await service.save_file("../../etc", "x.bin", b"x", "application/octet-stream")

        path = service.get_file_path(metadata.id)
        assert (tmp_path / "uploads") in path.parents

    def test_unknown_file(self, tmp_path):
        service = FileStorageService(str(tmp_path), ":memory:")
        assert service.get_file("missing") is None
        assert service.get_file_path("missing") is None


class TestUploadEndpoint:
    def test_upload_then_download(self, api_client, auth_headers):
        response = api_client.post(
            "/messages/upload",
            files={"file": ("invoice.pdf", b"%PDF-1.4 test", "application/pdf")},
            headers=auth_headers("alice"),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["file_type"] == "pdf"
        assert body["fileUrl"] == f"http://testserver/files/download/{body['id']}"

        download = api_client.get(f"/files/download/{body['id']}")
        assert download.status_code == 200
        assert download.content == b"%PDF-1.4 test"
        assert download.headers["content-type"].startswith("application/pdf")

    def test_public_base_url(self, api_client, auth_headers, tmp_path):
        set_config(make_config(tmp_path, uploads=UploadSettings(
            upload_dir=str(tmp_path / "uploads"),
            db_path=":memory:",
            public_base_url="https://cdn.example.com/",
        )))
        body = api_client.post(
            "/messages/upload",
            files={"file": ("a.png", b"\x89PNG", "image/png")},
            headers=auth_headers("alice"),
        ).json()
        assert body["fileUrl"].startswith("https://cdn.example.com/files/download/")

    def test_empty_upload_is_400(self, api_client, auth_headers):
        response = api_client.post(
            "/messages/upload",
            files={"file": ("empty.txt", b"", "text/plain")},
            headers=auth_headers("alice"),
        )
        assert response.status_code == 400

    def test_oversized_upload_is_413(self, api_client, auth_headers):
        FileStorageService.get_instance().max_file_bytes = 8
        response = api_client.post(
            "/messages/upload",
            files={"file": ("big.bin", b"0123456789", "application/octet-stream")},
            headers=auth_headers("alice"),
        )
        assert response.status_code == 413

    def test_upload_requires_auth(self, api_client):
        response = api_client.post(
            "/messages/upload", files={"file": ("a.txt", b"hi", "text/plain")}
        )
        assert response.status_code == 401

    def test_download_unknown_file(self, api_client):
        assert api_client.get("/files/download/nope").status_code == 404
