"""Shared test fixtures and configuration for backend tests."""
import anyio.from_thread
import pytest
from fastapi.testclient import TestClient

from chatcore.auth.service import TokenVerifier, UserRole, set_verifier
from chatcore.chat.manager import manager
from chatcore.config import (
    AppConfig,
    PresenceSettings,
    StorageSettings,
    UploadSettings,
    reset_config,
    set_config,
)
from chatcore.files.service import FileStorageService
from chatcore.main import app
from chatcore.storage.service import MessageStore

TEST_SECRET = "test-secret"


def make_config(tmp_path, **overrides) -> AppConfig:
    """AppConfig pointing every store at memory / tmp_path."""
    values = dict(
        storage=StorageSettings(db_path=":memory:"),
        uploads=UploadSettings(upload_dir=str(tmp_path / "uploads"), db_path=":memory:"),
        presence=PresenceSettings(),
    )
    values.update(overrides)
    return AppConfig(**values)


@pytest.fixture(autouse=True)
def messaging_env(tmp_path):
    """Fresh config, verifier, stores and presence registry for every test.

    Stores are in-memory so tests never touch messages.duckdb or
    file_metadata.duckdb in the working directory.
    """
    set_config(make_config(tmp_path))
    set_verifier(TokenVerifier(TEST_SECRET))
    MessageStore.reset_instance()
    MessageStore.get_instance(db_path=":memory:")
    FileStorageService.reset_instance()
    FileStorageService.get_instance(upload_dir=str(tmp_path / "uploads"), db_path=":memory:")
    manager.registry.clear()
    yield
    manager.registry.clear()
    MessageStore.reset_instance()
    FileStorageService.reset_instance()
    set_verifier(None)
    reset_config()


@pytest.fixture
def store() -> MessageStore:
    return MessageStore.get_instance()


@pytest.fixture
def make_token():
    """Issue a token signed with the test secret."""
    verifier = TokenVerifier(TEST_SECRET)

    def _make(user_id: str, role: UserRole = UserRole.CUSTOMER, **claims) -> str:
        return verifier.issue(user_id, role, **claims)

    return _make


@pytest.fixture
def auth_headers(make_token):
    def _headers(user_id: str, **claims) -> dict:
        return {"Authorization": f"Bearer {make_token(user_id, **claims)}"}

    return _headers


@pytest.fixture
def api_client():
    """Provide a TestClient for the main FastAPI app.

    Not used as a context manager, so the lifespan (which opens the
    configured on-disk stores) does not run. All requests and sockets
    share one event loop, as they do under a real server.
    """
    client = TestClient(app)
    with anyio.from_thread.start_blocking_portal(**client.async_backend) as portal:
        client.portal = portal
        yield client
        client.portal = None
