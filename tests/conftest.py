import pytest

from app.utils.config import Settings
from app.utils.database import DatabaseClient
from domains.file_ingest.processors.status_store import StatusStore
from tests.helpers import FakeUploader


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        sync_folder_root=str(tmp_path),
        database_url="sqlite://",
        webhook_host="webhook.test",
        webhook_jwt=None,
        file_extensions="",
    )


@pytest.fixture
def db():
    client = DatabaseClient("sqlite://", echo=False)
    client.connect()
    client.init_tables()
    yield client
    client.close()


@pytest.fixture
def store(db) -> StatusStore:
    return StatusStore(db)


@pytest.fixture
def uploader() -> FakeUploader:
    return FakeUploader()
