"""Shared fixtures: every test gets its own SQLite files and media root."""

import pytest

from database import DatabaseManager
from error_monitoring import error_monitor
from services.capture_errors import RetryConfig
from services.connectivity import StaticConnectivityProbe
from services.media_storage import LocalMediaStorage
from services.memory_repository import MemoryRepository
from services.memory_save_service import MemorySaveService
from services.offline_memory_queue import OfflineMemoryQueue
from services.processing_queue import ProcessingQueue


@pytest.fixture(autouse=True)
def reset_error_monitor():
    error_monitor.reset()
    yield
    error_monitor.reset()


@pytest.fixture
def db(tmp_path):
    manager = DatabaseManager(tmp_path / "memories.db")
    manager.initialize_database()
    yield manager
    manager.close_all_connections()


@pytest.fixture
def repository(db):
    return MemoryRepository(db)


@pytest.fixture
def processing_queue(db):
    return ProcessingQueue(db)


@pytest.fixture
def offline_queue(tmp_path):
    return OfflineMemoryQueue(str(tmp_path / "offline_queue.db"))


@pytest.fixture
def connectivity():
    return StaticConnectivityProbe(True)


@pytest.fixture
def media_storage(tmp_path):
    return LocalMediaStorage(tmp_path / "media", "http://media.test")


@pytest.fixture
def save_service(connectivity, media_storage, repository, processing_queue):
    return MemorySaveService(
        connectivity,
        media_storage,
        repository,
        processing_queue,
        upload_retry=RetryConfig(max_attempts=3, base_delay=0.0),
        upload_timeout=1.0,
    )


@pytest.fixture
def make_file(tmp_path):
    def _make(name, content=b"data"):
        path = tmp_path / "device" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return str(path)

    return _make
