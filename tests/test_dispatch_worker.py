"""Tests for the cron-style dispatch worker script."""

import importlib.util
from pathlib import Path
from unittest.mock import patch

import pytest

import llm_utils
from database import DatabaseManager
from services.memory_repository import MemoryRepository
from services.processing_queue import ProcessingQueue

WORKER_PATH = Path(__file__).resolve().parent.parent / "scripts" / "dispatch_worker.py"


@pytest.fixture
def worker():
    spec = importlib.util.spec_from_file_location("dispatch_worker", WORKER_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_single_run_processes_scheduled_jobs(tmp_path, worker):
    db_path = tmp_path / "worker.db"
    db = DatabaseManager(db_path)
    repository = MemoryRepository(db)
    queue = ProcessingQueue(db)
    memory_id, _ = repository.insert_memory("user-1", "w1", {"memory_type": "moment", "input_text": "hi"})
    queue.schedule(memory_id, "moment")

    with patch.object(llm_utils, "ollama_clean_text", return_value="Hi."), \
         patch.object(llm_utils, "ollama_generate_title", return_value="Hello"):
        assert worker.main(["--db", str(db_path)]) == 0

    assert queue.get_job(memory_id).state == "complete"
    assert repository.get_memory(memory_id).title == "Hello"
    db.close_all_connections()
