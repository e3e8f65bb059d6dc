import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from config import settings
from database import DatabaseManager, get_db_manager
from error_monitoring import error_monitor, setup_logging
from services.connectivity import StaticConnectivityProbe
from services.media_storage import LocalMediaStorage
from services.memory_repository import MemoryRepository
from services.memory_router import init_memory_router, router as memory_router
from services.memory_save_service import MemorySaveService
from services.processing_dispatcher import ProcessingDispatcher
from services.processing_queue import ProcessingQueue

logger = logging.getLogger(__name__)


def create_app(db: Optional[DatabaseManager] = None, media_dir: Optional[Path] = None) -> FastAPI:
    """Wire the memory services into a FastAPI app."""
    setup_logging()
    db = db or get_db_manager()
    db.initialize_database()

    media_dir = Path(media_dir or settings.media_dir)
    media_dir.mkdir(parents=True, exist_ok=True)

    repository = MemoryRepository(db)
    queue = ProcessingQueue(db)
    dispatcher = ProcessingDispatcher(repository, queue)
    # the server is always "online" for its own saves
    saver = MemorySaveService(
        StaticConnectivityProbe(True),
        LocalMediaStorage(media_dir),
        repository,
        queue,
    )
    init_memory_router(repository, queue, dispatcher, saver)

    # ---- FastAPI Setup ----
    app = FastAPI(title="Memories")
    app.include_router(memory_router)
    app.mount("/media", StaticFiles(directory=str(media_dir)), name="media")

    @app.get("/health")
    def health():
        database = db.health_check()
        return {
            "status": "ok" if database["connection_test"] else "degraded",
            "database": database,
            "errors": error_monitor.health_check(),
            "recent_errors": error_monitor.get_recent_errors(limit=10),
        }

    @app.on_event("shutdown")
    async def shutdown():
        await dispatcher.drain()
        db.close_all_connections()

    logger.info("Memories API ready (db=%s)", db.db_path)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=8082,
        log_level=settings.log_level.lower(),
    )
