"""
Memory Router

FastAPI endpoints for saving, listing, searching and deleting memories, user
title and date edits, and triggering / inspecting post-save processing.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Response

from config import settings
from models import (
    DispatchResponse,
    MemoryCreate,
    MemoryDateUpdate,
    MemoryOut,
    MemoryPageOut,
    MemorySaveOut,
    MemoryTypeFilter,
    ProcessingJobOut,
    TitleUpdate,
)
from services.capture_errors import CaptureError, DraftValidationError, ErrorCategory
from services.capture_state import CaptureDraft, normalize_tags
from services.memory_repository import MemoryPage, MemoryRepository
from services.memory_save_service import MemorySaveService
from services.processing_dispatcher import ProcessingDispatcher
from services.processing_queue import ProcessingQueue

logger = logging.getLogger(__name__)

# Set by init_memory_router() from app.py
repository: Optional[MemoryRepository] = None
processing_queue: Optional[ProcessingQueue] = None
dispatcher: Optional[ProcessingDispatcher] = None
save_service: Optional[MemorySaveService] = None

router = APIRouter(prefix="/api", tags=["memories"])


def init_memory_router(repo: MemoryRepository, queue: ProcessingQueue,
                       memory_dispatcher: ProcessingDispatcher, saver: MemorySaveService):
    """Initialize the memory router with its services"""
    global repository, processing_queue, dispatcher, save_service
    repository = repo
    processing_queue = queue
    dispatcher = memory_dispatcher
    save_service = saver


def _require(service):
    if service is None:
        raise HTTPException(status_code=503, detail="Memory services not initialized")
    return service


def _job_out(memory_id: str) -> Optional[ProcessingJobOut]:
    job = _require(processing_queue).get_job(memory_id)
    return ProcessingJobOut(**job.to_api()) if job else None


_CATEGORY_STATUS = {
    ErrorCategory.VALIDATION: 422,
    ErrorCategory.STORAGE_QUOTA: 413,
    ErrorCategory.PERMISSION: 403,
}


def _error_status(error: CaptureError) -> int:
    return _CATEGORY_STATUS.get(error.category, 503 if error.retryable else 400)


def _page_out(page: MemoryPage) -> MemoryPageOut:
    return MemoryPageOut(
        memories=[MemoryOut.from_record(record) for record in page.records],
        has_more=page.has_more,
        next_cursor=page.next_cursor,
        page=page.page,
    )


@router.post("/memories", response_model=MemorySaveOut)
async def create_memory(request: MemoryCreate):
    """Save a text memory; repeating a local_id returns the existing record."""
    draft = CaptureDraft(
        memory_type=request.memory_type,
        input_text=request.input_text,
        title=request.title,
        tags=normalize_tags(request.tags),
        latitude=request.latitude,
        longitude=request.longitude,
        location_status=request.location_status,
        captured_at=request.captured_at,
        memory_date=request.memory_date,
    )
    try:
        if not draft.can_save:
            raise DraftValidationError()
        result = await _require(save_service).save_memory(draft, request.local_id)
    except CaptureError as e:
        raise HTTPException(status_code=_error_status(e), detail={"code": e.code, "message": e.message})

    return MemorySaveOut(
        memory_id=result.memory_id,
        created=result.created,
        has_location=result.has_location,
        processing_scheduled=result.processing_scheduled,
        media_urls=result.media_urls,
    )


@router.get("/memories", response_model=MemoryPageOut)
async def list_memories(
    memory_type: MemoryTypeFilter = MemoryTypeFilter.ALL,
    cursor: Optional[str] = None,
    limit: int = Query(20, ge=1, le=100),
    q: Optional[str] = None,
    page: int = Query(1, ge=1),
):
    """Newest-first feed, or ranked full-text results when ``q`` is given."""
    repo = _require(repository)
    type_filter = memory_type.to_memory_type()
    if q and q.strip():
        return _page_out(repo.search_memories(
            settings.default_user_id, q.strip(), type_filter, page=page, page_size=limit
        ))
    try:
        result = repo.list_feed(settings.default_user_id, type_filter, cursor=cursor, limit=limit)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _page_out(result)


@router.get("/memories/{memory_id}", response_model=MemoryOut)
async def get_memory(memory_id: str):
    record = _require(repository).get_memory(memory_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Memory not found")
    return MemoryOut.from_record(record, _job_out(memory_id))


@router.patch("/memories/{memory_id}/title", response_model=MemoryOut)
async def update_title(memory_id: str, update: TitleUpdate):
    """User title edit. Processing never overwrites it afterwards."""
    title = update.title.strip()
    if not title:
        raise HTTPException(status_code=422, detail="Title cannot be blank")
    record = _require(repository).update_user_title(memory_id, title)
    if record is None:
        raise HTTPException(status_code=404, detail="Memory not found")
    return MemoryOut.from_record(record, _job_out(memory_id))


@router.patch("/memories/{memory_id}/date", response_model=MemoryOut)
async def update_memory_date(memory_id: str, update: MemoryDateUpdate):
    record = _require(repository).update_memory_date(memory_id, update.memory_date)
    if record is None:
        raise HTTPException(status_code=404, detail="Memory not found")
    return MemoryOut.from_record(record, _job_out(memory_id))


@router.delete("/memories/{memory_id}", status_code=204)
async def delete_memory(memory_id: str):
    if not _require(repository).delete_memory(memory_id):
        raise HTTPException(status_code=404, detail="Memory not found")
    logger.info("Deleted memory %s", memory_id)
    return Response(status_code=204)


@router.post("/processing/dispatch", response_model=DispatchResponse)
async def dispatch_processing(wait: bool = False):
    """Claim scheduled jobs and start their processors."""
    summary = await _require(dispatcher).dispatch(wait=wait)
    return DispatchResponse(**summary.to_dict())


@router.get("/processing/{memory_id}", response_model=ProcessingJobOut)
async def get_processing_status(memory_id: str):
    job = _job_out(memory_id)
    if job is None:
        raise HTTPException(status_code=404, detail="No processing job for this memory")
    return job
