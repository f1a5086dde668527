"""
FastAPI Main Application
-----------------------
This is the main application file that defines the FastAPI app and endpoints.
It exposes the upload queue to partner-facing clients: the intake surface that
accepts spreadsheets, the status view, and the duplicate review surface.
"""

import asyncio
import contextlib
import logging
import time
import traceback
from typing import List, Optional

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError

from qurban_upload.config import Settings, get_settings
from qurban_upload.core.exceptions import EntryNotFoundError, EntryStateError
from qurban_upload.core.upload_queue import UploadQueueCoordinator
from qurban_upload.models.data_models import (
    DuplicateDetectionConfig,
    DuplicatePair,
    QueueEntry,
    RecordKind,
)
from qurban_upload.storage import InMemoryRecordStore, RecordStore, SupabaseRecordStore

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


class ReviewResponse(BaseModel):
    """The file under review and the duplicates still waiting for a decision."""
    entry: QueueEntry
    awaiting_decision: List[DuplicatePair]


class CancelResponse(BaseModel):
    entry_id: str
    cancelled: bool


def build_store(settings: Settings) -> RecordStore:
    if settings.use_supabase:
        logger.info("Using Supabase record store")
        return SupabaseRecordStore(settings.supabase_url, settings.supabase_key)
    logger.warning("SUPABASE_URL/SUPABASE_KEY not set, using in-memory record store")
    return InMemoryRecordStore()


def create_app(store: Optional[RecordStore] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the API application.

    The coordinator's worker runs as a background task for the lifetime of the app.

    Args:
        store: Record store to use, defaults to one built from the settings
        settings: Application settings, defaults to the environment

    Returns:
        FastAPI: The configured application
    """
    settings = settings or get_settings()
    coordinator = UploadQueueCoordinator(
        store=store or build_store(settings),
        policy=settings.review_policy(),
        default_config=settings.detection_config(),
    )

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        worker = asyncio.create_task(coordinator.run())
        logger.info("Upload queue worker started")
        try:
            yield
        finally:
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker
            logger.info("Upload queue worker stopped")

    app = FastAPI(
        title="Qurban Upload API",
        description="API for uploading donor and distribution spreadsheets with duplicate review",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.coordinator = coordinator
    app.state.settings = settings

    # Add CORS middleware to allow cross-origin requests
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_coordinator(request: Request) -> UploadQueueCoordinator:
        return request.app.state.coordinator

    def get_entry_or_404(request: Request, entry_id: str) -> QueueEntry:
        try:
            return get_coordinator(request).get_entry(entry_id)
        except EntryNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.get("/")
    async def root():
        """Root endpoint that returns a simple health check message."""
        return {"message": "Qurban Upload API is running!"}

    @app.get("/api/health")
    async def health_check(request: Request):
        """Health check endpoint to verify API is running."""
        coordinator = get_coordinator(request)
        review = coordinator.current_review
        return {
            "status": "healthy",
            "version": VERSION,
            "timestamp": time.time(),
            "queued": coordinator.pending_count,
            "reviewing": review.id if review else None,
        }

    @app.post("/api/uploads", response_model=QueueEntry)
    async def upload_file(
        request: Request,
        file: UploadFile = File(...),
        record_kind: Optional[str] = Form(None),
        strict_mode: Optional[bool] = Form(None),
        action: Optional[str] = Form(None),
        tolerance: Optional[float] = Form(None),
    ):
        """
        Accept an uploaded spreadsheet into the processing queue.

        Args:
            file: The CSV or Excel file to process
            record_kind: "muzakki" or "distribusi"; detected from the headers if omitted
            strict_mode: Disable fuzzy matching for this file
            action: Default duplicate resolution (skip, update, merge or prompt)
            tolerance: Minimum similarity (0-1) for a fuzzy duplicate

        Returns:
            QueueEntry: The queued entry, in status pending

        Raises:
            HTTPException: If the record kind or the duplicate policy is invalid
        """
        try:
            kind = RecordKind(record_kind) if record_kind else None
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown record kind: {record_kind}")

        defaults = request.app.state.settings.detection_config()
        overrides = {
            key: value
            for key, value in {"strict_mode": strict_mode, "action": action, "tolerance": tolerance}.items()
            if value is not None
        }
        try:
            config = DuplicateDetectionConfig(**{**defaults.model_dump(), **overrides})
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=f"Invalid duplicate policy: {str(e)}")

        try:
            content = await file.read()
            entry = get_coordinator(request).enqueue(file.filename or "upload", content, kind=kind, config=config)
            logger.info(f"Received upload {file.filename} ({len(content)} bytes) as entry {entry.id}")
            return entry
        except Exception as e:
            logger.error(f"Error in upload_file: {str(e)}\n{traceback.format_exc()}")
            raise HTTPException(status_code=500, detail=f"Error accepting upload: {str(e)}")

    @app.get("/api/uploads", response_model=List[QueueEntry])
    async def list_uploads(request: Request):
        """List every upload with its status and progress."""
        return get_coordinator(request).list_entries()

    @app.get("/api/uploads/{entry_id}", response_model=QueueEntry)
    async def get_upload(request: Request, entry_id: str):
        """Return one upload with its status, error and result."""
        return get_entry_or_404(request, entry_id)

    @app.post("/api/uploads/{entry_id}/retry", response_model=QueueEntry)
    async def retry_upload(request: Request, entry_id: str):
        """Put a failed or cancelled upload back into the queue."""
        get_entry_or_404(request, entry_id)
        try:
            return get_coordinator(request).retry(entry_id)
        except EntryStateError as e:
            raise HTTPException(status_code=409, detail=str(e))

    @app.delete("/api/uploads/{entry_id}")
    async def remove_upload(request: Request, entry_id: str):
        """Remove an upload that is not being processed."""
        get_entry_or_404(request, entry_id)
        try:
            get_coordinator(request).remove(entry_id)
        except EntryStateError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"entry_id": entry_id, "removed": True}

    @app.get("/api/review", response_model=ReviewResponse)
    async def get_review(request: Request):
        """
        Return the upload that is waiting for a duplicate decision.

        Raises:
            HTTPException: 404 if no upload is under review
        """
        entry = get_coordinator(request).current_review
        if entry is None or entry.result is None:
            raise HTTPException(status_code=404, detail="No upload is awaiting review")
        return ReviewResponse(entry=entry, awaiting_decision=entry.result.duplicates.awaiting_review())

    @app.post("/api/review/{entry_id}/decision", response_model=QueueEntry)
    async def submit_decision(request: Request, entry_id: str, decision: DuplicateDetectionConfig):
        """
        Resolve the review of an upload.

        Args:
            entry_id: The upload under review
            decision: Final policy; action must not be "prompt". Per-row choices go in
                row_actions, keyed by row number

        Raises:
            HTTPException: 400 for a non-final decision, 409 if the upload is not under review
        """
        entry = get_entry_or_404(request, entry_id)
        try:
            get_coordinator(request).submit_decision(entry_id, decision)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except EntryStateError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return entry

    @app.post("/api/review/{entry_id}/cancel", response_model=CancelResponse)
    async def cancel_review(request: Request, entry_id: str):
        """Cancel the review of an upload. Cancelling twice is harmless."""
        get_entry_or_404(request, entry_id)
        cancelled = get_coordinator(request).cancel_review(entry_id)
        return CancelResponse(entry_id=entry_id, cancelled=cancelled)

    return app
