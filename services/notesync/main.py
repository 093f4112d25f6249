"""Timeline Notesync - local FastAPI service used by the Timeline UI."""

import base64
import binascii
import logging
import os
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

import httpx
from fastapi import FastAPI, Request, status, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from shared.config import get_auth_config, get_data_dir, get_notesync_config
from shared.content_store import MediaStore
from shared.db_operations import DatabaseOperations
from shared.encryption import EncryptionService
from shared.models import Note
from services.notesync.auth import AuthExchangeClient, AuthRefreshClient, AuthSessionManager
from services.notesync.batcher import NotesyncBatcher
from services.notesync.client import NotesyncClient
from services.notesync.credentials import DatabaseCredentialStore
from services.notesync.errors import (
    AuthenticationError, NotesyncHTTPError, OperationTooLargeError,
    SessionExpiredError, SyncInProgressError, SyncQueueError
)
from services.notesync.manager import NotesyncManager
from services.notesync.repository import NotesRepository
from services.notesync.sync_queue import SyncQueue

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

NEVER = "Never"
NO_ERROR = "None"


class SyncStatus:
    """Sync state polled by the UI; the core only reports results."""

    def __init__(self):
        self.is_syncing = False
        self.last_sync_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    def is_sync_disabled(self, is_signed_in: bool) -> bool:
        return self.is_syncing or not is_signed_in

    def is_restore_disabled(self, is_signed_in: bool) -> bool:
        return self.is_syncing or not is_signed_in

    @property
    def last_sync_status_text(self) -> str:
        return self.last_sync_at.isoformat() if self.last_sync_at else NEVER

    @property
    def last_error_status_text(self) -> str:
        return self.last_error or NO_ERROR


# Global instances
db_ops: Optional[DatabaseOperations] = None
http_client: Optional[httpx.AsyncClient] = None
repository: Optional[NotesRepository] = None
sync_manager: Optional[NotesyncManager] = None
session_manager: Optional[AuthSessionManager] = None
sync_status = SyncStatus()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global db_ops, http_client, repository, sync_manager, session_manager

    logger.info("Timeline Notesync starting up...")
    data_dir = get_data_dir()
    notesync_config = get_notesync_config()
    auth_config = get_auth_config()

    db_ops = DatabaseOperations()
    db_ops.create_tables()
    logger.info("Database connection initialized")

    encryption_service = EncryptionService(key_file=data_dir / "token.key")
    credential_store = DatabaseCredentialStore(db_ops, encryption_service)

    image_store = MediaStore(data_dir, "Images", "jpg")
    audio_store = MediaStore(data_dir, "Audio", "m4a")
    sync_queue = SyncQueue(data_dir, image_store, audio_store)
    logger.info(f"Sync queue ready with {sync_queue.pending_count()} pending ops")

    http_client = httpx.AsyncClient(base_url=notesync_config["base_url"])
    repository = NotesRepository(db_ops, image_store, audio_store, sync_queue)
    client = NotesyncClient(
        http_client=http_client,
        api_key=notesync_config["api_key"],
        credential_store=credential_store,
        refresh_client=AuthRefreshClient(http_client, auth_config["api_key"])
    )
    sync_manager = NotesyncManager(
        queue=sync_queue,
        client=client,
        batcher=NotesyncBatcher(notesync_config["max_batch_bytes"]),
        repository=repository
    )
    session_manager = AuthSessionManager(
        credential_store=credential_store,
        exchange_client=AuthExchangeClient(http_client, auth_config["api_key"]),
        login_url=auth_config["login_url"],
        callback_host=auth_config["callback_host"],
        callback_path=auth_config["callback_path"]
    )
    logger.info(f"Notesync client initialized - {notesync_config['base_url']}")

    yield

    await http_client.aclose()
    logger.info("Timeline Notesync shutting down...")


app = FastAPI(
    title="Timeline Notesync",
    description="Local notes store with offline sync to the notesync service",
    version="0.1.0",
    lifespan=lifespan
)


@app.middleware("http")
async def error_handling_middleware(request: Request, call_next):
    """Global error handling middleware."""
    try:
        response = await call_next(request)
        return response
    except Exception as exc:
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": str(exc)
            }
        )


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Health check endpoint."""
    db_healthy = False
    try:
        db_ops.fetch_all_notes()
        db_healthy = True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")

    pending = None
    try:
        pending = sync_manager.queue.pending_count()
    except SyncQueueError as e:
        logger.error(f"Sync queue health check failed: {e}")

    return {
        "status": "healthy" if (db_healthy and pending is not None) else "degraded",
        "service": "timeline_notesync",
        "version": "0.1.0",
        "dependencies": {
            "database": "up" if db_healthy else "down",
            "sync_queue": "up" if pending is not None else "down"
        },
        "pending_ops": pending
    }


@app.get("/", status_code=status.HTTP_200_OK)
async def root():
    """Root endpoint."""
    return {
        "service": "Timeline Notesync",
        "version": "0.1.0",
        "status": "running"
    }


# Request/Response models
class NoteResponse(BaseModel):
    id: str
    text: str
    is_pinned: bool
    tags: List[str]
    created_at: datetime
    updated_at: datetime
    image_paths: List[str]
    audio_paths: List[str]

    @classmethod
    def from_note(cls, note: Note) -> "NoteResponse":
        return cls(
            id=note.id,
            text=note.text,
            is_pinned=note.is_pinned,
            tags=sorted(note.tags),
            created_at=note.created_at,
            updated_at=note.updated_at,
            image_paths=note.image_paths,
            audio_paths=note.audio_paths
        )


class CreateNoteRequest(BaseModel):
    text: str
    images_base64: List[str] = Field(default_factory=list)
    audio_paths: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)


class UpdateNoteRequest(BaseModel):
    text: str
    is_pinned: bool = False
    tags: List[str] = Field(default_factory=list)
    images_base64: List[str] = Field(default_factory=list)
    removed_image_paths: List[str] = Field(default_factory=list)
    audio_paths: List[str] = Field(default_factory=list)
    removed_audio_paths: List[str] = Field(default_factory=list)


class PinRequest(BaseModel):
    is_pinned: bool


class SyncRunResponse(BaseModel):
    status: str
    ops_sent: int
    batches_sent: int
    pending_ops: int


class SyncStatusResponse(BaseModel):
    is_syncing: bool
    last_sync_at: Optional[datetime] = None
    last_sync_status: str
    last_error: str
    pending_ops: int
    is_signed_in: bool
    sync_disabled: bool
    restore_disabled: bool


class RestoreRunResponse(BaseModel):
    status: str
    notes_restored: int
    notes_skipped: int
    media_written: int
    media_reused: int


def _decode_images(images_base64: List[str]) -> List[bytes]:
    try:
        return [base64.b64decode(item, validate=True) for item in images_base64]
    except (binascii.Error, ValueError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Image payloads must be valid base64"
        )


def _get_note_or_404(note_id: str) -> Note:
    note = repository.get_note(note_id)
    if not note:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Note {note_id} not found"
        )
    return note


def _queue_failure(action: str, exc: SyncQueueError) -> HTTPException:
    logger.error(f"Unable to {action}: {exc}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Unable to {action}: {exc}"
    )


# Notes

@app.get("/notes", response_model=List[NoteResponse])
async def list_notes():
    """List notes, pinned first, then newest first."""
    return [NoteResponse.from_note(note) for note in repository.list_notes()]


@app.post("/notes", response_model=NoteResponse, status_code=status.HTTP_201_CREATED)
async def create_note(request: CreateNoteRequest):
    """Create a note and queue it for sync."""
    images = _decode_images(request.images_base64)
    try:
        note = repository.create(request.text, images, request.audio_paths, request.tags)
    except SyncQueueError as e:
        raise _queue_failure("create this note", e)
    return NoteResponse.from_note(note)


@app.patch("/notes/{note_id}", response_model=NoteResponse)
async def update_note(note_id: str, request: UpdateNoteRequest):
    """Edit a note and queue the update for sync."""
    note = _get_note_or_404(note_id)
    images = _decode_images(request.images_base64)
    try:
        updated = repository.update(
            note,
            text=request.text,
            images=images,
            removed_paths=request.removed_image_paths,
            audio_paths=request.audio_paths,
            removed_audio_paths=request.removed_audio_paths,
            tag_input=request.tags,
            is_pinned=request.is_pinned
        )
    except SyncQueueError as e:
        raise _queue_failure("update this note", e)
    return NoteResponse.from_note(updated)


@app.post("/notes/{note_id}/pin", response_model=NoteResponse)
async def pin_note(note_id: str, request: PinRequest):
    """Pin or unpin a note."""
    note = _get_note_or_404(note_id)
    try:
        updated = repository.set_pinned(note, request.is_pinned)
    except SyncQueueError as e:
        raise _queue_failure("update pin status", e)
    return NoteResponse.from_note(updated)


@app.delete("/notes/{note_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_note(note_id: str):
    """Delete a note and queue the deletion for sync."""
    note = _get_note_or_404(note_id)
    try:
        repository.delete(note)
    except SyncQueueError as e:
        raise _queue_failure("delete this note", e)


# Sync

def _sync_failure(exc: Exception) -> HTTPException:
    """Record a failed pass in the polled status and map it to an HTTP error."""
    if isinstance(exc, SyncInProgressError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))

    if isinstance(exc, AuthenticationError):
        message = SessionExpiredError.user_message
        code = status.HTTP_401_UNAUTHORIZED
    elif isinstance(exc, OperationTooLargeError):
        message = str(exc)
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, (NotesyncHTTPError, httpx.HTTPError)):
        message = str(exc)
        code = status.HTTP_502_BAD_GATEWAY
    else:
        message = str(exc)
        code = status.HTTP_500_INTERNAL_SERVER_ERROR

    sync_status.last_error = message
    return HTTPException(status_code=code, detail=message)


@app.post("/sync", response_model=SyncRunResponse)
async def run_sync():
    """
    Run one sync pass now.

    Returns when every batch has been acknowledged or the first batch
    fails. Failed passes are retried only by calling this again.
    """
    sync_status.is_syncing = True
    try:
        result = await sync_manager.perform_sync()
    except (SyncInProgressError, AuthenticationError, OperationTooLargeError,
            NotesyncHTTPError, SyncQueueError, httpx.HTTPError) as e:
        raise _sync_failure(e)
    finally:
        sync_status.is_syncing = sync_manager.is_syncing

    sync_status.last_sync_at = datetime.now(timezone.utc)
    sync_status.last_error = None
    return SyncRunResponse(
        status="completed",
        ops_sent=result.ops_sent,
        batches_sent=result.batches_sent,
        pending_ops=sync_manager.queue.pending_count()
    )


@app.get("/sync/status", response_model=SyncStatusResponse)
async def get_sync_status():
    """Current sync state for the UI to poll."""
    signed_in = session_manager.is_signed_in
    return SyncStatusResponse(
        is_syncing=sync_manager.is_syncing,
        last_sync_at=sync_status.last_sync_at,
        last_sync_status=sync_status.last_sync_status_text,
        last_error=sync_status.last_error_status_text,
        pending_ops=sync_manager.queue.pending_count(),
        is_signed_in=signed_in,
        sync_disabled=sync_status.is_sync_disabled(signed_in),
        restore_disabled=sync_status.is_restore_disabled(signed_in)
    )


@app.post("/sync/restore", response_model=RestoreRunResponse)
async def run_restore(limit: Optional[int] = None):
    """Pull the latest remote notes into local storage."""
    if limit is None:
        limit = get_notesync_config()["restore_limit"]
    if limit <= 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="limit must be positive"
        )

    sync_status.is_syncing = True
    try:
        result = await sync_manager.restore_latest(limit)
    except (SyncInProgressError, AuthenticationError, NotesyncHTTPError,
            SyncQueueError, OSError, httpx.HTTPError) as e:
        raise _sync_failure(e)
    finally:
        sync_status.is_syncing = sync_manager.is_syncing

    sync_status.last_error = None
    return RestoreRunResponse(
        status="completed",
        notes_restored=result.notes_restored,
        notes_skipped=result.notes_skipped,
        media_written=result.media_written,
        media_reused=result.media_reused
    )


@app.post("/sync/resync")
async def queue_full_resync():
    """Queue every local note for upload, e.g. after restoring from backup."""
    try:
        count = repository.enqueue_full_resync()
    except SyncQueueError as e:
        raise _queue_failure("queue a full resync", e)
    return {"status": "queued", "notes_queued": count}


# Auth

@app.get("/auth/login")
async def get_login_url():
    """URL the UI opens to start OAuth sign-in."""
    return {"login_url": session_manager.login_url}


@app.get("/auth/callback")
async def auth_callback(url: str):
    """Complete sign-in from the OAuth redirect URL forwarded by the UI."""
    if not await session_manager.handle_callback(url):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Sign-in failed"
        )
    return {"is_signed_in": True}


@app.get("/auth/status")
async def auth_status():
    return {"is_signed_in": session_manager.is_signed_in}


@app.post("/auth/signout")
async def sign_out():
    """Forget both tokens; queued ops stay until the next signed-in sync."""
    session_manager.sign_out()
    return {"is_signed_in": False}


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("TIMELINE_SERVICE_PORT", 8010))
    uvicorn.run(app, host="127.0.0.1", port=port)
